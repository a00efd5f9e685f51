"""
Shared fixtures: in-memory stores, a scripted gateway and a stub face extractor.
"""

import io
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import numpy as np
import pytest
from PIL import Image

from facepay.exceptions import GatewayError, PersistenceError
from facepay.models.internal_models import (
    BiometricEvidence,
    BoundingBox,
    EmbeddingVector,
    FaceExtraction,
    GatewayIntent,
    GatewayPaymentMethod,
    GatewayRefund,
    GatewaySetupIntent,
    PaymentRecord,
    PaymentStatus,
    ReferenceSet,
    User,
)


def make_image(width: int = 640, height: int = 480, level: int = 128, square: int = 32, fmt: str = "JPEG") -> bytes:
    """
    Encode a test image.

    A non-zero ``square`` draws a checkerboard around ``level`` so the
    image is sharp; ``square=0`` gives a flat, blurry image.
    """
    if square:
        ys, xs = np.indices((height, width))
        board = ((ys // square + xs // square) % 2).astype(np.int16)
        gray = np.clip(level - 60 + board * 120, 0, 255).astype(np.uint8)
    else:
        gray = np.full((height, width), level, dtype=np.uint8)

    pixels = np.stack([gray, gray, gray], axis=2)
    buffer = io.BytesIO()
    Image.fromarray(pixels, "RGB").save(buffer, format=fmt)
    return buffer.getvalue()


def unit_vector(rng: np.random.Generator, dimension: int = 512) -> np.ndarray:
    vector = rng.standard_normal(dimension)
    return vector / np.linalg.norm(vector)


class StubExtractor:
    """Face extractor returning a scripted result."""

    def __init__(self, result: Optional[FaceExtraction] = None, error: Optional[Exception] = None):
        self.result = result
        self.error = error
        self.calls = 0

    def extract(self, image_bytes: bytes) -> FaceExtraction:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.result

    def get_model_info(self) -> dict:
        return {"model_loaded": True, "model_name": "stub"}


class FakeUserRepository:
    def __init__(self):
        self.users: Dict[str, User] = {}

    def add(self, user: User) -> User:
        self.users[user.id] = user
        return user

    async def get_user_by_id(self, user_id: str) -> Optional[User]:
        user = self.users.get(user_id)
        return replace(user) if user else None

    async def set_gateway_customer_id(self, user_id: str, customer_id: str) -> bool:
        user = self.users[user_id]
        if user.gateway_customer_id:
            return False
        user.gateway_customer_id = customer_id
        return True

    async def set_default_payment_method(self, user_id: str, payment_method_id: str) -> None:
        self.users[user_id].default_payment_method_id = payment_method_id


class FakeFaceEmbeddingRepository:
    def __init__(self):
        self.embeddings: Dict[str, List[EmbeddingVector]] = {}

    async def get_reference_set(self, user_id: str) -> ReferenceSet:
        return ReferenceSet(tuple(self.embeddings.get(user_id, [])))

    async def add_embedding(self, embedding: EmbeddingVector) -> EmbeddingVector:
        self.embeddings.setdefault(embedding.user_id, []).append(embedding)
        return embedding

    async def delete_embedding(self, user_id: str, embedding_id: str) -> bool:
        stored = self.embeddings.get(user_id, [])
        remaining = [e for e in stored if e.id != embedding_id]
        self.embeddings[user_id] = remaining
        return len(remaining) != len(stored)


class FakePaymentRepository:
    """Payment store with the same conditional-update semantics as the database."""

    def __init__(self):
        self.records: Dict[str, PaymentRecord] = {}
        self.fail_create = False

    async def create_payment(self, record: PaymentRecord) -> PaymentRecord:
        if self.fail_create:
            raise PersistenceError(f"Failed to create payment {record.id}")
        if record.id in self.records:
            raise PersistenceError(f"Duplicate payment {record.id}")
        self.records[record.id] = record
        return record

    async def adopt_payment(self, record: PaymentRecord) -> bool:
        if record.id in self.records:
            return False
        self.records[record.id] = record
        return True

    async def get_payment_by_id(self, payment_id: str) -> Optional[PaymentRecord]:
        return self.records.get(payment_id)

    async def get_payment_by_intent_id(self, intent_id: str) -> Optional[PaymentRecord]:
        for record in self.records.values():
            if record.gateway_intent_id == intent_id:
                return record
        return None

    async def update_if_status(self, record: PaymentRecord, expected: PaymentStatus) -> Optional[PaymentRecord]:
        current = self.records.get(record.id)
        if current is None or current.status != expected:
            return None
        self.records[record.id] = record
        return record

    async def list_payments_by_user(self, user_id: str, limit: int = 10, offset: int = 0):
        payments = sorted(
            (r for r in self.records.values() if r.user_id == user_id),
            key=lambda r: r.created_at,
            reverse=True
        )
        return payments[offset:offset + limit], len(payments)

    async def list_payments_since(self, user_id: str, since: datetime) -> List[PaymentRecord]:
        return [r for r in self.records.values() if r.user_id == user_id and r.created_at >= since]


class FakeDatabaseManager:
    def __init__(self):
        self.users = FakeUserRepository()
        self.face_embeddings = FakeFaceEmbeddingRepository()
        self.payments = FakePaymentRepository()

    async def health_check(self) -> bool:
        return True


class FakeGateway:
    """Scripted stand-in for StripeGateway."""

    def __init__(self):
        self.customers: List[str] = []
        self.intents: Dict[str, GatewayIntent] = {}
        self.intents_by_key: Dict[str, GatewayIntent] = {}
        self.refunds: List[str] = []
        self.confirm_status = "succeeded"
        self.confirm_error: Optional[Dict[str, str]] = None
        self.fail_intent = False
        self.payment_methods: Dict[str, List[GatewayPaymentMethod]] = {}
        self.setup_intents: List[GatewaySetupIntent] = []
        self.searched_after: List[Optional[datetime]] = []

    async def create_customer(self, user: User) -> str:
        customer_id = f"cus_{len(self.customers) + 1}"
        self.customers.append(customer_id)
        return customer_id

    async def create_intent(self, amount_minor, currency, customer_id, metadata, idempotency_key) -> GatewayIntent:
        if self.fail_intent:
            raise GatewayError("Gateway intent creation failed", code="card_declined")
        if idempotency_key in self.intents_by_key:
            return self.intents_by_key[idempotency_key]

        intent_id = f"pi_{len(self.intents) + 1}"
        intent = GatewayIntent(
            id=intent_id,
            status="requires_payment_method",
            amount=amount_minor,
            currency=currency,
            client_secret=f"{intent_id}_secret",
            customer_id=customer_id,
            metadata={**metadata, "source": "facepay"},
        )
        self.intents[intent_id] = intent
        self.intents_by_key[idempotency_key] = intent
        return intent

    async def confirm_intent(self, intent_id: str, payment_method_id: Optional[str] = None) -> GatewayIntent:
        error = self.confirm_error or {}
        intent = replace(
            self.intents[intent_id],
            status=self.confirm_status,
            failure_message=error.get("message"),
            failure_code=error.get("code"),
        )
        self.intents[intent_id] = intent
        return intent

    async def create_refund(self, intent_id: str, payment_id: str, reason: str) -> GatewayRefund:
        self.refunds.append(payment_id)
        return GatewayRefund(id=f"re_{len(self.refunds)}", status="succeeded")

    async def retrieve_intent(self, intent_id: str) -> GatewayIntent:
        return self.intents[intent_id]

    async def search_tagged_intents(self, created_after=None, limit: int = 100) -> List[GatewayIntent]:
        self.searched_after.append(created_after)
        return list(self.intents.values())[:limit]

    async def create_setup_intent(self, customer_id: str, user_id: str) -> GatewaySetupIntent:
        setup_id = f"seti_{len(self.setup_intents) + 1}"
        setup_intent = GatewaySetupIntent(id=setup_id, client_secret=f"{setup_id}_secret", status="requires_payment_method")
        self.setup_intents.append(setup_intent)
        return setup_intent

    async def attach_payment_method(self, payment_method_id: str, customer_id: str) -> GatewayPaymentMethod:
        method = GatewayPaymentMethod(
            id=payment_method_id, type="card", brand="visa", last4="4242", exp_month=12, exp_year=2030, is_default=True
        )
        self.payment_methods.setdefault(customer_id, []).append(method)
        return method

    async def list_payment_methods(self, customer_id: str, default_payment_method_id=None) -> List[GatewayPaymentMethod]:
        return [
            replace(method, is_default=method.id == default_payment_method_id)
            for method in self.payment_methods.get(customer_id, [])
        ]


@pytest.fixture
def rng():
    return np.random.default_rng(42)


@pytest.fixture
def db():
    return FakeDatabaseManager()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def active_user(db):
    return db.users.add(User(id="user-1", email="ada@example.com", full_name="Ada Lovelace", phone="+15550100"))


@pytest.fixture
def evidence():
    return BiometricEvidence(confidence=0.95, distance=0.21, threshold_used=0.6)


@pytest.fixture
def centered_box():
    # Centered in a 640x480 frame
    return BoundingBox(x=240.0, y=160.0, width=160.0, height=160.0)


@pytest.fixture
def fixed_clock():
    class Clock:
        def __init__(self):
            self.now = datetime(2024, 1, 1, 12, 0, 0)

        def __call__(self):
            return self.now

        def advance(self, seconds: float):
            self.now += timedelta(seconds=seconds)

    return Clock()


@pytest.fixture
def pending_record(evidence):
    return PaymentRecord(
        id="attempt-1",
        user_id="user-1",
        amount_minor_units=2550,
        currency="usd",
        status=PaymentStatus.PENDING,
        evidence=evidence,
        gateway_intent_id="pi_1",
        gateway_customer_id="cus_1",
        created_at=datetime(2024, 1, 1, 11, 0, 0),
        description="Coffee",
    )
