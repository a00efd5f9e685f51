"""Supabase client for database operations."""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
from postgrest.exceptions import APIError
from supabase import Client, ClientOptions, create_client

from ..config import settings
from ..exceptions import PersistenceError
from ..models.internal_models import (
    BiometricEvidence,
    EmbeddingVector,
    PaymentRecord,
    PaymentStatus,
    ReferenceSet,
    User,
)

logger = logging.getLogger(__name__)


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace('Z', '+00:00'))


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def payment_to_row(record: PaymentRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "user_id": record.user_id,
        "amount": record.amount_minor_units,
        "currency": record.currency,
        "status": record.status.value,
        "face_confidence": record.evidence.confidence,
        "face_distance": record.evidence.distance,
        "face_threshold": record.evidence.threshold_used,
        "gateway_intent_id": record.gateway_intent_id,
        "gateway_customer_id": record.gateway_customer_id,
        "description": record.description,
        "failure_reason": record.failure_reason,
        "failure_code": record.failure_code,
        "refund_reason": record.refund_reason,
        "created_at": _isoformat(record.created_at),
        "processed_at": _isoformat(record.processed_at),
        "refunded_at": _isoformat(record.refunded_at),
    }


def payment_from_row(row: Dict[str, Any]) -> PaymentRecord:
    return PaymentRecord(
        id=row["id"],
        user_id=row["user_id"],
        amount_minor_units=int(row["amount"]),
        currency=row["currency"],
        status=PaymentStatus(row["status"]),
        evidence=BiometricEvidence(
            confidence=float(row["face_confidence"]),
            distance=float(row["face_distance"]),
            threshold_used=float(row["face_threshold"]),
        ),
        gateway_intent_id=row["gateway_intent_id"],
        gateway_customer_id=row["gateway_customer_id"],
        description=row.get("description") or "",
        failure_reason=row.get("failure_reason"),
        failure_code=row.get("failure_code"),
        refund_reason=row.get("refund_reason"),
        created_at=_parse_timestamp(row["created_at"]),
        processed_at=_parse_timestamp(row.get("processed_at")),
        refunded_at=_parse_timestamp(row.get("refunded_at")),
    )


class SupabaseClient:
    """Client for Supabase database operations."""

    def __init__(self):
        """Initialize Supabase client with configuration."""
        self._client: Optional[Client] = None
        self._url = settings.supabase_url
        self._key = settings.supabase_key
        self._timeout = settings.database_timeout

    @property
    def client(self) -> Client:
        """Get or create Supabase client instance."""
        if self._client is None:
            self._client = create_client(
                self._url,
                self._key,
                options=ClientOptions(postgrest_client_timeout=self._timeout)
            )
        return self._client

    async def health_check(self) -> bool:
        """Check if database connection is healthy."""
        try:
            self.client.table("users").select("count", count="exact").limit(0).execute()
            return True
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False


class UserRepository:
    """Repository for user database operations."""

    def __init__(self, supabase_client: SupabaseClient):
        """Initialize repository with Supabase client."""
        self.client = supabase_client

    async def get_user_by_id(self, user_id: str) -> Optional[User]:
        """Retrieve user by ID."""
        try:
            result = self.client.client.table("users").select("*").eq("id", user_id).execute()

            if not result.data:
                return None

            user_data = result.data[0]
            return User(
                id=user_data["id"],
                email=user_data["email"],
                full_name=user_data.get("full_name") or "",
                phone=user_data.get("phone"),
                is_active=user_data.get("is_active", True),
                face_recognition_enabled=user_data.get("face_recognition_enabled", True),
                gateway_customer_id=user_data.get("gateway_customer_id"),
                default_payment_method_id=user_data.get("default_payment_method_id"),
            )

        except APIError as e:
            logger.error(f"Database error retrieving user {user_id}: {e}")
            raise PersistenceError(f"Failed to retrieve user {user_id}") from e

    async def set_gateway_customer_id(self, user_id: str, customer_id: str) -> bool:
        """
        Store the gateway customer mapping only if none is stored yet.

        Returns:
            True if this call stored the mapping, False if one already existed
        """
        try:
            result = (
                self.client.client.table("users")
                .update({"gateway_customer_id": customer_id})
                .eq("id", user_id)
                .is_("gateway_customer_id", "null")
                .execute()
            )

            stored = bool(result.data)
            if stored:
                logger.info(f"Stored gateway customer {customer_id} for user {user_id}")
            else:
                logger.warning(f"Gateway customer for user {user_id} was already set")
            return stored

        except APIError as e:
            logger.error(f"Database error storing gateway customer for user {user_id}: {e}")
            raise PersistenceError(f"Failed to store gateway customer for user {user_id}") from e

    async def set_default_payment_method(self, user_id: str, payment_method_id: str) -> None:
        try:
            result = (
                self.client.client.table("users")
                .update({"default_payment_method_id": payment_method_id})
                .eq("id", user_id)
                .execute()
            )
        except APIError as e:
            logger.error(f"Database error storing default payment method for user {user_id}: {e}")
            raise PersistenceError(f"Failed to store default payment method for user {user_id}") from e

        if not result.data:
            raise PersistenceError(f"User {user_id} not found while storing default payment method")
        logger.info(f"Stored default payment method {payment_method_id} for user {user_id}")


class FaceEmbeddingRepository:
    """Repository for enrolled face embeddings."""

    def __init__(self, supabase_client: SupabaseClient):
        """Initialize repository with Supabase client."""
        self.client = supabase_client

    async def get_reference_set(self, user_id: str) -> ReferenceSet:
        """Retrieve a user's enrolled embeddings, oldest first."""
        try:
            result = (
                self.client.client.table("face_embeddings")
                .select("*")
                .eq("user_id", user_id)
                .order("enrolled_at")
                .execute()
            )

            return ReferenceSet(tuple(
                EmbeddingVector(
                    id=row["id"],
                    user_id=row["user_id"],
                    # Convert embedding list back to numpy array
                    vector=np.array(row["embedding"], dtype=np.float64),
                    detector_confidence=float(row["detector_confidence"]),
                    enrolled_at=_parse_timestamp(row["enrolled_at"]),
                )
                for row in result.data
            ))

        except APIError as e:
            logger.error(f"Database error retrieving embeddings for user {user_id}: {e}")
            raise PersistenceError(f"Failed to retrieve face embeddings for user {user_id}") from e

    async def add_embedding(self, embedding: EmbeddingVector) -> EmbeddingVector:
        try:
            row = {
                "id": embedding.id,
                "user_id": embedding.user_id,
                "embedding": embedding.vector.tolist(),
                "detector_confidence": embedding.detector_confidence,
                "enrolled_at": embedding.enrolled_at.isoformat(),
            }
            result = self.client.client.table("face_embeddings").insert(row).execute()

            if not result.data:
                raise PersistenceError("Failed to store face embedding")

            logger.info(f"Stored face embedding {embedding.id} for user {embedding.user_id}")
            return embedding

        except APIError as e:
            logger.error(f"Database error storing embedding for user {embedding.user_id}: {e}")
            raise PersistenceError(f"Failed to store face embedding for user {embedding.user_id}") from e

    async def delete_embedding(self, user_id: str, embedding_id: str) -> bool:
        try:
            result = (
                self.client.client.table("face_embeddings")
                .delete()
                .eq("id", embedding_id)
                .eq("user_id", user_id)
                .execute()
            )

            success = len(result.data) > 0
            if success:
                logger.info(f"Deleted face embedding {embedding_id} for user {user_id}")
            else:
                logger.warning(f"Face embedding {embedding_id} not found for user {user_id}")
            return success

        except APIError as e:
            logger.error(f"Database error deleting embedding {embedding_id}: {e}")
            raise PersistenceError(f"Failed to delete face embedding {embedding_id}") from e


class PaymentRepository:
    """Repository for payment records. Records are never deleted."""

    def __init__(self, supabase_client: SupabaseClient):
        """Initialize repository with Supabase client."""
        self.client = supabase_client

    async def create_payment(self, record: PaymentRecord) -> PaymentRecord:
        try:
            result = self.client.client.table("payments").insert(payment_to_row(record)).execute()

            if not result.data:
                raise PersistenceError(f"Failed to create payment {record.id}")

            logger.info(f"Created payment {record.id} for intent {record.gateway_intent_id}")
            return record

        except APIError as e:
            logger.error(f"Database error creating payment {record.id}: {e}")
            raise PersistenceError(f"Failed to create payment {record.id}") from e

    async def adopt_payment(self, record: PaymentRecord) -> bool:
        """
        Insert a record rebuilt from gateway state unless its id already exists.

        Returns:
            True if the record was inserted
        """
        try:
            result = (
                self.client.client.table("payments")
                .upsert(payment_to_row(record), on_conflict="id", ignore_duplicates=True)
                .execute()
            )
            return bool(result.data)

        except APIError as e:
            logger.error(f"Database error adopting payment {record.id}: {e}")
            raise PersistenceError(f"Failed to adopt payment {record.id}") from e

    async def get_payment_by_id(self, payment_id: str) -> Optional[PaymentRecord]:
        return await self._get_one("id", payment_id)

    async def get_payment_by_intent_id(self, intent_id: str) -> Optional[PaymentRecord]:
        return await self._get_one("gateway_intent_id", intent_id)

    async def _get_one(self, column: str, value: str) -> Optional[PaymentRecord]:
        try:
            result = self.client.client.table("payments").select("*").eq(column, value).execute()

            if not result.data:
                return None
            return payment_from_row(result.data[0])

        except APIError as e:
            logger.error(f"Database error retrieving payment by {column}={value}: {e}")
            raise PersistenceError(f"Failed to retrieve payment by {column}") from e

    async def update_if_status(self, record: PaymentRecord, expected: PaymentStatus) -> Optional[PaymentRecord]:
        """
        Write the record only if the stored status still equals ``expected``.

        Returns:
            The stored record, or None if the status had already moved on
        """
        row = payment_to_row(record)
        changes = {k: v for k, v in row.items() if k not in ("id", "user_id", "created_at")}

        try:
            result = (
                self.client.client.table("payments")
                .update(changes)
                .eq("id", record.id)
                .eq("status", expected.value)
                .execute()
            )

            if not result.data:
                logger.info(f"Conditional update of payment {record.id} skipped: status is no longer {expected.value}")
                return None

            return payment_from_row(result.data[0])

        except APIError as e:
            logger.error(f"Database error updating payment {record.id}: {e}")
            raise PersistenceError(f"Failed to update payment {record.id}") from e

    async def list_payments_by_user(self, user_id: str, limit: int = 10, offset: int = 0) -> Tuple[List[PaymentRecord], int]:
        """Retrieve a page of a user's payments, newest first, with the total count."""
        try:
            result = (
                self.client.client.table("payments")
                .select("*", count="exact")
                .eq("user_id", user_id)
                .order("created_at", desc=True)
                .range(offset, offset + limit - 1)
                .execute()
            )

            payments = [payment_from_row(row) for row in result.data]
            return payments, result.count or len(payments)

        except APIError as e:
            logger.error(f"Database error retrieving payments for user {user_id}: {e}")
            raise PersistenceError(f"Failed to retrieve payments for user {user_id}") from e

    async def list_payments_since(self, user_id: str, since: datetime) -> List[PaymentRecord]:
        """Retrieve every payment a user created at or after ``since``."""
        try:
            result = (
                self.client.client.table("payments")
                .select("*")
                .eq("user_id", user_id)
                .gte("created_at", _isoformat(since))
                .execute()
            )
            return [payment_from_row(row) for row in result.data]

        except APIError as e:
            logger.error(f"Database error retrieving payments since {since} for user {user_id}: {e}")
            raise PersistenceError(f"Failed to retrieve payments for user {user_id}") from e


class DatabaseManager:
    """High-level database manager that coordinates repositories."""

    def __init__(self):
        """Initialize database manager with client and repositories."""
        self.client = SupabaseClient()
        self.users = UserRepository(self.client)
        self.face_embeddings = FaceEmbeddingRepository(self.client)
        self.payments = PaymentRepository(self.client)

    async def health_check(self) -> bool:
        """Check overall database health."""
        return await self.client.health_check()
