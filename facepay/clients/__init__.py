"""Client modules for external service integrations."""

from facepay.clients.supabase_client import (
    SupabaseClient,
    UserRepository,
    FaceEmbeddingRepository,
    PaymentRepository,
    DatabaseManager
)

from facepay.clients.stripe_client import (
    StripeGateway,
    intent_idempotency_key,
    refund_idempotency_key
)

__all__ = [
    "SupabaseClient",
    "UserRepository",
    "FaceEmbeddingRepository",
    "PaymentRepository",
    "DatabaseManager",
    "StripeGateway",
    "intent_idempotency_key",
    "refund_idempotency_key"
]
