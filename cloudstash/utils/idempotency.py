import uuid


def create_idempotency_key() -> str:
    """Fresh key for a mutating request that must not be applied twice."""
    return uuid.uuid4().hex
