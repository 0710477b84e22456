__all__ = [
    "idempotency",
    "stores",
    "validated_cache",
    "validation",
]
