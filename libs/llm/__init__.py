__all__ = [
    "fallback",
    "json_validator",
    "orchestrator",
    "provider_registry",
    "providers",
    "routing",
    "schema_normalizer",
    "worker_pool",
]
