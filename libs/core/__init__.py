__all__ = [
    "config",
    "errors",
    "logging",
    "models",
    "persistence",
    "state_machine",
    "tracing",
]
