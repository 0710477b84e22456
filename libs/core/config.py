from __future__ import annotations

import os
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field

DEFAULT_MAX_WORKERS = 5

PROVIDER_DEFAULTS: Dict[str, Dict[str, str]] = {
    "zhipu": {
        "api_key_env": "ZHIPUAI_API_KEY",
        "base_url_env": "ZHIPU_BASE_URL",
        "base_url": "https://open.bigmodel.cn/api/paas/v4",
        "tier": "free",
    },
    "deepseek": {
        "api_key_env": "DEEPSEEK_API_KEY",
        "base_url_env": "DEEPSEEK_BASE_URL",
        "base_url": "https://api.deepseek.com/v1",
        "tier": "paid",
    },
    "openai": {
        "api_key_env": "OPENAI_API_KEY",
        "base_url_env": "OPENAI_BASE_URL",
        "base_url": "https://api.openai.com/v1",
        "tier": "paid",
    },
    "gemini": {
        "api_key_env": "GEMINI_API_KEY",
        "base_url_env": "GEMINI_BASE_URL",
        "base_url": "https://generativelanguage.googleapis.com/v1beta/openai",
        "tier": "free",
    },
}

# Older deployments size the zhipu lane with GLM_MAX_WORKERS.
_MAX_WORKERS_ALIASES = {"zhipu": ("ZHIPU_MAX_WORKERS", "GLM_MAX_WORKERS")}


class ProviderSettings(BaseModel):
    name: str
    tier: str
    api_key: str = ""
    base_url: str
    max_workers: int = DEFAULT_MAX_WORKERS


class RoutingOverrides(BaseModel):
    models: Dict[str, Dict[str, Dict[str, Any]]] = Field(default_factory=dict)
    concurrency: Dict[str, int] = Field(default_factory=dict)


class Settings(BaseModel):
    providers: Dict[str, ProviderSettings] = Field(default_factory=dict)
    model_names: Dict[str, str] = Field(default_factory=dict)
    backoff_base_s: float = 1.0
    backoff_cap_s: float = 8.0
    default_max_retries: int = 3
    redis_url: Optional[str] = None
    database_url: Optional[str] = None
    cache_validation_secret: str = "default-cache-secret"
    cache_max_age_s: int = 24 * 60 * 60
    otel_endpoint: Optional[str] = None
    routing_config_path: Optional[str] = None
    routing: RoutingOverrides = Field(default_factory=RoutingOverrides)

    def max_workers_for(self, provider: str) -> int:
        if provider in self.routing.concurrency:
            return max(1, self.routing.concurrency[provider])
        settings = self.providers.get(provider)
        return settings.max_workers if settings else DEFAULT_MAX_WORKERS


def _parse_optional_float(value: str | None) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _parse_optional_int(value: str | None) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except ValueError:
        return None


def _positive_int(value: str | None, default: int) -> int:
    parsed = _parse_optional_int(value)
    if parsed is None or parsed < 1:
        return default
    return parsed


def _max_workers_env(name: str) -> int:
    for env_name in _MAX_WORKERS_ALIASES.get(name, (f"{name.upper()}_MAX_WORKERS",)):
        parsed = _parse_optional_int(os.getenv(env_name))
        if parsed is not None and parsed > 0:
            return parsed
    return DEFAULT_MAX_WORKERS


def load_routing_overrides(path: str | None) -> RoutingOverrides:
    if not path or not os.path.exists(path):
        return RoutingOverrides()
    with open(path, "r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise ValueError(f"routing config must be a mapping: {path}")
    return RoutingOverrides(
        models=data.get("models") or {},
        concurrency={str(k): int(v) for k, v in (data.get("concurrency") or {}).items()},
    )


def load_settings() -> Settings:
    providers: Dict[str, ProviderSettings] = {}
    for name, defaults in PROVIDER_DEFAULTS.items():
        providers[name] = ProviderSettings(
            name=name,
            tier=defaults["tier"],
            api_key=os.getenv(defaults["api_key_env"], ""),
            base_url=os.getenv(defaults["base_url_env"]) or defaults["base_url"],
            max_workers=_max_workers_env(name),
        )
    model_names = {
        key: value
        for key, value in {
            "zhipu_text": os.getenv("ZHIPU_TEXT_MODEL"),
            "zhipu_vision": os.getenv("ZHIPU_VISION_MODEL"),
            "deepseek_text": os.getenv("DEEPSEEK_TEXT_MODEL"),
            "deepseek_reasoning": os.getenv("DEEPSEEK_REASONING_MODEL"),
        }.items()
        if value
    }
    routing_path = os.getenv("LLM_ROUTING_CONFIG_PATH")
    backoff_base = _parse_optional_float(os.getenv("LLM_BACKOFF_BASE_S"))
    backoff_cap = _parse_optional_float(os.getenv("LLM_BACKOFF_CAP_S"))
    default_retries = _parse_optional_int(os.getenv("LLM_DEFAULT_MAX_RETRIES"))
    return Settings(
        providers=providers,
        model_names=model_names,
        backoff_base_s=backoff_base if backoff_base is not None and backoff_base >= 0 else 1.0,
        backoff_cap_s=backoff_cap if backoff_cap is not None and backoff_cap >= 0 else 8.0,
        default_max_retries=default_retries if default_retries is not None and default_retries >= 0 else 3,
        redis_url=os.getenv("REDIS_URL") or None,
        database_url=os.getenv("DATABASE_URL") or None,
        cache_validation_secret=os.getenv("CACHE_VALIDATION_SECRET") or "default-cache-secret",
        cache_max_age_s=_positive_int(os.getenv("CACHE_MAX_AGE_S"), 24 * 60 * 60),
        otel_endpoint=os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT") or None,
        routing_config_path=routing_path,
        routing=load_routing_overrides(routing_path),
    )
