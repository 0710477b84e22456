from __future__ import annotations

from typing import Any, Dict, Optional

from libs.core.config import Settings
from libs.core.models import ModelConfig, ModelConfigOverride, ModelType, Step, Tier

DEFAULT_TIMEOUT_S = 180.0

MODEL_CATALOG: Dict[Tier, Dict[ModelType, Dict[str, Any]]] = {
    Tier.free: {
        ModelType.text: {"provider": "zhipu", "model": "glm-4.5-flash", "max_tokens": 30000},
        ModelType.vision: {"provider": "zhipu", "model": "glm-4.1v-thinking-flash", "max_tokens": 16000},
    },
    Tier.paid: {
        ModelType.text: {"provider": "deepseek", "model": "deepseek-chat", "max_tokens": 8000},
        ModelType.reasoning: {"provider": "deepseek", "model": "deepseek-reasoner", "max_tokens": 30000},
        ModelType.vision: {"provider": "zhipu", "model": "glm-4.1v-thinking-flash", "max_tokens": 16000},
    },
}

STEP_MODEL_TYPES: Dict[str, ModelType] = {
    Step.match.value: ModelType.reasoning,
    Step.resume.value: ModelType.text,
    Step.interview.value: ModelType.text,
}

STEP_TEMPERATURES: Dict[str, float] = {
    Step.match.value: 1.0,
    Step.resume.value: 1.0,
    Step.interview.value: 1.0,
}

# Environment variable names that override catalog model names.
_MODEL_NAME_KEYS = {
    ("zhipu", ModelType.text): "zhipu_text",
    ("zhipu", ModelType.vision): "zhipu_vision",
    ("deepseek", ModelType.text): "deepseek_text",
    ("deepseek", ModelType.reasoning): "deepseek_reasoning",
}


def model_type_for_step(step: Step | str) -> ModelType:
    value = step.value if isinstance(step, Step) else str(step)
    return STEP_MODEL_TYPES.get(value, ModelType.text)


def catalog_entry(
    tier: Tier | str, model_type: ModelType | str, settings: Settings | None = None
) -> Dict[str, Any]:
    resolved_tier = Tier(tier)
    resolved_type = ModelType(model_type)
    entries = MODEL_CATALOG[resolved_tier]
    effective_type = resolved_type if resolved_type in entries else ModelType.text
    entry = dict(entries[effective_type])
    if settings is not None:
        name_key = _MODEL_NAME_KEYS.get((entry["provider"], effective_type))
        if name_key and name_key in settings.model_names:
            entry["model"] = settings.model_names[name_key]
        tier_overrides = settings.routing.models.get(resolved_tier.value, {})
        override = tier_overrides.get(resolved_type.value) or tier_overrides.get(effective_type.value)
        if override:
            entry.update({k: v for k, v in override.items() if v is not None})
    return entry


def resolve_model_config(
    step: Step | str,
    tier: Tier | str,
    override: Optional[ModelConfigOverride] = None,
    settings: Settings | None = None,
) -> ModelConfig:
    entry = catalog_entry(tier, model_type_for_step(step), settings)
    step_value = step.value if isinstance(step, Step) else str(step)
    entry.setdefault("temperature", STEP_TEMPERATURES.get(step_value))
    entry.setdefault("timeout_s", DEFAULT_TIMEOUT_S)
    if override is not None:
        entry.update(override.model_dump(exclude_none=True))
    entry.pop("tier", None)
    return ModelConfig(tier=Tier(tier), **entry)
