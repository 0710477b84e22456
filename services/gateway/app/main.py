from __future__ import annotations

import uuid
from typing import Any, Dict, List, Literal, Optional

from fastapi import FastAPI, HTTPException
from prometheus_client import Counter, make_asgi_app
from pydantic import BaseModel, Field

from libs.cache.idempotency import (
    IdempotencyConfig,
    IdempotencyGuard,
    default_ttl_ms,
    resolve_idempotency_store,
    with_idempotency,
)
from libs.cache.stores import resolve_cache_store
from libs.cache.validated_cache import ValidatedCache
from libs.cache.validation import ValidationConfig
from libs.core import config, logging as core_logging, models, tracing as core_tracing
from libs.core.errors import LLMErrorCategory, to_user_error
from libs.core.persistence import SqlPersistence, make_session_factory
from libs.llm import provider_registry, worker_pool
from libs.llm.json_validator import ValidationFailure, ValidationOptions, validate_llm_response
from libs.llm.orchestrator import OrchestrationOptions, SummaryOrchestrator

core_logging.configure_logging("gateway")
LOGGER = core_logging.get_logger("gateway")

SETTINGS = config.load_settings()
core_tracing.configure_tracing("gateway", SETTINGS.otel_endpoint)

app = FastAPI(title="LLM Gateway")
app.mount("/metrics", make_asgi_app())

REGISTRY = provider_registry.default_registry(SETTINGS)
USAGE_STORE = SqlPersistence(make_session_factory(SETTINGS.database_url)) if SETTINGS.database_url else None
POOL = worker_pool.WorkerPool(REGISTRY, SETTINGS, usage_recorder=USAGE_STORE)
ORCHESTRATOR = SummaryOrchestrator(POOL)
IDEMPOTENCY = IdempotencyGuard(resolve_idempotency_store(SETTINGS.database_url, SETTINGS.redis_url))
RESULT_CACHE = ValidatedCache(
    resolve_cache_store(SETTINGS.redis_url),
    ValidationConfig(max_age_ms=SETTINGS.cache_max_age_s * 1000, secret=SETTINGS.cache_validation_secret),
    prefix="gateway:",
)
RESULT_CACHE_SOURCE = "service"

replayed_requests_total = Counter("gateway_replayed_requests_total", "Requests answered as replays", ["route"])

FieldKind = Literal["string", "string[]", "object", "object[]"]


class SummaryTaskIn(BaseModel):
    type: models.SummaryType
    id: str
    text: str


class SummaryRequest(BaseModel):
    owner_id: str
    correlation_id: Optional[str] = None
    tasks: List[SummaryTaskIn]
    tier: models.Tier = models.Tier.free
    timeout_s: float = 30.0
    enable_fallback: bool = True
    priority: int = 1
    locale: str = "en"


class LLMTaskRequest(BaseModel):
    owner_id: str
    correlation_id: Optional[str] = None
    step: models.Step
    prompt: str
    tier: models.Tier = models.Tier.free
    priority: int = 1
    max_retries: Optional[int] = None
    timeout_s: Optional[float] = None
    expected_fields: Dict[str, FieldKind] = Field(default_factory=dict)
    locale: str = "en"


def _user_error(category: Optional[str], locale: str) -> Dict[str, Any]:
    return to_user_error(category or LLMErrorCategory.unknown.value, locale).model_dump()


def _summary_payload(result: models.SummaryResult, locale: str) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "type": result.type.value,
        "id": result.id,
        "success": result.success,
        "summary_json": result.summary_json,
        "summary_tokens": result.summary_tokens,
        "duration_ms": result.duration_ms,
    }
    if not result.success:
        payload["error"] = _user_error(result.error_category, locale)
    return payload


def _replay_response(key: str, route: str) -> Dict[str, Any]:
    replayed_requests_total.labels(route).inc()
    cached = RESULT_CACHE.get(key, RESULT_CACHE_SOURCE)
    if cached is None:
        raise HTTPException(status_code=409, detail={"reason": "duplicate_request", "key": key})
    return {**cached, "replay": True}


@app.get("/healthz")
def healthz() -> Dict[str, Any]:
    providers = []
    for name in REGISTRY.names():
        provider = REGISTRY.get(name)
        if provider is not None:
            providers.append({"name": name, "tier": provider.tier.value, "ready": provider.is_ready()})
    return {"status": "ok", "providers": providers}


@app.get("/queue/status", response_model=models.WorkerPoolStatus)
def queue_status() -> models.WorkerPoolStatus:
    return POOL.get_status()


@app.get("/queue/tasks/{task_id}/position", response_model=models.QueuePosition)
def queue_position(task_id: str) -> models.QueuePosition:
    position = POOL.get_queue_position(task_id)
    if position is None:
        raise HTTPException(status_code=404, detail="Task not queued")
    return position


@app.post("/summaries")
async def create_summaries(request: SummaryRequest) -> Dict[str, Any]:
    correlation_id = request.correlation_id or str(uuid.uuid4())
    body = request.model_dump(mode="json", exclude={"correlation_id"})
    idempotency = IdempotencyConfig(owner_id=request.owner_id, step=models.Step.match, request_body=body)

    async def _run() -> Dict[str, Any]:
        tasks = [
            models.SummaryTask(
                type=item.type,
                id=item.id,
                text=item.text,
                owner_id=request.owner_id,
                correlation_id=correlation_id,
            )
            for item in request.tasks
        ]
        results = await ORCHESTRATOR.execute_summaries(
            tasks,
            OrchestrationOptions(
                tier=request.tier,
                timeout_s=request.timeout_s,
                enable_fallback=request.enable_fallback,
                priority=request.priority,
            ),
        )
        for result in results:
            if not result.success:
                LOGGER.warning(
                    "summary_result_failed",
                    correlation_id=correlation_id,
                    summary_id=result.id,
                    error_category=result.error_category,
                    error=result.error,
                )
        return {
            "correlation_id": correlation_id,
            "results": [_summary_payload(result, request.locale) for result in results],
        }

    outcome = await with_idempotency(idempotency, _run, IDEMPOTENCY)
    if outcome.is_replay:
        return _replay_response(outcome.key, "summaries")
    RESULT_CACHE.set(outcome.key, outcome.result, RESULT_CACHE_SOURCE, default_ttl_ms(models.Step.match) // 1000)
    return {**outcome.result, "replay": False}


@app.post("/llm/tasks")
async def create_llm_task(request: LLMTaskRequest) -> Dict[str, Any]:
    correlation_id = request.correlation_id or str(uuid.uuid4())
    body = request.model_dump(mode="json", exclude={"correlation_id"})
    idempotency = IdempotencyConfig(owner_id=request.owner_id, step=request.step, request_body=body)

    async def _run() -> Dict[str, Any]:
        result = await worker_pool.execute_llm_task(
            POOL,
            request.owner_id,
            correlation_id,
            request.step,
            request.prompt,
            tier=request.tier,
            priority=request.priority,
            max_retries=request.max_retries,
            deadline=request.timeout_s,
        )
        payload: Dict[str, Any] = {
            "correlation_id": correlation_id,
            "task_id": result.task_id,
            "success": result.success,
            "provider": result.provider_name,
            "model": result.model_name,
            "attempts": result.attempts,
            "duration_ms": result.duration_ms,
            "usage": result.usage.model_dump() if result.usage else None,
        }
        if not result.success:
            LOGGER.warning(
                "llm_task_failed",
                correlation_id=correlation_id,
                task_id=result.task_id,
                error_category=result.error_category,
                error=result.error,
            )
            payload["error"] = _user_error(result.error_category, request.locale)
            return payload
        validation = validate_llm_response(
            result.raw_content or "",
            request.expected_fields or None,
            ValidationOptions(correlation_id=correlation_id, route="gateway"),
        )
        if isinstance(validation, ValidationFailure):
            payload["success"] = False
            payload["error"] = _user_error(LLMErrorCategory.parse_error.value, request.locale)
            payload["parse_warnings"] = list(validation.warnings)
            return payload
        payload["data"] = validation.data
        payload["fallback_used"] = validation.fallback_used
        payload["parse_attempts"] = validation.attempts
        payload["parse_warnings"] = list(validation.warnings)
        return payload

    outcome = await with_idempotency(idempotency, _run, IDEMPOTENCY)
    if outcome.is_replay:
        return _replay_response(outcome.key, "llm_tasks")
    RESULT_CACHE.set(outcome.key, outcome.result, RESULT_CACHE_SOURCE, default_ttl_ms(request.step) // 1000)
    return {**outcome.result, "replay": False}
