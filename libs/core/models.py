from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Tier(str, Enum):
    free = "free"
    paid = "paid"


class Step(str, Enum):
    match = "match"
    resume = "resume"
    interview = "interview"


class ModelType(str, Enum):
    text = "text"
    vision = "vision"
    reasoning = "reasoning"


class TaskState(str, Enum):
    queued = "queued"
    running = "running"
    retrying = "retrying"
    succeeded = "succeeded"
    failed = "failed"


class RetryPolicy(str, Enum):
    in_place = "in_place"
    requeue = "requeue"


class SummaryType(str, Enum):
    resume = "resume"
    job = "job"
    detailed = "detailed"


class ValidationLevel(IntEnum):
    NONE = 0
    BASIC = 1
    STANDARD = 2
    STRICT = 3


class ModelConfig(BaseModel):
    provider: str
    model: str
    tier: Tier
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    timeout_s: Optional[float] = None
    json_mode: bool = False


class ModelConfigOverride(BaseModel):
    provider: Optional[str] = None
    model: Optional[str] = None
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    timeout_s: Optional[float] = None
    json_mode: Optional[bool] = None


class TokenUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    cost: Optional[float] = None


class LLMResponse(BaseModel):
    content: str
    usage: Optional[TokenUsage] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class Task(BaseModel):
    id: str
    owner_id: str
    correlation_id: str
    step: Step
    payload: str
    priority: int = 1
    created_at: datetime = Field(default_factory=utcnow)
    retry_count: int = 0
    max_retries: int = 3
    config: Optional[ModelConfigOverride] = None


class TaskResult(BaseModel):
    task_id: str
    success: bool
    raw_content: Optional[str] = None
    usage: Optional[TokenUsage] = None
    error: Optional[str] = None
    error_category: Optional[str] = None
    duration_ms: int = 0
    provider_name: str = "unknown"
    model_name: str = "unknown"
    attempts: int = 0
    wait_ms: Optional[int] = None


class QueueStatus(BaseModel):
    provider: str
    pending: int
    active: int
    max_concurrent: int
    avg_wait_ms: float


class WorkerPoolStatus(BaseModel):
    queues: List[QueueStatus]
    total_active: int
    total_pending: int


class QueuePosition(BaseModel):
    position: int
    provider: str
    estimated_wait_ms: float


class IdempotencyRecord(BaseModel):
    key: str
    owner_id: str
    step: str
    created_at: datetime
    ttl_ms: int

    def is_expired(self, now: datetime | None = None) -> bool:
        current = now or utcnow()
        created = self.created_at
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        return (current - created).total_seconds() * 1000 > self.ttl_ms


class IdempotencyResult(BaseModel):
    key: str
    is_replay: bool
    should_process: bool


class CacheEntry(BaseModel):
    data: Any = None
    created_at: int
    expires_at: int
    checksum: Optional[str] = None
    signature: Optional[str] = None


class CacheValidation(BaseModel):
    is_valid: bool
    data: Any = None
    level: ValidationLevel = ValidationLevel.BASIC
    reason: Optional[str] = None


class SummaryTask(BaseModel):
    type: SummaryType
    id: str
    text: str
    owner_id: str
    correlation_id: str


class SummaryResult(BaseModel):
    type: SummaryType
    id: str
    success: bool
    summary_json: Optional[Dict[str, Any]] = None
    summary_tokens: Optional[int] = None
    error: Optional[str] = None
    error_category: Optional[str] = None
    duration_ms: int = 0


class UserFacingError(BaseModel):
    category: str
    title: str
    message: str
    retryable: bool
