from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from libs.core import logging as core_logging
from libs.core.errors import LLMError, LLMErrorCategory, classify_error
from libs.core.models import Step, SummaryResult, SummaryTask, SummaryType, Tier

from .fallback import MAX_FALLBACK_CHARS, estimate_tokens, rule_based_summary
from .json_validator import ValidationFailure, ValidationOptions, validate_llm_response
from .worker_pool import WorkerPool, execute_llm_task

LOGGER = core_logging.get_logger("orchestrator")

DEFAULT_TIMEOUT_S = 30.0
SUMMARY_MAX_RETRIES = 2
SUMMARY_PARSE_ATTEMPTS = 3

EXPECTED_FIELDS: Dict[SummaryType, Dict[str, str]] = {
    SummaryType.resume: {
        "education": "string[]",
        "overview": "string",
        "highlights": "string[]",
        "key_skills": "string[]",
        "risks": "string[]",
        "working_experience": "string[]",
        "projects": "string[]",
    },
    SummaryType.job: {
        "role": "string",
        "responsibilities": "string[]",
        "requirements": "string[]",
        "must_have": "string[]",
        "nice_to_have": "string[]",
        "risks": "string[]",
    },
    SummaryType.detailed: {
        "jobs": "object[]",
    },
}

_TYPE_LABELS = {
    SummaryType.resume: "resume",
    SummaryType.job: "job description",
    SummaryType.detailed: "detailed work history",
}


@dataclass
class OrchestrationOptions:
    tier: Tier = Tier.free
    timeout_s: float = DEFAULT_TIMEOUT_S
    enable_fallback: bool = True
    priority: int = 1


def build_summary_prompt(task: SummaryTask) -> str:
    fields = ", ".join(f'"{name}" ({kind})' for name, kind in EXPECTED_FIELDS[task.type].items())
    return (
        f"Summarize the following {_TYPE_LABELS[task.type]}. "
        f"Respond with a single JSON object containing {fields} and nothing else.\n\n"
        f"{task.text}"
    )


def parse_summary_response(
    content: str,
    summary_type: SummaryType,
    source_text: str,
    correlation_id: Optional[str] = None,
) -> Dict[str, Any]:
    validation = validate_llm_response(
        content,
        EXPECTED_FIELDS[summary_type],
        ValidationOptions(
            enable_fallback=True,
            max_attempts=SUMMARY_PARSE_ATTEMPTS,
            correlation_id=correlation_id,
            route="orchestrator",
        ),
    )
    if isinstance(validation, ValidationFailure):
        LOGGER.warning(
            "summary_parse_fallback",
            correlation_id=correlation_id,
            summary_type=summary_type.value,
            error=validation.error,
            attempts=validation.attempts,
            warnings="; ".join(validation.warnings),
        )
        summary = rule_based_summary(summary_type, source_text)
        summary["parse_error"] = True
        summary["error_details"] = validation.error
        return summary
    summary = dict(validation.data)
    if validation.fallback_used:
        summary["fallback"] = True
    if validation.warnings:
        summary["parse_warnings"] = list(validation.warnings)
    return summary


class SummaryOrchestrator:
    """Runs resume, job and detailed summaries in parallel under one timeout."""

    def __init__(
        self,
        pool: WorkerPool,
        prompt_builder: Callable[[SummaryTask], str] = build_summary_prompt,
    ) -> None:
        self.pool = pool
        self.prompt_builder = prompt_builder

    async def execute_summaries(
        self, tasks: List[SummaryTask], options: OrchestrationOptions | None = None
    ) -> List[SummaryResult]:
        opts = options or OrchestrationOptions()
        if not tasks:
            return []
        runners = [asyncio.ensure_future(self._execute_single(task, opts)) for task in tasks]
        done, pending = await asyncio.wait(runners, timeout=opts.timeout_s)
        for runner in pending:
            runner.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        results: List[SummaryResult] = []
        timeout_ms = int(opts.timeout_s * 1000)
        for task, runner in zip(tasks, runners):
            if runner not in done:
                LOGGER.warning(
                    "summary_timed_out",
                    correlation_id=task.correlation_id,
                    summary_id=task.id,
                    timeout_ms=timeout_ms,
                )
                results.append(
                    SummaryResult(
                        type=task.type,
                        id=task.id,
                        success=False,
                        error=f"Timeout after {timeout_ms}ms",
                        error_category=LLMErrorCategory.timeout.value,
                        duration_ms=timeout_ms,
                    )
                )
                continue
            exc = runner.exception()
            if exc is not None:
                LOGGER.error(
                    "summary_failed",
                    correlation_id=task.correlation_id,
                    summary_id=task.id,
                    error=str(exc),
                )
                results.append(
                    SummaryResult(
                        type=task.type,
                        id=task.id,
                        success=False,
                        error=str(exc),
                        error_category=classify_error(exc).value,
                        duration_ms=timeout_ms,
                    )
                )
                continue
            results.append(runner.result())
        return results

    async def _execute_single(self, task: SummaryTask, opts: OrchestrationOptions) -> SummaryResult:
        started = time.monotonic()
        try:
            result = await execute_llm_task(
                self.pool,
                task.owner_id,
                task.correlation_id,
                Step.match,
                self.prompt_builder(task),
                tier=opts.tier,
                priority=opts.priority,
                max_retries=SUMMARY_MAX_RETRIES,
                deadline=opts.timeout_s,
            )
            if not result.success or result.raw_content is None:
                raise LLMError(
                    result.error or "LLM task failed",
                    LLMErrorCategory(result.error_category or LLMErrorCategory.unknown.value),
                )
            summary = parse_summary_response(result.raw_content, task.type, task.text, task.correlation_id)
            return SummaryResult(
                type=task.type,
                id=task.id,
                success=True,
                summary_json=summary,
                summary_tokens=result.usage.total_tokens if result.usage else None,
                duration_ms=_elapsed_ms(started),
            )
        except Exception as exc:  # noqa: BLE001
            category = classify_error(exc)
            LOGGER.warning(
                "summary_primary_failed",
                correlation_id=task.correlation_id,
                summary_id=task.id,
                summary_type=task.type.value,
                error_category=category.value,
                error=str(exc),
                fallback_enabled=opts.enable_fallback,
            )
            if not opts.enable_fallback:
                return SummaryResult(
                    type=task.type,
                    id=task.id,
                    success=False,
                    error=str(exc),
                    error_category=category.value,
                    duration_ms=_elapsed_ms(started),
                )
            return SummaryResult(
                type=task.type,
                id=task.id,
                success=True,
                summary_json=rule_based_summary(task.type, task.text),
                summary_tokens=estimate_tokens(task.text[:MAX_FALLBACK_CHARS]),
                duration_ms=_elapsed_ms(started),
            )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
