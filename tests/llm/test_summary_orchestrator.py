from __future__ import annotations

import asyncio
import json
import time
from typing import Any

from libs.core.config import Settings
from libs.core.errors import LLMError, LLMErrorCategory
from libs.core.models import SummaryTask, SummaryType, Tier
from libs.llm import fallback, orchestrator
from libs.llm.orchestrator import OrchestrationOptions, SummaryOrchestrator
from libs.llm.provider_registry import ProviderRegistry
from libs.llm.providers import MockLLMProvider
from libs.llm.worker_pool import WorkerPool

RESUME_TEXT = "Jane Doe\nSenior Engineer\nWork Experience: 8 years\nSkills: Python, SQL\nEducation: BSc"
JOB_TEXT = "Position: Data Engineer\nCompany: Acme\nRequirements: Spark\nResponsibilities: pipelines"

RESUME_JSON = {
    "education": ["BSc"],
    "overview": "Senior engineer",
    "highlights": ["Led migrations"],
    "key_skills": ["Python", "SQL"],
    "risks": [],
    "working_experience": ["Acme 2016-2024"],
    "projects": ["Data platform"],
}
JOB_JSON = {
    "role": "Data Engineer",
    "responsibilities": ["pipelines"],
    "requirements": ["Spark"],
    "must_have": ["Spark"],
    "nice_to_have": [],
    "risks": [],
}


def _orchestrator(responses: Any) -> tuple[SummaryOrchestrator, MockLLMProvider]:
    provider = MockLLMProvider(name="zhipu", responses=responses)
    registry = ProviderRegistry()
    registry.register(provider)
    pool = WorkerPool(registry, Settings(), backoff_base_s=0.001, backoff_cap_s=0.005)
    return SummaryOrchestrator(pool), provider


def _task(summary_type: SummaryType, task_id: str, text: str) -> SummaryTask:
    return SummaryTask(type=summary_type, id=task_id, text=text, owner_id="user-1", correlation_id="corr-1")


def _by_prompt(prompt: str) -> str:
    if "job description" in prompt:
        return json.dumps(JOB_JSON)
    return "```json\n" + json.dumps(RESUME_JSON) + "\n```"


def test_summaries_run_in_parallel_and_keep_order() -> None:
    service, provider = _orchestrator(_by_prompt)
    tasks = [_task(SummaryType.resume, "r1", RESUME_TEXT), _task(SummaryType.job, "j1", JOB_TEXT)]
    results = asyncio.run(service.execute_summaries(tasks))
    assert [result.id for result in results] == ["r1", "j1"]
    assert all(result.success for result in results)
    assert results[0].summary_json == RESUME_JSON
    assert results[1].summary_json == JOB_JSON
    assert results[0].summary_tokens and results[0].summary_tokens > 0
    assert len(provider.calls) == 2


def test_empty_task_list() -> None:
    service, _ = _orchestrator("{}")
    assert asyncio.run(service.execute_summaries([])) == []


def test_partial_output_is_normalized_with_warnings() -> None:
    service, _ = _orchestrator('{"role": "Engineer"}')
    [result] = asyncio.run(service.execute_summaries([_task(SummaryType.job, "j1", JOB_TEXT)]))
    assert result.success is True
    assert result.summary_json["role"] == "Engineer"
    assert result.summary_json["must_have"] == []
    assert "Missing field 'must_have'; using default" in result.summary_json["parse_warnings"]


def test_unparseable_output_uses_rule_based_summary() -> None:
    service, _ = _orchestrator("Sorry, I cannot summarize this.")
    [result] = asyncio.run(service.execute_summaries([_task(SummaryType.resume, "r1", RESUME_TEXT)]))
    assert result.success is True
    assert result.summary_json["fallback"] is True
    assert result.summary_json["parse_error"] is True
    assert result.summary_json["name"] == "Jane Doe"
    assert result.summary_json["error_details"].startswith("All parsing strategies failed")


def test_provider_failure_falls_back() -> None:
    service, _ = _orchestrator(LLMError("invalid api key", LLMErrorCategory.input_validation))
    [result] = asyncio.run(service.execute_summaries([_task(SummaryType.job, "j1", JOB_TEXT)]))
    assert result.success is True
    assert result.summary_json["fallback"] is True
    assert result.summary_json["company"] == "Company: Acme"
    assert result.summary_tokens == fallback.estimate_tokens(JOB_TEXT)


def test_provider_failure_without_fallback() -> None:
    service, provider = _orchestrator(LLMError("invalid api key", LLMErrorCategory.input_validation))
    [result] = asyncio.run(
        service.execute_summaries(
            [_task(SummaryType.job, "j1", JOB_TEXT)], OrchestrationOptions(enable_fallback=False)
        )
    )
    assert result.success is False
    assert result.error_category == "input_validation"
    assert len(provider.calls) == 1


def test_summary_retries_are_capped() -> None:
    service, provider = _orchestrator(LLMError("upstream 503", LLMErrorCategory.provider_error))
    [result] = asyncio.run(
        service.execute_summaries(
            [_task(SummaryType.detailed, "d1", RESUME_TEXT)], OrchestrationOptions(enable_fallback=False)
        )
    )
    assert result.success is False
    assert result.error_category == "provider_error"
    assert len(provider.calls) == orchestrator.SUMMARY_MAX_RETRIES


def test_timeout_reports_timeout_category() -> None:
    def slow(prompt: str) -> str:
        time.sleep(0.3)
        return "{}"

    service, _ = _orchestrator(slow)
    started = time.monotonic()
    [result] = asyncio.run(
        service.execute_summaries(
            [_task(SummaryType.resume, "r1", RESUME_TEXT)],
            OrchestrationOptions(timeout_s=0.05, enable_fallback=False),
        )
    )
    assert result.success is False
    assert result.error_category == "timeout"
    assert time.monotonic() - started < 1.0


def test_paid_tier_routes_summaries_to_paid_provider() -> None:
    provider = MockLLMProvider(name="deepseek", tier=Tier.paid, responses=json.dumps(JOB_JSON))
    registry = ProviderRegistry()
    registry.register(provider)
    service = SummaryOrchestrator(WorkerPool(registry, Settings()))
    [result] = asyncio.run(
        service.execute_summaries([_task(SummaryType.job, "j1", JOB_TEXT)], OrchestrationOptions(tier=Tier.paid))
    )
    assert result.success is True
    assert "fallback" not in result.summary_json


def test_prompt_lists_expected_fields() -> None:
    prompt = orchestrator.build_summary_prompt(_task(SummaryType.detailed, "d1", "history"))
    assert '"jobs" (object[])' in prompt
    assert prompt.endswith("history")


def test_parse_summary_response_marks_repaired_output() -> None:
    content = "```json\n{'jobs': [{'title': 'x'}]}\n```"
    summary = orchestrator.parse_summary_response(content, SummaryType.detailed, "text")
    assert summary["jobs"] == [{"title": "x"}]
    assert summary["fallback"] is True


def test_rule_based_summaries() -> None:
    resume = fallback.rule_based_summary(SummaryType.resume, RESUME_TEXT)
    assert resume["title"] == "Senior Engineer"
    assert resume["skills"] == ["Skills: Python, SQL"]
    assert resume["education"] == ["Education: BSc"]
    job = fallback.rule_based_summary("job", JOB_TEXT)
    assert job["title"] == "Position: Data Engineer"
    assert job["level"] == "Unknown"
    detailed = fallback.rule_based_summary(SummaryType.detailed, "a\n\nb\nc")
    assert detailed["summary"] == "a b"
    assert detailed["metadata"] == {"length": 6, "lines": 3}
    empty = fallback.rule_based_summary(SummaryType.resume, "")
    assert empty["name"] == "Unknown"


def test_rule_based_summary_truncates_input() -> None:
    long_text = "line\n" * 1000
    detailed = fallback.rule_based_summary(SummaryType.detailed, long_text)
    assert detailed["metadata"]["length"] == fallback.MAX_FALLBACK_CHARS
