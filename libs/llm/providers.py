from __future__ import annotations

import json
import socket
from typing import Any, Callable, Dict, List, Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from libs.core.config import Settings
from libs.core.errors import LLMError, LLMErrorCategory, category_for_status
from libs.core.models import LLMResponse, ModelConfig, Tier, TokenUsage

_INPUT_KEYS = ("prompt_tokens", "input_tokens", "promptTokens", "promptTokenCount")
_OUTPUT_KEYS = ("completion_tokens", "output_tokens", "completionTokens", "candidatesTokenCount")
_TOTAL_KEYS = ("total_tokens", "totalTokens", "totalTokenCount")


class LLMProvider:
    name: str = "base"
    tier: Tier = Tier.free

    def is_ready(self) -> bool:  # pragma: no cover - interface
        raise NotImplementedError

    def invoke(
        self, prompt: str, config: ModelConfig, timeout_s: float | None = None
    ) -> Dict[str, Any]:  # pragma: no cover - interface
        raise NotImplementedError

    def parse_response(self, raw: Dict[str, Any]) -> LLMResponse:
        content = _extract_message_content(raw)
        return LLMResponse(
            content=content,
            usage=extract_usage(raw),
            metadata={k: raw[k] for k in ("id", "model", "created") if k in raw},
        )

    def generate(self, prompt: str, config: ModelConfig, timeout_s: float | None = None) -> LLMResponse:
        return self.parse_response(self.invoke(prompt, config, timeout_s))


class ChatCompletionsProvider(LLMProvider):
    """Provider speaking the OpenAI-compatible /chat/completions protocol."""

    def __init__(
        self,
        name: str,
        tier: Tier,
        api_key: str,
        base_url: str,
        default_timeout_s: float = 60.0,
    ) -> None:
        self.name = name
        self.tier = tier
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.default_timeout_s = default_timeout_s

    def is_ready(self) -> bool:
        return bool(self.api_key)

    def build_payload(self, prompt: str, config: ModelConfig) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": config.model,
            "messages": [{"role": "user", "content": prompt}],
        }
        if config.max_tokens is not None:
            payload["max_tokens"] = config.max_tokens
        if config.temperature is not None and _model_supports_temperature(config.model):
            payload["temperature"] = config.temperature
        if config.json_mode:
            payload["response_format"] = {"type": "json_object"}
        return payload

    def invoke(self, prompt: str, config: ModelConfig, timeout_s: float | None = None) -> Dict[str, Any]:
        if not self.api_key:
            raise LLMError(f"{self.name} API key is not configured", LLMErrorCategory.input_validation)
        request = Request(
            f"{self.base_url}/chat/completions",
            data=json.dumps(self.build_payload(prompt, config)).encode("utf-8"),
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        timeout = timeout_s or config.timeout_s or self.default_timeout_s
        try:
            with urlopen(request, timeout=timeout) as response:
                body = response.read().decode("utf-8")
        except HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace") if exc.fp else str(exc)
            raise LLMError(
                f"{self.name} API error {exc.code}: {detail}",
                category_for_status(exc.code),
                status_code=exc.code,
            ) from exc
        except (TimeoutError, socket.timeout) as exc:
            raise LLMError(f"{self.name} API timed out after {timeout}s", LLMErrorCategory.timeout) from exc
        except URLError as exc:
            category = (
                LLMErrorCategory.timeout
                if isinstance(exc.reason, (TimeoutError, socket.timeout))
                else LLMErrorCategory.network
            )
            raise LLMError(f"{self.name} API connection error: {exc.reason}", category) from exc
        try:
            data = json.loads(body)
        except json.JSONDecodeError as exc:
            raise LLMError(f"{self.name} API returned non-JSON body", LLMErrorCategory.type_safety) from exc
        if not isinstance(data, dict):
            raise LLMError(f"{self.name} API returned unexpected body", LLMErrorCategory.type_safety)
        return data


class ZhipuProvider(ChatCompletionsProvider):
    def __init__(self, api_key: str, base_url: str = "https://open.bigmodel.cn/api/paas/v4") -> None:
        super().__init__("zhipu", Tier.free, api_key, base_url)


class DeepSeekProvider(ChatCompletionsProvider):
    def __init__(self, api_key: str, base_url: str = "https://api.deepseek.com/v1") -> None:
        super().__init__("deepseek", Tier.paid, api_key, base_url)


class OpenAIProvider(ChatCompletionsProvider):
    def __init__(self, api_key: str, base_url: str = "https://api.openai.com/v1") -> None:
        super().__init__("openai", Tier.paid, api_key, base_url)


class GeminiProvider(ChatCompletionsProvider):
    def __init__(
        self,
        api_key: str,
        base_url: str = "https://generativelanguage.googleapis.com/v1beta/openai",
    ) -> None:
        super().__init__("gemini", Tier.free, api_key, base_url)

    def build_payload(self, prompt: str, config: ModelConfig) -> Dict[str, Any]:
        payload = super().build_payload(prompt, config)
        # The compatibility endpoint rejects response_format on some models.
        payload.pop("response_format", None)
        return payload


class MockLLMProvider(LLMProvider):
    """Deterministic provider for tests and local runs.

    ``responses`` may be a fixed string, a list consumed in order (the last
    item repeats) or a callable receiving the prompt. Exceptions in the list
    or raised by the callable are propagated from ``invoke``.
    """

    def __init__(
        self,
        name: str = "mock",
        tier: Tier = Tier.free,
        responses: Any = '{"ok": true}',
        ready: bool = True,
    ) -> None:
        self.name = name
        self.tier = tier
        self.responses = responses
        self.ready = ready
        self.calls: List[str] = []

    def is_ready(self) -> bool:
        return self.ready

    def _next_response(self, prompt: str) -> Any:
        if callable(self.responses):
            return self.responses(prompt)
        if isinstance(self.responses, list):
            index = min(len(self.calls) - 1, len(self.responses) - 1)
            return self.responses[index]
        return self.responses

    def invoke(self, prompt: str, config: ModelConfig, timeout_s: float | None = None) -> Dict[str, Any]:
        self.calls.append(prompt)
        outcome = self._next_response(prompt)
        if isinstance(outcome, BaseException):
            raise outcome
        content = str(outcome)
        prompt_tokens = max(1, len(prompt) // 4)
        completion_tokens = max(1, len(content) // 4)
        return {
            "model": config.model,
            "choices": [{"message": {"role": "assistant", "content": content}}],
            "usage": {
                "prompt_tokens": prompt_tokens,
                "completion_tokens": completion_tokens,
                "total_tokens": prompt_tokens + completion_tokens,
            },
        }


def extract_usage(raw: Dict[str, Any]) -> Optional[TokenUsage]:
    usage = raw.get("usage") or raw.get("usageMetadata") or raw.get("usage_metadata") or raw.get("token_usage")
    if not isinstance(usage, dict):
        return None
    input_tokens = _first_int(usage, _INPUT_KEYS)
    output_tokens = _first_int(usage, _OUTPUT_KEYS)
    total_tokens = _first_int(usage, _TOTAL_KEYS) or input_tokens + output_tokens
    if not (input_tokens or output_tokens or total_tokens):
        return None
    return TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens, total_tokens=total_tokens)


def _first_int(data: Dict[str, Any], keys: tuple[str, ...]) -> int:
    for key in keys:
        value = data.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return int(value)
    return 0


def _extract_message_content(raw: Dict[str, Any]) -> str:
    choices = raw.get("choices")
    if not isinstance(choices, list) or not choices:
        raise LLMError("provider response has no choices", LLMErrorCategory.type_safety)
    message = choices[0].get("message") if isinstance(choices[0], dict) else None
    if not isinstance(message, dict):
        raise LLMError("provider response has no message", LLMErrorCategory.type_safety)
    content = message.get("content")
    if isinstance(content, list):
        parts = [part.get("text", "") for part in content if isinstance(part, dict)]
        content = "".join(parts)
    if not isinstance(content, str):
        raise LLMError("provider message content is not text", LLMErrorCategory.type_safety)
    return content


def _model_supports_temperature(model: str) -> bool:
    normalized = (model or "").strip().lower()
    if "reasoner" in normalized:
        return False
    return not normalized.startswith(("gpt-5", "o1", "o3", "o4"))


_PROVIDER_CLASSES: Dict[str, Callable[..., ChatCompletionsProvider]] = {
    "zhipu": ZhipuProvider,
    "deepseek": DeepSeekProvider,
    "openai": OpenAIProvider,
    "gemini": GeminiProvider,
}


def build_providers(settings: Settings) -> List[LLMProvider]:
    providers: List[LLMProvider] = []
    for name, provider_cls in _PROVIDER_CLASSES.items():
        provider_settings = settings.providers.get(name)
        if provider_settings is None:
            continue
        providers.append(provider_cls(api_key=provider_settings.api_key, base_url=provider_settings.base_url))
    return providers
