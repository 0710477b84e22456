from __future__ import annotations

import io
import json
import socket
from typing import Any, Dict, List
from urllib.error import HTTPError, URLError

import pytest

from libs.core.config import Settings, load_settings
from libs.core.errors import LLMError, LLMErrorCategory
from libs.core.models import ModelConfig, Tier
from libs.llm import providers


class _FakeHTTPResponse:
    def __init__(self, payload: Any) -> None:
        self._body = payload if isinstance(payload, bytes) else json.dumps(payload).encode("utf-8")

    def read(self) -> bytes:
        return self._body

    def __enter__(self) -> "_FakeHTTPResponse":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        return False


def _completion(content: str) -> Dict[str, Any]:
    return {
        "id": "chatcmpl-1",
        "model": "deepseek-chat",
        "choices": [{"message": {"role": "assistant", "content": content}}],
        "usage": {"prompt_tokens": 12, "completion_tokens": 8, "total_tokens": 20},
    }


def _config(model: str = "deepseek-chat", **kwargs: Any) -> ModelConfig:
    return ModelConfig(provider="deepseek", model=model, tier=Tier.paid, max_tokens=100, temperature=0.7, **kwargs)


def _capture(monkeypatch: pytest.MonkeyPatch, response: Any) -> List[Any]:
    captured: List[Any] = []

    def fake_urlopen(request, timeout=None):
        captured.append((request, timeout))
        if isinstance(response, BaseException):
            raise response
        return _FakeHTTPResponse(response)

    monkeypatch.setattr(providers, "urlopen", fake_urlopen)
    return captured


def test_chat_completion_request_and_parse(monkeypatch: pytest.MonkeyPatch) -> None:
    captured = _capture(monkeypatch, _completion('{"ok": true}'))
    provider = providers.DeepSeekProvider(api_key="sk-test")
    response = provider.generate("summarize", _config(json_mode=True), timeout_s=12)

    request, timeout = captured[0]
    body = json.loads(request.data.decode("utf-8"))
    assert request.full_url == "https://api.deepseek.com/v1/chat/completions"
    assert request.get_header("Authorization") == "Bearer sk-test"
    assert timeout == 12
    assert body["messages"] == [{"role": "user", "content": "summarize"}]
    assert body["max_tokens"] == 100
    assert body["temperature"] == 0.7
    assert body["response_format"] == {"type": "json_object"}
    assert response.content == '{"ok": true}'
    assert response.usage.total_tokens == 20
    assert response.metadata["id"] == "chatcmpl-1"


def test_reasoning_models_omit_temperature() -> None:
    provider = providers.DeepSeekProvider(api_key="sk-test")
    assert "temperature" not in provider.build_payload("p", _config("deepseek-reasoner"))
    assert "temperature" not in provider.build_payload("p", _config("o3-mini"))
    assert "temperature" in provider.build_payload("p", _config("glm-4.5-flash"))


def test_gemini_drops_response_format() -> None:
    provider = providers.GeminiProvider(api_key="g-key")
    payload = provider.build_payload("p", _config("gemini-2.0-flash", json_mode=True))
    assert "response_format" not in payload


def test_http_status_maps_to_category(monkeypatch: pytest.MonkeyPatch) -> None:
    error = HTTPError("https://api.deepseek.com", 429, "Too Many Requests", None, io.BytesIO(b"slow down"))
    _capture(monkeypatch, error)
    provider = providers.DeepSeekProvider(api_key="sk-test")
    with pytest.raises(LLMError) as excinfo:
        provider.generate("p", _config())
    assert excinfo.value.category == LLMErrorCategory.rate_limit
    assert excinfo.value.status_code == 429
    assert "slow down" in str(excinfo.value)


def test_connection_and_timeout_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    provider = providers.ZhipuProvider(api_key="zk")
    _capture(monkeypatch, URLError(ConnectionRefusedError("refused")))
    with pytest.raises(LLMError) as excinfo:
        provider.generate("p", _config("glm-4.5-flash"))
    assert excinfo.value.category == LLMErrorCategory.network

    _capture(monkeypatch, URLError(socket.timeout("timed out")))
    with pytest.raises(LLMError) as excinfo:
        provider.generate("p", _config("glm-4.5-flash"))
    assert excinfo.value.category == LLMErrorCategory.timeout

    _capture(monkeypatch, TimeoutError("read timed out"))
    with pytest.raises(LLMError) as excinfo:
        provider.generate("p", _config("glm-4.5-flash"))
    assert excinfo.value.category == LLMErrorCategory.timeout


def test_non_json_body_is_type_safety_error(monkeypatch: pytest.MonkeyPatch) -> None:
    _capture(monkeypatch, b"<html>bad gateway</html>")
    with pytest.raises(LLMError) as excinfo:
        providers.OpenAIProvider(api_key="sk").generate("p", _config("gpt-4o-mini"))
    assert excinfo.value.category == LLMErrorCategory.type_safety


def test_missing_choices_is_type_safety_error(monkeypatch: pytest.MonkeyPatch) -> None:
    _capture(monkeypatch, {"error": "nothing"})
    with pytest.raises(LLMError) as excinfo:
        providers.OpenAIProvider(api_key="sk").generate("p", _config("gpt-4o-mini"))
    assert excinfo.value.category == LLMErrorCategory.type_safety


def test_missing_api_key_is_not_ready() -> None:
    provider = providers.ZhipuProvider(api_key="")
    assert provider.is_ready() is False
    with pytest.raises(LLMError) as excinfo:
        provider.invoke("p", _config("glm-4.5-flash"))
    assert excinfo.value.category == LLMErrorCategory.input_validation


def test_extract_usage_variants() -> None:
    gemini = providers.extract_usage(
        {"usageMetadata": {"promptTokenCount": 4, "candidatesTokenCount": 6, "totalTokenCount": 10}}
    )
    assert gemini.input_tokens == 4
    assert gemini.total_tokens == 10
    derived = providers.extract_usage({"usage": {"input_tokens": 3, "output_tokens": 2}})
    assert derived.total_tokens == 5
    assert providers.extract_usage({"usage": {}}) is None
    assert providers.extract_usage({}) is None


def test_content_parts_are_joined() -> None:
    raw = {"choices": [{"message": {"content": [{"type": "text", "text": "a"}, {"type": "text", "text": "b"}]}}]}
    assert providers.MockLLMProvider().parse_response(raw).content == "ab"


def test_mock_provider_sequence_and_errors() -> None:
    mock = providers.MockLLMProvider(responses=["first", LLMError("down", LLMErrorCategory.network), "last"])
    config = _config("mock-model")
    assert mock.generate("a", config).content == "first"
    with pytest.raises(LLMError):
        mock.generate("b", config)
    assert mock.generate("c", config).content == "last"
    assert mock.generate("d", config).content == "last"
    assert mock.calls == ["a", "b", "c", "d"]


def test_build_providers_from_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ZHIPUAI_API_KEY", "zk")
    monkeypatch.setenv("ZHIPU_BASE_URL", "https://proxy.internal/glm/")
    built = {provider.name: provider for provider in providers.build_providers(load_settings())}
    assert set(built) == {"zhipu", "deepseek", "openai", "gemini"}
    assert built["zhipu"].is_ready()
    assert built["zhipu"].base_url == "https://proxy.internal/glm"
    assert providers.build_providers(Settings()) == []
