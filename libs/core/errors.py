from __future__ import annotations

import asyncio
import json
import re
import socket
from enum import Enum
from typing import Dict, Optional
from urllib.error import HTTPError, URLError

from .models import UserFacingError


class LLMErrorCategory(str, Enum):
    input_validation = "input_validation"
    type_safety = "type_safety"
    network = "network"
    timeout = "timeout"
    rate_limit = "rate_limit"
    provider_error = "provider_error"
    parse_error = "parse_error"
    unknown = "unknown"


RETRYABLE_CATEGORIES = frozenset(
    {
        LLMErrorCategory.network,
        LLMErrorCategory.timeout,
        LLMErrorCategory.rate_limit,
        LLMErrorCategory.provider_error,
    }
)


class LLMError(Exception):
    def __init__(
        self,
        detail: str,
        category: LLMErrorCategory = LLMErrorCategory.unknown,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(detail)
        self.detail = detail
        self.category = category
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.category in RETRYABLE_CATEGORIES


class ProviderUnavailableError(LLMError):
    def __init__(self, detail: str) -> None:
        super().__init__(detail, LLMErrorCategory.input_validation)


_MESSAGE_PATTERNS = [
    (re.compile(r"rate.?limit|too many requests|\b429\b", re.I), LLMErrorCategory.rate_limit),
    (re.compile(r"timed? ?out|timeout|deadline", re.I), LLMErrorCategory.timeout),
    (
        re.compile(r"insufficient.?balance|quota|\b50[0234]\b|service unavailable|bad gateway", re.I),
        LLMErrorCategory.provider_error,
    ),
    (
        re.compile(r"econnrefused|econnreset|connection|network|dns|unreachable", re.I),
        LLMErrorCategory.network,
    ),
    (re.compile(r"json|parse|unexpected token", re.I), LLMErrorCategory.parse_error),
    (re.compile(r"invalid|validation|required|bad request|\b400\b", re.I), LLMErrorCategory.input_validation),
]


def category_for_status(status_code: int) -> LLMErrorCategory:
    if status_code == 429:
        return LLMErrorCategory.rate_limit
    if status_code == 408:
        return LLMErrorCategory.timeout
    if status_code >= 500:
        return LLMErrorCategory.provider_error
    if 400 <= status_code < 500:
        return LLMErrorCategory.input_validation
    return LLMErrorCategory.unknown


def classify_error(exc: BaseException) -> LLMErrorCategory:
    if isinstance(exc, LLMError):
        return exc.category
    if isinstance(exc, HTTPError):
        return category_for_status(exc.code)
    if isinstance(exc, (TimeoutError, socket.timeout, asyncio.TimeoutError)):
        return LLMErrorCategory.timeout
    if isinstance(exc, URLError):
        if isinstance(exc.reason, (TimeoutError, socket.timeout)):
            return LLMErrorCategory.timeout
        return LLMErrorCategory.network
    if isinstance(exc, (ConnectionError, socket.gaierror)):
        return LLMErrorCategory.network
    if isinstance(exc, json.JSONDecodeError):
        return LLMErrorCategory.parse_error
    if isinstance(exc, (TypeError, KeyError, AttributeError)):
        return LLMErrorCategory.type_safety
    message = str(exc)
    for pattern, category in _MESSAGE_PATTERNS:
        if pattern.search(message):
            return category
    return LLMErrorCategory.unknown


def is_retryable(category: LLMErrorCategory | str) -> bool:
    try:
        return LLMErrorCategory(category) in RETRYABLE_CATEGORIES
    except ValueError:
        return False


_USER_MESSAGES: Dict[str, Dict[LLMErrorCategory, tuple[str, str]]] = {
    "en": {
        LLMErrorCategory.input_validation: (
            "Invalid request",
            "Some of the submitted information could not be processed. Please check it and try again.",
        ),
        LLMErrorCategory.type_safety: (
            "Unexpected response",
            "The AI service returned an unexpected result. Please try again.",
        ),
        LLMErrorCategory.network: (
            "Connection problem",
            "We could not reach the AI service. Please check your connection and try again.",
        ),
        LLMErrorCategory.timeout: (
            "Request timed out",
            "The AI service took too long to respond. Please try again shortly.",
        ),
        LLMErrorCategory.rate_limit: (
            "Service busy",
            "Too many requests right now. Please wait a moment and try again.",
        ),
        LLMErrorCategory.provider_error: (
            "Service unavailable",
            "The AI service is temporarily unavailable. Please try again later.",
        ),
        LLMErrorCategory.parse_error: (
            "Could not read result",
            "The AI result could not be interpreted. Please try again.",
        ),
        LLMErrorCategory.unknown: (
            "Something went wrong",
            "An unexpected error occurred. Please try again later.",
        ),
    },
    "zh": {
        LLMErrorCategory.input_validation: ("输入有误", "提交的信息无法处理，请检查后重试。"),
        LLMErrorCategory.type_safety: ("结果异常", "AI 服务返回了异常结果，请重试。"),
        LLMErrorCategory.network: ("网络连接问题", "无法连接 AI 服务，请检查网络后重试。"),
        LLMErrorCategory.timeout: ("请求超时", "AI 服务响应时间过长，请稍后重试。"),
        LLMErrorCategory.rate_limit: ("服务繁忙", "当前请求过多，请稍等片刻后重试。"),
        LLMErrorCategory.provider_error: ("服务暂不可用", "AI 服务暂时不可用，请稍后重试。"),
        LLMErrorCategory.parse_error: ("结果解析失败", "无法解析 AI 返回的结果，请重试。"),
        LLMErrorCategory.unknown: ("发生错误", "出现未知错误，请稍后重试。"),
    },
}


def to_user_error(category: LLMErrorCategory | str, locale: str = "en") -> UserFacingError:
    try:
        resolved = LLMErrorCategory(category)
    except ValueError:
        resolved = LLMErrorCategory.unknown
    language = "zh" if locale.lower().startswith("zh") else "en"
    title, message = _USER_MESSAGES[language][resolved]
    return UserFacingError(
        category=resolved.value,
        title=title,
        message=message,
        retryable=resolved in RETRYABLE_CATEGORIES,
    )
