from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from json_repair import repair_json
from prometheus_client import Counter

from libs.core import logging as core_logging

from .schema_normalizer import normalize_to_schema

LOGGER = core_logging.get_logger("json_validator")

PARSE_STRATEGY_RESULTS = Counter(
    "llm_json_parse_strategy_total",
    "JSON repair pipeline strategy outcomes",
    ["strategy", "outcome"],
)

FENCE = "```"
MAX_STRATEGIES = 4

_THINK_BLOCK = re.compile(r"<think>.*?</think>", re.S)
_FENCE_OPEN = re.compile(r"```(?:json|javascript|js)?\s*", re.I)
_FENCE_CLOSE = re.compile(r"\s*```")
_INVISIBLE = re.compile(r"[\u200b-\u200d\ufeff]")
_TRAILING_COMMA = re.compile(r",\s*([}\]])")
_DUPLICATE_COMMAS = re.compile(r",\s*,+")
_CLOSING_QUOTE_CONTEXT = re.compile(r"\s*(?:[,\]\}:\uff0c\uff1a]|$)")
_STRING_LITERAL = re.compile(r'"(?:\\.|[^"\\])*"', re.S)


@dataclass
class ValidationOptions:
    enable_fallback: bool = True
    max_attempts: int = MAX_STRATEGIES
    strict_mode: bool = False
    correlation_id: Optional[str] = None
    route: Optional[str] = None


@dataclass(frozen=True)
class ValidationSuccess:
    data: Any
    warnings: Tuple[str, ...] = ()
    attempts: int = 1
    fallback_used: bool = False
    success: bool = field(default=True, init=False)


@dataclass(frozen=True)
class ValidationFailure:
    error: str
    warnings: Tuple[str, ...] = ()
    attempts: int = 0
    success: bool = field(default=False, init=False)


ValidationResult = Union[ValidationSuccess, ValidationFailure]


def clean_json_text(text: str) -> str:
    """Strip wrappers LLMs put around JSON and normalise characters that break parsing."""
    cleaned = text.strip()
    cleaned = _THINK_BLOCK.sub("", cleaned)
    # Double-wrapped output needs more than one pass.
    while FENCE in cleaned:
        cleaned = _FENCE_OPEN.sub("", cleaned)
        cleaned = _FENCE_CLOSE.sub("", cleaned)
    cleaned = cleaned.lstrip("`").rstrip("`")
    cleaned = _INVISIBLE.sub("", cleaned)
    cleaned = cleaned.replace("\u3000", " ")
    cleaned = _TRAILING_COMMA.sub(r"\1", cleaned)
    cleaned = cleaned.strip()
    cleaned = fix_quotes_in_strings(cleaned)
    return escape_control_chars_in_strings(cleaned)


def fix_quotes_in_strings(text: str) -> str:
    """Escape stray ASCII quotes inside string literals.

    Only ``"`` delimits strings. A quote inside a string closes it when the
    next non-space character is structural; otherwise it is escaped. Curly
    quotes outside strings are treated as mistyped delimiters.
    """
    result: List[str] = []
    in_string = False
    escaped = False
    for index, char in enumerate(text):
        if escaped:
            result.append(char)
            escaped = False
            continue
        if char == "\\":
            result.append(char)
            escaped = True
            continue
        if char == '"':
            if not in_string:
                in_string = True
                result.append(char)
            elif _CLOSING_QUOTE_CONTEXT.match(text, index + 1):
                in_string = False
                result.append(char)
            else:
                result.append('\\"')
            continue
        if not in_string and char in ("\u201c", "\u201d"):
            in_string = char == "\u201c"
            result.append('"')
            continue
        result.append(char)
    return "".join(result)


def escape_control_chars_in_strings(text: str) -> str:
    result: List[str] = []
    in_string = False
    escaped = False
    for char in text:
        if escaped:
            result.append(char)
            escaped = False
            continue
        if char == "\\":
            result.append(char)
            escaped = True
            continue
        if char == '"':
            in_string = not in_string
            result.append(char)
            continue
        if in_string and ord(char) < 32:
            if char == "\n":
                result.append("\\n")
            elif char == "\r":
                result.append("\\r")
            elif char == "\t":
                result.append("\\t")
            else:
                result.append(f"\\u{ord(char):04x}")
            continue
        result.append(char)
    return "".join(result)


def extract_json_from_text(text: str) -> str:
    """Return the first balanced JSON object or array embedded in ``text``.

    Brackets inside string literals are ignored. If the text ends before the
    value is closed, the missing closers are appended.
    """
    start = -1
    for index, char in enumerate(text):
        if char in "{[":
            start = index
            break
    if start < 0:
        return ""
    closers: List[str] = []
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if escaped:
            escaped = False
            continue
        if char == "\\":
            escaped = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char == "{":
            closers.append("}")
        elif char == "[":
            closers.append("]")
        elif char in "}]":
            if closers and closers[-1] == char:
                closers.pop()
            if not closers:
                return text[start : index + 1]
    remaining = text[start:]
    if in_string:
        remaining += '"'
    return _TRAILING_COMMA.sub(r"\1", remaining.rstrip().rstrip(",") + "".join(reversed(closers)))


def _map_outside_strings(text: str, fn: Callable[[str], str]) -> str:
    parts: List[str] = []
    last = 0
    for match in _STRING_LITERAL.finditer(text):
        parts.append(fn(text[last : match.start()]))
        parts.append(match.group(0))
        last = match.end()
    parts.append(fn(text[last:]))
    return "".join(parts)


def _normalize_punctuation(fragment: str) -> str:
    fragment = fragment.replace("\uff0c", ",").replace("\uff1a", ":")
    return _DUPLICATE_COMMAS.sub(",", fragment)


def _strip_extra_commas(fragment: str) -> str:
    fragment = _TRAILING_COMMA.sub(r"\1", fragment)
    return _DUPLICATE_COMMAS.sub(",", fragment)


def fix_json_syntax(text: str) -> str:
    """Best-effort repair of common LLM syntax mistakes.

    Full-width punctuation is mapped to ASCII first, ``json_repair`` handles
    quoting, bare keys and missing commas, and any leftover
    extra commas are dropped. Only an object or array produced by the library
    replaces the input.
    """
    fixed = _map_outside_strings(text, _normalize_punctuation)
    repaired = repair_json(fixed)
    if isinstance(repaired, str) and repaired.lstrip().startswith(("{", "[")):
        fixed = repaired
    return _map_outside_strings(fixed, _strip_extra_commas)


def _parse_direct(content: str) -> Any:
    return json.loads(content)


def _parse_cleaned(content: str) -> Any:
    return json.loads(clean_json_text(content))


def _parse_extracted(content: str) -> Any:
    extracted = extract_json_from_text(clean_json_text(content))
    if not extracted:
        raise ValueError("No JSON content found")
    return json.loads(extracted)


def _parse_repaired(content: str) -> Any:
    cleaned = clean_json_text(content)
    extracted = extract_json_from_text(cleaned) or cleaned
    return json.loads(fix_json_syntax(extracted))


STRATEGIES: List[Tuple[str, str, Callable[[str], Any]]] = [
    ("direct", "Direct parse failed", _parse_direct),
    ("cleaned", "Cleaned parse failed", _parse_cleaned),
    ("extracted", "Extracted parse failed", _parse_extracted),
    ("repaired", "Repaired parse failed", _parse_repaired),
]


def validate_json(content: str, options: ValidationOptions | None = None) -> ValidationResult:
    """Run the parsing strategies in order and stop at the first success."""
    opts = options or ValidationOptions()
    warnings: List[str] = []
    attempts = 0
    has_fence = FENCE in content
    log_context: Dict[str, Any] = {"correlation_id": opts.correlation_id, "route": opts.route}
    for name, failure_label, strategy in STRATEGIES:
        if attempts >= opts.max_attempts:
            break
        if name == "direct" and has_fence:
            continue
        if name == "repaired" and not opts.enable_fallback:
            continue
        attempts += 1
        try:
            data = strategy(content)
        except (ValueError, RecursionError) as exc:
            PARSE_STRATEGY_RESULTS.labels(name, "failure").inc()
            LOGGER.debug("json_parse_attempt", strategy=name, success=False, error=str(exc), **log_context)
            if name == "direct" and opts.strict_mode:
                return ValidationFailure(error=f"Strict mode: {exc}", warnings=tuple(warnings), attempts=attempts)
            warnings.append(f"{failure_label}: {exc}")
            continue
        PARSE_STRATEGY_RESULTS.labels(name, "success").inc()
        LOGGER.debug("json_parse_attempt", strategy=name, success=True, attempts=attempts, **log_context)
        return ValidationSuccess(
            data=data,
            warnings=tuple(warnings),
            attempts=attempts,
            fallback_used=name == "repaired",
        )
    LOGGER.debug("json_parse_exhausted", attempts=attempts, content_length=len(content), **log_context)
    return ValidationFailure(
        error=f"All parsing strategies failed after {attempts} attempts",
        warnings=tuple(warnings),
        attempts=attempts,
    )


def validate_llm_response(
    content: str,
    expected_fields: Optional[Dict[str, str]] = None,
    options: ValidationOptions | None = None,
) -> ValidationResult:
    result = validate_json(content, options)
    if isinstance(result, ValidationFailure) or not expected_fields:
        return result
    normalized, coercions = normalize_to_schema(result.data, expected_fields)
    return ValidationSuccess(
        data=normalized,
        warnings=result.warnings + tuple(coercions),
        attempts=result.attempts,
        fallback_used=result.fallback_used,
    )
