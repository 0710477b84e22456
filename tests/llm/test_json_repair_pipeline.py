from __future__ import annotations

import json

from libs.llm import json_validator
from libs.llm.json_validator import ValidationFailure, ValidationOptions, ValidationSuccess


def test_valid_json_parses_directly() -> None:
    result = json_validator.validate_json('{"role": "Engineer", "years": 5}')
    assert isinstance(result, ValidationSuccess)
    assert result.success is True
    assert result.data == {"role": "Engineer", "years": 5}
    assert result.attempts == 1
    assert result.fallback_used is False
    assert result.warnings == ()


def test_fenced_output_skips_direct_parse() -> None:
    result = json_validator.validate_json('```json\n{"role": "Engineer"}\n```')
    assert isinstance(result, ValidationSuccess)
    assert result.data == {"role": "Engineer"}
    assert result.attempts == 1
    assert result.warnings == ()


def test_think_block_and_trailing_comma_are_cleaned() -> None:
    result = json_validator.validate_json('<think>plan {draft}</think>{"a": [1, 2,],}')
    assert isinstance(result, ValidationSuccess)
    assert result.data == {"a": [1, 2]}
    assert result.attempts == 2
    assert result.warnings[0].startswith("Direct parse failed")


def test_json_embedded_in_prose_is_extracted() -> None:
    result = json_validator.validate_json('Here is the result: {"a": {"b": "}"}} hope it helps')
    assert isinstance(result, ValidationSuccess)
    assert result.data == {"a": {"b": "}"}}
    assert result.attempts == 3
    assert [warning.split(":")[0] for warning in result.warnings] == [
        "Direct parse failed",
        "Cleaned parse failed",
    ]


def test_truncated_output_is_closed() -> None:
    result = json_validator.validate_json('{"skills": ["python", "sql"')
    assert isinstance(result, ValidationSuccess)
    assert result.data == {"skills": ["python", "sql"]}
    assert result.fallback_used is False


def test_unescaped_inner_quotes_are_escaped() -> None:
    result = json_validator.validate_json('{"quote": "He said "hi" to me"}')
    assert isinstance(result, ValidationSuccess)
    assert result.data == {"quote": 'He said "hi" to me'}


def test_raw_newlines_inside_strings() -> None:
    result = json_validator.validate_json('{"text": "line one\nline two"}')
    assert isinstance(result, ValidationSuccess)
    assert result.data == {"text": "line one\nline two"}


def test_chatty_fenced_output_with_trailing_comma() -> None:
    result = json_validator.validate_json('Sure! ```json\n{"score": 85, "highlights": ["a"],}\n```')
    assert isinstance(result, ValidationSuccess)
    assert result.data == {"score": 85, "highlights": ["a"]}
    assert result.fallback_used is False


def test_deeply_nested_input_fails_cleanly() -> None:
    result = json_validator.validate_json("[" * 100000 + "]" * 100000)
    assert isinstance(result, ValidationFailure)
    assert result.attempts == 4
    assert len(result.warnings) == 4


def test_single_quotes_need_syntax_repair() -> None:
    result = json_validator.validate_json("{'name': 'Ada', 'active': true, 'manager': null}")
    assert isinstance(result, ValidationSuccess)
    assert result.data == {"name": "Ada", "active": True, "manager": None}
    assert result.attempts == 4
    assert result.fallback_used is True
    assert len(result.warnings) == 3


def test_full_width_punctuation_is_repaired() -> None:
    content = '{"a"\uff1a"x"\uff0c"b"\uff1a"y"}'
    result = json_validator.validate_json(content)
    assert isinstance(result, ValidationSuccess)
    assert result.data == {"a": "x", "b": "y"}


def test_bare_keys_and_missing_commas_are_repaired() -> None:
    result = json_validator.validate_json('{name: "Ada",, "tags": ["x"]\n"level": 3}')
    assert isinstance(result, ValidationSuccess)
    assert result.data == {"name": "Ada", "tags": ["x"], "level": 3}
    assert result.fallback_used is True


def test_repair_disabled_without_fallback() -> None:
    result = json_validator.validate_json("{'a': 1}", ValidationOptions(enable_fallback=False))
    assert isinstance(result, ValidationFailure)
    assert result.success is False
    assert result.attempts == 3
    assert result.error == "All parsing strategies failed after 3 attempts"


def test_strict_mode_stops_after_direct_parse() -> None:
    result = json_validator.validate_json("{'a': 1}", ValidationOptions(strict_mode=True))
    assert isinstance(result, ValidationFailure)
    assert result.error.startswith("Strict mode:")
    assert result.attempts == 1


def test_max_attempts_limits_strategies() -> None:
    result = json_validator.validate_json("{'a': 1}", ValidationOptions(max_attempts=2))
    assert isinstance(result, ValidationFailure)
    assert result.attempts == 2


def test_unrecoverable_text_fails_with_warnings() -> None:
    result = json_validator.validate_json("I cannot help with that request.")
    assert isinstance(result, ValidationFailure)
    assert result.attempts == 4
    assert result.error == "All parsing strategies failed after 4 attempts"
    assert len(result.warnings) == 4


def test_extract_json_ignores_brackets_in_strings() -> None:
    text = 'prefix [1, "]", {"k": "{"}] suffix'
    assert json.loads(json_validator.extract_json_from_text(text)) == [1, "]", {"k": "{"}]
    assert json_validator.extract_json_from_text("no json at all") == ""


def test_extract_json_closes_open_string() -> None:
    extracted = json_validator.extract_json_from_text('{"summary": "cut off mid')
    assert json.loads(extracted) == {"summary": "cut off mid"}


def test_clean_json_text_strips_invisible_characters() -> None:
    cleaned = json_validator.clean_json_text('\ufeff```json\n{"a":\u3000"b"\u200b}\n```')
    assert json.loads(cleaned) == {"a": "b"}


def test_validate_llm_response_normalizes_fields() -> None:
    result = json_validator.validate_llm_response(
        '{"overview": 42, "key_skills": "python"}',
        {"overview": "string", "key_skills": "string[]", "risks": "string[]"},
    )
    assert isinstance(result, ValidationSuccess)
    assert result.data == {"overview": "42", "key_skills": ["python"], "risks": []}
    assert "Field 'overview' expected string, got int; converted to string" in result.warnings
    assert "Missing field 'risks'; using default" in result.warnings


def test_validate_llm_response_passes_failure_through() -> None:
    result = json_validator.validate_llm_response("nothing here", {"overview": "string"})
    assert isinstance(result, ValidationFailure)
