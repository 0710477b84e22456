from __future__ import annotations

import hashlib
import hmac
import json
import time
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Optional

from pydantic import ValidationError

from libs.core.models import CacheEntry, CacheValidation, ValidationLevel

DEFAULT_MAX_AGE_MS = 24 * 60 * 60 * 1000
DEFAULT_TTL_MS = 60 * 60 * 1000
DEFAULT_SECRET = "default-cache-secret"

STRICT_SOURCES: FrozenSet[str] = frozenset({"quota", "payment"})
STANDARD_SOURCES: FrozenSet[str] = frozenset({"user", "service"})
TRUSTED_SOURCES: FrozenSet[str] = frozenset({"system", "database", "internal"})


@dataclass
class ValidationConfig:
    level: ValidationLevel = ValidationLevel.BASIC
    max_age_ms: int = DEFAULT_MAX_AGE_MS
    secret: str = DEFAULT_SECRET
    trusted_sources: FrozenSet[str] = field(default_factory=lambda: TRUSTED_SOURCES)


def now_ms() -> int:
    return int(time.time() * 1000)


def canonical_json(data: Any) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def compute_checksum(data: Any) -> str:
    return hashlib.sha256(canonical_json(data).encode("utf-8")).hexdigest()[:16]


def compute_signature(checksum: str, created_at: int, secret: str) -> str:
    payload = f"{checksum}.{created_at}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def create_entry(
    data: Any,
    level: ValidationLevel = ValidationLevel.BASIC,
    ttl_ms: int = DEFAULT_TTL_MS,
    *,
    secret: str = DEFAULT_SECRET,
    now: Optional[int] = None,
) -> CacheEntry:
    created_at = now if now is not None else now_ms()
    checksum = compute_checksum(data) if level >= ValidationLevel.STANDARD else None
    signature = (
        compute_signature(checksum, created_at, secret)
        if level >= ValidationLevel.STRICT and checksum is not None
        else None
    )
    return CacheEntry(
        data=data,
        created_at=created_at,
        expires_at=created_at + ttl_ms,
        checksum=checksum,
        signature=signature,
    )


def _coerce_entry(entry: Any) -> Optional[CacheEntry]:
    if isinstance(entry, CacheEntry):
        return entry
    if isinstance(entry, dict):
        try:
            return CacheEntry.model_validate(entry)
        except ValidationError:
            return None
    return None


def validate(
    entry: Any,
    level: ValidationLevel = ValidationLevel.BASIC,
    config: ValidationConfig | None = None,
    *,
    now: Optional[int] = None,
) -> CacheValidation:
    """Check an entry at ``level``. Expiry is enforced at every level."""
    cfg = config or ValidationConfig(level=level)
    current = now if now is not None else now_ms()
    parsed = _coerce_entry(entry)
    if parsed is None:
        return CacheValidation(is_valid=False, level=level, reason="malformed")
    if current >= parsed.expires_at:
        return CacheValidation(is_valid=False, level=level, reason="expired")
    if level >= ValidationLevel.BASIC and current - parsed.created_at > cfg.max_age_ms:
        return CacheValidation(is_valid=False, level=level, reason="max_age_exceeded")
    if level >= ValidationLevel.STANDARD:
        if not parsed.checksum or not hmac.compare_digest(parsed.checksum, compute_checksum(parsed.data)):
            return CacheValidation(is_valid=False, level=level, reason="checksum_mismatch")
    if level >= ValidationLevel.STRICT:
        expected = compute_signature(parsed.checksum or "", parsed.created_at, cfg.secret)
        if not parsed.signature or not hmac.compare_digest(parsed.signature, expected):
            return CacheValidation(is_valid=False, level=level, reason="signature_mismatch")
    return CacheValidation(is_valid=True, data=parsed.data, level=level)


def level_for_source(source: str) -> ValidationLevel:
    if source in STRICT_SOURCES:
        return ValidationLevel.STRICT
    if source in STANDARD_SOURCES:
        return ValidationLevel.STANDARD
    return ValidationLevel.BASIC


def smart_validate(
    entry: Any,
    source: str = "unknown",
    config: ValidationConfig | None = None,
    *,
    now: Optional[int] = None,
) -> CacheValidation:
    """Pick the validation level from the data source.

    Trusted sources skip integrity checks but an expired entry is still
    rejected.
    """
    cfg = config or ValidationConfig()
    if source in cfg.trusted_sources:
        return validate(entry, ValidationLevel.NONE, cfg, now=now)
    return validate(entry, level_for_source(source), cfg, now=now)


def batch_validate(
    entries: Dict[str, Any],
    level: ValidationLevel = ValidationLevel.BASIC,
    config: ValidationConfig | None = None,
    *,
    now: Optional[int] = None,
) -> Dict[str, Any]:
    valid: Dict[str, Any] = {}
    invalid: List[str] = []
    for key, entry in entries.items():
        result = validate(entry, level, config, now=now)
        if result.is_valid:
            valid[key] = result.data
        else:
            invalid.append(key)
    return {
        "valid": valid,
        "invalid": invalid,
        "stats": {"total": len(entries), "valid": len(valid), "invalid": len(invalid)},
    }
