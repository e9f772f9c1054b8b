"""Sanitization of raw service-advertisement (TXT-style) records."""

from __future__ import annotations

from collections.abc import Mapping
import logging
import re
from typing import Any

from netwarden.errors import MalformedAdvertisement
from netwarden.models import (
    MAX_BINARY_VALUE_BYTES,
    MAX_LABEL_BYTES,
    MAX_RECORD_KEY_BYTES,
    MAX_RECORDS_PER_DEVICE,
    MAX_TEXT_VALUE_BYTES,
    SanitizedRecords,
)

logger = logging.getLogger(__name__)

SAFE_KEY_PATTERN = re.compile(r"^[A-Za-z0-9._#-]+$")

# HomeKit accessory keys plus the identifiers the registry and anomaly engine read.
PRIORITY_KEYS = (
    "id",
    "md",
    "ci",
    "pv",
    "sf",
    "ff",
    "c#",
    "s#",
    "sh",
    "mac",
    "deviceid",
    "model",
    "ssid",
    "essid",
    "bssid",
)


def _truncate_utf8(text: str, limit: int) -> str:
    encoded = text.encode("utf-8")
    if len(encoded) <= limit:
        return text
    return encoded[:limit].decode("utf-8", errors="ignore")


def sanitize_label(value: Any, limit: int = MAX_LABEL_BYTES) -> str | None:
    """Trim an advertised host or instance name to printable text of at most ``limit`` bytes."""
    if value is None:
        return None
    text = "".join(char for char in str(value) if char.isprintable()).strip()
    return _truncate_utf8(text, limit).strip() or None


def _normalize_key(raw_key: Any) -> str:
    if isinstance(raw_key, (bytes, bytearray)):
        try:
            key = bytes(raw_key).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedAdvertisement("key is not valid UTF-8") from exc
    elif isinstance(raw_key, str):
        key = raw_key
    else:
        raise MalformedAdvertisement(f"unsupported key type {type(raw_key).__name__}")

    key = key.strip()
    if not key:
        raise MalformedAdvertisement("empty key")
    if len(key.encode("utf-8")) > MAX_RECORD_KEY_BYTES:
        raise MalformedAdvertisement(f"key longer than {MAX_RECORD_KEY_BYTES} bytes", key[:32])
    if not SAFE_KEY_PATTERN.match(key):
        raise MalformedAdvertisement("key contains unsafe characters", key[:32])
    return key.lower()


def _normalize_value(key: str, raw_value: Any) -> str | bytes:
    if raw_value is None:
        return ""
    if isinstance(raw_value, str):
        return _truncate_utf8(raw_value, MAX_TEXT_VALUE_BYTES)
    if isinstance(raw_value, (bytes, bytearray)):
        payload = bytes(raw_value)
        try:
            text = payload.decode("utf-8")
        except UnicodeDecodeError:
            return payload[:MAX_BINARY_VALUE_BYTES]
        if text.isprintable():
            return _truncate_utf8(text, MAX_TEXT_VALUE_BYTES)
        return payload[:MAX_BINARY_VALUE_BYTES]
    if isinstance(raw_value, (int, float, bool)):
        return str(raw_value)
    raise MalformedAdvertisement(f"unsupported value type {type(raw_value).__name__}", key)


def _selection_order(key: str) -> tuple[int, int, str]:
    if key in PRIORITY_KEYS:
        return (0, PRIORITY_KEYS.index(key), key)
    return (1, 0, key)


def sanitize_records(
    raw: Mapping[Any, Any] | None,
    *,
    source: str = "",
    rejected: list[MalformedAdvertisement] | None = None,
) -> SanitizedRecords:
    """Turn untrusted advertisement records into a bounded :class:`SanitizedRecords`.

    Malformed entries are logged and skipped; they never abort the
    advertisement. Text values are truncated to 1024 bytes, binary values to
    2048 bytes. Beyond 50 records, well-known keys are kept first, then the
    rest in sorted key order. Each dropped entry is appended to ``rejected``
    when the caller passes a list.
    """
    if not raw:
        return SanitizedRecords()
    if not isinstance(raw, Mapping):
        problem = MalformedAdvertisement(f"records must be a mapping, got {type(raw).__name__}")
        logger.warning("Dropping records from %s: %s", source or "unknown source", problem)
        if rejected is not None:
            rejected.append(problem)
        return SanitizedRecords()

    cleaned: dict[str, str | bytes] = {}
    for raw_key, raw_value in raw.items():
        try:
            key = _normalize_key(raw_key)
            value = _normalize_value(key, raw_value)
        except MalformedAdvertisement as problem:
            logger.warning("Dropping record from %s: %s", source or "unknown source", problem)
            if rejected is not None:
                rejected.append(problem)
            continue
        # Keys that collide after case folding keep the first occurrence.
        if key in cleaned:
            continue
        cleaned[key] = value

    if len(cleaned) > MAX_RECORDS_PER_DEVICE:
        kept = sorted(cleaned, key=_selection_order)[:MAX_RECORDS_PER_DEVICE]
        dropped = len(cleaned) - len(kept)
        logger.warning(
            "Advertisement from %s carried %d records; keeping %d, dropping %d",
            source or "unknown source",
            len(cleaned),
            MAX_RECORDS_PER_DEVICE,
            dropped,
        )
        cleaned = {key: cleaned[key] for key in kept}

    return SanitizedRecords(cleaned)
