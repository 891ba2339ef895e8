"""General-purpose helper utilities shared across the application."""

from __future__ import annotations

import json
import math
import numbers
import re
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping

import pandas as pd


__all__ = [
    "_dedupe_preserve_order",
    "_normalize_text",
    "_parse_iterable",
    "coerce_int",
    "decode_json_list",
    "encode_json_list",
    "extract_release_year",
    "now_utc_iso",
    "round_half_up",
    "slugify",
]


_SLUG_INVALID_RE = re.compile(r"[^a-z0-9]+")
_YEAR_RE = re.compile(r"(18|19|20)\d{2}")


def now_utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _normalize_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    try:
        if pd.isna(value):
            return ""
    except (TypeError, ValueError):
        pass
    return str(value).strip()


def coerce_int(value: Any) -> int | None:
    """Return ``value`` as an integer when it holds a whole number."""

    if value is None or isinstance(value, bool):
        return None
    try:
        if pd.isna(value):
            return None
    except (TypeError, ValueError):
        pass
    if isinstance(value, numbers.Integral):
        return int(value)
    if isinstance(value, numbers.Real):
        return int(value) if float(value).is_integer() else None
    text = str(value).strip()
    if not text:
        return None
    try:
        numeric = float(text)
    except (TypeError, ValueError):
        return None
    if not numeric.is_integer():
        return None
    return int(numeric)


def _dedupe_preserve_order(values: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    result: list[str] = []
    for value in values:
        text = str(value).strip()
        if not text:
            continue
        key = text.casefold()
        if key in seen:
            continue
        seen.add(key)
        result.append(text)
    return result


def _parse_iterable(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [v.strip() for v in value.split(',') if v.strip()]
    if isinstance(value, numbers.Number):
        return [str(value)]
    try:
        iterator = iter(value)
    except TypeError:
        return [str(value)]
    items: list[str] = []
    for element in iterator:
        if isinstance(element, Mapping):
            name = element.get("name") or element.get("description")
            if isinstance(name, str) and name.strip():
                items.append(name.strip())
            else:
                items.append(str(element).strip())
        else:
            items.append(str(element).strip())
    return [item for item in items if item]


def encode_json_list(values: Iterable[Any] | None) -> str:
    return json.dumps(_dedupe_preserve_order(_parse_iterable(values)))


def decode_json_list(raw_value: Any) -> list[str]:
    """Decode a JSON array column, tolerating comma separated legacy text."""

    if raw_value in (None, ""):
        return []
    if isinstance(raw_value, (list, tuple)):
        return _parse_iterable(raw_value)
    text = str(raw_value).strip()
    if not text:
        return []
    try:
        value = json.loads(text)
    except json.JSONDecodeError:
        return _parse_iterable(text)
    if isinstance(value, list):
        return _parse_iterable(value)
    return _parse_iterable(str(value))


def round_half_up(value: float) -> int:
    """Round to the nearest integer with halves going up (not to even)."""

    return math.floor(value + 0.5)


def slugify(title: str, suffix: Any = None) -> str:
    slug = _SLUG_INVALID_RE.sub("-", str(title or "").lower()).strip("-")
    if suffix is not None:
        slug = f"{slug}-{suffix}"
    return slug


def extract_release_year(value: Any) -> int | None:
    """Pull a four digit year out of a release date value."""

    if value in (None, ""):
        return None
    if isinstance(value, numbers.Integral) and not isinstance(value, bool):
        year = int(value)
        if 1800 <= year <= 2999:
            return year
        # IGDB style unix timestamp
        try:
            return datetime.fromtimestamp(year, tz=timezone.utc).year
        except (OverflowError, OSError, ValueError):
            return None
    match = _YEAR_RE.search(str(value))
    if not match:
        return None
    return int(match.group(0))
