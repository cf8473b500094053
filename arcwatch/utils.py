"""Shared utility functions used across arcwatch modules."""
from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

_MISSING = object()


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def utc_now() -> datetime:
    """Naive UTC timestamp, matching how the DateTime columns are stored."""
    return datetime.now(UTC).replace(tzinfo=None)


def round2(value: float) -> float:
    return round(value, 2)


@dataclass(frozen=True)
class AddressedFixRequests:
    """Fix request ids a pull request claims to address.

    The column is free-form JSON written by the review system. Anything that
    is not a JSON array decodes to an empty list; elements that are not
    integer ids are skipped.
    """

    ids: tuple[int, ...] = ()

    @classmethod
    def decode(cls, raw: str | None) -> AddressedFixRequests:
        payload = json_parse(raw, None)
        if not isinstance(payload, list):
            return cls()
        seen: dict[int, None] = {}
        for item in payload:
            fix_id = _coerce_id(item)
            if fix_id is not None:
                seen.setdefault(fix_id, None)
        return cls(tuple(seen))

    def __iter__(self):
        return iter(self.ids)


def _coerce_id(item: Any) -> int | None:
    if isinstance(item, bool):
        return None
    if isinstance(item, int):
        return item
    if isinstance(item, str) and item.strip().isdigit():
        return int(item.strip())
    return None
