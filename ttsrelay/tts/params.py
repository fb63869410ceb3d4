"""Helpers shared by the per-vendor parameter transforms."""
from __future__ import annotations

from typing import Any, Iterable, Mapping, Optional


def clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def drop_none(obj: Mapping[str, Any]) -> dict[str, Any]:
    """Recursively drop None values and nested dicts left empty."""
    out: dict[str, Any] = {}
    for key, value in obj.items():
        if value is None:
            continue
        if isinstance(value, Mapping):
            cleaned = drop_none(value)
            if cleaned:
                out[key] = cleaned
            continue
        out[key] = value
    return out


def merge_extra(
    base: Mapping[str, Any],
    extra: Optional[Mapping[str, Any]],
    *,
    deep_keys: Iterable[str] = (),
) -> dict[str, Any]:
    """Overlay vendor-specific overrides onto transformed params.

    Last write wins: extra keys replace base keys. Keys listed in deep_keys
    are merged one level deep when both sides are dicts.
    """
    merged = dict(base)
    deep = set(deep_keys)
    for key, value in (extra or {}).items():
        current = merged.get(key)
        if key in deep and isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = {**current, **value}
        else:
            merged[key] = value
    return merged


def pick(value: Any, allowed: Iterable[Any]) -> Any:
    """Return value when it is in allowed, else None (field omitted)."""
    return value if value in tuple(allowed) else None
