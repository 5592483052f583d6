from __future__ import annotations

import copy
from typing import Any, Mapping, Optional, TypedDict


class Config(TypedDict, total=False):
    configurable: dict[str, Any]
    metadata: dict[str, Any]
    tags: list[str]
    recursion_limit: int


def _as_dict(x: Any) -> dict:
    return x if isinstance(x, dict) else {}


def merge_dicts(*layers: Optional[Mapping[str, Any]]) -> dict:
    """Shallow merge, later layers win. Layers are deep-copied so callers can't alias rows."""
    out: dict = {}
    for layer in layers:
        if layer:
            out.update(copy.deepcopy(dict(layer)))
    return out


def merge_configs(*layers: Optional[Mapping[str, Any]]) -> Config:
    """
    Layered config merge with precedence assistant < thread < request < computed.
    Top-level keys are replaced by later layers; the `configurable` sub-map is
    merged key-wise across all layers.
    """
    out = merge_dicts(*layers)
    configurable: dict = {}
    for layer in layers:
        if layer:
            configurable.update(copy.deepcopy(_as_dict(layer.get("configurable"))))
    out["configurable"] = configurable
    return out  # type: ignore[return-value]


def first_non_null(*values: Any) -> Any:
    for v in values:
        if v is not None:
            return v
    return None


def configurable_of(config: Optional[Mapping[str, Any]]) -> dict:
    return _as_dict((config or {}).get("configurable"))
