from __future__ import annotations

import inspect
from typing import Any, Awaitable, Callable, Optional, Union

Filters = dict[str, Any]
AuthResult = Union[tuple[Filters | None, dict[str, Any] | None], None]
AuthHandler = Callable[[Optional[dict], str, dict[str, Any]], Union[AuthResult, Awaitable[AuthResult]]]


def is_auth_matching(metadata: dict | None, filters: Filters | None) -> bool:
    """
    True when `metadata` satisfies every condition in `filters`.
    Conditions are plain values (equality) or {"$eq": v} / {"$contains": v}.
    """
    if not filters:
        return True
    metadata = metadata or {}

    for key, cond in filters.items():
        if key not in metadata:
            return False
        actual = metadata[key]
        if isinstance(cond, dict) and len(cond) == 1 and next(iter(cond)).startswith("$"):
            op, expected = next(iter(cond.items()))
            if op == "$eq":
                if actual != expected:
                    return False
            elif op == "$contains":
                if not isinstance(actual, list) or expected not in actual:
                    return False
            else:
                raise ValueError(f"Unsupported filter operator {op!r}")
        elif actual != cond:
            return False
    return True


class Authorizer:
    """
    Wraps the optional user-supplied handler. The handler receives the
    caller context (e.g. {"user_id": ...}), an action name ("create_run",
    "read", "update", "delete", "search") and a mutable payload, and
    returns (filters, overrides) or None.
    """

    def __init__(self, handler: AuthHandler | None = None) -> None:
        self._handler = handler

    async def handle_event(self, ctx: Optional[dict], action: str, payload: dict[str, Any]) -> Filters | None:
        if self._handler is None:
            return None
        result = self._handler(ctx, action, payload)
        if inspect.isawaitable(result):
            result = await result
        if not result:
            return None
        filters, overrides = result
        if overrides:
            payload.update(overrides)
        return filters or None
