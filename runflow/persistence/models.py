from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, TypedDict

RunStatus = Literal["pending", "running", "error", "success", "timeout", "interrupted"]
ThreadStatus = Literal["idle", "busy", "interrupted", "error"]
MultitaskStrategy = Literal["reject", "rollback", "interrupt", "enqueue"]
IfNotExists = Literal["create", "reject"]
CancelAction = Literal["interrupt", "rollback"]

TERMINAL_RUN_STATUSES = frozenset({"error", "success", "timeout", "interrupted"})


class Assistant(TypedDict):
    assistant_id: str
    graph_id: str
    name: str
    config: dict[str, Any]
    metadata: dict[str, Any]
    created_at: datetime
    updated_at: datetime


class Thread(TypedDict):
    thread_id: str
    status: ThreadStatus
    metadata: dict[str, Any]
    config: dict[str, Any]
    values: Any
    interrupts: dict[str, Any]
    error: Any
    created_at: datetime
    updated_at: datetime


class Run(TypedDict):
    run_id: str
    thread_id: str
    assistant_id: str
    status: RunStatus
    metadata: dict[str, Any]
    kwargs: dict[str, Any]
    multitask_strategy: MultitaskStrategy
    created_at: datetime
    updated_at: datetime


class CheckpointTask(TypedDict, total=False):
    id: str
    name: str
    interrupts: list[Any]


class CheckpointPayload(TypedDict):
    """What the status projector needs from the engine's latest checkpoint."""

    values: Any
    next: list[str]
    tasks: list[CheckpointTask]
