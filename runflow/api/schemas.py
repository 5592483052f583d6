from typing import Any, Literal, Optional

from pydantic import BaseModel, Field


class RunCreate(BaseModel):
    assistant_id: str = Field(description="Assistant id, or a graph id to use its default assistant")
    input: Optional[Any] = None
    command: Optional[dict[str, Any]] = Field(default=None, description="LangGraph Command kwargs, e.g. {'resume': ...}")
    config: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    stream_mode: list[str] | str = "values"
    multitask_strategy: Literal["reject", "rollback", "interrupt", "enqueue"] = "reject"
    if_not_exists: Literal["create", "reject"] = "reject"
    after_seconds: float = Field(default=0, ge=0)

    def to_kwargs(self) -> dict[str, Any]:
        return {
            "input": self.input,
            "command": self.command,
            "config": self.config,
            "stream_mode": self.stream_mode,
        }


class ThreadCreate(BaseModel):
    thread_id: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    if_exists: Literal["raise", "do_nothing"] = "raise"


class ThreadStateUpdate(BaseModel):
    values: Any = None
    as_node: Optional[str] = None


class HistoryRequest(BaseModel):
    limit: int = Field(default=10, ge=1, le=1000)
    before: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None
