"""Pytest configuration and fixtures."""

import asyncio
import operator
from typing import Annotated, TypedDict

import pytest
import pytest_asyncio
from langgraph.graph import END, START, StateGraph
from langgraph.types import interrupt

from runflow.core.config import Settings
from runflow.graphs.registry import GraphRegistry
from runflow.services.runtime import Runtime


class MessagesState(TypedDict):
    messages: Annotated[list, operator.add]


def _echo(state: MessagesState) -> dict:
    return {"messages": ["echo"]}


def _review(state: MessagesState) -> dict:
    answer = interrupt("approve?")
    return {"messages": [f"review:{answer}"]}


def _boom(state: MessagesState) -> dict:
    raise ValueError("boom")


async def _slow(state: MessagesState) -> dict:
    await asyncio.sleep(30)
    return {"messages": ["slow"]}


def _single_node_graph(name: str, node) -> StateGraph:
    builder = StateGraph(MessagesState)
    builder.add_node(name, node)
    builder.add_edge(START, name)
    builder.add_edge(name, END)
    return builder


def build_registry() -> GraphRegistry:
    registry = GraphRegistry()
    registry.register("echo", _single_node_graph("echo", _echo))
    registry.register("approval", _single_node_graph("review", _review))
    registry.register("boom", _single_node_graph("boom", _boom))
    registry.register("slow", _single_node_graph("slow", _slow))
    return registry


def make_settings(**overrides) -> Settings:
    values = dict(
        STORAGE_BACKEND="memory",
        CHECKPOINT_BACKEND="memory",
        N_WORKERS=0,
        WORKER_POLL_INTERVAL=0.01,
        BG_JOB_MAX_RETRIES=3,
        BG_JOB_TIMEOUT=5.0,
        STREAM_POLL_TIMEOUT=0.05,
        STREAM_RETENTION_SECONDS=300.0,
        GRAPHS={},
        AUTH_PATH=None,
        CALLBACKS_PATH=None,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest_asyncio.fixture
async def runtime(settings):
    """Fresh in-memory runtime per test, workers not started."""
    rt = Runtime(settings, graphs=build_registry())
    await rt.start(workers=False)
    yield rt
    await rt.stop()
