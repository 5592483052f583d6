from __future__ import annotations

import inspect
import logging
from typing import Any, Callable, Optional, Union

from langgraph.checkpoint.base import BaseCheckpointSaver
from langgraph.graph import StateGraph
from langgraph.pregel import Pregel
from langgraph.store.base import BaseStore

from runflow.core.errors import NotFound
from runflow.utils.imports import load_object

logger = logging.getLogger(__name__)

# a graph builder, a compiled graph, or a factory taking the run config
GraphSource = Union[StateGraph, Pregel, Callable[[dict], Any]]


class GraphRegistry:
    def __init__(self) -> None:
        self._graphs: dict[str, GraphSource] = {}

    def register(self, graph_id: str, graph: GraphSource) -> None:
        if graph_id in self._graphs:
            logger.warning(f"Graph {graph_id!r} re-registered")
        self._graphs[graph_id] = graph

    def load(self, paths: dict[str, str]) -> None:
        """Register graphs from {"graph_id": "package.module:attribute"}."""
        for graph_id, path in paths.items():
            self.register(graph_id, load_object(path))
            logger.info(f"Registered graph {graph_id!r} from {path}")

    def graph_ids(self) -> list[str]:
        return list(self._graphs)

    def __contains__(self, graph_id: object) -> bool:
        return graph_id in self._graphs

    async def get(
        self,
        graph_id: str,
        config: Optional[dict] = None,
        *,
        checkpointer: Optional[BaseCheckpointSaver] = None,
        store: Optional[BaseStore] = None,
    ) -> Pregel:
        """Compiled graph for `graph_id`, bound to the given checkpointer and store."""
        source = self._graphs.get(graph_id)
        if source is None:
            raise NotFound(f"Graph {graph_id!r} not found")

        graph: Any = source
        if not isinstance(graph, (StateGraph, Pregel)) and callable(graph):
            graph = graph(config or {})
            if inspect.isawaitable(graph):
                graph = await graph

        if isinstance(graph, StateGraph):
            return graph.compile(checkpointer=checkpointer, store=store)
        if isinstance(graph, Pregel):
            return graph.copy(update={"checkpointer": checkpointer, "store": store})
        raise TypeError(f"Graph {graph_id!r} resolved to unsupported type {type(graph).__name__}")
