import uuid

# stable namespace so a graph id always maps to the same default assistant
ASSISTANT_NAMESPACE = uuid.UUID("2f5c6a1e-8d3b-4e7a-9c10-5b8e2d4f7a91")


def new_thread_id() -> str:
    # UUID4 is fine for thread IDs
    return str(uuid.uuid4())


def new_run_id() -> str:
    return str(uuid.uuid4())


def assistant_id_for_graph(graph_id: str) -> str:
    return str(uuid.uuid5(ASSISTANT_NAMESPACE, graph_id))
