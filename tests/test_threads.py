import pytest

from runflow.core.errors import BadRequest, Conflict, NotFound
from runflow.utils.ids import assistant_id_for_graph

ECHO = assistant_id_for_graph("echo")
INPUT = {"input": {"messages": ["hi"]}}


async def finished_thread(runtime) -> str:
    run = await runtime.runs.create(ECHO, INPUT, if_not_exists="create")
    await runtime.worker.run_once()
    return run["thread_id"]


@pytest.mark.asyncio
async def test_create_get_and_conflict(runtime):
    thread = await runtime.threads.create(metadata={"owner": "alice"})
    assert thread["status"] == "idle"
    assert (await runtime.threads.get(thread["thread_id"]))["metadata"] == {"owner": "alice"}

    with pytest.raises(Conflict):
        await runtime.threads.create(thread_id=thread["thread_id"])
    same = await runtime.threads.create(thread_id=thread["thread_id"], if_exists="do_nothing")
    assert same["thread_id"] == thread["thread_id"]

    with pytest.raises(NotFound):
        await runtime.threads.get("missing")


@pytest.mark.asyncio
async def test_get_state_and_history_after_a_run(runtime):
    thread_id = await finished_thread(runtime)

    state = await runtime.threads.get_state(thread_id)
    assert state["values"] == {"messages": ["hi", "echo"]}
    assert state["next"] == []
    assert state["checkpoint"]["thread_id"] == thread_id

    history = await runtime.threads.get_history(thread_id, limit=10)
    assert history[0]["values"] == state["values"]
    assert len(history) >= 2


@pytest.mark.asyncio
async def test_state_of_a_thread_without_graph_is_empty(runtime):
    thread = await runtime.threads.create()
    assert (await runtime.threads.get_state(thread["thread_id"]))["values"] == {}
    assert await runtime.threads.get_history(thread["thread_id"]) == []

    with pytest.raises(BadRequest):
        await runtime.threads.update_state(thread["thread_id"], {"messages": ["x"]})


@pytest.mark.asyncio
async def test_update_state_writes_a_checkpoint(runtime):
    thread_id = await finished_thread(runtime)

    result = await runtime.threads.update_state(thread_id, {"messages": ["edited"]}, as_node="echo")
    assert result["checkpoint"]["thread_id"] == thread_id

    state = await runtime.threads.get_state(thread_id)
    assert state["values"] == {"messages": ["hi", "echo", "edited"]}
    thread = await runtime.threads.get(thread_id)
    assert thread["values"] == state["values"]
    assert thread["status"] == "idle"


@pytest.mark.asyncio
async def test_update_state_on_busy_thread_conflicts(runtime):
    run = await runtime.runs.create(ECHO, INPUT, if_not_exists="create")
    with pytest.raises(Conflict):
        await runtime.threads.update_state(run["thread_id"], {"messages": ["x"]})


@pytest.mark.asyncio
async def test_copy_duplicates_row_and_checkpoints(runtime):
    thread_id = await finished_thread(runtime)

    copy = await runtime.threads.copy(thread_id)
    assert copy["thread_id"] != thread_id
    assert copy["status"] == "idle"
    assert copy["metadata"]["graph_id"] == "echo"
    assert copy["values"] == {"messages": ["hi", "echo"]}
    assert (await runtime.threads.get_state(copy["thread_id"]))["values"] == {"messages": ["hi", "echo"]}


@pytest.mark.asyncio
async def test_delete_cascades_runs(runtime):
    run = await runtime.runs.create(ECHO, INPUT, if_not_exists="create")
    await runtime.threads.delete(run["thread_id"])

    with pytest.raises(NotFound):
        await runtime.threads.get(run["thread_id"])
    with pytest.raises(NotFound):
        await runtime.runs.get(run["run_id"])
    with pytest.raises(NotFound):
        await runtime.threads.delete(run["thread_id"])
    assert await runtime.worker.run_once() is False


@pytest.mark.asyncio
async def test_set_joint_status_finishes_run_and_thread(runtime):
    run = await runtime.runs.create(ECHO, INPUT, if_not_exists="create")
    checkpoint = {"values": {"done": True}, "next": [], "tasks": []}

    thread = await runtime.threads.set_joint_status(run["thread_id"], run["run_id"], "success", checkpoint)
    assert thread["status"] == "idle"
    assert thread["values"] == {"done": True}
    assert (await runtime.runs.get(run["run_id"]))["status"] == "success"
