import logging
from contextlib import aclosing

import pytest

from runflow.core.auth import Authorizer
from runflow.core.errors import Conflict, NotFound
from runflow.services.runs import Runs
from runflow.utils.ids import assistant_id_for_graph, new_thread_id

ECHO = assistant_id_for_graph("echo")
INPUT = {"input": {"messages": ["hi"]}}


async def claim_all(runs: Runs, **kwargs) -> list[tuple[str, int]]:
    claimed = []
    async with aclosing(runs.next(**kwargs)) as claims:
        async for claim in claims:
            claimed.append((claim.run["run_id"], claim.attempt))
    return claimed


async def run_status(runtime, run_id):
    async with runtime.store.transaction() as tx:
        run = await tx.get_run(run_id)
    return run["status"] if run else None


async def thread_row(runtime, thread_id):
    async with runtime.store.transaction() as tx:
        return await tx.get_thread(thread_id)


# ----------------------------
# Submission
# ----------------------------
@pytest.mark.asyncio
async def test_put_creates_thread_and_pending_run(runtime):
    [run] = await runtime.runs.put(ECHO, INPUT, metadata={"source": "test"})

    assert run["status"] == "pending"
    thread = await thread_row(runtime, run["thread_id"])
    assert thread["status"] == "busy"
    assert thread["metadata"]["graph_id"] == "echo"
    assert thread["metadata"]["source"] == "test"


@pytest.mark.asyncio
async def test_put_computes_configurable_and_metadata(runtime):
    [run] = await runtime.runs.put(
        ECHO,
        {"input": {}, "config": {"configurable": {"model": "m1"}, "tags": ["t"]}},
        user_id="caller",
        metadata={"k": "v"},
    )

    config = run["kwargs"]["config"]
    assert config["configurable"] == {
        "model": "m1",
        "run_id": run["run_id"],
        "thread_id": run["thread_id"],
        "graph_id": "echo",
        "assistant_id": ECHO,
        "user_id": "caller",
    }
    assert config["tags"] == ["t"]
    assert run["metadata"]["k"] == "v"
    assert run["metadata"]["graph_id"] == "echo"
    assert config["metadata"] == run["metadata"]


@pytest.mark.asyncio
async def test_request_user_id_wins_over_caller(runtime):
    [run] = await runtime.runs.put(
        ECHO,
        {"config": {"configurable": {"user_id": "from-request"}}},
        user_id="caller",
    )
    assert run["kwargs"]["config"]["configurable"]["user_id"] == "from-request"


@pytest.mark.asyncio
async def test_put_unknown_assistant_is_not_found(runtime):
    with pytest.raises(NotFound):
        await runtime.runs.put("no-such-assistant", INPUT)


@pytest.mark.asyncio
async def test_put_on_missing_thread_rejects_or_creates(runtime):
    thread_id = new_thread_id()
    assert await runtime.runs.put(ECHO, INPUT, thread_id=thread_id) == []
    assert await thread_row(runtime, thread_id) is None

    [run] = await runtime.runs.put(ECHO, INPUT, thread_id=thread_id, if_not_exists="create")
    assert run["thread_id"] == thread_id
    assert (await thread_row(runtime, thread_id))["status"] == "busy"


@pytest.mark.asyncio
async def test_inflight_check_returns_existing_run(runtime):
    [first] = await runtime.runs.put(ECHO, INPUT)
    thread_id = first["thread_id"]

    again = await runtime.runs.put(ECHO, INPUT, thread_id=thread_id, prevent_insert_if_inflight=True)
    and_again = await runtime.runs.put(ECHO, INPUT, thread_id=thread_id, prevent_insert_if_inflight=True)

    assert [r["run_id"] for r in again] == [first["run_id"]]
    assert [r["run_id"] for r in and_again] == [first["run_id"]]
    runs, total = await runtime.runs.search(thread_id)
    assert total == 1


@pytest.mark.asyncio
async def test_failed_put_leaves_no_partial_state(runtime):
    [first] = await runtime.runs.put(ECHO, INPUT)
    with pytest.raises(ValueError):
        # duplicate run id: the insert fails and nothing is committed
        await runtime.runs.put(ECHO, INPUT, run_id=first["run_id"], thread_id=first["thread_id"])
    runs, total = await runtime.runs.search(first["thread_id"])
    assert total == 1


# ----------------------------
# Multitask policy
# ----------------------------
@pytest.mark.asyncio
async def test_create_reject_conflicts_with_inflight_run(runtime):
    first = await runtime.runs.create(ECHO, INPUT, if_not_exists="create")
    with pytest.raises(Conflict) as exc:
        await runtime.runs.create(ECHO, INPUT, thread_id=first["thread_id"])
    assert exc.value.details["run_ids"] == [first["run_id"]]


@pytest.mark.asyncio
async def test_create_on_missing_thread_is_not_found(runtime):
    with pytest.raises(NotFound):
        await runtime.runs.create(ECHO, INPUT, thread_id=new_thread_id())


@pytest.mark.asyncio
async def test_create_enqueue_keeps_inflight_runs(runtime):
    first = await runtime.runs.create(ECHO, INPUT)
    second = await runtime.runs.create(ECHO, INPUT, thread_id=first["thread_id"], multitask_strategy="enqueue")

    assert await run_status(runtime, first["run_id"]) == "pending"
    assert await run_status(runtime, second["run_id"]) == "pending"


@pytest.mark.asyncio
async def test_create_interrupt_cancels_inflight_runs(runtime):
    first = await runtime.runs.create(ECHO, INPUT)
    second = await runtime.runs.create(ECHO, INPUT, thread_id=first["thread_id"], multitask_strategy="interrupt")

    assert await run_status(runtime, first["run_id"]) == "interrupted"
    assert await run_status(runtime, second["run_id"]) == "pending"


@pytest.mark.asyncio
async def test_create_rollback_deletes_unclaimed_inflight_runs(runtime):
    first = await runtime.runs.create(ECHO, INPUT)
    second = await runtime.runs.create(ECHO, INPUT, thread_id=first["thread_id"], multitask_strategy="rollback")

    assert await run_status(runtime, first["run_id"]) is None
    assert await run_status(runtime, second["run_id"]) == "pending"


# ----------------------------
# Dequeue
# ----------------------------
@pytest.mark.asyncio
async def test_next_claims_new_run_with_first_attempt(runtime):
    [run] = await runtime.runs.put(ECHO, INPUT)
    assert await claim_all(runtime.runs) == [(run["run_id"], 1)]
    assert not runtime.streams.is_locked(run["run_id"])


@pytest.mark.asyncio
async def test_attempt_counter_grows_across_claims(runtime):
    [run] = await runtime.runs.put(ECHO, INPUT)
    await claim_all(runtime.runs)
    assert await claim_all(runtime.runs) == [(run["run_id"], 2)]


@pytest.mark.asyncio
async def test_next_with_nothing_due_yields_nothing(runtime):
    assert await claim_all(runtime.runs) == []
    await runtime.runs.put(ECHO, INPUT, after_seconds=60)
    assert await claim_all(runtime.runs) == []


@pytest.mark.asyncio
async def test_next_claims_oldest_first(runtime):
    a = await runtime.runs.create(ECHO, INPUT)
    b = await runtime.runs.create(ECHO, INPUT)
    a2 = await runtime.runs.create(ECHO, INPUT, thread_id=a["thread_id"], multitask_strategy="enqueue")

    claimed = [run_id for run_id, _ in await claim_all(runtime.runs)]
    assert claimed == [a["run_id"], b["run_id"], a2["run_id"]]


@pytest.mark.asyncio
async def test_next_skips_locked_runs(runtime):
    [run] = await runtime.runs.put(ECHO, INPUT)
    runtime.streams.lock(run["run_id"])
    assert await claim_all(runtime.runs) == []
    runtime.streams.unlock(run["run_id"])
    assert len(await claim_all(runtime.runs)) == 1


@pytest.mark.asyncio
async def test_next_skips_a_thread_with_a_claimed_run(runtime):
    a = await runtime.runs.create(ECHO, INPUT)
    a2 = await runtime.runs.create(ECHO, INPUT, thread_id=a["thread_id"], multitask_strategy="enqueue")

    async with aclosing(runtime.runs.next(limit=1)) as claims:
        async for claim in claims:
            assert claim.run["run_id"] == a["run_id"]
            assert await claim_all(runtime.runs) == []
    assert (a2["run_id"], 1) in await claim_all(runtime.runs)


@pytest.mark.asyncio
async def test_unlock_happens_even_if_consumer_raises(runtime):
    [run] = await runtime.runs.put(ECHO, INPUT)
    with pytest.raises(RuntimeError):
        async with aclosing(runtime.runs.next()) as claims:
            async for claim in claims:
                assert runtime.streams.is_locked(run["run_id"])
                raise RuntimeError("consumer failed")
    assert not runtime.streams.is_locked(run["run_id"])


# ----------------------------
# Cancellation
# ----------------------------
@pytest.mark.asyncio
async def test_cancel_claimed_run_interrupts_and_fires_token(runtime):
    [run] = await runtime.runs.put(ECHO, INPUT)
    async with aclosing(runtime.runs.next()) as claims:
        async for claim in claims:
            await runtime.runs.cancel([run["run_id"]], thread_id=run["thread_id"], action="interrupt")
            assert claim.control.cancelled
            assert claim.control.reason == "interrupt"
    assert await run_status(runtime, run["run_id"]) == "interrupted"


@pytest.mark.asyncio
async def test_rollback_of_claimed_run_keeps_the_row(runtime):
    [run] = await runtime.runs.put(ECHO, INPUT)
    async with aclosing(runtime.runs.next()) as claims:
        async for claim in claims:
            await runtime.runs.cancel([run["run_id"]], action="rollback")
            assert claim.control.reason == "rollback"
    assert await run_status(runtime, run["run_id"]) == "interrupted"


@pytest.mark.asyncio
async def test_rollback_of_unclaimed_run_deletes_it(runtime):
    [run] = await runtime.runs.put(ECHO, INPUT)
    await runtime.runs.cancel([run["run_id"]], thread_id=run["thread_id"], action="rollback")

    assert await run_status(runtime, run["run_id"]) is None
    assert (await thread_row(runtime, run["thread_id"]))["status"] == "idle"


@pytest.mark.asyncio
async def test_interrupt_of_unclaimed_run_frees_the_thread(runtime):
    [run] = await runtime.runs.put(ECHO, INPUT)
    await runtime.runs.cancel([run["run_id"]])

    assert await run_status(runtime, run["run_id"]) == "interrupted"
    assert (await thread_row(runtime, run["thread_id"]))["status"] == "idle"


@pytest.mark.asyncio
async def test_cancel_unknown_or_foreign_run_is_not_found(runtime):
    [run] = await runtime.runs.put(ECHO, INPUT)
    with pytest.raises(NotFound):
        await runtime.runs.cancel(["missing"])
    with pytest.raises(NotFound):
        await runtime.runs.cancel([run["run_id"]], thread_id=new_thread_id())
    with pytest.raises(NotFound):
        await runtime.runs.cancel([run["run_id"], "missing"])
    assert await run_status(runtime, run["run_id"]) == "pending"


@pytest.mark.asyncio
async def test_cancel_of_terminal_run_is_a_logged_no_op(runtime, caplog):
    [run] = await runtime.runs.put(ECHO, INPUT)
    await runtime.runs.set_status(run["run_id"], "success")
    with caplog.at_level(logging.WARNING):
        await runtime.runs.cancel([run["run_id"]], action="rollback")
    assert await run_status(runtime, run["run_id"]) == "success"
    assert "Attempted to cancel" in caplog.text


# ----------------------------
# Reads and maintenance
# ----------------------------
@pytest.mark.asyncio
async def test_set_status_only_moves_pending_runs(runtime):
    [run] = await runtime.runs.put(ECHO, INPUT)
    assert (await runtime.runs.set_status(run["run_id"], "success"))["status"] == "success"
    assert await runtime.runs.set_status(run["run_id"], "error") is None
    assert await run_status(runtime, run["run_id"]) == "success"


@pytest.mark.asyncio
async def test_search_paginates_with_exact_total(runtime):
    first = await runtime.runs.create(ECHO, INPUT, metadata={"n": 0})
    thread_id = first["thread_id"]
    for n in range(1, 5):
        await runtime.runs.create(ECHO, INPUT, thread_id=thread_id, multitask_strategy="enqueue", metadata={"n": n})
    await runtime.runs.set_status(first["run_id"], "success")

    page, total = await runtime.runs.search(thread_id, limit=2, offset=1)
    assert total == 5
    assert [r["metadata"]["n"] for r in page] == [3, 2]

    done, done_total = await runtime.runs.search(thread_id, status="success")
    assert done_total == 1 and done[0]["run_id"] == first["run_id"]

    tagged, tagged_total = await runtime.runs.search(thread_id, metadata={"n": 4})
    assert tagged_total == 1

    assert await runtime.runs.search(new_thread_id()) == ([], 0)


@pytest.mark.asyncio
async def test_get_and_delete(runtime):
    [run] = await runtime.runs.put(ECHO, INPUT)
    assert (await runtime.runs.get(run["run_id"], thread_id=run["thread_id"]))["run_id"] == run["run_id"]
    with pytest.raises(NotFound):
        await runtime.runs.get(run["run_id"], thread_id=new_thread_id())

    await runtime.runs.delete(run["run_id"], thread_id=run["thread_id"])
    with pytest.raises(NotFound):
        await runtime.runs.get(run["run_id"])
    with pytest.raises(NotFound):
        await runtime.runs.delete(run["run_id"])
    assert (await thread_row(runtime, run["thread_id"]))["status"] == "idle"


# ----------------------------
# Authorization
# ----------------------------
def owner_only(ctx, action, payload):
    user = (ctx or {}).get("user_id")
    if action == "create_run":
        return {"owner": user}, {"metadata": {**payload["metadata"], "owner": user}}
    return {"owner": user}, None


@pytest.mark.asyncio
async def test_foreign_rows_look_absent(runtime):
    runs = Runs(runtime.store, runtime.streams, authorizer=Authorizer(owner_only), poll_timeout=0.05)
    alice, bob = {"user_id": "alice"}, {"user_id": "bob"}

    run = await runs.create(ECHO, INPUT, ctx=alice)
    assert (await thread_row(runtime, run["thread_id"]))["metadata"]["owner"] == "alice"

    assert (await runs.search(run["thread_id"], ctx=alice))[1] == 1
    assert await runs.search(run["thread_id"], ctx=bob) == ([], 0)
    with pytest.raises(NotFound):
        await runs.get(run["run_id"], ctx=bob)
    with pytest.raises(NotFound):
        await runs.cancel([run["run_id"]], ctx=bob)
    with pytest.raises(NotFound):
        await runs.delete(run["run_id"], ctx=bob)
    assert await runs.put(ECHO, INPUT, thread_id=run["thread_id"], ctx=bob) == []
