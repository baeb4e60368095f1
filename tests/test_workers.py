import asyncio

import pytest

from battlehost.config.models import WorkerSettings
from battlehost.core.exceptions import WorkerCrashed, WorkerRequestError, WorkerUnavailable
from battlehost.workers.pool import WorkerPool, WorkerState

SCRIPTED = "battlehost.workers.builtin:scripted"
TIMEOUT = 15


def make_pool(**settings):
    settings.setdefault("respawn_backoff", 0.0)
    pool = WorkerPool(WorkerSettings(**settings))
    pool.register("scripted", SCRIPTED)
    return pool


async def wait_for(predicate, timeout=TIMEOUT):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.02)


@pytest.mark.asyncio
async def test_dispatch_round_trip():
    pool = make_pool()
    try:
        await pool.spawn("scripted")
        await pool.wait_ready("scripted", TIMEOUT)
        result = await asyncio.wait_for(
            pool.dispatch("scripted", {"action": "echo", "value": {"a": [1, 2]}}), TIMEOUT
        )
        assert result == {"a": [1, 2]}
        assert pool.slot("scripted").state is WorkerState.READY
    finally:
        await pool.shutdown()


@pytest.mark.asyncio
async def test_spawn_is_idempotent():
    pool = make_pool()
    try:
        await pool.spawn("scripted")
        pid = pool.slot("scripted").process.pid
        await pool.spawn("scripted")
        assert pool.slot("scripted").process.pid == pid
    finally:
        await pool.shutdown()


@pytest.mark.asyncio
async def test_dispatch_does_not_block_other_work():
    pool = make_pool()
    try:
        await pool.spawn("scripted")
        slow = pool.dispatch("scripted", {"action": "sleep", "delay": 0.5, "value": "late"})
        ticks = 0
        while not slow.done():
            ticks += 1
            await asyncio.sleep(0.01)
        assert ticks > 5
        assert slow.result() == "late"
    finally:
        await pool.shutdown()


@pytest.mark.asyncio
async def test_handler_error_fails_only_that_request():
    pool = make_pool()
    try:
        await pool.spawn("scripted")
        with pytest.raises(WorkerRequestError, match="nope"):
            await asyncio.wait_for(pool.dispatch("scripted", {"action": "fail", "message": "nope"}), TIMEOUT)
        assert await asyncio.wait_for(pool.dispatch("scripted", {"value": 5}), TIMEOUT) == 5
        assert pool.slot("scripted").respawns == 0
    finally:
        await pool.shutdown()


@pytest.mark.asyncio
async def test_pending_requests_fail_when_worker_dies():
    pool = make_pool(max_respawns=3)
    try:
        await pool.spawn("scripted")
        await pool.wait_ready("scripted", TIMEOUT)
        slot = pool.slot("scripted")
        old_pid = slot.process.pid

        futures = [
            pool.dispatch("scripted", {"action": "exit"}),
            pool.dispatch("scripted", {"value": 2}),
            pool.dispatch("scripted", {"value": 3}),
        ]
        results = await asyncio.wait_for(asyncio.gather(*futures, return_exceptions=True), TIMEOUT)

        assert all(isinstance(r, WorkerCrashed) for r in results)
        await wait_for(lambda: slot.state is WorkerState.READY)
        assert slot.respawns == 1
        assert slot.process.pid != old_pid
        assert await asyncio.wait_for(pool.dispatch("scripted", {"value": "back"}), TIMEOUT) == "back"
        assert slot.failures == 0
    finally:
        await pool.shutdown()


@pytest.mark.asyncio
async def test_capability_degrades_after_repeated_failures():
    pool = make_pool(max_respawns=0)
    try:
        await pool.spawn("scripted")
        with pytest.raises(WorkerCrashed):
            await asyncio.wait_for(pool.dispatch("scripted", {"action": "exit"}), TIMEOUT)
        slot = pool.slot("scripted")
        await wait_for(lambda: slot.degraded)

        with pytest.raises(WorkerUnavailable):
            await asyncio.wait_for(pool.dispatch("scripted", {"value": 1}), TIMEOUT)
        assert slot.respawns == 0
        assert pool.status()["scripted"]["degraded"] is True
    finally:
        await pool.shutdown()


@pytest.mark.asyncio
async def test_dispatch_to_dead_worker_respawns_it():
    pool = make_pool(max_respawns=2)
    try:
        # never spawned: the first dispatch starts it
        assert await asyncio.wait_for(pool.dispatch("scripted", {"value": "hi"}), TIMEOUT) == "hi"
        assert pool.slot("scripted").state is WorkerState.READY
    finally:
        await pool.shutdown()


@pytest.mark.asyncio
async def test_unknown_capability_is_unavailable():
    pool = make_pool()
    with pytest.raises(WorkerUnavailable):
        await pool.dispatch("nonexistent", {})
    with pytest.raises(WorkerUnavailable):
        await pool.spawn("nonexistent")


@pytest.mark.asyncio
async def test_dispatch_after_shutdown_is_unavailable():
    pool = make_pool()
    await pool.spawn("scripted")
    await pool.shutdown()
    assert pool.slot("scripted").state is WorkerState.DEAD
    with pytest.raises(WorkerUnavailable):
        await pool.dispatch("scripted", {"value": 1})


def test_conflicting_registration_rejected():
    pool = make_pool()
    pool.register("scripted", SCRIPTED)
    with pytest.raises(ValueError):
        pool.register("scripted", "battlehost.workers.builtin:echo")


@pytest.mark.asyncio
async def test_reconfigure_restarts_worker_with_new_environment():
    pool = WorkerPool(WorkerSettings(respawn_backoff=0.0))
    pool.register("scripted", SCRIPTED, env={"BATTLEHOST_TEST_FLAG": "one"})
    ask = {"action": "env", "name": "BATTLEHOST_TEST_FLAG"}
    try:
        await pool.spawn("scripted")
        assert await asyncio.wait_for(pool.dispatch("scripted", ask), TIMEOUT) == "one"
        old_pid = pool.slot("scripted").process.pid

        assert await pool.reconfigure("scripted", {"BATTLEHOST_TEST_FLAG": "one"}) is False
        assert await pool.reconfigure("scripted", {"BATTLEHOST_TEST_FLAG": "two"}) is True

        slot = pool.slot("scripted")
        assert slot.process.pid != old_pid
        assert await asyncio.wait_for(pool.dispatch("scripted", ask), TIMEOUT) == "two"
        # a planned restart is not a crash
        assert slot.respawns == 0 and slot.failures == 0
        assert slot.spec.env == {"BATTLEHOST_TEST_FLAG": "two"}
    finally:
        await pool.shutdown()


@pytest.mark.asyncio
async def test_requests_queued_before_restart_still_complete():
    pool = make_pool()
    try:
        await pool.spawn("scripted")
        slow = pool.dispatch("scripted", {"action": "sleep", "delay": 0.3, "value": "done"})
        await pool.reconfigure("scripted", {"BATTLEHOST_TEST_FLAG": "x"})
        assert await asyncio.wait_for(slow, TIMEOUT) == "done"
    finally:
        await pool.shutdown()


@pytest.mark.asyncio
async def test_wait_ready_gives_up_when_worker_never_starts():
    pool = WorkerPool(WorkerSettings(max_respawns=1, respawn_backoff=0.0))
    pool.register("broken", "battlehost.workers.builtin:no_such_handler")
    try:
        await pool.spawn("broken")
        # the child dies before reporting ready, is respawned once, then degrades
        with pytest.raises(WorkerUnavailable):
            await pool.wait_ready("broken", TIMEOUT)
        assert pool.slot("broken").respawns == 1
    finally:
        await pool.shutdown()


@pytest.mark.asyncio
async def test_shutdown_settles_requests_waiting_on_a_respawn():
    pool = make_pool()
    pending = pool.dispatch("scripted", {"value": 1})
    await pool.shutdown()
    with pytest.raises(WorkerUnavailable):
        await asyncio.wait_for(pending, TIMEOUT)
    assert pool.slot("scripted").process is None


@pytest.mark.asyncio
async def test_shutdown_during_spawn_leaves_no_child_running():
    pool = make_pool()
    spawning = asyncio.ensure_future(pool.spawn("scripted"))
    await asyncio.sleep(0)
    await pool.shutdown()
    await asyncio.gather(spawning, return_exceptions=True)

    proc = pool.slot("scripted").process
    assert proc is None or proc.returncode is not None
    assert pool.slot("scripted").state is WorkerState.DEAD
