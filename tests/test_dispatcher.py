"""
Tests for the backend dispatcher.
"""
import asyncio

import pytest

from taskfeed.dispatcher import Dispatcher
from taskfeed.lease import lease_id
from taskfeed.router import EventRouter
from taskfeed.state_machine import TaskStateMachine
from taskfeed_common.errors import DocumentNotFoundError, ProtocolViolation
from taskfeed_common.models import Task, TaskState


async def add_task(store, origin="user-bob", task_type="ping", payload=None) -> Task:
    task = Task(type=task_type, origin=origin, payload=payload or {})
    return Task.from_document(await store.create(origin, task.to_document()))


async def stored_task(store, task: Task) -> Task:
    return Task.from_document(await store.get(task.origin, task.id))


class TestRegistration:
    """Tests for handler registration."""

    async def test_on_task_decorator(self, store):
        dispatcher = Dispatcher(store)

        @dispatcher.on_task("ping")
        async def handle(origin_id, task):
            pass

        assert dispatcher.handler_for("ping") is handle
        assert dispatcher.handler_for("pong") is None
        assert len(dispatcher.router.listeners("add:ping")) == 1

    async def test_register_on_change(self, store):
        dispatcher = Dispatcher(store)

        async def handle(origin_id, task):
            pass

        dispatcher.register("ping", handle, on_change=True)

        assert len(dispatcher.router.listeners("add:ping")) == 1
        assert len(dispatcher.router.listeners("change:ping")) == 1

    async def test_verb_level_handler(self, store):
        dispatcher = Dispatcher(store)

        async def handle(origin_id, task):
            pass

        dispatcher.on("add", handle)
        assert dispatcher.handler_for("anything") is handle

    @pytest.mark.parametrize("selector", ["add:ping:T1", "succeed:ping", "fail", "remove:ping"])
    async def test_rejects_client_only_selectors(self, store, selector):
        dispatcher = Dispatcher(store)

        async def handle(origin_id, task):
            pass

        with pytest.raises(ProtocolViolation):
            dispatcher.on(selector, handle)
        assert dispatcher.router.listener_count == 0

    async def test_rejects_invalid_task_type(self, store):
        dispatcher = Dispatcher(store)

        async def handle(origin_id, task):
            pass

        with pytest.raises(ValueError):
            dispatcher.register("a:b", handle)

    def test_from_settings(self, settings):
        from taskfeed.store import MemoryStore

        dispatcher = Dispatcher.from_settings(MemoryStore(), settings, origins=["user-bob"])

        assert dispatcher.worker_id == "worker-test"
        assert dispatcher.router.origins == ["user-bob"]
        assert dispatcher.leases.ttl == settings.lease_ttl_seconds
        assert dispatcher.sweeper is not None
        assert dispatcher.sweeper.interval == 60.0


class TestDispatch:
    """Tests for handler invocation."""

    @pytest.mark.asyncio
    async def test_handler_terminates_task(self, store, settle):
        dispatcher = Dispatcher(store, worker_id="w1")
        calls = []

        @dispatcher.on_task("ping")
        async def handle(origin_id, task):
            calls.append((origin_id, task.id))
            await dispatcher.success(origin_id, task, {"pong": True})

        await dispatcher.start()
        task = await add_task(store)
        await settle(dispatcher, dispatcher.state_machine)

        assert calls == [("user-bob", task.id)]
        task_changes = [
            change for change in await store.changes(origin="user-bob")
            if change.doc.get("kind") == "task"
        ]
        assert [c.doc["state"] for c in task_changes] == ["added", "succeeded", "succeeded"]
        assert task_changes[1].doc["result"] == {"pong": True}
        assert task_changes[-1].deleted
        # Task removed, lease released
        assert await store.list_documents("user-bob") == []
        await dispatcher.stop()

    @pytest.mark.asyncio
    async def test_handler_reports_error(self, store, settle):
        dispatcher = Dispatcher(store, state_machine=TaskStateMachine(store, removal_delay=None))

        @dispatcher.on_task("ping")
        async def handle(origin_id, task):
            await dispatcher.error(origin_id, task, {"kind": "NotFound", "message": "recipient unknown"})

        await dispatcher.start()
        task = await add_task(store)
        await settle(dispatcher)

        failed = await stored_task(store, task)
        assert failed.state == TaskState.FAILED
        assert failed.error.kind == "NotFound"
        with pytest.raises(DocumentNotFoundError):
            await store.get("user-bob", lease_id(task.id))
        await dispatcher.stop()

    @pytest.mark.asyncio
    async def test_progress(self, store, settle):
        dispatcher = Dispatcher(store, state_machine=TaskStateMachine(store, removal_delay=None))

        @dispatcher.on_task("ping")
        async def handle(origin_id, task):
            task = await dispatcher.progress(origin_id, task, {"step": 1})
            await dispatcher.success(origin_id, task)

        await dispatcher.start()
        task = await add_task(store)
        await settle(dispatcher)

        states = [
            change.doc["state"] for change in await store.changes(origin="user-bob")
            if change.doc.get("kind") == "task"
        ]
        assert states == ["added", "changed", "succeeded"]
        await dispatcher.stop()

    @pytest.mark.asyncio
    async def test_types_are_routed_to_their_handlers(self, store, settle):
        dispatcher = Dispatcher(store)
        calls = []

        @dispatcher.on_task("ping")
        async def ping(origin_id, task):
            calls.append("ping")
            await dispatcher.success(origin_id, task)

        @dispatcher.on_task("pong")
        async def pong(origin_id, task):
            calls.append("pong")
            await dispatcher.success(origin_id, task)

        await dispatcher.start()
        await add_task(store, task_type="pong")
        await add_task(store, task_type="other")
        await settle(dispatcher, dispatcher.state_machine)

        assert calls == ["pong"]
        await dispatcher.stop()

    @pytest.mark.asyncio
    async def test_replays_existing_tasks_on_start(self, store, settle):
        task = await add_task(store)
        dispatcher = Dispatcher(store)
        calls = []

        @dispatcher.on_task("ping")
        async def handle(origin_id, task):
            calls.append(task.id)
            await dispatcher.success(origin_id, task)

        await dispatcher.start()
        await settle(dispatcher, dispatcher.state_machine)

        assert calls == [task.id]
        await dispatcher.stop()

    @pytest.mark.asyncio
    async def test_replay_of_finished_tasks_writes_nothing(self, store, settle):
        machine = TaskStateMachine(store)
        finished = [await add_task(store) for _ in range(3)]
        for task in finished[:2]:
            await machine.mark_succeeded(task)
        await machine.mark_failed(finished[2], {"kind": "Refused", "message": "no"})
        await machine.drain()
        history = len(await store.changes())

        dispatcher = Dispatcher(store)
        calls = []

        @dispatcher.on_task("ping")
        async def handle(origin_id, task):
            calls.append(task.id)

        await dispatcher.start()
        await settle(dispatcher, dispatcher.state_machine)

        assert calls == []
        assert len(await store.changes()) == history
        assert await store.list_documents("user-bob") == []
        await dispatcher.stop()

    @pytest.mark.asyncio
    async def test_redelivery_does_not_reinvoke_finished_tasks(self, store, settle):
        # No router-level dedupe: the claim and re-read must hold on their own
        dispatcher = Dispatcher(store, router=EventRouter(store, dedupe_window=0))
        calls = []

        @dispatcher.on_task("ping")
        async def handle(origin_id, task):
            calls.append(task.id)
            await dispatcher.success(origin_id, task)

        await dispatcher.start()
        task = await add_task(store)
        await settle(dispatcher, dispatcher.state_machine)

        await store.redeliver()
        await settle(dispatcher, dispatcher.state_machine)

        assert calls == [task.id]
        await dispatcher.stop()

    @pytest.mark.asyncio
    async def test_competing_workers_invoke_once(self, store, settle):
        calls = []
        dispatchers = [Dispatcher(store, worker_id=f"w{i}") for i in range(2)]

        for dispatcher in dispatchers:
            async def handle(origin_id, task, dispatcher=dispatcher):
                calls.append(dispatcher.worker_id)
                await asyncio.sleep(0.01)
                await dispatcher.success(origin_id, task)

            dispatcher.register("ping", handle)
            await dispatcher.start()

        await add_task(store)
        components = []
        for dispatcher in dispatchers:
            components.extend([dispatcher, dispatcher.state_machine])
        await settle(*components)

        assert len(calls) == 1
        for dispatcher in dispatchers:
            await dispatcher.stop()

    @pytest.mark.asyncio
    async def test_handler_exception_leaves_task_open(self, store, settle):
        dispatcher = Dispatcher(store)

        @dispatcher.on_task("ping")
        async def handle(origin_id, task):
            raise RuntimeError("boom")

        await dispatcher.start()
        task = await add_task(store)
        await settle(dispatcher)

        assert (await stored_task(store, task)).state == TaskState.ADDED
        assert dispatcher.in_flight == []
        await dispatcher.stop()

    @pytest.mark.asyncio
    async def test_fail_on_handler_error(self, store, settle):
        dispatcher = Dispatcher(
            store,
            state_machine=TaskStateMachine(store, removal_delay=None),
            fail_on_handler_error=True,
        )

        @dispatcher.on_task("ping")
        async def handle(origin_id, task):
            raise RuntimeError("boom")

        await dispatcher.start()
        task = await add_task(store)
        await settle(dispatcher)

        failed = await stored_task(store, task)
        assert failed.state == TaskState.FAILED
        assert failed.error.kind == "HandlerError"
        assert failed.error.message == "boom"
        await dispatcher.stop()

    @pytest.mark.asyncio
    async def test_max_concurrency(self, store, settle):
        dispatcher = Dispatcher(store, max_concurrency=1)
        active = 0
        peak = 0

        @dispatcher.on_task("ping")
        async def handle(origin_id, task):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            await dispatcher.success(origin_id, task)

        await dispatcher.start()
        for _ in range(3):
            await add_task(store)
        await settle(dispatcher, dispatcher.state_machine)

        assert peak == 1
        assert await store.list_documents("user-bob") == []
        await dispatcher.stop()

    @pytest.mark.asyncio
    async def test_without_leases(self, store, settle):
        dispatcher = Dispatcher(store, lease_ttl=None)
        calls = []

        @dispatcher.on_task("ping")
        async def handle(origin_id, task):
            calls.append(task.id)
            await dispatcher.success(origin_id, task)

        await dispatcher.start()
        task = await add_task(store)
        await settle(dispatcher, dispatcher.state_machine)

        assert dispatcher.leases is None
        assert calls == [task.id]
        await dispatcher.stop()

    @pytest.mark.asyncio
    async def test_success_on_terminal_task_is_noop(self, store):
        dispatcher = Dispatcher(store, state_machine=TaskStateMachine(store, removal_delay=None))
        task = await add_task(store)

        assert await dispatcher.error("user-bob", task, "first") is not None
        assert await dispatcher.success("user-bob", task) is None
        assert (await stored_task(store, task)).state == TaskState.FAILED
