"""
Tests for the event router and its registration surfaces.
"""
import pytest

from taskfeed.router import EventRouter
from taskfeed.state_machine import TaskStateMachine
from taskfeed_common.errors import ProtocolViolation, SelectorError
from taskfeed_common.events import EventVerb, TaskEvent
from taskfeed_common.models import Change, Task, TaskState


def task_change(task: Task, seq: int = 1, deleted: bool = False, revision: str = "1-a") -> Change:
    doc = task.to_document()
    doc["revision"] = revision
    return Change(seq=seq, origin=task.origin, doc=doc, deleted=deleted)


@pytest.fixture
async def router(store):
    router = EventRouter(store)
    await router.start()
    yield router
    await router.stop()


class TestClassify:
    """Tests for change classification."""

    def test_task_changes(self):
        task = Task(type="ping", origin="o")
        event = EventRouter.classify(task_change(task))

        assert event.verb == EventVerb.ADD
        assert event.task.id == task.id
        assert event.origin == "o"

    def test_removal(self):
        task = Task(type="ping", origin="o", state=TaskState.SUCCEEDED)
        event = EventRouter.classify(task_change(task, deleted=True))

        assert event.verb == EventVerb.REMOVE
        assert event.task.state == TaskState.SUCCEEDED

    def test_ignores_other_documents(self):
        change = Change(seq=1, origin="o", doc={"id": "lease-T1", "kind": "lease"})
        assert EventRouter.classify(change) is None

    def test_ignores_malformed_tasks(self):
        change = Change(seq=1, origin="o", doc={"id": "T1", "kind": "task", "type": "a:b"})
        assert EventRouter.classify(change) is None


class TestEventRouter:
    """Tests for listener registration and delivery."""

    async def test_multicast_to_all_granularities(self, store, router):
        received = []
        events = router.client_events()
        task = Task(id="T1", type="ping", origin="o")

        events.on("add", lambda e: received.append("verb"))
        events.on("add:ping", lambda e: received.append("type"))
        events.on("add:ping:T1", lambda e: received.append("identity"))
        events.on("add:pong", lambda e: received.append("other type"))
        events.on("succeed:ping", lambda e: received.append("other verb"))

        await store.create("o", task.to_document())
        await store.flush()

        assert sorted(received) == ["identity", "type", "verb"]

    async def test_async_callbacks(self, store, router):
        received = []

        async def on_add(event: TaskEvent):
            received.append(event.name)

        router.client_events().on("add:ping", on_add)
        await store.create("o", Task(id="T1", type="ping", origin="o").to_document())
        await store.flush()

        assert received == ["add:ping:T1"]

    async def test_decorator_registration(self, store, router):
        received = []
        events = router.client_events()

        @events.on("add")
        async def on_add(event):
            received.append(event.task.id)

        await store.create("o", Task(id="T1", type="ping", origin="o").to_document())
        await store.flush()

        assert received == ["T1"]

    async def test_once(self, router):
        received = []
        router.client_events().once("add:ping", lambda e: received.append(e.task.id))

        for task_id in ("T1", "T2"):
            task = Task(id=task_id, type="ping", origin="o")
            await router.dispatch(EventRouter.classify(task_change(task)))

        assert received == ["T1"]
        assert router.listener_count == 0

    async def test_off(self, router):
        received = []
        events = router.client_events()
        listener = events.on("add", lambda e: received.append(e))

        assert events.off(listener) is True
        assert events.off(listener) is False

        await router.dispatch(EventRouter.classify(task_change(Task(type="ping", origin="o"))))
        assert received == []

    async def test_listener_may_deregister_another_during_delivery(self, router):
        received = []
        events = router.client_events()

        def first(event):
            received.append("first")
            events.off(second_listener)

        events.on("add", first)
        second_listener = events.on("add", lambda e: received.append("second"))

        await router.dispatch(EventRouter.classify(task_change(Task(type="ping", origin="o"))))

        assert received == ["first"]

    async def test_listener_errors_are_isolated(self, router):
        received = []
        events = router.client_events()

        def broken(event):
            raise RuntimeError("boom")

        events.on("add", broken)
        events.on("add", lambda e: received.append(e.task.id))

        task = Task(id="T1", type="ping", origin="o")
        delivered = await router.dispatch(EventRouter.classify(task_change(task)))

        assert received == ["T1"]
        assert delivered == 1

    async def test_invalid_selector(self, router):
        with pytest.raises(SelectorError):
            router.client_events().on("explode:ping", lambda e: None)

    async def test_drops_redelivered_changes(self, store, router):
        received = []
        router.client_events().on("add", lambda e: received.append(e.task.id))

        await store.create("o", Task(id="T1", type="ping", origin="o").to_document())
        await store.flush()
        await store.redeliver()
        await store.flush()

        assert received == ["T1"]

    async def test_dedupe_can_be_disabled(self, store):
        router = EventRouter(store, dedupe_window=0)
        await router.start()
        received = []
        router.client_events().on("add", lambda e: received.append(e.task.id))

        await store.create("o", Task(id="T1", type="ping", origin="o").to_document())
        await store.flush()
        await store.redeliver()
        await store.flush()
        await router.stop()

        assert received == ["T1", "T1"]

    async def test_lifecycle_verbs(self, store, router, settle):
        received = []
        events = router.client_events()
        for verb in ("add", "change", "succeed", "remove"):
            events.on(f"{verb}:ping", lambda e: received.append(e.verb.value))

        machine = TaskStateMachine(store, removal_delay=0.0)
        task = Task.from_document(await store.create("o", Task(type="ping", origin="o").to_document()))
        changed = await machine.mark_changed(task, progress={"step": 1})
        await machine.mark_succeeded(changed)
        await settle(machine)

        assert received == ["add", "change", "succeed", "remove"]

    async def test_origin_scoped_router(self, store):
        router = EventRouter(store, origins=["user-bob"])
        await router.start()
        received = []
        router.client_events().on("add", lambda e: received.append(e.origin))

        await store.create("user-bob", Task(type="ping", origin="user-bob").to_document())
        await store.create("user-alice", Task(type="ping", origin="user-alice").to_document())
        await store.flush()
        await router.stop()

        assert received == ["user-bob"]

    async def test_replay(self, store):
        await store.create("o", Task(id="T1", type="ping", origin="o").to_document())
        await store.create("o", {"id": "lease-T1", "kind": "lease"})

        router = EventRouter(store)
        received = []
        router.client_events().on("add", lambda e: received.append(e.task.id))

        assert await router.replay() == 2
        assert received == ["T1"]


class TestWorkerEvents:
    """Tests for the worker-side registration surface."""

    @pytest.mark.parametrize("selector", ["add", "add:ping", "change", "change:ping"])
    async def test_accepts_add_and_change(self, router, selector):
        listener = router.worker_events().on(selector, lambda e: None)
        assert str(listener.selector) == selector

    @pytest.mark.parametrize("selector", ["succeed", "fail:ping", "remove:ping"])
    async def test_rejects_terminal_verbs(self, router, selector):
        with pytest.raises(ProtocolViolation):
            router.worker_events().on(selector, lambda e: None)

    async def test_rejects_per_task_selectors(self, router):
        with pytest.raises(ProtocolViolation):
            router.worker_events().on("add:ping:T1", lambda e: None)
        assert router.listener_count == 0
