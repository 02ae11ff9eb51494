import asyncio
import time

import pytest

from app.session.engine import NOT_JOINED, ROOM_NOT_FOUND, SyncEngine
from app.session.lifecycle import SessionLifecycleController
from app.session.registry import RoomRegistry
from app.session.session_store import LocalSessionStore
from core.state import ConnectionState

DEBOUNCE_SEC = 0.1
GRACE_SEC = 0.2


class RecordingStore(LocalSessionStore):
    def __init__(self):
        super().__init__()
        self.history_writes: list[str] = []

    async def append_history(self, session_id, code, timestamp=None):
        self.history_writes.append(code)
        return await super().append_history(session_id, code, timestamp)


class StalledConnection:
    """Never finishes delivering a code update."""

    def __init__(self, connection_id: str):
        self.connection_id = connection_id
        self.closed = False

    async def send(self, payload: dict) -> None:
        if payload.get("type") == "code-update":
            await asyncio.sleep(10)

    async def close(self) -> None:
        self.closed = True


def _build(store=None):
    registry = RoomRegistry()
    store = store if store is not None else RecordingStore()
    engine = SyncEngine(registry, store, debounce_sec=DEBOUNCE_SEC, grace_period_sec=GRACE_SEC, send_timeout_sec=1.0)
    lifecycle = SessionLifecycleController(registry, store, base_url="http://test")
    return registry, store, engine, lifecycle


@pytest.mark.asyncio
async def test_join_sends_snapshot_and_notifies_peers(fake_connection_factory):
    registry, store, engine, lifecycle = _build()
    created = await lifecycle.create_room("Alice", "cpp")
    room_id = created["id"]
    alice = fake_connection_factory("alice")
    bob = fake_connection_factory("bob")

    assert await engine.join(alice, room_id, "Alice") is True
    assert alice.of_type("room-state") == [{"type": "room-state", "language": "cpp", "code": "", "participant_count": 1}]

    await engine.join(bob, room_id, "Bob")
    assert bob.of_type("room-state")[0]["participant_count"] == 2
    assert alice.of_type("user-joined") == [{"type": "user-joined", "user_name": "Bob", "participant_count": 2}]
    assert bob.of_type("user-joined") == []
    assert engine.state_of("bob") == ConnectionState.JOINED

    await asyncio.sleep(0.01)
    record = await store.find(room_id)
    assert record.participants == ["alice", "bob"]


@pytest.mark.asyncio
async def test_join_unknown_room_errors_without_mutation(fake_connection_factory):
    registry, store, engine, _ = _build()
    alice = fake_connection_factory("alice")

    assert await engine.join(alice, "nonexistent-room", "Alice") is False
    assert alice.sent == [{"type": "error", "message": ROOM_NOT_FOUND}]
    assert len(registry) == 0
    assert await store.list_recent() == []
    assert engine.state_of("alice") == ConnectionState.DISCONNECTED
    assert engine.room_of("alice") is None


@pytest.mark.asyncio
async def test_edit_broadcasts_to_peers_but_not_sender(fake_connection_factory):
    registry, _, engine, lifecycle = _build()
    room_id = (await lifecycle.create_room("Alice", "go"))["id"]
    alice, bob, carol = (fake_connection_factory(name) for name in ("alice", "bob", "carol"))
    for conn in (alice, bob, carol):
        await engine.join(conn, room_id, conn.connection_id)

    for index in range(5):
        sender = alice if index % 2 == 0 else bob
        await engine.edit(sender, room_id, f"code-{index}")

    assert [item["code"] for item in carol.of_type("code-update")] == [f"code-{index}" for index in range(5)]
    assert [item["code"] for item in alice.of_type("code-update")] == ["code-1", "code-3"]
    assert [item["code"] for item in bob.of_type("code-update")] == ["code-0", "code-2", "code-4"]
    assert registry.get(room_id).code == "code-4"


@pytest.mark.asyncio
async def test_concurrent_edits_are_observed_in_processing_order(fake_connection_factory):
    registry, _, engine, lifecycle = _build()
    room_id = (await lifecycle.create_room("Alice", "go"))["id"]
    alice, bob, carol = (fake_connection_factory(name) for name in ("alice", "bob", "carol"))
    for conn in (alice, bob, carol):
        await engine.join(conn, room_id, conn.connection_id)

    await asyncio.gather(*[
        engine.edit(alice if index % 2 else bob, room_id, f"edit-{index}")
        for index in range(20)
    ])

    observed = [item["code"] for item in carol.of_type("code-update")]
    assert sorted(observed) == sorted(f"edit-{index}" for index in range(20))
    assert observed[-1] == registry.get(room_id).code


@pytest.mark.asyncio
async def test_code_writes_are_debounced_to_last_edit(fake_connection_factory):
    _, store, engine, lifecycle = _build()
    room_id = (await lifecycle.create_room("Alice", "cpp"))["id"]
    alice = fake_connection_factory("alice")
    await engine.join(alice, room_id, "Alice")

    for index in range(8):
        await engine.edit(alice, room_id, f"draft {index}")

    assert store.history_writes == []
    await asyncio.sleep(DEBOUNCE_SEC * 4)

    assert store.history_writes == ["draft 7"]
    record = await store.find(room_id)
    assert record.code == "draft 7"
    assert [item["code"] for item in record.code_history] == ["draft 7"]


@pytest.mark.asyncio
async def test_language_change_reaches_whole_room_and_persists_immediately(fake_connection_factory):
    registry, store, engine, lifecycle = _build()
    room_id = (await lifecycle.create_room("Alice", "cpp"))["id"]
    alice = fake_connection_factory("alice")
    bob = fake_connection_factory("bob")
    await engine.join(alice, room_id, "Alice")
    await engine.join(bob, room_id, "Bob")

    await engine.change_language(alice, room_id, "Java")

    assert alice.of_type("language-update") == [{"type": "language-update", "language": "java"}]
    assert bob.of_type("language-update") == [{"type": "language-update", "language": "java"}]
    assert registry.get(room_id).language == "java"
    await asyncio.sleep(0.01)
    assert (await store.find(room_id)).language == "java"


@pytest.mark.asyncio
async def test_updates_require_joined_connection(fake_connection_factory):
    registry, _, engine, lifecycle = _build()
    room_id = (await lifecycle.create_room("Alice", "cpp"))["id"]
    stranger = fake_connection_factory("stranger")

    assert await engine.edit(stranger, room_id, "hijack") is False
    assert await engine.change_language(stranger, room_id, "go") is False
    assert stranger.of_type("error") == [
        {"type": "error", "message": NOT_JOINED},
        {"type": "error", "message": NOT_JOINED},
    ]
    assert registry.get(room_id).code == ""
    assert registry.get(room_id).language == "cpp"


@pytest.mark.asyncio
async def test_disconnect_notifies_peers(fake_connection_factory):
    registry, _, engine, lifecycle = _build()
    room_id = (await lifecycle.create_room("Alice", "cpp"))["id"]
    alice = fake_connection_factory("alice")
    bob = fake_connection_factory("bob")
    await engine.join(alice, room_id, "Alice")
    await engine.join(bob, room_id, "Bob")

    await engine.disconnect(bob)

    assert alice.of_type("user-left") == [{"type": "user-left", "participant_count": 1}]
    assert registry.get(room_id).participants == {"alice"}
    assert engine.state_of("bob") == ConnectionState.DISCONNECTED

    # Second disconnect is a no-op.
    await engine.disconnect(bob)
    assert len(alice.of_type("user-left")) == 1


@pytest.mark.asyncio
async def test_empty_room_torn_down_after_grace_period(fake_connection_factory):
    registry, store, engine, lifecycle = _build()
    room_id = (await lifecycle.create_room("Alice", "cpp"))["id"]
    alice = fake_connection_factory("alice")
    await engine.join(alice, room_id, "Alice")

    await engine.disconnect(alice)
    assert registry.get(room_id) is not None
    assert (await store.find(room_id)).is_active is True

    await asyncio.sleep(GRACE_SEC * 2.5)

    assert registry.get(room_id) is None
    record = await store.find(room_id)
    assert record.is_active is False
    assert record.ended_at is not None


@pytest.mark.asyncio
async def test_rejoin_within_grace_period_keeps_room(fake_connection_factory):
    registry, store, engine, lifecycle = _build()
    room_id = (await lifecycle.create_room("Alice", "cpp"))["id"]
    first = fake_connection_factory("alice-tab-1")
    await engine.join(first, room_id, "Alice")
    await engine.edit(first, room_id, "int main() {}")
    await engine.disconnect(first)

    await asyncio.sleep(GRACE_SEC / 4)
    reloaded = fake_connection_factory("alice-tab-2")
    await engine.join(reloaded, room_id, "Alice")
    await asyncio.sleep(GRACE_SEC * 2.5)

    assert registry.get(room_id) is not None
    assert reloaded.of_type("room-state")[0]["code"] == "int main() {}"
    record = await store.find(room_id)
    assert record.is_active is True
    assert record.ended_at is None


@pytest.mark.asyncio
async def test_joining_another_room_leaves_the_first(fake_connection_factory):
    registry, _, engine, lifecycle = _build()
    first_id = (await lifecycle.create_room("A", "cpp"))["id"]
    second_id = (await lifecycle.create_room("B", "go"))["id"]
    alice = fake_connection_factory("alice")
    watcher = fake_connection_factory("watcher")
    await engine.join(watcher, first_id, "Watcher")
    await engine.join(alice, first_id, "Alice")

    await engine.join(alice, second_id, "Alice")

    assert registry.get(first_id).participants == {"watcher"}
    assert registry.get(second_id).participants == {"alice"}
    assert engine.room_of("alice") == second_id
    assert watcher.of_type("user-left") == [{"type": "user-left", "participant_count": 1}]


@pytest.mark.asyncio
async def test_engine_works_without_persistence(fake_connection_factory, failing_store):
    registry, _, engine, lifecycle = _build(store=failing_store)
    created = await lifecycle.create_room("Alice", "cpp")
    room_id = created["id"]
    alice = fake_connection_factory("alice")
    bob = fake_connection_factory("bob")

    await engine.join(alice, room_id, "Alice")
    await engine.join(bob, room_id, "Bob")
    await engine.edit(alice, room_id, "std::cout << 1;")
    await engine.change_language(bob, room_id, "java")
    await asyncio.sleep(DEBOUNCE_SEC * 3)

    snapshot = await lifecycle.fetch(room_id)
    assert snapshot["code"] == "std::cout << 1;"
    assert snapshot["language"] == "java"
    assert snapshot["participant_count"] == 2
    assert bob.of_type("code-update") == [{"type": "code-update", "code": "std::cout << 1;"}]
    assert "append_history" in failing_store.calls

    await engine.disconnect(alice)
    await engine.disconnect(bob)
    await asyncio.sleep(GRACE_SEC * 2.5)
    assert registry.get(room_id) is None




@pytest.mark.asyncio
async def test_stalled_peers_are_dropped_without_blocking_room(fake_connection_factory):
    registry = RoomRegistry()
    engine = SyncEngine(registry, LocalSessionStore(), debounce_sec=DEBOUNCE_SEC, grace_period_sec=GRACE_SEC, send_timeout_sec=0.3)
    room = registry.create("room", "Alice", "cpp")

    stalled = [StalledConnection(f"stalled-{index}") for index in range(3)]
    alice = fake_connection_factory("alice")
    bob = fake_connection_factory("bob")
    await engine.join(alice, room.id, "Alice")
    await engine.join(bob, room.id, "Bob")
    for peer in stalled:
        await engine.join(peer, room.id, "Stalled")

    started = time.perf_counter()
    for index in range(3):
        await engine.edit(alice, room.id, f"edit {index}")
    elapsed = time.perf_counter() - started

    assert elapsed < 0.9
    assert room.code == "edit 2"
    assert room.participants == {"alice", "bob"}
    assert [item["code"] for item in bob.of_type("code-update")] == ["edit 0", "edit 1", "edit 2"]
    assert alice.of_type("user-left")[-1]["participant_count"] == 2
    for peer in stalled:
        assert engine.state_of(peer.connection_id) == ConnectionState.DISCONNECTED
        assert engine.room_of(peer.connection_id) is None

    await asyncio.sleep(0.05)
    assert all(peer.closed for peer in stalled)
    assert await engine.edit(stalled[0], room.id, "late") is False
    assert room.code == "edit 2"
    await engine.shutdown()


@pytest.mark.asyncio
async def test_shutdown_flushes_code_writes_and_cancels_teardowns(fake_connection_factory):
    registry, store, engine, lifecycle = _build()
    room_id = (await lifecycle.create_room("Alice", "go"))["id"]
    alice = fake_connection_factory("alice")
    await engine.join(alice, room_id, "Alice")
    await engine.edit(alice, room_id, "unsaved")
    await engine.disconnect(alice)

    assert store.history_writes == []
    await engine.shutdown()
    assert store.history_writes == ["unsaved"]
    assert (await store.find(room_id)).code == "unsaved"

    await asyncio.sleep(GRACE_SEC * 2)
    assert store.history_writes == ["unsaved"]
    assert room_id in registry
