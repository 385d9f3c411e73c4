import asyncio
import threading

import pytest

from callcore.events import (
    ConnectionState,
    ConnectionStateChanged,
    EventChannel,
    ParticipantJoined,
    ParticipantLeft,
)
from callcore.layout import TileSize
from callcore.router import SessionRouter, SessionState
from callshared.protocol import LeaveReason


class DummyEngine:
    def __init__(self) -> None:
        self.calls: list[tuple] = []
        self.events: EventChannel | None = None

    def create(self, events: EventChannel) -> None:
        self.events = events
        self.calls.append(("create",))

    def destroy(self) -> None:
        self.events = None
        self.calls.append(("destroy",))

    def enable_video(self) -> None:
        self.calls.append(("enable_video",))

    def start_preview(self) -> None:
        self.calls.append(("start_preview",))

    def stop_preview(self) -> None:
        self.calls.append(("stop_preview",))

    def join_channel(self, token: str, channel: str, uid: int) -> None:
        self.calls.append(("join_channel", token, channel, uid))

    def leave_channel(self) -> None:
        self.calls.append(("leave_channel",))

    def setup_remote_video(self, uid: int) -> None:
        self.calls.append(("setup_remote_video", uid))

    def mute_local_audio(self, muted: bool) -> None:
        self.calls.append(("mute_local_audio", muted))

    def mute_local_video(self, muted: bool) -> None:
        self.calls.append(("mute_local_video", muted))

    def enable_local_video(self, enabled: bool) -> None:
        self.calls.append(("enable_local_video", enabled))

    def names(self) -> list[str]:
        return [call[0] for call in self.calls]


class DummySurface:
    def __init__(self) -> None:
        self.updates: list[tuple[list[int], list[TileSize]]] = []
        self.resets = 0

    def update_tiles(self, ordered_ids, tiles) -> None:
        self.updates.append((list(ordered_ids), list(tiles)))

    def reset(self) -> None:
        self.resets += 1


@pytest.fixture
def anyio_backend():
    return "asyncio"


def make_router(**kwargs) -> tuple[SessionRouter, DummyEngine, DummySurface]:
    engine = DummyEngine()
    surface = DummySurface()
    router = SessionRouter(engine, surface, surface_width=300, surface_height=600, **kwargs)
    return router, engine, surface


def test_join_sequence_orders_tiles() -> None:
    router, engine, surface = make_router()
    assert router.join("tok", "lobby") is True
    assert router.state is SessionState.ACTIVE

    router.dispatch(ParticipantJoined(7))
    router.dispatch(ParticipantJoined(9))
    router.dispatch(ParticipantLeft(7, LeaveReason.DROPPED))
    router.dispatch(ParticipantJoined(11))

    assert router.participants() == [9, 11]
    ordered, tiles = surface.updates[-1]
    assert ordered == [9, 11]
    assert tiles == [TileSize(300, 300), TileSize(300, 300)]
    assert ("setup_remote_video", 7) in engine.calls
    assert ("setup_remote_video", 11) in engine.calls


def test_join_drives_engine_lifecycle() -> None:
    router, engine, _ = make_router()
    router.join("tok", "lobby", uid=5)
    assert engine.names() == ["create", "enable_video", "start_preview", "join_channel"]
    assert engine.calls[-1] == ("join_channel", "tok", "lobby", 5)
    assert router.channel == "lobby"


def test_leave_while_idle_is_noop() -> None:
    router, engine, surface = make_router()
    assert router.leave() is False
    assert router.state is SessionState.IDLE
    assert engine.calls == []
    assert surface.resets == 0


def test_leave_clears_registry_and_surface() -> None:
    router, engine, surface = make_router()
    router.join("tok", "lobby")
    router.dispatch(ParticipantJoined(1))
    router.dispatch(ParticipantJoined(2))

    assert router.leave() is True
    assert router.state is SessionState.IDLE
    assert router.participants() == []
    assert surface.resets == 1
    assert engine.names()[-3:] == ["stop_preview", "leave_channel", "destroy"]
    assert router.leave() is False


def test_join_while_active_is_ignored() -> None:
    router, engine, _ = make_router()
    router.join("tok", "lobby")
    assert router.join("tok", "other") is False
    assert router.channel == "lobby"
    assert engine.names().count("join_channel") == 1


def test_duplicate_join_and_unknown_leave_still_render() -> None:
    router, engine, surface = make_router()
    router.join("tok", "lobby")
    router.dispatch(ParticipantJoined(3))
    router.dispatch(ParticipantJoined(3))
    router.dispatch(ParticipantLeft(99))

    assert router.participants() == [3]
    assert len(surface.updates) == 3
    assert all(update[0] == [3] for update in surface.updates)
    assert engine.calls.count(("setup_remote_video", 3)) == 1


def test_events_while_idle_are_ignored() -> None:
    router, _, surface = make_router()
    router.dispatch(ParticipantJoined(1))
    assert router.participants() == []
    assert surface.updates == []


def test_mute_and_pause_do_not_touch_tiles() -> None:
    router, engine, surface = make_router()
    router.join("tok", "lobby")
    router.dispatch(ParticipantJoined(1))
    updates_before = len(surface.updates)

    router.set_audio_muted(True)
    router.set_video_paused(True)

    assert router.audio_muted is True
    assert router.video_paused is True
    assert ("mute_local_audio", True) in engine.calls
    assert ("mute_local_video", True) in engine.calls
    assert ("enable_local_video", False) in engine.calls
    assert len(surface.updates) == updates_before
    assert router.participants() == [1]

    router.leave()
    assert router.audio_muted is False
    assert router.video_paused is False


def test_resize_rerenders_when_active() -> None:
    router, _, surface = make_router()
    router.resize(400, 400)
    assert surface.updates == []

    router.join("tok", "lobby")
    for uid in (1, 2, 3):
        router.dispatch(ParticipantJoined(uid))
    router.resize(600, 900)

    ordered, tiles = surface.updates[-1]
    assert ordered == [1, 2, 3]
    assert tiles == [TileSize(300, 450)] * 3
    with pytest.raises(ValueError):
        router.resize(0, 10)


def test_engine_failure_on_join_returns_to_idle() -> None:
    router, engine, surface = make_router()

    def broken_join(token, channel, uid):
        raise RuntimeError("engine unavailable")

    engine.join_channel = broken_join  # type: ignore[assignment]

    with pytest.raises(RuntimeError):
        router.join("tok", "lobby")
    assert router.state is SessionState.IDLE
    assert "destroy" in engine.names()
    assert surface.resets == 1


@pytest.mark.anyio
async def test_run_consumes_channel_in_order() -> None:
    seen: list[ConnectionStateChanged] = []
    router, _, surface = make_router(on_connection_state=seen.append)
    router.join("tok", "lobby")
    channel = router.events

    task = asyncio.create_task(router.run())
    channel.publish(ParticipantJoined(7))
    channel.publish(ParticipantJoined(9))
    channel.publish(ConnectionStateChanged(ConnectionState.CONNECTED))
    channel.publish(ParticipantLeft(7))
    channel.publish(ParticipantJoined(11))
    channel.close()
    await asyncio.wait_for(task, timeout=1)

    assert router.participants() == [9, 11]
    assert [update[0] for update in surface.updates] == [[7], [7, 9], [9], [9, 11]]
    assert seen == [ConnectionStateChanged(ConnectionState.CONNECTED)]


@pytest.mark.anyio
async def test_async_connection_callback_finishes_before_next_event() -> None:
    tiles_seen_by_callback: list[int] = []

    async def on_state(event: ConnectionStateChanged) -> None:
        await asyncio.sleep(0.01)
        tiles_seen_by_callback.append(len(surface.updates))

    router, _, surface = make_router(on_connection_state=on_state)
    router.join("tok", "lobby")
    router.events.publish(ConnectionStateChanged(ConnectionState.CONNECTED))
    router.events.publish(ParticipantJoined(3))
    router.events.close()
    await asyncio.wait_for(router.run(), timeout=1)

    assert tiles_seen_by_callback == [0]
    assert router.participants() == [3]


@pytest.mark.anyio
async def test_rejoin_discards_events_queued_by_previous_session() -> None:
    seen: list[ConnectionStateChanged] = []
    router, _, surface = make_router(on_connection_state=seen.append)
    router.join("t1", "room-a")
    router.events.publish(ParticipantJoined(5))
    router.events.publish(ConnectionStateChanged(ConnectionState.DISCONNECTED, "server_closed"))
    router.leave()

    router.join("t2", "room-b")
    router.events.publish(ParticipantJoined(8))
    router.events.close()
    await asyncio.wait_for(router.run(), timeout=1)

    assert router.channel == "room-b"
    assert router.state is SessionState.ACTIVE
    assert router.participants() == [8]
    assert [update[0] for update in surface.updates] == [[8]]
    assert seen == []


@pytest.mark.anyio
async def test_discard_pending_keeps_close_marker() -> None:
    channel = EventChannel()
    channel.publish(ParticipantJoined(1))
    channel.publish(ParticipantJoined(2))
    channel.close()

    assert channel.discard_pending() == 2
    assert await channel.get() is None


@pytest.mark.anyio
async def test_events_published_from_another_thread_keep_order() -> None:
    router, _, surface = make_router()
    router.join("tok", "lobby")
    loop = asyncio.get_running_loop()
    task = asyncio.create_task(router.run())

    def deliver() -> None:
        for uid in (1, 2, 3):
            router.events.publish_threadsafe(loop, ParticipantJoined(uid))
        router.events.publish_threadsafe(loop, ParticipantLeft(2, LeaveReason.DROPPED))
        loop.call_soon_threadsafe(router.events.close)

    worker = threading.Thread(target=deliver)
    worker.start()
    await asyncio.wait_for(task, timeout=1)
    worker.join()

    assert router.participants() == [1, 3]
    assert [update[0] for update in surface.updates] == [[1], [1, 2], [1, 2, 3], [1, 3]]
