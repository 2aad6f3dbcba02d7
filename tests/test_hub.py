"""
Tests for tvcast.dlna.hub (control session hub).
"""

from __future__ import annotations

import json
from typing import Any
from unittest.mock import AsyncMock, MagicMock
from urllib.parse import quote

import pytest

from tvcast.core.events import EventBus, PlaybackProgressEvent, PlayStateChangedEvent
from tvcast.core.models import Pause, PlayLive, PlayState, PlayVideo, Resume, Seek, SetDanmaku, Stop
from tvcast.dlna.hub import ControlSessionHub
from tvcast.protocol.nva import KIND_COMMAND, KIND_REPLY, NvaFrame

# =============================================================================
# Helpers
# =============================================================================


class FakeSession:
    """Records what the hub writes to a control session."""

    def __init__(self, session_id: str, fail: bool = False) -> None:
        self.session_id = session_id
        self.fail = fail
        self.replies: list[tuple[int, dict[str, Any] | None]] = []
        self.pushes: list[tuple[str, dict[str, Any]]] = []
        self.closed = False
        self.touched = 0

    @property
    def is_closed(self) -> bool:
        return self.closed

    def touch(self) -> None:
        self.touched += 1

    async def send_reply(self, seq: int, content: dict[str, Any]) -> None:
        self.replies.append((seq, content))

    async def send_empty(self, seq: int) -> None:
        self.replies.append((seq, None))

    async def send_command(self, action: str, content: dict[str, Any]) -> None:
        if self.fail or self.closed:
            raise ConnectionError("broken pipe")
        self.pushes.append((action, content))

    async def close(self) -> None:
        self.closed = True


def command(seq: int, action: str, body: dict[str, Any] | str | None = None) -> NvaFrame:
    if isinstance(body, dict):
        body = json.dumps(body)
    return NvaFrame(kind=KIND_COMMAND, seq=seq, action=action, body=body or "")


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def router() -> MagicMock:
    mock = MagicMock()
    mock.apply = AsyncMock()
    mock.volume = 30
    return mock


@pytest.fixture
def hub(router: MagicMock) -> ControlSessionHub:
    return ControlSessionHub(router)


# =============================================================================
# Session lifecycle and broadcast
# =============================================================================


class TestSessions:
    """Tests for session bookkeeping."""

    def test_open_close(self, hub: ControlSessionHub) -> None:
        """Opened sessions are tracked until closed."""
        a, b = FakeSession("a"), FakeSession("b")
        hub.on_session_open(a)
        hub.on_session_open(b)
        assert len(hub) == 2
        assert "a" in hub

        hub.on_session_close(a)
        hub.on_session_close(a)
        hub.on_session_close(b)

        assert len(hub) == 0
        assert hub.sessions == []

    async def test_broadcast_skips_closed(self, hub: ControlSessionHub) -> None:
        """A closed session never receives a push."""
        a, b = FakeSession("a"), FakeSession("b")
        hub.on_session_open(a)
        hub.on_session_open(b)
        hub.on_session_close(a)

        delivered = await hub.broadcast("OnPlayState", {"playState": 4})

        assert delivered == 1
        assert a.pushes == []
        assert b.pushes == [("OnPlayState", {"playState": 4})]

    async def test_broadcast_isolates_failures(self, hub: ControlSessionHub) -> None:
        """A failing session is closed and dropped; the others still get the push."""
        good1, bad, good2 = FakeSession("g1"), FakeSession("bad", fail=True), FakeSession("g2")
        for session in (good1, bad, good2):
            hub.on_session_open(session)

        delivered = await hub.broadcast("OnProgress", {"duration": 100, "position": 5})

        assert delivered == 2
        assert good1.pushes == good2.pushes == [("OnProgress", {"duration": 100, "position": 5})]
        assert bad.closed
        assert "bad" not in hub
        assert len(hub) == 2

    async def test_events_fan_out(self, hub: ControlSessionHub) -> None:
        """Play-state and progress events become pushes on every session."""
        bus = EventBus()
        await hub.attach(bus)
        session = FakeSession("a")
        hub.on_session_open(session)

        await bus.publish(PlayStateChangedEvent(play_state=PlayState.PAUSED))
        await bus.publish(PlaybackProgressEvent(duration=300, position=42))

        assert session.pushes == [
            ("OnPlayState", {"playState": 5}),
            ("OnProgress", {"duration": 300, "position": 42}),
        ]

    async def test_detach_stops_pushes(self, hub: ControlSessionHub) -> None:
        """After detach, bus events no longer reach sessions."""
        bus = EventBus()
        await hub.attach(bus)
        await hub.detach()
        await hub.detach()
        session = FakeSession("a")
        hub.on_session_open(session)

        await bus.publish(PlayStateChangedEvent(play_state=PlayState.PAUSED))

        assert session.pushes == []


# =============================================================================
# Inbound actions
# =============================================================================


class TestActions:
    """Tests for decoding inbound action frames."""

    async def test_unknown_action_acked(self, hub: ControlSessionHub, router: MagicMock) -> None:
        """Unknown actions get an empty ack and the session stays open."""
        session = FakeSession("a")
        hub.on_session_open(session)

        await hub.on_frame(session, command(11, "Foo", {"x": 1}))

        assert session.replies == [(11, None)]
        assert not session.closed
        assert "a" in hub
        router.apply.assert_not_awaited()

    async def test_reply_frames_ignored(self, hub: ControlSessionHub, router: MagicMock) -> None:
        """Replies from the app are not answered."""
        session = FakeSession("a")
        await hub.on_frame(session, NvaFrame(kind=KIND_REPLY, seq=3))
        assert session.replies == []
        assert session.touched == 1

    async def test_get_volume(self, hub: ControlSessionHub) -> None:
        """GetVolume replies with the router's volume."""
        session = FakeSession("a")
        await hub.on_frame(session, command(2, "GetVolume"))
        assert session.replies == [(2, {"volume": 30})]

    async def test_play_video(self, hub: ControlSessionHub, router: MagicMock) -> None:
        """Play with aid/cid becomes one PlayVideo command."""
        session = FakeSession("a")
        await hub.on_frame(session, command(4, "Play", {"aid": 170001, "cid": "279786", "epid": 0}))

        assert session.replies == [(4, None)]
        router.apply.assert_awaited_once_with(PlayVideo(aid=170001, cid=279786, epid=0))

    async def test_play_live(self, hub: ControlSessionHub, router: MagicMock) -> None:
        """A positive roomId takes precedence over aid/cid."""
        session = FakeSession("a")
        await hub.on_frame(session, command(5, "Play", {"roomId": 21452505, "aid": 1}))

        router.apply.assert_awaited_once_with(PlayLive(room_id=21452505))

    @pytest.mark.parametrize(
        ("action", "expected"),
        [("Pause", Pause()), ("Resume", Resume()), ("Stop", Stop())],
    )
    async def test_transport(
        self, hub: ControlSessionHub, router: MagicMock, action: str, expected: object
    ) -> None:
        """Transport actions map one-to-one and are acked."""
        session = FakeSession("a")
        await hub.on_frame(session, command(6, action))

        router.apply.assert_awaited_once_with(expected)
        assert session.replies == [(6, None)]

    async def test_seek(self, hub: ControlSessionHub, router: MagicMock) -> None:
        """Seek reads seekTs in seconds."""
        session = FakeSession("a")
        await hub.on_frame(session, command(7, "Seek", {"seekTs": 95}))

        router.apply.assert_awaited_once_with(Seek(position=95.0))
        assert session.replies == [(7, None)]

    async def test_seek_bad_value(self, hub: ControlSessionHub, router: MagicMock) -> None:
        """An unparseable seek target is acked without a command."""
        session = FakeSession("a")
        await hub.on_frame(session, command(8, "Seek", {"seekTs": "soon"}))

        router.apply.assert_not_awaited()
        assert session.replies == [(8, None)]

    async def test_bad_json_acked(self, hub: ControlSessionHub, router: MagicMock) -> None:
        """A body that is not JSON is acked without a command."""
        session = FakeSession("a")
        await hub.on_frame(session, command(9, "Play", "{not json"))

        router.apply.assert_not_awaited()
        assert session.replies == [(9, None)]

    async def test_switch_danmaku(self, hub: ControlSessionHub, router: MagicMock) -> None:
        """SwitchDanmaku toggles the overlay."""
        session = FakeSession("a")
        await hub.on_frame(session, command(10, "SwitchDanmaku", {"open": False}))

        router.apply.assert_awaited_once_with(SetDanmaku(enabled=False))

    async def test_non_finite_id_acked(self, hub: ControlSessionHub, router: MagicMock) -> None:
        """NaN in a Play body is acked once and leaves the session usable."""
        session = FakeSession("a")
        await hub.on_frame(session, command(14, "Play", '{"aid": NaN, "cid": 1}'))

        router.apply.assert_not_awaited()
        assert session.replies == [(14, None)]
        assert not session.is_closed

        await hub.on_frame(session, command(15, "GetVolume"))
        assert session.replies[-1] == (15, {"volume": 30})

    async def test_overflowing_id_becomes_zero(self, hub: ControlSessionHub, router: MagicMock) -> None:
        """An id too large for a float is treated as absent."""
        session = FakeSession("a")
        await hub.on_frame(session, command(16, "Play", '{"aid": 1e400, "cid": 1}'))

        router.apply.assert_awaited_once_with(PlayVideo(aid=0, cid=1, epid=0))
        assert session.replies == [(16, None)]

    async def test_seek_infinite_acked(self, hub: ControlSessionHub, router: MagicMock) -> None:
        """An infinite seek target is acked without a command."""
        session = FakeSession("a")
        await hub.on_frame(session, command(17, "Seek", '{"seekTs": 1e400}'))

        router.apply.assert_not_awaited()
        assert session.replies == [(17, None)]

    @pytest.mark.parametrize(("value", "expected"), [("false", False), ("TRUE", True), (True, True)])
    async def test_switch_danmaku_flag_forms(
        self, hub: ControlSessionHub, router: MagicMock, value: Any, expected: bool
    ) -> None:
        """The open flag accepts booleans and their string forms."""
        session = FakeSession("a")
        await hub.on_frame(session, command(18, "SwitchDanmaku", {"open": value}))

        router.apply.assert_awaited_once_with(SetDanmaku(enabled=expected))
        assert session.replies == [(18, None)]

    @pytest.mark.parametrize("value", ["maybe", 1, None])
    async def test_switch_danmaku_bad_flag(self, hub: ControlSessionHub, router: MagicMock, value: Any) -> None:
        """A flag that is not a boolean is acked without a command."""
        session = FakeSession("a")
        await hub.on_frame(session, command(19, "SwitchDanmaku", {"open": value}))

        router.apply.assert_not_awaited()
        assert session.replies == [(19, None)]

    async def test_play_url_with_extension(self, hub: ControlSessionHub, router: MagicMock) -> None:
        """PlayUrl plays the content nested in the URL's extension parameter."""
        ext = json.dumps({"content": {"aid": 42, "cid": 43}})
        url = f"https://example.invalid/play?foo=1&nva_ext={quote(ext)}"
        session = FakeSession("a")

        await hub.on_frame(session, command(12, "PlayUrl", {"url": url}))

        assert session.replies == [(12, None)]
        router.apply.assert_awaited_once_with(PlayVideo(aid=42, cid=43, epid=0))

    async def test_play_url_without_extension(self, hub: ControlSessionHub, router: MagicMock) -> None:
        """PlayUrl without the extension is acked and otherwise ignored."""
        session = FakeSession("a")

        await hub.on_frame(session, command(13, "PlayUrl", {"url": "https://example.invalid/v.mp4"}))

        assert session.replies == [(13, None)]
        router.apply.assert_not_awaited()
