"""
Tests for tvcast.player.router and the headless player.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from tvcast.core.events import (
    CastCommandEvent,
    ContentIdReceivedEvent,
    DevicePlaybackStateEvent,
    DeviceStatusChangedEvent,
    EventBus,
    PlaybackProgressEvent,
    PlayStateChangedEvent,
    VideoUrlReceivedEvent,
)
from tvcast.core.models import (
    CastSource,
    Device,
    DeviceStatus,
    Pause,
    Play,
    PlaybackState,
    PlayLive,
    PlayState,
    PlayVideo,
    Resume,
    Seek,
    SetDanmaku,
    SetPlaybackRate,
    SetVolume,
    Stop,
    VideoMetadata,
)
from tvcast.player.headless import HeadlessPlayer, LoggingDanmaku
from tvcast.player.router import PlaybackCommandRouter

PLAYER_METHODS = (
    "play_url",
    "play_video",
    "play_live",
    "pause",
    "resume",
    "stop",
    "seek",
    "set_volume",
    "set_rate",
)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def player() -> MagicMock:
    mock = MagicMock()
    for name in PLAYER_METHODS:
        setattr(mock, name, AsyncMock())
    return mock


@pytest.fixture
def danmaku() -> MagicMock:
    mock = MagicMock()
    mock.set_enabled = AsyncMock()
    return mock


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def router(player: MagicMock, bus: EventBus, danmaku: MagicMock) -> PlaybackCommandRouter:
    return PlaybackCommandRouter(player, bus, danmaku=danmaku)


def _total_calls(player: MagicMock) -> int:
    return sum(getattr(player, name).await_count for name in PLAYER_METHODS)


async def _collect(bus: EventBus, event_type: type) -> list:
    received: list = []

    async def handler(event) -> None:
        received.append(event)

    await bus.subscribe(event_type, handler)
    return received


# =============================================================================
# Command application
# =============================================================================


class TestApply:
    """Tests for command to player-call mapping."""

    @pytest.mark.parametrize(
        ("command", "method", "args"),
        [
            (Play(url="http://v/1.mp4", title="t"), "play_url", ("http://v/1.mp4", "t", None)),
            (PlayVideo(aid=1, cid=2, epid=3), "play_video", (1, 2, 3)),
            (PlayLive(room_id=99), "play_live", (99,)),
            (Pause(), "pause", ()),
            (Resume(), "resume", ()),
            (Stop(), "stop", ()),
            (Seek(position=12.5), "seek", (12.5,)),
            (SetVolume(level=0.4), "set_volume", (0.4,)),
            (SetPlaybackRate(rate=1.5), "set_rate", (1.5,)),
        ],
    )
    async def test_one_call_per_command(
        self,
        router: PlaybackCommandRouter,
        player: MagicMock,
        command: object,
        method: str,
        args: tuple,
    ) -> None:
        """Each command produces exactly one player call."""
        await router.apply(command)

        getattr(player, method).assert_awaited_once_with(*args)
        assert _total_calls(player) == 1

    async def test_danmaku(self, router: PlaybackCommandRouter, player: MagicMock, danmaku: MagicMock) -> None:
        """SetDanmaku goes to the overlay, not the player."""
        await router.apply(SetDanmaku(enabled=False))

        danmaku.set_enabled.assert_awaited_once_with(False)
        assert _total_calls(player) == 0

    async def test_danmaku_without_overlay(self, player: MagicMock, bus: EventBus) -> None:
        """Without an overlay the toggle is dropped."""
        router = PlaybackCommandRouter(player, bus)
        await router.apply(SetDanmaku(enabled=True))
        assert _total_calls(player) == 0


# =============================================================================
# Inbound events
# =============================================================================


class TestInboundEvents:
    """Tests for the event channels the router consumes."""

    async def test_cast_command_event(self, router: PlaybackCommandRouter, player: MagicMock, bus: EventBus) -> None:
        """CastCommandEvent commands are applied."""
        await router.attach()
        await bus.publish(CastCommandEvent(command=Pause(), source=CastSource.COMPANION_APP))
        player.pause.assert_awaited_once()

    async def test_video_url_event(self, router: PlaybackCommandRouter, player: MagicMock, bus: EventBus) -> None:
        """A received URL becomes a play_url call."""
        await router.attach()
        await bus.publish(VideoUrlReceivedEvent(url="http://v/1.mp4", title="Demo"))
        player.play_url.assert_awaited_once_with("http://v/1.mp4", "Demo", None)

    async def test_content_id_event(self, router: PlaybackCommandRouter, player: MagicMock, bus: EventBus) -> None:
        """Received content ids become a play_video call."""
        await router.attach()
        await bus.publish(ContentIdReceivedEvent(aid=5, cid=6, metadata=VideoMetadata(content_id=5)))
        player.play_video.assert_awaited_once_with(5, 6, 0)
        assert _total_calls(player) == 1


# =============================================================================
# Outbound events
# =============================================================================


class TestPlayerState:
    """Tests for player snapshot to event mapping."""

    async def test_play_state_published_on_change(self, router: PlaybackCommandRouter, bus: EventBus) -> None:
        """Play state is published only when it changes."""
        states = await _collect(bus, PlayStateChangedEvent)

        await router.on_player_state_changed(PlaybackState(status=PlayState.PLAYING))
        await router.on_player_state_changed(PlaybackState(status=PlayState.PLAYING, position=3))
        await router.on_player_state_changed(PlaybackState(status=PlayState.PAUSED))

        assert [e.play_state for e in states] == [PlayState.PLAYING, PlayState.PAUSED]
        assert router.last_play_state is PlayState.PAUSED

    async def test_progress_whole_seconds(self, router: PlaybackCommandRouter, bus: EventBus) -> None:
        """Progress is published in whole seconds when there is a duration."""
        progress = await _collect(bus, PlaybackProgressEvent)

        await router.on_player_state_changed(
            PlaybackState(status=PlayState.PLAYING, position=12.7, duration=300.2)
        )
        await router.on_player_state_changed(PlaybackState(status=PlayState.PLAYING, duration=0))

        assert progress == [PlaybackProgressEvent(duration=300, position=12)]

    async def test_volume_tracks_player(self, router: PlaybackCommandRouter) -> None:
        """Fractional player volume is reported as a percentage."""
        assert router.volume == 30
        await router.on_player_state_changed(PlaybackState(volume=0.55))
        assert router.volume == 55

    @pytest.mark.parametrize(
        ("status", "expected"),
        [
            (DeviceStatus.PLAYING, PlayState.PLAYING),
            (DeviceStatus.PAUSED, PlayState.PAUSED),
            (DeviceStatus.DISCONNECTED, PlayState.STOPPED),
            (DeviceStatus.ERROR, PlayState.STOPPED),
        ],
    )
    async def test_device_status_mirrored(
        self, router: PlaybackCommandRouter, bus: EventBus, status: DeviceStatus, expected: PlayState
    ) -> None:
        """Remote device statuses are mirrored as play states."""
        await router.attach()
        states = await _collect(bus, PlayStateChangedEvent)
        device = Device(id="tv-1", name="TV", model="M", address="10.0.0.2", port=9958)

        await bus.publish(DeviceStatusChangedEvent(device=device, status=status))

        assert states == [PlayStateChangedEvent(play_state=expected, device_id="tv-1")]
        assert not states[0].is_local

    async def test_device_connecting_not_mirrored(self, router: PlaybackCommandRouter, bus: EventBus) -> None:
        """Intermediate statuses do not reach the app."""
        await router.attach()
        states = await _collect(bus, PlayStateChangedEvent)

        await bus.publish(DeviceStatusChangedEvent(status=DeviceStatus.CONNECTING))

        assert states == []

    async def test_device_playback_becomes_progress(self, router: PlaybackCommandRouter, bus: EventBus) -> None:
        """Remote playback reports are forwarded as progress."""
        await router.attach()
        progress = await _collect(bus, PlaybackProgressEvent)

        await bus.publish(
            DevicePlaybackStateEvent(device_id="tv-1", state=PlaybackState(position=10.4, duration=60))
        )

        assert progress == [PlaybackProgressEvent(duration=60, position=10, device_id="tv-1")]


# =============================================================================
# Headless player
# =============================================================================


class TestHeadlessPlayer:
    """Tests for the logging player stand-in."""

    async def test_state_flows_to_router(self, bus: EventBus) -> None:
        """Headless player snapshots drive the router's events."""
        player = HeadlessPlayer()
        router = PlaybackCommandRouter(player, bus, danmaku=LoggingDanmaku())
        player.on_state = router.on_player_state_changed
        states = await _collect(bus, PlayStateChangedEvent)

        await router.apply(PlayVideo(aid=1, cid=2))
        await router.apply(Pause())
        await router.apply(Stop())

        assert [e.play_state for e in states] == [PlayState.PLAYING, PlayState.PAUSED, PlayState.STOPPED]
        assert player.current is None

    async def test_seek_clamps(self) -> None:
        """Negative seek targets clamp to zero."""
        player = HeadlessPlayer()
        await player.seek(-5)
        assert player.state.position == 0.0

    async def test_logging_danmaku(self) -> None:
        """The overlay stand-in remembers its toggle."""
        overlay = LoggingDanmaku()
        await overlay.set_enabled(False)
        assert overlay.enabled is False
