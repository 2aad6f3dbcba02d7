"""
Playback command routing.

The PlaybackCommandRouter is the only component that calls into the player
collaborator. Every decoded command, whichever protocol it arrived on, is
applied here as exactly one player call; player state changes go the other
way as play-state and progress events on the bus.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Protocol

from tvcast.core.events import (
    CastCommandEvent,
    ContentIdReceivedEvent,
    DevicePlaybackStateEvent,
    DeviceStatusChangedEvent,
    Event,
    EventBus,
    PlaybackProgressEvent,
    PlayStateChangedEvent,
    VideoUrlReceivedEvent,
)
from tvcast.core.models import (
    CastCommand,
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
)

logger = logging.getLogger(__name__)


class Player(Protocol):
    """The media player collaborator (decode/render lives elsewhere)."""

    async def play_url(self, url: str, title: str, metadata: Any = None) -> None: ...

    async def play_video(self, aid: int, cid: int, epid: int = 0) -> None: ...

    async def play_live(self, room_id: int) -> None: ...

    async def pause(self) -> None: ...

    async def resume(self) -> None: ...

    async def stop(self) -> None: ...

    async def seek(self, seconds: float) -> None: ...

    async def set_volume(self, level: float) -> None: ...

    async def set_rate(self, rate: float) -> None: ...


class DanmakuDisplay(Protocol):
    """On-screen comment overlay collaborator."""

    async def set_enabled(self, enabled: bool) -> None: ...


# Remote device status mirrored to the app as a play state.
_DEVICE_PLAY_STATES: dict[DeviceStatus, PlayState] = {
    DeviceStatus.PLAYING: PlayState.PLAYING,
    DeviceStatus.PAUSED: PlayState.PAUSED,
    DeviceStatus.DISCONNECTED: PlayState.STOPPED,
    DeviceStatus.ERROR: PlayState.STOPPED,
}


class PlaybackCommandRouter:
    """
    Translate commands into player calls and player state into events.

    Contains no socket or framing logic; outbound frames are produced by
    whoever subscribes to PlayStateChangedEvent / PlaybackProgressEvent.
    """

    def __init__(
        self,
        player: Player,
        event_bus: EventBus,
        danmaku: DanmakuDisplay | None = None,
        default_volume: int = 30,
    ) -> None:
        self.player = player
        self.danmaku = danmaku
        self.event_bus = event_bus

        self._volume = default_volume
        self._last_play_state: PlayState | None = None

        self._handlers: dict[type[CastCommand], Callable[[Any], Awaitable[None]]] = {
            Play: self._apply_play,
            PlayVideo: self._apply_play_video,
            PlayLive: self._apply_play_live,
            Pause: lambda _: self.player.pause(),
            Resume: lambda _: self.player.resume(),
            Stop: lambda _: self.player.stop(),
            Seek: lambda cmd: self.player.seek(cmd.position),
            SetVolume: self._apply_volume,
            SetPlaybackRate: lambda cmd: self.player.set_rate(cmd.rate),
            SetDanmaku: self._apply_danmaku,
        }

    @property
    def volume(self) -> int:
        """Current volume as reported to control sessions (0-100)."""
        return self._volume

    @property
    def last_play_state(self) -> PlayState | None:
        return self._last_play_state

    def _subscriptions(self) -> list[tuple[type[Event], Callable[[Any], Awaitable[None]]]]:
        return [
            (CastCommandEvent, self._on_cast_command),
            (VideoUrlReceivedEvent, self._on_video_url),
            (ContentIdReceivedEvent, self._on_content_id),
            (DeviceStatusChangedEvent, self._on_device_status),
            (DevicePlaybackStateEvent, self._on_device_playback),
        ]

    async def attach(self) -> None:
        """Subscribe to the inbound event channels."""
        for event_type, handler in self._subscriptions():
            await self.event_bus.subscribe(event_type, handler)

    async def detach(self) -> None:
        for event_type, handler in self._subscriptions():
            await self.event_bus.unsubscribe(event_type, handler)

    async def apply(self, command: CastCommand) -> None:
        """Apply one command as exactly one collaborator call."""
        handler = self._handlers.get(type(command))
        if handler is None:
            logger.warning("No player mapping for command %r", command)
            return

        logger.debug("Applying %r", command)
        await handler(command)

    async def _apply_play(self, command: Play) -> None:
        await self.player.play_url(command.url, command.title, command.metadata)

    async def _apply_play_video(self, command: PlayVideo) -> None:
        await self.player.play_video(command.aid, command.cid, command.epid)

    async def _apply_play_live(self, command: PlayLive) -> None:
        await self.player.play_live(command.room_id)

    async def _apply_volume(self, command: SetVolume) -> None:
        await self.player.set_volume(command.level)

    async def _apply_danmaku(self, command: SetDanmaku) -> None:
        if self.danmaku is None:
            logger.debug("No danmaku display attached, ignoring toggle")
            return
        await self.danmaku.set_enabled(command.enabled)

    # -------------------------------------------------------------------------
    # Player -> outbound
    # -------------------------------------------------------------------------

    async def on_player_state_changed(self, state: PlaybackState) -> None:
        """
        Map a player snapshot onto play-state and progress events.

        The play state is only published when it changes; progress is
        published for every snapshot that carries a duration.
        """
        self._volume = round(state.volume * 100) if state.volume <= 1 else round(state.volume)

        if state.status != self._last_play_state:
            self._last_play_state = state.status
            await self.event_bus.publish(PlayStateChangedEvent(play_state=state.status))

        if state.duration > 0:
            await self.event_bus.publish(
                PlaybackProgressEvent(duration=int(state.duration), position=int(state.position))
            )

    # -------------------------------------------------------------------------
    # Event handlers
    # -------------------------------------------------------------------------

    async def _on_cast_command(self, event: CastCommandEvent) -> None:
        await self.apply(event.command)

    async def _on_video_url(self, event: VideoUrlReceivedEvent) -> None:
        await self.apply(Play(url=event.url, title=event.title))

    async def _on_content_id(self, event: ContentIdReceivedEvent) -> None:
        await self.apply(
            PlayVideo(aid=event.aid, cid=event.cid, epid=event.epid, metadata=event.metadata)
        )

    async def _on_device_status(self, event: DeviceStatusChangedEvent) -> None:
        play_state = _DEVICE_PLAY_STATES.get(event.status)
        if play_state is not None:
            device_id = event.device.id if event.device is not None else ""
            await self.event_bus.publish(PlayStateChangedEvent(play_state=play_state, device_id=device_id))

    async def _on_device_playback(self, event: DevicePlaybackStateEvent) -> None:
        await self.event_bus.publish(
            PlaybackProgressEvent(
                duration=int(event.state.duration),
                position=int(event.state.position),
                device_id=event.device_id,
            )
        )
