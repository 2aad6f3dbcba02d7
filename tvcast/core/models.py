"""
Shared data model for tvcast.

Devices, playback snapshots and cast commands are plain frozen dataclasses.
They are handed across components (and through the event bus) as immutable
snapshots; the owning component swaps in a new instance on every change.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass, field, replace
from enum import Enum, IntEnum
from typing import Any


class DeviceStatus(Enum):
    """Lifecycle of a remote cast device as seen from this client."""

    AVAILABLE = "available"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    PLAYING = "playing"
    PAUSED = "paused"
    DISCONNECTED = "disconnected"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        """Disconnected and error end a session; a fresh connect starts over."""
        return self in (DeviceStatus.DISCONNECTED, DeviceStatus.ERROR)

    @property
    def is_session_open(self) -> bool:
        return self in (DeviceStatus.CONNECTED, DeviceStatus.PLAYING, DeviceStatus.PAUSED)

    def can_transition_to(self, target: DeviceStatus) -> bool:
        """Check whether ``self -> target`` is a legal edge."""
        if target is DeviceStatus.ERROR:
            return not self.is_terminal
        return target in _LEGAL_TRANSITIONS[self]


_LEGAL_TRANSITIONS: dict[DeviceStatus, frozenset[DeviceStatus]] = {
    DeviceStatus.AVAILABLE: frozenset({DeviceStatus.CONNECTING}),
    DeviceStatus.CONNECTING: frozenset({DeviceStatus.CONNECTED, DeviceStatus.DISCONNECTED}),
    DeviceStatus.CONNECTED: frozenset(
        {DeviceStatus.PLAYING, DeviceStatus.PAUSED, DeviceStatus.DISCONNECTED}
    ),
    DeviceStatus.PLAYING: frozenset(
        {DeviceStatus.PAUSED, DeviceStatus.CONNECTED, DeviceStatus.DISCONNECTED}
    ),
    DeviceStatus.PAUSED: frozenset(
        {DeviceStatus.PLAYING, DeviceStatus.CONNECTED, DeviceStatus.DISCONNECTED}
    ),
    DeviceStatus.DISCONNECTED: frozenset({DeviceStatus.CONNECTING, DeviceStatus.AVAILABLE}),
    DeviceStatus.ERROR: frozenset({DeviceStatus.CONNECTING, DeviceStatus.AVAILABLE}),
}


class PlayState(IntEnum):
    """Play-state values pushed to control sessions (wire values)."""

    LOADING = 3
    PLAYING = 4
    PAUSED = 5
    ENDED = 6
    STOPPED = 7

    @classmethod
    def from_wire(cls, value: Any) -> PlayState | None:
        """Parse a remote status (int or status name) into a PlayState."""
        if isinstance(value, bool):
            return None
        if isinstance(value, int):
            try:
                return cls(value)
            except ValueError:
                return None
        if isinstance(value, str):
            return _PLAY_STATE_NAMES.get(value.strip().lower())
        return None


_PLAY_STATE_NAMES: dict[str, PlayState] = {
    "loading": PlayState.LOADING,
    "buffering": PlayState.LOADING,
    "playing": PlayState.PLAYING,
    "paused": PlayState.PAUSED,
    "ended": PlayState.ENDED,
    "stopped": PlayState.STOPPED,
    # Remote devices report their device status in state frames.
    "connected": PlayState.STOPPED,
}


class CastSource(Enum):
    """Where the currently received cast came from."""

    AIRPLAY = "AirPlay"
    COMPANION_APP = "Bilibili App"
    PEER_TV = "Cloud TV"
    OTHER = "Other"


@dataclass(frozen=True)
class DeviceCapabilities:
    """What a remote cast device says it can decode."""

    video_codecs: tuple[str, ...] = ("H.264", "H.265")
    audio_codecs: tuple[str, ...] = ("AAC", "MP3")
    max_resolution: tuple[int, int] = (1920, 1080)
    hdr: bool = False
    dolby: bool = False
    protocol_version: str = "1.0"

    @property
    def supports_4k(self) -> bool:
        return self.max_resolution[0] >= 3840


@dataclass(frozen=True)
class Device:
    """
    A remote cast-capable device.

    ``id`` comes from the discovery reply and is never regenerated; two
    Device instances with the same id describe the same device.
    """

    id: str
    name: str
    model: str
    address: str
    port: int
    capabilities: DeviceCapabilities = field(default_factory=DeviceCapabilities)
    status: DeviceStatus = DeviceStatus.AVAILABLE
    last_seen: float = field(default_factory=time.time)

    def with_status(self, status: DeviceStatus) -> Device:
        return replace(self, status=status)

    def touched(self, when: float | None = None) -> Device:
        return replace(self, last_seen=time.time() if when is None else when)

    def __hash__(self) -> int:
        return hash(self.id)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Device):
            return NotImplemented
        return self.id == other.id


@dataclass(frozen=True)
class PlaybackState:
    """Snapshot of a player's (local or remote) playback."""

    position: float = 0.0
    duration: float = 0.0
    status: PlayState = PlayState.STOPPED
    volume: float = 1.0
    rate: float = 1.0
    buffer_progress: float = 0.0

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> PlaybackState:
        """
        Parse a ``playbackState`` frame from a remote device.

        Raises:
            ValueError: If a required field is missing or has the wrong type.
        """
        status = PlayState.from_wire(data.get("status"))
        if status is None:
            raise ValueError(f"invalid playback status: {data.get('status')!r}")
        return cls(
            position=_number(data, "currentPosition"),
            duration=_number(data, "duration"),
            status=status,
            volume=_number(data, "volume"),
            rate=_number(data, "playbackRate"),
            buffer_progress=_number(data, "bufferProgress"),
        )


def _number(data: dict[str, Any], key: str) -> float:
    value = data.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise ValueError(f"missing or non-numeric field {key!r}")
    return float(value)


@dataclass(frozen=True)
class VideoMetadata:
    """Descriptive payload carried with an app-specific cast."""

    content_id: int = 0
    episode_id: int = 0
    title: str = ""
    uploader: str | None = None
    cover_url: str | None = None
    duration: int | None = None
    start_position: int | None = None
    danmaku_enabled: bool = True

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> VideoMetadata:
        """Build from a loosely typed JSON body; unknown or mistyped keys are dropped."""

        def opt_int(key: str) -> int | None:
            value = data.get(key)
            if isinstance(value, bool):
                return None
            if isinstance(value, int):
                return value
            if isinstance(value, float) and math.isfinite(value):
                return int(value)
            return None

        def opt_str(key: str) -> str | None:
            value = data.get(key)
            return value if isinstance(value, str) else None

        danmaku = data.get("danmakuEnabled", True)
        return cls(
            content_id=opt_int("aid") or 0,
            episode_id=opt_int("cid") or 0,
            title=opt_str("title") or "",
            uploader=opt_str("upName"),
            cover_url=opt_str("coverUrl"),
            duration=opt_int("duration"),
            start_position=opt_int("currentPosition"),
            danmaku_enabled=danmaku if isinstance(danmaku, bool) else True,
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "aid": self.content_id,
            "cid": self.episode_id,
            "title": self.title,
            "upName": self.uploader,
            "coverUrl": self.cover_url,
            "duration": self.duration,
            "currentPosition": self.start_position,
            "danmakuEnabled": self.danmaku_enabled,
        }


# -----------------------------------------------------------------------------
# Cast commands
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class CastCommand:
    """Base class for decoded playback commands."""

    #: Frame ``type`` used by the device command protocol.
    wire_type = ""


@dataclass(frozen=True)
class Play(CastCommand):
    wire_type = "play"

    url: str = ""
    title: str = ""
    metadata: VideoMetadata | None = None


@dataclass(frozen=True)
class PlayVideo(CastCommand):
    """Play app content by its archive/page/episode identifiers."""

    wire_type = "playVideo"

    aid: int = 0
    cid: int = 0
    epid: int = 0
    metadata: VideoMetadata | None = None


@dataclass(frozen=True)
class PlayLive(CastCommand):
    wire_type = "playLive"

    room_id: int = 0


@dataclass(frozen=True)
class Pause(CastCommand):
    wire_type = "pause"


@dataclass(frozen=True)
class Resume(CastCommand):
    wire_type = "resume"


@dataclass(frozen=True)
class Stop(CastCommand):
    wire_type = "stop"


@dataclass(frozen=True)
class Seek(CastCommand):
    wire_type = "seek"

    position: float = 0.0


@dataclass(frozen=True)
class SetVolume(CastCommand):
    wire_type = "setVolume"

    level: float = 0.0


@dataclass(frozen=True)
class SetPlaybackRate(CastCommand):
    wire_type = "setPlaybackRate"

    rate: float = 1.0


@dataclass(frozen=True)
class SetDanmaku(CastCommand):
    wire_type = "setDanmaku"

    enabled: bool = True


# Optimistic local status implied by a command sent to a remote device.
IMPLIED_DEVICE_STATUS: dict[type[CastCommand], DeviceStatus] = {
    Play: DeviceStatus.PLAYING,
    Pause: DeviceStatus.PAUSED,
    Resume: DeviceStatus.PLAYING,
    Stop: DeviceStatus.CONNECTED,
}
