"""
Headless player used when tvcast runs on its own.

Logs every call and keeps a minimal playback snapshot so control sessions
see believable play-state and progress pushes. A real UI embeds tvcast with
its own Player implementation instead.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Awaitable, Callable

from tvcast.core.models import PlaybackState, PlayState

logger = logging.getLogger(__name__)

StateListener = Callable[[PlaybackState], Awaitable[None]]


class HeadlessPlayer:
    """Player stand-in without decode or render."""

    def __init__(self, on_state: StateListener | None = None) -> None:
        self.on_state = on_state
        self.state = PlaybackState(status=PlayState.STOPPED, volume=0.3)
        self.current: str | None = None

    async def _update(self, **changes: Any) -> None:
        self.state = replace(self.state, **changes)
        if self.on_state is not None:
            await self.on_state(self.state)

    async def play_url(self, url: str, title: str, metadata: Any = None) -> None:
        logger.info("Playing URL %s (%s)", url, title)
        self.current = url
        await self._update(status=PlayState.PLAYING, position=0.0)

    async def play_video(self, aid: int, cid: int, epid: int = 0) -> None:
        logger.info("Playing video aid=%d cid=%d epid=%d", aid, cid, epid)
        self.current = f"av{aid}/{cid}"
        await self._update(status=PlayState.PLAYING, position=0.0)

    async def play_live(self, room_id: int) -> None:
        logger.info("Playing live room %d", room_id)
        self.current = f"live/{room_id}"
        await self._update(status=PlayState.PLAYING, position=0.0, duration=0.0)

    async def pause(self) -> None:
        logger.info("Pause")
        await self._update(status=PlayState.PAUSED)

    async def resume(self) -> None:
        logger.info("Resume")
        await self._update(status=PlayState.PLAYING)

    async def stop(self) -> None:
        logger.info("Stop")
        self.current = None
        await self._update(status=PlayState.STOPPED, position=0.0)

    async def seek(self, seconds: float) -> None:
        logger.info("Seek to %.1fs", seconds)
        await self._update(position=max(0.0, seconds))

    async def set_volume(self, level: float) -> None:
        logger.info("Volume %.2f", level)
        await self._update(volume=level)

    async def set_rate(self, rate: float) -> None:
        logger.info("Playback rate %.2f", rate)
        await self._update(rate=rate)


class LoggingDanmaku:
    """Danmaku overlay stand-in."""

    def __init__(self) -> None:
        self.enabled = True

    async def set_enabled(self, enabled: bool) -> None:
        logger.info("Danmaku %s", "on" if enabled else "off")
        self.enabled = enabled
