"""
Control session hub for the DLNA renderer.

Tracks every upgraded control session, decodes the app's action frames
into playback commands, and fans play-state/progress pushes out to all
sessions. All mutations happen on the event loop that owns the hub.
"""

from __future__ import annotations

import json
import logging
import math
from collections.abc import Callable, Coroutine
from typing import TYPE_CHECKING, Any
from urllib.parse import parse_qs, urlsplit

from tvcast.core.events import EventBus, PlaybackProgressEvent, PlayStateChangedEvent
from tvcast.core.models import Pause, PlayLive, PlayVideo, Resume, Seek, SetDanmaku, Stop
from tvcast.protocol.nva import ACTION_PLAY_STATE, ACTION_PROGRESS, FrameError, NvaFrame

if TYPE_CHECKING:
    from tvcast.player.router import PlaybackCommandRouter
    from tvcast.protocol.nva import ControlSession

logger = logging.getLogger(__name__)

# Query parameter on PlayUrl URLs carrying the nested content descriptor
EXTENSION_PARAM = "nva_ext"

ActionHandler = Callable[["ControlSession", NvaFrame], Coroutine[Any, Any, None]]


def _as_int(value: Any) -> int:
    """Coerce an id that may arrive as number or numeric string."""
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else 0
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return 0
    return 0


def _as_bool(value: Any) -> bool | None:
    """Accept a JSON bool or a "true"/"false" string."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    return None


class ControlSessionHub:
    """
    Owner of all live control sessions.

    Attributes:
        router: Where decoded playback commands are sent.
    """

    def __init__(self, router: PlaybackCommandRouter) -> None:
        self.router = router
        self._sessions: dict[str, ControlSession] = {}
        self._event_bus: EventBus | None = None

        # Action handlers indexed by action name
        self._handlers: dict[str, ActionHandler] = {
            "GetVolume": self._handle_get_volume,
            "Play": self._handle_play,
            "Pause": self._handle_pause,
            "Resume": self._handle_resume,
            "Stop": self._handle_stop,
            "SwitchDanmaku": self._handle_switch_danmaku,
            "Seek": self._handle_seek,
            "PlayUrl": self._handle_play_url,
        }

    async def attach(self, event_bus: EventBus) -> None:
        """Forward router output to every session."""
        self._event_bus = event_bus
        await event_bus.subscribe(PlayStateChangedEvent, self._on_play_state)
        await event_bus.subscribe(PlaybackProgressEvent, self._on_progress)

    async def detach(self) -> None:
        if self._event_bus is None:
            return
        await self._event_bus.unsubscribe(PlayStateChangedEvent, self._on_play_state)
        await self._event_bus.unsubscribe(PlaybackProgressEvent, self._on_progress)
        self._event_bus = None

    # -------------------------------------------------------------------------
    # Session lifecycle
    # -------------------------------------------------------------------------

    def on_session_open(self, session: ControlSession) -> None:
        self._sessions[session.session_id] = session
        logger.info("Control session connected: %s", session)

    def on_session_close(self, session: ControlSession) -> None:
        if self._sessions.pop(session.session_id, None) is not None:
            logger.info("Control session disconnected: %s", session)

    @property
    def sessions(self) -> list[ControlSession]:
        return list(self._sessions.values())

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    # -------------------------------------------------------------------------
    # Inbound frames
    # -------------------------------------------------------------------------

    async def on_frame(self, session: ControlSession, frame: NvaFrame) -> None:
        """
        Handle one inbound frame.

        Unknown actions and undecodable bodies are acknowledged so the app
        keeps the session open.
        """
        session.touch()
        if not frame.is_command:
            logger.debug("Ignoring reply frame seq=%d from %s", frame.seq, session)
            return

        handler = self._handlers.get(frame.action)
        if handler is None:
            logger.debug("Unhandled action %s from %s", frame.action, session)
            await session.send_empty(frame.seq)
            return

        try:
            await handler(session, frame)
        except (FrameError, ValueError, OverflowError) as e:
            logger.warning("Bad %s frame from %s: %s", frame.action, session, e)
            await session.send_empty(frame.seq)

    async def _handle_get_volume(self, session: ControlSession, frame: NvaFrame) -> None:
        await session.send_reply(frame.seq, {"volume": self.router.volume})

    async def _handle_play(self, session: ControlSession, frame: NvaFrame) -> None:
        body = frame.json_body()
        await session.send_empty(frame.seq)
        await self._play_content(body)

    async def _handle_pause(self, session: ControlSession, frame: NvaFrame) -> None:
        await self.router.apply(Pause())
        await session.send_empty(frame.seq)

    async def _handle_resume(self, session: ControlSession, frame: NvaFrame) -> None:
        await self.router.apply(Resume())
        await session.send_empty(frame.seq)

    async def _handle_stop(self, session: ControlSession, frame: NvaFrame) -> None:
        await self.router.apply(Stop())
        await session.send_empty(frame.seq)

    async def _handle_switch_danmaku(self, session: ControlSession, frame: NvaFrame) -> None:
        body = frame.json_body()
        enabled = _as_bool(body.get("open"))
        if enabled is None:
            raise FrameError(f"open is not a boolean: {body.get('open')!r}")
        await self.router.apply(SetDanmaku(enabled=enabled))
        await session.send_empty(frame.seq)

    async def _handle_seek(self, session: ControlSession, frame: NvaFrame) -> None:
        body = frame.json_body()
        target = body.get("seekTs", 0)
        try:
            seconds = float(target)
        except (TypeError, ValueError):
            raise FrameError(f"seekTs is not a number: {target!r}") from None
        if not math.isfinite(seconds):
            raise FrameError(f"seekTs is not finite: {target!r}")
        await self.router.apply(Seek(position=seconds))
        await session.send_empty(frame.seq)

    async def _handle_play_url(self, session: ControlSession, frame: NvaFrame) -> None:
        # Ack first; a bad extension is the app's problem, not the session's.
        await session.send_empty(frame.seq)

        try:
            body = frame.json_body()
        except FrameError as e:
            logger.warning("PlayUrl with unreadable body: %s", e)
            return

        content = self._extract_extension_content(body.get("url"))
        if content is None:
            logger.warning("PlayUrl without usable %s: %s", EXTENSION_PARAM, frame.body)
            return

        await self._play_content(content)

    @staticmethod
    def _extract_extension_content(url: Any) -> dict[str, Any] | None:
        """Pull ``content`` out of the JSON in the URL's extension parameter."""
        if not isinstance(url, str) or not url:
            return None

        values = parse_qs(urlsplit(url).query).get(EXTENSION_PARAM)
        if not values:
            return None

        try:
            ext = json.loads(values[0])
        except ValueError:
            return None

        content = ext.get("content") if isinstance(ext, dict) else None
        return content if isinstance(content, dict) else None

    async def _play_content(self, body: dict[str, Any]) -> None:
        room_id = _as_int(body.get("roomId"))
        if room_id > 0:
            await self.router.apply(PlayLive(room_id=room_id))
            return

        await self.router.apply(
            PlayVideo(
                aid=_as_int(body.get("aid")),
                cid=_as_int(body.get("cid")),
                epid=_as_int(body.get("epid")),
            )
        )

    # -------------------------------------------------------------------------
    # Outbound pushes
    # -------------------------------------------------------------------------

    async def broadcast(self, action: str, payload: dict[str, Any]) -> int:
        """
        Send the same push frame to every open session.

        A session whose send fails is closed and dropped; delivery to the
        others continues.

        Returns:
            Number of sessions the frame was delivered to.
        """
        delivered = 0
        for session in list(self._sessions.values()):
            try:
                await session.send_command(action, payload)
                delivered += 1
            except (ConnectionError, OSError) as e:
                logger.info("Dropping control session %s after send failure: %s", session, e)
                self.on_session_close(session)
                await session.close()
        return delivered

    async def _on_play_state(self, event: PlayStateChangedEvent) -> None:
        logger.debug("Broadcasting play state %s", event.play_state.name)
        await self.broadcast(ACTION_PLAY_STATE, {"playState": int(event.play_state)})

    async def _on_progress(self, event: PlaybackProgressEvent) -> None:
        await self.broadcast(ACTION_PROGRESS, {"duration": event.duration, "position": event.position})
