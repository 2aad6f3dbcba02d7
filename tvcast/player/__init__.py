"""
Player-side components for tvcast.

This package holds the command router (the only caller of the media
player), the registry of remote devices, and the headless stand-in player.
"""

from tvcast.player.registry import DeviceRegistry
from tvcast.player.router import PlaybackCommandRouter

__all__ = [
    "DeviceRegistry",
    "PlaybackCommandRouter",
]
