# jukebox/device.py
"""
Output device wrapper around a `discord.VoiceClient`.

discord.py reports the end of playback through an `after` callback that runs
on the voice thread. The device converts that callback into a typed
`DeviceStateChange` message posted onto the owning jukebox's event queue, on
the event loop, so all queue mutation stays on a single task.
"""

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Optional

import discord

logger = logging.getLogger(__name__)


class PlayerState(enum.Enum):
    IDLE = 'idle'
    PLAYING = 'playing'


@dataclass(frozen=True)
class DeviceStateChange:
    previous: PlayerState
    new: PlayerState
    error: Optional[Exception] = None


class AudioDevice:
    """One audio output per jukebox; subscribed to at most one voice connection."""

    def __init__(self, events: asyncio.Queue):
        self.events = events
        self.voice_client: Optional[discord.VoiceClient] = None

    @property
    def is_connected(self) -> bool:
        return self.voice_client is not None and self.voice_client.is_connected()

    @property
    def source(self) -> Optional[discord.AudioSource]:
        return self.voice_client.source if self.voice_client else None

    def subscribe(self, voice_client: discord.VoiceClient):
        self.voice_client = voice_client

    def unsubscribe(self):
        self.voice_client = None

    def play(self, source: discord.AudioSource):
        if self.voice_client is None:
            raise discord.ClientException('Audio device is not subscribed to a voice connection')
        loop = asyncio.get_running_loop()
        self.voice_client.play(source, after=lambda error: loop.call_soon_threadsafe(self._finished, error))

    def _finished(self, error: Optional[Exception]):
        if error:
            logger.warning('Playback ended with an error: %s', error)
        self.events.put_nowait(DeviceStateChange(PlayerState.PLAYING, PlayerState.IDLE, error))

    def pause(self):
        if self.voice_client:
            self.voice_client.pause()

    def unpause(self):
        if self.voice_client:
            self.voice_client.resume()

    def stop(self, force: bool = True):
        # discord.py always stops immediately; `force` is kept for call-site clarity.
        if self.voice_client:
            self.voice_client.stop()

    def set_volume(self, volume: float):
        source = self.source
        if isinstance(source, discord.PCMVolumeTransformer):
            source.volume = volume
