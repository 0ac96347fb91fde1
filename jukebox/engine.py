# jukebox/engine.py
"""
The per-guild playback engine.

A `Jukebox` owns one queue, one cursor into it, the loop flags and one audio
device. Playback is a small state machine: the engine hands a bound source to
the device and goes PLAYING; the device posts a `DeviceStateChange` when the
source ends (or is stopped), the engine's consumer task flips back to IDLE and
runs the advance procedure, which moves the cursor and starts the next track.

Every state change happens on the event loop, either inside a command
coroutine or inside the consumer task, so no locking is needed around the
queue itself.
"""

import asyncio
import contextlib
import logging
import random
import time
from typing import Awaitable, Callable, Dict, List, Optional

import discord

from jukebox.binder import AudioBinder
from jukebox.config import Settings
from jukebox.device import AudioDevice, DeviceStateChange, PlayerState
from jukebox.display import Display, Tone, now_playing_view, queue_view
from jukebox.errors import BindError, InvalidPositionError
from jukebox.resolver import TrackResolver
from jukebox.track import Track

logger = logging.getLogger(__name__)

Announcer = Callable[[Display], Awaitable[None]]


class Jukebox:
    """Queue and playback state for a single guild."""

    def __init__(self, guild_id: int, resolver: TrackResolver, binder: AudioBinder,
                 settings: Optional[Settings] = None):
        self.guild_id = guild_id
        self.resolver = resolver
        self.binder = binder
        self.settings = settings or Settings()

        self.events: asyncio.Queue = asyncio.Queue()
        self.device = AudioDevice(self.events)

        self.tracks: List[Track] = []
        self.cursor = 0
        self.loop_track = False
        self.loop_queue = False
        self.volume = self.settings.default_volume

        # Engine-observed device state; only changed on the event loop.
        self.state = PlayerState.IDLE
        self.started_at: Optional[float] = None
        # Where playback messages (now playing, skips) are sent.
        self.announce: Optional[Announcer] = None

        self._hold_cursor = False
        self._suppressed_stops = 0
        self._play_lock = asyncio.Lock()
        self._consumer: Optional[asyncio.Task] = None

    def __repr__(self):
        return f'<Jukebox guild={self.guild_id} tracks={len(self.tracks)} cursor={self.cursor} state={self.state.value}>'

    @property
    def current(self) -> Optional[Track]:
        if 0 <= self.cursor < len(self.tracks):
            return self.tracks[self.cursor]
        return None

    # --- Lifecycle ---

    def start(self):
        """Starts the task that consumes device notifications."""
        if self._consumer is None or self._consumer.done():
            self._consumer = asyncio.get_running_loop().create_task(
                self._consume(), name=f'jukebox-{self.guild_id}'
            )

    async def close(self):
        if self._consumer is not None:
            self._consumer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._consumer
            self._consumer = None

    async def _consume(self):
        while True:
            event = await self.events.get()
            try:
                await self.handle_state_change(event)
            except Exception:
                logger.exception('Guild %s: failed to handle %s', self.guild_id, event)

    async def connect(self, channel: discord.VoiceChannel):
        """Joins (or moves to) the voice channel the request came from."""
        voice_client = self.device.voice_client
        if voice_client is not None and voice_client.is_connected():
            if voice_client.channel != channel:
                await voice_client.move_to(channel)
                logger.info('Guild %s: moved to voice channel %s', self.guild_id, channel)
            return
        self.device.subscribe(await channel.connect())
        logger.info('Guild %s: connected to voice channel %s', self.guild_id, channel)

    # --- Playback state machine ---

    async def handle_state_change(self, event: DeviceStateChange):
        if not (event.previous is PlayerState.PLAYING and event.new is PlayerState.IDLE):
            return
        if self._suppressed_stops:
            # The stop came from clear()/disconnect(), which already reset the queue.
            self._suppressed_stops -= 1
            return
        self.state = PlayerState.IDLE
        self.started_at = None
        await self.advance()

    async def advance(self):
        """Moves the cursor past the track that just ended, then plays on."""
        if self._hold_cursor:
            # The ended track was removed; the next one already slid under the cursor.
            self._hold_cursor = False
        elif not self.loop_track:
            self.cursor += 1

        if self.cursor >= len(self.tracks):
            self.cursor = 0
            if not self.loop_queue:
                self.tracks.clear()
        await self.try_play()

    async def try_play(self):
        """
        Starts the track under the cursor if the device is idle.

        A track that fails to bind is skipped. After as many consecutive
        failures as there are tracks, the queue is reported exhausted and
        left alone instead of being retried forever.
        """
        async with self._play_lock:
            failures = 0
            while self.state is PlayerState.IDLE and self.tracks:
                if not self.device.is_connected:
                    return
                if self.cursor >= len(self.tracks):
                    self.cursor = 0
                track = self.tracks[self.cursor]

                try:
                    source = await self.binder.bind(track, volume=self.volume / 100)
                except BindError as e:
                    if self.current is not track:
                        # Removed or skipped while it was being bound; the cursor already moved on.
                        logger.debug('Guild %s: dropped failed bind of %r', self.guild_id, track.title)
                        continue
                    failures += 1
                    logger.warning('Guild %s: skipping %r (%s): %s', self.guild_id, track.title, e.reason.value, e)
                    await self._announce(Display(
                        title='Track unavailable',
                        description=f"Audio is unavailable for '{track.title}', skipping.",
                        tone=Tone.ERROR,
                    ))
                    if not self.tracks:
                        return
                    if failures >= len(self.tracks):
                        logger.warning('Guild %s: every track in the queue failed to play', self.guild_id)
                        await self._announce(Display(
                            title='Queue exhausted',
                            description='None of the queued tracks could be played.',
                            tone=Tone.ERROR,
                        ))
                        return
                    self.cursor = (self.cursor + 1) % len(self.tracks)
                    continue

                if self.current is not track:
                    # Removed or skipped while it was being bound.
                    source.cleanup()
                    continue

                try:
                    self.device.play(source)
                except discord.ClientException as e:
                    source.cleanup()
                    logger.warning('Guild %s: voice client refused playback: %s', self.guild_id, e)
                    return

                self.state = PlayerState.PLAYING
                self.started_at = time.time()
                logger.info('Guild %s: now playing %r', self.guild_id, track.title)
                await self._announce(self.now_playing())
                return

    async def _announce(self, display: Display):
        if self.announce is not None:
            await self.announce(display)

    def _stop_without_advance(self):
        self._hold_cursor = False
        if self.state is PlayerState.PLAYING:
            self._suppressed_stops += 1
            self.state = PlayerState.IDLE
            self.started_at = None
            self.device.stop(force=True)

    # --- Queue operations ---

    async def enqueue(self, query: str) -> List[Track]:
        """
        Resolves a query and appends the results to the queue.

        `ResolutionError` propagates to the caller with the queue untouched.
        """
        tracks = await self.resolver.resolve(query)
        self.tracks.extend(tracks)
        logger.info('Guild %s: queued %d track(s), queue length %d', self.guild_id, len(tracks), len(self.tracks))
        await self.try_play()
        return tracks

    def remove_at(self, position: int) -> Track:
        """Removes the track at a 0-based position."""
        if not 0 <= position < len(self.tracks):
            raise InvalidPositionError(position, len(self.tracks))

        track = self.tracks.pop(position)
        if position == self.cursor:
            if self.state is PlayerState.PLAYING:
                self._hold_cursor = True
                self.device.stop(force=True)
            elif self.cursor >= len(self.tracks):
                self.cursor = 0
        elif position < self.cursor:
            self.cursor -= 1
        logger.info('Guild %s: removed %r from position %d', self.guild_id, track.title, position)
        return track

    def shuffle(self):
        """Shuffles every track except the one under the cursor, which keeps its slot."""
        if len(self.tracks) < 2:
            return
        if self.current is None:
            random.shuffle(self.tracks)
            return
        current = self.tracks[self.cursor]
        others = self.tracks[:self.cursor] + self.tracks[self.cursor + 1:]
        random.shuffle(others)
        self.tracks[:] = others[:self.cursor] + [current] + others[self.cursor:]

    def toggle_track_loop(self) -> bool:
        self.loop_track = not self.loop_track
        return self.loop_track

    def toggle_queue_loop(self) -> bool:
        self.loop_queue = not self.loop_queue
        return self.loop_queue

    async def skip(self) -> Optional[Track]:
        """
        Ends the current track early; the advance procedure picks the next one.

        While a track is still being bound the cursor moves on at once, and
        `try_play` drops that bind once it sees the cursor has left it.
        """
        track = self.current
        if self.state is PlayerState.PLAYING:
            self.device.stop(force=True)
        elif self.tracks:
            await self.advance()
        return track

    def pause(self) -> Optional[Track]:
        if self.state is PlayerState.IDLE:
            return None
        self.device.pause()
        return self.current

    def resume(self) -> Optional[Track]:
        if self.state is PlayerState.IDLE:
            return None
        self.device.unpause()
        return self.current

    def set_volume(self, percent: int):
        if not 0 <= percent <= 200:
            raise ValueError('Volume must be between 0 and 200')
        self.volume = percent
        self.device.set_volume(percent / 100)

    def clear(self):
        self._stop_without_advance()
        self.tracks.clear()
        self.cursor = 0
        logger.info('Guild %s: queue cleared', self.guild_id)

    async def disconnect(self):
        """Clears the queue and leaves voice. The next `connect` rejoins."""
        self.clear()
        voice_client = self.device.voice_client
        self.device.unsubscribe()
        if voice_client is not None:
            await voice_client.disconnect()
            logger.info('Guild %s: disconnected from voice', self.guild_id)

    # --- Displays ---

    def queue_view(self) -> Display:
        return queue_view(self.tracks, self.cursor, self.started_at, self.settings.queue_page_size)

    def now_playing(self) -> Optional[Display]:
        track = self.current
        if track is None or self.state is PlayerState.IDLE:
            return None
        return now_playing_view(track, self.cursor, len(self.tracks), self.started_at)


class JukeboxRegistry:
    """
    Owns every guild's `Jukebox`.

    Jukeboxes are created on first use and discarded on disconnect; a later
    command for the same guild gets a fresh one.
    """

    def __init__(self, resolver: TrackResolver, binder: AudioBinder, settings: Optional[Settings] = None):
        self.resolver = resolver
        self.binder = binder
        self.settings = settings or resolver.settings
        self._jukeboxes: Dict[int, Jukebox] = {}

    def __contains__(self, guild_id: int) -> bool:
        return guild_id in self._jukeboxes

    def __len__(self) -> int:
        return len(self._jukeboxes)

    def get(self, guild_id: int) -> Jukebox:
        jukebox = self._jukeboxes.get(guild_id)
        if jukebox is None:
            jukebox = Jukebox(guild_id, self.resolver, self.binder, self.settings)
            self._jukeboxes[guild_id] = jukebox
            logger.debug('Created jukebox for guild %s', guild_id)
        jukebox.start()
        return jukebox

    def peek(self, guild_id: int) -> Optional[Jukebox]:
        return self._jukeboxes.get(guild_id)

    async def discard(self, guild_id: int):
        jukebox = self._jukeboxes.pop(guild_id, None)
        if jukebox is not None:
            await jukebox.close()

    async def close(self):
        for guild_id in list(self._jukeboxes):
            await self.discard(guild_id)
