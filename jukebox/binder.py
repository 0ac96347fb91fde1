# jukebox/binder.py
"""
Late binding of queue entries to playable audio.

Nothing is fetched when a track is queued. Only when a track is about to play
does the binder match it to a video (for Spotify tracks), spawn yt-dlp to
stream the audio to stdout, sniff the container from the first bytes and wrap
the pipe in an FFmpeg source discord.py can play.
"""

import asyncio
import enum
import logging
import subprocess
import sys
from typing import Optional

import discord

from jukebox.config import Settings
from jukebox.errors import BindError, BindFailure
from jukebox.resolver import TrackResolver
from jukebox.track import Track, TrackState

logger = logging.getLogger(__name__)

# Opus in WebM at 48kHz is what Discord speaks natively; anything else is re-encoded.
YTDL_STREAM_FORMAT = 'bestaudio[ext=webm][acodec=opus][asr=48000]/bestaudio'
YTDL_RATE_LIMIT = '100K'
PROBE_SIZE = 64

ffmpeg_options = {
    'options': '-vn',
}


class StreamFormat(enum.Enum):
    OGG = 'ogg'
    WEBM = 'webm'
    ARBITRARY = 'arbitrary'

    @property
    def before_options(self) -> Optional[str]:
        """Demuxer hint for FFmpeg, which cannot seek back on a pipe to guess."""
        if self is StreamFormat.OGG:
            return '-f ogg'
        if self is StreamFormat.WEBM:
            return '-f matroska'
        return None


def probe_format(header: bytes) -> StreamFormat:
    """Detects the container from the leading bytes of a stream."""
    if header.startswith(b'OggS'):
        return StreamFormat.OGG
    # EBML magic shared by WebM and Matroska.
    if header.startswith(b'\x1a\x45\xdf\xa3'):
        return StreamFormat.WEBM
    return StreamFormat.ARBITRARY


class YTDLSource(discord.PCMVolumeTransformer):
    """
    The playable resource handed to the voice client.

    Wraps the FFmpeg decoder fed by a yt-dlp subprocess and keeps a reference
    to that subprocess so it is killed together with the decoder, whether the
    track ran to the end or was skipped.
    """
    def __init__(self, source, *, track: Track, stream_format: StreamFormat,
                 process: subprocess.Popen, volume=0.5):
        super().__init__(source, volume)
        self.track = track
        self.format = stream_format
        self.process = process

    def cleanup(self):
        super().cleanup()
        if self.process.poll() is None:
            self.process.kill()


class AudioBinder:
    """Produces a `YTDLSource` for a track, exactly once per playback attempt."""

    def __init__(self, resolver: TrackResolver, settings: Optional[Settings] = None):
        self.resolver = resolver
        self.settings = settings or resolver.settings

    def _command(self, locator: str) -> list:
        command = [
            sys.executable, '-m', 'yt_dlp',
            '--output', '-',
            '--quiet', '--no-warnings', '--no-playlist',
            '--format', YTDL_STREAM_FORMAT,
            '--limit-rate', YTDL_RATE_LIMIT,
        ]
        if self.settings.ytdl_cookiefile:
            command += ['--cookies', self.settings.ytdl_cookiefile]
        command.append(locator)
        return command

    async def _match(self, track: Track):
        match = await self.resolver.match_to_playable_provider(track.pending_match)
        if match is None:
            query = track.pending_match.query
            track.mark_unresolvable()
            raise BindError(BindFailure.UNRESOLVABLE, f'No playable video found for {query!r}')
        track.resolve(match.locator, match.duration)
        logger.info('Matched %r to %r (%s)', track.title, match.title, track.locator)

    async def bind(self, track: Track, *, volume: float = 0.5) -> YTDLSource:
        """
        Returns a playable source for the track.

        Raises `BindError(UNRESOLVABLE)` when a Spotify track has no YouTube
        counterpart, or `BindError(STREAM_UNAVAILABLE)` when yt-dlp produced
        no audio.
        """
        if track.state is TrackState.UNRESOLVABLE:
            raise BindError(BindFailure.UNRESOLVABLE, f'{track.title!r} could not be matched before')
        if track.state is TrackState.PENDING:
            await self._match(track)

        try:
            process = subprocess.Popen(
                self._command(track.locator),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
            )
        except OSError as e:
            raise BindError(BindFailure.STREAM_UNAVAILABLE, f'Could not start yt-dlp: {e}') from e

        if process.stdout is None:
            process.kill()
            raise BindError(BindFailure.STREAM_UNAVAILABLE, 'yt-dlp has no output stream')

        loop = asyncio.get_running_loop()
        header = await loop.run_in_executor(None, process.stdout.peek, PROBE_SIZE)
        if not header:
            process.kill()
            raise BindError(BindFailure.STREAM_UNAVAILABLE, f'yt-dlp produced no audio for {track.locator}')

        stream_format = probe_format(header)
        try:
            audio = discord.FFmpegPCMAudio(
                process.stdout, pipe=True, before_options=stream_format.before_options, **ffmpeg_options
            )
        except discord.ClientException as e:
            process.kill()
            raise BindError(BindFailure.STREAM_UNAVAILABLE, f'FFmpeg could not be started: {e}') from e

        logger.debug('Bound %r as %s stream', track.title, stream_format.value)
        return YTDLSource(audio, track=track, stream_format=stream_format, process=process, volume=volume)
