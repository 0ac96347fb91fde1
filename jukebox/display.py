# jukebox/display.py
"""
Display payloads produced by the jukebox.

The engine never formats chat messages itself. It hands `Display` objects to
the command layer, which turns them into embeds.
"""

import enum
import time
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from jukebox.track import Track

SLIDER_LENGTH = 25


class Tone(enum.Enum):
    INFO = 'info'
    SUCCESS = 'success'
    ERROR = 'error'


@dataclass
class Display:
    title: str
    description: Optional[str] = None
    rows: List[Tuple[str, str]] = field(default_factory=list)
    thumbnail: Optional[str] = None
    url: Optional[str] = None
    tone: Tone = Tone.INFO


def format_time(seconds) -> str:
    """Formats seconds as mm:ss (minutes keep growing past an hour)."""
    seconds = max(0, int(seconds or 0))
    minutes, seconds = divmod(seconds, 60)
    return f'{minutes:02d}:{seconds:02d}'


def generate_slider(current, total) -> str:
    """A 25 character progress bar, e.g. ``|---o---------|``."""
    position = int(SLIDER_LENGTH * current // total) if total else 0
    cells = []
    for i in range(SLIDER_LENGTH):
        if i == position:
            cells.append('o')
        elif i == 0 or i == SLIDER_LENGTH - 1:
            cells.append('|')
        else:
            cells.append('-')
    return ''.join(cells)


def elapsed_seconds(started_at: Optional[float]) -> int:
    if started_at is None:
        return 0
    return max(0, int(time.time() - started_at))


def _progress(track: Track, started_at: Optional[float]) -> str:
    elapsed = min(elapsed_seconds(started_at), track.duration) if track.duration else elapsed_seconds(started_at)
    return f'{generate_slider(elapsed, track.duration)} [{format_time(elapsed)} / {format_time(track.duration)}]'


def queue_view(tracks: Sequence[Track], cursor: int, started_at: Optional[float], limit: int = 10) -> Display:
    rows = []
    for i, track in enumerate(tracks[:limit]):
        if i == cursor:
            rows.append((f'{i + 1}. {track.title} (Now Playing)', _progress(track, started_at)))
        else:
            rows.append((f'{i + 1}. {track.title}', f'Duration {format_time(track.duration)}'))
    display = Display(title='Record Queue', description=f'{len(tracks)} track(s) in the queue', rows=rows)
    if 0 <= cursor < len(tracks):
        display.thumbnail = tracks[cursor].thumbnail
    return display


def now_playing_view(track: Track, position: int, length: int, started_at: Optional[float]) -> Display:
    return Display(
        title=f'{track.title} is now playing',
        description=f'{_progress(track, started_at)} | Position {position + 1} / {length}',
        thumbnail=track.thumbnail,
        url=track.url,
    )
