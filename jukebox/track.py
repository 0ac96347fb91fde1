# jukebox/track.py
"""
Queue entry data model.

A `Track` always carries its display metadata. How it gets played depends on
its state:

- DIRECT: a playable locator (a YouTube watch URL) is known.
- PENDING: the track came from Spotify, which only provides metadata. The
  `PendingMatch` payload is matched against YouTube when the track is about
  to play.
- UNRESOLVABLE: matching was attempted and failed. The track stays in the
  queue so positions do not shift, but it can never be played.
"""

import enum
from dataclasses import dataclass, field
from typing import Optional, Tuple


class TrackState(enum.Enum):
    DIRECT = 'direct'
    PENDING = 'pending'
    UNRESOLVABLE = 'unresolvable'


@dataclass(frozen=True)
class PendingMatch:
    """Spotify metadata kept around until the track is matched to a video."""
    name: str
    artists: Tuple[str, ...]
    duration: int
    spotify_url: Optional[str] = None

    @property
    def query(self) -> str:
        """The search string used to look for this track on YouTube."""
        return ' '.join((self.name,) + self.artists).strip()

    @classmethod
    def from_spotify(cls, data: dict) -> 'PendingMatch':
        """Builds a payload from a Spotify API track object."""
        return cls(
            name=data.get('name', ''),
            artists=tuple(a['name'] for a in data.get('artists', []) if a.get('name')),
            duration=int(data.get('duration_ms', 0) // 1000),
            spotify_url=(data.get('external_urls') or {}).get('spotify'),
        )


@dataclass(eq=False)
class Track:
    """
    A single entry in a guild's queue.

    Tracks compare by identity: the same song queued twice gives two distinct
    entries, and the engine relies on that to follow the playing entry across
    queue mutations.
    """
    title: str
    duration: int
    thumbnail: Optional[str] = None
    locator: Optional[str] = None
    pending_match: Optional[PendingMatch] = None
    unresolvable: bool = field(default=False, repr=False)

    def __post_init__(self):
        if self.locator is None and self.pending_match is None:
            raise ValueError('A track needs either a locator or a pending match')
        if self.locator is not None and self.pending_match is not None:
            raise ValueError('A track cannot be both directly playable and pending')

    @classmethod
    def direct(cls, locator: str, title: str, duration: int, thumbnail: Optional[str] = None) -> 'Track':
        return cls(title=title, duration=duration, thumbnail=thumbnail, locator=locator)

    @classmethod
    def pending(cls, match: PendingMatch, title: Optional[str] = None,
                thumbnail: Optional[str] = None) -> 'Track':
        return cls(title=title or match.name, duration=match.duration, thumbnail=thumbnail, pending_match=match)

    @property
    def state(self) -> TrackState:
        if self.unresolvable:
            return TrackState.UNRESOLVABLE
        if self.pending_match is not None:
            return TrackState.PENDING
        return TrackState.DIRECT

    @property
    def url(self) -> Optional[str]:
        """Best link for display: the video once known, the Spotify page before that."""
        if self.locator:
            return self.locator
        if self.pending_match is not None:
            return self.pending_match.spotify_url
        return None

    def resolve(self, locator: str, duration: Optional[int] = None):
        """Binds a pending track to the video it was matched with."""
        if self.state is not TrackState.PENDING:
            raise ValueError(f'Cannot resolve a track in state {self.state.value}')
        self.locator = locator
        # Spotify's duration is only an estimate of the matched video's length.
        if duration:
            self.duration = int(duration)
        self.pending_match = None

    def mark_unresolvable(self):
        """Records a failed match. The pending payload is dropped for good."""
        if self.state is not TrackState.PENDING:
            raise ValueError(f'Cannot mark a track in state {self.state.value} as unresolvable')
        self.pending_match = None
        self.unresolvable = True
