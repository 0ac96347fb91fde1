# jukebox/resolver.py
"""
Turns whatever a user typed after `!play` into queue entries.

Resolution walks a fallback chain and stops at the first step that works:

1. A YouTube video URL, looked up with yt-dlp.
2. A Spotify track, playlist or album URL, looked up with spotipy. Spotify
   only gives us metadata, so these become pending tracks that are matched to
   a YouTube video right before they play.
3. A free-text YouTube search; the first hit wins.

A step only hands over to the next one when it fails with `ResolutionError`.
Anything else is a real fault and propagates.
"""

import asyncio
import functools
import logging
import urllib.parse
from typing import List, NamedTuple, Optional

import requests
import spotipy
import yt_dlp
from spotipy.oauth2 import SpotifyClientCredentials, SpotifyOauthError

from jukebox.config import Settings
from jukebox.errors import NoMatchError, ResolutionError
from jukebox.track import PendingMatch, Track

logger = logging.getLogger(__name__)

# Suppress yt-dlp's default bug report message on console errors.
yt_dlp.utils.bug_reports_message = lambda **kwargs: ''

YOUTUBE_HOSTS = {'youtube.com', 'www.youtube.com', 'm.youtube.com', 'music.youtube.com', 'youtu.be'}
SPOTIFY_HOSTS = {'open.spotify.com', 'play.spotify.com', 'spotify.com'}
SPOTIFY_KINDS = ('track', 'playlist', 'album')

# Metadata-only options: nothing is downloaded here, the binder streams later.
ytdl_info_options = {
    'format': 'bestaudio/best',
    'noplaylist': True,
    'nocheckcertificate': True,
    'ignoreerrors': False,
    'logtostderr': False,
    'quiet': True,
    'no_warnings': True,
    # Plain text must not silently turn into a search during the URL steps.
    'default_search': 'error',
    'source_address': '0.0.0.0',
}

# Search listings only need ids, titles and durations, not full video pages.
ytdl_search_options = dict(ytdl_info_options, extract_flat='in_playlist')


class Match(NamedTuple):
    """The YouTube video a pending track was matched with."""
    locator: str
    duration: Optional[int]
    title: Optional[str]


def is_youtube_url(value: str) -> bool:
    parsed = urllib.parse.urlparse(value)
    return parsed.scheme in ('http', 'https') and parsed.netloc.lower() in YOUTUBE_HOSTS


def spotify_kind(value: str) -> Optional[str]:
    """Returns 'track', 'playlist' or 'album' for a Spotify link or URI, else None."""
    if value.startswith('spotify:'):
        parts = value.split(':')
        return parts[1] if len(parts) == 3 and parts[1] in SPOTIFY_KINDS else None
    parsed = urllib.parse.urlparse(value)
    if parsed.scheme not in ('http', 'https') or parsed.netloc.lower() not in SPOTIFY_HOSTS:
        return None
    # Localised links look like /intl-de/track/<id>.
    return next((part for part in parsed.path.split('/') if part in SPOTIFY_KINDS), None)


def score_candidate(title: Optional[str], candidate_duration: Optional[float], target_duration: int) -> float:
    """
    Scores how likely a search hit is the same recording as a Spotify track.

    Half of the score rewards "lyrics" uploads, which are almost always the
    plain album audio without music-video intros. The other half rewards a
    length close to the Spotify one.
    """
    lyrics_bonus = 1.0 if 'lyrics' in (title or '').lower() else 0.0
    if target_duration and candidate_duration is not None:
        proximity = 1 - abs(candidate_duration - target_duration) / target_duration
        proximity = max(0.0, min(1.0, proximity))
    else:
        proximity = 0.0
    return 0.5 * lyrics_bonus + 0.5 * proximity


def _entry_url(entry: dict) -> Optional[str]:
    url = entry.get('webpage_url') or entry.get('url')
    if url and url.startswith('http'):
        return url
    if entry.get('id'):
        return f"https://www.youtube.com/watch?v={entry['id']}"
    return None


def _cover(images) -> Optional[str]:
    return images[0].get('url') if images else None


class TrackResolver:
    """
    Resolves locators and queries into `Track` objects.

    The yt-dlp and spotipy clients are blocking, so every call to them runs in
    the default executor to keep the bot's event loop responsive.
    """

    def __init__(self, settings: Optional[Settings] = None, *, ytdl=None, search_ytdl=None, spotify=None):
        self.settings = settings or Settings()

        info_options = dict(ytdl_info_options)
        search_options = dict(ytdl_search_options)
        if self.settings.ytdl_cookiefile:
            info_options['cookiefile'] = search_options['cookiefile'] = self.settings.ytdl_cookiefile

        self.ytdl = ytdl or yt_dlp.YoutubeDL(info_options)
        self.search_ytdl = search_ytdl or yt_dlp.YoutubeDL(search_options)
        self.sp = spotify if spotify is not None else self._create_spotify()

    def _create_spotify(self):
        if not self.settings.has_spotify:
            logger.warning('Spotify credentials not found. Spotify links will not work.')
            return None
        manager = SpotifyClientCredentials(
            client_id=self.settings.spotify_client_id,
            client_secret=self.settings.spotify_client_secret,
        )
        return spotipy.Spotify(client_credentials_manager=manager)

    async def _run(self, func, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))

    async def _extract(self, url: str, *, flat: bool = False) -> dict:
        client = self.search_ytdl if flat else self.ytdl
        try:
            data = await self._run(client.extract_info, url, download=False)
        except yt_dlp.utils.YoutubeDLError as e:
            raise ResolutionError(f'yt-dlp could not read {url}: {e}') from e
        if not data:
            raise ResolutionError(f'yt-dlp returned nothing for {url}')
        return data

    @staticmethod
    def _track_from_info(info: dict) -> Track:
        locator = info.get('webpage_url') or info.get('original_url') or info.get('url')
        if not locator:
            raise ResolutionError(f"yt-dlp gave no address for {info.get('title') or info.get('id')!r}")
        return Track.direct(
            locator=locator,
            title=info.get('title') or 'Unknown Title',
            duration=int(info.get('duration') or 0),
            thumbnail=info.get('thumbnail'),
        )

    # --- Fallback chain ---

    async def resolve(self, query: str) -> List[Track]:
        """
        Resolves a user query into one or more tracks, in queue order.

        Raises `NoMatchError` when the final search found nothing, or
        `ResolutionError` when every step failed for another reason.
        """
        query = query.strip()
        if not query:
            raise ResolutionError('Empty query')
        locator = query.split()[0]

        steps = (
            (self.from_video_url, locator),
            (self.from_spotify_url, locator),
            (self.from_search, query),
        )
        error = None
        for step, argument in steps:
            try:
                tracks = await step(argument)
            except ResolutionError as e:
                logger.debug('%s failed for %r: %s', step.__name__, argument, e)
                error = e
                continue
            logger.info('Resolved %r into %d track(s) via %s', query, len(tracks), step.__name__)
            return tracks
        raise error

    async def from_video_url(self, url: str) -> List[Track]:
        """Looks up a single YouTube video."""
        if not is_youtube_url(url):
            raise ResolutionError(f'{url!r} is not a YouTube URL')
        info = await self._extract(url)
        if 'entries' in info:
            raise ResolutionError(f'{url!r} is not a single video')
        return [self._track_from_info(info)]

    async def from_spotify_url(self, url: str) -> List[Track]:
        """Reads a Spotify track, playlist or album into pending tracks."""
        kind = spotify_kind(url)
        if kind is None:
            raise ResolutionError(f'{url!r} is not a Spotify URL')
        if self.sp is None:
            raise ResolutionError('Spotify is not configured')

        try:
            if kind == 'track':
                data = await self._run(self.sp.track, url)
                tracks = [self._pending_from_spotify(data)]
            elif kind == 'playlist':
                items = await self._collect(self.sp.playlist_items, url, limit=100)
                tracks = [self._pending_from_spotify(item['track']) for item in items
                          if item.get('track') and item['track'].get('name')]
            else:
                album = await self._run(self.sp.album, url)
                items = await self._collect(self.sp.album_tracks, url, limit=50)
                cover = _cover(album.get('images'))
                tracks = [self._pending_from_spotify(item, cover) for item in items if item.get('name')]
        except (spotipy.SpotifyException, SpotifyOauthError, requests.exceptions.RequestException) as e:
            raise ResolutionError(f'Spotify lookup failed for {url!r}: {e}') from e

        if not tracks:
            raise ResolutionError(f'Spotify {kind} {url!r} has no tracks')
        return tracks

    async def _collect(self, method, url: str, **kwargs) -> list:
        """Follows Spotify's paging until every item has been read."""
        page = await self._run(method, url, **kwargs)
        items = list(page['items'])
        while page.get('next'):
            page = await self._run(self.sp.next, page)
            items.extend(page['items'])
        return items

    @staticmethod
    def _pending_from_spotify(data: dict, cover: Optional[str] = None) -> Track:
        match = PendingMatch.from_spotify(data)
        thumbnail = _cover((data.get('album') or {}).get('images')) or cover
        return Track.pending(match, thumbnail=thumbnail)

    async def from_search(self, query: str) -> List[Track]:
        """Searches YouTube and takes the first result."""
        results = await self.search(query)
        if not results:
            raise NoMatchError(f'No search results for {query!r}')
        info = await self._extract(_entry_url(results[0]))
        return [self._track_from_info(info)]

    async def search(self, query: str, limit: Optional[int] = None) -> List[dict]:
        """Returns the flat search entries (title, duration, url) for a query."""
        limit = limit or self.settings.search_results
        data = await self._extract(f'ytsearch{limit}:{query}', flat=True)
        return [entry for entry in data.get('entries') or [] if entry and _entry_url(entry)]

    # --- Cross-provider matching ---

    async def match_to_playable_provider(self, pending: PendingMatch) -> Optional[Match]:
        """
        Finds the YouTube video that best matches a Spotify track.

        Candidates are ranked by `score_candidate` and tried in order; the
        first one whose page can actually be read wins. Returns None when no
        candidate survives.
        """
        try:
            candidates = await self.search(pending.query)
        except ResolutionError as e:
            logger.debug('Search failed while matching %r: %s', pending.query, e)
            return None

        ranked = sorted(
            candidates,
            key=lambda c: score_candidate(c.get('title'), c.get('duration'), pending.duration),
            reverse=True,
        )
        for candidate in ranked:
            try:
                info = await self._extract(_entry_url(candidate))
            except ResolutionError as e:
                logger.debug('Skipping match candidate %r: %s', candidate.get('title'), e)
                continue
            locator = info.get('webpage_url') or _entry_url(candidate)
            return Match(locator=locator, duration=info.get('duration'), title=info.get('title'))
        return None
