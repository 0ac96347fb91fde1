# jukebox/config.py
"""Runtime settings read from the environment (and a local .env file)."""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv


def _int_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f'{name} must be an integer, got {value!r}') from None


@dataclass(frozen=True)
class Settings:
    discord_token: Optional[str] = None
    command_prefix: str = '!'
    spotify_client_id: Optional[str] = None
    spotify_client_secret: Optional[str] = None
    ytdl_cookiefile: Optional[str] = None
    search_results: int = 10
    default_volume: int = 50
    queue_page_size: int = 10

    @property
    def has_spotify(self) -> bool:
        return bool(self.spotify_client_id and self.spotify_client_secret)

    @classmethod
    def from_env(cls) -> 'Settings':
        load_dotenv()
        return cls(
            discord_token=os.getenv('DISCORD_TOKEN'),
            command_prefix=os.getenv('COMMAND_PREFIX') or '!',
            spotify_client_id=os.getenv('SPOTIPY_CLIENT_ID'),
            spotify_client_secret=os.getenv('SPOTIPY_CLIENT_SECRET'),
            ytdl_cookiefile=os.getenv('YTDL_COOKIEFILE'),
            search_results=_int_env('SEARCH_RESULTS', 10),
            default_volume=max(0, min(200, _int_env('DEFAULT_VOLUME', 50))),
            queue_page_size=_int_env('QUEUE_PAGE_SIZE', 10),
        )
