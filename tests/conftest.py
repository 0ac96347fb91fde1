# tests/conftest.py

import pytest
import pytest_asyncio
from unittest.mock import MagicMock, AsyncMock

from jukebox.config import Settings
from jukebox.engine import Jukebox, JukeboxRegistry
from jukebox.track import PendingMatch, Track


def make_track(n: int, duration: int = 180) -> Track:
    """A directly playable track with predictable metadata."""
    return Track.direct(
        locator=f'https://www.youtube.com/watch?v=video{n}',
        title=f'Song {n}',
        duration=duration,
        thumbnail=f'http://example.com/thumb{n}.jpg',
    )


def make_pending(name: str = 'Song', duration: int = 200) -> Track:
    return Track.pending(PendingMatch(name=name, artists=('Artist',), duration=duration))


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def mock_resolver(settings):
    resolver = MagicMock()
    resolver.settings = settings
    resolver.resolve = AsyncMock(return_value=[])
    return resolver


@pytest.fixture
def mock_source():
    return MagicMock()


@pytest.fixture
def mock_binder(mock_source):
    binder = MagicMock()
    binder.bind = AsyncMock(return_value=mock_source)
    return binder


@pytest.fixture
def mock_voice_client():
    vc = MagicMock()
    vc.is_connected.return_value = True
    vc.disconnect = AsyncMock()
    vc.move_to = AsyncMock()
    return vc


@pytest.fixture
def jukebox(mock_resolver, mock_binder, settings, mock_voice_client):
    """A jukebox already subscribed to a (mocked) voice connection."""
    box = Jukebox(1000, mock_resolver, mock_binder, settings)
    box.device.subscribe(mock_voice_client)
    box.announce = AsyncMock()
    return box


@pytest.fixture
def offline_jukebox(mock_resolver, mock_binder, settings):
    """A jukebox without a voice connection; playback never starts."""
    return Jukebox(2000, mock_resolver, mock_binder, settings)


@pytest_asyncio.fixture
async def registry(mock_resolver, mock_binder, settings):
    reg = JukeboxRegistry(mock_resolver, mock_binder, settings)
    yield reg
    await reg.close()
