# jukebox/errors.py
"""
Error taxonomy for the jukebox core.

None of these are fatal. Resolution and position errors are reported back to
whoever issued the command, bind errors are swallowed by the engine and turned
into a skip to the next track.
"""

import enum


class JukeboxError(Exception):
    """Base class for every recoverable jukebox failure."""


class ResolutionError(JukeboxError):
    """No playable track could be produced for a locator or query."""


class NoMatchError(ResolutionError):
    """A search returned zero candidates."""


class BindFailure(enum.Enum):
    UNRESOLVABLE = 'unresolvable'
    STREAM_UNAVAILABLE = 'stream_unavailable'


class BindError(JukeboxError):
    """A queued track could not be turned into a playable audio resource."""

    def __init__(self, reason: BindFailure, message: str = ''):
        super().__init__(message or reason.value)
        self.reason = reason


class InvalidPositionError(JukeboxError):
    """A queue position outside of ``[0, len)`` was requested."""

    def __init__(self, position: int, length: int):
        super().__init__(f'Position {position} is outside of a queue of {length} track(s)')
        self.position = position
        self.length = length
