"""Per-guild music queue and playback engine for Discord voice channels."""

__version__ = "1.0.0"
