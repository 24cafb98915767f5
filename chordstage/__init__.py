"""ChordStage: synchronized, role-aware chord/lyric display for live performance."""

__version__ = "0.4.0"
