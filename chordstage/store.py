"""Song/setlist providers and the local preference store."""

from __future__ import annotations

import json
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from chordstage import config
from chordstage.errors import DataNotFound
from chordstage.models import Setlist, Song, clamp_scroll_speed

logger = logging.getLogger(__name__)


class DataProvider(ABC):
    """Read access to songs and setlists plus the one post-transpose write."""

    @abstractmethod
    def get_song(self, song_id: str) -> Song:
        """
        Raises:
            DataNotFound: If the song does not exist.
        """

    @abstractmethod
    def get_setlist(self, setlist_id: str) -> Setlist:
        """
        Raises:
            DataNotFound: If the setlist does not exist.
        """

    @abstractmethod
    def update_song_key(self, song_id: str, new_key: str, sections: list[dict[str, Any]]) -> None:
        """
        Store a new key and section contents; writing the same values twice is harmless.

        Raises:
            DataNotFound: If the song does not exist.
        """


def _apply_key_update(song: Song, new_key: str, sections: list[dict[str, Any]]) -> None:
    contents = {str(s.get("id")): s.get("content") for s in sections if isinstance(s, dict)}
    song.current_key = new_key
    for section in song.sections:
        content = contents.get(section.id)
        if content is not None:
            section.content = str(content)


class InMemoryDataProvider(DataProvider):
    """Provider backed by dicts; used by tests and offline guests."""

    def __init__(self, songs: list[Song] | None = None, setlists: list[Setlist] | None = None) -> None:
        self._songs: dict[str, Song] = {s.id: s for s in songs or []}
        self._setlists: dict[str, Setlist] = {s.id: s for s in setlists or []}

    def add_song(self, song: Song) -> None:
        self._songs[song.id] = song

    def add_setlist(self, setlist: Setlist) -> None:
        self._setlists[setlist.id] = setlist

    def get_song(self, song_id: str) -> Song:
        try:
            return self._songs[song_id]
        except KeyError:
            raise DataNotFound(f"Song {song_id!r} not found") from None

    def get_setlist(self, setlist_id: str) -> Setlist:
        try:
            return self._setlists[setlist_id]
        except KeyError:
            raise DataNotFound(f"Setlist {setlist_id!r} not found") from None

    def update_song_key(self, song_id: str, new_key: str, sections: list[dict[str, Any]]) -> None:
        _apply_key_update(self.get_song(song_id), new_key, sections)


def _write_json(path: Path, data: Any) -> None:
    """Write through a temp file so readers never see a partial document."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)
    os.replace(tmp, path)


class JsonSongStore(DataProvider):
    """
    Local store: one JSON document per song and per setlist.

    Layout::

        <root>/songs/<song_id>.json
        <root>/setlists/<setlist_id>.json

    This is what the musical director reads from when there is no network.
    """

    def __init__(self, root: str | Path | None = None) -> None:
        self.root = Path(root if root is not None else config.DATA_DIR)

    @property
    def songs_dir(self) -> Path:
        return self.root / "songs"

    @property
    def setlists_dir(self) -> Path:
        return self.root / "setlists"

    def _read(self, path: Path, what: str) -> dict[str, Any]:
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            raise DataNotFound(f"{what} not found at {path}") from None
        except (OSError, ValueError) as exc:
            raise DataNotFound(f"{what} unreadable at {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise DataNotFound(f"{what} at {path} is not a JSON object")
        return data

    def get_song(self, song_id: str) -> Song:
        data = self._read(self.songs_dir / f"{song_id}.json", f"Song {song_id!r}")
        try:
            return Song.from_dict(data)
        except (KeyError, TypeError, ValueError) as exc:
            raise DataNotFound(f"Song {song_id!r} is malformed: {exc}") from exc

    def get_setlist(self, setlist_id: str) -> Setlist:
        data = self._read(self.setlists_dir / f"{setlist_id}.json", f"Setlist {setlist_id!r}")
        try:
            return Setlist.from_dict(data)
        except (KeyError, TypeError, ValueError) as exc:
            raise DataNotFound(f"Setlist {setlist_id!r} is malformed: {exc}") from exc

    def save_song(self, song: Song) -> Path:
        path = self.songs_dir / f"{song.id}.json"
        _write_json(path, song.to_dict())
        return path

    def save_setlist(self, setlist: Setlist) -> Path:
        path = self.setlists_dir / f"{setlist.id}.json"
        _write_json(path, setlist.to_dict())
        return path

    def list_song_ids(self) -> list[str]:
        if not self.songs_dir.is_dir():
            return []
        return sorted(p.stem for p in self.songs_dir.glob("*.json"))

    def update_song_key(self, song_id: str, new_key: str, sections: list[dict[str, Any]]) -> None:
        song = self.get_song(song_id)
        _apply_key_update(song, new_key, sections)
        self.save_song(song)
        logger.debug("Stored %s in %s", song_id, new_key)


class PreferenceStore:
    """
    Small per-device key/value preferences kept in one JSON file.

    Holds the auto-scroll speed per session, the chord-simplify toggle, zoom
    per song and the completed songs of each setlist.
    """

    def __init__(self, path: str | Path | None = None) -> None:
        self.path = Path(path if path is not None else config.PREFERENCES_FILE)
        self._data: dict[str, Any] | None = None

    def _load(self) -> dict[str, Any]:
        if self._data is None:
            try:
                with open(self.path, encoding="utf-8") as f:
                    loaded = json.load(f)
                self._data = loaded if isinstance(loaded, dict) else {}
            except FileNotFoundError:
                self._data = {}
            except (OSError, ValueError) as exc:
                logger.warning("Ignoring unreadable preferences at %s: %s", self.path, exc)
                self._data = {}
        return self._data

    def _save(self) -> None:
        try:
            _write_json(self.path, self._load())
        except OSError as exc:
            logger.warning("Could not save preferences to %s: %s", self.path, exc)

    def _bucket(self, name: str) -> dict[str, Any]:
        data = self._load()
        bucket = data.get(name)
        if not isinstance(bucket, dict):
            bucket = {}
            data[name] = bucket
        return bucket

    # Auto-scroll speed, keyed by session

    def scroll_speed(self, session_id: str) -> float:
        value = self._bucket("scroll_speed").get(session_id, config.DEFAULT_SCROLL_SPEED)
        return clamp_scroll_speed(value)

    def set_scroll_speed(self, session_id: str, speed: float) -> None:
        self._bucket("scroll_speed")[session_id] = clamp_scroll_speed(speed)
        self._save()

    # Chord simplification toggle

    @property
    def simplify_chords(self) -> bool:
        return bool(self._load().get("simplify_chords", False))

    def set_simplify_chords(self, enabled: bool) -> None:
        self._load()["simplify_chords"] = bool(enabled)
        self._save()

    # Zoom, keyed by song

    def zoom(self, song_id: str) -> float:
        try:
            return float(self._bucket("zoom").get(song_id, 1.0))
        except (TypeError, ValueError):
            return 1.0

    def set_zoom(self, song_id: str, zoom: float) -> None:
        self._bucket("zoom")[song_id] = float(zoom)
        self._save()

    # Completed songs, keyed by setlist

    def completed_songs(self, setlist_id: str) -> set[str]:
        value = self._bucket("completed").get(setlist_id) or []
        return {str(s) for s in value} if isinstance(value, list) else set()

    def mark_completed(self, setlist_id: str, song_id: str, done: bool = True) -> None:
        completed = self.completed_songs(setlist_id)
        if done:
            completed.add(song_id)
        else:
            completed.discard(song_id)
        self._bucket("completed")[setlist_id] = sorted(completed)
        self._save()
