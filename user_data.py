"""
User data management for Zenith Reader.
Handles reading positions, reader settings, bookmarks and annotations.
"""

import json
import os
import hashlib
import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import List, Dict, Optional

from reading_position import (
    Position,
    ReaderSettings,
    START_POSITION,
    decode_position,
    encode_position,
)

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now().isoformat()


@dataclass
class ReadingPosition:
    """Where a user is in a book, with the style it was recorded under."""
    user_id: str
    document_id: str
    cfi_or_spine_position: str   # "spine:3:page:2" or a legacy location string
    chapter_label: str = ""
    progress_percent: float = 0.0
    font_size: int = 100
    theme: str = "light"
    updated_at: str = field(default_factory=_now)

    @property
    def location(self) -> Position:
        return decode_position(self.cfi_or_spine_position)

    @property
    def settings(self) -> ReaderSettings:
        return ReaderSettings(font_size=self.font_size, theme=self.theme)


@dataclass
class Bookmark:
    """A bookmark with optional note."""
    id: str
    user_id: str
    document_id: str
    location: str       # encoded position
    chapter_label: str
    note: Optional[str] = None
    created_at: str = field(default_factory=_now)


ANNOTATION_COLORS = ('yellow', 'green', 'blue', 'pink', 'purple')


@dataclass
class Annotation:
    """A marked passage with an optional note."""
    id: str
    user_id: str
    document_id: str
    cfi_range: str      # location of the marked text, as sent by the client
    selected_text: str
    note: Optional[str] = None
    color: str = 'yellow'
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)


@dataclass
class UserData:
    """All persisted reader data."""
    positions: Dict[str, ReadingPosition] = field(default_factory=dict)  # "user/book" -> position
    bookmarks: List[Bookmark] = field(default_factory=list)
    annotations: List[Annotation] = field(default_factory=list)
    version: str = "1.0"


def generate_id() -> str:
    """Generate a unique ID."""
    return hashlib.md5(
        f"{datetime.now().isoformat()}-{os.urandom(8).hex()}".encode()
    ).hexdigest()[:12]


def _position_key(user_id: str, document_id: str) -> str:
    return f"{user_id}/{document_id}"


class UserDataManager:
    """Manages user data persistence."""

    def __init__(self, data_dir: str):
        self.data_dir = data_dir
        self.data_file = os.path.join(data_dir, "user_data.json")
        self._data: Optional[UserData] = None

    def _ensure_dir(self):
        """Ensure data directory exists."""
        if not os.path.exists(self.data_dir):
            os.makedirs(self.data_dir, exist_ok=True)

    def load(self) -> UserData:
        """Load user data from disk."""
        if self._data is not None:
            return self._data

        if not os.path.exists(self.data_file):
            self._data = UserData()
            return self._data

        try:
            with open(self.data_file, 'r', encoding='utf-8') as f:
                raw = json.load(f)

            self._data = UserData(
                positions={
                    key: ReadingPosition(**p)
                    for key, p in raw.get('positions', {}).items()
                },
                bookmarks=[Bookmark(**b) for b in raw.get('bookmarks', [])],
                annotations=[Annotation(**a) for a in raw.get('annotations', [])],
                version=raw.get('version', '1.0')
            )
        except (OSError, ValueError, TypeError) as e:
            logger.error("Error loading user data: %s", e)
            self._data = UserData()

        return self._data

    def save(self) -> bool:
        """Save user data to disk. Failures are logged, never raised."""
        if self._data is None:
            return False

        data = {
            'positions': {
                key: asdict(p) for key, p in self._data.positions.items()
            },
            'bookmarks': [asdict(b) for b in self._data.bookmarks],
            'annotations': [asdict(a) for a in self._data.annotations],
            'version': self._data.version
        }

        try:
            self._ensure_dir()
            with open(self.data_file, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
        except OSError as e:
            logger.error("Error saving user data: %s", e)
            return False
        return True

    # Reading Position
    def load_position(self, user_id: str, document_id: str) -> Optional[ReadingPosition]:
        """Get the saved position for a book."""
        data = self.load()
        return data.positions.get(_position_key(user_id, document_id))

    def save_progress(self, user_id: str, document_id: str, position: Position,
                      chapter_label: str = "", progress_percent: float = 0.0,
                      settings: Optional[ReaderSettings] = None) -> bool:
        """Upsert position, chapter and the style it was recorded under."""
        settings = settings or ReaderSettings()
        data = self.load()
        data.positions[_position_key(user_id, document_id)] = ReadingPosition(
            user_id=user_id,
            document_id=document_id,
            cfi_or_spine_position=encode_position(position),
            chapter_label=chapter_label,
            progress_percent=progress_percent,
            font_size=settings.font_size,
            theme=settings.theme,
        )
        logger.debug("Saved position %s for %s", encode_position(position), document_id)
        return self.save()

    def save_settings(self, user_id: str, document_id: str, settings: ReaderSettings) -> bool:
        """
        Update only font size and theme. The stored position is left as is;
        a book without a record gets one at its start.
        """
        data = self.load()
        key = _position_key(user_id, document_id)
        existing = data.positions.get(key)

        if existing:
            existing.font_size = settings.font_size
            existing.theme = settings.theme
            existing.updated_at = _now()
        else:
            data.positions[key] = ReadingPosition(
                user_id=user_id,
                document_id=document_id,
                cfi_or_spine_position=encode_position(START_POSITION),
                font_size=settings.font_size,
                theme=settings.theme,
            )
        return self.save()

    # Bookmarks
    def add_bookmark(self, bookmark: Bookmark) -> Bookmark:
        """Add a bookmark."""
        data = self.load()
        data.bookmarks.append(bookmark)
        self.save()
        return bookmark

    def get_bookmarks(self, user_id: str, document_id: Optional[str] = None) -> List[Bookmark]:
        """Get bookmarks of a user, optionally for one book, newest first."""
        data = self.load()
        bookmarks = [
            b for b in data.bookmarks
            if b.user_id == user_id and (document_id is None or b.document_id == document_id)
        ]
        return sorted(bookmarks, key=lambda b: b.created_at, reverse=True)

    def delete_bookmark(self, user_id: str, bookmark_id: str) -> bool:
        """Delete a bookmark."""
        data = self.load()
        original_len = len(data.bookmarks)
        data.bookmarks = [
            b for b in data.bookmarks
            if not (b.id == bookmark_id and b.user_id == user_id)
        ]

        if len(data.bookmarks) < original_len:
            self.save()
            return True
        return False

    def update_bookmark_note(self, user_id: str, bookmark_id: str, note: Optional[str]) -> bool:
        """Update a bookmark's note."""
        data = self.load()
        for b in data.bookmarks:
            if b.id == bookmark_id and b.user_id == user_id:
                b.note = note
                self.save()
                return True
        return False

    # Annotations
    def add_annotation(self, annotation: Annotation) -> Annotation:
        """Add an annotation. Unknown colors raise ValueError."""
        if annotation.color not in ANNOTATION_COLORS:
            raise ValueError(f"Unknown color: {annotation.color}")
        data = self.load()
        data.annotations.append(annotation)
        self.save()
        return annotation

    def get_annotations(self, user_id: str, document_id: Optional[str] = None) -> List[Annotation]:
        data = self.load()
        annotations = [
            a for a in data.annotations
            if a.user_id == user_id and (document_id is None or a.document_id == document_id)
        ]
        return sorted(annotations, key=lambda a: a.created_at, reverse=True)

    def update_annotation(self, user_id: str, annotation_id: str,
                          note: Optional[str] = None, color: Optional[str] = None) -> bool:
        """
        Change the note and/or color of an annotation. Fields left as None
        keep their value; an unknown color raises ValueError.
        """
        if color is not None and color not in ANNOTATION_COLORS:
            raise ValueError(f"Unknown color: {color}")

        data = self.load()
        for a in data.annotations:
            if a.id == annotation_id and a.user_id == user_id:
                if note is not None:
                    a.note = note
                if color is not None:
                    a.color = color
                a.updated_at = _now()
                self.save()
                return True
        return False

    def delete_annotation(self, user_id: str, annotation_id: str) -> bool:
        """Delete an annotation."""
        data = self.load()
        original_len = len(data.annotations)
        data.annotations = [
            a for a in data.annotations
            if not (a.id == annotation_id and a.user_id == user_id)
        ]

        if len(data.annotations) < original_len:
            self.save()
            return True
        return False

    # Cleanup
    def cleanup_book_data(self, user_id: str, document_id: str):
        """Remove position, bookmarks and annotations of a book."""
        data = self.load()
        removed = data.positions.pop(_position_key(user_id, document_id), None)
        before = len(data.bookmarks) + len(data.annotations)
        data.bookmarks = [
            b for b in data.bookmarks
            if not (b.user_id == user_id and b.document_id == document_id)
        ]
        data.annotations = [
            a for a in data.annotations
            if not (a.user_id == user_id and a.document_id == document_id)
        ]
        if removed or len(data.bookmarks) + len(data.annotations) < before:
            self.save()
