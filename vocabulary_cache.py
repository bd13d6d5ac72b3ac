"""
Vocabulary cache for AI explanations.
Explanations are keyed by (user, book, context hash) so the same selection in
the same context never triggers a second AI call.
"""

import base64
import json
import logging
import os
import struct
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import List, Dict, Optional, Iterable, NamedTuple

from user_data import generate_id

logger = logging.getLogger(__name__)

CACHE_FILENAME = "vocabulary_cache.json"
BASE36_DIGITS = "0123456789abcdefghijklmnopqrstuvwxyz"


class DuplicateKeyError(Exception):
    """An entry for this (user, book, context hash) already exists."""


class CacheStorageError(Exception):
    """The cache file could not be written."""


def _to_int32(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - 0x100000000 if value & 0x80000000 else value


def _base36(value: int) -> str:
    if value == 0:
        return "0"
    sign = "-" if value < 0 else ""
    value = abs(value)
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(BASE36_DIGITS[rem])
    return sign + "".join(reversed(digits))


def context_hash(selected_text: str, context: str) -> str:
    """
    32-bit signed rolling hash of "<selected_text>|<context>" in base 36.
    Runs over UTF-16 code units so keys match those written by web clients.
    """
    data = f"{selected_text}|{context}".encode('utf-16-le', 'surrogatepass')
    acc = 0
    for (code,) in struct.iter_unpack('<H', data):
        acc = _to_int32((acc << 5) - acc + code)
    return _base36(acc)


def _now() -> str:
    return datetime.now().isoformat()


class CacheKey(NamedTuple):
    user_id: str
    document_id: str
    context_hash: str


@dataclass
class CacheEntry:
    """A cached AI explanation for one selection in one context."""
    user_id: str
    document_id: str
    selected_text: str
    context: str
    context_hash: str
    explanation: str
    id: str = field(default_factory=generate_id)
    access_count: int = 1
    created_at: str = field(default_factory=_now)
    last_accessed_at: str = field(default_factory=_now)
    audio: Optional[bytes] = None
    audio_mime_type: Optional[str] = None

    @property
    def key(self) -> CacheKey:
        return CacheKey(self.user_id, self.document_id, self.context_hash)

    @classmethod
    def create(cls, user_id: str, document_id: str, selected_text: str,
               context: str, explanation: str) -> 'CacheEntry':
        return cls(
            user_id=user_id,
            document_id=document_id,
            selected_text=selected_text,
            context=context,
            context_hash=context_hash(selected_text, context),
            explanation=explanation,
        )

    def to_dict(self) -> Dict:
        data = asdict(self)
        if self.audio is not None:
            data['audio'] = base64.b64encode(self.audio).decode('ascii')
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> 'CacheEntry':
        data = dict(data)
        if data.get('audio'):
            data['audio'] = base64.b64decode(data['audio'])
        return cls(**data)


class VocabularyCache:
    """Manages cache persistence."""

    def __init__(self, data_dir: str):
        self.data_dir = data_dir
        self.cache_file = os.path.join(data_dir, CACHE_FILENAME)
        self._entries: Optional[Dict[CacheKey, CacheEntry]] = None

    def _ensure_dir(self):
        """Ensure data directory exists."""
        if not os.path.exists(self.data_dir):
            os.makedirs(self.data_dir, exist_ok=True)

    def load(self) -> Dict[CacheKey, CacheEntry]:
        """Load cache entries from disk."""
        if self._entries is not None:
            return self._entries

        self._entries = {}
        if not os.path.exists(self.cache_file):
            return self._entries

        try:
            with open(self.cache_file, 'r', encoding='utf-8') as f:
                raw = json.load(f)
            for item in raw.get('entries', []):
                entry = CacheEntry.from_dict(item)
                self._entries[entry.key] = entry
        except (OSError, ValueError, TypeError) as e:
            logger.error("Error loading vocabulary cache %s: %s", self.cache_file, e)
            self._entries = {}

        return self._entries

    def save(self):
        """Save cache entries to disk."""
        if self._entries is None:
            return

        data = {'entries': [e.to_dict() for e in self._entries.values()]}
        try:
            self._ensure_dir()
            with open(self.cache_file, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
        except OSError as e:
            raise CacheStorageError(f"Cannot write {self.cache_file}: {e}") from e

    # Lookup / insert

    def lookup(self, user_id: str, document_id: str, hash_value: str) -> Optional[CacheEntry]:
        """Find an entry; a hit bumps its access counter and timestamp."""
        entries = self.load()
        entry = entries.get(CacheKey(user_id, document_id, hash_value))
        if entry is None:
            return None

        entry.access_count += 1
        entry.last_accessed_at = _now()
        try:
            self.save()
        except CacheStorageError as e:
            # Only the counter is lost
            logger.warning("Could not record access to %r: %s", entry.selected_text, e)
        logger.info("Vocabulary cache hit for %r (accessed %d times)",
                    entry.selected_text, entry.access_count)
        return entry

    def insert(self, entry: CacheEntry) -> CacheEntry:
        entries = self.load()
        if entry.key in entries:
            raise DuplicateKeyError(f"Entry already cached for {entry.key}")
        entries[entry.key] = entry
        try:
            self.save()
        except CacheStorageError:
            del entries[entry.key]
            raise
        return entry

    def force_refresh(self, user_id: str, document_id: str, hash_value: str,
                      new_entry: CacheEntry) -> CacheEntry:
        """Replace whatever is cached for the key; counters start over."""
        entries = self.load()
        key = CacheKey(user_id, document_id, hash_value)
        previous = entries.pop(key, None)

        new_entry.user_id = user_id
        new_entry.document_id = document_id
        new_entry.context_hash = hash_value
        new_entry.access_count = 1
        new_entry.created_at = new_entry.last_accessed_at = _now()
        entries[key] = new_entry
        try:
            self.save()
        except CacheStorageError:
            del entries[key]
            if previous is not None:
                entries[key] = previous
            raise
        return new_entry

    # Vocabulary list

    def get(self, user_id: str, entry_id: str) -> Optional[CacheEntry]:
        for entry in self.load().values():
            if entry.id == entry_id and entry.user_id == user_id:
                return entry
        return None

    def list_entries(self, user_id: str, document_id: Optional[str] = None) -> List[CacheEntry]:
        """All entries of a user, most recently accessed first."""
        entries = [
            e for e in self.load().values()
            if e.user_id == user_id and (document_id is None or e.document_id == document_id)
        ]
        entries.sort(key=lambda e: e.last_accessed_at, reverse=True)
        return entries

    def search(self, user_id: str, text: str, document_id: Optional[str] = None) -> List[CacheEntry]:
        needle = text.lower()
        return [
            e for e in self.list_entries(user_id, document_id)
            if needle in e.selected_text.lower()
        ]

    def delete(self, user_id: str, entry_id: str) -> bool:
        return self.delete_many(user_id, [entry_id]) > 0

    def delete_many(self, user_id: str, entry_ids: Iterable[str]) -> int:
        ids = set(entry_ids)
        entries = self.load()
        doomed = [k for k, e in entries.items() if e.id in ids and e.user_id == user_id]
        for key in doomed:
            del entries[key]
        if doomed:
            self.save()
        return len(doomed)

    def attach_audio(self, user_id: str, entry_id: str, audio: bytes, mime_type: str) -> bool:
        """Store pronunciation audio with an entry."""
        entry = self.get(user_id, entry_id)
        if entry is None:
            return False
        entry.audio = audio
        entry.audio_mime_type = mime_type
        self.save()
        return True
