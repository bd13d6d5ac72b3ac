"""
Explanation lookups gated by the vocabulary cache.

The cache is always asked first (unless the caller forces a refresh), and the
AI provider is only called on a miss. Caching problems never cost the user
their explanation: they are logged and the AI answer is returned anyway.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from ai_settings import AISettingsManager, ExplanationError
from vocabulary_cache import (
    CacheEntry,
    CacheStorageError,
    DuplicateKeyError,
    VocabularyCache,
    context_hash,
)

logger = logging.getLogger(__name__)

__all__ = ["ExplanationResult", "ExplanationService", "ExplanationError"]


@dataclass(frozen=True)
class ExplanationResult:
    text: str
    from_cache: bool
    entry_id: Optional[str] = None


class ExplanationService:

    def __init__(self, cache: VocabularyCache, ai: AISettingsManager):
        self.cache = cache
        self.ai = ai

    async def explain(self, user_id: str, text: str, context: str,
                      document_id: Optional[str] = None,
                      force_refresh: bool = False) -> ExplanationResult:
        if not text or not context:
            raise ValueError("Missing required fields: text or context")

        hash_value = context_hash(text, context)

        if document_id and not force_refresh:
            cached = self.cache.lookup(user_id, document_id, hash_value)
            if cached is not None:
                return ExplanationResult(cached.explanation, from_cache=True, entry_id=cached.id)

        explanation = await self.ai.explain(text, context)

        entry_id = None
        if document_id:
            entry_id = self._store(user_id, document_id, text, context, hash_value,
                                   explanation, force_refresh)
        return ExplanationResult(explanation, from_cache=False, entry_id=entry_id)

    def _store(self, user_id: str, document_id: str, text: str, context: str,
               hash_value: str, explanation: str, force_refresh: bool) -> Optional[str]:
        entry = CacheEntry.create(user_id, document_id, text, context, explanation)
        try:
            if force_refresh:
                entry = self.cache.force_refresh(user_id, document_id, hash_value, entry)
            else:
                entry = self.cache.insert(entry)
        except DuplicateKeyError:
            logger.info("Explanation for %r already cached, skipping", text)
            existing = self.cache.load().get(entry.key)
            return existing.id if existing else None
        except CacheStorageError as e:
            logger.error("Could not cache explanation for %r: %s", text, e)
            return None
        return entry.id
