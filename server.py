import logging
import os
from typing import Dict, Tuple

from fastapi import FastAPI, Request, HTTPException
from fastapi.responses import Response

from ai_settings import AISettingsManager, AIProvider, ExplanationError
from explain_service import ExplanationService
from reader_session import ReaderSession
from reading_position import (
    PositionDecodeError,
    ReaderSettings,
    START_POSITION,
    StructuredPosition,
    decode_position,
    encode_position,
)
from speech import DEFAULT_MIME_TYPE, generate_speech
from spine import SpineLoadError, chapters_from_html, load_epub_spine
from user_data import Annotation, Bookmark, UserDataManager, generate_id
from vocabulary_cache import CacheEntry, CacheStorageError, VocabularyCache

logger = logging.getLogger(__name__)

app = FastAPI()

# Where reader data (positions, vocabulary cache, AI settings) is kept
DATA_DIR = os.environ.get("ZENITH_DATA_DIR", ".")
BOOKS_DIR = os.environ.get("ZENITH_BOOKS_DIR", DATA_DIR)

user_data_manager = UserDataManager(DATA_DIR)
vocabulary_cache = VocabularyCache(DATA_DIR)
ai_settings_manager = AISettingsManager(DATA_DIR)
explanation_service = ExplanationService(vocabulary_cache, ai_settings_manager)

# Open reader sessions by (user_id, book_id)
reader_sessions: Dict[Tuple[str, str], ReaderSession] = {}

logger.info("Data directory: %s", DATA_DIR)
logger.info("Books directory: %s", BOOKS_DIR)


def get_user_id(request: Request) -> str:
    """The authenticated user, as forwarded by the auth layer in front of us."""
    user_id = request.headers.get("X-User-Id", "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="Missing user")
    return user_id


def parse_settings(data: dict, defaults: ReaderSettings = ReaderSettings()) -> ReaderSettings:
    try:
        return ReaderSettings(
            font_size=data.get("font_size", defaults.font_size),
            theme=data.get("theme", defaults.theme),
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


def entry_to_dict(entry: CacheEntry) -> dict:
    return {
        "id": entry.id,
        "book_id": entry.document_id,
        "text": entry.selected_text,
        "context": entry.context,
        "explanation": entry.explanation,
        "access_count": entry.access_count,
        "created_at": entry.created_at,
        "last_accessed_at": entry.last_accessed_at,
        "has_audio": entry.audio is not None,
    }


# ============================================================================
# Explanations API
# ============================================================================


@app.post("/api/explain")
async def explain(request: Request):
    """Explain a selection in its context, from the vocabulary cache when possible."""
    user_id = get_user_id(request)
    data = await request.json()

    text = data.get("text")
    context = data.get("context")
    if not text or not context:
        raise HTTPException(status_code=400, detail="Missing required fields: text or context")

    try:
        result = await explanation_service.explain(
            user_id,
            text,
            context,
            document_id=data.get("bookId"),
            force_refresh=bool(data.get("forceRefresh", False)),
        )
    except ExplanationError as e:
        logger.warning("Explanation failed for %r: %s", text, e)
        raise HTTPException(status_code=502, detail=str(e))

    return {"text": result.text, "fromCache": result.from_cache, "entryId": result.entry_id}


@app.post("/api/speak")
async def speak(request: Request):
    """
    Pronounce a word. Audio already stored with the vocabulary entry is served
    as is; otherwise it is generated and stored with the entry.
    """
    user_id = get_user_id(request)
    data = await request.json()

    text = data.get("text", "")
    if not text:
        raise HTTPException(status_code=400, detail="Missing required field: text")

    entry = None
    entry_id = data.get("entryId")
    if entry_id:
        entry = vocabulary_cache.get(user_id, entry_id)
        if entry and entry.audio:
            return Response(content=entry.audio, media_type=entry.audio_mime_type or DEFAULT_MIME_TYPE)

    settings = ai_settings_manager.get_settings()
    result = await generate_speech(
        text,
        settings.server_url,
        model=settings.tts_model,
        voice=settings.tts_voice,
        transport=ai_settings_manager.transport,
    )

    if not result["success"]:
        return result

    if entry:
        try:
            vocabulary_cache.attach_audio(user_id, entry.id, result["audio_data"], result["mime_type"])
        except CacheStorageError as e:
            logger.error("Could not store audio for %r: %s", text, e)

    return Response(content=result["audio_data"], media_type=result["mime_type"])


# ============================================================================
# Vocabulary API
# ============================================================================


@app.get("/api/vocabulary")
async def get_vocabulary(request: Request, book_id: str = None):
    """Get cached explanations, optionally for one book."""
    user_id = get_user_id(request)
    entries = vocabulary_cache.list_entries(user_id, book_id)
    return {"entries": [entry_to_dict(e) for e in entries]}


@app.get("/api/vocabulary/search")
async def search_vocabulary(request: Request, q: str, book_id: str = None):
    """Search vocabulary words."""
    user_id = get_user_id(request)
    if not q or len(q) < 2:
        return {"results": [], "query": q}

    entries = vocabulary_cache.search(user_id, q, book_id)
    return {"query": q, "results": [entry_to_dict(e) for e in entries]}


@app.get("/api/vocabulary/{entry_id}")
async def get_vocabulary_entry(request: Request, entry_id: str):
    user_id = get_user_id(request)
    entry = vocabulary_cache.get(user_id, entry_id)
    if entry is None:
        raise HTTPException(status_code=404, detail="Entry not found")
    return entry_to_dict(entry)


@app.delete("/api/vocabulary/{entry_id}")
async def delete_vocabulary_entry(request: Request, entry_id: str):
    """Delete a vocabulary entry."""
    user_id = get_user_id(request)
    try:
        deleted = vocabulary_cache.delete(user_id, entry_id)
    except CacheStorageError as e:
        raise HTTPException(status_code=500, detail=str(e))
    if deleted:
        return {"status": "deleted"}
    raise HTTPException(status_code=404, detail="Entry not found")


@app.post("/api/vocabulary/delete")
async def delete_vocabulary_entries(request: Request):
    """Delete multiple vocabulary entries at once."""
    user_id = get_user_id(request)
    data = await request.json()
    ids = data.get("ids", [])
    if not isinstance(ids, list):
        raise HTTPException(status_code=400, detail="ids must be a list")

    try:
        deleted = vocabulary_cache.delete_many(user_id, ids)
    except CacheStorageError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return {"status": "deleted", "deleted": deleted}


# ============================================================================
# Reading Progress API
# ============================================================================


@app.get("/api/progress/{book_id}")
async def get_reading_progress(request: Request, book_id: str):
    """Get the saved position and style for a book."""
    user_id = get_user_id(request)
    record = user_data_manager.load_position(user_id, book_id)

    if record:
        return {
            "book_id": book_id,
            "location": record.cfi_or_spine_position,
            "chapter_label": record.chapter_label,
            "progress_percent": record.progress_percent,
            "font_size": record.font_size,
            "theme": record.theme,
            "updated_at": record.updated_at,
        }
    defaults = ReaderSettings()
    return {
        "book_id": book_id,
        "location": encode_position(START_POSITION),
        "chapter_label": "",
        "progress_percent": 0.0,
        "font_size": defaults.font_size,
        "theme": defaults.theme,
    }


@app.post("/api/progress/{book_id}")
async def save_reading_progress(request: Request, book_id: str):
    """Save reading position for a book."""
    user_id = get_user_id(request)
    data = await request.json()

    try:
        position = decode_position(data.get("location", encode_position(START_POSITION)))
    except PositionDecodeError as e:
        raise HTTPException(status_code=400, detail=str(e))
    settings = parse_settings(data)

    user_data_manager.save_progress(
        user_id,
        book_id,
        position,
        chapter_label=data.get("chapter_label", ""),
        progress_percent=data.get("progress_percent", 0.0),
        settings=settings,
    )
    return {"status": "saved"}


@app.put("/api/progress/{book_id}/settings")
async def save_reader_settings(request: Request, book_id: str):
    """Save font size and theme without touching the position."""
    user_id = get_user_id(request)
    data = await request.json()
    settings = parse_settings(data)
    user_data_manager.save_settings(user_id, book_id, settings)
    return {"status": "saved", "font_size": settings.font_size, "theme": settings.theme}


@app.delete("/api/progress/{book_id}")
async def delete_reading_data(request: Request, book_id: str):
    """Forget position, bookmarks and annotations of a book."""
    user_id = get_user_id(request)
    reader_sessions.pop((user_id, book_id), None)
    user_data_manager.cleanup_book_data(user_id, book_id)
    return {"status": "deleted"}


# ============================================================================
# Bookmarks API
# ============================================================================


@app.get("/api/bookmarks/{book_id}")
async def get_bookmarks(request: Request, book_id: str):
    """Get all bookmarks for a book."""
    user_id = get_user_id(request)
    bookmarks = user_data_manager.get_bookmarks(user_id, book_id)
    return {
        "book_id": book_id,
        "bookmarks": [
            {
                "id": b.id,
                "location": b.location,
                "chapter_label": b.chapter_label,
                "note": b.note,
                "created_at": b.created_at,
            }
            for b in bookmarks
        ],
    }


@app.post("/api/bookmarks/{book_id}")
async def add_bookmark(request: Request, book_id: str):
    """Add a bookmark, at the open session's page when no location is given."""
    user_id = get_user_id(request)
    data = await request.json()

    location = data.get("location")
    chapter_label = data.get("chapter_label", "")
    session = reader_sessions.get((user_id, book_id))
    if location is None and session is not None:
        current = session.location
        location = encode_position(StructuredPosition(current.spine_index, current.page))
        chapter_label = chapter_label or current.chapter_label
    if location is None:
        raise HTTPException(status_code=400, detail="Missing required field: location")

    try:
        decode_position(location)
    except PositionDecodeError as e:
        raise HTTPException(status_code=400, detail=str(e))

    bookmark = Bookmark(
        id=generate_id(),
        user_id=user_id,
        document_id=book_id,
        location=location,
        chapter_label=chapter_label,
        note=data.get("note"),
    )
    user_data_manager.add_bookmark(bookmark)
    return {"id": bookmark.id, "status": "created"}


@app.delete("/api/bookmarks/{book_id}/{bookmark_id}")
async def delete_bookmark(request: Request, book_id: str, bookmark_id: str):
    """Delete a bookmark."""
    user_id = get_user_id(request)
    if user_data_manager.delete_bookmark(user_id, bookmark_id):
        return {"status": "deleted"}
    raise HTTPException(status_code=404, detail="Bookmark not found")


@app.put("/api/bookmarks/{book_id}/{bookmark_id}")
async def update_bookmark(request: Request, book_id: str, bookmark_id: str):
    """Update a bookmark's note."""
    user_id = get_user_id(request)
    data = await request.json()
    if user_data_manager.update_bookmark_note(user_id, bookmark_id, data.get("note")):
        return {"status": "updated"}
    raise HTTPException(status_code=404, detail="Bookmark not found")


# ============================================================================
# Annotations API
# ============================================================================


@app.get("/api/annotations/{book_id}")
async def get_annotations(request: Request, book_id: str):
    """Get all annotations for a book, newest first."""
    user_id = get_user_id(request)
    annotations = user_data_manager.get_annotations(user_id, book_id)
    return {
        "book_id": book_id,
        "annotations": [
            {
                "id": a.id,
                "cfi_range": a.cfi_range,
                "selected_text": a.selected_text,
                "note": a.note,
                "color": a.color,
                "created_at": a.created_at,
                "updated_at": a.updated_at,
            }
            for a in annotations
        ],
    }


@app.post("/api/annotations/{book_id}")
async def add_annotation(request: Request, book_id: str):
    """Add an annotation."""
    user_id = get_user_id(request)
    data = await request.json()

    cfi_range = data.get("cfi_range")
    selected_text = data.get("selected_text")
    if not cfi_range or not selected_text:
        raise HTTPException(status_code=400, detail="Missing required fields: cfi_range or selected_text")

    annotation = Annotation(
        id=generate_id(),
        user_id=user_id,
        document_id=book_id,
        cfi_range=cfi_range,
        selected_text=selected_text,
        note=data.get("note"),
        color=data.get("color", "yellow"),
    )
    try:
        user_data_manager.add_annotation(annotation)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"id": annotation.id, "status": "created"}


@app.put("/api/annotations/{book_id}/{annotation_id}")
async def update_annotation(request: Request, book_id: str, annotation_id: str):
    """Update an annotation's note and/or color."""
    user_id = get_user_id(request)
    data = await request.json()
    try:
        updated = user_data_manager.update_annotation(
            user_id, annotation_id, note=data.get("note"), color=data.get("color")
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if updated:
        return {"status": "updated"}
    raise HTTPException(status_code=404, detail="Annotation not found")


@app.delete("/api/annotations/{book_id}/{annotation_id}")
async def delete_annotation(request: Request, book_id: str, annotation_id: str):
    """Delete an annotation."""
    user_id = get_user_id(request)
    if user_data_manager.delete_annotation(user_id, annotation_id):
        return {"status": "deleted"}
    raise HTTPException(status_code=404, detail="Annotation not found")


# ============================================================================
# Reader Sessions API
# ============================================================================


def session_state(session: ReaderSession) -> dict:
    location = session.location
    panel = session.panel.state
    return {
        "location": {
            "spine_index": location.spine_index,
            "page": location.page,
            "total_pages": location.total_pages,
            "chapter_label": location.chapter_label,
            "progress_percent": location.progress_percent,
        },
        "settings": {
            "font_size": session.settings.font_size,
            "theme": session.settings.theme,
        },
        "waiting_for_end": session.is_waiting,
        "text": session.book.document.visible_text(),
        "panel": {
            "selection_id": panel.selection_id,
            "text": panel.selected_text,
            "context": panel.context,
            "explanation": panel.completion,
            "from_cache": panel.from_cache,
            "loading": panel.loading,
            "error": panel.error,
        },
    }


def get_session(user_id: str, book_id: str) -> ReaderSession:
    session = reader_sessions.get((user_id, book_id))
    if session is None:
        raise HTTPException(status_code=404, detail="Reader session not open")
    return session


@app.post("/api/reader/{book_id}/open")
async def open_reader(request: Request, book_id: str):
    """
    Open a book for reading and restore where the user left off.
    Either `chapters` ([{label, html}]) or `bookFile` (an EPUB in the books
    directory) must be given.
    """
    user_id = get_user_id(request)
    data = await request.json()

    if data.get("chapters"):
        items = data["chapters"]
        if not isinstance(items, list) or not all(isinstance(i, dict) for i in items):
            raise HTTPException(status_code=400, detail="chapters must be a list of objects")
        chapters = chapters_from_html(items)
    elif data.get("bookFile"):
        # Only files directly inside the books directory
        book_path = os.path.join(BOOKS_DIR, os.path.basename(data["bookFile"]))
        if not os.path.exists(book_path):
            raise HTTPException(status_code=404, detail="Book not found")
        try:
            chapters = load_epub_spine(book_path)
        except SpineLoadError as e:
            raise HTTPException(status_code=400, detail=str(e))
    else:
        raise HTTPException(status_code=400, detail="Missing required field: chapters or bookFile")

    if not chapters:
        raise HTTPException(status_code=400, detail="Book has no readable chapters")

    session = ReaderSession(user_id, book_id, chapters, user_data_manager)
    session.open()
    reader_sessions[(user_id, book_id)] = session
    return session_state(session)


@app.get("/api/reader/{book_id}")
async def get_reader(request: Request, book_id: str):
    user_id = get_user_id(request)
    return session_state(get_session(user_id, book_id))


@app.post("/api/reader/{book_id}/click")
async def reader_click(request: Request, book_id: str):
    """A tap on the page. The second tap of a pair completes a selection."""
    user_id = get_user_id(request)
    session = get_session(user_id, book_id)
    data = await request.json()

    try:
        x = float(data["x"])
        y = float(data["y"])
    except (KeyError, TypeError, ValueError):
        raise HTTPException(status_code=400, detail="Missing required fields: x and y")

    result = session.click(x, y)
    state = session_state(session)
    state["selection"] = None
    if result is not None:
        state["selection"] = {
            "id": result.selection_id,
            "text": result.selected_text,
            "context": result.context,
        }
    return state


@app.post("/api/reader/{book_id}/next")
async def reader_next(request: Request, book_id: str):
    user_id = get_user_id(request)
    session = get_session(user_id, book_id)
    moved = session.next_page()
    return {"moved": moved, **session_state(session)}


@app.post("/api/reader/{book_id}/prev")
async def reader_prev(request: Request, book_id: str):
    user_id = get_user_id(request)
    session = get_session(user_id, book_id)
    moved = session.prev_page()
    return {"moved": moved, **session_state(session)}


@app.post("/api/reader/{book_id}/chapter/{spine_index}")
async def reader_chapter(request: Request, book_id: str, spine_index: int):
    """Jump to the start of a chapter."""
    user_id = get_user_id(request)
    session = get_session(user_id, book_id)
    try:
        session.go_to_chapter(spine_index)
    except IndexError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return session_state(session)


@app.put("/api/reader/{book_id}/settings")
async def reader_settings(request: Request, book_id: str):
    user_id = get_user_id(request)
    session = get_session(user_id, book_id)
    data = await request.json()
    session.change_settings(parse_settings(data, defaults=session.settings))
    return session_state(session)


@app.post("/api/reader/{book_id}/explain")
async def reader_explain(request: Request, book_id: str):
    """Load (or reload) the explanation for the current selection."""
    user_id = get_user_id(request)
    session = get_session(user_id, book_id)
    if not session.panel.is_open:
        raise HTTPException(status_code=400, detail="Nothing selected")

    data = await request.json()
    await session.explain(explanation_service, force_refresh=bool(data.get("forceRefresh", False)))
    return session_state(session)


@app.delete("/api/reader/{book_id}")
async def close_reader(request: Request, book_id: str):
    user_id = get_user_id(request)
    if reader_sessions.pop((user_id, book_id), None) is None:
        raise HTTPException(status_code=404, detail="Reader session not open")
    return {"status": "closed"}


# ============================================================================
# AI Settings API
# ============================================================================


@app.get("/api/ai/settings")
async def get_ai_settings():
    """Get current AI settings."""
    settings = ai_settings_manager.get_settings()
    return {
        "provider": settings.provider,
        "server_url": settings.server_url,
        "model": settings.model,
        "enabled": settings.enabled,
        "temperature": settings.temperature,
        "max_tokens": settings.max_tokens,
        "system_prompt": settings.system_prompt,
        "tts_model": settings.tts_model,
        "tts_voice": settings.tts_voice,
        "updated_at": settings.updated_at,
    }


@app.put("/api/ai/settings")
async def update_ai_settings(request: Request):
    """Update AI settings."""
    data = await request.json()

    provider = data.get("provider")
    if provider is not None and provider not in [p.value for p in AIProvider]:
        raise HTTPException(status_code=400, detail=f"Unknown provider: {provider}")

    allowed = {
        "provider", "server_url", "model", "enabled", "temperature",
        "max_tokens", "system_prompt", "tts_model", "tts_voice",
    }
    ai_settings_manager.update_settings(**{k: v for k, v in data.items() if k in allowed})
    return await get_ai_settings()
