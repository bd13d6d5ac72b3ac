"""
Tests for the FastAPI server.
"""

import json
import tempfile

import httpx
import pytest
from fastapi.testclient import TestClient

import server
from ai_settings import AISettingsManager
from explain_service import ExplanationService
from user_data import UserDataManager
from vocabulary_cache import VocabularyCache

USER = {"X-User-Id": "u1"}

CHAPTERS = [
    {"label": "Plants", "html": "<p>Plants use photosynthesis to make food.</p>\n"
                                "<p>Light, water and air: all needed.</p>"},
    {"label": "More", "html": "".join(f"<p>Line {n} of chapter two.</p>\n" for n in range(90))},
]


class ProviderStub:
    """Answers chat and speech requests like a local LM Studio server."""

    def __init__(self):
        self.chat_calls = 0
        self.speech_calls = 0
        self.chat_status = 200
        self.speech_status = 200

    def __call__(self, request):
        if request.url.path.endswith("/chat/completions"):
            self.chat_calls += 1
            if self.chat_status != 200:
                return httpx.Response(self.chat_status)
            body = json.loads(request.content)
            word = body["messages"][1]["content"].split('Target Word: "')[1].rstrip('"')
            return httpx.Response(200, json={
                "choices": [{"message": {"content": f"{word} explanation #{self.chat_calls}"}}]
            })
        if request.url.path.endswith("/audio/speech"):
            self.speech_calls += 1
            if self.speech_status != 200:
                return httpx.Response(self.speech_status)
            return httpx.Response(200, content=b"ID3audio", headers={"content-type": "audio/mpeg"})
        return httpx.Response(404)


@pytest.fixture
def temp_data_dir():
    """Create a temporary directory for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def provider():
    return ProviderStub()


@pytest.fixture
def client(monkeypatch, temp_data_dir, provider):
    """Create a test client backed by managers in a temp directory."""
    ai = AISettingsManager(temp_data_dir, transport=httpx.MockTransport(provider))
    ai.update_settings(model="test-model")
    cache = VocabularyCache(temp_data_dir)

    monkeypatch.setattr(server, "user_data_manager", UserDataManager(temp_data_dir))
    monkeypatch.setattr(server, "vocabulary_cache", cache)
    monkeypatch.setattr(server, "ai_settings_manager", ai)
    monkeypatch.setattr(server, "explanation_service", ExplanationService(cache, ai))
    monkeypatch.setattr(server, "reader_sessions", {})
    monkeypatch.setattr(server, "BOOKS_DIR", temp_data_dir)
    return TestClient(server.app)


def explain(client, text="photosynthesis", context="Plants use photosynthesis.", **extra):
    payload = {"text": text, "context": context, "bookId": "book1"}
    payload.update(extra)
    return client.post("/api/explain", json=payload, headers=USER)


def open_book(client, book_id="book1"):
    return client.post(f"/api/reader/{book_id}/open", json={"chapters": CHAPTERS}, headers=USER)


def tap(client, row, col, book_id="book1"):
    return client.post(
        f"/api/reader/{book_id}/click",
        json={"x": (col + 0.5) * 8, "y": (row + 0.5) * 20},
        headers=USER,
    )


class TestAuthentication:
    """Tests for the user header."""

    def test_missing_user_rejected(self, client):
        response = client.post("/api/explain", json={"text": "a", "context": "b"})
        assert response.status_code == 401

    def test_blank_user_rejected(self, client):
        response = client.get("/api/vocabulary", headers={"X-User-Id": "  "})
        assert response.status_code == 401


class TestExplainAPI:
    """Tests for the explanation endpoint."""

    def test_missing_fields(self, client):
        response = client.post("/api/explain", json={"text": "word"}, headers=USER)
        assert response.status_code == 400

    def test_miss_then_hit(self, client, provider):
        """Test that the second identical request is served from the cache."""
        first = explain(client)
        assert first.status_code == 200
        assert first.json()["text"] == "photosynthesis explanation #1"
        assert first.json()["fromCache"] is False

        second = explain(client)
        assert second.json()["fromCache"] is True
        assert second.json()["text"] == "photosynthesis explanation #1"
        assert provider.chat_calls == 1

    def test_force_refresh(self, client, provider):
        explain(client)
        refreshed = explain(client, forceRefresh=True)
        assert refreshed.json()["fromCache"] is False
        assert refreshed.json()["text"] == "photosynthesis explanation #2"

        again = explain(client)
        assert again.json()["text"] == "photosynthesis explanation #2"

    def test_provider_error(self, client, provider):
        provider.chat_status = 503
        response = explain(client)
        assert response.status_code == 502
        assert "503" in response.json()["detail"]


class TestSpeakAPI:
    """Tests for pronunciation audio."""

    def test_audio_generated_and_stored(self, client, provider):
        entry_id = explain(client).json()["entryId"]

        first = client.post("/api/speak", json={"text": "photosynthesis", "entryId": entry_id}, headers=USER)
        assert first.status_code == 200
        assert first.content == b"ID3audio"
        assert first.headers["content-type"] == "audio/mpeg"

        second = client.post("/api/speak", json={"text": "photosynthesis", "entryId": entry_id}, headers=USER)
        assert second.content == b"ID3audio"
        assert provider.speech_calls == 1

    def test_browser_fallback(self, client, provider):
        provider.speech_status = 404
        response = client.post("/api/speak", json={"text": "photosynthesis"}, headers=USER)
        assert response.status_code == 200
        assert response.json()["useBrowserTTS"] is True
        assert response.json()["text"] == "photosynthesis"
        assert response.json()["success"] is False
        assert "404" in response.json()["error"]

    def test_missing_text(self, client):
        response = client.post("/api/speak", json={}, headers=USER)
        assert response.status_code == 400


class TestVocabularyAPI:
    """Tests for browsing cached explanations."""

    def test_list_and_search(self, client):
        explain(client)
        explain(client, text="chlorophyll", context="Chlorophyll is green.")
        explain(client, text="osmosis", context="Water moves by osmosis.", bookId="book2")

        all_entries = client.get("/api/vocabulary", headers=USER).json()["entries"]
        assert len(all_entries) == 3

        book1 = client.get("/api/vocabulary?book_id=book1", headers=USER).json()["entries"]
        assert {e["text"] for e in book1} == {"photosynthesis", "chlorophyll"}

        results = client.get("/api/vocabulary/search?q=CHLORO", headers=USER).json()["results"]
        assert [e["text"] for e in results] == ["chlorophyll"]

    def test_short_query(self, client):
        explain(client)
        assert client.get("/api/vocabulary/search?q=p", headers=USER).json()["results"] == []

    def test_entries_are_per_user(self, client):
        explain(client)
        response = client.get("/api/vocabulary", headers={"X-User-Id": "u2"})
        assert response.json()["entries"] == []

    def test_get_and_delete_entry(self, client):
        entry_id = explain(client).json()["entryId"]
        entry = client.get(f"/api/vocabulary/{entry_id}", headers=USER).json()
        assert entry["explanation"] == "photosynthesis explanation #1"
        assert entry["access_count"] == 1

        assert client.delete(f"/api/vocabulary/{entry_id}", headers=USER).json()["status"] == "deleted"
        assert client.get(f"/api/vocabulary/{entry_id}", headers=USER).status_code == 404
        assert client.delete(f"/api/vocabulary/{entry_id}", headers=USER).status_code == 404

    def test_bulk_delete(self, client):
        ids = [
            explain(client).json()["entryId"],
            explain(client, text="osmosis", context="Water moves by osmosis.").json()["entryId"],
        ]
        response = client.post("/api/vocabulary/delete", json={"ids": ids + ["missing"]}, headers=USER)
        assert response.json()["deleted"] == 2
        assert client.get("/api/vocabulary", headers=USER).json()["entries"] == []

    def test_bulk_delete_requires_list(self, client):
        response = client.post("/api/vocabulary/delete", json={"ids": "abc"}, headers=USER)
        assert response.status_code == 400


class TestReadingProgressAPI:
    """Tests for reading progress API endpoints."""

    def test_get_progress_nonexistent_book(self, client):
        """Test getting progress for a book with no saved progress."""
        data = client.get("/api/progress/nope", headers=USER).json()
        assert data["location"] == "spine:0"
        assert data["font_size"] == 100
        assert data["theme"] == "light"

    def test_save_and_get_progress(self, client):
        """Test saving and retrieving reading progress."""
        response = client.post("/api/progress/book1", json={
            "location": "spine:3:page:2",
            "chapter_label": "Chapter 3",
            "progress_percent": 40,
            "font_size": 150,
            "theme": "dark",
        }, headers=USER)
        assert response.json()["status"] == "saved"

        data = client.get("/api/progress/book1", headers=USER).json()
        assert data["location"] == "spine:3:page:2"
        assert data["chapter_label"] == "Chapter 3"
        assert (data["font_size"], data["theme"]) == (150, "dark")

    def test_settings_only_update(self, client):
        client.post("/api/progress/book1", json={"location": "spine:3:page:2"}, headers=USER)
        response = client.put("/api/progress/book1/settings", json={"font_size": 80, "theme": "dark"}, headers=USER)
        assert response.status_code == 200

        data = client.get("/api/progress/book1", headers=USER).json()
        assert data["location"] == "spine:3:page:2"
        assert data["font_size"] == 80

    def test_legacy_location_accepted(self, client):
        cfi = "epubcfi(/6/8!/4/2/1:0)"
        client.post("/api/progress/book1", json={"location": cfi}, headers=USER)
        assert client.get("/api/progress/book1", headers=USER).json()["location"] == cfi

    def test_malformed_location(self, client):
        response = client.post("/api/progress/book1", json={"location": "spine:x"}, headers=USER)
        assert response.status_code == 400

    def test_invalid_settings(self, client):
        response = client.put("/api/progress/book1/settings", json={"font_size": 500}, headers=USER)
        assert response.status_code == 400
        response = client.put("/api/progress/book1/settings", json={"theme": "sepia"}, headers=USER)
        assert response.status_code == 400

    def test_delete_progress(self, client):
        client.post("/api/progress/book1", json={"location": "spine:2"}, headers=USER)
        client.post("/api/bookmarks/book1", json={"location": "spine:2"}, headers=USER)
        client.post("/api/annotations/book1", json={"cfi_range": "spine:2", "selected_text": "word"}, headers=USER)
        assert client.delete("/api/progress/book1", headers=USER).status_code == 200
        assert client.get("/api/progress/book1", headers=USER).json()["location"] == "spine:0"
        assert client.get("/api/bookmarks/book1", headers=USER).json()["bookmarks"] == []
        assert client.get("/api/annotations/book1", headers=USER).json()["annotations"] == []


class TestBookmarksAPI:
    """Tests for bookmarks API endpoints."""

    def test_get_bookmarks_empty(self, client):
        """Test getting bookmarks for a book with none."""
        data = client.get("/api/bookmarks/book1", headers=USER).json()
        assert data["bookmarks"] == []

    def test_add_and_delete_bookmark(self, client):
        response = client.post("/api/bookmarks/book1", json={
            "location": "spine:1:page:4", "chapter_label": "One", "note": "Good bit",
        }, headers=USER)
        bookmark_id = response.json()["id"]

        bookmarks = client.get("/api/bookmarks/book1", headers=USER).json()["bookmarks"]
        assert bookmarks[0]["location"] == "spine:1:page:4"
        assert bookmarks[0]["note"] == "Good bit"

        assert client.delete(f"/api/bookmarks/book1/{bookmark_id}", headers=USER).status_code == 200
        assert client.delete(f"/api/bookmarks/book1/{bookmark_id}", headers=USER).status_code == 404

    def test_bookmark_current_page(self, client):
        """Test that a bookmark without a location uses the open reader's page."""
        open_book(client)
        client.post("/api/reader/book1/chapter/1", headers=USER)
        client.post("/api/reader/book1/next", headers=USER)

        client.post("/api/bookmarks/book1", json={}, headers=USER)

        bookmark = client.get("/api/bookmarks/book1", headers=USER).json()["bookmarks"][0]
        assert bookmark["location"] == "spine:1:page:2"
        assert bookmark["chapter_label"] == "More"

    def test_bookmark_needs_location(self, client):
        response = client.post("/api/bookmarks/book1", json={}, headers=USER)
        assert response.status_code == 400

    def test_update_bookmark_note(self, client):
        bookmark_id = client.post("/api/bookmarks/book1", json={"location": "spine:1"}, headers=USER).json()["id"]

        response = client.put(f"/api/bookmarks/book1/{bookmark_id}", json={"note": "Come back here"}, headers=USER)
        assert response.json()["status"] == "updated"
        assert client.get("/api/bookmarks/book1", headers=USER).json()["bookmarks"][0]["note"] == "Come back here"

        response = client.put("/api/bookmarks/book1/missing", json={"note": "x"}, headers=USER)
        assert response.status_code == 404


class TestAnnotationsAPI:
    """Tests for annotations API endpoints."""

    def test_add_and_get(self, client):
        response = client.post("/api/annotations/book1", json={
            "cfi_range": "epubcfi(/6/4!/4/2,/1:0,/1:12)",
            "selected_text": "ephemeral joy",
            "note": "Look this up",
        }, headers=USER)
        assert response.json()["status"] == "created"

        [annotation] = client.get("/api/annotations/book1", headers=USER).json()["annotations"]
        assert annotation["id"] == response.json()["id"]
        assert annotation["selected_text"] == "ephemeral joy"
        assert annotation["note"] == "Look this up"
        assert annotation["color"] == "yellow"

    def test_annotations_are_per_user(self, client):
        client.post("/api/annotations/book1", json={"cfi_range": "r", "selected_text": "t"}, headers=USER)
        response = client.get("/api/annotations/book1", headers={"X-User-Id": "u2"})
        assert response.json()["annotations"] == []

    def test_missing_fields(self, client):
        response = client.post("/api/annotations/book1", json={"cfi_range": "r"}, headers=USER)
        assert response.status_code == 400

    def test_unknown_color(self, client):
        response = client.post("/api/annotations/book1", json={
            "cfi_range": "r", "selected_text": "t", "color": "orange",
        }, headers=USER)
        assert response.status_code == 400

    def test_update_and_delete(self, client):
        annotation_id = client.post("/api/annotations/book1", json={
            "cfi_range": "r", "selected_text": "t", "note": "first",
        }, headers=USER).json()["id"]

        response = client.put(f"/api/annotations/book1/{annotation_id}", json={"color": "blue"}, headers=USER)
        assert response.json()["status"] == "updated"
        annotation = client.get("/api/annotations/book1", headers=USER).json()["annotations"][0]
        assert (annotation["note"], annotation["color"]) == ("first", "blue")

        bad = client.put(f"/api/annotations/book1/{annotation_id}", json={"color": "orange"}, headers=USER)
        assert bad.status_code == 400

        assert client.delete(f"/api/annotations/book1/{annotation_id}", headers=USER).status_code == 200
        assert client.delete(f"/api/annotations/book1/{annotation_id}", headers=USER).status_code == 404
        missing = client.put(f"/api/annotations/book1/{annotation_id}", json={"note": "x"}, headers=USER)
        assert missing.status_code == 404


class TestReaderAPI:
    """Tests for reader sessions."""

    def test_open_shows_first_page(self, client):
        data = open_book(client).json()
        assert data["location"]["spine_index"] == 0
        assert data["location"]["chapter_label"] == "Plants"
        assert data["text"].startswith("Plants use photosynthesis")

    def test_open_resumes(self, client):
        client.post("/api/progress/book1", json={"location": "spine:1:page:2", "font_size": 120}, headers=USER)
        data = open_book(client).json()
        assert (data["location"]["spine_index"], data["location"]["page"]) == (1, 2)
        assert data["settings"]["font_size"] == 120

    def test_open_requires_content(self, client):
        response = client.post("/api/reader/book1/open", json={}, headers=USER)
        assert response.status_code == 400

    def test_open_missing_book_file(self, client):
        response = client.post("/api/reader/book1/open", json={"bookFile": "../../etc/passwd"}, headers=USER)
        assert response.status_code == 404

    def test_two_clicks_select(self, client):
        open_book(client)
        first = tap(client, 0, 8).json()
        assert first["waiting_for_end"] is True
        assert first["selection"] is None

        second = tap(client, 0, 27).json()
        assert second["waiting_for_end"] is False
        assert second["selection"]["text"] == "use photosynthesis to"
        assert second["panel"]["text"] == "use photosynthesis to"

    def test_click_needs_coordinates(self, client):
        open_book(client)
        response = client.post("/api/reader/book1/click", json={"x": 1}, headers=USER)
        assert response.status_code == 400

    def test_explain_selection(self, client, provider):
        open_book(client)
        tap(client, 0, 13)
        tap(client, 0, 13)

        data = client.post("/api/reader/book1/explain", json={}, headers=USER).json()
        assert data["panel"]["explanation"] == "photosynthesis explanation #1"
        assert data["panel"]["from_cache"] is False

        data = client.post("/api/reader/book1/explain", json={}, headers=USER).json()
        assert data["panel"]["from_cache"] is True
        assert provider.chat_calls == 1

    def test_explain_error_shown_in_panel(self, client, provider):
        provider.chat_status = 500
        open_book(client)
        tap(client, 0, 13)
        tap(client, 0, 13)
        data = client.post("/api/reader/book1/explain", json={}, headers=USER).json()
        assert "500" in data["panel"]["error"]

    def test_explain_without_selection(self, client):
        open_book(client)
        response = client.post("/api/reader/book1/explain", json={}, headers=USER)
        assert response.status_code == 400

    def test_navigation(self, client):
        open_book(client)
        data = client.post("/api/reader/book1/next", headers=USER).json()
        assert data["moved"] is True
        assert data["location"]["spine_index"] == 1
        data = client.post("/api/reader/book1/prev", headers=USER).json()
        assert data["location"]["spine_index"] == 0
        data = client.post("/api/reader/book1/prev", headers=USER).json()
        assert data["moved"] is False

        progress = client.get("/api/progress/book1", headers=USER).json()
        assert progress["location"] == "spine:0:page:1"

    def test_chapter_out_of_range(self, client):
        open_book(client)
        response = client.post("/api/reader/book1/chapter/7", headers=USER)
        assert response.status_code == 400

    def test_settings(self, client):
        open_book(client)
        data = client.put("/api/reader/book1/settings", json={"theme": "dark"}, headers=USER).json()
        assert data["settings"] == {"font_size": 100, "theme": "dark"}
        assert client.get("/api/progress/book1", headers=USER).json()["theme"] == "dark"

    def test_unknown_session(self, client):
        assert client.post("/api/reader/book1/next", headers=USER).status_code == 404
        assert client.get("/api/reader/book1", headers=USER).status_code == 404

    def test_close(self, client):
        open_book(client)
        assert client.delete("/api/reader/book1", headers=USER).json()["status"] == "closed"
        assert client.delete("/api/reader/book1", headers=USER).status_code == 404


class TestAISettingsAPI:
    """Tests for the AI settings endpoints."""

    def test_get_settings(self, client):
        data = client.get("/api/ai/settings").json()
        assert data["model"] == "test-model"
        assert data["provider"] == "lm_studio"

    def test_update_settings(self, client):
        data = client.put("/api/ai/settings", json={"provider": "ollama", "model": "llama3"}).json()
        assert data["provider"] == "ollama"
        assert data["server_url"] == "http://localhost:11434"
        assert data["model"] == "llama3"

    def test_unknown_provider(self, client):
        response = client.put("/api/ai/settings", json={"provider": "skynet"})
        assert response.status_code == 400
