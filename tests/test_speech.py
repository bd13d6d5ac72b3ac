"""Tests for the speech module."""

import asyncio
import json

import httpx

from speech import MAX_SPEECH_CHARS, browser_fallback, generate_speech


def speak(handler, text="ephemeral"):
    return asyncio.run(generate_speech(
        text, "http://localhost:1234/v1", transport=httpx.MockTransport(handler)
    ))


class TestGenerateSpeech:
    """Tests for provider-backed speech."""

    def test_success(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, content=b"ID3...", headers={"content-type": "audio/mpeg"})

        result = speak(handler)
        assert result == {"success": True, "audio_data": b"ID3...", "mime_type": "audio/mpeg"}
        assert seen["url"] == "http://localhost:1234/v1/audio/speech"
        assert seen["body"]["input"] == "ephemeral"
        assert seen["body"]["voice"] == "alloy"

    def test_long_text_truncated(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, content=b"x", headers={"content-type": "audio/wav"})

        speak(handler, text="a" * 2000)
        assert len(seen["body"]["input"]) == MAX_SPEECH_CHARS

    def test_error_status_falls_back(self):
        result = speak(lambda request: httpx.Response(404))
        assert result["success"] is False
        assert result["useBrowserTTS"] is True
        assert result["text"] == "ephemeral"
        assert "404" in result["error"]

    def test_non_audio_response_falls_back(self):
        result = speak(lambda request: httpx.Response(200, json={"error": "no tts model"}))
        assert result["useBrowserTTS"] is True

    def test_unreachable_server_falls_back(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        result = speak(handler)
        assert result["useBrowserTTS"] is True
        assert "Cannot connect" in result["error"]


class TestBrowserFallback:
    """Tests for the fallback payload."""

    def test_without_error(self):
        assert browser_fallback("word") == {"success": False, "text": "word", "useBrowserTTS": True}

    def test_with_error(self):
        assert browser_fallback("word", "boom")["error"] == "boom"
