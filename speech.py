"""
Text-to-speech for selected words.

Speech is synthesized by the configured provider through its
OpenAI-compatible `/audio/speech` endpoint. When the provider cannot produce
audio the caller gets a fallback result telling the client to use its own
(browser) speech synthesis instead.
"""

import logging
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "audio/mpeg"
MAX_SPEECH_CHARS = 500


def browser_fallback(text: str, error: Optional[str] = None) -> dict:
    result = {"success": False, "text": text, "useBrowserTTS": True}
    if error:
        result["error"] = error
    return result


async def generate_speech(
        text: str,
        server_url: str,
        model: str = "tts-1",
        voice: str = "alloy",
        transport: Optional[httpx.AsyncBaseTransport] = None,
) -> dict:
    """
    Generate speech for a word or short phrase.

    Returns:
        dict with 'success', 'audio_data' (bytes) and 'mime_type', or the
        browser fallback with 'useBrowserTTS' and 'error'.
    """
    payload = {
        "model": model,
        "input": text[:MAX_SPEECH_CHARS],
        "voice": voice,
        "response_format": "mp3",
    }

    try:
        async with httpx.AsyncClient(timeout=60.0, transport=transport) as client:
            response = await client.post(f"{server_url}/audio/speech", json=payload)
    except httpx.ConnectError:
        return browser_fallback(text, f"Cannot connect to {server_url}. Is it running?")
    except httpx.HTTPError as e:
        return browser_fallback(text, str(e))

    if response.status_code != 200:
        logger.warning("Speech provider returned %s", response.status_code)
        return browser_fallback(text, f"Speech API error: {response.status_code}")

    mime_type = response.headers.get("content-type", DEFAULT_MIME_TYPE).split(";")[0]
    if not response.content or not mime_type.startswith("audio/"):
        return browser_fallback(text, "No audio generated")

    return {
        "success": True,
        "audio_data": response.content,
        "mime_type": mime_type,
    }
