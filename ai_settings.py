"""
AI settings management for Zenith Reader.
Handles AI provider configuration (LM Studio, Ollama) and word explanations.
"""

import httpx
import json
import logging
import os
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import List, Dict, Optional

logger = logging.getLogger(__name__)

EXPLAIN_SYSTEM_PROMPT = """You are a language teaching expert specializing in the "i+1" (Comprehensible Input) method.
Your task is to explain the target word or phrase to a learner using SIMPLE English.

Rules:
1. Analyze the target word's meaning based on the provided **Context**.
2. Definition must be in simple, easy-to-understand English (CEFR A2/B1 level).
3. Generate 3 example sentences. The first example should be relevant to the context/theme if possible.
4. STRICTLY follow this output format:

[Target Word] means [Simple Definition].

Examples:

[Example Sentence 1]

[Example Sentence 2]

[Example Sentence 3]"""


class AIProvider(str, Enum):
    """Supported AI providers."""
    LM_STUDIO = "lm_studio"
    OLLAMA = "ollama"


class ExplanationError(Exception):
    """The AI provider failed or returned nothing usable."""


@dataclass
class AISettings:
    """AI provider configuration."""
    provider: str = AIProvider.LM_STUDIO.value
    server_url: str = "http://localhost:1234/v1"
    model: str = ""
    enabled: bool = True
    temperature: float = 0.7
    max_tokens: int = 1024
    system_prompt: str = EXPLAIN_SYSTEM_PROMPT
    tts_model: str = "tts-1"
    tts_voice: str = "alloy"
    updated_at: str = field(default_factory=lambda: datetime.now().isoformat())


def build_explain_prompt(text: str, context: str) -> str:
    return f'Context: "{context}"\n\nTarget Word: "{text}"'


class AISettingsManager:
    """Manages AI settings and talks to the configured provider."""

    def __init__(self, data_dir: str, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.data_dir = data_dir
        self.settings_file = os.path.join(data_dir, "ai_settings.json")
        self.settings: AISettings = AISettings()
        self.transport = transport
        self.load()

    def _ensure_dir(self):
        """Ensure data directory exists."""
        if not os.path.exists(self.data_dir):
            os.makedirs(self.data_dir, exist_ok=True)

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self.transport)

    def load(self):
        """Load AI settings from file."""
        if os.path.exists(self.settings_file):
            try:
                with open(self.settings_file, 'r', encoding='utf-8') as f:
                    data = json.load(f)
                if 'settings' in data:
                    self.settings = AISettings(**data['settings'])
            except (OSError, ValueError, TypeError) as e:
                logger.error("Error loading AI settings: %s", e)
                self.settings = AISettings()

    def save(self):
        """Save AI settings to file."""
        try:
            self._ensure_dir()
            with open(self.settings_file, 'w', encoding='utf-8') as f:
                json.dump({'settings': asdict(self.settings)}, f, indent=2, ensure_ascii=False)
        except OSError as e:
            logger.error("Error saving AI settings: %s", e)

    def get_settings(self) -> AISettings:
        """Get current AI settings."""
        return self.settings

    def update_settings(self, **kwargs) -> AISettings:
        """Update AI settings."""
        for key, value in kwargs.items():
            if hasattr(self.settings, key) and key != 'updated_at':
                setattr(self.settings, key, value)
        if 'provider' in kwargs and 'server_url' not in kwargs:
            self.settings.server_url = self.get_default_url(self.settings.provider)
        self.settings.updated_at = datetime.now().isoformat()
        self.save()
        return self.settings

    def get_default_url(self, provider: str) -> str:
        """Get default server URL for a provider."""
        if provider == AIProvider.LM_STUDIO.value:
            return "http://localhost:1234/v1"
        elif provider == AIProvider.OLLAMA.value:
            return "http://localhost:11434"
        return "http://localhost:1234/v1"

    async def explain(self, text: str, context: str) -> str:
        """
        Ask the provider to explain `text` as used in `context`.

        Raises ExplanationError when AI is disabled, the provider cannot be
        reached, answers with a non-2xx status or returns empty text.
        """
        if not self.settings.enabled:
            raise ExplanationError("AI explanations are disabled")
        if not self.settings.model:
            raise ExplanationError("No model selected")

        messages: List[Dict[str, str]] = [
            {"role": "system", "content": self.settings.system_prompt},
            {"role": "user", "content": build_explain_prompt(text, context)},
        ]

        try:
            async with self._client(timeout=60.0) as client:
                if self.settings.provider == AIProvider.OLLAMA.value:
                    response = await client.post(
                        f"{self.settings.server_url}/api/chat",
                        json={
                            "model": self.settings.model,
                            "messages": messages,
                            "stream": False,
                            "options": {
                                "temperature": self.settings.temperature,
                                "num_predict": self.settings.max_tokens
                            }
                        }
                    )
                else:
                    # LM Studio uses OpenAI-compatible API
                    response = await client.post(
                        f"{self.settings.server_url}/chat/completions",
                        json={
                            "model": self.settings.model,
                            "messages": messages,
                            "temperature": self.settings.temperature,
                            "max_tokens": self.settings.max_tokens,
                            "stream": False
                        }
                    )
        except httpx.ConnectError as e:
            raise ExplanationError(f"Cannot connect to {self.settings.server_url}") from e
        except httpx.HTTPError as e:
            raise ExplanationError(f"Request to AI provider failed: {e}") from e

        if not response.is_success:
            raise ExplanationError(f"API error: {response.status_code}")

        try:
            data = response.json()
            if self.settings.provider == AIProvider.OLLAMA.value:
                content = data.get('message', {}).get('content', '')
            else:
                content = data['choices'][0]['message']['content']
        except (ValueError, KeyError, IndexError, TypeError, AttributeError) as e:
            raise ExplanationError(f"Unexpected response from AI provider: {e}") from e

        if not content or not content.strip():
            raise ExplanationError("AI provider returned an empty explanation")

        logger.info("Generated explanation for %r", text)
        return content.strip()
