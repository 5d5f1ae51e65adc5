"""Translation service client used by the translate stage."""
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import httpx

from shared.errors import ExternalServiceError
from shared.recipes import Recipe, translation_instruction

DEFAULT_PROVIDER = "stub"
SYSTEM_PROMPT = "Return only valid JSON with id and translatedText fields."


class TranslationError(ExternalServiceError):
    """Raised when the translation provider cannot be reached or refuses a request."""


class ConfigurationError(TranslationError):
    """Raised when a provider is selected but is not properly configured."""


@dataclass(frozen=True)
class TranslationItem:
    id: str
    source_text: str


def parse_translation_payload(raw_text: str) -> List[Any]:
    """Decode a JSON array from a model reply, tolerating text around it."""

    cleaned = (raw_text or "").strip()

    def try_parse(value: str) -> Optional[List[Any]]:
        try:
            parsed = json.loads(value)
        except ValueError:
            return None
        return parsed if isinstance(parsed, list) else None

    direct = try_parse(cleaned)
    if direct is not None:
        return direct
    start = cleaned.find("[")
    end = cleaned.rfind("]")
    if start >= 0 and end > start:
        return try_parse(cleaned[start : end + 1]) or []
    return []


def merge_translations(items: Sequence[TranslationItem], payload: Sequence[Any]) -> Dict[str, str]:
    """Map every input id to its translation, using the source text for gaps.

    Unknown ids in ``payload`` are dropped and empty translations count as
    missing, so the result always has exactly the input id set.
    """

    translated: Dict[str, str] = {}
    for entry in payload:
        if not isinstance(entry, dict):
            continue
        entry_id = entry.get("id")
        text = entry.get("translatedText", entry.get("translated_text"))
        if entry_id is None or not isinstance(text, str) or not text.strip():
            continue
        translated[str(entry_id)] = text
    return {item.id: translated.get(item.id, item.source_text) for item in items}


def completion_content(data: Any) -> str:
    """Return the first choice's message text, or ``""`` for any other reply shape."""

    if not isinstance(data, dict):
        return ""
    choices = data.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return ""
    message = choices[0].get("message")
    if not isinstance(message, dict):
        return ""
    content = message.get("content")
    return content if isinstance(content, str) else ""


class TranslationClient:
    """Client responsible for requesting translations from the configured provider."""

    def __init__(
        self,
        provider: str,
        *,
        model: str = "gpt-4.1-mini",
        api_key: Optional[str] = None,
        base_url: str = "https://api.openai.com/v1",
        timeout_seconds: float = 120.0,
    ) -> None:
        self.provider = (provider or DEFAULT_PROVIDER).lower()
        self.model = model
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._client: Optional[httpx.Client] = None

    @property
    def client(self) -> httpx.Client:
        if not self._client:
            self._client = httpx.Client(timeout=httpx.Timeout(self.timeout_seconds, connect=10.0))
        return self._client

    def close(self) -> None:
        if self._client:
            self._client.close()
            self._client = None

    def translate(
        self,
        items: Sequence[TranslationItem],
        language_name: str,
        recipe: Recipe,
    ) -> Dict[str, str]:
        """Translate ``items`` into ``language_name`` following ``recipe``."""

        if not items:
            return {}
        if self.provider == "openai":
            payload = self._translate_openai(items, language_name, recipe)
        else:
            payload = self._translate_stub(items)
        return merge_translations(items, payload)

    def _translate_stub(self, items: Sequence[TranslationItem]) -> List[Dict[str, str]]:
        """Echo the source text so local runs work without a provider."""

        return [{"id": item.id, "translatedText": item.source_text} for item in items]

    def _translate_openai(
        self,
        items: Sequence[TranslationItem],
        language_name: str,
        recipe: Recipe,
    ) -> List[Any]:
        if not self.api_key:
            raise ConfigurationError("Translation API key is not configured")
        instruction = translation_instruction(language_name, recipe)
        source = json.dumps(
            [{"id": item.id, "text": item.source_text} for item in items],
            ensure_ascii=False,
        )
        prompt = (
            f"{instruction}\n\nReturn a JSON array of objects with \"id\" and "
            "\"translatedText\" only. Keep the same number of items as input, preserve "
            "each id, and keep the output order. If a translation is unclear, copy the "
            f"source text.\n\nInput: {source}"
        )
        try:
            response = self.client.post(
                f"{self.base_url}/chat/completions",
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                json={
                    "model": self.model,
                    "messages": [
                        {"role": "system", "content": SYSTEM_PROMPT},
                        {"role": "user", "content": prompt},
                    ],
                },
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise TranslationError(f"Translation request failed: {exc}") from exc
        return parse_translation_payload(completion_content(data))
