"""Stage labels and the language catalogue used by the localization pipeline."""
from __future__ import annotations

from typing import Dict, List

RUN_STAGES: List[str] = [
    "queued",
    "translating",
    "generating",
    "complete",
]

LANGUAGES: Dict[str, str] = {
    "en": "English",
    "zh-CN": "Chinese (Simplified)",
    "zh-TW": "Chinese (Traditional)",
    "ja": "Japanese",
    "ko": "Korean",
    "es": "Spanish",
    "fr": "French",
    "de": "German",
    "pt": "Portuguese",
    "ar": "Arabic",
}


def language_name(code: str) -> str:
    return LANGUAGES.get(code, code)
