"""Localization recipes and the instructions they produce.

A recipe is a closed set of modes.  Each mode owns one function that appends
its extra rules to the base translation instruction.
"""
from __future__ import annotations

import enum
from typing import Callable, Dict, Sequence


class Recipe(str, enum.Enum):
    TRANSLATION = "translation"
    REWRITE = "rewrite"
    COMPRESS = "compress"
    COMPLIANCE = "compliance"


RECIPE_LABELS: Dict[Recipe, str] = {
    Recipe.TRANSLATION: "Direct Translation",
    Recipe.REWRITE: "Rewrite",
    Recipe.COMPRESS: "Compress",
    Recipe.COMPLIANCE: "Compliance",
}


def _base_instruction(language: str) -> str:
    return (
        f"Translate the following marketing copy texts into {language}. "
        "Maintain the tone (punchy, marketing-oriented) and keep the meaning faithful."
        "\nRules:"
        "\n- Preserve brand/product names, person names, legal terms, model numbers/SKUs, "
        "URLs, email addresses, @handles, hashtags, and emojis exactly as in the source."
        "\n- Preserve numbers, currency, units, dates, and measurements; only adapt "
        f"separators if standard in {language}."
        "\n- Do not add new claims or information that is not in the source."
        "\n- Keep emphasis (ALL CAPS) and punctuation when meaningful."
        f"\n- If the text is already in {language}, return it unchanged."
    )


def _translation_rules(language: str) -> str:
    return ""


def _rewrite_rules(language: str) -> str:
    return (
        " You may rewrite for cultural fit, but keep the same intent, offers, prices, "
        "and calls-to-action; do not change brand terms."
    )


def _compress_rules(language: str) -> str:
    return (
        " CRITICAL: Make it shorter to fit tight visual space while keeping key meaning, "
        "CTAs, and numbers. Target <= 75% of the original length when possible."
    )


def _compliance_rules(language: str) -> str:
    return (
        " Use conservative, compliant wording; avoid absolute or unverifiable claims "
        "unless present in the source."
    )


_RECIPE_RULES: Dict[Recipe, Callable[[str], str]] = {
    Recipe.TRANSLATION: _translation_rules,
    Recipe.REWRITE: _rewrite_rules,
    Recipe.COMPRESS: _compress_rules,
    Recipe.COMPLIANCE: _compliance_rules,
}


def translation_instruction(language: str, recipe: Recipe) -> str:
    return _base_instruction(language) + _RECIPE_RULES[Recipe(recipe)](language)


def render_instruction(language: str, lines: Sequence[str]) -> str:
    """Instruction for the image edit model: place ``lines`` in order, keep the style."""

    numbered = "\n".join(f"{index}. {line}" for index, line in enumerate(lines, start=1))
    return (
        f"Task: Replace only the visible text in the image with the provided {language} copy.\n"
        "Rules:\n"
        "- Keep all non-text elements unchanged (background, graphics, logos, photos, colors).\n"
        "- Preserve layout, alignment, font style, and text size as closely as possible.\n"
        "- Match the original font family, weight, casing, kerning, and visual treatment "
        "(outline, shadow, texture, gradient).\n"
        "- Keep the overall visual style and typography tone consistent with the original image.\n"
        "- Do not add or remove text beyond the provided lines.\n"
        "- Keep numbers, currencies, units, URLs, and brand names exactly as given.\n"
        f"Text lines to place (in order):\n{numbered}"
    )
