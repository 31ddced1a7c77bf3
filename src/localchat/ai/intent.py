"""Keyword heuristic deciding whether a chat message asks for an image.

False negatives fall through to text completion; false positives go to the
renderer with a possibly odd prompt. Tune the pattern lists, not the callers.
"""

from __future__ import annotations

import re

_EN_VERBS = r"generate|create|make|draw|produce|render|design|paint|sketch"
_EN_NOUNS = r"image|picture|photo|illustration|artwork|drawing|painting|visual|wallpaper"
_PT_VERBS = r"gere|gerar|crie|criar|faça|fazer|desenhe|desenhar|produza|renderize"
_PT_NOUNS = r"imagem|foto|ilustração|desenho|pintura"
_ES_VERBS = r"genera|generar|crea|crear|haz|dibuja|dibujar|produce"
_ES_NOUNS = r"imagen|foto|ilustración|dibujo|pintura"

IMAGE_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        # English
        rf"\b({_EN_VERBS})\b.*\b({_EN_NOUNS})s?\b",
        rf"\b(draw|paint|sketch)\b\s+(me\s+)?(a|an|the|some)\b",
        rf"\b(show me|give me|i want|i need|can you make|can you create|can you draw|can you generate)\b.*\b({_EN_NOUNS})s?\b",
        r"\b(visualize|illustrate)\b",
        # Portuguese
        rf"\b({_PT_VERBS})\b.*\b({_PT_NOUNS})\b",
        rf"\b(me mostre|me dê|eu quero|eu preciso|pode criar|pode fazer|pode desenhar|pode gerar)\b.*\b({_PT_NOUNS})\b",
        r"\bilustre\b",
        # Spanish
        rf"\b({_ES_VERBS})\b.*\b({_ES_NOUNS})\b",
    )
)


def is_image_generation_request(text: str) -> bool:
    """Return True when ``text`` reads like a request to generate an image. Pure."""
    return any(pattern.search(text) for pattern in IMAGE_PATTERNS)
