"""Turn chat text (usually markdown) into a plain renderer prompt."""

from __future__ import annotations

import re

MAX_PROMPT_LENGTH = 300
MIN_PROMPT_LENGTH = 10
FALLBACK_PROMPT = "a beautiful, detailed illustration"

_MARKDOWN_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"```[\s\S]*?```"), ""),            # fenced code
    (re.compile(r"`[^`]*`"), ""),                    # inline code
    (re.compile(r"\*\*(.*?)\*\*"), r"\1"),           # bold
    (re.compile(r"\*(.*?)\*"), r"\1"),               # italic
    (re.compile(r"__(.*?)__"), r"\1"),
    (re.compile(r"#{1,6}\s*"), ""),                  # headings
    (re.compile(r">\s*"), ""),                       # blockquotes
    (re.compile(r"\[([^\]]*)\]\([^)]*\)"), r"\1"),   # links keep their text
    (re.compile(r"\s+"), " "),
)


def extract_prompt_from_chat_response(text: str) -> str:
    """Strip markdown, collapse whitespace, cap at 300 chars.

    Anything shorter than 10 characters after cleaning becomes FALLBACK_PROMPT.
    """
    prompt = text
    for pattern, replacement in _MARKDOWN_RULES:
        prompt = pattern.sub(replacement, prompt)
    prompt = prompt.strip()

    if len(prompt) > MAX_PROMPT_LENGTH:
        prompt = prompt[:MAX_PROMPT_LENGTH] + "..."
    if len(prompt) < MIN_PROMPT_LENGTH:
        prompt = FALLBACK_PROMPT
    return prompt
