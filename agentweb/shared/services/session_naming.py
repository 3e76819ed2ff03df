"""Session titles: an immediate fallback and a model-generated title."""
from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

FALLBACK_MAX_CHARS = 50
TITLE_TIMEOUT_SECONDS = 8.0
TITLE_MIN_CHARS = 2
TITLE_MAX_CHARS = 30

NAMING_PROMPT = (
    "Generate a short title (at most 6 words) for a chat that starts with "
    "the message below. Reply with the title only, no quotes or punctuation "
    "at the end.\n\nMessage: {message}"
)


def fallback_title(message: str) -> str:
    """First line-ish of the message, whitespace collapsed, max 50 chars."""
    text = " ".join((message or "").split())
    if not text:
        return "New Chat"
    if len(text) > FALLBACK_MAX_CHARS:
        return text[:FALLBACK_MAX_CHARS].rstrip() + "..."
    return text


def clean_generated_title(raw: str) -> str | None:
    """Normalize model output into a title, or None when unusable."""
    title = (raw or "").strip().splitlines()[0] if (raw or "").strip() else ""
    title = re.sub(r"^(title\s*:\s*)", "", title, flags=re.IGNORECASE)
    title = title.strip().strip("\"'`“”‘’").strip()
    title = re.sub(r"[.!?。！？,;:]+$", "", title).strip()
    if len(title) < TITLE_MIN_CHARS:
        return None
    if len(title) > TITLE_MAX_CHARS:
        title = title[:TITLE_MAX_CHARS].rstrip()
    return title


async def generate_title(
    message: str,
    complete: Callable[[str], Awaitable[str]],
    timeout: float = TITLE_TIMEOUT_SECONDS,
) -> str | None:
    """Ask the model for a title; None on timeout or failure."""
    prompt = NAMING_PROMPT.format(message=message[:1000])
    try:
        raw = await asyncio.wait_for(complete(prompt), timeout=timeout)
    except asyncio.TimeoutError:
        logger.info("generate_title: model did not answer within %.1fs", timeout)
        return None
    except Exception as exc:
        logger.warning("generate_title: model naming failed: %s", exc)
        return None
    return clean_generated_title(raw)
