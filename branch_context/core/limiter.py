"""Context limiter: fit session history into a token budget."""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
from typing import Any, TypeVar

from ..types import (
    Content,
    ContextManagement,
    TokenCalculator,
    content_text,
    content_to_json,
)

logger = logging.getLogger(__name__)

TRUNCATED_SUFFIX = "...[已截断]"
TRUNCATED_APPEND = "[已截断]"
TRUNCATED_PLACEHOLDER = "[消息已截断]"

M = TypeVar("M")


def truncate_text(text: str, retained_characters: int) -> str:
    """Apply the truncation marker rules to one text."""
    if retained_characters <= 0:
        return TRUNCATED_PLACEHOLDER
    if len(text) > retained_characters:
        return text[:retained_characters] + TRUNCATED_SUFFIX
    return text + TRUNCATED_APPEND


def truncate_content(content: Content, retained_characters: int) -> Content:
    """Truncate string content, or the text parts of multimodal content."""
    if isinstance(content, str):
        return truncate_text(content, retained_characters)
    return [
        dataclasses.replace(part, text=truncate_text(part.text, retained_characters))
        if part.type == "text" and part.text
        else part
        for part in content
    ]


def _preset_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    return json.dumps(content_to_json(content), ensure_ascii=False)


async def _count(
    calculator: TokenCalculator, text: str, model_id: str, label: str, index: int,
) -> int:
    try:
        result = await calculator.calculate_tokens(text, model_id)
        return result.count
    except Exception as e:
        logger.warning("Token count failed for %s #%d, counted as 0: %s", label, index, e)
        return 0


async def count_message_tokens(
    messages: list[Any], model_id: str, calculator: TokenCalculator,
) -> list[int]:
    """Text-only token count of each message, issued concurrently."""
    return list(await asyncio.gather(*(
        _count(calculator, content_text(m.content), model_id, "message", i)
        for i, m in enumerate(messages)
    )))


async def apply_context_limit(
    history: list[M],
    preset_messages: list[Any],
    settings: ContextManagement,
    model_id: str,
    token_calculator: TokenCalculator,
    token_counts: list[int] | None = None,
) -> list[M]:
    """Keep the newest messages that fit the budget left after the presets.

    Walks newest to oldest; the first message that does not fit, and every
    message older than it, is truncated. Returns new message objects (the
    inputs are not mutated), or ``[]`` when the presets alone use up the
    budget. Messages must be dataclasses with ``role`` and ``content``.
    *token_counts*, when given, are reused instead of counting *history* again.
    """
    retained = max(0, settings.retained_characters)

    preset_counts = await asyncio.gather(*(
        _count(token_calculator, _preset_text(m.content), model_id, "preset", i)
        for i, m in enumerate(preset_messages)
    ))
    preset_tokens = sum(preset_counts)
    available = settings.max_context_tokens - preset_tokens

    logger.info(
        "Context limit: max=%d preset=%d available=%d history=%d",
        settings.max_context_tokens, preset_tokens, available, len(history),
    )
    if available <= 0:
        logger.warning(
            "Preset messages (%d tokens) exceed the context limit (%d); history dropped",
            preset_tokens, settings.max_context_tokens,
        )
        return []

    if token_counts is not None and len(token_counts) == len(history):
        counts = list(token_counts)
    else:
        counts = await count_message_tokens(history, model_id, token_calculator)

    used = 0
    keep_from = len(history)
    for i in range(len(history) - 1, -1, -1):
        if used + counts[i] > available:
            break
        used += counts[i]
        keep_from = i

    logger.info(
        "Context limit: kept %d, truncated %d, used %d/%d tokens",
        len(history) - keep_from, keep_from, used, available,
    )

    result: list[M] = []
    for i, msg in enumerate(history):
        if i >= keep_from:
            result.append(dataclasses.replace(msg))
            continue
        content = msg.content
        logger.debug(
            "Truncating message %d (%s, %s chars)",
            i, msg.role,
            len(content) if isinstance(content, str) else "multimodal",
        )
        result.append(dataclasses.replace(msg, content=truncate_content(content, retained)))
    return result
