"""Preset message classification and injection placement.

Preset messages fall into three groups:

- skeleton: no injection strategy, kept in authored order;
- depth injections: spliced into the history N messages from its end;
- anchor injections: placed before/after a named anchor (``chat_history``,
  ``user_profile``, ...) by the assembling pipeline stage.
"""

from __future__ import annotations

import dataclasses
import logging
import re
from collections import defaultdict

from ..types import (
    AnchorGroup,
    ClassifiedMessages,
    InjectionMessage,
    PresetMessage,
    ProcessableMessage,
)

logger = logging.getLogger(__name__)

DEFAULT_INJECTION_ORDER = 100

CHAT_HISTORY_ANCHOR = "chat_history"
USER_PROFILE_ANCHOR = "user_profile"

_LOOP_SEGMENT = re.compile(r"^(\d+)\s*[~:]\s*(\d+)$")
_RANGE_SEGMENT = re.compile(r"^(\d+)\s*-\s*(\d+)(?:\s*/\s*(\d+))?$")
_POINT_SEGMENT = re.compile(r"^\d+$")


def classify_preset_messages(messages: list[PresetMessage]) -> ClassifiedMessages:
    """Split preset messages into skeleton, depth and anchor injections.

    A depth (or depth config) wins over an anchor target when both are set.
    """
    result = ClassifiedMessages()
    for msg in messages:
        strategy = msg.injection_strategy
        if strategy is None:
            result.skeleton.append(msg)
            continue

        order = strategy.order if strategy.order is not None else DEFAULT_INJECTION_ORDER
        if strategy.depth is not None or strategy.depth_config:
            result.depth_injections.append(
                InjectionMessage(message=msg, strategy=dataclasses.replace(strategy, order=order))
            )
        elif strategy.anchor_target:
            result.anchor_injections.append(
                InjectionMessage(message=msg, strategy=dataclasses.replace(strategy, order=order))
            )
        else:
            result.skeleton.append(msg)

    logger.debug(
        "Classified presets: %d skeleton, %d depth, %d anchor",
        len(result.skeleton), len(result.depth_injections), len(result.anchor_injections),
    )
    return result


def parse_depth_config(config: str, history_length: int) -> list[int]:
    """Expand a depth expression into concrete depths.

    Comma-separated segments, each one of:

    - ``"5"``: a single depth;
    - ``"10~5"`` or ``"10:5"``: every 5 messages starting at depth 10;
    - ``"D2-10/2"``: depths 2..10 stepping by 2 (step defaults to 1).

    Depths beyond *history_length* are dropped, duplicates removed. Segments
    that do not parse are ignored.
    """
    depths: list[int] = []
    seen: set[int] = set()

    def add(depth: int) -> None:
        if depth <= history_length and depth not in seen:
            seen.add(depth)
            depths.append(depth)

    for raw in config.replace("，", ",").split(","):
        segment = raw.strip()
        if segment[:1] in ("D", "d"):
            segment = segment[1:].strip()
        if not segment:
            continue

        loop = _LOOP_SEGMENT.match(segment)
        if loop:
            start, interval = int(loop.group(1)), int(loop.group(2))
            if interval <= 0:
                add(start)
                continue
            depth = start
            while depth <= history_length:
                add(depth)
                depth += interval
            continue

        span = _RANGE_SEGMENT.match(segment)
        if span:
            start, end = int(span.group(1)), int(span.group(2))
            step = int(span.group(3)) if span.group(3) else 1
            if step <= 0:
                step = 1
            for depth in range(start, min(end, history_length) + 1, step):
                add(depth)
            continue

        if _POINT_SEGMENT.match(segment):
            add(int(segment))
            continue

        logger.debug("Ignoring unparseable depth segment %r in %r", segment, config)

    return depths


def _by_order(injections: list[InjectionMessage]) -> list[InjectionMessage]:
    return sorted(
        injections,
        key=lambda inj: inj.strategy.order if inj.strategy.order is not None else DEFAULT_INJECTION_ORDER,
    )


def preset_index(messages: list[PresetMessage] | None, msg: PresetMessage) -> int | None:
    if messages is None:
        return None
    for i, candidate in enumerate(messages):
        if candidate is msg:
            return i
    return None


def apply_depth_injections(
    history: list[ProcessableMessage],
    depth_injections: list[InjectionMessage],
    processed_contents: dict[str, str] | None = None,
    preset_messages: list[PresetMessage] | None = None,
) -> list[ProcessableMessage]:
    """Splice depth injections into a copy of *history*.

    Depth 0 appends after the newest message; depth N leaves N original
    messages after the injection. Within one depth, lower ``order`` comes
    first. Depths are inserted largest first against the growing result.
    """
    if not depth_injections:
        return list(history)

    processed_contents = processed_contents or {}
    history_length = len(history)
    groups: dict[int, list[InjectionMessage]] = defaultdict(list)

    for injection in depth_injections:
        strategy = injection.strategy
        if strategy.depth_config:
            depths = parse_depth_config(strategy.depth_config, history_length)
            if not depths:
                logger.debug(
                    "Depth config %r of %s yields no depth for %d message(s)",
                    strategy.depth_config, injection.message.name or injection.message.id,
                    history_length,
                )
            for depth in depths:
                groups[depth].append(injection)
        elif strategy.depth is not None:
            groups[strategy.depth].append(injection)

    result = list(history)
    for depth in sorted(groups, reverse=True):
        insert_at = max(0, len(result) - depth)
        injected = [
            ProcessableMessage(
                role=inj.message.role,
                content=processed_contents.get(inj.message.id, inj.message.content),
                source_type="depth_injection",
                source_id=inj.message.id,
                source_index=preset_index(preset_messages, inj.message),
            )
            for inj in _by_order(groups[depth])
        ]
        result[insert_at:insert_at] = injected

    logger.debug(
        "Depth injection: %d history -> %d messages (depths %s)",
        history_length, len(result), sorted(groups),
    )
    return result


def get_sorted_anchor_injections(anchor_injections: list[InjectionMessage]) -> list[InjectionMessage]:
    return _by_order(anchor_injections)


def get_anchor_injection_groups(anchor_injections: list[InjectionMessage]) -> dict[str, AnchorGroup]:
    """Bucket anchor injections by target, then by position (default ``after``).

    Bucket order follows input order; pass the output of
    :func:`get_sorted_anchor_injections`.
    """
    groups: dict[str, AnchorGroup] = {}
    for injection in anchor_injections:
        target = injection.strategy.anchor_target
        if not target:
            continue
        group = groups.setdefault(target, AnchorGroup())
        if injection.strategy.anchor_position == "before":
            group.before.append(injection)
        else:
            group.after.append(injection)
    return groups


def matches_model(message: PresetMessage, model_id: str) -> bool:
    """Whether *message* applies to *model_id* under its model-match patterns.

    The provider prefix (``profile:``) is dropped; each pattern is tried
    case-insensitively against the model id and against its last path segment.
    """
    match = message.model_match
    if match is None or not match.enabled or not match.patterns:
        return True

    model_part = model_id.split(":", 1)[1] if ":" in model_id else model_id
    if not model_part:
        return False
    bare_name = model_part.rsplit("/", 1)[-1]

    for pattern in match.patterns:
        try:
            compiled = re.compile(pattern, re.IGNORECASE)
        except re.error as e:
            logger.warning(
                "Invalid model-match pattern %r on preset %s: %s",
                pattern, message.name or message.id, e,
            )
            continue
        if compiled.search(model_part) or (bare_name and compiled.search(bare_name)):
            return True
    return False
