"""Chat regex rules: collection, filtering, application, and import.

Rules come from up to three layered configs (global, agent, user profile).
Stage filtering is deterministic per config triple and memoised by
:class:`RuleSetCache`; role and depth filtering depend on each message's
position and are always computed fresh.
"""

from __future__ import annotations

import logging
import re
import uuid
from typing import Any, Callable

from ..types import (
    ApplyTo,
    ChatRegexConfig,
    ChatRegexPreset,
    ChatRegexRule,
    DepthRange,
    ROLES,
)

logger = logging.getLogger(__name__)

DEFAULT_FLAGS = "gm"
DEFAULT_PRESET_PRIORITY = 100
DEFAULT_RULE_ORDER = 0

_FLAG_MAP = {
    "i": re.IGNORECASE,
    "m": re.MULTILINE,
    "s": re.DOTALL,
}

# $$, $&, ${12}, $12
_TEMPLATE_TOKEN = re.compile(r"\$(\$|&|\{(\d+)\}|(\d{1,2}))")
_REGEX_LITERAL = re.compile(r"^/(.*)/([a-z]*)$", re.DOTALL)


# ---------------------------------------------------------------------------
# Collection & filtering
# ---------------------------------------------------------------------------

def resolve_raw_rules(stage: str, *configs: ChatRegexConfig | None) -> list[ChatRegexRule]:
    """Collect the enabled rules of every enabled preset that apply to *stage*.

    Presets are visited in ``order``; the flattened list is then stable-sorted
    by ``(preset priority, rule order)``.
    """
    collected: list[tuple[int, int, ChatRegexRule]] = []
    for config in configs:
        if config is None or not config.presets:
            continue
        presets = sorted(
            (p for p in config.presets if p.enabled),
            key=lambda p: p.order if p.order is not None else 0,
        )
        for preset in presets:
            priority = preset.priority if preset.priority is not None else DEFAULT_PRESET_PRIORITY
            for rule in preset.rules:
                if not rule.enabled or not rule.apply_to[stage]:
                    continue
                order = rule.order if rule.order is not None else DEFAULT_RULE_ORDER
                collected.append((priority, order, rule))

    collected.sort(key=lambda item: (item[0], item[1]))
    return [rule for _, _, rule in collected]


def filter_rules_by_role(rules: list[ChatRegexRule], role: str) -> list[ChatRegexRule]:
    return [r for r in rules if role in r.target_roles]


def filter_rules_by_depth(rules: list[ChatRegexRule], depth: int) -> list[ChatRegexRule]:
    """Keep rules whose depth range contains *depth* (0 = newest message)."""
    return [r for r in rules if r.depth_range is None or r.depth_range.contains(depth)]


def resolve_rules_for_message(
    stage: str,
    role: str,
    depth: int,
    *configs: ChatRegexConfig | None,
) -> list[ChatRegexRule]:
    rules = resolve_raw_rules(stage, *configs)
    return filter_rules_by_depth(filter_rules_by_role(rules, role), depth)


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------

def compile_rule(rule: ChatRegexRule) -> tuple[re.Pattern, bool]:
    """Compile a rule's pattern. Returns ``(pattern, replace_all)``.

    Accepts JS-style flags. A pattern written as a ``/body/flags`` literal
    supplies its flags when the rule sets none; the default is ``"gm"``.
    """
    source = rule.regex
    flags = rule.flags or None
    literal = _REGEX_LITERAL.match(source)
    if literal:
        source = literal.group(1)
        flags = flags or literal.group(2) or None
    if flags is None:
        flags = DEFAULT_FLAGS

    re_flags = 0
    for ch in flags:
        re_flags |= _FLAG_MAP.get(ch, 0)
    return re.compile(source, re_flags), "g" in flags


def expand_template(
    template: str, match: re.Match, groups: list[str | None] | None = None,
) -> str:
    """Expand a JS-style replacement template against *match*.

    *groups* overrides the captured group values (index 0 is group 1).
    Unknown group references are left in place.
    """
    values = groups if groups is not None else list(match.groups())

    def sub(token: re.Match) -> str:
        body = token.group(1)
        if body == "$":
            return "$"
        if body == "&":
            return match.group(0)
        index = int(token.group(2) or token.group(3))
        if 1 <= index <= len(values):
            return values[index - 1] or ""
        # "$12" with only one group means "$1" followed by "2"
        if token.group(3) and len(token.group(3)) == 2:
            first = int(token.group(3)[0])
            if 1 <= first <= len(values):
                return (values[first - 1] or "") + token.group(3)[1]
        return token.group(0)

    return _TEMPLATE_TOKEN.sub(sub, template)


def _replacer(rule: ChatRegexRule):
    trims = [t for t in rule.trim_strings if t]

    def replace(match: re.Match) -> str:
        if not trims:
            return expand_template(rule.replacement, match)
        cleaned: list[str | None] = []
        for group in match.groups():
            if group is not None:
                for trim in trims:
                    group = group.replace(trim, "")
            cleaned.append(group)
        return expand_template(rule.replacement, match, cleaned)

    return replace


def apply_regex_rules(
    content: str,
    rules: list[ChatRegexRule],
    on_error: Callable[[ChatRegexRule, Exception], None] | None = None,
) -> str:
    """Apply *rules* in sequence.

    A rule that fails is skipped and reported to *on_error* when given.
    """
    result = content
    for rule in rules:
        try:
            pattern, replace_all = compile_rule(rule)
            result = pattern.sub(_replacer(rule), result, count=0 if replace_all else 1)
        except (re.error, ValueError, TypeError) as e:
            logger.warning("Regex rule %r failed, skipped: %s", rule.name or rule.id, e)
            if on_error is not None:
                on_error(rule, e)
    return result


# ---------------------------------------------------------------------------
# Memoised stage resolution
# ---------------------------------------------------------------------------

class RuleSetCache:
    """Memoises :func:`resolve_raw_rules` per ``(agent_id, user_id, stage)``."""

    def __init__(self) -> None:
        self._cache: dict[str, list[ChatRegexRule]] = {}
        self._hits = 0
        self._misses = 0

    @staticmethod
    def _key(agent_id: str | None, user_id: str | None, stage: str) -> str:
        return f"{agent_id or 'none'}|{user_id or 'none'}|{stage}"

    def get_rules(
        self,
        stage: str,
        agent_id: str | None,
        user_id: str | None,
        global_config: ChatRegexConfig | None,
        agent_config: ChatRegexConfig | None,
        user_config: ChatRegexConfig | None,
    ) -> list[ChatRegexRule]:
        key = self._key(agent_id, user_id, stage)
        cached = self._cache.get(key)
        if cached is not None:
            self._hits += 1
            return cached
        self._misses += 1
        rules = resolve_raw_rules(stage, global_config, agent_config, user_config)
        self._cache[key] = rules
        logger.debug("Resolved %d rule(s) for %s", len(rules), key)
        return rules

    def clear(self) -> None:
        self._cache.clear()

    def clear_for_agent(self, agent_id: str) -> None:
        prefix = f"{agent_id}|"
        for key in [k for k in self._cache if k.startswith(prefix)]:
            del self._cache[key]

    def clear_for_user(self, user_id: str) -> None:
        needle = f"|{user_id}|"
        for key in [k for k in self._cache if needle in k]:
            del self._cache[key]

    def stats(self) -> dict:
        return {
            "size": len(self._cache),
            "keys": list(self._cache),
            "hits": self._hits,
            "misses": self._misses,
        }


# ---------------------------------------------------------------------------
# Config parsing & SillyTavern import
# ---------------------------------------------------------------------------

def rule_from_dict(raw: dict) -> ChatRegexRule:
    depth = raw.get("depth_range")
    apply_to = raw.get("apply_to") or {}
    return ChatRegexRule(
        id=str(raw.get("id") or uuid.uuid4()),
        name=raw.get("name", ""),
        enabled=raw.get("enabled", True),
        regex=raw.get("regex", ""),
        replacement=raw.get("replacement", ""),
        flags=raw.get("flags"),
        target_roles=list(raw.get("target_roles", ROLES)),
        depth_range=DepthRange(min=depth.get("min"), max=depth.get("max")) if depth else None,
        apply_to=ApplyTo(
            render=apply_to.get("render", True),
            request=apply_to.get("request", True),
        ),
        trim_strings=list(raw.get("trim_strings", [])),
        order=raw.get("order"),
    )


def regex_config_from_dict(raw: dict | list | None) -> ChatRegexConfig | None:
    """Build a :class:`ChatRegexConfig` from ``{"presets": [...]}`` or a bare preset list."""
    if raw is None:
        return None
    presets_raw = raw if isinstance(raw, list) else raw.get("presets", [])
    presets = [
        ChatRegexPreset(
            id=str(p.get("id") or uuid.uuid4()),
            name=p.get("name", ""),
            enabled=p.get("enabled", True),
            priority=p.get("priority"),
            order=p.get("order"),
            rules=[rule_from_dict(r) for r in p.get("rules", [])],
        )
        for p in presets_raw
    ]
    return ChatRegexConfig(presets=presets)


def _placement_to_apply_to(script: dict[str, Any]) -> ApplyTo:
    placement = script.get("placement") or []
    render = 1 in placement
    request = 2 in placement
    if script.get("markdownOnly"):
        render, request = True, False
    if script.get("promptOnly"):
        render, request = False, True
    if not render and not request:
        render = request = True
    return ApplyTo(render=render, request=request)


def convert_from_sillytavern(script: dict[str, Any]) -> ChatRegexPreset:
    """Convert one SillyTavern regex script (its JSON export) to a preset."""
    min_depth = script.get("minDepth")
    max_depth = script.get("maxDepth")
    depth_range = (
        DepthRange(min=min_depth, max=max_depth)
        if min_depth is not None or max_depth is not None
        else None
    )

    rules: list[ChatRegexRule] = []
    if script.get("findRegex"):
        rules.append(ChatRegexRule(
            name="main",
            regex=script["findRegex"],
            replacement=script.get("replaceString") or "",
            apply_to=_placement_to_apply_to(script),
            target_roles=list(ROLES),
            depth_range=depth_range,
            trim_strings=[t for t in script.get("trimStrings") or [] if t],
            order=0,
        ))

    return ChatRegexPreset(
        id=script.get("id") or str(uuid.uuid4()),
        name=script.get("scriptName") or "Untitled preset",
        enabled=not script.get("disabled", False),
        order=0,
        rules=rules,
    )


def convert_multiple_from_sillytavern(scripts: list[dict[str, Any]]) -> list[ChatRegexPreset]:
    return [convert_from_sillytavern(s) for s in scripts]
