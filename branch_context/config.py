"""Configuration loading, validation, and defaults."""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any

import yaml

from .core.injection import parse_depth_config
from .core.regex_rules import compile_rule, regex_config_from_dict
from .types import (
    AgentConfig,
    BranchContextConfig,
    ChatRegexConfig,
    ConfigError,
    ContextManagement,
    InjectionStrategy,
    KnowledgeSettings,
    ModelMatch,
    PresetMessage,
    RetrievalCacheConfig,
    UserProfile,
)

CONFIG_FILENAMES = [
    "branch-context.yaml",
    "branch-context.yml",
    "branch-context.json",
]

TOKEN_COUNTER_MODES = ("estimate", "tiktoken")
TOKEN_COUNTER_PREFIXES = ("tiktoken:", "callable:")


def _discover_config() -> Path | None:
    """Search CWD then parent dirs up to home for a config file."""
    cwd = Path.cwd()
    home = Path.home()
    search = cwd
    while True:
        for name in CONFIG_FILENAMES:
            candidate = search / name
            if candidate.is_file():
                return candidate
        if search == home or search == search.parent:
            break
        search = search.parent
    return None


def _section(raw: Any, name: str) -> dict[str, Any]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"'{name}' must be a mapping, got {type(raw).__name__}")
    return raw


def _parse_strategy(raw: dict[str, Any] | None) -> InjectionStrategy | None:
    if not raw:
        return None
    position = raw.get("anchor_position", "after")
    if position not in ("before", "after"):
        raise ConfigError(f"anchor_position must be 'before' or 'after', got {position!r}")
    depth = raw.get("depth")
    depth_config = raw.get("depth_config")
    return InjectionStrategy(
        depth=int(depth) if depth is not None else None,
        depth_config=str(depth_config) if depth_config is not None else None,
        anchor_target=raw.get("anchor_target"),
        anchor_position=position,
        order=raw.get("order"),
    )


def _parse_preset_message(raw: dict[str, Any], index: int) -> PresetMessage:
    match_raw = raw.get("model_match")
    return PresetMessage(
        id=str(raw.get("id") or f"preset-{index}"),
        role=raw.get("role", "system"),
        content=raw.get("content", ""),
        type=raw.get("type", "message"),
        name=raw.get("name", ""),
        injection_strategy=_parse_strategy(raw.get("injection_strategy")),
        is_enabled=raw.get("is_enabled", raw.get("enabled", True)),
        model_match=ModelMatch(
            enabled=match_raw.get("enabled", True),
            patterns=list(match_raw.get("patterns", [])),
        ) if match_raw else None,
    )


def _parse_knowledge(raw: dict[str, Any]) -> KnowledgeSettings:
    defaults = KnowledgeSettings()
    return KnowledgeSettings(**{
        f: raw.get(f, getattr(defaults, f)) for f in defaults.__dataclass_fields__
    })


def _parse_agent(agent_id: str, raw: dict[str, Any]) -> AgentConfig:
    cm_raw = _section(raw.get("context_management"), f"agents.{agent_id}.context_management")
    return AgentConfig(
        id=agent_id,
        name=raw.get("name", agent_id),
        model_id=raw.get("model_id", ""),
        preset_messages=[
            _parse_preset_message(m, i) for i, m in enumerate(raw.get("preset_messages", []))
        ],
        regex_config=regex_config_from_dict(raw.get("regex")),
        context_management=ContextManagement(
            enabled=cm_raw.get("enabled", False),
            max_context_tokens=cm_raw.get("max_context_tokens", 0),
            retained_characters=cm_raw.get("retained_characters", 0),
        ),
        knowledge=_parse_knowledge(_section(raw.get("knowledge"), f"agents.{agent_id}.knowledge")),
    )


def _build_config(raw: dict[str, Any]) -> BranchContextConfig:
    """Build a BranchContextConfig from a raw dict."""
    if not isinstance(raw, dict):
        raise ConfigError(f"Config root must be a mapping, got {type(raw).__name__}")

    agents = {
        agent_id: _parse_agent(agent_id, _section(agent_raw, f"agents.{agent_id}"))
        for agent_id, agent_raw in _section(raw.get("agents"), "agents").items()
    }

    profiles: dict[str, UserProfile] = {}
    for profile_id, p_raw in _section(raw.get("user_profiles"), "user_profiles").items():
        p_raw = _section(p_raw, f"user_profiles.{profile_id}")
        profiles[profile_id] = UserProfile(
            id=profile_id,
            name=p_raw.get("name", profile_id),
            content=p_raw.get("content", ""),
            regex_config=regex_config_from_dict(p_raw.get("regex")),
        )

    retrieval_raw = _section(raw.get("retrieval"), "retrieval")
    retrieval = RetrievalCacheConfig(
        embedding_cache_max_items=retrieval_raw.get("embedding_cache_max_items", 100),
        session_cache_max_items=retrieval_raw.get("session_cache_max_items", 20),
        max_history_turns=retrieval_raw.get("max_history_turns", 10),
    )

    return BranchContextConfig(
        version=str(raw.get("version", "0.1")),
        token_counter=raw.get("token_counter", "estimate"),
        global_regex=regex_config_from_dict(raw.get("regex")) or ChatRegexConfig(),
        agents=agents,
        user_profiles=profiles,
        retrieval=retrieval,
        providers=_section(raw.get("providers"), "providers"),
    )


def _validate_regex(config: ChatRegexConfig | None, where: str, errors: list[str]) -> None:
    if config is None:
        return
    for preset in config.presets:
        for rule in preset.rules:
            try:
                compile_rule(rule)
            except re.error as e:
                errors.append(f"{where}: rule '{rule.name or rule.id}' has an invalid regex: {e}")


def validate_config(config: BranchContextConfig) -> list[str]:
    """Validate a config. Returns list of error strings (empty = valid)."""
    errors: list[str] = []
    mode = config.token_counter
    if mode not in TOKEN_COUNTER_MODES and not mode.startswith(TOKEN_COUNTER_PREFIXES):
        errors.append(f"Unknown token_counter mode '{mode}'")

    _validate_regex(config.global_regex, "regex", errors)
    for agent in config.agents.values():
        where = f"agents.{agent.id}"
        _validate_regex(agent.regex_config, where, errors)
        cm = agent.context_management
        if cm.max_context_tokens < 0:
            errors.append(f"{where}: max_context_tokens must be >= 0")
        if cm.enabled and cm.max_context_tokens == 0:
            errors.append(f"{where}: context management enabled without max_context_tokens")
        kn = agent.knowledge
        if not 0.0 <= kn.cache_similarity_threshold <= 1.0:
            errors.append(f"{where}: cache_similarity_threshold must be within [0, 1]")
        if not 0.0 < kn.result_decay <= 1.0:
            errors.append(f"{where}: result_decay must be within (0, 1]")
        if not 0.0 < kn.query_decay <= 1.0:
            errors.append(f"{where}: query_decay must be within (0, 1]")
        for msg in agent.preset_messages:
            strategy = msg.injection_strategy
            if strategy and strategy.depth is not None and strategy.depth < 0:
                errors.append(f"{where}: preset '{msg.id}' has a negative depth")
            if strategy and strategy.depth_config and not parse_depth_config(strategy.depth_config, 1000):
                errors.append(f"{where}: preset '{msg.id}' depth_config '{strategy.depth_config}' yields no depth")

    for profile in config.user_profiles.values():
        _validate_regex(profile.regex_config, f"user_profiles.{profile.id}", errors)

    if config.retrieval.session_cache_max_items < 1:
        errors.append("retrieval.session_cache_max_items must be >= 1")
    if config.retrieval.embedding_cache_max_items < 1:
        errors.append("retrieval.embedding_cache_max_items must be >= 1")
    return errors


def load_config(
    config_path: str | Path | None = None,
    config_dict: dict | None = None,
) -> BranchContextConfig:
    """Load config from dict, explicit path, or auto-discover."""
    if config_dict is not None:
        return _build_config(config_dict)

    if config_path is not None:
        path = Path(config_path)
    else:
        path = _discover_config()

    if path is None:
        # Return defaults
        return _build_config({})

    if not path.is_file():
        raise FileNotFoundError(f"Config file not found: {path}")

    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix == ".json":
            raw = json.loads(text)
        else:
            raw = yaml.safe_load(text) or {}
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot parse {path}: {e}") from e
    return _build_config(raw)
