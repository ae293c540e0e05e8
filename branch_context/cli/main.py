"""CLI: branch-context assemble, navigate, path, import-st, config validate."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path

import yaml

from ..config import load_config, validate_config
from ..core import navigator, tree
from ..core.pipeline import PipelineContext
from ..core.processors import build_default_pipeline
from ..core.regex_rules import RuleSetCache, convert_multiple_from_sillytavern
from ..core.retrieval_cache import RetrievalCacheRegistry
from ..providers import OpenAIEmbeddings
from ..token_counter import create_token_calculator
from ..types import (
    AgentConfig,
    ChatRegexPreset,
    ConversationSession,
    content_text,
)


def _load_session(path: str) -> ConversationSession:
    try:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        print(f"Error loading session: {e}", file=sys.stderr)
        sys.exit(1)
    return ConversationSession.from_dict(raw)


def _save_session(session: ConversationSession, path: str) -> None:
    Path(path).write_text(
        json.dumps(session.to_dict(), ensure_ascii=False, indent=2), encoding="utf-8",
    )


def _load_config_or_exit(config_path: str | None):
    try:
        return load_config(config_path)
    except Exception as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        sys.exit(1)


def _build_embedder(providers: dict) -> OpenAIEmbeddings | None:
    raw = providers.get("embeddings")
    if not raw:
        return None
    api_key = os.environ.get(raw.get("api_key_env", ""), "") or raw.get("api_key", "not-needed")
    return OpenAIEmbeddings(base_url=raw.get("base_url", "http://127.0.0.1:11434/v1"), api_key=api_key)


def cmd_assemble(args):
    """Run the context pipeline over a session file and print the result."""
    config = _load_config_or_exit(args.config)
    session = _load_session(args.session)

    if args.agent:
        if args.agent not in config.agents:
            print(f"Unknown agent: {args.agent}", file=sys.stderr)
            sys.exit(1)
        agent = config.agents[args.agent]
    elif config.agents:
        agent = next(iter(config.agents.values()))
    else:
        agent = AgentConfig()

    profile = None
    if args.user:
        profile = config.user_profiles.get(args.user)
        if profile is None:
            print(f"Unknown user profile: {args.user}", file=sys.stderr)
            sys.exit(1)

    try:
        calculator = create_token_calculator(config.token_counter)
    except (ImportError, ValueError) as e:
        print(f"Error creating token counter: {e}", file=sys.stderr)
        sys.exit(1)

    registry = RetrievalCacheRegistry(
        embedding_cache_max_items=config.retrieval.embedding_cache_max_items,
        session_cache_max_items=config.retrieval.session_cache_max_items,
        max_history_turns=config.retrieval.max_history_turns,
    )
    pipeline = build_default_pipeline(
        calculator,
        registry,
        embedder=_build_embedder(config.providers),
        rule_cache=RuleSetCache(),
    )
    context = PipelineContext(
        session=session,
        agent_config=agent,
        user_profile=profile,
        global_regex_config=config.global_regex,
    )
    asyncio.run(pipeline.execute(context))

    if args.json:
        print(json.dumps({
            "messages": [m.to_dict() for m in context.messages],
            "logs": [
                {"processor_id": e.processor_id, "level": e.level, "message": e.message}
                for e in context.logs
            ],
        }, ensure_ascii=False, indent=2))
        return

    print(f"Session: {session.id}  Agent: {agent.id}  Messages: {len(context.messages)}")
    print("=" * 60)
    for i, msg in enumerate(context.messages):
        print(f"\n[{i}] {msg.role} ({msg.source_type})")
        print(content_text(msg.content, separator="\n"))
    if args.logs:
        print()
        print("Pipeline log")
        print("-" * 60)
        for entry in context.logs:
            print(f"{entry.level:<5} {entry.processor_id:<20} {entry.message}")


def cmd_navigate(args):
    """Switch to the previous/next sibling branch and print the new leaf."""
    session = _load_session(args.session)
    node_id = args.node or session.active_leaf_id
    if not node_id or node_id not in session.nodes:
        print(f"Unknown node: {node_id}", file=sys.stderr)
        sys.exit(1)

    sibling_ids = {n.id for n in navigator.get_siblings(session, node_id)}
    new_leaf = tree.switch_sibling_branch(session, node_id, args.direction)
    branch_id = next(
        (n.id for n in reversed(navigator.get_active_path(session)) if n.id in sibling_ids),
        node_id,
    )
    index, total = navigator.get_sibling_index(session, branch_id)
    print(f"Active leaf: {new_leaf}")
    print(f"Branch {branch_id}: {index + 1}/{total}")

    if args.write:
        _save_session(session, args.session)
        print(f"Saved {args.session}")


def cmd_path(args):
    """Print the active path of a session."""
    session = _load_session(args.session)
    path = navigator.get_active_path(session)
    if not path:
        print("Session has no active path.")
        return
    for node in path:
        index, total = navigator.get_sibling_index(session, node.id)
        text = content_text(node.content, separator=" ").replace("\n", " ")
        if len(text) > 60:
            text = text[:57] + "..."
        print(f"{node.id[:12]:<12} {node.role:<9} [{index + 1}/{total}] {text}")


def cmd_import_st(args):
    """Convert SillyTavern regex scripts into regex presets (YAML)."""
    try:
        raw = json.loads(Path(args.input).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        print(f"Error reading scripts: {e}", file=sys.stderr)
        sys.exit(1)
    scripts = raw if isinstance(raw, list) else [raw]
    presets = convert_multiple_from_sillytavern(scripts)
    print(yaml.safe_dump({"regex": {"presets": [_preset_to_dict(p) for p in presets]}},
                         sort_keys=False, allow_unicode=True))


def _preset_to_dict(preset: ChatRegexPreset) -> dict:
    rules = []
    for rule in preset.rules:
        data = {
            "id": rule.id,
            "name": rule.name,
            "regex": rule.regex,
            "replacement": rule.replacement,
            "apply_to": {"render": rule.apply_to.render, "request": rule.apply_to.request},
            "target_roles": list(rule.target_roles),
        }
        if rule.flags is not None:
            data["flags"] = rule.flags
        if rule.depth_range is not None:
            data["depth_range"] = {"min": rule.depth_range.min, "max": rule.depth_range.max}
        if rule.trim_strings:
            data["trim_strings"] = list(rule.trim_strings)
        rules.append(data)
    return {"id": preset.id, "name": preset.name, "enabled": preset.enabled, "rules": rules}


def cmd_config_validate(args):
    """Validate config file."""
    try:
        config = load_config(args.config)
    except Exception as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        sys.exit(1)

    errors = validate_config(config)
    if errors:
        print("Config validation errors:")
        for err in errors:
            print(f"  - {err}")
        sys.exit(1)
    else:
        print("Config is valid.")
        print(f"  Token counter: {config.token_counter}")
        print(f"  Agents: {len(config.agents)}")
        print(f"  User profiles: {len(config.user_profiles)}")
        print(f"  Global regex presets: {len(config.global_regex.presets)}")


def main():
    parser = argparse.ArgumentParser(
        prog="branch-context",
        description="Context assembly for branching LLM conversations",
    )
    parser.add_argument("--config", "-c", help="Path to config file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command")

    # assemble
    assemble_parser = subparsers.add_parser("assemble", help="Assemble the request context for a session")
    assemble_parser.add_argument("session", help="Session JSON file")
    assemble_parser.add_argument("--agent", "-a", help="Agent id from config (default: first agent)")
    assemble_parser.add_argument("--user", "-u", help="User profile id from config")
    assemble_parser.add_argument("--json", action="store_true", help="Print JSON instead of text")
    assemble_parser.add_argument("--logs", action="store_true", help="Print the pipeline log")

    # navigate
    navigate_parser = subparsers.add_parser("navigate", help="Switch sibling branch")
    navigate_parser.add_argument("session", help="Session JSON file")
    navigate_parser.add_argument("direction", choices=["prev", "next"])
    navigate_parser.add_argument("--node", "-n", help="Node whose siblings to cycle (default: active leaf)")
    navigate_parser.add_argument("--write", "-w", action="store_true", help="Write the session back")

    # path
    path_parser = subparsers.add_parser("path", help="Show the active path of a session")
    path_parser.add_argument("session", help="Session JSON file")

    # import-st
    import_parser = subparsers.add_parser("import-st", help="Convert SillyTavern regex scripts to YAML presets")
    import_parser.add_argument("input", help="SillyTavern regex script JSON (object or list)")

    # config validate
    config_parser = subparsers.add_parser("config", help="Config operations")
    config_sub = config_parser.add_subparsers(dest="config_command")
    config_sub.add_parser("validate", help="Validate config file")

    args = parser.parse_args()

    if args.verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s %(name)s %(levelname)s %(message)s",
        )

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == "assemble":
        cmd_assemble(args)
    elif args.command == "navigate":
        cmd_navigate(args)
    elif args.command == "path":
        cmd_path(args)
    elif args.command == "import-st":
        cmd_import_st(args)
    elif args.command == "config":
        if args.config_command == "validate":
            cmd_config_validate(args)
        else:
            print("Usage: branch-context config validate")
            sys.exit(1)


if __name__ == "__main__":
    main()
