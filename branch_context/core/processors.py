"""Built-in context processors and the default pipeline factory.

Execution order (priority):

    session-loader (100) -> regex (200) -> injection-assembler (400)
    -> retrieval (450) -> token-limiter (500)
"""

from __future__ import annotations

import dataclasses
import logging
import re
from typing import Awaitable, Callable

from ..types import (
    ConversationNode,
    ConversationSession,
    Embedder,
    PresetMessage,
    ProcessableMessage,
    RetrievalCacheEntry,
    SearchFn,
    SearchResult,
    TokenCalculator,
    TurnRecord,
    UserProfile,
    content_text,
)
from .injection import (
    CHAT_HISTORY_ANCHOR,
    USER_PROFILE_ANCHOR,
    apply_depth_injections,
    classify_preset_messages,
    get_anchor_injection_groups,
    get_sorted_anchor_injections,
    matches_model,
    preset_index,
)
from .limiter import apply_context_limit, count_message_tokens
from .pipeline import ContextPipeline, ContextProcessor, PipelineContext
from .regex_rules import (
    RuleSetCache,
    apply_regex_rules,
    filter_rules_by_depth,
    filter_rules_by_role,
    resolve_raw_rules,
)
from .retrieval_cache import (
    RetrievalCacheRegistry,
    aggregate_results,
    compute_weighted_vector,
)

logger = logging.getLogger(__name__)

FetchEntriesFn = Callable[[list[str]], Awaitable[list[SearchResult]]]


# ---------------------------------------------------------------------------
# Session loader
# ---------------------------------------------------------------------------

def get_active_branch_history(session: ConversationSession) -> list[ConversationNode]:
    """Active-path nodes (oldest first) minus the root and compressed nodes.

    Nodes listed in ``compressed_node_ids`` of an enabled compression node on
    the path are hidden; the compression node itself stays.
    """
    path: list[ConversationNode] = []
    seen: set[str] = set()
    current_id = session.active_leaf_id
    while current_id:
        if current_id in seen:
            logger.warning("Cycle at %s while loading active branch", current_id)
            break
        node = session.nodes.get(current_id)
        if node is None:
            logger.warning("Active branch walk stopped: node %s not found", current_id)
            break
        seen.add(current_id)
        path.append(node)
        current_id = node.parent_id

    hidden: set[str] = set()
    for node in path:
        if node.metadata.get("is_compression_node") and node.is_enabled:
            hidden.update(node.metadata.get("compressed_node_ids") or [])

    return [n for n in reversed(path) if n.parent_id and n.id not in hidden]


class SessionLoader(ContextProcessor):
    id = "session-loader"
    name = "Session loader"
    priority = 100

    async def execute(self, context: PipelineContext) -> None:
        nodes = get_active_branch_history(context.session)
        messages: list[ProcessableMessage] = []
        for node in nodes:
            if not node.is_enabled:
                continue
            if not content_text(node.content).strip() and not node.attachments:
                continue
            content = node.content
            if not isinstance(content, str):
                # later stages rewrite text parts in place
                content = [dataclasses.replace(part) for part in content]
            messages.append(ProcessableMessage(
                role=node.role,
                content=content,
                source_type="session_history",
                source_id=node.id,
                attachments=list(node.attachments),
            ))
        context.messages = messages
        logger.info("Loaded %d history message(s) from session %s", len(messages), context.session.id)
        context.log(self.id, "info", f"Loaded {len(messages)} history message(s)")


# ---------------------------------------------------------------------------
# Regex
# ---------------------------------------------------------------------------

class RegexProcessor(ContextProcessor):
    """Apply request-stage regex rules to every message by role and depth."""

    id = "regex"
    name = "Regex rules"
    priority = 200
    stage = "request"

    def __init__(self, rule_cache: RuleSetCache | None = None) -> None:
        self.rule_cache = rule_cache

    def _raw_rules(self, context: PipelineContext):
        profile = context.user_profile
        user_config = profile.regex_config if profile else None
        if self.rule_cache is not None:
            return self.rule_cache.get_rules(
                self.stage,
                context.agent_config.id,
                profile.id if profile else None,
                context.global_regex_config,
                context.agent_config.regex_config,
                user_config,
            )
        return resolve_raw_rules(
            self.stage, context.global_regex_config, context.agent_config.regex_config, user_config,
        )

    async def execute(self, context: PipelineContext) -> None:
        if not context.messages:
            return
        raw_rules = self._raw_rules(context)
        if not raw_rules:
            context.log(self.id, "info", "No request-stage regex rules, skipped")
            return

        replacements = 0
        total = len(context.messages)

        def on_error(rule, error: Exception) -> None:
            context.log(
                self.id, "error", f"Rule {rule.name or rule.id!r} failed: {error}",
                {"rule_id": rule.id, "message_index": i},
            )

        for i, message in enumerate(context.messages):
            depth = total - 1 - i
            rules = filter_rules_by_depth(filter_rules_by_role(raw_rules, message.role), depth)
            if not rules:
                continue

            if isinstance(message.content, str):
                text_part = None
                original = message.content
            else:
                text_part = next((p for p in message.content if p.type == "text"), None)
                if text_part is None or text_part.text is None:
                    continue
                original = text_part.text

            updated = original
            for rule in rules:
                result = apply_regex_rules(updated, [rule], on_error=on_error)
                if result != updated:
                    replacements += 1
                    updated = result

            if updated == original:
                continue
            if text_part is None:
                message.content = updated
            else:
                text_part.text = updated

        logger.info("Regex stage: %d replacement(s) over %d message(s)", replacements, total)
        context.log(self.id, "info", f"Applied {replacements} regex replacement(s)")


# ---------------------------------------------------------------------------
# Injection assembly
# ---------------------------------------------------------------------------

_LEGACY_PROFILE_CONTENT = ("用户档案", "user_profile", "User Profile")
_TEMPLATE_ANCHORS = {USER_PROFILE_ANCHOR}


def render_user_profile(template: str, profile: UserProfile | None) -> str | None:
    """Text for a user-profile anchor, or None when there is nothing to show."""
    if profile is None or not profile.content.strip():
        return None
    text = template.strip()
    if not text or text in _LEGACY_PROFILE_CONTENT:
        return profile.content
    return text.replace("{{user_profile}}", profile.content).replace("{{persona}}", profile.content)


class InjectionAssembler(ContextProcessor):
    """Merge agent preset messages, depth/anchor injections and history."""

    id = "injection-assembler"
    name = "Injection assembler"
    priority = 400

    async def execute(self, context: PipelineContext) -> None:
        agent = context.agent_config
        presets = agent.preset_messages
        active = [m for m in presets if m.is_enabled and matches_model(m, agent.model_id)]
        if not active:
            context.log(self.id, "info", "Agent has no active preset messages, skipped")
            return

        history = context.messages
        classified = classify_preset_messages(active)
        with_depth = apply_depth_injections(history, classified.depth_injections, None, presets)
        groups = get_anchor_injection_groups(
            get_sorted_anchor_injections(classified.anchor_injections)
        )

        def anchor_messages(target: str, position: str) -> list[ProcessableMessage]:
            group = groups.get(target)
            if group is None:
                return []
            injections = group.before if position == "before" else group.after
            return [
                ProcessableMessage(
                    role=inj.message.role,
                    content=inj.message.content,
                    source_type="anchor_injection",
                    source_id=inj.message.id,
                    source_index=preset_index(presets, inj.message),
                )
                for inj in injections
            ]

        def skeleton_messages(messages: list[PresetMessage]) -> list[ProcessableMessage]:
            out: list[ProcessableMessage] = []
            for msg in messages:
                if msg.type and msg.type != "message":
                    out.extend(anchor_messages(msg.type, "before"))
                    if msg.type in _TEMPLATE_ANCHORS:
                        rendered = render_user_profile(msg.content, context.user_profile)
                        if rendered:
                            out.append(ProcessableMessage(
                                role=msg.role,
                                content=rendered,
                                source_type="user_profile",
                                source_id=msg.id,
                                source_index=preset_index(presets, msg),
                            ))
                    out.extend(anchor_messages(msg.type, "after"))
                    continue
                out.append(ProcessableMessage(
                    role=msg.role,
                    content=msg.content,
                    source_type="agent_preset",
                    source_id=msg.id,
                    source_index=preset_index(presets, msg),
                ))
            return out

        skeleton = classified.skeleton
        history_at = next(
            (i for i, m in enumerate(skeleton) if m.type == CHAT_HISTORY_ANCHOR), None,
        )
        before = skeleton if history_at is None else skeleton[:history_at]
        after = [] if history_at is None else skeleton[history_at + 1:]

        final = skeleton_messages(before)
        final.extend(anchor_messages(CHAT_HISTORY_ANCHOR, "before"))
        final.extend(with_depth)
        final.extend(anchor_messages(CHAT_HISTORY_ANCHOR, "after"))
        final.extend(skeleton_messages(after))

        placed_targets = {m.type for m in skeleton} | {CHAT_HISTORY_ANCHOR}
        for target in groups:
            if target not in placed_targets:
                logger.debug("Anchor %s not present in preset skeleton, injections dropped", target)

        context.messages = final
        logger.info(
            "Assembled %d message(s): %d skeleton, %d depth, %d anchor, %d history",
            len(final), len(skeleton), len(classified.depth_injections),
            len(classified.anchor_injections), len(history),
        )
        context.log(self.id, "info", f"Assembled {len(final)} message(s)")


# ---------------------------------------------------------------------------
# Retrieval
# ---------------------------------------------------------------------------

KB_PLACEHOLDER_PATTERNS = (
    re.compile(r"【(?:kb|knowledge)(?:::([^【】]*?))?】"),
    re.compile(r"\{\{(?:kb|knowledge)(?:::([^{}]*?))?\}\}"),
)
PLACEHOLDER_MODES = ("always", "static", "turn", "gate")

DEFAULT_RESULT_TEMPLATE = "---\nRelevant knowledge ({count} item(s))\n\n{items}\n---"
DEFAULT_ITEM_TEMPLATE = "**[{kb_name}]** {key}\n> {content}\n(score: {score})"
DEFAULT_EMPTY_TEXT = "(No relevant knowledge found)"


@dataclasses.dataclass
class KBPlaceholder:
    raw: str
    message_index: int
    kb_name: str | None = None
    limit: int | None = None
    min_score: float | None = None
    mode: str = "always"
    mode_params: list[str] = dataclasses.field(default_factory=list)


def _parse_number(value: str, cast):
    try:
        return cast(value)
    except ValueError:
        return None


def parse_kb_params(raw: str, params: str | None, message_index: int) -> KBPlaceholder:
    """Parse ``kb_name::limit::min_score::mode::p1,p2`` (every part optional)."""
    parts = (params or "").split("::")
    parts += [""] * (5 - len(parts))
    mode = parts[3].strip() or "always"
    if mode not in PLACEHOLDER_MODES:
        logger.warning("Unknown knowledge placeholder mode %r in %s, using 'always'", mode, raw)
        mode = "always"
    return KBPlaceholder(
        raw=raw,
        message_index=message_index,
        kb_name=parts[0].strip() or None,
        limit=_parse_number(parts[1], int) if parts[1] else None,
        min_score=_parse_number(parts[2], float) if parts[2] else None,
        mode=mode,
        mode_params=[p.strip() for p in parts[4].split(",") if p.strip()],
    )


def scan_placeholders(messages: list[ProcessableMessage]) -> list[KBPlaceholder]:
    found: list[KBPlaceholder] = []
    for index, msg in enumerate(messages):
        if not isinstance(msg.content, str):
            continue
        for pattern in KB_PLACEHOLDER_PATTERNS:
            for match in pattern.finditer(msg.content):
                found.append(parse_kb_params(match.group(0), match.group(1), index))
    return found


def format_results(results: list[SearchResult], template: str = "", empty_text: str = "") -> str:
    if not results:
        return empty_text or DEFAULT_EMPTY_TEXT
    items = "\n\n".join(
        DEFAULT_ITEM_TEMPLATE.format(
            kb_name=r.kb_name or "knowledge",
            key=r.metadata.get("key") or r.id,
            content=r.content,
            score=f"{r.score:.2f}",
        )
        for r in results
    )
    return (template or DEFAULT_RESULT_TEMPLATE).replace("{count}", str(len(results))).replace("{items}", items)


class RetrievalProcessor(ContextProcessor):
    """Replace knowledge placeholders with search results.

    Searching is delegated to an injected ``search`` coroutine. Query vectors
    come from an optional embedder through the registry's embedding cache, and
    results are reused across turns through the session retrieval cache.
    """

    id = "retrieval"
    name = "Knowledge retrieval"
    priority = 450

    def __init__(
        self,
        cache_registry: RetrievalCacheRegistry,
        search: SearchFn | None = None,
        embedder: Embedder | None = None,
        fetch_entries: FetchEntriesFn | None = None,
    ) -> None:
        self.cache_registry = cache_registry
        self.search = search
        self.embedder = embedder
        self.fetch_entries = fetch_entries

    async def execute(self, context: PipelineContext) -> None:
        placeholders = scan_placeholders(context.messages)
        if not placeholders:
            return

        settings = context.agent_config.knowledge
        if not settings.enabled:
            for ph in placeholders:
                self._replace(context, ph, "")
            context.log(self.id, "info", "Knowledge retrieval disabled, placeholders removed")
            return

        session_id = context.session.id
        cache = self.cache_registry.get_session_retrieval_cache(session_id, settings.cache_max_items)
        history = self.cache_registry.get_session_history(session_id, settings.max_history_turns)

        for ph in placeholders:
            if not self._should_activate(ph, context):
                self._replace(context, ph, "")
                context.log(self.id, "debug", f"Placeholder {ph.raw} not activated ({ph.mode})")
                continue

            if ph.mode == "static":
                results = await self._static_entries(ph)
            else:
                query = self._build_query(context)
                vector = await self._query_vector(query, context)

                entry = None
                if settings.cache_enabled:
                    entry = (
                        cache.find_similar(vector, settings.cache_similarity_threshold)
                        if vector else cache.find_by_text(query)
                    )
                if entry is not None:
                    logger.debug("Retrieval cache hit for %r", query)
                    results = list(entry.results)
                else:
                    results = await self._search(ph, query, vector, context)
                    if settings.cache_enabled:
                        cache.add(RetrievalCacheEntry(query=query, vector=vector, results=list(results)))

                if settings.aggregation_enabled:
                    results = aggregate_results(
                        results, history, settings.result_decay, settings.max_history_turns,
                    )
                if settings.max_recall_chars > 0:
                    results = _cap_chars(results, settings.max_recall_chars)
                if ph.kb_name:
                    results = [r for r in results if r.kb_name == ph.kb_name]

                history.append(TurnRecord(query=query, results=results, query_vector=vector))

            self._replace(context, ph, format_results(results, settings.result_template, settings.empty_text))
            context.log(
                self.id, "info", f"Replaced knowledge placeholder {ph.raw}",
                {"kb_name": ph.kb_name, "result_count": len(results), "mode": ph.mode},
            )

    @staticmethod
    def _replace(context: PipelineContext, ph: KBPlaceholder, text: str) -> None:
        msg = context.messages[ph.message_index]
        if isinstance(msg.content, str):
            msg.content = msg.content.replace(ph.raw, text, 1)

    @staticmethod
    def _should_activate(ph: KBPlaceholder, context: PipelineContext) -> bool:
        if ph.mode == "turn":
            interval = _parse_number(ph.mode_params[0], int) if ph.mode_params else 1
            if not interval or interval <= 0:
                interval = 1
            user_turns = sum(1 for m in context.messages if m.role == "user")
            return user_turns % interval == 0
        if ph.mode == "gate":
            if not ph.mode_params:
                return True
            depth = context.agent_config.knowledge.gate_scan_depth
            recent = context.messages[-depth:] if depth > 0 else []
            return any(
                isinstance(m.content, str) and any(kw in m.content for kw in ph.mode_params)
                for m in recent
            )
        return True

    @staticmethod
    def _build_query(context: PipelineContext) -> str:
        window = max(1, context.agent_config.knowledge.context_window)
        user_texts = [
            m.content for m in context.messages
            if m.role == "user" and isinstance(m.content, str)
        ]
        return "\n".join(user_texts[-window:])

    async def _query_vector(self, query: str, context: PipelineContext) -> list[float] | None:
        settings = context.agent_config.knowledge
        model_id = settings.embedding_model_id
        if self.embedder is None or not model_id or not query:
            return None

        embedding_cache = self.cache_registry.get_embedding_cache(settings.embedding_cache_max_items)
        vector = await embedding_cache.get(model_id, query)
        if vector is None:
            try:
                vectors = await self.embedder.embed([query], model_id)
            except Exception as e:
                logger.warning("Embedding failed, falling back to text retrieval: %s", e)
                context.log(self.id, "warn", f"Embedding failed: {e}")
                return None
            if not vectors or not vectors[0]:
                return None
            vector = vectors[0]
            await embedding_cache.set(model_id, query, vector)

        if settings.query_decay < 1.0:
            history = self.cache_registry.get_session_history(context.session.id)
            if len(history):
                return compute_weighted_vector(vector, history, settings.query_decay)
        return vector

    async def _search(
        self,
        ph: KBPlaceholder,
        query: str,
        vector: list[float] | None,
        context: PipelineContext,
    ) -> list[SearchResult]:
        if self.search is None:
            logger.warning("No search backend configured, knowledge placeholder left empty")
            return []
        settings = context.agent_config.knowledge
        limit = ph.limit or settings.limit
        min_score = ph.min_score if ph.min_score is not None else settings.min_score
        try:
            results = await self.search(query, vector, limit)
        except Exception as e:
            logger.warning("Knowledge search failed: %s", e)
            context.log(self.id, "warn", f"Knowledge search failed: {e}")
            return []
        return [r for r in results if r.score >= min_score][:limit]

    async def _static_entries(self, ph: KBPlaceholder) -> list[SearchResult]:
        if not ph.mode_params or self.fetch_entries is None:
            return []
        try:
            return await self.fetch_entries(ph.mode_params)
        except Exception as e:
            logger.warning("Loading static knowledge entries %s failed: %s", ph.mode_params, e)
            return []


def _cap_chars(results: list[SearchResult], max_chars: int) -> list[SearchResult]:
    kept: list[SearchResult] = []
    total = 0
    for r in results:
        if total + len(r.content) > max_chars:
            break
        kept.append(r)
        total += len(r.content)
    return kept


# ---------------------------------------------------------------------------
# Token limiter
# ---------------------------------------------------------------------------

class TokenLimiter(ContextProcessor):
    """Fit session history into the agent's context budget."""

    id = "token-limiter"
    name = "Token limiter"
    priority = 500

    def __init__(self, token_calculator: TokenCalculator) -> None:
        self.token_calculator = token_calculator

    async def execute(self, context: PipelineContext) -> None:
        settings = context.agent_config.context_management
        if not settings.enabled or settings.max_context_tokens <= 0:
            context.log(self.id, "info", "Context management disabled, skipped")
            return
        if not context.messages:
            return

        model_id = context.agent_config.model_id
        history = [m for m in context.messages if m.source_type == "session_history"]
        presets = [m for m in context.messages if m.source_type != "session_history"]

        counts = await count_message_tokens(history, model_id, self.token_calculator)
        for msg, count in zip(history, counts):
            node = context.session.nodes.get(msg.source_id) if msg.source_id else None
            if node is not None:
                node.metadata["token_count"] = count

        limited = await apply_context_limit(
            history, presets, settings, model_id, self.token_calculator, token_counts=counts,
        )
        if not limited and history:
            context.messages = presets
            context.log(
                self.id, "warn",
                f"Preset messages exhaust the budget ({settings.max_context_tokens}); history dropped",
            )
            return

        replacements = iter(limited)
        context.messages = [
            next(replacements) if m.source_type == "session_history" else m
            for m in context.messages
        ]
        truncated = sum(1 for old, new in zip(history, limited) if old.content != new.content)
        context.shared_data["token_limiter_stats"] = {
            "history_count": len(history),
            "truncated_count": truncated,
            "history_tokens": sum(counts),
        }
        context.log(self.id, "info", f"Token limit applied: {truncated} of {len(history)} message(s) truncated")


def build_default_pipeline(
    token_calculator: TokenCalculator,
    cache_registry: RetrievalCacheRegistry,
    search: SearchFn | None = None,
    embedder: Embedder | None = None,
    rule_cache: RuleSetCache | None = None,
    fetch_entries: FetchEntriesFn | None = None,
) -> ContextPipeline:
    return ContextPipeline([
        SessionLoader(),
        RegexProcessor(rule_cache=rule_cache),
        InjectionAssembler(),
        RetrievalProcessor(cache_registry, search=search, embedder=embedder, fetch_entries=fetch_entries),
        TokenLimiter(token_calculator),
    ])
