"""All dataclasses, Protocols, and type aliases for branch-context."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Literal, Protocol, Union, runtime_checkable

Role = Literal["system", "user", "assistant"]
Stage = Literal["render", "request"]
Direction = Literal["prev", "next"]

ROLES: tuple[str, ...] = ("system", "user", "assistant")


# ---------------------------------------------------------------------------
# Message content
# ---------------------------------------------------------------------------

@dataclass
class ContentPart:
    """One part of a multimodal message."""
    type: str  # "text", "image", "document"
    text: str | None = None
    source: str | None = None  # asset ref or URL for non-text parts
    mime_type: str | None = None

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"type": self.type}
        if self.text is not None:
            data["text"] = self.text
        if self.source is not None:
            data["source"] = self.source
        if self.mime_type is not None:
            data["mime_type"] = self.mime_type
        return data

    @classmethod
    def from_dict(cls, raw: dict) -> ContentPart:
        return cls(
            type=raw.get("type", "text"),
            text=raw.get("text"),
            source=raw.get("source"),
            mime_type=raw.get("mime_type"),
        )


Content = Union[str, list[ContentPart]]


def content_text(content: Content, separator: str = "") -> str:
    """Join the text parts of *content* (plain strings are returned as-is)."""
    if isinstance(content, str):
        return content
    return separator.join(p.text for p in content if p.type == "text" and p.text)


def content_to_json(content: Content) -> Any:
    if isinstance(content, str):
        return content
    return [p.to_dict() for p in content]


def content_from_json(raw: Any) -> Content:
    if isinstance(raw, list):
        return [ContentPart.from_dict(p) for p in raw]
    return "" if raw is None else str(raw)


# ---------------------------------------------------------------------------
# Conversation tree
# ---------------------------------------------------------------------------

@dataclass
class ConversationNode:
    """A single message in the conversation tree."""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    role: str = "user"  # "system", "user", "assistant"
    content: Content = ""
    parent_id: str | None = None
    children_ids: list[str] = field(default_factory=list)
    last_selected_child_id: str | None = None
    attachments: list[str] = field(default_factory=list)
    metadata: dict = field(default_factory=dict)
    is_enabled: bool = True
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        data: dict[str, Any] = {
            "id": self.id,
            "role": self.role,
            "content": content_to_json(self.content),
            "parent_id": self.parent_id,
            "children_ids": list(self.children_ids),
            "attachments": list(self.attachments),
            "metadata": dict(self.metadata),
            "is_enabled": self.is_enabled,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.last_selected_child_id is not None:
            data["last_selected_child_id"] = self.last_selected_child_id
        return data

    @classmethod
    def from_dict(cls, raw: dict) -> ConversationNode:
        ts = raw.get("timestamp")
        return cls(
            id=raw["id"],
            role=raw.get("role", "user"),
            content=content_from_json(raw.get("content", "")),
            parent_id=raw.get("parent_id"),
            children_ids=list(raw.get("children_ids", [])),
            last_selected_child_id=raw.get("last_selected_child_id"),
            attachments=list(raw.get("attachments", [])),
            metadata=dict(raw.get("metadata") or {}),
            is_enabled=raw.get("is_enabled", True),
            timestamp=datetime.fromisoformat(ts) if ts else datetime.now(timezone.utc),
        )


@dataclass
class ConversationSession:
    """Owns the node map and the active leaf of one conversation."""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    nodes: dict[str, ConversationNode] = field(default_factory=dict)
    root_node_id: str | None = None
    active_leaf_id: str | None = None
    name: str = ""
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def touch(self) -> None:
        self.updated_at = datetime.now(timezone.utc)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "root_node_id": self.root_node_id,
            "active_leaf_id": self.active_leaf_id,
            "updated_at": self.updated_at.isoformat(),
            "nodes": {nid: n.to_dict() for nid, n in self.nodes.items()},
        }

    @classmethod
    def from_dict(cls, raw: dict) -> ConversationSession:
        nodes_raw = raw.get("nodes", {})
        if isinstance(nodes_raw, list):
            nodes = {n["id"]: ConversationNode.from_dict(n) for n in nodes_raw}
        else:
            nodes = {nid: ConversationNode.from_dict({"id": nid, **n}) for nid, n in nodes_raw.items()}
        updated = raw.get("updated_at")
        return cls(
            id=raw.get("id") or str(uuid.uuid4()),
            nodes=nodes,
            root_node_id=raw.get("root_node_id"),
            active_leaf_id=raw.get("active_leaf_id"),
            name=raw.get("name", ""),
            updated_at=datetime.fromisoformat(updated) if updated else datetime.now(timezone.utc),
        )


@dataclass
class ChildrenChange:
    old_children: list[str] = field(default_factory=list)
    new_children: list[str] = field(default_factory=list)


@dataclass
class NodeRelationChange:
    """Minimal record to replay or invert one structural edit."""
    node_id: str
    old_parent_id: str | None = None
    new_parent_id: str | None = None
    affected_parents: dict[str, ChildrenChange] = field(default_factory=dict)


@dataclass
class DeleteResult:
    success: bool
    deleted_nodes: list[ConversationNode] = field(default_factory=list)
    relation_change: NodeRelationChange | None = None


# ---------------------------------------------------------------------------
# Presets & injection
# ---------------------------------------------------------------------------

@dataclass
class InjectionStrategy:
    """Placement of a preset message relative to history or an anchor."""
    depth: int | None = None
    depth_config: str | None = None  # e.g. "3, 10~5" or "D2-10/2"
    anchor_target: str | None = None
    anchor_position: Literal["before", "after"] = "after"
    order: int | None = None


@dataclass
class ModelMatch:
    enabled: bool = False
    patterns: list[str] = field(default_factory=list)


@dataclass
class PresetMessage:
    """A message authored in an agent preset."""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    role: str = "system"
    content: str = ""
    type: str = "message"  # "message" or an anchor id ("chat_history", "user_profile", ...)
    name: str = ""
    injection_strategy: InjectionStrategy | None = None
    is_enabled: bool = True
    model_match: ModelMatch | None = None


@dataclass
class InjectionMessage:
    message: PresetMessage
    strategy: InjectionStrategy


@dataclass
class AnchorGroup:
    before: list[InjectionMessage] = field(default_factory=list)
    after: list[InjectionMessage] = field(default_factory=list)


@dataclass
class ClassifiedMessages:
    skeleton: list[PresetMessage] = field(default_factory=list)
    depth_injections: list[InjectionMessage] = field(default_factory=list)
    anchor_injections: list[InjectionMessage] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Pipeline messages
# ---------------------------------------------------------------------------

@dataclass
class ProcessableMessage:
    """Unified message shape flowing through the pipeline."""
    role: str
    content: Content
    source_type: str = "unknown"  # session_history, agent_preset, depth_injection, anchor_injection, user_profile
    source_id: str | None = None
    source_index: int | None = None
    attachments: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "role": self.role,
            "content": content_to_json(self.content),
            "source_type": self.source_type,
            "source_id": self.source_id,
        }


@dataclass
class LogEntry:
    processor_id: str
    level: str  # "debug", "info", "warn", "error"
    message: str
    details: dict | None = None


# ---------------------------------------------------------------------------
# Regex rules
# ---------------------------------------------------------------------------

@dataclass
class DepthRange:
    min: int | None = None
    max: int | None = None

    def contains(self, depth: int) -> bool:
        if self.min is not None and depth < self.min:
            return False
        if self.max is not None and depth > self.max:
            return False
        return True


@dataclass
class ApplyTo:
    render: bool = True
    request: bool = True

    def __getitem__(self, stage: str) -> bool:
        return bool(getattr(self, stage))


@dataclass
class ChatRegexRule:
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    name: str = ""
    enabled: bool = True
    regex: str = ""
    replacement: str = ""
    flags: str | None = None  # JS-style; empty means "gm"
    target_roles: list[str] = field(default_factory=lambda: list(ROLES))
    depth_range: DepthRange | None = None
    apply_to: ApplyTo = field(default_factory=ApplyTo)
    trim_strings: list[str] = field(default_factory=list)
    order: int | None = None


@dataclass
class ChatRegexPreset:
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    name: str = ""
    enabled: bool = True
    priority: int | None = None  # default 100
    order: int | None = None  # default 0
    rules: list[ChatRegexRule] = field(default_factory=list)


@dataclass
class ChatRegexConfig:
    presets: list[ChatRegexPreset] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Retrieval
# ---------------------------------------------------------------------------

@dataclass
class SearchResult:
    id: str
    content: str = ""
    score: float = 0.0
    kb_name: str = ""
    metadata: dict = field(default_factory=dict)


@dataclass
class RetrievalCacheEntry:
    query: str
    results: list[SearchResult] = field(default_factory=list)
    vector: list[float] | None = None
    timestamp: float = field(default_factory=time.time)


@dataclass
class TurnRecord:
    """One retrieval turn, kept for multi-turn result aggregation."""
    query: str
    results: list[SearchResult] = field(default_factory=list)
    query_vector: list[float] | None = None
    timestamp: float = field(default_factory=time.time)


# ---------------------------------------------------------------------------
# Token accounting
# ---------------------------------------------------------------------------

@dataclass
class TokenCount:
    count: int
    is_estimated: bool = True
    tokenizer_name: str | None = None


@runtime_checkable
class TokenCalculator(Protocol):
    async def calculate_tokens(self, content: str, model_id: str) -> TokenCount: ...


@runtime_checkable
class Embedder(Protocol):
    async def embed(self, texts: list[str], model_id: str) -> list[list[float]]: ...


@runtime_checkable
class EmbeddingSecondTier(Protocol):
    """Cross-process embedding cache consulted after a local miss."""

    async def get(self, model_id: str, text: str) -> list[float] | None: ...

    async def set(self, model_id: str, text: str, vector: list[float], max_items: int) -> None: ...

    async def clear(self) -> None: ...


SearchFn = Callable[[str, "list[float] | None", int], Awaitable[list[SearchResult]]]


class EmbeddingProviderError(Exception):
    def __init__(self, message: str, provider: str, status_code: int | None = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class ConfigError(Exception):
    """Raised when a configuration file cannot be parsed into a valid config."""


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

@dataclass
class ContextManagement:
    enabled: bool = False
    max_context_tokens: int = 0
    retained_characters: int = 0


@dataclass
class KnowledgeSettings:
    enabled: bool = False
    embedding_model_id: str = ""
    limit: int = 5
    min_score: float = 0.3
    max_recall_chars: int = 0
    cache_enabled: bool = True
    cache_similarity_threshold: float = 0.95
    cache_max_items: int = 20
    embedding_cache_max_items: int = 100
    aggregation_enabled: bool = False
    result_decay: float = 0.8
    query_decay: float = 1.0  # < 1.0 blends prior query vectors
    max_history_turns: int = 10
    context_window: int = 1  # number of recent user messages forming the query
    gate_scan_depth: int = 3
    result_template: str = ""  # "{count}", "{items}"
    empty_text: str = ""


@dataclass
class AgentConfig:
    id: str = "default"
    name: str = ""
    model_id: str = ""
    preset_messages: list[PresetMessage] = field(default_factory=list)
    regex_config: ChatRegexConfig | None = None
    context_management: ContextManagement = field(default_factory=ContextManagement)
    knowledge: KnowledgeSettings = field(default_factory=KnowledgeSettings)


@dataclass
class UserProfile:
    id: str = "default"
    name: str = ""
    content: str = ""
    regex_config: ChatRegexConfig | None = None


@dataclass
class RetrievalCacheConfig:
    embedding_cache_max_items: int = 100
    session_cache_max_items: int = 20
    max_history_turns: int = 10


@dataclass
class BranchContextConfig:
    version: str = "0.1"
    token_counter: str = "estimate"
    global_regex: ChatRegexConfig = field(default_factory=ChatRegexConfig)
    agents: dict[str, AgentConfig] = field(default_factory=dict)
    user_profiles: dict[str, UserProfile] = field(default_factory=dict)
    retrieval: RetrievalCacheConfig = field(default_factory=RetrievalCacheConfig)
    providers: dict[str, dict] = field(default_factory=dict)
