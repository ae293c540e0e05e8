"""Shared fixtures for branch-context tests."""

from __future__ import annotations

import pytest

from branch_context.core import tree
from branch_context.types import (
    AgentConfig,
    ConversationNode,
    ConversationSession,
    TokenCount,
)


class CharCalculator:
    """One token per character; raises for text containing ``boom``."""

    def __init__(self) -> None:
        self.calls: list[str] = []

    async def calculate_tokens(self, content: str, model_id: str) -> TokenCount:
        self.calls.append(content)
        if "boom" in content:
            raise RuntimeError("tokenizer exploded")
        return TokenCount(count=len(content), is_estimated=False, tokenizer_name="chars")


def build_session(spec: list[tuple[str, str, str, str | None]], active: str | None = None) -> ConversationSession:
    """Build a session from ``(id, role, content, parent_id)`` tuples, in order."""
    session = ConversationSession(id="s1")
    for node_id, role, content, parent_id in spec:
        tree.add_node(session, ConversationNode(id=node_id, role=role, content=content, parent_id=parent_id))
    session.active_leaf_id = active or spec[-1][0]
    return session


@pytest.fixture
def calculator() -> CharCalculator:
    return CharCalculator()


@pytest.fixture
def branching_session() -> ConversationSession:
    """root -> u1 -> a1 -> {u2a -> a2a, u2b -> a2b -> u3b}; active leaf a2a.

    ::

        root
         └ u1
            └ a1
               ├ u2a ── a2a
               └ u2b ── a2b ── u3b
    """
    return build_session(
        [
            ("root", "system", "", None),
            ("u1", "user", "hello", "root"),
            ("a1", "assistant", "hi there", "u1"),
            ("u2a", "user", "question A", "a1"),
            ("a2a", "assistant", "answer A", "u2a"),
            ("u2b", "user", "question B", "a1"),
            ("a2b", "assistant", "answer B", "u2b"),
            ("u3b", "user", "follow-up B", "a2b"),
        ],
        active="a2a",
    )


@pytest.fixture
def linear_session() -> ConversationSession:
    """root -> m0 (user) -> m1 (assistant) -> m2 (user) -> m3 (assistant)."""
    return build_session([
        ("root", "system", "", None),
        ("m0", "user", "first question", "root"),
        ("m1", "assistant", "first answer", "m0"),
        ("m2", "user", "second question", "m1"),
        ("m3", "assistant", "second answer", "m2"),
    ])


@pytest.fixture
def agent() -> AgentConfig:
    return AgentConfig(id="agent-1", name="Test agent", model_id="openai:gpt-4o")
