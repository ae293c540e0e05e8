"""Tests for the built-in processors and the default pipeline."""

from __future__ import annotations

import pytest

from branch_context.core.limiter import TRUNCATED_PLACEHOLDER
from branch_context.core.pipeline import PipelineContext
from branch_context.core.processors import (
    DEFAULT_EMPTY_TEXT,
    InjectionAssembler,
    RegexProcessor,
    RetrievalProcessor,
    SessionLoader,
    TokenLimiter,
    build_default_pipeline,
    format_results,
    get_active_branch_history,
    parse_kb_params,
    render_user_profile,
    scan_placeholders,
)
from branch_context.core.regex_rules import RuleSetCache
from branch_context.core.retrieval_cache import RetrievalCacheRegistry
from branch_context.types import (
    ChatRegexConfig,
    ChatRegexPreset,
    ChatRegexRule,
    ContentPart,
    ContextManagement,
    DepthRange,
    InjectionStrategy,
    KnowledgeSettings,
    ModelMatch,
    PresetMessage,
    ProcessableMessage,
    SearchResult,
    UserProfile,
)

from conftest import build_session


class FakeSearch:
    def __init__(self, results: list[SearchResult] | None = None, fail: bool = False) -> None:
        self.results = results if results is not None else [
            SearchResult(id="k1", content="Tea is good", score=0.9, kb_name="facts"),
            SearchResult(id="k2", content="Barely related", score=0.1, kb_name="facts"),
        ]
        self.fail = fail
        self.queries: list[str] = []

    async def __call__(self, query, vector, limit):
        self.queries.append(query)
        if self.fail:
            raise RuntimeError("search backend down")
        return list(self.results)


class FakeEmbedder:
    def __init__(self) -> None:
        self.calls = 0

    async def embed(self, texts, model_id):
        self.calls += 1
        return [[1.0, float(len(t) % 3)] for t in texts]


def _knowledge_agent(agent, placeholder: str = "{{kb}}", **settings):
    agent.preset_messages = [
        PresetMessage(id="kb-msg", content=f"Knowledge: {placeholder}"),
        PresetMessage(id="history", type="chat_history"),
    ]
    agent.knowledge = KnowledgeSettings(enabled=True, **settings)
    return agent


async def _run(session, agent, *processors, profile=None, global_regex=None) -> PipelineContext:
    context = PipelineContext(
        session=session, agent_config=agent, user_profile=profile, global_regex_config=global_regex,
    )
    for processor in processors:
        await processor.execute(context)
    return context


class TestSessionLoader:
    def test_history_excludes_root_and_compressed(self):
        session = build_session([
            ("root", "system", "", None),
            ("m0", "user", "q0", "root"),
            ("m1", "assistant", "a0", "m0"),
            ("sum", "assistant", "summary of q0/a0", "m1"),
            ("m2", "user", "q1", "sum"),
        ])
        session.nodes["sum"].metadata.update(is_compression_node=True, compressed_node_ids=["m0", "m1"])
        assert [n.id for n in get_active_branch_history(session)] == ["sum", "m2"]
        session.nodes["sum"].is_enabled = False
        assert [n.id for n in get_active_branch_history(session)] == ["m0", "m1", "sum", "m2"]

    @pytest.mark.asyncio
    async def test_skips_disabled_and_empty(self, linear_session, agent):
        linear_session.nodes["m1"].is_enabled = False
        linear_session.nodes["m2"].content = "   "
        context = await _run(linear_session, agent, SessionLoader())
        assert [m.source_id for m in context.messages] == ["m0", "m3"]
        assert all(m.source_type == "session_history" for m in context.messages)

    @pytest.mark.asyncio
    async def test_multimodal_content_copied(self, linear_session, agent):
        linear_session.nodes["m3"].content = [ContentPart(type="text", text="answer")]
        context = await _run(linear_session, agent, SessionLoader())
        context.messages[-1].content[0].text = "changed"
        assert linear_session.nodes["m3"].content[0].text == "answer"


class TestRegexProcessor:
    @pytest.mark.asyncio
    async def test_role_and_depth(self, linear_session, agent):
        agent.regex_config = ChatRegexConfig(presets=[ChatRegexPreset(rules=[
            ChatRegexRule(
                name="newest-assistant", regex="answer", replacement="reply",
                target_roles=["assistant"], depth_range=DepthRange(max=0),
            ),
        ])])
        context = await _run(linear_session, agent, SessionLoader(), RegexProcessor())
        assert [m.content for m in context.messages] == [
            "first question", "first answer", "second question", "second reply",
        ]
        assert linear_session.nodes["m3"].content == "second answer"

    @pytest.mark.asyncio
    async def test_layers_and_multimodal_first_text_part(self, linear_session, agent):
        linear_session.nodes["m2"].content = [
            ContentPart(type="image", source="asset://1"),
            ContentPart(type="text", text="foo one"),
            ContentPart(type="text", text="foo two"),
        ]
        global_regex = ChatRegexConfig(presets=[ChatRegexPreset(rules=[
            ChatRegexRule(name="g", regex="foo", replacement="bar", target_roles=["user"]),
        ])])
        profile = UserProfile(id="u1", regex_config=ChatRegexConfig(presets=[ChatRegexPreset(rules=[
            ChatRegexRule(name="u", regex="bar", replacement="baz", target_roles=["user"]),
        ])]))
        cache = RuleSetCache()
        context = await _run(
            linear_session, agent, SessionLoader(), RegexProcessor(rule_cache=cache),
            profile=profile, global_regex=global_regex,
        )
        parts = context.messages[2].content
        assert parts[1].text == "baz one"
        assert parts[2].text == "foo two"
        assert cache.stats()["keys"] == ["agent-1|u1|request"]
        assert context.logs[-1].message == "Applied 2 regex replacement(s)"

    @pytest.mark.asyncio
    async def test_no_rules_logged(self, linear_session, agent):
        context = await _run(linear_session, agent, SessionLoader(), RegexProcessor())
        assert context.logs[-1].message.startswith("No request-stage regex rules")

    @pytest.mark.asyncio
    async def test_failing_rule_logged_as_error(self, linear_session, agent):
        agent.regex_config = ChatRegexConfig(presets=[ChatRegexPreset(rules=[
            ChatRegexRule(
                id="bad", name="broken", regex="(unclosed",
                target_roles=["assistant"], depth_range=DepthRange(max=0),
            ),
            ChatRegexRule(name="ok", regex="second", replacement="2nd"),
        ])])
        context = await _run(linear_session, agent, SessionLoader(), RegexProcessor())
        errors = [e for e in context.logs if e.level == "error"]
        assert len(errors) == 1
        assert errors[0].processor_id == "regex"
        assert "broken" in errors[0].message
        assert errors[0].details == {"rule_id": "bad", "message_index": 3}
        assert context.messages[3].content == "2nd answer"


class TestInjectionAssembler:
    @pytest.mark.asyncio
    async def test_full_layout(self, linear_session, agent):
        agent.preset_messages = [
            PresetMessage(id="sys", content="You are helpful."),
            PresetMessage(id="profile", type="user_profile"),
            PresetMessage(id="history", type="chat_history"),
            PresetMessage(id="post", content="Remember the rules."),
            PresetMessage(
                id="before-history", content="Scene so far:",
                injection_strategy=InjectionStrategy(anchor_target="chat_history", anchor_position="before"),
            ),
            PresetMessage(id="after-profile", content="Be kind to them.",
                          injection_strategy=InjectionStrategy(anchor_target="user_profile")),
            PresetMessage(id="depth-note", content="Stay in character.",
                          injection_strategy=InjectionStrategy(depth=0)),
            PresetMessage(id="claude-only", content="Claude tweak",
                          model_match=ModelMatch(enabled=True, patterns=["^claude"])),
            PresetMessage(id="off", content="disabled", is_enabled=False),
        ]
        profile = UserProfile(id="u1", content="Alice likes tea.")
        context = await _run(linear_session, agent, SessionLoader(), InjectionAssembler(), profile=profile)
        assert [(m.source_type, m.content) for m in context.messages] == [
            ("agent_preset", "You are helpful."),
            ("user_profile", "Alice likes tea."),
            ("anchor_injection", "Be kind to them."),
            ("anchor_injection", "Scene so far:"),
            ("session_history", "first question"),
            ("session_history", "first answer"),
            ("session_history", "second question"),
            ("session_history", "second answer"),
            ("depth_injection", "Stay in character."),
            ("agent_preset", "Remember the rules."),
        ]
        assert context.messages[0].source_index == 0
        assert context.messages[-2].source_index == 6

    @pytest.mark.asyncio
    async def test_no_history_anchor_appends_history(self, linear_session, agent):
        agent.preset_messages = [PresetMessage(id="sys", content="System")]
        context = await _run(linear_session, agent, SessionLoader(), InjectionAssembler())
        assert [m.content for m in context.messages][:2] == ["System", "first question"]
        assert len(context.messages) == 5

    @pytest.mark.asyncio
    async def test_no_presets_skips(self, linear_session, agent):
        context = await _run(linear_session, agent, SessionLoader(), InjectionAssembler())
        assert len(context.messages) == 4
        assert "skipped" in context.logs[-1].message

    def test_render_user_profile(self):
        profile = UserProfile(content="Bob")
        assert render_user_profile("", profile) == "Bob"
        assert render_user_profile("User Profile", profile) == "Bob"
        assert render_user_profile("About me: {{user_profile}} / {{persona}}", profile) == "About me: Bob / Bob"
        assert render_user_profile("x", UserProfile(content="  ")) is None
        assert render_user_profile("x", None) is None


class TestKnowledgePlaceholders:
    def test_parse_params(self):
        ph = parse_kb_params("{{kb::facts::3::0.5::gate::tea, coffee}}", "facts::3::0.5::gate::tea, coffee", 2)
        assert (ph.kb_name, ph.limit, ph.min_score, ph.mode) == ("facts", 3, 0.5, "gate")
        assert ph.mode_params == ["tea", "coffee"]
        assert ph.message_index == 2

    def test_unknown_mode_falls_back(self, caplog):
        ph = parse_kb_params("{{kb::::::::weird}}", "::::::weird", 0)
        assert ph.mode == "always"
        assert ph.kb_name is None and ph.limit is None
        assert "Unknown knowledge placeholder mode" in caplog.text

    def test_scan_both_syntaxes(self):
        messages = [
            ProcessableMessage(role="system", content="A 【kb::facts】 B {{knowledge}}"),
            ProcessableMessage(role="user", content=[ContentPart(type="text", text="{{kb}}")]),
        ]
        found = scan_placeholders(messages)
        assert sorted(p.raw for p in found) == ["{{knowledge}}", "【kb::facts】"]

    def test_format_results(self):
        assert format_results([]) == DEFAULT_EMPTY_TEXT
        assert format_results([], empty_text="nothing") == "nothing"
        text = format_results(
            [SearchResult(id="k1", content="Tea", score=0.876, kb_name="facts", metadata={"key": "tea"})],
            template="{count}: {items}",
        )
        assert text == "1: **[facts]** tea\n> Tea\n(score: 0.88)"


class TestRetrievalProcessor:
    @pytest.mark.asyncio
    async def test_replaces_placeholder_and_caches(self, linear_session, agent):
        _knowledge_agent(agent)
        registry = RetrievalCacheRegistry()
        search = FakeSearch()
        processors = (SessionLoader(), InjectionAssembler(), RetrievalProcessor(registry, search=search))

        first = await _run(linear_session, agent, *processors)
        content = first.messages[0].content
        assert "Tea is good" in content
        assert "Barely related" not in content
        assert "{{kb}}" not in content
        assert search.queries == ["second question"]

        second = await _run(linear_session, agent, *processors)
        assert second.messages[0].content == content
        assert search.queries == ["second question"]
        assert len(registry.get_session_history(linear_session.id)) == 2

    @pytest.mark.asyncio
    async def test_vector_cache_with_embedder(self, linear_session, agent):
        _knowledge_agent(agent, embedding_model_id="embed-small")
        registry = RetrievalCacheRegistry()
        search, embedder = FakeSearch(), FakeEmbedder()
        processors = (
            SessionLoader(), InjectionAssembler(),
            RetrievalProcessor(registry, search=search, embedder=embedder),
        )
        await _run(linear_session, agent, *processors)
        await _run(linear_session, agent, *processors)
        assert embedder.calls == 1
        assert len(search.queries) == 1
        assert registry.get_embedding_cache().size == 1

    @pytest.mark.asyncio
    async def test_disabled_strips_placeholder(self, linear_session, agent):
        _knowledge_agent(agent)
        agent.knowledge.enabled = False
        search = FakeSearch()
        context = await _run(
            linear_session, agent, SessionLoader(), InjectionAssembler(),
            RetrievalProcessor(RetrievalCacheRegistry(), search=search),
        )
        assert context.messages[0].content == "Knowledge: "
        assert search.queries == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("interval,active", [(2, True), (3, False)])
    async def test_turn_mode(self, linear_session, agent, interval, active):
        _knowledge_agent(agent, placeholder=f"{{{{kb::facts::5::0.1::turn::{interval}}}}}")
        context = await _run(
            linear_session, agent, SessionLoader(), InjectionAssembler(),
            RetrievalProcessor(RetrievalCacheRegistry(), search=FakeSearch()),
        )
        assert ("Tea is good" in context.messages[0].content) is active

    @pytest.mark.asyncio
    @pytest.mark.parametrize("keywords,active", [("tea,coffee", True), ("coffee", False)])
    async def test_gate_mode(self, linear_session, agent, keywords, active):
        linear_session.nodes["m2"].content = "do you like tea?"
        _knowledge_agent(agent, placeholder=f"{{{{kb::facts::5::0.1::gate::{keywords}}}}}")
        context = await _run(
            linear_session, agent, SessionLoader(), InjectionAssembler(),
            RetrievalProcessor(RetrievalCacheRegistry(), search=FakeSearch()),
        )
        assert ("Tea is good" in context.messages[0].content) is active

    @pytest.mark.asyncio
    async def test_static_mode(self, linear_session, agent):
        requested: list[list[str]] = []

        async def fetch_entries(ids):
            requested.append(ids)
            return [SearchResult(id=i, content=f"entry {i}", score=1.0, kb_name="facts") for i in ids]

        _knowledge_agent(agent, placeholder="{{kb::facts::::::static::e1,e2}}")
        search = FakeSearch()
        context = await _run(
            linear_session, agent, SessionLoader(), InjectionAssembler(),
            RetrievalProcessor(RetrievalCacheRegistry(), search=search, fetch_entries=fetch_entries),
        )
        assert requested == [["e1", "e2"]]
        assert "entry e1" in context.messages[0].content
        assert search.queries == []

    @pytest.mark.asyncio
    async def test_search_failure_degrades(self, linear_session, agent):
        _knowledge_agent(agent, empty_text="(none)")
        context = await _run(
            linear_session, agent, SessionLoader(), InjectionAssembler(),
            RetrievalProcessor(RetrievalCacheRegistry(), search=FakeSearch(fail=True)),
        )
        assert context.messages[0].content == "Knowledge: (none)"
        assert any(e.level == "warn" for e in context.logs)


class TestTokenLimiter:
    @pytest.mark.asyncio
    async def test_truncates_oldest_and_records_counts(self, linear_session, agent, calculator):
        agent.context_management = ContextManagement(enabled=True, max_context_tokens=30)
        context = await _run(linear_session, agent, SessionLoader(), TokenLimiter(calculator))
        assert [m.content for m in context.messages] == [
            TRUNCATED_PLACEHOLDER, TRUNCATED_PLACEHOLDER, "second question", "second answer",
        ]
        assert linear_session.nodes["m0"].metadata["token_count"] == len("first question")
        assert linear_session.nodes["m0"].content == "first question"
        assert context.shared_data["token_limiter_stats"]["truncated_count"] == 2

    @pytest.mark.asyncio
    async def test_presets_exhaust_budget(self, linear_session, agent, calculator):
        agent.preset_messages = [PresetMessage(id="big", content="x" * 50), PresetMessage(type="chat_history")]
        agent.context_management = ContextManagement(enabled=True, max_context_tokens=40)
        context = await _run(
            linear_session, agent, SessionLoader(), InjectionAssembler(), TokenLimiter(calculator),
        )
        assert [m.source_id for m in context.messages] == ["big"]
        assert context.logs[-1].level == "warn"

    @pytest.mark.asyncio
    async def test_disabled_is_noop(self, linear_session, agent, calculator):
        context = await _run(linear_session, agent, SessionLoader(), TokenLimiter(calculator))
        assert len(context.messages) == 4
        assert calculator.calls == []


class TestDefaultPipeline:
    @pytest.mark.asyncio
    async def test_end_to_end(self, linear_session, agent, calculator):
        agent.preset_messages = [
            PresetMessage(id="sys", content="Facts: 【kb】"),
            PresetMessage(id="history", type="chat_history"),
        ]
        agent.regex_config = ChatRegexConfig(presets=[ChatRegexPreset(rules=[
            ChatRegexRule(regex="second", replacement="2nd"),
        ])])
        agent.knowledge = KnowledgeSettings(enabled=True)
        agent.context_management = ContextManagement(enabled=True, max_context_tokens=500)
        pipeline = build_default_pipeline(calculator, RetrievalCacheRegistry(), search=FakeSearch())
        assert [p.id for p in pipeline.sorted_processors()] == [
            "session-loader", "regex", "injection-assembler", "retrieval", "token-limiter",
        ]

        context = PipelineContext(session=linear_session, agent_config=agent)
        await pipeline.execute(context)
        assert [m.role for m in context.messages] == ["system", "user", "assistant", "user", "assistant"]
        assert "Tea is good" in context.messages[0].content
        assert context.messages[-1].content == "2nd answer"
        assert not [e for e in context.logs if e.level == "error"]
