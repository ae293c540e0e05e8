"""Tests for branch navigation and selection memory."""

from __future__ import annotations

import pytest

from branch_context.core import navigator
from branch_context.types import ConversationNode

from conftest import build_session


class TestSiblings:
    def test_children_in_branch_order(self, branching_session):
        siblings = navigator.get_siblings(branching_session, "u2b")
        assert [n.id for n in siblings] == ["u2a", "u2b"]

    def test_root_is_its_own_sibling(self, branching_session):
        assert [n.id for n in navigator.get_siblings(branching_session, "root")] == ["root"]

    def test_orphan_is_its_own_sibling(self, branching_session):
        branching_session.nodes["orphan"] = ConversationNode(id="orphan", parent_id="gone")
        assert [n.id for n in navigator.get_siblings(branching_session, "orphan")] == ["orphan"]

    def test_dangling_child_dropped(self, branching_session):
        branching_session.nodes["a1"].children_ids.insert(1, "ghost")
        siblings = navigator.get_siblings(branching_session, "u2a")
        assert [n.id for n in siblings] == ["u2a", "u2b"]

    def test_missing_node(self, branching_session):
        assert navigator.get_siblings(branching_session, "nope") == []

    def test_sibling_index(self, branching_session):
        assert navigator.get_sibling_index(branching_session, "u2b") == (1, 2)
        assert navigator.get_sibling_index(branching_session, "u1") == (0, 1)


class TestFindLeaf:
    def test_defaults_to_first_child(self, branching_session):
        assert navigator.find_leaf_of_branch(branching_session, "a1") == "a2a"

    def test_prefers_last_selected_child(self, branching_session):
        branching_session.nodes["a1"].last_selected_child_id = "u2b"
        assert navigator.find_leaf_of_branch(branching_session, "a1") == "u3b"

    def test_stale_selection_ignored(self, branching_session):
        branching_session.nodes["a1"].last_selected_child_id = "deleted"
        assert navigator.find_leaf_of_branch(branching_session, "a1") == "a2a"

    def test_stops_at_dangling_child(self, branching_session):
        branching_session.nodes["a2a"].children_ids.append("ghost")
        assert navigator.find_leaf_of_branch(branching_session, "u2a") == "a2a"

    def test_cycle_does_not_loop(self):
        session = build_session([("x", "user", "x", None), ("y", "assistant", "y", "x")])
        session.nodes["y"].children_ids.append("x")
        assert navigator.find_leaf_of_branch(session, "x") == "y"


class TestSwitchToSibling:
    def test_next_and_prev(self, branching_session):
        assert navigator.switch_to_sibling(branching_session, "u2a", "next") == "u3b"
        assert navigator.switch_to_sibling(branching_session, "u2b", "prev") == "a2a"

    def test_wraps_both_ways(self, branching_session):
        assert navigator.switch_to_sibling(branching_session, "u2b", "next") == "a2a"
        assert navigator.switch_to_sibling(branching_session, "u2a", "prev") == "u3b"

    def test_single_child_is_noop(self, branching_session):
        assert navigator.switch_to_sibling(branching_session, "u1", "next") == "u1"

    def test_n_switches_return_to_start(self):
        session = build_session([
            ("root", "system", "", None),
            ("p", "user", "p", "root"),
            ("c0", "assistant", "0", "p"),
            ("c1", "assistant", "1", "p"),
            ("c2", "assistant", "2", "p"),
        ])
        for start in ("c0", "c1", "c2"):
            current = start
            for _ in range(3):
                current = navigator.switch_to_sibling(session, current, "next")
            assert current == start

    def test_bad_direction(self, branching_session):
        with pytest.raises(ValueError):
            navigator.switch_to_sibling(branching_session, "u2a", "sideways")


class TestSelectionMemory:
    def test_round_trip(self, branching_session):
        branching_session.active_leaf_id = "u3b"
        navigator.update_selection_memory(branching_session, "u3b")
        assert branching_session.nodes["a1"].last_selected_child_id == "u2b"
        assert navigator.find_leaf_of_branch(branching_session, "a1") == "u3b"
        assert navigator.find_leaf_of_branch(branching_session, "root") == "u3b"

    def test_skips_parent_that_lost_child(self, branching_session):
        branching_session.nodes["a1"].children_ids.remove("u2b")
        navigator.update_selection_memory(branching_session, "u3b")
        assert branching_session.nodes["a1"].last_selected_child_id is None
        assert branching_session.nodes["u2b"].last_selected_child_id == "a2b"


class TestActivePath:
    def test_membership(self, branching_session):
        assert navigator.is_node_in_active_path(branching_session, "u2a")
        assert not navigator.is_node_in_active_path(branching_session, "u2b")

    def test_path_root_first(self, branching_session):
        path = navigator.get_active_path(branching_session)
        assert [n.id for n in path] == ["root", "u1", "a1", "u2a", "a2a"]

    def test_no_active_leaf(self, branching_session):
        branching_session.active_leaf_id = None
        assert navigator.get_active_path(branching_session) == []
        assert not navigator.is_node_in_active_path(branching_session, "root")
