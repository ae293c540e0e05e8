"""ConversationTree: structural edits on a session's node map.

Every edit that changes parent/child links is expressed as one or more
:class:`NodeRelationChange` records. The records are computed from the tree
*before* the edit, applied forward to perform it, and can be applied backward
later to undo it.
"""

from __future__ import annotations

import copy
import logging
from typing import Literal

from ..types import (
    ChildrenChange,
    Content,
    ConversationNode,
    ConversationSession,
    DeleteResult,
    NodeRelationChange,
)
from . import navigator

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Relation-change records
# ---------------------------------------------------------------------------

def extract_relation_change(
    session: ConversationSession,
    node: ConversationNode,
    operation: Literal["create", "delete"],
) -> NodeRelationChange:
    """Relation change for adding *node* under its parent, or removing it."""
    old_parent_id = node.parent_id if operation == "delete" else None
    new_parent_id = node.parent_id if operation == "create" else None
    affected: dict[str, ChildrenChange] = {}

    if old_parent_id:
        old_parent = session.nodes.get(old_parent_id)
        if old_parent is not None:
            affected[old_parent_id] = ChildrenChange(
                old_children=list(old_parent.children_ids),
                new_children=[cid for cid in old_parent.children_ids if cid != node.id],
            )

    if new_parent_id:
        new_parent = session.nodes.get(new_parent_id)
        if new_parent is not None:
            new_children = list(new_parent.children_ids)
            if node.id not in new_children:
                new_children.append(node.id)
            affected[new_parent_id] = ChildrenChange(
                old_children=list(new_parent.children_ids),
                new_children=new_children,
            )

    return NodeRelationChange(
        node_id=node.id,
        old_parent_id=old_parent_id,
        new_parent_id=new_parent_id,
        affected_parents=affected,
    )


def capture_relation_changes_for_graft(
    session: ConversationSession,
    node_id: str,
    new_parent_id: str,
) -> list[NodeRelationChange]:
    """Reparent *node_id* (with its subtree) under *new_parent_id*."""
    node = session.nodes.get(node_id)
    if node is None:
        return []
    old_parent_id = node.parent_id
    affected: dict[str, ChildrenChange] = {}

    if old_parent_id:
        old_parent = session.nodes.get(old_parent_id)
        if old_parent is not None:
            affected[old_parent_id] = ChildrenChange(
                old_children=list(old_parent.children_ids),
                new_children=[cid for cid in old_parent.children_ids if cid != node_id],
            )

    new_parent = session.nodes.get(new_parent_id)
    if new_parent is not None:
        affected[new_parent_id] = ChildrenChange(
            old_children=list(new_parent.children_ids),
            new_children=[*new_parent.children_ids, node_id],
        )

    return [NodeRelationChange(
        node_id=node_id,
        old_parent_id=old_parent_id,
        new_parent_id=new_parent_id,
        affected_parents=affected,
    )]


def capture_relation_changes_for_move(
    session: ConversationSession,
    node_id: str,
    new_parent_id: str,
) -> list[NodeRelationChange]:
    """Reparent a single node; its children are adopted by its old parent.

    Same reparent computation as a graft, plus the moved node's own children
    list and one record per adopted child.
    """
    changes = capture_relation_changes_for_graft(session, node_id, new_parent_id)
    if not changes:
        return []
    node = session.nodes[node_id]
    old_parent_id = node.parent_id
    if not old_parent_id or old_parent_id not in session.nodes or not node.children_ids:
        return changes

    primary = changes[0]
    old_parent_change = primary.affected_parents[old_parent_id]
    old_parent_change.new_children = [*old_parent_change.new_children, *node.children_ids]
    primary.affected_parents[node_id] = ChildrenChange(
        old_children=list(node.children_ids), new_children=[],
    )
    for child_id in node.children_ids:
        changes.append(NodeRelationChange(
            node_id=child_id, old_parent_id=node_id, new_parent_id=old_parent_id,
        ))
    return changes


def apply_relation_change(
    session: ConversationSession,
    change: NodeRelationChange,
    direction: Literal["forward", "backward"],
) -> None:
    """Replay (forward) or invert (backward) one relation change."""
    node = session.nodes.get(change.node_id)
    if node is None:
        logger.warning("apply_relation_change: node %s not found", change.node_id)
        return

    node.parent_id = change.new_parent_id if direction == "forward" else change.old_parent_id

    for parent_id, children in change.affected_parents.items():
        parent = session.nodes.get(parent_id)
        if parent is None:
            logger.warning("apply_relation_change: parent %s not found", parent_id)
            continue
        source = children.new_children if direction == "forward" else children.old_children
        parent.children_ids = list(source)


def apply_relation_changes(
    session: ConversationSession,
    changes: list[NodeRelationChange],
    direction: Literal["forward", "backward"],
) -> None:
    ordered = changes if direction == "forward" else list(reversed(changes))
    for change in ordered:
        apply_relation_change(session, change, direction)


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

def get_descendants(session: ConversationSession, node_id: str) -> list[str]:
    """All descendant ids of *node_id* (excluding itself), depth first."""
    result: list[str] = []
    seen = {node_id}
    stack = list(reversed(session.nodes[node_id].children_ids)) if node_id in session.nodes else []
    while stack:
        child_id = stack.pop()
        if child_id in seen:
            continue
        seen.add(child_id)
        child = session.nodes.get(child_id)
        if child is None:
            continue
        result.append(child_id)
        stack.extend(reversed(child.children_ids))
    return result


# ---------------------------------------------------------------------------
# Edits
# ---------------------------------------------------------------------------

def add_node(session: ConversationSession, node: ConversationNode) -> NodeRelationChange:
    """Insert *node* into the session and link it under its parent."""
    if node.parent_id and node.parent_id not in session.nodes:
        logger.warning("add_node: parent %s of %s not found, stored as orphan", node.parent_id, node.id)
    change = extract_relation_change(session, node, "create")
    session.nodes[node.id] = node
    apply_relation_change(session, change, "forward")
    if node.parent_id is None and session.root_node_id is None:
        session.root_node_id = node.id
    session.touch()
    return change


def set_active_leaf(session: ConversationSession, node_id: str) -> bool:
    if node_id not in session.nodes:
        logger.warning("set_active_leaf: node %s not found", node_id)
        return False
    previous = session.active_leaf_id
    session.active_leaf_id = node_id
    navigator.update_selection_memory(session, node_id)
    session.touch()
    logger.debug("Active leaf %s -> %s in session %s", previous, node_id, session.id)
    return True


def switch_sibling_branch(session: ConversationSession, node_id: str, direction: str) -> str:
    """Move the active leaf to the previous/next sibling branch of *node_id*."""
    new_leaf_id = navigator.switch_to_sibling(session, node_id, direction)
    if new_leaf_id != session.active_leaf_id:
        session.active_leaf_id = new_leaf_id
        navigator.update_selection_memory(session, new_leaf_id)
        session.touch()
    return new_leaf_id


def edit_node(
    session: ConversationSession,
    node_id: str,
    content: Content,
    attachments: list[str] | None = None,
) -> bool:
    """Edit a user or assistant message in place."""
    node = session.nodes.get(node_id)
    if node is None:
        logger.warning("edit_node: node %s not found", node_id)
        return False
    if node.role not in ("user", "assistant"):
        logger.warning("edit_node: refusing to edit %s message %s", node.role, node_id)
        return False
    node.content = content
    if attachments is not None:
        node.attachments = list(attachments)
    # Cached token counts are stale after an edit.
    node.metadata.pop("token_count", None)
    session.touch()
    return True


def create_branch(session: ConversationSession, source_node_id: str) -> str | None:
    """Create a sibling copy of a user/assistant message and make it the active leaf."""
    source = session.nodes.get(source_node_id)
    if source is None:
        logger.warning("create_branch: source %s not found", source_node_id)
        return None
    if source.role not in ("user", "assistant"):
        logger.warning("create_branch: cannot branch %s message %s", source.role, source_node_id)
        return None

    new_node = ConversationNode(
        role=source.role,
        content=copy.deepcopy(source.content),
        parent_id=source.parent_id,
        attachments=list(source.attachments),
    )
    if source.role == "assistant":
        new_node.metadata = dict(source.metadata)
    add_node(session, new_node)
    set_active_leaf(session, new_node.id)
    logger.info("Created branch %s from %s", new_node.id, source_node_id)
    return new_node.id


def _reparent_allowed(session: ConversationSession, node_id: str, new_parent_id: str) -> bool:
    if node_id not in session.nodes or new_parent_id not in session.nodes:
        logger.warning("reparent: node %s or parent %s not found", node_id, new_parent_id)
        return False
    if node_id == session.root_node_id:
        logger.warning("reparent: cannot move the root node")
        return False
    if node_id == new_parent_id or new_parent_id in get_descendants(session, node_id):
        logger.warning("reparent: %s under %s would create a cycle", node_id, new_parent_id)
        return False
    return True


def graft_node(
    session: ConversationSession, node_id: str, new_parent_id: str,
) -> list[NodeRelationChange]:
    """Move *node_id* and its whole subtree under *new_parent_id*.

    Returns the applied relation changes (empty when refused or a no-op).
    """
    if not _reparent_allowed(session, node_id, new_parent_id):
        return []
    if session.nodes[node_id].parent_id == new_parent_id:
        return []
    changes = capture_relation_changes_for_graft(session, node_id, new_parent_id)
    apply_relation_changes(session, changes, "forward")
    session.touch()
    logger.info("Grafted %s under %s", node_id, new_parent_id)
    return changes


def move_node(
    session: ConversationSession, node_id: str, new_parent_id: str,
) -> list[NodeRelationChange]:
    """Move a single node under *new_parent_id*; its children stay with the old parent."""
    if not _reparent_allowed(session, node_id, new_parent_id):
        return []
    if session.nodes[node_id].parent_id == new_parent_id:
        return []
    changes = capture_relation_changes_for_move(session, node_id, new_parent_id)
    apply_relation_changes(session, changes, "forward")
    session.touch()
    logger.info("Moved %s under %s", node_id, new_parent_id)
    return changes


def _deepest_last_leaf(session: ConversationSession, node_id: str) -> str:
    current = session.nodes[node_id]
    seen = {node_id}
    while current.children_ids:
        last = session.nodes.get(current.children_ids[-1])
        if last is None or last.id in seen:
            break
        seen.add(last.id)
        current = last
    return current.id


def hard_delete_node(session: ConversationSession, node_id: str) -> DeleteResult:
    """Remove a node and its descendants from the tree.

    A compression node is removed alone and its children are handed to its
    parent; an active compression node hands the leaf to its first child's
    branch. Otherwise a removed active leaf moves to the deepest leaf of the
    next (else previous) sibling, or back to the parent.
    """
    node = session.nodes.get(node_id)
    if node is None:
        logger.warning("hard_delete_node: node %s not found", node_id)
        return DeleteResult(success=False)
    if node_id == session.root_node_id:
        logger.warning("hard_delete_node: cannot delete the root node")
        return DeleteResult(success=False)

    is_compression = bool(node.metadata.get("is_compression_node"))
    to_delete = [node_id] if is_compression else [node_id, *get_descendants(session, node_id)]
    to_delete_set = set(to_delete)

    parent = session.nodes.get(node.parent_id) if node.parent_id else None
    change = extract_relation_change(session, node, "delete")
    if is_compression and parent is not None:
        idx = parent.children_ids.index(node_id) if node_id in parent.children_ids else len(parent.children_ids)
        new_children = [cid for cid in parent.children_ids if cid != node_id]
        new_children[idx:idx] = node.children_ids
        change.affected_parents[parent.id].new_children = new_children

    if session.active_leaf_id in to_delete_set:
        siblings = parent.children_ids if parent is not None else []
        target: str | None = None
        if node_id in siblings:
            i = siblings.index(node_id)
            if i + 1 < len(siblings):
                target = siblings[i + 1]
            elif i - 1 >= 0:
                target = siblings[i - 1]
        if is_compression and node.children_ids and node.children_ids[0] in session.nodes:
            new_leaf = navigator.find_leaf_of_branch(session, node.children_ids[0])
        elif target is not None and target in session.nodes:
            new_leaf = _deepest_last_leaf(session, target)
        else:
            new_leaf = node.parent_id or session.root_node_id
        if new_leaf != session.active_leaf_id:
            logger.info("Active leaf %s deleted, moving to %s", session.active_leaf_id, new_leaf)
        session.active_leaf_id = new_leaf

    deleted = [copy.deepcopy(session.nodes[nid]) for nid in to_delete if nid in session.nodes]
    apply_relation_change(session, change, "forward")
    if is_compression and parent is not None:
        for child_id in node.children_ids:
            child = session.nodes.get(child_id)
            if child is not None:
                child.parent_id = parent.id
    for nid in to_delete:
        session.nodes.pop(nid, None)

    if session.active_leaf_id and session.active_leaf_id in session.nodes:
        navigator.update_selection_memory(session, session.active_leaf_id)
    session.touch()
    logger.info("Deleted %d node(s) starting at %s", len(deleted), node_id)
    return DeleteResult(success=True, deleted_nodes=deleted, relation_change=change)
