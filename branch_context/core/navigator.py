"""Branch navigation: sibling switching, leaf resolution, and selection memory.

All functions read and write a :class:`ConversationSession` in place and never
raise on a malformed tree. A missing node or a cycle in the parent/child links
is logged and the walk falls back to the last node it could resolve.
"""

from __future__ import annotations

import logging

from ..types import ConversationNode, ConversationSession

logger = logging.getLogger(__name__)


def get_siblings(session: ConversationSession, node_id: str) -> list[ConversationNode]:
    """Return every child of the node's parent (the node included), in branch order.

    A root, or a node whose parent no longer exists, is its own only sibling.
    """
    node = session.nodes.get(node_id)
    if node is None:
        logger.warning("get_siblings: node %s not found", node_id)
        return []

    if not node.parent_id:
        return [node]

    parent = session.nodes.get(node.parent_id)
    if parent is None:
        logger.warning("get_siblings: parent %s of %s not found", node.parent_id, node_id)
        return [node]

    siblings: list[ConversationNode] = []
    for child_id in parent.children_ids:
        child = session.nodes.get(child_id)
        if child is None:
            logger.warning("get_siblings: dangling child %s under %s", child_id, parent.id)
            continue
        siblings.append(child)
    return siblings


def get_sibling_index(session: ConversationSession, node_id: str) -> tuple[int, int]:
    """Return ``(index, total)`` of the node among its siblings (index 0 if absent)."""
    siblings = get_siblings(session, node_id)
    for i, sibling in enumerate(siblings):
        if sibling.id == node_id:
            return i, len(siblings)
    return 0, len(siblings)


def find_leaf_of_branch(session: ConversationSession, start_node_id: str) -> str:
    """Walk down from *start_node_id* to a leaf.

    At each step the remembered ``last_selected_child_id`` wins if it is still
    one of the node's children; otherwise the first child is taken.
    """
    current = session.nodes.get(start_node_id)
    if current is None:
        logger.warning("find_leaf_of_branch: start node %s not found", start_node_id)
        return start_node_id

    visited = {current.id}
    while current.children_ids:
        preferred = current.last_selected_child_id
        if preferred and preferred in current.children_ids:
            next_id = preferred
        else:
            next_id = current.children_ids[0]

        next_node = session.nodes.get(next_id)
        if next_node is None:
            logger.warning(
                "find_leaf_of_branch: child %s of %s not found, stopping", next_id, current.id,
            )
            break
        if next_node.id in visited:
            logger.warning("find_leaf_of_branch: cycle at %s, stopping", next_node.id)
            break
        visited.add(next_node.id)
        current = next_node

    return current.id


def switch_to_sibling(
    session: ConversationSession,
    current_node_id: str,
    direction: str,
) -> str:
    """Return the leaf of the previous/next sibling branch, cycling at both ends.

    With zero or one sibling the current node id is returned unchanged.
    """
    if direction not in ("prev", "next"):
        raise ValueError(f"Unknown direction: {direction!r}")

    siblings = get_siblings(session, current_node_id)
    if len(siblings) <= 1:
        logger.info("switch_to_sibling: no siblings for %s", current_node_id)
        return current_node_id

    current_index = next((i for i, n in enumerate(siblings) if n.id == current_node_id), -1)
    if current_index == -1:
        logger.warning("switch_to_sibling: %s not among its parent's children", current_node_id)
        return current_node_id

    step = 1 if direction == "next" else -1
    target_index = (current_index + step) % len(siblings)
    target = siblings[target_index]
    new_leaf_id = find_leaf_of_branch(session, target.id)

    logger.info(
        "Switched sibling branch %s -> %s (%s, %d -> %d), leaf %s",
        current_node_id, target.id, direction, current_index, target_index, new_leaf_id,
    )
    return new_leaf_id


def _path_to_root(session: ConversationSession, node_id: str) -> list[str]:
    """Ids from *node_id* up to the root (leaf first). Stops on a missing node or cycle."""
    path: list[str] = []
    seen: set[str] = set()
    current_id: str | None = node_id
    while current_id is not None:
        if current_id in seen:
            logger.warning("Cycle detected at %s while walking to root", current_id)
            break
        node = session.nodes.get(current_id)
        if node is None:
            logger.warning("Node %s missing while walking to root", current_id)
            break
        seen.add(current_id)
        path.append(current_id)
        current_id = node.parent_id
    return path


def update_selection_memory(session: ConversationSession, leaf_node_id: str) -> None:
    """Remember the branch leading to *leaf_node_id* on every ancestor.

    The full root-to-leaf path is collected first and only then written, so a
    reader never sees a partially updated ancestor chain.
    """
    path = list(reversed(_path_to_root(session, leaf_node_id)))
    updates: list[tuple[ConversationNode, str]] = []
    for parent_id, child_id in zip(path, path[1:]):
        parent = session.nodes[parent_id]
        if child_id in parent.children_ids:
            updates.append((parent, child_id))
        else:
            logger.debug(
                "update_selection_memory: %s no longer a child of %s, skipped", child_id, parent_id,
            )

    for parent, child_id in updates:
        parent.last_selected_child_id = child_id


def is_node_in_active_path(session: ConversationSession, node_id: str) -> bool:
    if session.active_leaf_id is None:
        return False
    return node_id in _path_to_root(session, session.active_leaf_id)


def get_active_path(session: ConversationSession) -> list[ConversationNode]:
    """Nodes from the root to the active leaf, root first."""
    if session.active_leaf_id is None:
        return []
    ids = reversed(_path_to_root(session, session.active_leaf_id))
    return [session.nodes[nid] for nid in ids]
