"""Move tree arena and its copy-on-write operations.

Every public operation returns a new MoveTree and leaves its argument untouched;
unchanged MoveNode values are shared between the old and new tree.
"""

import logging
from collections.abc import Iterable, Iterator
from dataclasses import replace

import rules
from models import START_POSITION, MoveNode, MoveResult, MoveTree, Side

logger = logging.getLogger("repertoire_trainer")


def create_empty_tree(side: Side) -> MoveTree:
    root_id = f"{side}-0"
    root = MoveNode(id=root_id, parent_id=None, position=START_POSITION)
    return MoveTree(root_id=root_id, nodes={root_id: root}, next_id=1)


def find_child(tree: MoveTree, parent_id: str, move_code: str) -> str | None:
    parent = tree.get(parent_id)
    if parent is None:
        return None
    for child_id in parent.children:
        child = tree.nodes.get(child_id)
        if child is not None and child.move_code == move_code:
            return child_id
    return None


class TreeBuilder:
    """Working copy of a tree for batched insertions.

    Holds its own node map and id counter; build() freezes the result into a new
    MoveTree. The source tree is never modified.
    """

    def __init__(self, tree: MoveTree):
        self.root_id = tree.root_id
        self.nodes = dict(tree.nodes)
        self.next_id = tree.next_id

    def ensure_child(self, parent_id: str, move: MoveResult) -> str:
        """Id of the child reached by move, creating it when missing."""
        parent = self.nodes.get(parent_id)
        if parent is None:
            return parent_id

        for child_id in parent.children:
            child = self.nodes.get(child_id)
            if child is not None and child.move_code == move.move_code:
                return child_id

        node_id = f"n-{self.next_id}"
        self.next_id += 1
        self.nodes[node_id] = MoveNode(
            id=node_id,
            parent_id=parent_id,
            position=move.resulting_position,
            move_notation=move.notation,
            move_code=move.move_code,
        )
        self.nodes[parent_id] = replace(parent, children=parent.children + (node_id,))
        return node_id

    def build(self) -> MoveTree:
        return MoveTree(root_id=self.root_id, nodes=self.nodes, next_id=self.next_id)


def ensure_child(tree: MoveTree, parent_id: str, move: MoveResult) -> tuple[MoveTree, str]:
    """Find-or-create a child by move code. Returns the original tree when nothing changes."""
    existing = find_child(tree, parent_id, move.move_code)
    if existing is not None or parent_id not in tree:
        return tree, existing or parent_id
    builder = TreeBuilder(tree)
    node_id = builder.ensure_child(parent_id, move)
    return builder.build(), node_id


def insert_line(tree: MoveTree, moves: Iterable[str], start_id: str | None = None) -> tuple[MoveTree, str]:
    """Insert a sequence of SAN or move-code strings below start_id (root by default).

    Existing moves are reused. The first move the rules oracle rejects ends the line.
    Returns the new tree and the id of the last node reached.
    """
    builder = TreeBuilder(tree)
    cursor = start_id if start_id in tree else tree.root_id
    for text in moves:
        result = rules.resolve_move(builder.nodes[cursor].position, text)
        if result is None:
            logger.debug("insert_line stopped at unresolvable move %r", text)
            break
        cursor = builder.ensure_child(cursor, result)
    if builder.next_id == tree.next_id:
        return tree, cursor
    return builder.build(), cursor


def build_path(tree: MoveTree, node_id: str) -> list[MoveNode]:
    """Nodes from the root down to node_id (inclusive)."""
    path: list[MoveNode] = []
    cursor: str | None = node_id
    while cursor is not None:
        node = tree.nodes.get(cursor)
        if node is None:
            break
        path.append(node)
        cursor = node.parent_id
    path.reverse()
    return path


def path_notation(tree: MoveTree, node_id: str) -> list[str]:
    return [node.move_notation for node in build_path(tree, node_id) if node.move_notation]


def remove_branch(tree: MoveTree, node_id: str) -> MoveTree:
    """Drop node_id and all of its descendants. No-op for the root or an unknown id."""
    branch_root = tree.nodes.get(node_id)
    if branch_root is None or branch_root.parent_id is None:
        return tree

    nodes = dict(tree.nodes)
    stack = [node_id]
    while stack:
        current = nodes.pop(stack.pop(), None)
        if current is not None:
            stack.extend(current.children)

    parent = nodes.get(branch_root.parent_id)
    if parent is not None:
        nodes[parent.id] = replace(parent, children=tuple(c for c in parent.children if c != node_id))
    return MoveTree(root_id=tree.root_id, nodes=nodes, next_id=tree.next_id)


def set_annotation(tree: MoveTree, node_id: str, annotation: str | None) -> MoveTree:
    node = tree.nodes.get(node_id)
    if node is None or node.annotation == annotation:
        return tree
    nodes = dict(tree.nodes)
    nodes[node_id] = replace(node, annotation=annotation)
    return replace(tree, nodes=nodes)


def reorder_children(tree: MoveTree, node_id: str, popularity: dict[str, int]) -> MoveTree:
    """Stable sort of a node's children by popularity keyed on move code, most popular first.

    Moves missing from popularity count as zero. Returns the same tree when the
    order does not change.
    """
    node = tree.nodes.get(node_id)
    if node is None or len(node.children) < 2:
        return tree

    def weight(child_id: str) -> int:
        child = tree.nodes.get(child_id)
        return popularity.get(child.move_code or "", 0) if child else 0

    ordered = tuple(sorted(node.children, key=lambda child_id: -weight(child_id)))
    if ordered == node.children:
        return tree
    nodes = dict(tree.nodes)
    nodes[node_id] = replace(node, children=ordered)
    return replace(tree, nodes=nodes)


def nodes_at_position(tree: MoveTree, position: str) -> list[MoveNode]:
    return [node for node in tree.nodes.values() if node.position == position]


def ply_depth(tree: MoveTree, node_id: str) -> int:
    return max(len(build_path(tree, node_id)) - 1, 0)


def count_leaves(tree: MoveTree, node_id: str) -> int:
    """Number of leaf nodes in the subtree rooted at node_id."""
    if node_id not in tree:
        return 0
    leaves = 0
    stack = [node_id]
    while stack:
        node = tree.nodes.get(stack.pop())
        if node is None:
            continue
        if node.children:
            stack.extend(node.children)
        else:
            leaves += 1
    return leaves


def iter_leaves(tree: MoveTree) -> Iterator[MoveNode]:
    for node in tree.nodes.values():
        if not node.children:
            yield node


def iter_lines(tree: MoveTree) -> Iterator[list[str]]:
    """Root-to-leaf notation sequences, main lines first."""
    stack: list[tuple[str, list[str]]] = [(tree.root_id, [])]
    while stack:
        node_id, line = stack.pop()
        node = tree.nodes.get(node_id)
        if node is None:
            continue
        if node.move_notation:
            line = line + [node.move_notation]
        if not node.children:
            if line:
                yield line
            continue
        for child_id in reversed(node.children):
            stack.append((child_id, line))


def integrity_errors(tree: MoveTree) -> list[str]:
    """Violations of the arborescence and sibling-uniqueness invariants; empty when valid."""
    errors = []
    root = tree.nodes.get(tree.root_id)
    if root is None:
        return [f"root {tree.root_id} missing"]
    if root.parent_id is not None or root.move_code is not None or root.position != START_POSITION:
        errors.append("root carries move data")

    seen = set()
    stack = [tree.root_id]
    while stack:
        node_id = stack.pop()
        if node_id in seen:
            errors.append(f"{node_id} reached twice")
            continue
        seen.add(node_id)
        node = tree.nodes[node_id]
        codes = set()
        for child_id in node.children:
            child = tree.nodes.get(child_id)
            if child is None:
                errors.append(f"{node_id} references missing child {child_id}")
                continue
            if child.parent_id != node_id:
                errors.append(f"{child_id} parent is {child.parent_id}, expected {node_id}")
            if child.move_code in codes:
                errors.append(f"{node_id} has duplicate move {child.move_code}")
            codes.add(child.move_code)
            stack.append(child_id)

    orphans = set(tree.nodes) - seen
    if orphans:
        errors.append(f"unreachable nodes: {sorted(orphans)}")
    return errors
