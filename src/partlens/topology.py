"""
Partition topology builder.

Reconstructs partition trees from the flat parent/child links carried by
RelationFacts. The build is an explicit breadth-first expansion over a
parent -> children index, so depth limiting and cycle protection are plain
guards instead of a recursion cut-off:

- A child whose depth would exceed ``max_depth`` is not attached; its parent
  is flagged TRUNCATED and keeps the omitted identities.
- A child that already lies on the path being expanded (cycle) is treated
  the same way.
- A child whose parent is absent from the snapshot gets an
  OrphanPartitionError recorded and becomes a synthetic root.
- Facts reachable from no root (e.g. a closed cycle) become synthetic roots
  after the main pass, so nothing in the snapshot is dropped.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, Optional, Sequence

from partlens.catalog import RelationFact
from partlens.exceptions import OrphanPartitionError
from partlens.thresholds import DEFAULT_MAX_DEPTH

logger = logging.getLogger(__name__)


class NodeRole(Enum):
    """Position of a node in its partition tree."""
    ROOT = "root"
    INTERMEDIATE = "intermediate"
    LEAF = "leaf"


@dataclass
class PartitionNode:
    """A RelationFact placed in a partition tree."""

    fact: RelationFact
    depth: int
    path: tuple[str, ...]
    children: list[str] = field(default_factory=list)
    truncated: bool = False
    truncated_children: list[str] = field(default_factory=list)
    orphan: Optional[OrphanPartitionError] = None
    synthetic: bool = False

    @property
    def name(self) -> str:
        return self.fact.name

    @property
    def is_root(self) -> bool:
        return self.depth == 0

    @property
    def role(self) -> NodeRole:
        if not self.children:
            return NodeRole.LEAF
        return NodeRole.ROOT if self.is_root else NodeRole.INTERMEDIATE

    @property
    def is_parent(self) -> bool:
        """True for nodes that get a ParentAggregate (partitioned or with attached children)."""
        return self.fact.is_partitioned or bool(self.children)


@dataclass
class Forest:
    """All partition trees of one snapshot."""

    roots: list[str] = field(default_factory=list)
    nodes: dict[str, PartitionNode] = field(default_factory=dict)
    orphans: list[OrphanPartitionError] = field(default_factory=list)
    truncated: list[str] = field(default_factory=list)
    max_depth: int = DEFAULT_MAX_DEPTH

    def __getitem__(self, name: str) -> PartitionNode:
        return self.nodes[name]

    def __len__(self) -> int:
        return len(self.nodes)

    def children_of(self, name: str) -> list[PartitionNode]:
        return [self.nodes[c] for c in self.nodes[name].children]

    def walk(self, root: str) -> Iterator[PartitionNode]:
        """Pre-order traversal; children in input order."""
        stack = [root]
        while stack:
            node = self.nodes[stack.pop()]
            yield node
            stack.extend(reversed(node.children))

    def post_order(self, root: str) -> list[PartitionNode]:
        """Post-order traversal (children before their parent)."""
        out: list[PartitionNode] = []
        stack: list[tuple[str, bool]] = [(root, False)]
        while stack:
            name, expanded = stack.pop()
            node = self.nodes[name]
            if expanded:
                out.append(node)
                continue
            stack.append((name, True))
            for child in reversed(node.children):
                stack.append((child, False))
        return out

    def descendants(self, root: str) -> list[PartitionNode]:
        """Every direct or transitive descendant of ``root`` in post-order."""
        return [n for n in self.post_order(root) if n.name != root]


def _index(facts: Sequence[RelationFact]) -> tuple[dict[str, RelationFact], dict[str, list[str]]]:
    by_name: dict[str, RelationFact] = {}
    for f in facts:
        if f.name in by_name:
            logger.warning(f"Duplicate relation {f.name} in snapshot; keeping first occurrence")
            continue
        by_name[f.name] = f

    children: dict[str, list[str]] = {}
    for f in by_name.values():
        if f.parent is not None:
            children.setdefault(f.parent, []).append(f.name)
    return by_name, children


def build_forest(facts: Sequence[RelationFact], max_depth: int = DEFAULT_MAX_DEPTH) -> Forest:
    """
    Build the partition forest.

    Args:
        facts: Flat relation facts in any order (children may precede parents)
        max_depth: Deepest level that is attached (root = 0)

    Returns:
        Forest with roots in input order: real roots and orphan roots as they
        appear in ``facts``, then roots recovered from unreachable facts
    """
    by_name, children_index = _index(facts)
    forest = Forest(max_depth=max_depth)

    for f in by_name.values():
        if f.parent is None:
            if f.is_partitioned or f.name in children_index:
                forest.roots.append(f.name)
        elif f.parent not in by_name:
            err = OrphanPartitionError(f.name, f.parent)
            logger.warning(str(err))
            forest.orphans.append(err)
            forest.roots.append(f.name)

    orphan_by_name = {e.partition: e for e in forest.orphans}
    for name in list(forest.roots):
        _expand(forest, by_name[name], children_index, by_name, orphan=orphan_by_name.get(name))

    # Anything not reached is part of a cycle or hangs under one.
    for f in by_name.values():
        if f.name in forest.nodes:
            continue
        if f.parent is None and f.name not in children_index:
            # Plain table that is neither partitioned nor a partition.
            continue
        entry = _cycle_entry(f.name, by_name, forest)
        if entry is None:
            continue
        logger.warning(f"{entry} is not reachable from any root; attaching as synthetic root")
        forest.roots.append(entry)
        _expand(forest, by_name[entry], children_index, by_name, synthetic=True)

    logger.debug(
        f"Built forest: {len(forest.roots)} roots, {len(forest.nodes)} nodes, "
        f"{len(forest.orphans)} orphans, {len(forest.truncated)} truncated"
    )
    return forest


def _cycle_entry(name: str, by_name: dict[str, RelationFact], forest: Forest) -> Optional[str]:
    """
    Walk up the parent chain of an unreached fact.

    Returns the first repeated identity (a member of the cycle that hides the
    chain from every root), or None when the chain ends at an attached node,
    i.e. the fact sits below a depth-truncated branch.
    """
    seen: set[str] = set()
    cur: Optional[str] = name
    while cur is not None and cur in by_name:
        if cur in forest.nodes:
            return None
        if cur in seen:
            return cur
        seen.add(cur)
        cur = by_name[cur].parent
    # Chain ended without reaching the forest; cannot happen for orphans
    # (they are roots already), so treat the start as its own entry.
    return name


def _expand(
    forest: Forest,
    root_fact: RelationFact,
    children_index: dict[str, list[str]],
    by_name: dict[str, RelationFact],
    orphan: Optional[OrphanPartitionError] = None,
    synthetic: bool = False,
) -> None:
    root = PartitionNode(
        fact=root_fact,
        depth=0,
        path=(root_fact.name,),
        orphan=orphan,
        synthetic=synthetic or orphan is not None,
    )
    forest.nodes[root.name] = root

    queue = deque([root])
    while queue:
        node = queue.popleft()
        for child_name in children_index.get(node.name, []):
            depth = node.depth + 1
            if depth > forest.max_depth or child_name in node.path or child_name in forest.nodes:
                node.truncated_children.append(child_name)
                continue
            child = PartitionNode(
                fact=by_name[child_name],
                depth=depth,
                path=node.path + (child_name,),
            )
            forest.nodes[child_name] = child
            node.children.append(child_name)
            queue.append(child)

        if node.truncated_children:
            node.truncated = True
            forest.truncated.append(node.name)
            logger.warning(
                f"TRUNCATED {node.name} at depth {node.depth}: "
                f"not expanding {', '.join(node.truncated_children)}"
            )
