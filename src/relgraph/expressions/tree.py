"""RelationTree: parsed form of a relation expression."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator, Mapping

    from sqlalchemy import Select

    SelectFilter = Callable[[Select[Any]], Select[Any]]

logger = logging.getLogger("relgraph.expressions")


@dataclass
class RelationNode:
    """One relation name in the tree, with its (optional) fetch filter."""

    name: str
    path: str
    children: dict[str, RelationNode] = field(default_factory=dict)
    filter: SelectFilter | None = None

    def child(self, name: str) -> RelationNode:
        """Return the child called *name*, creating it if needed."""
        node = self.children.get(name)
        if node is None:
            path = f"{self.path}.{name}" if self.path else name
            node = RelationNode(name, path)
            self.children[name] = node
        return node

    def to_expression(self) -> str:
        if not self.children:
            return self.name
        inner = _render(self.children)
        return f"{self.name}.{inner}" if self.name else inner


def _render(children: Mapping[str, RelationNode]) -> str:
    parts = [child.to_expression() for child in children.values()]
    if len(parts) == 1:
        return parts[0]
    return "[" + ", ".join(parts) + "]"


class RelationTree(RelationNode):
    """Root of a parsed relation expression (has no name of its own)."""

    def __init__(self) -> None:
        super().__init__(name="", path="")

    @property
    def is_empty(self) -> bool:
        return not self.children

    def walk(self) -> Iterator[RelationNode]:
        """Yield every node breadth-first (level by level)."""
        queue: deque[RelationNode] = deque(self.children.values())
        while queue:
            node = queue.popleft()
            yield node
            queue.extend(node.children.values())

    def paths(self) -> list[str]:
        return [node.path for node in self.walk()]

    def find(self, path: str) -> RelationNode | None:
        node: RelationNode = self
        for name in path.split("."):
            found = node.children.get(name)
            if found is None:
                return None
            node = found
        return node

    def attach_filters(self, filters: Mapping[str, SelectFilter]) -> list[str]:
        """Attach filters by exact path; return the keys that matched nothing.

        Unmatched keys are not an error: a filter only applies if its relation
        was requested.
        """
        unmatched: list[str] = []
        for path, fn in filters.items():
            node = self.find(path)
            if node is None:
                unmatched.append(path)
                continue
            node.filter = fn
        if unmatched:
            logger.debug("Ignoring eager filters for unrequested paths %s", unmatched)
        return unmatched

    def copy(self) -> RelationTree:
        """Copy of the node structure with the filters attached so far.

        Parsed trees are shared across calls; per-call filters go on a copy.
        """
        tree = RelationTree()
        _copy_children(self, tree)
        return tree

    def to_expression(self) -> str:
        if not self.children:
            return ""
        return _render(self.children)

    def __repr__(self) -> str:
        return f"RelationTree({self.to_expression()!r})"


def _copy_children(source: RelationNode, target: RelationNode) -> None:
    for name, child in source.children.items():
        node = target.child(name)
        node.filter = child.filter
        _copy_children(child, node)
