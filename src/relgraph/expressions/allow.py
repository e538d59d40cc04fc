"""AllowList: restricts which relation paths a caller may touch."""

from __future__ import annotations

from typing import TYPE_CHECKING

from ..exceptions import NotAllowedError
from .parser import parse_relation_expression

if TYPE_CHECKING:
    from .tree import RelationNode, RelationTree


class AllowList:
    """Relation paths permitted for eager fetch or graph insert.

    Uses the same grammar as the requests it guards. A requested path is
    allowed iff it is a prefix of some allowed path: with
    ``"[pets, children.[pets, movies]]"``, ``"children"`` and
    ``"children.pets"`` pass while ``"children.children"`` does not.
    ``None`` means unrestricted.
    """

    def __init__(self, expression: str | RelationTree | None) -> None:
        self.unrestricted = expression is None
        self.tree = parse_relation_expression(expression)

    def __repr__(self) -> str:
        if self.unrestricted:
            return "AllowList(None)"
        return f"AllowList({self.tree.to_expression()!r})"

    def allows(self, path: str) -> bool:
        return self.unrestricted or self.tree.find(path) is not None

    def check_path(self, path: str) -> None:
        """Raise :class:`NotAllowedError` unless *path* is allowed."""
        if not self.allows(path):
            raise NotAllowedError(path)

    def check(self, requested: RelationTree) -> None:
        """Raise :class:`NotAllowedError` naming the first disallowed path."""
        if self.unrestricted:
            return
        _check_node(requested, self.tree)


def _check_node(requested: RelationNode, allowed: RelationNode) -> None:
    for name, child in requested.children.items():
        allowed_child = allowed.children.get(name)
        if allowed_child is None:
            raise NotAllowedError(child.path)
        _check_node(child, allowed_child)
