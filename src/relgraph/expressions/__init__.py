"""Relation expressions: ``"pets, children.[pets, movies]"``."""

from __future__ import annotations

from .allow import AllowList
from .parser import RelationExpressionParser, parse_relation_expression, tokenize
from .tree import RelationNode, RelationTree

__all__ = [
    "AllowList",
    "RelationExpressionParser",
    "RelationNode",
    "RelationTree",
    "parse_relation_expression",
    "tokenize",
]
