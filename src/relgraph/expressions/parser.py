"""
Relation expression parser.

Grammar (whitespace is insignificant)::

    expression := [ items ]
    items      := item ( "," item )*
    item       := "[" items "]"
                | NAME ( "." item )?

``"pets, children.[pets, movies]"`` and ``"[pets, children.[pets, movies]]"``
parse to the same tree. Siblings with the same name merge, so
``"children, children.pets"`` is ``"children.pets"``.
"""

from __future__ import annotations

import re
from typing import NamedTuple

from ..exceptions import ExpressionSyntaxError
from .tree import RelationNode, RelationTree

_TOKEN = re.compile(r"\s*(?:(?P<name>[A-Za-z_$][\w$]*)|(?P<punct>[.,\[\]]))")
_SPACE = re.compile(r"\s*")


class Token(NamedTuple):
    kind: str  # "name", one of ".,[]", or "end"
    value: str
    position: int


def tokenize(expression: str) -> list[Token]:
    """Split *expression* on ``.``, ``[``, ``]`` and ``,`` into tokens."""
    tokens: list[Token] = []
    pos = 0
    end = len(expression)
    while pos < end:
        match = _TOKEN.match(expression, pos)
        if match is None:
            bad = _SPACE.match(expression, pos).end()  # type: ignore[union-attr]
            if bad == end:
                break
            raise ExpressionSyntaxError(
                expression, bad, f"unexpected character {expression[bad]!r}"
            )
        if match.group("name"):
            tokens.append(Token("name", match.group("name"), match.start("name")))
        else:
            punct = match.group("punct")
            tokens.append(Token(punct, punct, match.start("punct")))
        pos = match.end()
    tokens.append(Token("end", "", end))
    return tokens


class RelationExpressionParser:
    """Recursive-descent parser producing a :class:`RelationTree`."""

    def __init__(self, expression: str) -> None:
        self._expression = expression
        self._tokens = tokenize(expression)
        self._index = 0

    def parse(self) -> RelationTree:
        tree = RelationTree()
        if self._peek().kind == "end":
            return tree
        self._items(tree)
        token = self._peek()
        if token.kind != "end":
            self._fail(token, f"unexpected {token.value!r}")
        return tree

    # -- grammar ------------------------------------------------------------

    def _items(self, parent: RelationNode) -> None:
        self._item(parent)
        while self._peek().kind == ",":
            self._advance()
            self._item(parent)

    def _item(self, parent: RelationNode) -> None:
        token = self._advance()
        if token.kind == "[":
            if self._peek().kind == "]":
                self._fail(self._peek(), "empty relation group")
            self._items(parent)
            closing = self._advance()
            if closing.kind != "]":
                self._fail(closing, "unbalanced '[' (expected ']')")
            return
        if token.kind != "name":
            self._fail(token, "expected a relation name")
        node = parent.child(token.value)
        if self._peek().kind == ".":
            self._advance()
            self._item(node)

    # -- token helpers ------------------------------------------------------

    def _peek(self) -> Token:
        return self._tokens[self._index]

    def _advance(self) -> Token:
        token = self._tokens[self._index]
        if token.kind != "end":
            self._index += 1
        return token

    def _fail(self, token: Token, reason: str) -> None:
        if token.kind == "end":
            reason = f"{reason}, reached end of expression"
        raise ExpressionSyntaxError(self._expression, token.position, reason)


def parse_relation_expression(
    expression: str | RelationTree | None,
) -> RelationTree:
    """Parse *expression*; ``None`` or a blank string is the empty tree.

    An already-parsed tree is returned as is.
    """
    if expression is None:
        return RelationTree()
    if isinstance(expression, RelationTree):
        return expression
    return RelationExpressionParser(expression).parse()
