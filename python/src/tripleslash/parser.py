"""
Parser for Q# callable declarations.

Pulls out the details needed to document a function or operation: its
name, the names of its parameters (nested parameter tuples are flattened in
declaration order), its type parameters, and whether it returns something
other than ``Unit``.

    operation ApplyTwice<'T> (op : ('T => Unit), (target : 'T, count : Int)) : Unit is Adj { ... }

The body, characteristics (``is Adj + Ctl``) and anything after the return
type are ignored.
"""

import re
from typing import Iterable, Iterator, List, NamedTuple, Optional

from .core.logging import LogEvent, StructuredLogger
from .core.message import MethodSignatureResponse

CALLABLE_KEYWORDS = ("operation", "function")
MODIFIERS = ("internal", "private", "public")
UNIT_TYPES = ("Unit", "()")


class SignatureSyntaxError(ValueError):
    """Raised when a signature can't be parsed as a function or operation."""


class Token(NamedTuple):
    kind: str
    text: str
    position: int


_TOKEN_PATTERN = re.compile(
    r"""
    (?P<comment>//[^\n]*)
  | (?P<space>\s+)
  | (?P<arrow>=>|->)
  | (?P<type_param>'[A-Za-z_][A-Za-z0-9_]*)
  | (?P<ident>[A-Za-z_][A-Za-z0-9_.]*)
  | (?P<number>[0-9]+)
  | (?P<punct>[()<>\[\],:{};+=@*\-])
    """,
    re.VERBOSE,
)


def iter_tokens(text: str) -> Iterator[Token]:
    """
    Yield tokens from signature text, dropping whitespace and comments.

    Scanning is lazy: text past the last token consumed is never examined,
    so a callable body may hold anything.
    """
    position = 0
    while position < len(text):
        match = _TOKEN_PATTERN.match(text, position)
        if match is None:
            raise SignatureSyntaxError(
                f"Unexpected character {text[position]!r} at position {position}"
            )
        kind = match.lastgroup
        if kind not in ("comment", "space"):
            yield Token(kind, match.group(), position)
        position = match.end()


def tokenize(text: str) -> List[Token]:
    """Split the whole text into tokens."""
    return list(iter_tokens(text))


class _Cursor:
    """Walks a token stream, pulling tokens only as they are looked at."""

    def __init__(self, tokens: Iterable[Token]):
        self._tokens = iter(tokens)
        self._pending: List[Token] = []

    def peek(self, offset: int = 0) -> Optional[Token]:
        while len(self._pending) <= offset:
            token = next(self._tokens, None)
            if token is None:
                return None
            self._pending.append(token)
        return self._pending[offset]

    def next(self) -> Optional[Token]:
        token = self.peek()
        if token is not None:
            self._pending.pop(0)
        return token

    def at(self, text: str) -> bool:
        token = self.peek()
        return token is not None and token.text == text

    def expect(self, text: str, what: str) -> Token:
        token = self.next()
        if token is None:
            raise SignatureSyntaxError(f"Expected {what} but the signature ended")
        if token.text != text:
            raise SignatureSyntaxError(
                f"Expected {what} at position {token.position}, found {token.text!r}"
            )
        return token


class SignatureParser:
    """Default parsing collaborator used by the worker's request server."""

    def __init__(self, logger: Optional[StructuredLogger] = None):
        self.logger = logger or StructuredLogger()

    def parse_method_signature(self, signature: str) -> MethodSignatureResponse:
        """
        Parse a raw method signature.

        Raises:
            SignatureSyntaxError: If the text isn't a function or operation
                declaration
        """
        cursor = _Cursor(iter_tokens(signature))

        while cursor.peek() is not None and cursor.peek().text in MODIFIERS:
            cursor.next()

        keyword = cursor.next()
        if keyword is None or keyword.text not in CALLABLE_KEYWORDS:
            warning = (
                "Tried to parse a method signature, but it wasn't a function or "
                f"operation. Contents: {signature}"
            )
            self.logger.warn(LogEvent.PARSE_ERROR, warning)
            raise SignatureSyntaxError(warning)

        name_token = cursor.next()
        if name_token is None or name_token.kind != "ident":
            raise SignatureSyntaxError(f"Expected a name after '{keyword.text}'")

        type_parameters = self._parse_type_parameters(cursor)

        parameters: List[str] = []
        cursor.expect("(", "'(' to open the parameter list")
        self._parse_parameter_tuple(cursor, parameters)

        cursor.expect(":", "':' before the return type")
        return_type = self._read_return_type(cursor)
        has_return_type = return_type not in UNIT_TYPES

        self.logger.debug(
            LogEvent.SIGNATURE_PARSED,
            f"Parsed {keyword.text} {name_token.text}",
            metadata={
                "parameters": parameters,
                "type_parameters": type_parameters,
                "return_type": return_type,
            },
        )

        return MethodSignatureResponse(
            name=name_token.text,
            parameter_names=parameters,
            type_parameter_names=type_parameters,
            has_return_type=has_return_type,
        )

    def _parse_type_parameters(self, cursor: _Cursor) -> List[str]:
        if not cursor.at("<"):
            return []
        cursor.next()

        names = []
        while True:
            token = cursor.next()
            if token is None or token.kind != "type_param":
                raise SignatureSyntaxError("Expected a type parameter such as 'T")
            names.append(token.text)
            if cursor.at(","):
                cursor.next()
                continue
            cursor.expect(">", "'>' to close the type parameters")
            return names

    def _parse_parameter_tuple(self, cursor: _Cursor, names: List[str]):
        """Parse the items of a tuple whose '(' was already consumed."""
        if cursor.at(")"):
            cursor.next()
            return

        while True:
            token = cursor.peek()
            if token is None:
                raise SignatureSyntaxError("The parameter list is not closed")

            if token.text == "(":
                cursor.next()
                self._parse_parameter_tuple(cursor, names)
            elif token.kind == "ident" and cursor.peek(1) is not None and cursor.peek(1).text == ":":
                names.append(token.text)
                cursor.next()
                cursor.next()
                self._skip_type(cursor)
            else:
                raise SignatureSyntaxError(
                    f"Expected a parameter name at position {token.position}, found {token.text!r}"
                )

            separator = cursor.next()
            if separator is None:
                raise SignatureSyntaxError("The parameter list is not closed")
            if separator.text == ")":
                return
            if separator.text != ",":
                raise SignatureSyntaxError(
                    f"Expected ',' or ')' at position {separator.position}, found {separator.text!r}"
                )

    def _skip_type(self, cursor: _Cursor):
        """Consume a parameter type, stopping before a top-level ',' or ')'."""
        depth = 0
        consumed = 0
        while True:
            token = cursor.peek()
            if token is None:
                raise SignatureSyntaxError("The parameter list is not closed")
            if depth == 0 and token.text in (",", ")"):
                break
            if token.text in ("(", "["):
                depth += 1
            elif token.text in (")", "]"):
                depth -= 1
            cursor.next()
            consumed += 1
        if consumed == 0:
            raise SignatureSyntaxError(f"Missing parameter type at position {token.position}")

    def _read_return_type(self, cursor: _Cursor) -> str:
        """Collect the return type up to 'is', '{', ';' or the end."""
        parts = []
        depth = 0
        while True:
            token = cursor.peek()
            if token is None:
                break
            if depth == 0 and (token.text in ("is", "{", ";")):
                break
            if token.text in ("(", "["):
                depth += 1
            elif token.text in (")", "]"):
                depth -= 1
            parts.append(token.text)
            cursor.next()

        if not parts:
            raise SignatureSyntaxError("Missing return type")
        return "".join(parts)
