"""
RapidResQ Emergency Command Grammar v1.0
========================================
Lexer and recursive-descent parser for the emergency command language.

Grammar
-------
<command>        ::= <alert> | <query> | <status> | <help>
<alert>          ::= "ALERT" <alertType> <preposition> <location> <alertClause>*
<alertClause>    ::= "priority" <PRIORITY> | <PRIORITY> "priority" | <contactKw> <CONTACT>
<query>          ::= "QUERY" <serviceType> <preposition> <location>
<status>         ::= "STATUS" <requestId>
<help>           ::= "HELP" <topic>?

<alertType>      ::= <word>+            (up to the first preposition)
<serviceType>    ::= <word>+            (up to the first preposition)
<preposition>    ::= "AT" | "NEAR" | "IN"
<location>       ::= <GPS> | <word>+    (up to the next clause keyword)
<contactKw>      ::= "contact" | "call"
<PRIORITY>       ::= "CRITICAL" | "URGENT" | "HIGH" | "MEDIUM" | "LOW"
<GPS>            ::= "GPS:" <number> "," <number>
<CONTACT>        ::= "+"? <digit> ("-"? <digit>)+

Keywords are case-insensitive; priority levels are keywords only when
written in upper case so that place names such as "Low Street" stay words.

Error Codes
-----------
  L001  Unrecognised lexeme
  L002  Malformed GPS literal
  L003  Unknown or missing command keyword
  P001  Missing mandatory token
  P002  Unexpected token
  W004  Command longer than the practical bound
"""

from __future__ import annotations

import difflib
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from resq_config import MAX_COMMAND_LENGTH


# ==========================================
# Constants
# ==========================================

COMMAND_KEYWORDS = ("ALERT", "QUERY", "STATUS", "HELP")
PREPOSITIONS     = ("AT", "NEAR", "IN")
PRIORITY_LEVELS  = ("CRITICAL", "URGENT", "HIGH", "MEDIUM", "LOW")
PRIORITY_KEYWORD = "PRIORITY"
CONTACT_KEYWORDS = ("CONTACT", "CALL")

_GPS_RE   = re.compile(r"^GPS:(-?\d+(?:\.\d+)?),(-?\d+(?:\.\d+)?)$", re.IGNORECASE)
_PHONE_RE = re.compile(r"^\+?\d(?:-?\d){1,14}$")
_WORD_RE  = re.compile(r"^[^\W_][\w.,'’/&()#+-]*$")


# ==========================================
# Data Classes
# ==========================================

class TokenKind(str, Enum):
    COMMAND        = "COMMAND"
    PREPOSITION    = "PREPOSITION"
    PRIORITY_KW    = "PRIORITY_KW"
    PRIORITY_LEVEL = "PRIORITY_LEVEL"
    CONTACT_KW     = "CONTACT_KW"
    GPS            = "GPS"
    PHONE          = "PHONE"
    WORD           = "WORD"


class Severity(str, Enum):
    ERROR   = "error"
    WARNING = "warning"


class Stage(str, Enum):
    LEXER    = "lexer"
    PARSER   = "parser"
    SEMANTIC = "semantic"


_ERROR_TYPES = {
    Stage.LEXER:    "LexicalError",
    Stage.PARSER:   "SyntaxError",
    Stage.SEMANTIC: "SemanticError",
}


@dataclass(frozen=True)
class Token:
    kind: TokenKind
    lexeme: str
    position: int  # character offset in the original command

    @property
    def upper(self) -> str:
        return self.lexeme.upper()

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "lexeme": self.lexeme, "position": self.position}

    def __repr__(self) -> str:
        return f"Token({self.kind.value}, {self.lexeme!r}, pos={self.position})"


@dataclass
class Diagnostic:
    severity: Severity
    stage: Stage
    code: str                   # L001, P001, S001, W001, ...
    message: str
    position: int = -1          # character offset, or -1 for the whole command
    expected: Tuple[str, ...] = ()
    field_name: Optional[str] = None
    hint: Optional[str] = None

    @property
    def error_type(self) -> str:
        if self.severity is Severity.WARNING:
            return "Warning"
        return _ERROR_TYPES[self.stage]

    def is_error(self) -> bool:
        return self.severity is Severity.ERROR

    def is_warning(self) -> bool:
        return self.severity is Severity.WARNING

    def to_dict(self) -> dict:
        data = {
            "severity": self.severity.value,
            "stage": self.stage.value,
            "type": self.error_type,
            "code": self.code,
            "message": self.message,
            "position": self.position,
        }
        if self.expected:
            data["expected"] = list(self.expected)
        if self.field_name:
            data["field"] = self.field_name
        if self.hint:
            data["hint"] = self.hint
        return data

    def __str__(self) -> str:
        loc = f" (pos {self.position})" if self.position >= 0 else ""
        return f"[{self.code}]{loc} {self.message}"


@dataclass
class ParseNode:
    """A parse-tree node labelled by the grammar rule that produced it."""
    rule: str
    token: Optional[Token] = None
    children: List["ParseNode"] = field(default_factory=list)

    def add(self, child: Optional["ParseNode"]) -> Optional["ParseNode"]:
        if child is not None:
            self.children.append(child)
        return child

    def find(self, rule: str) -> Optional["ParseNode"]:
        for child in self.children:
            if child.rule == rule:
                return child
        return None

    def find_all(self, rule: str) -> List["ParseNode"]:
        return [c for c in self.children if c.rule == rule]

    def terminals(self) -> List[Token]:
        if self.token is not None:
            return [self.token]
        out: List[Token] = []
        for child in self.children:
            out.extend(child.terminals())
        return out

    def text(self) -> str:
        return " ".join(t.lexeme for t in self.terminals())

    def to_dict(self) -> dict:
        if self.token is not None:
            return {"rule": self.rule, "token": self.token.to_dict()}
        return {"rule": self.rule, "children": [c.to_dict() for c in self.children]}

    def to_sexpr(self) -> str:
        """ANTLR-style toStringTree rendering."""
        if self.token is not None:
            return self.token.lexeme
        inner = " ".join(c.to_sexpr() for c in self.children)
        return f"({self.rule} {inner})" if inner else f"({self.rule})"


# ==========================================
# Tokenizer
# ==========================================

_KEYWORD_KINDS: Dict[str, TokenKind] = {
    **{k: TokenKind.COMMAND for k in COMMAND_KEYWORDS},
    **{k: TokenKind.PREPOSITION for k in PREPOSITIONS},
    **{k: TokenKind.CONTACT_KW for k in CONTACT_KEYWORDS},
    PRIORITY_KEYWORD: TokenKind.PRIORITY_KW,
}

_LEXEME_RE = re.compile(r"\S+")


def _classify(lexeme: str) -> Optional[TokenKind]:
    kind = _KEYWORD_KINDS.get(lexeme.upper())
    if kind is not None:
        return kind
    if lexeme in PRIORITY_LEVELS:
        return TokenKind.PRIORITY_LEVEL
    if _GPS_RE.match(lexeme):
        return TokenKind.GPS
    if _PHONE_RE.match(lexeme):
        return TokenKind.PHONE
    if lexeme.upper().startswith("GPS:"):
        return None
    if _WORD_RE.match(lexeme):
        return TokenKind.WORD
    return None


def parse_gps(lexeme: str) -> Tuple[float, float]:
    """(lat, lon) of a GPS literal. Raises ValueError for anything else."""
    m = _GPS_RE.match(lexeme)
    if not m:
        raise ValueError(f"not a GPS literal: {lexeme!r}")
    return float(m.group(1)), float(m.group(2))


def is_phone_number(value: str) -> bool:
    return bool(_PHONE_RE.match(value))


def tokenize(text: str) -> Tuple[List[Token], List[Diagnostic]]:
    """
    Split a command into tokens.
    A bad lexeme yields one diagnostic and is skipped; tokenization goes on
    from the next whitespace boundary.
    """
    tokens: List[Token] = []
    diagnostics: List[Diagnostic] = []

    for m in _LEXEME_RE.finditer(text):
        lexeme, pos = m.group(0), m.start()
        kind = _classify(lexeme)
        if kind is not None:
            tokens.append(Token(kind, lexeme, pos))
        elif lexeme.upper().startswith("GPS:"):
            diagnostics.append(Diagnostic(
                Severity.ERROR, Stage.LEXER, "L002",
                f"Malformed GPS literal: {lexeme!r} (expected GPS:<lat>,<lon>)", pos,
            ))
        else:
            diagnostics.append(Diagnostic(
                Severity.ERROR, Stage.LEXER, "L001", f"Unrecognised lexeme: {lexeme!r}", pos,
            ))

    if len(text) > MAX_COMMAND_LENGTH:
        diagnostics.append(Diagnostic(
            Severity.WARNING, Stage.LEXER, "W004",
            f"Command is {len(text)} characters; commands over {MAX_COMMAND_LENGTH} are rejected by the processor",
        ))

    return tokens, diagnostics


# ==========================================
# Parser
# ==========================================

_CLAUSE_KINDS = (TokenKind.PRIORITY_KW, TokenKind.PRIORITY_LEVEL, TokenKind.CONTACT_KW)


class Parser:
    """
    Recursive-descent parser over an explicit token cursor.

    Simplest commands:
        STATUS EMG-42
        HELP

    Richest:
        ALERT fire at Mall Road Lahore priority CRITICAL contact 1122
    """

    def __init__(self, tokens: List[Token], source_length: int = 0):
        self._tokens = tokens
        self._pos = 0
        self._end = source_length
        self.lexer_diagnostics: List[Diagnostic] = []
        self.diagnostics: List[Diagnostic] = []

        self._rules: Dict[str, Callable[[ParseNode], None]] = {
            "ALERT":  self._parse_alert,
            "QUERY":  self._parse_query,
            "STATUS": self._parse_status,
            "HELP":   self._parse_help,
        }

    # ------ cursor ------

    def _peek(self) -> Optional[Token]:
        if self._pos < len(self._tokens):
            return self._tokens[self._pos]
        return None

    def _consume(self, *kinds: TokenKind) -> Optional[Token]:
        tok = self._peek()
        if tok is None:
            return None
        if kinds and tok.kind not in kinds:
            return None
        self._pos += 1
        return tok

    def _here(self) -> int:
        tok = self._peek()
        return tok.position if tok is not None else self._end

    def _at_end(self) -> bool:
        return self._pos >= len(self._tokens)

    def _error(self, code: str, message: str, expected: Tuple[str, ...] = ()) -> None:
        self.diagnostics.append(Diagnostic(
            Severity.ERROR, Stage.PARSER, code, message, self._here(), expected,
        ))

    def _missing(self, what: str, expected: Tuple[str, ...]) -> None:
        tok = self._peek()
        found = f"found {tok.lexeme!r}" if tok else "reached end of input"
        self._error("P001", f"Expected {what}, {found}", expected)

    def _synchronize(self) -> None:
        """Skip to the next clause keyword so later clauses still get checked."""
        while not self._at_end() and self._peek().kind not in _CLAUSE_KINDS:
            self._pos += 1

    def _terminal(self, rule: str, tok: Token) -> ParseNode:
        return ParseNode(rule, token=tok)

    # ------ shared sub-rules ------

    def _parse_phrase(self, rule: str, stop: Tuple[TokenKind, ...]) -> Optional[ParseNode]:
        node = ParseNode(rule)
        while not self._at_end() and self._peek().kind not in stop:
            node.add(self._terminal("word", self._consume()))
        return node if node.children else None

    def _parse_preposition(self) -> Optional[ParseNode]:
        tok = self._consume(TokenKind.PREPOSITION)
        if tok is None:
            self._missing("a preposition", PREPOSITIONS)
            return None
        return self._terminal("preposition", tok)

    def _parse_location(self) -> Optional[ParseNode]:
        node = ParseNode("location")
        tok = self._peek()
        if tok is not None and tok.kind is TokenKind.GPS:
            self._consume()
            node.add(self._terminal("gpsLocation", tok))
            return node
        named = self._parse_phrase("namedLocation", _CLAUSE_KINDS)
        if named is None:
            self._missing("a location", ("GPS:<lat>,<lon>", "<place name>"))
            return None
        node.add(named)
        return node

    # ------ command rules ------

    def _parse_alert(self, cmd: ParseNode) -> None:
        alert_type = cmd.add(self._parse_phrase("alertType", (TokenKind.PREPOSITION,) + _CLAUSE_KINDS))
        if alert_type is None:
            self._missing("an alert type", ("<alert type>",))
            return
        if cmd.add(self._parse_preposition()) is None:
            return
        if cmd.add(self._parse_location()) is None:
            return

        while not self._at_end():
            tok = self._peek()
            if tok.kind is TokenKind.PRIORITY_KW:
                cmd.add(self._parse_priority_clause())
            elif tok.kind is TokenKind.PRIORITY_LEVEL:
                cmd.add(self._parse_trailing_priority())
            elif tok.kind is TokenKind.CONTACT_KW:
                cmd.add(self._parse_contact_clause())
            else:
                self._error("P002", f"Unexpected token {tok.lexeme!r}",
                            ("priority", "contact"))
                self._pos += 1
                self._synchronize()

    def _parse_priority_clause(self) -> ParseNode:
        node = ParseNode("priorityClause")
        node.add(self._terminal("priorityKeyword", self._consume()))
        tok = self._peek()
        # a missing value is reported as a semantic warning, not here
        if tok is not None and tok.kind in (TokenKind.PRIORITY_LEVEL, TokenKind.WORD, TokenKind.PHONE):
            node.add(self._terminal("priorityLevel", self._consume()))
        return node

    def _parse_trailing_priority(self) -> ParseNode:
        node = ParseNode("priorityClause")
        node.add(self._terminal("priorityLevel", self._consume()))
        kw = self._consume(TokenKind.PRIORITY_KW)
        if kw is not None:
            node.add(self._terminal("priorityKeyword", kw))
        return node

    def _parse_contact_clause(self) -> ParseNode:
        node = ParseNode("contactClause")
        node.add(self._terminal("contactKeyword", self._consume()))
        tok = self._peek()
        if tok is None or tok.kind in _CLAUSE_KINDS:
            self._missing("a contact number", ("<phone number>",))
            self._synchronize()
            return node
        node.add(self._terminal("contact", self._consume()))
        return node

    def _parse_query(self, cmd: ParseNode) -> None:
        service = cmd.add(self._parse_phrase("serviceType", (TokenKind.PREPOSITION,)))
        if service is None:
            self._missing("a service type", ("<service type>",))
            return
        if cmd.add(self._parse_preposition()) is None:
            return
        if cmd.add(self._parse_location()) is None:
            return
        if not self._at_end():
            tok = self._peek()
            self._error("P002", f"Unexpected token {tok.lexeme!r}; QUERY takes no clauses",
                        ("<end of input>",))

    def _parse_status(self, cmd: ParseNode) -> None:
        tok = self._consume(TokenKind.WORD, TokenKind.PHONE)
        if tok is None:
            self._missing("a request id", ("<request id>",))
            return
        cmd.add(self._terminal("requestId", tok))
        if not self._at_end():
            extra = self._peek()
            self._error("P002", f"Unexpected token {extra.lexeme!r} after request id", ("<end of input>",))

    def _parse_help(self, cmd: ParseNode) -> None:
        cmd.add(self._parse_phrase("topic", ()))

    # ------ entry ------

    def parse(self) -> ParseNode:
        root = ParseNode("command")
        head = self._peek()

        if head is None or head.kind is not TokenKind.COMMAND:
            hint = None
            if head is None:
                message = "No command keyword found"
            else:
                message = f"Unknown command keyword {head.lexeme!r}"
                guess = difflib.get_close_matches(head.upper, COMMAND_KEYWORDS, n=1)
                if guess:
                    hint = f"Did you mean {guess[0]}?"
            self.lexer_diagnostics.append(Diagnostic(
                Severity.ERROR, Stage.LEXER, "L003", message,
                head.position if head else 0, COMMAND_KEYWORDS, hint=hint,
            ))
            self._missing("a command keyword", COMMAND_KEYWORDS)
            return root

        self._consume()
        keyword = head.upper
        cmd = root.add(ParseNode(f"{keyword.lower()}Command", children=[self._terminal("keyword", head)]))
        self._rules[keyword](cmd)
        return root
