"""
RapidResQ Command Parser v1.0
=============================
Public entry point of the emergency command language:

    tokenize -> parse tree -> AST -> diagnostics

`parse()` never raises. Every failure comes back as data inside
`ParseResult.diagnostics`; tokens and the partial parse tree are kept for
failed commands so callers can explain what went wrong.
"""

from __future__ import annotations

import threading
import time
from collections import Counter
from dataclasses import dataclass
from typing import List, Optional

import structlog

from resq_config import GRAMMAR_NAME, GRAMMAR_VERSION, MAX_COMMAND_LENGTH
from resq_grammar import (
    COMMAND_KEYWORDS, CONTACT_KEYWORDS, PREPOSITIONS, PRIORITY_LEVELS,
    Diagnostic, ParseNode, Parser, Severity, Stage, Token, tokenize,
)
from resq_metrics import COMMANDS_PARSED, PARSE_LATENCY
from resq_semantics import AST, Diagnostics, build_ast, extract_semantics, generate_suggestions

log = structlog.get_logger()


# ==========================================
# Results
# ==========================================

@dataclass
class ParseMetadata:
    parse_time_ms: float
    grammar_version: str = GRAMMAR_VERSION
    token_count: int = 0

    def to_dict(self) -> dict:
        return {
            "parse_time_ms": self.parse_time_ms,
            "grammar_version": self.grammar_version,
            "token_count": self.token_count,
        }


@dataclass
class ParseResult:
    success: bool
    tokens: List[Token]
    diagnostics: Diagnostics
    metadata: ParseMetadata
    ast: Optional[AST] = None
    parse_tree: Optional[ParseNode] = None

    @property
    def executable(self) -> bool:
        """Parsed, and no semantic error blocks execution."""
        return self.success and not self.diagnostics.semantic_errors

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "ast": self.ast.to_dict() if self.ast else None,
            "parse_tree": self.parse_tree.to_dict() if self.parse_tree else None,
            "tokens": [t.to_dict() for t in self.tokens],
            "diagnostics": self.diagnostics.to_dict(),
            "metadata": self.metadata.to_dict(),
        }


# ==========================================
# Statistics
# ==========================================

class ParserStatistics:
    """Running totals shared by every caller of a CommandParser."""

    def __init__(self):
        self.total_commands_parsed = 0
        self.successful_parses = 0
        self.failed_parses = 0
        self.total_parse_time_ms = 0.0
        self.by_command_type: Counter = Counter()
        self.lock = threading.Lock()

    def record(self, success: bool, parse_time_ms: float, command_type: Optional[str]) -> None:
        with self.lock:
            self.total_commands_parsed += 1
            if success:
                self.successful_parses += 1
            else:
                self.failed_parses += 1
            self.total_parse_time_ms += parse_time_ms
            if command_type:
                self.by_command_type[command_type] += 1

    def snapshot(self) -> dict:
        with self.lock:
            total = self.total_commands_parsed
            return {
                "total_commands_parsed": total,
                "successful_parses": self.successful_parses,
                "failed_parses": self.failed_parses,
                "success_rate": round(100.0 * self.successful_parses / total, 1) if total else 0.0,
                "average_parse_time_ms": round(self.total_parse_time_ms / total, 3) if total else 0.0,
                "by_command_type": dict(self.by_command_type),
            }


# ==========================================
# Parser facade
# ==========================================

GRAMMAR_RULES = {
    "alert":  "ALERT <alertType> (AT|NEAR|IN) <location> [priority <PRIORITY>] [contact <CONTACT>]",
    "query":  "QUERY <serviceType> (AT|NEAR|IN) <location>",
    "status": "STATUS <requestId>",
    "help":   "HELP [topic]",
}

EXAMPLES = {
    "alerts": [
        "ALERT fire at Mall Road Lahore priority CRITICAL contact 1122",
        "ALERT medical emergency near Karachi University contact +92-321-1234567",
        "ALERT accident at GPS:31.5497,74.3436 priority HIGH",
    ],
    "queries": [
        "QUERY hospital near Islamabad",
        "QUERY ambulance at Gulberg Lahore",
        "QUERY police near GPS:24.8607,67.0011",
    ],
    "status": ["STATUS request-2024-001", "STATUS EMG-12345"],
    "help": ["HELP medical", "HELP fire emergencies", "HELP"],
}


class CommandParser:
    """
    Stateless pipeline plus shared statistics.
    Safe to call from many threads; only the statistics are shared.
    """

    def __init__(self):
        self.statistics = ParserStatistics()

    def parse(self, command: str) -> ParseResult:
        start = time.perf_counter()
        diagnostics = Diagnostics()

        if not isinstance(command, str):
            diagnostics.add(Diagnostic(
                Severity.ERROR, Stage.LEXER, "L001",
                f"Command must be text, got {type(command).__name__}",
            ))
            return self._finish(start, False, [], diagnostics, None, None)

        tokens, lex_diags = tokenize(command)
        diagnostics.extend(lex_diags)

        parser = Parser(tokens, len(command))
        tree = parser.parse()
        diagnostics.extend(parser.lexer_diagnostics)
        diagnostics.extend(parser.diagnostics)

        ast = None
        if not diagnostics.blocks_ast:
            ast, semantic = build_ast(tree)
            diagnostics.extend(semantic)

        return self._finish(start, ast is not None, tokens, diagnostics, tree, ast)

    def _finish(self, start: float, success: bool, tokens: List[Token],
                diagnostics: Diagnostics, tree: Optional[ParseNode],
                ast: Optional[AST]) -> ParseResult:
        elapsed = time.perf_counter() - start
        parse_time_ms = round(elapsed * 1000, 3)
        command_type = ast.command_type.value if ast else None

        self.statistics.record(success, parse_time_ms, command_type)
        COMMANDS_PARSED.labels(command_type or "UNKNOWN", "success" if success else "failure").inc()
        PARSE_LATENCY.observe(elapsed)
        log.debug("command_parsed", success=success, command_type=command_type,
                  errors=diagnostics.total_errors, warnings=diagnostics.total_warnings,
                  parse_time_ms=parse_time_ms)

        return ParseResult(
            success=success,
            tokens=tokens,
            diagnostics=diagnostics,
            metadata=ParseMetadata(parse_time_ms=parse_time_ms, token_count=len(tokens)),
            ast=ast,
            parse_tree=tree,
        )

    def get_statistics(self) -> dict:
        return self.statistics.snapshot()

    def get_grammar_info(self) -> dict:
        return {
            "name": GRAMMAR_NAME,
            "version": GRAMMAR_VERSION,
            "rules": dict(GRAMMAR_RULES),
            "keywords": {
                "commands": list(COMMAND_KEYWORDS),
                "prepositions": list(PREPOSITIONS),
                "priority_levels": list(PRIORITY_LEVELS),
                "priority": "priority",
                "contact": [k.lower() for k in CONTACT_KEYWORDS],
            },
            "literals": {
                "gps": "GPS:<lat>,<lon>",
                "phone": "+?digits with optional single hyphens, 2-15 digits",
            },
            "max_command_length": MAX_COMMAND_LENGTH,
            "workflow": [
                "Tokenize: raw text into keyword, literal and word tokens",
                "Parse tree: recursive descent per command rule",
                "AST: typed attributes with defaults and validation",
                "Diagnostics: lexical, syntax and semantic findings with suggestions",
            ],
            "examples": {k: list(v) for k, v in EXAMPLES.items()},
        }


_default_parser = CommandParser()


def get_default_parser() -> CommandParser:
    return _default_parser


def parse(command: str) -> ParseResult:
    """Parse with the process-wide parser, so its statistics accumulate."""
    return _default_parser.parse(command)


def get_statistics() -> dict:
    return _default_parser.get_statistics()


def get_grammar_info() -> dict:
    return _default_parser.get_grammar_info()


# ==========================================
# Reports
# ==========================================

def format_report(command: str, result: ParseResult) -> str:
    """Human-readable lint report for one parsed command."""
    ctype = result.ast.command_type.value if result.ast else "(none)"
    lines = [f"Command Report - grammar {result.metadata.grammar_version}"]
    lines.append(f"  Input   : {command}")
    lines.append(f"  Status  : {'PARSED' if result.success else 'FAILED'}")
    lines.append(f"  Type    : {ctype}")
    lines.append(f"  Tokens  : {len(result.tokens)}")
    if result.parse_tree is not None:
        lines.append(f"  Tree    : {result.parse_tree.to_sexpr()}")

    semantics = extract_semantics(result.ast)
    if semantics:
        lines.append("\nSemantics:")
        for key, value in semantics["extracted_data"].items():
            lines.append(f"  {key}: {value}")

    diags = result.diagnostics
    if diags.total_errors or diags.total_warnings:
        lines.append("\nDiagnostics:")
        for d in diags.errors + diags.warnings:
            lines.append(f"  {d}")
        suggestions = generate_suggestions(diags)
        if suggestions:
            lines.append("\nSuggestions:")
            lines.extend(f"  - {s}" for s in suggestions)
    else:
        lines.append("\nNo issues found.")

    return "\n".join(lines)
