"""
RapidResQ Request Processor
===========================
End-to-end handling of one emergency command under concurrent access.

Request lifecycle
-----------------
  RECEIVED -> TOKENIZING -> PARSING -> SEMANTIC_ANALYSIS -> SUCCESS | FAILED
  SUCCESS  -> EXECUTING -> RESPONSE -> SUCCESS_EXECUTED
  SUCCESS  -> SUCCESS_NOT_EXECUTED          (semantic errors present)

Run as a script to parse commands from the command line:

    python resq_processor.py "ALERT fire at Lahore priority HIGH contact 1122"
"""

from __future__ import annotations

import re
import sys
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Sequence

import structlog
from pydantic import BaseModel, ValidationError, ValidationInfo, field_validator

from resq_concurrency import ConcurrencyCoordinator, ConcurrencyError
from resq_config import MAX_COMMAND_LENGTH, CoordinatorSettings
from resq_dispatcher import CommandDispatcher
from resq_metrics import PrometheusStatsSink
from resq_parser import CommandParser, format_report
from resq_semantics import extract_semantics, generate_suggestions

log = structlog.get_logger()

EXAMPLE_COMMAND = "ALERT fire at Lahore priority HIGH contact 1122"

FAILURE_EXAMPLES = [
    "ALERT medical at Karachi University",
    "QUERY hospital near Lahore",
    "STATUS request-12345",
    "HELP fire emergencies",
]


# ==========================================
# Lifecycle
# ==========================================

class RequestState(str, Enum):
    RECEIVED             = "RECEIVED"
    TOKENIZING           = "TOKENIZING"
    PARSING              = "PARSING"
    SEMANTIC_ANALYSIS    = "SEMANTIC_ANALYSIS"
    SUCCESS              = "SUCCESS"
    FAILED               = "FAILED"
    EXECUTING            = "EXECUTING"
    RESPONSE             = "RESPONSE"
    SUCCESS_EXECUTED     = "SUCCESS_EXECUTED"
    SUCCESS_NOT_EXECUTED = "SUCCESS_NOT_EXECUTED"


S = RequestState
TRANSITIONS: Dict[RequestState, FrozenSet[RequestState]] = {
    S.RECEIVED:             frozenset({S.TOKENIZING, S.FAILED}),
    S.TOKENIZING:           frozenset({S.PARSING, S.FAILED}),
    S.PARSING:              frozenset({S.SEMANTIC_ANALYSIS, S.FAILED}),
    S.SEMANTIC_ANALYSIS:    frozenset({S.SUCCESS, S.FAILED}),
    S.SUCCESS:              frozenset({S.EXECUTING, S.SUCCESS_NOT_EXECUTED}),
    S.EXECUTING:            frozenset({S.RESPONSE}),
    S.RESPONSE:             frozenset({S.SUCCESS_EXECUTED}),
    S.FAILED:               frozenset(),
    S.SUCCESS_EXECUTED:     frozenset(),
    S.SUCCESS_NOT_EXECUTED: frozenset(),
}
TERMINAL_STATES = frozenset(s for s, nxt in TRANSITIONS.items() if not nxt)


class RequestLifecycle:
    def __init__(self):
        self.trail: List[RequestState] = [S.RECEIVED]

    @property
    def state(self) -> RequestState:
        return self.trail[-1]

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES

    def advance(self, *states: RequestState) -> None:
        for nxt in states:
            if nxt not in TRANSITIONS[self.state]:
                raise RuntimeError(f"illegal request transition {self.state.value} -> {nxt.value}")
            self.trail.append(nxt)

    def to_list(self) -> List[str]:
        return [s.value for s in self.trail]


# ==========================================
# Input model
# ==========================================

_CONTROL_RE = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]")


class CommandRequest(BaseModel):
    """Validate with context={"max_length": n} to override the configured bound."""
    command: str

    @field_validator("command")
    @classmethod
    def clean_command(cls, v, info: ValidationInfo):
        limit = (info.context or {}).get("max_length", MAX_COMMAND_LENGTH)
        if len(v) > limit:
            raise ValueError(f"Command is {len(v)} characters; the limit is {limit}")
        v = _CONTROL_RE.sub(" ", v).strip()
        if not v:
            raise ValueError("Command text is required")
        return v


# ==========================================
# Processor
# ==========================================

class EmergencyCommandProcessor:
    """Parse, account, queue and, when valid, execute one command per call."""

    def __init__(
        self,
        coordinator: Optional[ConcurrencyCoordinator] = None,
        dispatcher: Optional[CommandDispatcher] = None,
        settings: Optional[CoordinatorSettings] = None,
    ):
        self.coordinator = coordinator or ConcurrencyCoordinator(settings=settings, sink=PrometheusStatsSink())
        self.dispatcher = dispatcher or CommandDispatcher(id_factory=self.coordinator.mint_emergency_id)

    def handle(self, command: str) -> dict:
        lifecycle = RequestLifecycle()
        with self.coordinator.track_request():
            response = self._process(command, lifecycle)
        self.coordinator.publish()
        response["state"] = lifecycle.state.value
        response["state_trail"] = lifecycle.to_list()
        return response

    def _process(self, command: str, lifecycle: RequestLifecycle) -> dict:
        try:
            request = CommandRequest.model_validate(
                {"command": command},
                context={"max_length": self.coordinator.settings.max_command_length},
            )
        except ValidationError as e:
            lifecycle.advance(S.FAILED)
            return {
                "success": False,
                "command": command if isinstance(command, str) else None,
                "error": e.errors()[0]["msg"],
                "example": EXAMPLE_COMMAND,
            }

        lifecycle.advance(S.TOKENIZING, S.PARSING)
        try:
            result = self.coordinator.safe_parse(request.command)
        except ConcurrencyError as e:
            lifecycle.advance(S.FAILED)
            return {"success": False, "command": request.command, "error": str(e)}

        lifecycle.advance(S.SEMANTIC_ANALYSIS)
        if not result.success:
            lifecycle.advance(S.FAILED)
            log.info("command_rejected", errors=result.diagnostics.total_errors)
            return {
                "success": False,
                "command": request.command,
                "parse_tree": result.parse_tree.to_dict() if result.parse_tree else None,
                "tokens": [t.to_dict() for t in result.tokens],
                "diagnostics": result.diagnostics.to_dict(),
                "suggestions": generate_suggestions(result.diagnostics),
                "examples": list(FAILURE_EXAMPLES),
            }

        lifecycle.advance(S.SUCCESS)
        emergency_id = self.coordinator.mint_emergency_id()
        queue_result = self.coordinator.enqueue_emergency(request.command)

        response = {
            "success": True,
            "command": request.command,
            **result.to_dict(),
            "semantics": extract_semantics(result.ast),
            "suggestions": generate_suggestions(result.diagnostics),
            "concurrency": {
                "emergency_id": emergency_id,
                "queue_status": queue_result.to_dict(),
            },
        }

        if result.executable:
            lifecycle.advance(S.EXECUTING)
            execution = self.dispatcher.dispatch(result.ast, request_id=emergency_id)
            response["execution"] = execution.to_dict()
            lifecycle.advance(S.RESPONSE, S.SUCCESS_EXECUTED)
        else:
            lifecycle.advance(S.SUCCESS_NOT_EXECUTED)

        log.info("command_processed", command_type=result.ast.command_type.value,
                 emergency_id=emergency_id, executed=result.executable)
        return response

    def get_stats(self) -> dict:
        return {
            "parser": self.coordinator.parser.get_statistics(),
            "concurrency": self.coordinator.get_stats().to_dict(),
        }


# ==========================================
# Demos
# ==========================================

PARSER_EXAMPLES = [
    "ALERT fire at Lahore Central Hospital HIGH priority contact 1122",
    "QUERY ambulance near Karachi University",
    "STATUS request-12345",
    "HELP medical emergencies",
    "ALERT medical emergency at GPS:31.5497,74.3436 contact +92-321-1234567",
    "INVALID COMMAND with bad syntax",
]

CONCURRENCY_EXAMPLES = [
    "ALERT fire at Lahore Hospital",
    "QUERY ambulance near Karachi",
    "STATUS request-12345",
    "HELP medical emergency",
]


def run_parser_examples(parser: Optional[CommandParser] = None,
                        examples: Sequence[str] = PARSER_EXAMPLES) -> dict:
    parser = parser or CommandParser()
    results = []
    for example in examples:
        result = parser.parse(example)
        results.append({
            "input": example,
            "success": result.success,
            "ast": result.ast.to_dict() if result.ast else None,
            "tokens": len(result.tokens),
            "errors": result.diagnostics.total_errors,
            "warnings": result.diagnostics.total_warnings,
            "semantics": extract_semantics(result.ast),
        })
    return {
        "test_results": results,
        "statistics": parser.get_statistics(),
        "summary": {
            "total_tests": len(results),
            "successful": sum(1 for r in results if r["success"]),
            "failed": sum(1 for r in results if not r["success"]),
        },
    }


def run_concurrency_demo(processor: Optional[EmergencyCommandProcessor] = None,
                         commands: Sequence[str] = CONCURRENCY_EXAMPLES,
                         workers: int = 4) -> dict:
    """Fire the commands at one processor from a thread pool."""
    processor = processor or EmergencyCommandProcessor()
    with ThreadPoolExecutor(max_workers=workers) as pool:
        responses = list(pool.map(processor.handle, commands))
    results = [
        {
            "request": i,
            "command": cmd,
            "state": resp["state"],
            "emergency_id": resp.get("concurrency", {}).get("emergency_id"),
            "parse_success": resp["success"],
        }
        for i, (cmd, resp) in enumerate(zip(commands, responses))
    ]
    return {"results": results, "stats": processor.coordinator.get_stats().to_dict()}


# ==========================================
# CLI / Demo
# ==========================================

if __name__ == "__main__":
    commands = sys.argv[1:] or PARSER_EXAMPLES + ["STATUS", ""]
    parser = CommandParser()

    print("=" * 60)
    print("  RapidResQ Command Parser")
    print("=" * 60)
    for cmd in commands:
        print()
        print(format_report(cmd, parser.parse(cmd)))

    stats = parser.get_statistics()
    print("\n" + "=" * 60)
    print(f"  Parsed: {stats['total_commands_parsed']}  "
          f"Success rate: {stats['success_rate']}%  "
          f"Avg: {stats['average_parse_time_ms']} ms")
    print("=" * 60)

    if not sys.argv[1:]:
        demo = run_concurrency_demo()
        print("\n  Concurrency demo")
        for row in demo["results"]:
            print(f"  [{row['request']}] {row['state']:<22} {row['emergency_id']}  {row['command']}")
        s = demo["stats"]
        print(f"  requests={s['total_requests']} peak={s['concurrent_peak']} "
              f"contentions={s['lock_contentions']} queue={s['queue_length']}")
