"""
RapidResQ Semantic Analyzer
===========================
Reduces a parse tree to a typed AST, validates field values, and derives
response semantics from fixed lookup tables.

Error Codes
-----------
  S001  Contact is not a phone number         (blocks execution)
  S002  GPS coordinates out of range          (blocks execution)
  S003  Malformed request id                  (blocks execution)
  W001  Priority missing or invalid, MEDIUM used
  W002  Unknown service type
  W003  Unknown help topic, general help used
  W005  Clause given more than once, first value used
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict

from resq_grammar import (
    PRIORITY_LEVELS, Diagnostic, ParseNode, Severity, Stage,
    is_phone_number, parse_gps,
)


# ==========================================
# Lookup Tables
# ==========================================

DEFAULT_PRIORITY = "MEDIUM"

URGENCY_SCORES: Dict[str, int] = {
    "CRITICAL": 10, "URGENT": 8, "HIGH": 6, "MEDIUM": 4, "LOW": 2,
}

RESPONSE_TIMES: Dict[str, str] = {
    "CRITICAL": "2-4 minutes",
    "URGENT":   "4-6 minutes",
    "HIGH":     "6-8 minutes",
    "MEDIUM":   "8-12 minutes",
    "LOW":      "12-20 minutes",
}

SEARCH_RADIUS_KM: Dict[str, int] = {"GPS": 5, "NAMED": 25}

SERVICE_TYPES: Dict[str, str] = {
    "hospital": "HOSPITAL", "hospitals": "HOSPITAL", "clinic": "HOSPITAL",
    "clinics": "HOSPITAL", "medical": "HOSPITAL", "doctor": "HOSPITAL",
    "ambulance": "AMBULANCE", "ambulances": "AMBULANCE",
    "police": "POLICE", "police station": "POLICE", "police stations": "POLICE",
    "fire": "FIRE_STATION", "fire station": "FIRE_STATION",
    "fire stations": "FIRE_STATION", "fire brigade": "FIRE_STATION",
    "rescue": "RESCUE", "rescue 1122": "RESCUE",
}

HELP_TOPICS: Dict[str, str] = {
    "FIRE":     "Fire emergencies: Call 16 or 1122. Evacuate safely, don't use elevators.",
    "MEDICAL":  "Medical emergencies: Call 1122 for ambulance. Provide clear location.",
    "ACCIDENT": "Accidents: Call 1122, secure area, don't move injured unless dangerous.",
    "POLICE":   "Police emergencies: Call 15. Provide location and nature of incident.",
    "general":  "Emergency numbers: Police (15), Fire (16), Medical (1122), Motorway (130)",
}

_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]*$")


def urgency_for(priority: Optional[str]) -> int:
    return URGENCY_SCORES.get(priority or "", URGENCY_SCORES[DEFAULT_PRIORITY])


def response_time_for(priority: Optional[str]) -> str:
    return RESPONSE_TIMES.get(priority or "", RESPONSE_TIMES[DEFAULT_PRIORITY])


def search_radius_km(location: Optional["Location"]) -> int:
    if location is not None and location.kind is LocationKind.GPS:
        return SEARCH_RADIUS_KM["GPS"]
    return SEARCH_RADIUS_KM["NAMED"]


def help_topic_key(topic: Optional[str]) -> Optional[str]:
    """First word of a topic that names a known help entry ("fire safety" -> FIRE)."""
    if not topic:
        return None
    for word in topic.split():
        key = word.upper().strip(".,")
        if key in HELP_TOPICS:
            return key
        if key.endswith("S") and key[:-1] in HELP_TOPICS:
            return key[:-1]
    return None


def normalize_service_type(phrase: str) -> Optional[str]:
    lowered = " ".join(phrase.lower().split())
    if lowered in SERVICE_TYPES:
        return SERVICE_TYPES[lowered]
    return SERVICE_TYPES.get(lowered.split()[0]) if lowered else None


# ==========================================
# AST
# ==========================================

class CommandType(str, Enum):
    ALERT  = "ALERT"
    QUERY  = "QUERY"
    STATUS = "STATUS"
    HELP   = "HELP"


class LocationKind(str, Enum):
    GPS   = "GPS"
    NAMED = "NAMED"


class _Attributes(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class Location(_Attributes):
    kind: LocationKind
    name: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None


class AlertAttributes(_Attributes):
    alert_type: str
    location: Location
    priority: str = DEFAULT_PRIORITY
    contact: Optional[str] = None


class QueryAttributes(_Attributes):
    service_type: str
    service_phrase: str
    location: Location


class StatusAttributes(_Attributes):
    request_id: str


class HelpAttributes(_Attributes):
    topic: Optional[str] = None


Attributes = Union[AlertAttributes, QueryAttributes, StatusAttributes, HelpAttributes]

ATTRIBUTE_MODELS: Dict[CommandType, type] = {
    CommandType.ALERT:  AlertAttributes,
    CommandType.QUERY:  QueryAttributes,
    CommandType.STATUS: StatusAttributes,
    CommandType.HELP:   HelpAttributes,
}


@dataclass
class AST:
    command_type: CommandType
    attributes: Attributes

    def to_dict(self) -> dict:
        return {
            "command_type": self.command_type.value,
            "attributes": self.attributes.model_dump(mode="json"),
        }


# ==========================================
# Diagnostics Collector
# ==========================================

@dataclass
class Diagnostics:
    lexer_errors: List[Diagnostic] = field(default_factory=list)
    parse_errors: List[Diagnostic] = field(default_factory=list)
    semantic_errors: List[Diagnostic] = field(default_factory=list)
    warnings: List[Diagnostic] = field(default_factory=list)

    def add(self, diag: Diagnostic) -> None:
        if diag.is_warning():
            self.warnings.append(diag)
        elif diag.stage is Stage.LEXER:
            self.lexer_errors.append(diag)
        elif diag.stage is Stage.PARSER:
            self.parse_errors.append(diag)
        else:
            self.semantic_errors.append(diag)

    def extend(self, diags: List[Diagnostic]) -> None:
        for d in diags:
            self.add(d)

    @property
    def errors(self) -> List[Diagnostic]:
        return self.lexer_errors + self.parse_errors + self.semantic_errors

    @property
    def total_errors(self) -> int:
        return len(self.lexer_errors) + len(self.parse_errors) + len(self.semantic_errors)

    @property
    def total_warnings(self) -> int:
        return len(self.warnings)

    @property
    def blocks_ast(self) -> bool:
        """Lexical and syntax errors abort AST construction."""
        return bool(self.lexer_errors or self.parse_errors)

    def to_dict(self) -> dict:
        return {
            "lexer_errors": [d.to_dict() for d in self.lexer_errors],
            "parse_errors": [d.to_dict() for d in self.parse_errors],
            "semantic_errors": [d.to_dict() for d in self.semantic_errors],
            "warnings": [d.to_dict() for d in self.warnings],
            "total_errors": self.total_errors,
            "total_warnings": self.total_warnings,
        }


def generate_suggestions(diagnostics: Diagnostics) -> List[str]:
    """Remediation advice targeted at the stage that failed."""
    suggestions: List[str] = []

    if diagnostics.lexer_errors:
        suggestions.append("Check for typos in command keywords (ALERT, QUERY, STATUS, HELP)")
        suggestions.extend(d.hint for d in diagnostics.lexer_errors if d.hint)

    if diagnostics.parse_errors:
        suggestions.append("Ensure proper command structure: COMMAND <type> <preposition> <location>")
        suggestions.append("Valid prepositions: AT, NEAR, IN")

    if diagnostics.semantic_errors:
        suggestions.append("Verify location format (use GPS:lat,lng for coordinates)")
        suggestions.append("Check contact format (Pakistani phone: +92-xxx-xxxxxxx or a short code like 1122)")

    return suggestions


# ==========================================
# AST Builder
# ==========================================

def _semantic_error(code: str, message: str, position: int, field_name: str) -> Diagnostic:
    return Diagnostic(Severity.ERROR, Stage.SEMANTIC, code, message, position, field_name=field_name)


def _warning(code: str, message: str, position: int = -1, field_name: Optional[str] = None) -> Diagnostic:
    return Diagnostic(Severity.WARNING, Stage.SEMANTIC, code, message, position, field_name=field_name)


def _position(node: ParseNode) -> int:
    terms = node.terminals()
    return terms[0].position if terms else -1


def _build_location(node: ParseNode, diags: List[Diagnostic]) -> Location:
    gps = node.find("gpsLocation")
    if gps is not None:
        lat, lon = parse_gps(gps.token.lexeme)
        if not (-90 <= lat <= 90 and -180 <= lon <= 180):
            diags.append(_semantic_error(
                "S002",
                f"GPS coordinates out of range: lat {lat} must be in [-90, 90], lon {lon} in [-180, 180]",
                gps.token.position, "location",
            ))
        return Location(kind=LocationKind.GPS, name=gps.token.lexeme, latitude=lat, longitude=lon)
    return Location(kind=LocationKind.NAMED, name=node.find("namedLocation").text())


def _first_clause(cmd: ParseNode, rule: str, label: str, diags: List[Diagnostic]) -> Optional[ParseNode]:
    clauses = cmd.find_all(rule)
    for extra in clauses[1:]:
        diags.append(_warning("W005", f"Duplicate {label} clause ignored", _position(extra), label))
    return clauses[0] if clauses else None


def _build_priority(cmd: ParseNode, diags: List[Diagnostic]) -> str:
    clause = _first_clause(cmd, "priorityClause", "priority", diags)
    level = clause.find("priorityLevel") if clause is not None else None
    if level is None:
        diags.append(_warning("W001", f"No priority given; defaulting to {DEFAULT_PRIORITY}",
                              _position(clause) if clause else -1, "priority"))
        return DEFAULT_PRIORITY
    value = level.token.upper
    if value not in PRIORITY_LEVELS:
        diags.append(_warning(
            "W001",
            f"Invalid priority {level.token.lexeme!r}; defaulting to {DEFAULT_PRIORITY} "
            f"(valid: {', '.join(PRIORITY_LEVELS)})",
            level.token.position, "priority",
        ))
        return DEFAULT_PRIORITY
    return value


def _build_contact(cmd: ParseNode, diags: List[Diagnostic]) -> Optional[str]:
    clause = _first_clause(cmd, "contactClause", "contact", diags)
    if clause is None:
        return None
    value = clause.find("contact")
    if value is None:
        return None
    contact = value.token.lexeme
    if not is_phone_number(contact):
        diags.append(_semantic_error(
            "S001", f"Invalid contact {contact!r}; expected a phone number such as 1122 or +92-300-1234567",
            value.token.position, "contact",
        ))
    return contact


def _build_alert(cmd: ParseNode, diags: List[Diagnostic]) -> AlertAttributes:
    return AlertAttributes(
        alert_type=cmd.find("alertType").text(),
        location=_build_location(cmd.find("location"), diags),
        priority=_build_priority(cmd, diags),
        contact=_build_contact(cmd, diags),
    )


def _build_query(cmd: ParseNode, diags: List[Diagnostic]) -> QueryAttributes:
    phrase_node = cmd.find("serviceType")
    phrase = phrase_node.text()
    service_type = normalize_service_type(phrase)
    if service_type is None:
        service_type = "_".join(phrase.upper().split())
        diags.append(_warning(
            "W002", f"Unknown service type {phrase!r}; known types: "
            f"{', '.join(sorted(set(SERVICE_TYPES.values())))}",
            _position(phrase_node), "service_type",
        ))
    return QueryAttributes(
        service_type=service_type,
        service_phrase=phrase,
        location=_build_location(cmd.find("location"), diags),
    )


def _build_status(cmd: ParseNode, diags: List[Diagnostic]) -> StatusAttributes:
    tok = cmd.find("requestId").token
    if not _REQUEST_ID_RE.match(tok.lexeme):
        diags.append(_semantic_error(
            "S003", f"Malformed request id {tok.lexeme!r}; use letters, digits, '-' or '_'",
            tok.position, "request_id",
        ))
    return StatusAttributes(request_id=tok.lexeme)


def _build_help(cmd: ParseNode, diags: List[Diagnostic]) -> HelpAttributes:
    node = cmd.find("topic")
    if node is None:
        return HelpAttributes()
    topic = node.text()
    if help_topic_key(topic) is None:
        diags.append(_warning(
            "W003", f"No help entry for {topic!r}; showing general help",
            _position(node), "topic",
        ))
    return HelpAttributes(topic=topic)


_BUILDERS: Dict[str, Tuple[CommandType, Callable[[ParseNode, List[Diagnostic]], Attributes]]] = {
    "alertCommand":  (CommandType.ALERT, _build_alert),
    "queryCommand":  (CommandType.QUERY, _build_query),
    "statusCommand": (CommandType.STATUS, _build_status),
    "helpCommand":   (CommandType.HELP, _build_help),
}


def build_ast(tree: ParseNode) -> Tuple[Optional[AST], List[Diagnostic]]:
    """
    Reduce a complete parse tree to an AST.
    Returns (ast, semantic diagnostics). Only call on trees that parsed
    without lexical or syntax errors.
    """
    diags: List[Diagnostic] = []
    if not tree.children:
        return None, diags
    cmd = tree.children[0]
    command_type, builder = _BUILDERS[cmd.rule]
    return AST(command_type, builder(cmd, diags)), diags


# ==========================================
# Derived Semantics
# ==========================================

def extract_semantics(ast: Optional[AST]) -> Optional[dict]:
    """Command-specific semantic summary used by responses and reports."""
    if ast is None:
        return None

    attrs = ast.attributes
    data: dict
    if isinstance(attrs, AlertAttributes):
        data = {
            "alert_type": attrs.alert_type,
            "location": attrs.location.model_dump(mode="json"),
            "priority": attrs.priority,
            "contact": attrs.contact,
            "requires_response": True,
            "urgency_level": urgency_for(attrs.priority),
            "estimated_response": response_time_for(attrs.priority),
            "search_radius_km": search_radius_km(attrs.location),
        }
    elif isinstance(attrs, QueryAttributes):
        data = {
            "service_type": attrs.service_type,
            "location": attrs.location.model_dump(mode="json"),
            "search_radius_km": search_radius_km(attrs.location),
            "requires_response": True,
        }
    elif isinstance(attrs, StatusAttributes):
        data = {"request_id": attrs.request_id, "requires_lookup": True}
    else:
        data = {"topic": attrs.topic or "general", "requires_information": True}

    return {"command_type": ast.command_type.value, "extracted_data": data}
