"""
Tests for resq_semantics.py

Run with:  pytest tests/test_semantics.py -v
"""

import pytest
from pydantic import ValidationError

from resq_grammar import Parser, Stage, tokenize
from resq_semantics import (
    AlertAttributes, CommandType, Diagnostics, Location, LocationKind,
    build_ast, extract_semantics, generate_suggestions, help_topic_key,
    normalize_service_type,
)


# ==========================================
# Helpers
# ==========================================

def build(text: str):
    tokens, lex = tokenize(text)
    parser = Parser(tokens, len(text))
    tree = parser.parse()
    assert not (lex or parser.lexer_diagnostics or parser.diagnostics), text
    return build_ast(tree)


def codes(diags):
    return [d.code for d in diags]


# ==========================================
# ALERT
# ==========================================

class TestAlert:
    def test_full_alert(self):
        ast, diags = build("ALERT fire at Mall Road Lahore priority CRITICAL contact 1122")
        assert diags == []
        assert ast.command_type is CommandType.ALERT
        attrs = ast.attributes
        assert attrs.alert_type == "fire"
        assert attrs.location.kind is LocationKind.NAMED
        assert attrs.location.name == "Mall Road Lahore"
        assert attrs.priority == "CRITICAL"
        assert attrs.contact == "1122"

    def test_missing_priority_defaults_to_medium(self):
        ast, diags = build("ALERT medical at Karachi University")
        assert ast.attributes.priority == "MEDIUM"
        assert codes(diags) == ["W001"]
        assert diags[0].field_name == "priority"

    def test_lower_case_priority_value_accepted(self):
        ast, diags = build("ALERT fire at Lahore priority high")
        assert ast.attributes.priority == "HIGH"
        assert diags == []

    def test_invalid_priority_value_defaults(self):
        ast, diags = build("ALERT fire at Lahore priority SOON")
        assert ast.attributes.priority == "MEDIUM"
        assert codes(diags) == ["W001"]

    def test_priority_keyword_without_value(self):
        ast, diags = build("ALERT fire at Lahore priority")
        assert ast.attributes.priority == "MEDIUM"
        assert codes(diags) == ["W001"]

    def test_bad_contact_is_semantic_error(self):
        ast, diags = build("ALERT fire at Lahore priority HIGH contact nobody")
        assert ast is not None
        assert codes(diags) == ["S001"]
        assert diags[0].stage is Stage.SEMANTIC
        assert diags[0].error_type == "SemanticError"

    def test_gps_location(self):
        ast, diags = build("ALERT accident at GPS:31.5497,74.3436 priority HIGH")
        loc = ast.attributes.location
        assert loc.kind is LocationKind.GPS
        assert (loc.latitude, loc.longitude) == (31.5497, 74.3436)
        assert diags == []

    def test_gps_out_of_range(self):
        _, diags = build("ALERT fire at GPS:95.0,200.0 priority HIGH")
        assert codes(diags) == ["S002"]

    def test_duplicate_clause_first_wins(self):
        ast, diags = build("ALERT fire at Lahore priority HIGH priority LOW")
        assert ast.attributes.priority == "HIGH"
        assert codes(diags) == ["W005"]


# ==========================================
# QUERY / STATUS / HELP
# ==========================================

class TestQuery:
    @pytest.mark.parametrize("phrase,expected", [
        ("hospitals", "HOSPITAL"),
        ("ambulance", "AMBULANCE"),
        ("Police Station", "POLICE"),
        ("fire station", "FIRE_STATION"),
    ])
    def test_known_service_types(self, phrase, expected):
        ast, diags = build(f"QUERY {phrase} near Lahore")
        assert ast.attributes.service_type == expected
        assert diags == []

    def test_unknown_service_type_warns(self):
        ast, diags = build("QUERY blood bank near Lahore")
        assert ast.attributes.service_type == "BLOOD_BANK"
        assert ast.attributes.service_phrase == "blood bank"
        assert codes(diags) == ["W002"]


class TestStatus:
    def test_request_id(self):
        ast, diags = build("STATUS request-12345")
        assert ast.attributes.request_id == "request-12345"
        assert diags == []

    def test_numeric_request_id(self):
        ast, diags = build("STATUS 12345")
        assert ast.attributes.request_id == "12345"
        assert diags == []

    def test_malformed_request_id(self):
        _, diags = build("STATUS req.1")
        assert codes(diags) == ["S003"]


class TestHelp:
    def test_known_topic(self):
        ast, diags = build("HELP fire emergencies")
        assert ast.attributes.topic == "fire emergencies"
        assert diags == []

    def test_unknown_topic_warns(self):
        _, diags = build("HELP gardening")
        assert codes(diags) == ["W003"]

    def test_no_topic(self):
        ast, diags = build("HELP")
        assert ast.attributes.topic is None
        assert diags == []

    def test_help_topic_key(self):
        assert help_topic_key("fire safety") == "FIRE"
        assert help_topic_key("accidents") == "ACCIDENT"
        assert help_topic_key("weather") is None
        assert help_topic_key(None) is None


# ==========================================
# Attribute models
# ==========================================

class TestAttributeModels:
    def test_attributes_are_frozen(self):
        ast, _ = build("ALERT fire at Lahore priority HIGH")
        with pytest.raises(ValidationError):
            ast.attributes.priority = "LOW"

    def test_unknown_attributes_rejected(self):
        loc = Location(kind=LocationKind.NAMED, name="Lahore")
        with pytest.raises(ValidationError):
            AlertAttributes(alert_type="fire", location=loc, severity="bad")

    def test_ast_to_dict(self):
        ast, _ = build("STATUS EMG-9")
        assert ast.to_dict() == {"command_type": "STATUS", "attributes": {"request_id": "EMG-9"}}

    def test_normalize_service_type(self):
        assert normalize_service_type("Rescue 1122") == "RESCUE"
        assert normalize_service_type("pharmacy") is None


# ==========================================
# Derived semantics
# ==========================================

class TestExtractSemantics:
    def test_alert_semantics(self):
        ast, _ = build("ALERT fire at Lahore priority HIGH contact 1122")
        data = extract_semantics(ast)["extracted_data"]
        assert data["urgency_level"] == 6
        assert data["estimated_response"] == "6-8 minutes"
        assert data["search_radius_km"] == 25
        assert data["requires_response"] is True

    def test_gps_search_radius(self):
        ast, _ = build("QUERY police near GPS:24.8607,67.0011")
        assert extract_semantics(ast)["extracted_data"]["search_radius_km"] == 5

    def test_help_defaults_to_general(self):
        ast, _ = build("HELP")
        assert extract_semantics(ast) == {
            "command_type": "HELP",
            "extracted_data": {"topic": "general", "requires_information": True},
        }

    def test_none_for_missing_ast(self):
        assert extract_semantics(None) is None


class TestSuggestions:
    def test_lexer_hint_is_included(self):
        tokens, _ = tokenize("ALRET fire")
        parser = Parser(tokens)
        parser.parse()
        diags = Diagnostics()
        diags.extend(parser.lexer_diagnostics + parser.diagnostics)
        suggestions = generate_suggestions(diags)
        assert "Did you mean ALERT?" in suggestions
        assert "Valid prepositions: AT, NEAR, IN" in suggestions

    def test_no_suggestions_without_errors(self):
        assert generate_suggestions(Diagnostics()) == []
