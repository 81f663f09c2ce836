"""
Tests for resq_dispatcher.py

Run with:  pytest tests/test_dispatcher.py -v
"""

import pytest
from structlog.testing import capture_logs

from resq_dispatcher import (
    _HANDLERS, DEFAULT_CENTER, Action, CommandDispatcher, FallbackLocationResolver,
    PointOfInterest, haversine_km,
)
from resq_parser import CommandParser
from resq_semantics import AST, CommandType, Location, LocationKind, StatusAttributes


@pytest.fixture
def parser():
    return CommandParser()


@pytest.fixture
def dispatcher():
    ids = iter(f"EMG-{n}" for n in range(1, 100))
    return CommandDispatcher(id_factory=lambda: next(ids))


def ast_for(parser, command: str) -> AST:
    result = parser.parse(command)
    assert result.executable, command
    return result.ast


class BrokenResolver:
    def resolve(self, location, amenity, radius_km):
        raise ConnectionError("geocoder unreachable")


class BrokenStatus:
    def lookup(self, request_id):
        raise ConnectionError("status backend down")


class UnknownStatus:
    def lookup(self, request_id):
        return None


# ==========================================
# Handlers
# ==========================================

class TestAlert:
    def test_alert_created_with_factory_id(self, parser, dispatcher):
        result = dispatcher.dispatch(ast_for(parser, "ALERT fire at Lahore priority CRITICAL contact 1122"))
        assert result.action is Action.ALERT_CREATED
        assert result.executed
        assert result.payload["request_id"] == "EMG-1"
        details = result.payload["details"]
        assert details["priority"] == "CRITICAL"
        assert details["urgency_level"] == 10
        assert details["estimated_response"] == "2-4 minutes"
        assert [r["name"] for r in result.payload["responders"]] == ["Fire Brigade"]

    def test_explicit_request_id_wins(self, parser, dispatcher):
        result = dispatcher.dispatch(ast_for(parser, "ALERT medical at Lahore"), request_id="EMG-77-1")
        assert result.payload["request_id"] == "EMG-77-1"
        assert "EMG-77-1" in result.message

    def test_alert_survives_resolver_failure(self, parser):
        d = CommandDispatcher(location_resolver=BrokenResolver())
        result = d.dispatch(ast_for(parser, "ALERT accident at Karachi"))
        assert result.action is Action.ALERT_CREATED
        assert result.payload["responders"] == []


class TestQuery:
    def test_query_sorted_by_distance(self, parser, dispatcher):
        result = dispatcher.dispatch(ast_for(parser, "QUERY hospital near Lahore"))
        assert result.action is Action.QUERY_EXECUTED
        names = [r["name"] for r in result.payload["results"]]
        assert names[0] == "Services Hospital"
        assert set(names) == {"Services Hospital", "Jinnah Hospital", "Mayo Hospital"}
        assert result.payload["search_radius_km"] == 25

    def test_gps_query_uses_small_radius(self, parser, dispatcher):
        result = dispatcher.dispatch(ast_for(parser, "QUERY hospital near GPS:33.6693,73.0762"))
        assert result.payload["search_radius_km"] == 5
        assert result.payload["results"][0]["name"].startswith("Pakistan Institute of Medical Sciences")

    def test_nationwide_services_always_listed(self, parser, dispatcher):
        result = dispatcher.dispatch(ast_for(parser, "QUERY police near Quetta"))
        assert {r["phone"] for r in result.payload["results"]} == {"15", "130"}

    def test_resolver_failure_is_query_failed(self, parser):
        d = CommandDispatcher(location_resolver=BrokenResolver())
        result = d.dispatch(ast_for(parser, "QUERY ambulance near Karachi"))
        assert result.action is Action.QUERY_FAILED
        assert result.error == "geocoder unreachable"
        assert result.payload["fallback"]
        assert result.to_dict()["error"] == "geocoder unreachable"


class TestStatus:
    def test_status_retrieved(self, parser, dispatcher):
        result = dispatcher.dispatch(ast_for(parser, "STATUS EMG-12345"))
        assert result.action is Action.STATUS_RETRIEVED
        assert result.payload["details"]["status"] == "IN_PROGRESS"
        assert result.message == "Request EMG-12345 is in progress."

    def test_status_not_found(self, parser):
        d = CommandDispatcher(status_resolver=UnknownStatus())
        result = d.dispatch(ast_for(parser, "STATUS EMG-0"))
        assert result.action is Action.STATUS_NOT_FOUND

    def test_resolver_failure_is_status_failed(self, parser):
        d = CommandDispatcher(status_resolver=BrokenStatus())
        with capture_logs() as logs:
            result = d.dispatch(ast_for(parser, "STATUS EMG-1"))
        assert result.action is Action.STATUS_FAILED
        assert result.error == "status backend down"
        assert result.payload["request_id"] == "EMG-1"
        assert "status_resolver_failed" in [e["event"] for e in logs]

    def test_missing_request_id_cannot_execute(self, dispatcher):
        ast = AST(CommandType.STATUS, StatusAttributes(request_id=""))
        result = dispatcher.dispatch(ast)
        assert result.action is Action.CANNOT_EXECUTE
        assert not result.executed
        assert result.payload["missing"] == ["request_id"]


class TestHelp:
    def test_topic_help(self, parser, dispatcher):
        result = dispatcher.dispatch(ast_for(parser, "HELP fire emergencies"))
        assert result.action is Action.HELP_PROVIDED
        assert result.message.startswith("Fire emergencies")
        assert result.payload["emergency_numbers"]["Police"] == "15"

    def test_general_help(self, parser, dispatcher):
        result = dispatcher.dispatch(ast_for(parser, "HELP"))
        assert result.payload["topic"] == "general"
        assert result.message.startswith("Emergency numbers")


def test_every_command_type_has_a_handler():
    assert set(_HANDLERS) == set(CommandType)


# ==========================================
# Resolvers
# ==========================================

class TestFallbackResolver:
    def test_gps_center(self):
        loc = Location(kind=LocationKind.GPS, name="GPS:24.86,67.0", latitude=24.86, longitude=67.0)
        assert FallbackLocationResolver().center_of(loc) == (24.86, 67.0)

    def test_known_place_center(self):
        loc = Location(kind=LocationKind.NAMED, name="Karachi University")
        assert FallbackLocationResolver().center_of(loc) == (24.8607, 67.0011)

    def test_unknown_place_uses_default(self):
        loc = Location(kind=LocationKind.NAMED, name="Nowhere Town")
        assert FallbackLocationResolver().center_of(loc) == DEFAULT_CENTER

    def test_radius_filter(self):
        near = PointOfInterest("Near", "hospital", 31.53, 74.36)
        far = PointOfInterest("Far", "hospital", 24.86, 67.00)
        resolver = FallbackLocationResolver(directory=[far, near])
        loc = Location(kind=LocationKind.NAMED, name="Lahore")
        assert [p.name for p in resolver.resolve(loc, "hospital", 25)] == ["Near"]

    def test_haversine(self):
        assert haversine_km(31.5, 74.3, 31.5, 74.3) == 0
        assert 1000 < haversine_km(31.5204, 74.3587, 24.8607, 67.0011) < 1050
