"""
Tests for resq_processor.py

Run with:  pytest tests/test_processor.py -v
"""

from concurrent.futures import ThreadPoolExecutor

import pytest
from structlog.testing import capture_logs

from resq_concurrency import ConcurrencyCoordinator
from resq_config import load_settings
from resq_dispatcher import CommandDispatcher
from resq_processor import (
    EmergencyCommandProcessor, RequestLifecycle, RequestState,
    run_concurrency_demo, run_parser_examples,
)


def make_processor(**overrides) -> EmergencyCommandProcessor:
    overrides.setdefault("simulated_latency_ms", 0)
    return EmergencyCommandProcessor(settings=load_settings(**overrides))


@pytest.fixture
def processor():
    return make_processor()


EXECUTED_TRAIL = [
    "RECEIVED", "TOKENIZING", "PARSING", "SEMANTIC_ANALYSIS",
    "SUCCESS", "EXECUTING", "RESPONSE", "SUCCESS_EXECUTED",
]


# ==========================================
# Lifecycle
# ==========================================

class TestLifecycle:
    def test_starts_received(self):
        lc = RequestLifecycle()
        assert lc.state is RequestState.RECEIVED
        assert not lc.finished

    def test_illegal_transition_raises(self):
        lc = RequestLifecycle()
        with pytest.raises(RuntimeError):
            lc.advance(RequestState.SUCCESS)

    def test_terminal_states_accept_nothing(self):
        lc = RequestLifecycle()
        lc.advance(RequestState.FAILED)
        assert lc.finished
        with pytest.raises(RuntimeError):
            lc.advance(RequestState.TOKENIZING)


# ==========================================
# handle()
# ==========================================

class TestHandle:
    def test_valid_alert_is_executed(self, processor):
        resp = processor.handle("ALERT fire at Lahore priority HIGH contact 1122")
        assert resp["success"] is True
        assert resp["state"] == "SUCCESS_EXECUTED"
        assert resp["state_trail"] == EXECUTED_TRAIL
        assert resp["execution"]["action"] == "ALERT_CREATED"
        assert resp["execution"]["request_id"] == resp["concurrency"]["emergency_id"]
        assert resp["concurrency"]["queue_status"]["success"] is True
        assert resp["semantics"]["extracted_data"]["urgency_level"] == 6

    def test_syntax_error_fails(self, processor):
        resp = processor.handle("ALERT fire Lahore")
        assert resp["success"] is False
        assert resp["state_trail"] == ["RECEIVED", "TOKENIZING", "PARSING", "SEMANTIC_ANALYSIS", "FAILED"]
        assert resp["diagnostics"]["parse_errors"][0]["code"] == "P001"
        assert resp["suggestions"]
        assert resp["examples"]
        assert "concurrency" not in resp

    def test_semantic_error_is_not_executed(self, processor):
        resp = processor.handle("ALERT fire at Lahore contact nobody")
        assert resp["success"] is True
        assert resp["state"] == "SUCCESS_NOT_EXECUTED"
        assert "execution" not in resp
        assert resp["diagnostics"]["semantic_errors"][0]["code"] == "S001"

    @pytest.mark.parametrize("command", ["", "   ", "\x00\x01"])
    def test_blank_input_rejected_before_parsing(self, processor, command):
        resp = processor.handle(command)
        assert resp["state_trail"] == ["RECEIVED", "FAILED"]
        assert resp["error"]
        assert processor.coordinator.parser_usage_count == 0

    def test_overlong_input_rejected(self, processor):
        resp = processor.handle("HELP " + "x" * 600)
        assert resp["state"] == "FAILED"
        assert resp["state_trail"] == ["RECEIVED", "FAILED"]

    def test_configured_length_limit_applies(self):
        p = make_processor(max_command_length=10)
        resp = p.handle("QUERY hospital near Islamabad")
        assert resp["state_trail"] == ["RECEIVED", "FAILED"]
        assert "limit is 10" in resp["error"]
        assert p.handle("HELP fire")["state"] == "SUCCESS_EXECUTED"

    def test_status_backend_failure_is_a_response(self):
        class BrokenStatus:
            def lookup(self, request_id):
                raise ConnectionError("status backend down")

        coordinator = ConcurrencyCoordinator(settings=load_settings(simulated_latency_ms=0))
        p = EmergencyCommandProcessor(
            coordinator=coordinator,
            dispatcher=CommandDispatcher(status_resolver=BrokenStatus()),
        )
        resp = p.handle("STATUS EMG-1")
        assert resp["state"] == "SUCCESS_EXECUTED"
        assert resp["execution"]["action"] == "STATUS_FAILED"
        assert resp["execution"]["error"] == "status backend down"
        assert coordinator.get_stats().current_active_requests == 0

    def test_non_text_input_rejected(self, processor):
        resp = processor.handle(12345)
        assert resp["state"] == "FAILED"
        assert resp["command"] is None

    def test_lock_timeout_fails_request(self):
        p = make_processor(lock_timeout=0.05)
        p.coordinator.parser_lock.acquire()
        try:
            resp = p.handle("HELP")
        finally:
            p.coordinator.parser_lock.release()
        assert resp["state_trail"] == ["RECEIVED", "TOKENIZING", "PARSING", "FAILED"]
        assert "Timed out" in resp["error"]
        assert p.coordinator.get_stats().current_active_requests == 0

    def test_queue_overflow_still_executes(self):
        p = make_processor(queue_capacity=1)
        p.handle("HELP")
        resp = p.handle("HELP fire")
        assert resp["state"] == "SUCCESS_EXECUTED"
        assert resp["concurrency"]["queue_status"] == {"success": False, "queue_size": 1, "reason": "Queue full"}

    def test_status_uses_its_own_request_id(self, processor):
        resp = processor.handle("STATUS EMG-12345")
        assert resp["execution"]["request_id"] == "EMG-12345"

    def test_emits_structured_events(self, processor):
        with capture_logs() as logs:
            processor.handle("QUERY hospital near Lahore")
        events = [e["event"] for e in logs]
        assert "command_dispatched" in events
        assert "command_processed" in events

    def test_injected_coordinator_is_used(self):
        coordinator = ConcurrencyCoordinator(settings=load_settings(simulated_latency_ms=0))
        p = EmergencyCommandProcessor(coordinator=coordinator)
        p.handle("HELP")
        assert coordinator.get_stats().total_requests == 1


class TestConcurrentHandling:
    def test_many_threads(self, processor):
        commands = ["ALERT fire at Lahore", "QUERY ambulance near Karachi", "STATUS EMG-1", "HELP"] * 10
        with ThreadPoolExecutor(max_workers=8) as pool:
            responses = list(pool.map(processor.handle, commands))

        assert all(r["state"] == "SUCCESS_EXECUTED" for r in responses)
        ids = [r["concurrency"]["emergency_id"] for r in responses]
        assert len(set(ids)) == 40

        stats = processor.get_stats()
        assert stats["concurrency"]["total_requests"] == 40
        assert stats["concurrency"]["current_active_requests"] == 0
        assert stats["concurrency"]["emergency_counter"] == 40
        assert stats["concurrency"]["queue_length"] == 40
        assert stats["parser"]["total_commands_parsed"] == 40


# ==========================================
# Demos
# ==========================================

class TestDemos:
    def test_parser_examples(self):
        report = run_parser_examples()
        assert report["summary"] == {"total_tests": 6, "successful": 5, "failed": 1}
        assert report["statistics"]["total_commands_parsed"] == 6

    def test_concurrency_demo(self, processor):
        demo = run_concurrency_demo(processor)
        assert [r["state"] for r in demo["results"]] == ["SUCCESS_EXECUTED"] * 4
        assert demo["stats"]["total_requests"] == 4
        assert len({r["emergency_id"] for r in demo["results"]}) == 4
