"""
Secure Ward - Structured Logging Tests
"""

import io
import json
import logging
import os
import sys
import unittest

_project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from clinic.config import load_config
from clinic.logging import (
    JSONFormatter, StructuredLogger, configure_logging, generate_trace_id, get_logger,
)
from ward.transitions import TransitionEngine


def _lines(stream):
    return [json.loads(line) for line in stream.getvalue().splitlines() if line.strip()]


class _CapturedLogging(unittest.TestCase):

    level = "INFO"

    def setUp(self):
        self.stream = io.StringIO()
        configure_logging(level=self.level, stream=self.stream)

    def tearDown(self):
        configure_logging(level="WARNING", stream=io.StringIO())


class TestJSONFormatter(unittest.TestCase):

    def test_basic_fields(self):
        record = logging.LogRecord("secure_ward.x", logging.INFO, "", 0, "hello %s", ("ward",), None)
        entry = json.loads(JSONFormatter().format(record))
        self.assertEqual(entry["message"], "hello ward")
        self.assertEqual(entry["level"], "INFO")
        self.assertEqual(entry["service.name"], "secure_ward")

    def test_structured_fields_merged(self):
        record = logging.LogRecord("secure_ward.x", logging.INFO, "", 0, "evt", (), None)
        record.structured = {"trace_id": "abc", "role": "BILLING"}
        entry = json.loads(JSONFormatter().format(record))
        self.assertEqual(entry["trace_id"], "abc")
        self.assertEqual(entry["role"], "BILLING")

    def test_exception_fields(self):
        try:
            raise ValueError("bad")
        except ValueError:
            record = logging.LogRecord("secure_ward.x", logging.ERROR, "", 0, "oops", (), sys.exc_info())
        entry = json.loads(JSONFormatter().format(record))
        self.assertEqual(entry["exception.type"], "ValueError")


class TestHelpers(unittest.TestCase):

    def test_trace_id_format(self):
        tid = generate_trace_id()
        self.assertEqual(len(tid), 32)
        int(tid, 16)
        self.assertNotEqual(tid, generate_trace_id())

    def test_child_logger_namespace(self):
        self.assertEqual(get_logger("engine").name, "secure_ward.engine")
        self.assertEqual(get_logger().name, "secure_ward")

    def test_reconfigure_does_not_duplicate(self):
        stream = io.StringIO()
        configure_logging(level="INFO", stream=stream)
        configure_logging(level="INFO", stream=stream)
        get_logger("t").info("once")
        self.assertEqual(len(_lines(stream)), 1)
        configure_logging(level="WARNING", stream=io.StringIO())


class TestStructuredLogger(_CapturedLogging):

    def test_applied_transition_logged_with_trace(self):
        log = StructuredLogger(facility="st-zama-hospital-001", trace_id="t" * 32)
        log.on_transition_applied("SPECIALIST", "compute", "DIAGNOSIS", "rec_1", "ANNOTATED")
        entry = _lines(self.stream)[0]
        self.assertEqual(entry["action"], "transition_applied")
        self.assertEqual(entry["trace_id"], "t" * 32)
        self.assertEqual(entry["facility"], "st-zama-hospital-001")
        self.assertEqual(entry["audit_action"], "DIAGNOSIS")

    def test_ignored_actions_are_debug_only(self):
        log = StructuredLogger()
        log.on_action_ignored("PATIENT", "forward", "illegal_target")
        self.assertEqual(_lines(self.stream), [])

    def test_renew_changes_trace_keeps_facility(self):
        log = StructuredLogger(facility="f1")
        renewed = log.renew()
        self.assertEqual(renewed.facility, "f1")
        self.assertNotEqual(renewed.trace_id, log.trace_id)

    def test_fallback_is_warning(self):
        StructuredLogger().on_advisory_fallback("SPECIALIST", "TimeoutError: ")
        entry = _lines(self.stream)[0]
        self.assertEqual(entry["level"], "WARNING")
        self.assertEqual(entry["role"], "SPECIALIST")


class TestEngineLogging(_CapturedLogging):

    level = "DEBUG"

    def test_run_correlated_by_trace_id(self):
        import asyncio

        engine = TransitionEngine.from_config(load_config(include_env_vars=False))

        async def run():
            await engine.submit("PATIENT", "admit")
            await engine.submit("PATIENT", "forward", target="BILLING")

        asyncio.run(run())
        events = [e for e in _lines(self.stream) if "trace_id" in e]
        self.assertTrue(events)
        self.assertEqual({e["trace_id"] for e in events}, {engine.trace_id})
        actions = [e["action"] for e in events]
        self.assertIn("transition_applied", actions)
        ignored = [e for e in events if e["action"] == "action_ignored"]
        self.assertEqual(ignored[0]["reason"], "illegal_target")


if __name__ == "__main__":
    unittest.main()
