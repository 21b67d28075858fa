"""
Secure Ward - Audit Log Tests

Covers:
  - append order, sequence numbers and monotonic timestamps
  - hash-chain linkage from the genesis tag
  - tamper detection by verify_chain
  - entries are immutable and the log has no mutation surface
"""

import dataclasses
import os
import sys
import unittest

_project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from clinic.audit import GENESIS_TAG, AuditEntry, AuditLog, compute_integrity_tag


class TestAppend(unittest.TestCase):

    def setUp(self):
        self.log = AuditLog()

    def test_empty_log(self):
        self.assertEqual(len(self.log), 0)
        self.assertEqual(self.log.entries(), ())
        self.assertIsNone(self.log.last())
        ok, _ = self.log.verify_chain()
        self.assertTrue(ok)

    def test_append_order_and_sequence(self):
        for action in ("ADMIT", "LOCK", "SUBMIT"):
            self.log.append("PATIENT", action, f"{action} details")
        entries = self.log.entries()
        self.assertEqual([e.action for e in entries], ["ADMIT", "LOCK", "SUBMIT"])
        self.assertEqual([e.sequence for e in entries], [1, 2, 3])
        self.assertEqual(self.log.last().action, "SUBMIT")

    def test_timestamps_never_decrease(self):
        for i in range(50):
            self.log.append("BILLING", "BILLING", str(i))
        stamps = [e.timestamp for e in self.log.entries()]
        self.assertEqual(stamps, sorted(stamps))
        self.assertEqual(len(set(stamps)), len(stamps))

    def test_ids_and_tags_unique(self):
        for i in range(20):
            self.log.append("PATIENT", "AMEND", "same details")
        entries = self.log.entries()
        self.assertEqual(len({e.id for e in entries}), 20)
        self.assertEqual(len({e.integrity_tag for e in entries}), 20)

    def test_optional_fields(self):
        entry = self.log.append(
            "SPECIALIST", "DIAGNOSIS", "Severity estimated.",
            metrics={"severity_estimate": 42.0},
            formula="S = clamp(x)",
            derivation_steps=["x = 42", "S = 42"],
            record_id="rec_abc",
        )
        self.assertEqual(entry.metrics["severity_estimate"], 42.0)
        self.assertEqual(entry.derivation_steps, ("x = 42", "S = 42"))
        self.assertEqual(entry.record_id, "rec_abc")

        plain = self.log.append("PATIENT", "ADMIT", "Record created.")
        self.assertIsNone(plain.metrics)
        self.assertIsNone(plain.formula)
        self.assertIsNone(plain.derivation_steps)

    def test_metrics_copied_on_append(self):
        metrics = {"total": 10.0}
        entry = self.log.append("BILLING", "BILLING", "Invoice.", metrics=metrics)
        metrics["total"] = 99.0
        self.assertEqual(entry.metrics["total"], 10.0)
        with self.assertRaises(TypeError):
            entry.metrics["total"] = 1.0

    def test_queries(self):
        self.log.append("PATIENT", "ADMIT", "a")
        self.log.append("GENERAL_DOCTOR", "REFERRAL", "b")
        self.log.append("PATIENT", "LOCK", "c")
        self.assertEqual(len(self.log.by_source("PATIENT")), 2)
        self.assertEqual(len(self.log.by_action("REFERRAL")), 1)
        self.assertEqual([e.action for e in self.log], ["ADMIT", "REFERRAL", "LOCK"])

    def test_to_dict(self):
        entry = self.log.append("PATIENT", "ADMIT", "Record created.", record_id="rec_1")
        d = entry.to_dict()
        self.assertEqual(d["source"], "PATIENT")
        self.assertEqual(d["action"], "ADMIT")
        self.assertEqual(d["integrity_tag"], entry.integrity_tag)
        self.assertIn("T", d["timestamp"])


class TestImmutability(unittest.TestCase):

    def test_entry_is_frozen(self):
        log = AuditLog()
        entry = log.append("PATIENT", "ADMIT", "Record created.")
        with self.assertRaises(dataclasses.FrozenInstanceError):
            entry.details = "rewritten"

    def test_snapshot_is_detached(self):
        log = AuditLog()
        log.append("PATIENT", "ADMIT", "a")
        snapshot = log.entries()
        log.append("PATIENT", "LOCK", "b")
        self.assertEqual(len(snapshot), 1)
        self.assertIsInstance(snapshot, tuple)

    def test_no_mutation_methods(self):
        for name in ("update", "delete", "remove", "clear", "pop", "insert"):
            self.assertFalse(hasattr(AuditLog, name), name)


class TestChainIntegrity(unittest.TestCase):

    def setUp(self):
        self.log = AuditLog()
        self.log.append("PATIENT", "ADMIT", "Record created.")
        self.log.append("PATIENT", "LOCK", "Sealed.", metrics={"slots_used": 6})
        self.log.append("PATIENT", "SUBMIT", "Forwarded.")

    def test_genesis_link(self):
        first = self.log.entries()[0]
        self.assertEqual(first.previous_tag, GENESIS_TAG)
        self.assertEqual(len(first.integrity_tag), 64)

    def test_chain_links(self):
        entries = self.log.entries()
        for prev, cur in zip(entries, entries[1:]):
            self.assertEqual(cur.previous_tag, prev.integrity_tag)

    def test_verify_intact(self):
        ok, message = self.log.verify_chain()
        self.assertTrue(ok)
        self.assertIn("3 entries", message)

    def test_tag_is_deterministic(self):
        a = compute_integrity_tag(GENESIS_TAG, "id", 1, 1.5, "{}")
        b = compute_integrity_tag(GENESIS_TAG, "id", 1, 1.5, "{}")
        c = compute_integrity_tag(GENESIS_TAG, "id", 2, 1.5, "{}")
        self.assertEqual(a, b)
        self.assertNotEqual(a, c)

    def test_tampered_details_detected(self):
        entries = list(self.log._entries)
        entries[1] = dataclasses.replace(entries[1], details="Not sealed.")
        self.log._entries = entries
        ok, message = self.log.verify_chain()
        self.assertFalse(ok)
        self.assertIn("Tampered entry 2", message)

    def test_removed_entry_detected(self):
        del self.log._entries[1]
        ok, message = self.log.verify_chain()
        self.assertFalse(ok)
        self.assertIn("Chain broken", message)

    def test_tampered_metrics_detected(self):
        entry = self.log._entries[1]
        object.__setattr__(entry, "metrics", {"slots_used": 1})
        ok, _ = self.log.verify_chain()
        self.assertFalse(ok)


if __name__ == "__main__":
    unittest.main()
