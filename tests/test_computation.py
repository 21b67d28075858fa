"""
Secure Ward - Simulated Computation Provider Tests
"""

import os
import sys
import unittest

_project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from clinic.computation import SimulatedComputationProvider, UnknownOperation
from ward.types import ConfidentialityState, Record, Scalar, Vitals

NOMINAL = Vitals(heart_rate=72, systolic=120, diastolic=80,
                 temperature=36.6, oxygen_sat=98, symptom_severity=20)


def _locked(payload=NOMINAL):
    return Record.create(payload).evolve(state=ConfidentialityState.CONFIDENTIAL)


class TestOperations(unittest.TestCase):

    def setUp(self):
        self.provider = SimulatedComputationProvider()

    def test_operation_names(self):
        self.assertEqual(self.provider.operations,
                         ["billing", "diagnosis", "lab_analysis", "lock", "review"])

    def test_unknown_operation(self):
        with self.assertRaises(UnknownOperation):
            self.provider.transform("teleport", _locked())

    def test_lock(self):
        record = Record.create(NOMINAL)
        result = self.provider.transform("lock", record)
        self.assertEqual(result.record.state, ConfidentialityState.CONFIDENTIAL)
        self.assertEqual(len(result.record.sealed_blob), 64)
        self.assertEqual(result.metrics["ciphertext_bytes"], 2 * 8192 * 8)
        self.assertEqual(record.state, ConfidentialityState.PLAINTEXT)
        self.assertEqual(record.sealed_blob, "")

    def test_lab_analysis_nominal_is_zero(self):
        result = self.provider.transform("lab_analysis", _locked())
        self.assertEqual(result.metrics["risk_index"], 0.0)
        self.assertEqual(result.record.state, ConfidentialityState.ANNOTATED)
        self.assertTrue(result.derivation_steps)

    def test_lab_analysis_scalar_passthrough(self):
        result = self.provider.transform("lab_analysis", _locked(Scalar(12.5)))
        self.assertEqual(result.metrics["risk_index"], 12.5)

    def test_diagnosis(self):
        result = self.provider.transform("diagnosis", _locked())
        self.assertEqual(result.metrics["severity_estimate"], 10.0)

    def test_diagnosis_clamped(self):
        result = self.provider.transform("diagnosis", _locked(Scalar(250)))
        self.assertEqual(result.metrics["severity_estimate"], 100.0)

    def test_review_decision(self):
        calm = _locked().evolve(severity=40.0)
        grave = _locked().evolve(severity=95.0)
        self.assertEqual(self.provider.transform("review", calm).metrics["decision"], "approved")
        self.assertEqual(self.provider.transform("review", grave).metrics["decision"], "escalated")

    def test_billing_sums_charges(self):
        record = _locked()
        for agent, amount in (("General Doctor", 150), ("Medical Lab", 200),
                              ("Specialist", 250), ("Human Doctor", 10)):
            record = record.with_charge(agent, amount)
        result = self.provider.transform("billing", record)
        self.assertEqual(result.record.total_charge, 610)
        self.assertEqual(result.record.charges, record.charges)
        self.assertEqual(result.metrics["line_items"], 4)

    def test_billing_with_no_charges(self):
        result = self.provider.transform("billing", _locked())
        self.assertEqual(result.record.total_charge, 0.0)

    def test_transforms_preserve_identity_and_provenance(self):
        record = _locked().with_charge("Specialist", 250)
        for op in ("lab_analysis", "diagnosis", "review", "billing"):
            updated = self.provider.transform(op, record).record
            self.assertEqual(updated.id, record.id)
            self.assertEqual(updated.provenance, record.provenance)
            self.assertEqual(updated.charges, record.charges)
            self.assertEqual(updated.payload, record.payload)

    def test_deterministic(self):
        record = _locked()
        a = self.provider.transform("lock", record)
        b = self.provider.transform("lock", record)
        self.assertEqual(a.record.sealed_blob, b.record.sealed_blob)


if __name__ == "__main__":
    unittest.main()
