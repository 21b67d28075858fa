"""
Secure Ward - Simulated Confidential Computation

Deterministic stand-in for the confidential-compute backend. Each
operation takes a Record and returns a new Record plus a description,
a formula, step-by-step derivation and numeric metrics for the audit
log. Nothing here is real cryptography: the "sealed blob" is a SHA-256
fingerprint of the payload and the "homomorphic" steps are ordinary
arithmetic on the plaintext values.

Operations:
  lock          seal the payload, state → CONFIDENTIAL
  lab_analysis  weighted deviation index over the vitals
  diagnosis     severity estimate from vitals
  review        threshold check of the current severity
  billing       total_charge = Σ charges (the only op that sets it)
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol, Union

from ward.types import ConfidentialityState, Record, Scalar, Vitals

logger = logging.getLogger("secure_ward.computation")


@dataclass
class ComputationResult:
    """Output of one transform."""
    record: Record
    description: str
    metrics: dict[str, Any] = field(default_factory=dict)
    formula: str | None = None
    derivation_steps: list[str] = field(default_factory=list)


class UnknownOperation(KeyError):
    """The provider has no transform with this name."""


class ComputationProvider(Protocol):
    """transform() may be sync or async; the engine awaits when needed."""

    def transform(
        self, operation: str, record: Record,
    ) -> Union[ComputationResult, Awaitable[ComputationResult]]: ...


# Reference ranges used by the deviation index
NOMINAL_VITALS = {
    "heart_rate": 72.0,
    "systolic": 120.0,
    "diastolic": 80.0,
    "temperature": 36.6,
    "oxygen_sat": 98.0,
}

LAB_WEIGHTS = {
    "heart_rate": 0.25,
    "systolic": 0.25,
    "diastolic": 0.15,
    "temperature": 0.20,
    "oxygen_sat": 0.15,
}

REVIEW_ESCALATION_THRESHOLD = 90.0


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


class SimulatedComputationProvider:
    """Pure, synchronous provider. Input records are never modified."""

    def __init__(self, scheme: str = "CKKS-sim", poly_modulus_degree: int = 8192):
        self.scheme = scheme
        self.poly_modulus_degree = poly_modulus_degree
        self._ops: dict[str, Callable[[Record], ComputationResult]] = {
            "lock": self._lock,
            "lab_analysis": self._lab_analysis,
            "diagnosis": self._diagnosis,
            "review": self._review,
            "billing": self._billing,
        }

    @property
    def operations(self) -> list[str]:
        return sorted(self._ops)

    def transform(self, operation: str, record: Record) -> ComputationResult:
        try:
            op = self._ops[operation]
        except KeyError:
            raise UnknownOperation(operation) from None
        result = op(record)
        logger.debug("transform %s on %s → %s", operation, record.id, result.metrics)
        return result

    # ── Operations ──────────────────────────────────────────────

    def _lock(self, record: Record) -> ComputationResult:
        values = record.payload.values()
        encoded = json.dumps(values, sort_keys=True)
        blob = hashlib.sha256(f"{record.id}|{encoded}".encode("utf-8")).hexdigest()
        slots_used = len(values)
        # Two ring elements of N coefficients, 8 bytes each
        ciphertext_bytes = 2 * self.poly_modulus_degree * 8

        updated = record.evolve(
            state=ConfidentialityState.CONFIDENTIAL,
            sealed_blob=blob,
        )
        return ComputationResult(
            record=updated,
            description=(
                f"Payload sealed under {self.scheme}: {slots_used} value(s) packed, "
                f"fingerprint {blob[:12]}."
            ),
            metrics={
                "scheme": self.scheme,
                "slots_used": slots_used,
                "ciphertext_bytes": ciphertext_bytes,
                "poly_modulus_degree": self.poly_modulus_degree,
            },
            formula="ct = Enc_pk(m) = (c0, c1)",
            derivation_steps=[
                f"encode {slots_used} value(s) into plaintext slots",
                f"encrypt with N={self.poly_modulus_degree}",
                f"fingerprint = sha256(id | payload)[:12] = {blob[:12]}",
            ],
        )

    def _lab_analysis(self, record: Record) -> ComputationResult:
        payload = record.payload
        steps: list[str] = []
        if isinstance(payload, Vitals):
            values = payload.values()
            index = 0.0
            for name, weight in LAB_WEIGHTS.items():
                nominal = NOMINAL_VITALS[name]
                deviation = abs(values[name] - nominal) / nominal
                contribution = 100.0 * weight * deviation
                index += contribution
                steps.append(
                    f"{name}: |{values[name]} - {nominal}| / {nominal} × {weight} × 100 = {contribution:.2f}"
                )
            formula = "R = 100 · Σ w_i · |x_i - μ_i| / μ_i"
        else:
            index = float(payload.value)
            steps.append(f"scalar passthrough: R = {index}")
            formula = "R = x"
        index = round(index, 2)
        steps.append(f"risk index R = {index}")

        return ComputationResult(
            record=record.evolve(state=ConfidentialityState.ANNOTATED),
            description=f"Biomarker deviation index computed on sealed data: R = {index}.",
            metrics={"risk_index": index, "multiplicative_depth": 1},
            formula=formula,
            derivation_steps=steps,
        )

    def _diagnosis(self, record: Record) -> ComputationResult:
        payload = record.payload
        if isinstance(payload, Vitals):
            terms = {
                "symptoms": 0.5 * payload.symptom_severity,
                "heart_rate": 0.3 * abs(payload.heart_rate - NOMINAL_VITALS["heart_rate"]),
                "hypertension": 0.2 * max(0.0, payload.systolic - NOMINAL_VITALS["systolic"]),
                "fever": 10.0 * max(0.0, payload.temperature - 37.5),
                "hypoxia": 2.0 * max(0.0, 95.0 - payload.oxygen_sat),
            }
            formula = "S = clamp(0.5·sev + 0.3·|hr-72| + 0.2·(sys-120)⁺ + 10·(T-37.5)⁺ + 2·(95-SpO2)⁺)"
        else:
            terms = {"value": float(payload.value)}
            formula = "S = clamp(x)"
        raw = sum(terms.values())
        estimate = round(_clamp(raw), 2)
        steps = [f"{name} = {value:.2f}" for name, value in terms.items()]
        steps.append(f"S = clamp({raw:.2f}) = {estimate}")

        return ComputationResult(
            record=record.evolve(state=ConfidentialityState.ANNOTATED),
            description=f"Encrypted inference produced severity estimate {estimate}.",
            metrics={"severity_estimate": estimate, "multiplicative_depth": 2},
            formula=formula,
            derivation_steps=steps,
        )

    def _review(self, record: Record) -> ComputationResult:
        severity = record.severity if record.severity is not None else 0.0
        decision = "escalated" if severity >= REVIEW_ESCALATION_THRESHOLD else "approved"
        return ComputationResult(
            record=record.evolve(state=ConfidentialityState.ANNOTATED),
            description=f"Case reviewed inside enclave: severity {severity} → {decision}.",
            metrics={
                "reviewed_severity": severity,
                "threshold": REVIEW_ESCALATION_THRESHOLD,
                "decision": decision,
            },
            formula="approve ⇔ S < threshold",
            derivation_steps=[
                f"S = {severity}",
                f"S {'>=' if decision == 'escalated' else '<'} {REVIEW_ESCALATION_THRESHOLD}",
                f"decision = {decision}",
            ],
        )

    def _billing(self, record: Record) -> ComputationResult:
        total = 0.0
        steps: list[str] = []
        for agent, amount in record.charges.items():
            total += amount
            steps.append(f"+ {agent}: {amount} → {total}")
        if not steps:
            steps.append("no charges recorded → 0")
        steps.append(f"total = {total}")

        return ComputationResult(
            record=record.evolve(state=ConfidentialityState.ANNOTATED, total_charge=total),
            description=f"Invoice aggregated over {len(record.charges)} line item(s): total {total}.",
            metrics={"line_items": len(record.charges), "total": total},
            formula="Enc(total) = Σ_i Enc(bill_i)",
            derivation_steps=steps,
        )
