"""
Secure Ward - Advisory Provider

Produces the per-agent billing amount and narrative (and, for diagnostic
agents, a severity annotation) for one workflow step.

Two implementations:
  FallbackAdvisor  offline; always answers with the configured per-role
                   fallback values
  LLMAdvisor       asks a langchain chat model (see clinic.llm) and parses
                   the BILL / SEVERITY / FINAL_SEVERITY / BIOMARKERS
                   markers out of its reply

advise() never raises to its caller for ordinary failures: any error from
the model call, a timeout, or an unparseable reply resolves to the role's
fallback tuple. Cancellation still propagates.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Protocol

from clinic.config import get_config_value

logger = logging.getLogger("secure_ward.advisory")

DEFAULT_PRIOR_SEVERITY = 65.0

_AMOUNT_RE = re.compile(r"BILL:\s*\$?\s*(\d+(?:\.\d+)?)")
_FINDINGS_LINE_RE = re.compile(r"BIOMARKERS:\s*(.+)")
_FINDING_RE = re.compile(r"([A-Za-z_]+)\s*=\s*(\d+(?:\.\d+)?)")


@dataclass(frozen=True)
class Advice:
    """Result of one advisory call."""
    amount: float
    narrative: str
    annotation: float | None = None
    findings: dict[str, float] = field(default_factory=dict)
    fallback: bool = False
    error: str = ""


@dataclass(frozen=True)
class RoleAdvisory:
    """Per-role advisory settings, read from the advisory.roles config."""
    role: str
    prompt: str
    fallback_amount: float
    fallback_narrative: str
    fixed_amount: float | None = None
    annotation_marker: str | None = None
    fallback_annotation: float | None = None
    annotation_from_prior: bool = False
    findings_marker: bool = False
    fallback_findings: dict[str, float] = field(default_factory=dict)

    def fallback_advice(self, prior: dict[str, Any] | None = None, error: str = "") -> Advice:
        annotation = self.fallback_annotation
        if self.annotation_from_prior:
            annotation = _prior_severity(prior)
        return Advice(
            amount=self.fixed_amount if self.fixed_amount is not None else self.fallback_amount,
            narrative=self.fallback_narrative,
            annotation=annotation,
            findings=dict(self.fallback_findings),
            fallback=True,
            error=error,
        )


class AdvisoryProvider(Protocol):
    async def advise(
        self,
        role: str,
        inputs: dict[str, float],
        prior: dict[str, Any] | None = None,
    ) -> Advice: ...


def _prior_severity(prior: dict[str, Any] | None) -> float:
    value = (prior or {}).get("severity")
    return float(value) if value is not None else DEFAULT_PRIOR_SEVERITY


def load_role_advisories(config: dict[str, Any]) -> dict[str, RoleAdvisory]:
    """Build RoleAdvisory settings for every role under advisory.roles."""
    roles = get_config_value("advisory.roles", config, {}) or {}
    result = {}
    for role, raw in roles.items():
        result[role] = RoleAdvisory(
            role=role,
            prompt=raw.get("prompt", ""),
            fallback_amount=float(raw.get("fallback_amount", 0)),
            fallback_narrative=raw.get("fallback_narrative", f"{role} advisory"),
            fixed_amount=(float(raw["fixed_amount"])
                          if raw.get("fixed_amount") is not None else None),
            annotation_marker=raw.get("annotation_marker"),
            fallback_annotation=(float(raw["fallback_annotation"])
                                 if raw.get("fallback_annotation") is not None else None),
            annotation_from_prior=bool(raw.get("annotation_from_prior", False)),
            findings_marker=bool(raw.get("findings_marker", False)),
            fallback_findings={k: float(v) for k, v in (raw.get("fallback_findings") or {}).items()},
        )
    return result


# ═══════════════════════════════════════════════════════════════════
# Parsing
# ═══════════════════════════════════════════════════════════════════

def parse_advice(text: str, settings: RoleAdvisory, prior: dict[str, Any] | None = None) -> Advice:
    """
    Extract amount, annotation and findings from a model reply.

    Missing markers fall back field by field to the role's defaults,
    as a partially useful reply is still better than none.
    """
    fallback = settings.fallback_advice(prior)

    if settings.fixed_amount is not None:
        amount = settings.fixed_amount
    else:
        match = _AMOUNT_RE.search(text)
        amount = float(match.group(1)) if match else fallback.amount

    annotation = fallback.annotation
    if settings.annotation_marker:
        match = re.search(rf"\b{re.escape(settings.annotation_marker)}:\s*(\d+(?:\.\d+)?)", text)
        if match:
            annotation = max(0.0, min(100.0, float(match.group(1))))

    findings = fallback.findings
    if settings.findings_marker:
        line = _FINDINGS_LINE_RE.search(text)
        if line:
            parsed = {k.lower(): float(v) for k, v in _FINDING_RE.findall(line.group(1))}
            if parsed:
                findings = parsed

    return Advice(
        amount=amount,
        narrative=text.strip() or fallback.narrative,
        annotation=annotation,
        findings=findings,
    )


def _message_text(message: Any) -> str:
    content = getattr(message, "content", message)
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, dict):
                parts.append(str(part.get("text", "")))
            else:
                parts.append(str(part))
        return "".join(parts)
    return str(content)


class _PromptFields(dict):
    def __missing__(self, key):
        return "n/a"


# ═══════════════════════════════════════════════════════════════════
# Providers
# ═══════════════════════════════════════════════════════════════════

class FallbackAdvisor:
    """Offline advisor: every call resolves to the role's fallback tuple."""

    def __init__(self, roles: dict[str, RoleAdvisory]):
        self.roles = roles

    async def advise(self, role, inputs, prior=None) -> Advice:
        settings = self.roles.get(role)
        if settings is None:
            return Advice(amount=0.0, narrative=f"{role} advisory", fallback=True)
        return settings.fallback_advice(prior)


class LLMAdvisor:
    """Advisory backed by a langchain chat model."""

    def __init__(self, llm, roles: dict[str, RoleAdvisory], timeout_seconds: float | None = None):
        self.llm = llm
        self.roles = roles
        self.timeout_seconds = timeout_seconds

    def build_prompt(self, settings: RoleAdvisory, inputs: dict[str, float],
                     prior: dict[str, Any] | None) -> str:
        fields = _PromptFields(inputs)
        fields["prior_severity"] = _prior_severity(prior)
        return settings.prompt.format_map(fields)

    async def advise(self, role, inputs, prior=None) -> Advice:
        settings = self.roles.get(role)
        if settings is None:
            return Advice(amount=0.0, narrative=f"{role} advisory", fallback=True)

        start = time.time()
        try:
            prompt = self.build_prompt(settings, inputs, prior)
            call = self.llm.ainvoke(prompt)
            if self.timeout_seconds:
                message = await asyncio.wait_for(call, self.timeout_seconds)
            else:
                message = await call
            advice = parse_advice(_message_text(message), settings, prior)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Advisory call for %s failed: %s, using fallback", role, e)
            return settings.fallback_advice(prior, error=f"{type(e).__name__}: {e}")

        logger.debug("Advisory for %s in %.2fs: amount=%s annotation=%s",
                     role, time.time() - start, advice.amount, advice.annotation)
        return advice
