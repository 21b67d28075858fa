"""
Secure Ward - Clinic Services

Collaborators of the transition engine, plus its ambient stack:
  - clinic.computation: simulated confidential computation provider
  - clinic.advisory: billing/advisory provider (offline or LLM-backed)
  - clinic.llm: chat model factory for the advisory provider
  - clinic.audit: append-only, hash-chained audit log
  - clinic.config: three-tier YAML config loader
  - clinic.logging: JSON structured logging
"""
