"""
CliniGate -- AI Safety & Governance Gateway.

A gateway that mediates every call from a clinical UI to a local language
model.  The model is advisory-only: its output is sanitized, validated,
compared against a deterministic triage rule engine, risk-scored, and
blocked whenever it contradicts or overrides the engine's result.

DISCLAIMER: This software is decision support.  It does not diagnose,
prescribe, or change triage classifications.  Every model response must be
verified by qualified medical staff.
"""

__version__ = "0.1.0"
