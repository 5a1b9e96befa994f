"""Verification gate module."""

from stagegate.verification.gate import CheckResult, VerificationGate

__all__ = ["CheckResult", "VerificationGate"]
