"""stagegate - Platform-aware multi-stage build orchestration.

This package drives declarative multi-stage container builds as a
dependency graph, tracks the platform and ABI fingerprint every artifact
was produced under, refuses incompatible inter-stage copies, and gates
stage promotion on post-transfer verification checks.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
