"""Platform compatibility predicates.

Compatibility is directional: a binary produced under platform P may be
copied into a stage targeting Q iff ``predicate(P, Q)`` holds. OS,
architecture and libc flavor must always match; how libc and runtime
library versions are compared is pluggable, since real-world ABI
compatibility is base-image specific.

Built-in predicates:
- ``minimum-version``: Q's libc and runtime library must be the same
  library at a version greater than or equal to P's. A newer runtime
  still provides older symbols; an older one does not.
- ``exact``: all fields must be equal.
"""

from __future__ import annotations

from collections.abc import Callable

from packaging.version import InvalidVersion, Version

from stagegate.platforms.models import PlatformTarget

CompatibilityPredicate = Callable[[PlatformTarget, PlatformTarget], bool]


def _version_satisfies(required: str | None, available: str | None) -> bool:
    """Check that ``available`` is at least ``required``.

    Unparseable versions only satisfy an identical string.
    """
    if required is None:
        return True
    if available is None:
        return False
    try:
        return Version(available) >= Version(required)
    except InvalidVersion:
        return available == required


def same_abi_family(produced: PlatformTarget, destination: PlatformTarget) -> bool:
    """Check that os, architecture and libc flavor match."""
    return (
        produced.os == destination.os
        and produced.architecture == destination.architecture
        and produced.libc_flavor == destination.libc_flavor
    )


def minimum_version_compatible(
    produced: PlatformTarget, destination: PlatformTarget
) -> bool:
    """Newer-or-equal libc and runtime library on the destination satisfy the binary."""
    if not same_abi_family(produced, destination):
        return False
    if not _version_satisfies(produced.libc_version, destination.libc_version):
        return False

    required = produced.runtime_lib
    if required is None:
        return True
    available = destination.runtime_lib
    if available is None:
        return False
    required_name, required_version = required
    available_name, available_version = available
    if required_name != available_name:
        return False
    return _version_satisfies(required_version, available_version)


def exact_compatible(produced: PlatformTarget, destination: PlatformTarget) -> bool:
    """Only identical platforms are compatible."""
    return produced == destination


PREDICATES: dict[str, CompatibilityPredicate] = {
    "minimum-version": minimum_version_compatible,
    "exact": exact_compatible,
}


def get_predicate(name: str) -> CompatibilityPredicate:
    """Look up a compatibility predicate by name.

    Raises:
        ValueError: If no predicate is registered under ``name``.
    """
    try:
        return PREDICATES[name]
    except KeyError:
        raise ValueError(
            f"Unknown compatibility predicate '{name}'. "
            f"Available: {', '.join(sorted(PREDICATES))}"
        ) from None


def is_compatible(
    produced: PlatformTarget,
    destination: PlatformTarget,
    predicate: CompatibilityPredicate | None = None,
) -> bool:
    """Return whether a binary produced under ``produced`` runs on ``destination``."""
    if predicate is None:
        predicate = minimum_version_compatible
    return predicate(produced, destination)


__all__ = [
    "PREDICATES",
    "CompatibilityPredicate",
    "exact_compatible",
    "get_predicate",
    "is_compatible",
    "minimum_version_compatible",
    "same_abi_family",
]
