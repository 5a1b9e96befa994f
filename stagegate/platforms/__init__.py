"""Platform model, compatibility and resolution.

This module handles:
- The PlatformTarget value type and its string form
- Directional compatibility predicates for compiled artifacts
- The base-image platform registry
- Resolving each stage's effective platform
"""

from stagegate.platforms.compat import (
    PREDICATES,
    CompatibilityPredicate,
    exact_compatible,
    get_predicate,
    is_compatible,
    minimum_version_compatible,
)
from stagegate.platforms.models import PlatformTarget
from stagegate.platforms.registry import BaseImageRegistry
from stagegate.platforms.resolver import (
    PlatformResolution,
    resolve_all,
    resolve_effective_platform,
)

__all__ = [
    "PREDICATES",
    "BaseImageRegistry",
    "CompatibilityPredicate",
    "PlatformResolution",
    "PlatformTarget",
    "exact_compatible",
    "get_predicate",
    "is_compatible",
    "minimum_version_compatible",
    "resolve_all",
    "resolve_effective_platform",
]
