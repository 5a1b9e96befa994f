"""Platform target value type.

A PlatformTarget is the (OS, architecture, libc, runtime library)
fingerprint that a stage's outputs are bound to. Its canonical string
form is::

    os/architecture[/libc_flavor[-libc_version]][/runtime_lib_version]

for example ``linux/arm64/musl-1.2.4/libstdc++-13``.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import asdict, dataclass
from typing import Any

_COMPONENT_PATTERN = re.compile(r"^[A-Za-z0-9_.+\-]+$")


def split_versioned(value: str) -> tuple[str, str | None]:
    """Split a ``name-version`` token into its name and version.

    The version is the suffix after the last dash if it starts with a
    digit, otherwise the whole token is treated as a bare name.

    Args:
        value: Token such as ``libstdc++-13`` or ``musl-1.2.4``.

    Returns:
        Tuple of (name, version or None).
    """
    name, sep, version = value.rpartition("-")
    if sep and name and version[:1].isdigit():
        return name, version
    return value, None


@dataclass(frozen=True)
class PlatformTarget:
    """Immutable platform fingerprint.

    Attributes:
        os: Operating system (e.g. 'linux').
        architecture: CPU architecture (e.g. 'amd64', 'arm64').
        libc_flavor: C library flavor (e.g. 'musl', 'glibc').
        libc_version: C library version (e.g. '1.2.4').
        runtime_lib_version: Compiler runtime library with version
            (e.g. 'libstdc++-13').
    """

    os: str
    architecture: str
    libc_flavor: str | None = None
    libc_version: str | None = None
    runtime_lib_version: str | None = None

    def __post_init__(self) -> None:
        for name in ("os", "architecture"):
            value = getattr(self, name)
            if not value or not _COMPONENT_PATTERN.match(value):
                raise ValueError(f"invalid platform {name}: {value!r}")
        if self.libc_version is not None and self.libc_flavor is None:
            raise ValueError("libc_version requires libc_flavor")

    def __str__(self) -> str:
        parts = [self.os, self.architecture]
        if self.libc_flavor is not None:
            libc = self.libc_flavor
            if self.libc_version is not None:
                libc = f"{libc}-{self.libc_version}"
            parts.append(libc)
        if self.runtime_lib_version is not None:
            if self.libc_flavor is None:
                parts.append("-")
            parts.append(self.runtime_lib_version)
        return "/".join(parts)

    @property
    def os_arch(self) -> str:
        """Return the ``os/architecture`` pair used by container runtimes."""
        return f"{self.os}/{self.architecture}"

    @property
    def runtime_lib(self) -> tuple[str, str | None] | None:
        """Return the runtime library as (name, version), if declared."""
        if self.runtime_lib_version is None:
            return None
        return split_versioned(self.runtime_lib_version)

    def with_overrides(self, **changes: Any) -> PlatformTarget:
        """Return a copy with the given fields replaced."""
        data = asdict(self)
        data.update(changes)
        return PlatformTarget(**data)

    def to_dict(self) -> dict[str, str | None]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)

    @classmethod
    def parse(cls, value: str) -> PlatformTarget:
        """Parse a platform from its canonical string form.

        Args:
            value: String such as ``linux/amd64/glibc-2.35/libstdc++-12``.
                A ``-`` libc component means no libc is declared.

        Returns:
            PlatformTarget instance.

        Raises:
            ValueError: If the string is malformed.
        """
        parts = [p.strip() for p in value.strip().split("/")]
        if len(parts) < 2 or len(parts) > 4 or not all(parts):
            raise ValueError(
                f"platform must look like 'os/arch[/libc[-version]][/runtime]', "
                f"got {value!r}"
            )
        libc_flavor: str | None = None
        libc_version: str | None = None
        runtime: str | None = None
        if len(parts) >= 3 and parts[2] != "-":
            name, version = split_versioned(parts[2])
            libc_flavor, libc_version = name, version
        if len(parts) == 4:
            runtime = parts[3]
        return cls(
            os=parts[0],
            architecture=parts[1],
            libc_flavor=libc_flavor,
            libc_version=libc_version,
            runtime_lib_version=runtime,
        )

    @classmethod
    def from_value(cls, value: PlatformTarget | str | Mapping[str, Any]) -> PlatformTarget:
        """Build a platform from a string, mapping, or existing instance.

        Raises:
            ValueError: If the value cannot be interpreted as a platform.
        """
        if isinstance(value, PlatformTarget):
            return value
        if isinstance(value, str):
            return cls.parse(value)
        if isinstance(value, Mapping):
            unknown = set(value) - {
                "os",
                "architecture",
                "libc_flavor",
                "libc_version",
                "runtime_lib_version",
            }
            if unknown:
                raise ValueError(f"unknown platform fields: {sorted(unknown)}")
            return cls(
                os=str(value.get("os", "")),
                architecture=str(value.get("architecture", "")),
                libc_flavor=_optional_str(value.get("libc_flavor")),
                libc_version=_optional_str(value.get("libc_version")),
                runtime_lib_version=_optional_str(value.get("runtime_lib_version")),
            )
        raise ValueError(f"cannot interpret {type(value).__name__} as a platform")


def _optional_str(value: Any) -> str | None:
    return None if value is None else str(value)


__all__ = ["PlatformTarget", "split_versioned"]
