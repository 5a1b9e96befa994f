"""Base-image platform registry.

Maps base-image references to the PlatformTarget they provide. The
mapping is an external input; stagegate never infers a platform from an
image name.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping
from typing import Any

from stagegate.platforms.models import PlatformTarget

logger = logging.getLogger(__name__)


class BaseImageRegistry:
    """Lookup table from base-image reference to PlatformTarget."""

    def __init__(self, entries: Mapping[str, PlatformTarget] | None = None) -> None:
        self._platforms: dict[str, PlatformTarget] = {}
        self._aliases: dict[str, str] = {}
        for ref, platform in (entries or {}).items():
            self.register(ref, platform)

    def register(
        self,
        image_ref: str,
        platform: PlatformTarget,
        aliases: list[str] | None = None,
    ) -> None:
        """Register the platform provided by a base image.

        Args:
            image_ref: Base-image reference, matched exactly.
            platform: Platform the image provides.
            aliases: Additional references resolving to the same image.

        Raises:
            ValueError: If the reference or an alias is already registered.
        """
        for ref in [image_ref, *(aliases or [])]:
            if ref in self._platforms or ref in self._aliases:
                raise ValueError(f"base image already registered: {ref}")
        self._platforms[image_ref] = platform
        for alias in aliases or []:
            self._aliases[alias] = image_ref
        logger.debug("Registered base image %s -> %s", image_ref, platform)

    def lookup(self, image_ref: str) -> PlatformTarget | None:
        """Return the platform for a base image, or None if unknown."""
        canonical = self._aliases.get(image_ref, image_ref)
        return self._platforms.get(canonical)

    def __contains__(self, image_ref: object) -> bool:
        return isinstance(image_ref, str) and self.lookup(image_ref) is not None

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._platforms))

    def __len__(self) -> int:
        return len(self._platforms)

    def to_dict(self) -> dict[str, Any]:
        """Convert to the registry file layout."""
        images: dict[str, Any] = {}
        for ref in self:
            aliases = sorted(a for a, target in self._aliases.items() if target == ref)
            if aliases:
                images[ref] = {"platform": str(self._platforms[ref]), "aliases": aliases}
            else:
                images[ref] = str(self._platforms[ref])
        return {"images": images}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> BaseImageRegistry:
        """Build a registry from its file layout.

        Each entry under ``images`` is either a platform string or a
        mapping with ``platform`` (string or mapping) and optional
        ``aliases``.

        Raises:
            ValueError: If the layout or a platform value is invalid.
        """
        images = data.get("images")
        if not isinstance(images, Mapping):
            raise ValueError("registry must contain an 'images' mapping")

        registry = cls()
        for ref, entry in images.items():
            aliases: list[str] = []
            if isinstance(entry, Mapping) and "platform" in entry:
                raw_platform = entry["platform"]
                aliases = [str(a) for a in entry.get("aliases") or []]
            else:
                raw_platform = entry
            try:
                platform = PlatformTarget.from_value(raw_platform)
            except ValueError as e:
                raise ValueError(f"invalid platform for base image '{ref}': {e}") from e
            registry.register(str(ref), platform, aliases=aliases)
        return registry


__all__ = ["BaseImageRegistry"]
