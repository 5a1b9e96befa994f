"""Build descriptor handling.

This module handles:
- Pydantic schema for build descriptors
- Loading descriptors and base-image registries from YAML/JSON
"""

from stagegate.descriptor.io import (
    load_descriptor,
    load_registry,
    parse_descriptor_data,
)
from stagegate.descriptor.schema import BuildDescriptorSchema, StageSchema

__all__ = [
    "BuildDescriptorSchema",
    "StageSchema",
    "load_descriptor",
    "load_registry",
    "parse_descriptor_data",
]
