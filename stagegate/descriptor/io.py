"""Build descriptor and base-image registry loading.

This module provides helpers for reading descriptors and registries from
YAML/JSON files. File format is determined by extension.
"""

import json
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from stagegate.descriptor.schema import BuildDescriptorSchema
from stagegate.errors import DescriptorError
from stagegate.platforms.registry import BaseImageRegistry


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict.

    Args:
        path: Path to the YAML file.

    Returns:
        Parsed YAML content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
        ValueError: If the document is not a mapping.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a YAML mapping, got {type(data).__name__}")
    return data


def load_json(path: Path) -> dict[str, Any]:
    """Load a JSON file and return its contents as a dict.

    Raises:
        FileNotFoundError: If the file does not exist.
        json.JSONDecodeError: If the file is not valid JSON.
        ValueError: If the document is not an object.
    """
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def load_document(path: Path) -> dict[str, Any]:
    """Load a YAML or JSON document, chosen by file extension.

    Raises:
        DescriptorError: If the file is missing, unparseable, or has an
            unsupported extension.
    """
    suffix = path.suffix.lower()
    try:
        if suffix in (".yaml", ".yml"):
            return load_yaml(path)
        if suffix == ".json":
            return load_json(path)
    except FileNotFoundError:
        raise DescriptorError(f"File not found: {path}") from None
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise DescriptorError(f"Parse error in {path}: {e}") from e
    except ValueError as e:
        raise DescriptorError(f"{path}: {e}") from e
    raise DescriptorError(
        f"Unsupported file extension '{suffix}'. Use .yaml, .yml, or .json"
    )


def parse_descriptor_data(data: dict[str, Any]) -> BuildDescriptorSchema:
    """Parse and validate descriptor data using the schema.

    Raises:
        pydantic.ValidationError: If data does not match schema.
    """
    return BuildDescriptorSchema.model_validate(data)


def load_descriptor(path: Path) -> BuildDescriptorSchema:
    """Load and validate a build descriptor from a YAML or JSON file.

    Raises:
        DescriptorError: If the file cannot be read or parsed.
        pydantic.ValidationError: If data does not match schema.
    """
    return parse_descriptor_data(load_document(path))


def load_registry(path: Path) -> BaseImageRegistry:
    """Load a base-image registry from a YAML or JSON file.

    Raises:
        DescriptorError: If the file cannot be read, parsed, or validated.
    """
    data = load_document(path)
    try:
        return BaseImageRegistry.from_dict(data)
    except ValueError as e:
        raise DescriptorError(f"Invalid registry {path}: {e}") from e


def descriptor_to_yaml_string(descriptor: BuildDescriptorSchema) -> str:
    """Convert a descriptor to a YAML string."""
    data = descriptor.model_dump(mode="json", exclude_none=True)
    result: str = yaml.dump(
        data, default_flow_style=False, allow_unicode=True, sort_keys=False
    )
    return result


def format_validation_error(error: ValidationError) -> list[str]:
    """Flatten a pydantic ValidationError into readable lines."""
    lines: list[str] = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"]) or "<root>"
        lines.append(f"{location}: {item['msg']}")
    return lines


__all__ = [
    "descriptor_to_yaml_string",
    "format_validation_error",
    "load_descriptor",
    "load_document",
    "load_json",
    "load_registry",
    "load_yaml",
    "parse_descriptor_data",
]
