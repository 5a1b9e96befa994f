"""Tests for descriptor/io.py module."""

import json
from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from stagegate.descriptor.io import (
    descriptor_to_yaml_string,
    format_validation_error,
    load_descriptor,
    load_document,
    load_registry,
    parse_descriptor_data,
)
from stagegate.errors import DescriptorError
from stagegate.platforms.models import PlatformTarget

DESCRIPTOR = {
    "name": "native-app",
    "target": "runtime",
    "stages": [
        {
            "id": "builder",
            "base_image": "debian:bookworm",
            "commands": ["make"],
            "artifacts": [{"path": "/out/native.bin", "kind": "compiled_binary"}],
        },
        {
            "id": "runtime",
            "base_image": "alpine:3.19",
            "consumes": [
                {
                    "stage": "builder",
                    "path": "/out/native.bin",
                    "dest": "/app/native.bin",
                }
            ],
            "checks": [{"name": "native.bin loads", "command": "/app/native.bin"}],
        },
    ],
}


class TestLoadDocument:
    """Tests for YAML/JSON loading by extension."""

    def test_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "build.yaml"
        path.write_text(yaml.safe_dump(DESCRIPTOR))
        assert load_document(path)["name"] == "native-app"

    def test_yml_extension(self, tmp_path: Path) -> None:
        path = tmp_path / "build.yml"
        path.write_text(yaml.safe_dump(DESCRIPTOR))
        assert load_document(path)["target"] == "runtime"

    def test_json(self, tmp_path: Path) -> None:
        path = tmp_path / "build.json"
        path.write_text(json.dumps(DESCRIPTOR))
        assert len(load_document(path)["stages"]) == 2

    def test_empty_yaml_is_empty_mapping(self, tmp_path: Path) -> None:
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_document(path) == {}

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(DescriptorError, match="File not found"):
            load_document(tmp_path / "missing.yaml")

    def test_unsupported_extension(self, tmp_path: Path) -> None:
        path = tmp_path / "build.toml"
        path.write_text("name = 'x'")
        with pytest.raises(DescriptorError, match="Unsupported file extension"):
            load_document(path)

    def test_parse_error(self, tmp_path: Path) -> None:
        path = tmp_path / "broken.json"
        path.write_text("{not json")
        with pytest.raises(DescriptorError, match="Parse error"):
            load_document(path)

    def test_non_mapping_document(self, tmp_path: Path) -> None:
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(DescriptorError, match="Expected a YAML mapping"):
            load_document(path)


class TestLoadDescriptor:
    """Tests for descriptor loading and validation."""

    def test_valid(self, tmp_path: Path) -> None:
        path = tmp_path / "build.yaml"
        path.write_text(yaml.safe_dump(DESCRIPTOR))
        descriptor = load_descriptor(path)
        assert descriptor.name == "native-app"
        assert descriptor.stages[1].checks[0].name == "native.bin loads"

    def test_invalid_raises_validation_error(self, tmp_path: Path) -> None:
        path = tmp_path / "build.yaml"
        path.write_text(yaml.safe_dump({"name": "x", "stages": [{"id": "a"}]}))
        with pytest.raises(ValidationError):
            load_descriptor(path)

    def test_format_validation_error(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            parse_descriptor_data({"name": "x", "stages": [{"id": "a"}]})
        lines = format_validation_error(exc_info.value)
        assert any(line.startswith("stages.0.base_image:") for line in lines)

    def test_to_yaml_string_reloads(self) -> None:
        descriptor = parse_descriptor_data(DESCRIPTOR)
        text = descriptor_to_yaml_string(descriptor)
        reloaded = parse_descriptor_data(yaml.safe_load(text))
        assert reloaded == descriptor


class TestLoadRegistry:
    """Tests for registry loading."""

    def test_valid(self, tmp_path: Path) -> None:
        path = tmp_path / "registry.yaml"
        path.write_text(
            yaml.safe_dump({"images": {"alpine:3.19": "linux/amd64/musl-1.2.4"}})
        )
        registry = load_registry(path)
        assert registry.lookup("alpine:3.19") == PlatformTarget.parse(
            "linux/amd64/musl-1.2.4"
        )

    def test_invalid_layout(self, tmp_path: Path) -> None:
        path = tmp_path / "registry.yaml"
        path.write_text(yaml.safe_dump({"bases": {}}))
        with pytest.raises(DescriptorError, match="Invalid registry"):
            load_registry(path)
