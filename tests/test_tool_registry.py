"""Tests for the tool registry."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import BaseModel, Field

from codeagent.errors import RegistryError
from codeagent.tools.builtin import build_default_registry
from codeagent.tools.registry import SafetyClass, ToolContext, ToolRegistry, ToolSpec


class EchoParams(BaseModel):
    text: str = Field(description="Text to echo back")


async def echo(params: EchoParams, ctx: ToolContext) -> str:
    return params.text


def _spec(name: str = "echo", **overrides) -> ToolSpec:
    fields = {"name": name, "description": "Echo the input.", "params": EchoParams, "handler": echo}
    fields.update(overrides)
    return ToolSpec(**fields)


class TestRegistration:
    def test_register_and_lookup(self) -> None:
        registry = ToolRegistry()
        registry.register(_spec())
        assert "echo" in registry
        assert registry.get("echo").safety is SafetyClass.SAFE
        assert registry.get("missing") is None
        assert len(registry) == 1

    def test_duplicate_name_rejected(self) -> None:
        registry = ToolRegistry()
        registry.register(_spec())
        with pytest.raises(RegistryError, match="duplicate"):
            registry.register(_spec())

    @pytest.mark.parametrize("name", ["", "has space", "x" * 65, "dot.name"])
    def test_invalid_name_rejected(self, name: str) -> None:
        with pytest.raises(RegistryError, match="invalid tool name"):
            ToolRegistry().register(_spec(name))

    def test_sync_handler_rejected(self) -> None:
        def sync_handler(params, ctx):
            return "x"

        with pytest.raises(RegistryError, match="async"):
            ToolRegistry().register(_spec(handler=sync_handler))

    def test_params_must_be_model(self) -> None:
        with pytest.raises(RegistryError, match="pydantic"):
            ToolRegistry().register(_spec(params=dict))

    def test_description_required(self) -> None:
        with pytest.raises(RegistryError, match="description"):
            ToolRegistry().register(_spec(description="  "))

    def test_frozen_registry_rejects_registration(self) -> None:
        registry = ToolRegistry().freeze()
        with pytest.raises(RegistryError, match="frozen"):
            registry.register(_spec())


class TestSchemas:
    def test_schema_shape(self) -> None:
        schema = _spec().schema()
        assert schema["type"] == "function"
        function = schema["function"]
        assert function["name"] == "echo"
        assert function["parameters"]["properties"]["text"]["description"] == "Text to echo back"
        assert function["parameters"]["required"] == ["text"]
        assert "title" not in function["parameters"]

    def test_read_only_schemas_keep_safe_tools(self) -> None:
        registry = ToolRegistry()
        registry.register(_spec("reader"))
        registry.register(_spec("writer", safety=SafetyClass.CONFIRM))
        names = [s["function"]["name"] for s in registry.schemas(read_only=True)]
        assert names == ["reader"]
        assert len(registry.schemas()) == 2

    def test_resource_key(self, tmp_path: Path) -> None:
        spec = _spec(resource_key=lambda params, ctx: f"k:{params.text}")
        ctx = ToolContext(working_directory=tmp_path)
        assert spec.key_for(EchoParams(text="a"), ctx) == "k:a"
        assert _spec().key_for(EchoParams(text="a"), ctx) is None


class TestDefaultRegistry:
    def test_builtin_tools_registered_and_frozen(self) -> None:
        registry = build_default_registry()
        assert registry.frozen
        assert set(registry.names()) == {
            "read_file",
            "write_file",
            "edit_file",
            "list_files",
            "glob",
            "grep",
            "bash",
            "lsp",
        }
        assert registry.get("bash").safety is SafetyClass.DANGEROUS
        assert registry.get("write_file").safety is SafetyClass.CONFIRM

    def test_optional_tools_can_be_left_out(self) -> None:
        registry = build_default_registry(include_shell=False, include_lsp=False)
        assert "bash" not in registry
        assert "lsp" not in registry
