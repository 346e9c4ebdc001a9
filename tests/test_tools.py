import pytest
from unittest.mock import AsyncMock, MagicMock

from careloop.tools import (
    Capability,
    CapabilityArgumentError,
    CapabilityRegistry,
    ParameterSchema,
    arg_bool,
    arg_int,
    arg_str,
    create_capability,
)

SCHEMA = {
    "properties": {
        "symptom": {"type": "string", "description": "What hurts"},
        "severity": {"type": "string", "enum": ["mild", "moderate", "severe"]},
        "days": {"type": "integer"},
    },
    "required": ["symptom"],
}

# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


def test_register_get_and_list_preserve_order():
    registry = CapabilityRegistry()
    registry.register("b", "second", None, lambda args: "b")
    registry.register("a", "first", None, lambda args: "a")

    assert registry.names() == ["b", "a"]
    assert [c.name for c in registry.list()] == ["b", "a"]
    assert registry.get("a").description == "first"
    assert registry.get("missing") is None
    assert "b" in registry
    assert len(registry) == 2


def test_register_duplicate_name_rejected():
    registry = CapabilityRegistry()
    registry.register("echo", "echo", None, lambda args: args)
    with pytest.raises(ValueError, match="already registered"):
        registry.register("echo", "echo again", None, lambda args: args)


def test_create_capability_accepts_dict_schema():
    capability = create_capability("check", "Check a symptom", SCHEMA, lambda args: None)
    assert isinstance(capability.parameters, ParameterSchema)
    assert capability.parameters.required == ["symptom"]
    assert capability.parameters.properties["severity"].enum == ["mild", "moderate", "severe"]


def test_capability_serialisation_excludes_handler():
    capability = create_capability("check", "Check a symptom", SCHEMA, lambda args: None)
    assert "handler" not in capability.model_dump()


# ---------------------------------------------------------------------------
# Argument validation
# ---------------------------------------------------------------------------


def test_validate_args_accepts_valid_map():
    capability = create_capability("check", "", SCHEMA, lambda args: None)
    assert capability.validate_args({"symptom": "cough", "severity": "mild", "days": 3}) == []


def test_validate_args_reports_missing_wrong_type_and_enum():
    capability = create_capability("check", "", SCHEMA, lambda args: None)
    problems = capability.validate_args({"severity": "extreme", "days": "three"})

    assert "missing required argument 'symptom'" in problems
    assert any("'severity' must be one of" in p for p in problems)
    assert any("'days' must be integer" in p for p in problems)


def test_validate_args_rejects_bool_for_integer():
    capability = create_capability("check", "", SCHEMA, lambda args: None)
    assert capability.validate_args({"symptom": "x", "days": True}) == ["'days' must be integer, got boolean"]


def test_validate_args_ignores_unknown_keys():
    capability = create_capability("check", "", SCHEMA, lambda args: None)
    assert capability.validate_args({"symptom": "x", "extra": object()}) == []


# ---------------------------------------------------------------------------
# Invocation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_invoke_sync_handler():
    handler = MagicMock(return_value={"ok": True})
    capability = Capability(name="sync", description="", handler=handler)
    assert await capability.invoke({"a": 1}) == {"ok": True}
    handler.assert_called_once_with({"a": 1})


@pytest.mark.asyncio
async def test_invoke_async_handler():
    handler = AsyncMock(return_value=["x"])
    capability = Capability(name="async", description="", handler=handler)
    assert await capability.invoke({}) == ["x"]
    handler.assert_awaited_once()


@pytest.mark.asyncio
async def test_invoke_propagates_handler_failure():
    capability = Capability(name="boom", description="", handler=AsyncMock(side_effect=RuntimeError("down")))
    with pytest.raises(RuntimeError, match="down"):
        await capability.invoke({})


def test_describe_lists_parameters():
    text = create_capability("check", "Check a symptom", SCHEMA, lambda args: None).describe()
    assert text.startswith("- check: Check a symptom")
    assert "symptom: string (required) - What hurts" in text
    assert "days: integer (optional)" in text
    assert "One of: mild, moderate, severe." in text


# ---------------------------------------------------------------------------
# Typed accessors
# ---------------------------------------------------------------------------


def test_arg_str():
    assert arg_str({"term": "  edema "}, "term") == "edema"
    assert arg_str({}, "severity", default="moderate") == "moderate"
    with pytest.raises(CapabilityArgumentError):
        arg_str({}, "term")
    with pytest.raises(CapabilityArgumentError):
        arg_str({"term": 5}, "term")
    with pytest.raises(CapabilityArgumentError):
        arg_str({"term": "   "}, "term")


def test_arg_int_and_bool():
    assert arg_int({"n": 3}, "n") == 3
    assert arg_bool({"flag": False}, "flag") is False
    with pytest.raises(CapabilityArgumentError):
        arg_int({"n": True}, "n")
    with pytest.raises(CapabilityArgumentError):
        arg_bool({"flag": "yes"}, "flag")
