# tools.py
# Capability registry: named, schema-described, invocable tools.
#
# A registry is built fresh for every run from request-scoped closures.
# The harness owns dispatch; nothing here catches handler failures.

import inspect
import logging
from collections.abc import Callable
from typing import Any, Literal

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

JsonType = Literal["string", "number", "integer", "boolean", "object", "array"]

_PYTHON_TYPES: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "number": (int, float),
    "integer": (int,),
    "boolean": (bool,),
    "object": (dict,),
    "array": (list,),
}


class CapabilityArgumentError(ValueError):
    """Raised by typed accessors when a handler argument is missing or mistyped."""


class ParameterProperty(BaseModel):
    type: JsonType = "string"
    description: str = ""
    enum: list[str] | None = None


class ParameterSchema(BaseModel):
    """JSON-schema-like description of a capability's arguments."""

    type: Literal["object"] = "object"
    properties: dict[str, ParameterProperty] = Field(default_factory=dict)
    required: list[str] = Field(default_factory=list)


class Capability(BaseModel):
    """A tool the model may ask the loop to invoke."""

    name: str = Field(..., min_length=1)
    description: str
    parameters: ParameterSchema = Field(default_factory=ParameterSchema)
    handler: Callable[[dict[str, Any]], Any] = Field(..., exclude=True)

    def validate_args(self, args: dict[str, Any]) -> list[str]:
        """Return a list of schema violations; empty when args are acceptable."""
        problems: list[str] = []
        for key in self.parameters.required:
            if key not in args or args[key] is None:
                problems.append(f"missing required argument '{key}'")

        for key, value in args.items():
            prop = self.parameters.properties.get(key)
            if prop is None or value is None:
                continue
            expected = _PYTHON_TYPES[prop.type]
            # bool is an int subclass; keep them apart
            if isinstance(value, bool) and prop.type != "boolean":
                problems.append(f"'{key}' must be {prop.type}, got boolean")
            elif not isinstance(value, expected):
                problems.append(f"'{key}' must be {prop.type}, got {type(value).__name__}")
            elif prop.enum is not None and value not in prop.enum:
                problems.append(f"'{key}' must be one of {', '.join(prop.enum)}")
        return problems

    async def invoke(self, args: dict[str, Any]) -> Any:
        result = self.handler(args)
        if inspect.isawaitable(result):
            result = await result
        return result

    def describe(self) -> str:
        """Prompt-ready description of this capability and its parameters."""
        lines = [f"- {self.name}: {self.description}", "  Parameters:"]
        for key, prop in self.parameters.properties.items():
            required = " (required)" if key in self.parameters.required else " (optional)"
            choices = f" One of: {', '.join(prop.enum)}." if prop.enum else ""
            lines.append(f"    - {key}: {prop.type}{required} - {prop.description}{choices}")
        if not self.parameters.properties:
            lines.append("    (none)")
        return "\n".join(lines)


def create_capability(
    name: str,
    description: str,
    parameters: ParameterSchema | dict[str, Any] | None,
    handler: Callable[[dict[str, Any]], Any],
) -> Capability:
    if parameters is None:
        parameters = ParameterSchema()
    elif isinstance(parameters, dict):
        parameters = ParameterSchema.model_validate(parameters)
    return Capability(name=name, description=description, parameters=parameters, handler=handler)


class CapabilityRegistry:
    """Per-run lookup table of capabilities, in registration order."""

    def __init__(self, capabilities: list[Capability] | None = None) -> None:
        self._capabilities: dict[str, Capability] = {}
        for capability in capabilities or []:
            self.add(capability)

    def add(self, capability: Capability) -> Capability:
        if capability.name in self._capabilities:
            raise ValueError(f"Capability '{capability.name}' is already registered.")
        self._capabilities[capability.name] = capability
        logger.debug("Registered capability: %s", capability.name)
        return capability

    def register(
        self,
        name: str,
        description: str,
        parameters: ParameterSchema | dict[str, Any] | None,
        handler: Callable[[dict[str, Any]], Any],
    ) -> Capability:
        return self.add(create_capability(name, description, parameters, handler))

    def get(self, name: str) -> Capability | None:
        return self._capabilities.get(name)

    def names(self) -> list[str]:
        return list(self._capabilities.keys())

    def __contains__(self, name: object) -> bool:
        return name in self._capabilities

    def __len__(self) -> int:
        return len(self._capabilities)

    # Defined last so the builtin stays usable in annotations above.
    def list(self) -> list[Capability]:
        return list(self._capabilities.values())


# ---------------------------------------------------------------------------
# Typed accessors for handlers
# ---------------------------------------------------------------------------


def arg_str(args: dict[str, Any], key: str, default: str | None = None) -> str:
    value = args.get(key, default)
    if value is None:
        raise CapabilityArgumentError(f"Missing argument '{key}'.")
    if not isinstance(value, str):
        raise CapabilityArgumentError(f"Argument '{key}' must be a string.")
    value = value.strip()
    if not value and default is None:
        raise CapabilityArgumentError(f"Argument '{key}' must not be empty.")
    return value


def arg_int(args: dict[str, Any], key: str, default: int | None = None) -> int:
    value = args.get(key, default)
    if value is None:
        raise CapabilityArgumentError(f"Missing argument '{key}'.")
    if isinstance(value, bool) or not isinstance(value, int):
        raise CapabilityArgumentError(f"Argument '{key}' must be an integer.")
    return value


def arg_bool(args: dict[str, Any], key: str, default: bool | None = None) -> bool:
    value = args.get(key, default)
    if value is None:
        raise CapabilityArgumentError(f"Missing argument '{key}'.")
    if not isinstance(value, bool):
        raise CapabilityArgumentError(f"Argument '{key}' must be a boolean.")
    return value
