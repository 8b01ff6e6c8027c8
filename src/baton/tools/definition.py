"""Declarative tool definitions.

A tool is described once at startup by `define_tool`, which composes
separately-typed phase structs into an immutable `ToolDefinition`:

- `HandoffPhases(before, client, after)`: `before` runs on the trusted host
  and produces the envelope, `client` runs on the untrusted side, `after`
  finalizes on the trusted host with the cached envelope.
- `SimplePhases(server, client)`: for server authority, `server` output is
  both the envelope and the final result; for client authority, `server`
  runs after the client with the client output.

Phase functions may be plain functions or coroutines.
"""

from __future__ import annotations

import inspect
from dataclasses import dataclass
from typing import Any, Callable, Literal, Type

from pydantic import BaseModel, TypeAdapter, ValidationError

from baton.errors import ToolValidationError

AuthorityMode = Literal["server", "client"]
ContextKind = Literal["interactive", "delegated", "headless"]

AUTHORITY_MODES: tuple[str, ...] = ("server", "client")
CONTEXT_KINDS: tuple[str, ...] = ("interactive", "delegated", "headless")

PhaseFunction = Callable[..., Any]


@dataclass(frozen=True)
class HandoffPhases:
    """Three-phase form: `before(params, ctx)`, `client(envelope, ctx, params)`,
    `after(envelope, client_output, ctx, params)`."""

    after: PhaseFunction
    before: PhaseFunction | None = None
    client: PhaseFunction | None = None


@dataclass(frozen=True)
class SimplePhases:
    """Two-function form: `server(params, ctx[, client_output])` and `client`."""

    server: PhaseFunction
    client: PhaseFunction | None = None


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    description: str
    parameters: Type[BaseModel]
    authority: AuthorityMode
    context: ContextKind
    handoff: HandoffPhases | None = None
    simple: SimplePhases | None = None
    client_output: Any | None = None

    @property
    def uses_handoff(self) -> bool:
        return self.handoff is not None

    @property
    def client(self) -> PhaseFunction | None:
        if self.handoff is not None:
            return self.handoff.client
        if self.simple is not None:
            return self.simple.client
        return None

    def validate_params(self, raw: Any) -> BaseModel:
        if isinstance(raw, self.parameters):
            return raw
        try:
            return self.parameters.model_validate(raw or {})
        except ValidationError as exc:
            raise ToolValidationError(f"Invalid arguments for {self.name}: {exc}", exc.errors()) from exc

    def validate_client_output(self, value: Any) -> Any:
        """Validate externally supplied client output, if a type is declared."""
        if self.client_output is None:
            return value
        try:
            return TypeAdapter(self.client_output).validate_python(value)
        except ValidationError as exc:
            raise ToolValidationError(f"Invalid client output for {self.name}: {exc}", exc.errors()) from exc

    def schema(self) -> dict[str, Any]:
        """Return the model-facing description of this tool."""
        schema = self.parameters.model_json_schema()
        return {
            "name": self.name,
            "description": self.description,
            "parameters": {
                "type": "object",
                "properties": schema.get("properties", {}),
                "required": schema.get("required", []),
                **({"$defs": schema["$defs"]} if "$defs" in schema else {}),
            },
        }


def define_tool(
    name: str,
    *,
    parameters: Type[BaseModel],
    handoff: HandoffPhases | None = None,
    simple: SimplePhases | None = None,
    description: str = "",
    authority: AuthorityMode = "server",
    context: ContextKind = "headless",
    client_output: Any | None = None,
) -> ToolDefinition:
    """Validate the phase configuration and build a `ToolDefinition`.

    Raises `ValueError` for definitions that could never execute correctly.
    """

    if not name or not name.strip():
        raise ValueError("tool name must be a non-empty string")
    if authority not in AUTHORITY_MODES:
        raise ValueError(f"{name}: unknown authority mode {authority!r}")
    if context not in CONTEXT_KINDS:
        raise ValueError(f"{name}: unknown context kind {context!r}")
    if not (inspect.isclass(parameters) and issubclass(parameters, BaseModel)):
        raise ValueError(f"{name}: parameters must be a pydantic model class")
    if (handoff is None) == (simple is None):
        raise ValueError(f"{name}: exactly one of handoff= or simple= is required")

    if handoff is not None:
        if authority == "server" and handoff.before is None:
            raise ValueError(f"{name}: server-authority handoff tools need a before() phase")
        if authority == "client" and handoff.before is not None:
            raise ValueError(f"{name}: client-authority tools cannot run before()")
        for label, func in (("before", handoff.before), ("client", handoff.client), ("after", handoff.after)):
            if func is not None and not callable(func):
                raise ValueError(f"{name}: {label} must be callable")
    if simple is not None:
        if not callable(simple.server):
            raise ValueError(f"{name}: server must be callable")
        if simple.client is not None and not callable(simple.client):
            raise ValueError(f"{name}: client must be callable")

    return ToolDefinition(
        name=name,
        description=description,
        parameters=parameters,
        authority=authority,
        context=context,
        handoff=handoff,
        simple=simple,
        client_output=client_output,
    )


async def call_phase(func: PhaseFunction, *args: Any) -> Any:
    """Invoke a phase function, awaiting the result if it is awaitable."""
    result = func(*args)
    if inspect.isawaitable(result):
        result = await result
    return result
