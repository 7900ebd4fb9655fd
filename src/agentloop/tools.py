from __future__ import annotations

import inspect
import logging
import re
from collections.abc import Callable, Iterable
from typing import Any

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

# Parameters filled in by the renderer, never by the model.
_INJECTED_PARAMS = frozenset({"context"})

_JSON_TYPES = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
    list: "array",
    tuple: "array",
    set: "array",
    dict: "object",
    type(None): "null",
}


class ToolCallResult(BaseModel):
    tool_name: str
    output: Any = None


class ToolDescriptor(BaseModel):
    """What the model is told about a tool.

    ``model_dump`` returns the OpenAI function-calling schema.
    """

    name: str
    description: str = ""
    parameters_schema: dict = Field(
        default_factory=lambda: {"type": "object", "properties": {}, "required": []}
    )

    def model_dump(self, **kwargs) -> dict:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters_schema,
            },
        }


class Tool(ToolDescriptor):
    """A callable tool built from a plain (sync or async) function."""

    func: Callable = Field(exclude=True)
    bound_kwargs: dict = Field(default_factory=dict, exclude=True)
    model_config = {"arbitrary_types_allowed": True}

    @property
    def wants_context(self) -> bool:
        return "context" in inspect.signature(self.func).parameters

    async def __call__(self, **kwargs) -> ToolCallResult:
        output = self.func(**self.bound_kwargs, **kwargs)
        if inspect.isawaitable(output):
            output = await output
        return ToolCallResult(tool_name=self.name, output=output)

    def bind(self, **kwargs) -> Tool:
        """Return a copy with *kwargs* pre-filled and hidden from the schema."""
        properties = {
            k: v for k, v in self.parameters_schema["properties"].items()
            if k not in kwargs
        }
        required = [r for r in self.parameters_schema["required"] if r not in kwargs]
        return Tool(
            name=self.name,
            description=self.description,
            parameters_schema={
                "type": "object",
                "properties": properties,
                "required": required,
            },
            func=self.func,
            bound_kwargs={**self.bound_kwargs, **kwargs},
        )


def _json_type(annotation: Any) -> str:
    if annotation is inspect.Parameter.empty:
        return "string"
    origin = getattr(annotation, "__origin__", None)
    if origin is not None:
        annotation = origin
    if isinstance(annotation, str):
        # Postponed annotations arrive as their source text.
        annotation = {
            "str": str, "int": int, "float": float, "bool": bool,
            "list": list, "dict": dict, "tuple": tuple, "set": set,
        }.get(annotation.split("[")[0], str)
    return _JSON_TYPES.get(annotation, "string")


def _parse_param_descriptions(func: Callable) -> dict[str, str]:
    """Pull parameter descriptions out of a Google, reST or NumPy docstring."""
    doc = inspect.getdoc(func)
    if not doc:
        return {}
    lines = doc.splitlines()

    rest = {}
    for line in lines:
        m = re.match(r"\s*:param\s+(?:\w+\s+)?(\w+):\s*(.*)", line)
        if m:
            rest[m.group(1)] = m.group(2).strip()
    if rest:
        return rest

    descriptions: dict[str, str] = {}
    for i, line in enumerate(lines):
        stripped = line.strip()
        if stripped in ("Args:", "Arguments:", "Parameters:"):
            section = lines[i + 1:]
            current = None
            indent = None
            for entry in section:
                if not entry.strip():
                    current = None
                    continue
                entry_indent = len(entry) - len(entry.lstrip())
                if indent is None:
                    indent = entry_indent
                if entry_indent < indent:
                    break
                m = re.match(r"\s*(\w+)\s*(?:\([^)]*\))?:\s*(.*)", entry)
                if entry_indent == indent and m:
                    current = m.group(1)
                    descriptions[current] = m.group(2).strip()
                elif current is not None:
                    descriptions[current] += "\n" + entry.strip()
            return descriptions
        if stripped == "Parameters" and i + 1 < len(lines) and set(lines[i + 1].strip()) == {"-"}:
            current = None
            for entry in lines[i + 2:]:
                if not entry.strip():
                    break
                m = re.match(r"(\w+)\s*:", entry)
                if m and not entry.startswith(" "):
                    current = m.group(1)
                    descriptions[current] = ""
                elif current is not None:
                    sep = "\n" if descriptions[current] else ""
                    descriptions[current] += sep + entry.strip()
            return descriptions
    return descriptions


def _build_parameters_schema(func: Callable) -> tuple[dict, list[str]]:
    descriptions = _parse_param_descriptions(func)
    properties = {}
    required = []
    for name, param in inspect.signature(func).parameters.items():
        if name in _INJECTED_PARAMS:
            continue
        properties[name] = {
            "type": _json_type(param.annotation),
            "description": descriptions.get(name, ""),
        }
        if param.default is inspect.Parameter.empty:
            required.append(name)
    return {"type": "object", "properties": properties, "required": required}, required


def _summary(func: Callable) -> str:
    doc = inspect.getdoc(func)
    if not doc:
        return ""
    return doc.split("\n\n")[0].strip()


def tool(func: Callable | None = None, *, name: str | None = None,
         description: str | None = None):
    """Turn a function into a :class:`Tool`.

    Usable bare (``@tool``) or with overrides
    (``@tool(name=..., description=...)``).
    """
    def wrap(f: Callable) -> Tool:
        schema, _ = _build_parameters_schema(f)
        t = Tool(
            name=name or f.__name__,
            description=description if description is not None else _summary(f),
            parameters_schema=schema,
            func=f,
        )
        return t

    if func is not None:
        return wrap(func)
    return wrap


class ToolRegistry:
    """Tools the model may call, which may change between iterations.

    Tools can be disabled and re-enabled by name.  Deferred tools are
    registered but hidden until :meth:`discover` is called for them,
    typically from another tool.
    """

    def __init__(self, tools: Iterable[Tool] = ()):
        self._tools: dict[str, Tool] = {}
        self._disabled: set[str] = set()
        self._deferred: dict[str, Tool] = {}
        for t in tools:
            self.register(t)

    def register(self, t: Tool, deferred: bool = False) -> None:
        if deferred:
            self._deferred[t.name] = t
        else:
            self._tools[t.name] = t

    def discover(self, name: str) -> bool:
        t = self._deferred.pop(name, None)
        if t is None:
            return False
        logger.info(f"Tool {name} discovered")
        self._tools[name] = t
        return True

    def enable(self, name: str) -> None:
        self._disabled.discard(name)

    def disable(self, name: str) -> None:
        self._disabled.add(name)

    def get(self, name: str) -> Tool | None:
        if name in self._disabled:
            return None
        return self._tools.get(name)

    async def get_available_tools(self) -> list[Tool]:
        return [t for n, t in self._tools.items() if n not in self._disabled]
