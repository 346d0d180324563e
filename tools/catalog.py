"""Explicitly constructed tool catalog.

A catalog is built and populated before the agent uses it, then frozen:

    catalog = ToolCatalog()

    @catalog.tool(description="Current weather for a city",
                  parameters={"city": {"type": "string"}}, required=["city"])
    async def get_weather(city):
        ...

    catalog.freeze()
    agent = GuidedAgent(provider=provider, catalog=catalog)

execute_tool() never raises. Unknown tools, argument validation failures and
handler exceptions all come back as ``{"success": False, "error": ...}``.
"""

import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Type

from pydantic import BaseModel

logger = logging.getLogger(__name__)


class ToolCatalogError(Exception):
    """Raised for registration errors (duplicate name, frozen catalog)."""
    pass


@dataclass
class ToolSpec:
    """One callable tool.

    ``parameters`` maps parameter name to JSON schema; when it is empty and
    an ``args_model`` is given, both it and ``required`` come from the model.
    """

    name: str
    description: str
    handler: Callable[..., Any]
    parameters: Dict[str, Any] = field(default_factory=dict)
    required: List[str] = field(default_factory=list)
    args_model: Optional[Type[BaseModel]] = None
    output_schema: Optional[Dict[str, Any]] = None

    def __post_init__(self):
        if self.args_model is not None and not self.parameters:
            schema = self.args_model.model_json_schema()
            self.parameters = dict(schema.get("properties", {}))
            self.required = list(schema.get("required", []))

    def to_dict(self) -> Dict[str, Any]:
        """OpenAI-compatible function schema."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": {
                    "type": "object",
                    "properties": self.parameters,
                    "required": self.required,
                },
            },
        }


class ToolCatalog:
    def __init__(self):
        self._tools: Dict[str, ToolSpec] = {}
        self._frozen = False

    @property
    def frozen(self) -> bool:
        return self._frozen

    def freeze(self) -> "ToolCatalog":
        """End registration. Returns self for chaining."""
        self._frozen = True
        logger.debug("Tool catalog frozen with %s tools", len(self._tools))
        return self

    def register(self, spec: ToolSpec) -> ToolSpec:
        if self._frozen:
            raise ToolCatalogError(f"Cannot register '{spec.name}': catalog is frozen")
        if spec.name in self._tools:
            raise ToolCatalogError(f"Tool '{spec.name}' is already registered")
        self._tools[spec.name] = spec
        return spec

    def tool(
        self,
        name: Optional[str] = None,
        *,
        description: Optional[str] = None,
        parameters: Optional[Dict[str, Any]] = None,
        required: Optional[List[str]] = None,
        args_model: Optional[Type[BaseModel]] = None,
        output_schema: Optional[Dict[str, Any]] = None,
    ):
        """Decorator form of register(). Description defaults to the docstring."""
        def decorator(func):
            self.register(ToolSpec(
                name=name or func.__name__,
                description=description or inspect.getdoc(func) or "",
                handler=func,
                parameters=dict(parameters or {}),
                required=list(required or []),
                args_model=args_model,
                output_schema=output_schema,
            ))
            return func
        return decorator

    def get(self, name: str) -> Optional[ToolSpec]:
        return self._tools.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def names(self) -> List[str]:
        return list(self._tools)

    def specs(self) -> List[ToolSpec]:
        return list(self._tools.values())

    def schemas(self) -> List[Dict[str, Any]]:
        return [spec.to_dict() for spec in self._tools.values()]

    def _validate(self, spec: ToolSpec, args: Dict[str, Any]) -> Dict[str, Any]:
        if spec.args_model is not None:
            return spec.args_model.model_validate(args).model_dump()
        missing = [p for p in spec.required if p not in args]
        if missing:
            raise ValueError(f"Missing required argument(s): {', '.join(missing)}")
        return args

    async def execute_tool(self, name: str, args: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        spec = self._tools.get(name)
        if spec is None:
            return {"success": False, "error": f"Tool not found: {name}"}

        args = dict(args or {})
        try:
            validated = self._validate(spec, args)
        except ValueError as e:  # includes pydantic ValidationError
            return {"success": False, "error": f"Invalid arguments for {name}: {e}"}

        try:
            result = spec.handler(**validated)
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            logger.warning("Tool %s raised %s: %s", name, type(e).__name__, e)
            return {"success": False, "error": f"Tool execution error: {e}"}

        return {"success": True, "result": result}
