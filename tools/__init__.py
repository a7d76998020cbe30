"""Tool registry and executor.

Each tool module exposes a TOOLS list of plain dicts (name, description,
input_schema, function). The registry turns them into Tool records, hands
the schemas to the model and runs the calls it asks for.

execute() never raises: a failing tool becomes {"error": ...} so the model
sees what went wrong and can try something else.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

log = logging.getLogger(__name__)


@dataclass
class Tool:
    name: str
    description: str
    input_schema: dict
    function: Callable[..., Any]

    def schema(self) -> dict:
        return {"name": self.name, "description": self.description,
                "input_schema": self.input_schema}


def _coerce_arguments(name: str, arguments: Any) -> dict | str:
    """Normalize call arguments to a dict, or return an error message."""
    if arguments in (None, ""):
        return {}
    if isinstance(arguments, str):
        try:
            arguments = json.loads(arguments)
        except json.JSONDecodeError as e:
            return f"Invalid JSON arguments for '{name}': {e}"
    if not isinstance(arguments, dict):
        return f"Arguments for '{name}' must be a JSON object"
    return arguments


class ToolRegistry:
    def __init__(self, truncation_limit: int = 100000):
        self._tools: dict[str, Tool] = {}
        self.truncation_limit = truncation_limit

    def register(self, name: str, description: str, input_schema: dict,
                 func: Callable[..., Any]) -> None:
        if name in self._tools:
            log.debug("Replacing tool %s", name)
        self._tools[name] = Tool(name, description, input_schema, func)

    def register_many(self, tools: list[dict]) -> None:
        for spec in tools:
            self.register(spec["name"], spec["description"], spec["input_schema"], spec["function"])

    def get_schemas(self) -> list[dict]:
        """Schemas in registration order, without the callables."""
        return [tool.schema() for tool in self._tools.values()]

    @property
    def tool_names(self) -> list[str]:
        return list(self._tools)

    async def execute(self, name: str, arguments: dict | str | None) -> dict:
        tool = self._tools.get(name)
        if tool is None:
            return {"error": f"Unknown tool: {name}"}

        args = _coerce_arguments(name, arguments)
        if isinstance(args, str):
            return {"error": args}

        try:
            if inspect.iscoroutinefunction(tool.function):
                result = await tool.function(**args)
            else:
                # Blocking tools (subprocess, file IO) run off the event loop
                result = await asyncio.to_thread(tool.function, **args)
        except TypeError as e:
            log.warning("Tool %s called with bad arguments: %s", name, e)
            return {"error": f"Invalid arguments for '{name}': {e}"}
        except Exception as e:
            log.exception("Tool %s raised", name)
            return {"error": f"Tool '{name}' failed: {e}"}

        if not isinstance(result, dict):
            result = {"output": str(result)}
        return self._clip(name, result)

    async def execute_json(self, name: str, args_json: str) -> str:
        return json.dumps(await self.execute(name, args_json), ensure_ascii=False)

    def _clip(self, name: str, result: dict) -> dict:
        """Cap every string field at truncation_limit characters."""
        limit = self.truncation_limit
        for key, value in result.items():
            if isinstance(value, str) and len(value) > limit:
                log.warning("Tool %s: field %r clipped from %d chars", name, key, len(value))
                result[key] = f"{value[:limit]}\n[truncated at {limit} chars]"
        return result
