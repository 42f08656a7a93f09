"""Abstract base class for built-in control tools."""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from gateway.events import ChatEvent
from gateway.schema import ToolSchema, empty_object_schema


@dataclass
class ToolResult:
    """Textual tool result plus side-channel events for the caller."""
    message: str
    events: list[ChatEvent] = field(default_factory=list)


class ControlTool(ABC):
    """Base class for reserved tools handled inside the gateway."""

    name: str = ""
    description: str = ""
    parameters: dict = empty_object_schema()

    @abstractmethod
    async def execute(self, arguments: str) -> ToolResult:
        """Execute the tool with the raw JSON argument string."""
        ...

    def schema(self) -> ToolSchema:
        return ToolSchema(name=self.name, description=self.description, parameters=self.parameters)

    def parse_arguments(self, arguments: str) -> dict:
        """Decode arguments to an object. Raises ValueError on malformed input."""
        value = json.loads(arguments or "{}")
        if not isinstance(value, dict):
            raise ValueError("arguments must be a JSON object")
        return value

    def invalid_arguments(self, reason: Exception | str) -> ToolResult:
        return ToolResult(message=f"Error: invalid {self.name.lower()} args: {reason}")
