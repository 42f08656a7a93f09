"""Reserved control tools: TodoWrite, Task and Skill."""

import logging

from gateway.events import TYPE_TASK_UPDATE, ChatEvent, text_event
from tools.base_tool import ControlTool, ToolResult

logger = logging.getLogger(__name__)

SKILL_PAYLOAD = """<skill-loaded name="{name}">
# Skill: {name}

## Best Practices
1. Keep functions small and focused.
2. Use descriptive variable names.
3. Handle errors explicitly.

## Common Patterns
- Repository Pattern
- Service Layer
- Dependency Injection
</skill-loaded>

Skill loaded successfully. You can now use this knowledge to assist the user."""

EXPLORE_FINDINGS = (
    "Subagent [explore] completed task: {description}.\n"
    "Findings:\n"
    "- Found project root at /app\n"
    "- Found go.mod (go 1.21)\n"
    "- Found main.go\n"
    "Analysis complete."
)


class TodoWriteTool(ControlTool):
    name = "TodoWrite"
    description = (
        "Update the task list. Use to plan and track progress. "
        "ALWAYS call this when starting a multi-step task."
    )
    parameters = {
        "type": "object",
        "properties": {
            "items": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "content": {"type": "string", "description": "Task description"},
                        "status": {"type": "string", "enum": ["pending", "in_progress", "completed"]},
                        "activeForm": {
                            "type": "string",
                            "description": "Present tense action, e.g. 'Reading files'",
                        },
                    },
                    "required": ["content", "status", "activeForm"],
                },
            },
        },
        "required": ["items"],
    }

    async def execute(self, arguments: str) -> ToolResult:
        # The acknowledgment echoes raw arguments even when they do not parse.
        events = []
        try:
            items = self.parse_arguments(arguments).get("items")
        except ValueError as exc:
            logger.debug("TodoWrite arguments did not parse: %s", exc)
            items = None
        if isinstance(items, list):
            events.append(ChatEvent(
                type=TYPE_TASK_UPDATE,
                tasks=[item for item in items if isinstance(item, dict)],
            ))
        return ToolResult(message=f"Tasks updated. Current state: {arguments}", events=events)


class TaskTool(ControlTool):
    name = "Task"
    description = (
        "Delegate a sub-task to a specialized agent. Use this for complex steps "
        "like 'explore codebase' or 'write detailed plan'."
    )
    parameters = {
        "type": "object",
        "properties": {
            "description": {"type": "string", "description": "Short description of the task"},
            "prompt": {"type": "string", "description": "Detailed instructions for the subagent"},
            "subagent_type": {"type": "string", "enum": ["explore", "code", "plan"]},
        },
        "required": ["description", "prompt", "subagent_type"],
    }

    async def execute(self, arguments: str) -> ToolResult:
        try:
            args = self.parse_arguments(arguments)
        except ValueError as exc:
            return self.invalid_arguments(exc)
        subagent = str(args.get("subagent_type") or "")
        description = str(args.get("description") or "")
        events = [text_event(f"\n*Subagent [{subagent}] started: {description}*\n")]
        if subagent == "explore":
            message = EXPLORE_FINDINGS.format(description=description)
        else:
            message = f"Subagent [{subagent}] executed task: {description}. Result: Success."
        return ToolResult(message=message, events=events)


class SkillTool(ControlTool):
    name = "Skill"
    description = (
        "Load a specialized skill/knowledge. Use this when you need domain "
        "expertise (e.g. 'how to review code', 'how to build mcp')."
    )
    parameters = {
        "type": "object",
        "properties": {
            "name": {"type": "string", "description": "Name of the skill to load"},
        },
        "required": ["name"],
    }

    async def execute(self, arguments: str) -> ToolResult:
        try:
            args = self.parse_arguments(arguments)
        except ValueError as exc:
            return self.invalid_arguments(exc)
        name = str(args.get("name") or "")
        return ToolResult(
            message=SKILL_PAYLOAD.format(name=name),
            events=[text_event(f"\n*Loaded Skill: {name}*\n")],
        )


CONTROL_TOOLS: list[ControlTool] = [TodoWriteTool(), TaskTool(), SkillTool()]


def get_control_tool(name: str) -> ControlTool | None:
    for tool in CONTROL_TOOLS:
        if tool.name == name:
            return tool
    return None
