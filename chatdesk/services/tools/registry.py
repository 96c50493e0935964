from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from chatdesk.logging_config import get_logger
from chatdesk.services.tools.base import Tool, ToolContext, ToolResult

logger = get_logger("tools.registry")


def _type_matches(expected: str, value) -> bool:
    if expected == "string":
        return isinstance(value, str)
    if expected == "number":
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if expected == "boolean":
        return isinstance(value, bool)
    return True


class ToolRegistry:
    def __init__(self, tools: Optional[list] = None):
        self._tools: dict[str, Tool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        if not tool.name:
            raise ValueError("Tool must have a name")
        if tool.name in self._tools:
            raise ValueError(f"Tool already registered: {tool.name}")
        self._tools[tool.name] = tool

    def get(self, name: str) -> Optional[Tool]:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def validate_parameters(self, name: str, params: Optional[dict]) -> list[str]:
        """Return validation errors; an empty list means the call may run. Never executes the tool."""
        tool = self._tools.get(name)
        if tool is None:
            return [f"Unknown tool: {name}"]
        if params is None:
            params = {}
        if not isinstance(params, dict):
            return ["Parameters must be an object"]

        errors = []
        for field, spec in tool.parameters.items():
            value = params.get(field)
            if value is None:
                if spec.required:
                    errors.append(f"Missing required parameter: {field}")
                continue
            if not _type_matches(spec.type, value):
                errors.append(f"Parameter {field} must be of type {spec.type}")
                continue
            if spec.enum and value not in spec.enum:
                errors.append(f"Parameter {field} must be one of: {', '.join(map(str, spec.enum))}")
        return errors

    def execute_tool(self, name: str, params: Optional[dict], context: ToolContext) -> ToolResult:
        """Run a tool. Failures of any kind come back as a failed ToolResult, never raised."""
        tool = self._tools.get(name)
        if tool is None:
            return ToolResult.fail(f"Strumento non disponibile: {name}", error="unknown_tool")

        errors = self.validate_parameters(name, params)
        if errors:
            return ToolResult.fail("Parametri non validi", error="; ".join(errors))

        log_context = {
            "tool": name,
            "conversation_id": str(context.conversation_id) if context.conversation_id else None,
            "message_id": str(context.message_id) if context.message_id else None,
        }
        try:
            result = tool.execute(params or {}, context)
        except SQLAlchemyError as exc:
            context.db.rollback()
            logger.error("Tool database error", extra={"context": {**log_context, "error": str(exc)}}, exc_info=True)
            return ToolResult.fail("Errore durante l'esecuzione dello strumento", error=str(exc))
        except Exception as exc:
            context.db.rollback()
            logger.error("Tool execution failed", extra={"context": {**log_context, "error": str(exc)}}, exc_info=True)
            return ToolResult.fail("Errore durante l'esecuzione dello strumento", error=str(exc))

        logger.info("Tool executed", extra={"context": {**log_context, "success": result.success}})
        return result

    def get_tool_definitions(self) -> list[dict]:
        return [tool.definition() for tool in self._tools.values()]

    def describe_tools(self) -> str:
        """Plain-text tool catalogue for the system prompt."""
        lines = []
        for tool in self._tools.values():
            params = ", ".join(
                f"{field}{'' if spec.required else '?'}: {spec.type}" for field, spec in tool.parameters.items()
            )
            lines.append(f"- {tool.name}({params}): {tool.description}")
        return "\n".join(lines)
