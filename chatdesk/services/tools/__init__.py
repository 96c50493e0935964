from chatdesk.services.tools.appointment_tool import ScheduleAppointmentTool
from chatdesk.services.tools.base import ParameterSpec, Tool, ToolContext, ToolResult
from chatdesk.services.tools.client_search_tool import SearchClientTool
from chatdesk.services.tools.practice_tool import ManagePracticeTool
from chatdesk.services.tools.registry import ToolRegistry
from chatdesk.services.tools.whatsapp_message_tool import SendWhatsAppMessageTool


def build_default_registry(dispatcher) -> ToolRegistry:
    return ToolRegistry(
        [
            ScheduleAppointmentTool(),
            SearchClientTool(),
            ManagePracticeTool(),
            SendWhatsAppMessageTool(dispatcher),
        ]
    )


__all__ = [
    "ParameterSpec",
    "Tool",
    "ToolContext",
    "ToolResult",
    "ToolRegistry",
    "ScheduleAppointmentTool",
    "SearchClientTool",
    "ManagePracticeTool",
    "SendWhatsAppMessageTool",
    "build_default_registry",
]
