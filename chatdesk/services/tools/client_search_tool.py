from chatdesk.services import records_service
from chatdesk.services.conversation_service import as_utc
from chatdesk.services.tools.base import ParameterSpec, Tool, ToolContext, ToolResult


class SearchClientTool(Tool):
    name = "search_client"
    description = "Cerca un cliente per nome, telefono, email o codice fiscale."
    parameters = {
        "query": ParameterSpec("string", "Testo da cercare", required=True),
        "search_type": ParameterSpec(
            "string",
            "Campo su cui cercare (auto rileva il tipo)",
            enum=("auto", "name", "phone", "email", "fiscal_code"),
        ),
        "include_details": ParameterSpec("boolean", "Includi prossimi appuntamenti e pratiche recenti"),
    }

    def execute(self, params: dict, context: ToolContext) -> ToolResult:
        query = params["query"].strip()
        if not query:
            return ToolResult.fail("Testo di ricerca vuoto", error="empty_query")

        clients = records_service.search_clients(context.db, query, params.get("search_type") or "auto")
        if not clients:
            return ToolResult.ok(f"Nessun cliente trovato per '{query}'", data={"clients": []})

        include_details = bool(params.get("include_details"))
        found = []
        for client in clients:
            item = {
                "client_id": str(client.id),
                "name": client.full_name,
                "phone": client.phone,
                "whatsapp_number": client.whatsapp_number,
                "email": client.email,
                "fiscal_code": client.fiscal_code,
            }
            if include_details:
                item["upcoming_appointments"] = [
                    {"title": a.title, "starts_at": as_utc(a.starts_at).isoformat(), "status": a.status}
                    for a in records_service.upcoming_appointments(context.db, client.id, context.now)
                ]
                item["recent_practices"] = [
                    {"practice_id": str(p.id), "title": p.title, "status": p.status}
                    for p in records_service.recent_practices(context.db, client.id)
                ]
            found.append(item)

        return ToolResult.ok(f"Trovati {len(found)} clienti", data={"clients": found})
