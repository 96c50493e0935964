from datetime import date, datetime, time
from zoneinfo import ZoneInfo

from chatdesk.models.practice import PRACTICE_STATUSES
from chatdesk.services import records_service
from chatdesk.services.conversation_service import as_utc
from chatdesk.services.tools.base import ParameterSpec, Tool, ToolContext, ToolResult

ACTIONS = ("search", "get_details", "check_deadlines", "update_status", "create")
DEFAULT_DEADLINE_DAYS = 30


def _serialize(practice) -> dict:
    return {
        "practice_id": str(practice.id),
        "client_id": str(practice.client_id),
        "title": practice.title,
        "type": practice.practice_type,
        "status": practice.status,
        "description": practice.description,
        "due_date": as_utc(practice.due_date).date().isoformat() if practice.due_date else None,
    }


class ManagePracticeTool(Tool):
    name = "manage_practice"
    description = (
        "Gestisce le pratiche dello studio: ricerca, dettagli, scadenze imminenti, "
        "aggiornamento dello stato e creazione."
    )
    parameters = {
        "action": ParameterSpec("string", "Operazione da eseguire", required=True, enum=ACTIONS),
        "practice_id": ParameterSpec("string", "ID della pratica (get_details, update_status)"),
        "query": ParameterSpec("string", "Testo da cercare nel titolo o nella descrizione"),
        "status": ParameterSpec("string", "Stato della pratica", enum=PRACTICE_STATUSES),
        "client_phone": ParameterSpec("string", "Telefono del cliente"),
        "title": ParameterSpec("string", "Titolo della nuova pratica"),
        "practice_type": ParameterSpec("string", "Tipo della nuova pratica"),
        "description": ParameterSpec("string", "Descrizione"),
        "due_date": ParameterSpec("string", "Scadenza (YYYY-MM-DD)"),
        "days": ParameterSpec("number", "Finestra in giorni per le scadenze (default 30)"),
    }

    def execute(self, params: dict, context: ToolContext) -> ToolResult:
        handler = getattr(self, f"_{params['action']}")
        return handler(params, context)

    def _load_practice(self, params: dict, context: ToolContext):
        practice_id = params.get("practice_id")
        if not practice_id:
            return None, ToolResult.fail("practice_id obbligatorio per questa operazione", error="missing_practice_id")
        try:
            practice = records_service.get_practice(context.db, practice_id)
        except ValueError:
            return None, ToolResult.fail("ID pratica non valido", error="invalid_practice_id")
        if practice is None:
            return None, ToolResult.fail("Pratica non trovata", error="practice_not_found")
        return practice, None

    def _resolve_client(self, params: dict, context: ToolContext):
        phone = params.get("client_phone") or context.contact_identifier
        if not phone:
            return None
        return records_service.find_client_by_phone(context.db, phone)

    def _search(self, params: dict, context: ToolContext) -> ToolResult:
        client_id = None
        if params.get("client_phone"):
            client = self._resolve_client(params, context)
            if client is None:
                return ToolResult.ok("Nessuna pratica trovata", data={"practices": []})
            client_id = client.id
        practices = records_service.search_practices(
            context.db,
            query=params.get("query"),
            status=params.get("status"),
            client_id=client_id,
        )
        return ToolResult.ok(
            f"Trovate {len(practices)} pratiche",
            data={"practices": [_serialize(p) for p in practices]},
        )

    def _get_details(self, params: dict, context: ToolContext) -> ToolResult:
        practice, error = self._load_practice(params, context)
        if error:
            return error
        return ToolResult.ok(f"Pratica: {practice.title} ({practice.status})", data=_serialize(practice))

    def _check_deadlines(self, params: dict, context: ToolContext) -> ToolResult:
        days = int(params.get("days") or DEFAULT_DEADLINE_DAYS)
        practices = records_service.practices_due_within(context.db, context.now, days)
        return ToolResult.ok(
            f"{len(practices)} pratiche in scadenza nei prossimi {days} giorni",
            data={"practices": [_serialize(p) for p in practices]},
        )

    def _update_status(self, params: dict, context: ToolContext) -> ToolResult:
        if not params.get("status"):
            return ToolResult.fail("status obbligatorio per update_status", error="missing_status")
        practice, error = self._load_practice(params, context)
        if error:
            return error
        records_service.update_practice_status(context.db, practice, params["status"], context.now)
        context.db.commit()
        return ToolResult.ok(f"Stato della pratica aggiornato a {practice.status}", data=_serialize(practice))

    def _create(self, params: dict, context: ToolContext) -> ToolResult:
        if not params.get("title"):
            return ToolResult.fail("title obbligatorio per create", error="missing_title")
        client = self._resolve_client(params, context)
        if client is None:
            return ToolResult.fail("Cliente non trovato", error="client_not_found")

        due_date = None
        if params.get("due_date"):
            try:
                day = date.fromisoformat(params["due_date"])
            except ValueError:
                return ToolResult.fail("Scadenza non valida: usa YYYY-MM-DD", error="invalid_due_date")
            due_date = datetime.combine(day, time(18, 0), tzinfo=ZoneInfo(context.timezone))

        practice = records_service.create_practice(
            context.db,
            client_id=client.id,
            title=params["title"],
            practice_type=params.get("practice_type") or "OTHER",
            description=params.get("description"),
            due_date=due_date,
        )
        context.db.commit()
        return ToolResult.ok(f"Pratica creata: {practice.title}", data=_serialize(practice))
