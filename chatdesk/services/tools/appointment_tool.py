from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

from chatdesk.services import records_service
from chatdesk.services.business_hours import parse_hhmm
from chatdesk.services.conversation_service import as_utc
from chatdesk.services.tools.base import ParameterSpec, Tool, ToolContext, ToolResult

DEFAULT_LOCATION = "Studio Gori"
DEFAULT_DURATION_MINUTES = 60
MAX_DURATION_MINUTES = 8 * 60


class ScheduleAppointmentTool(Tool):
    name = "schedule_appointment"
    description = (
        "Fissa un appuntamento per un cliente. Usa la data nel formato YYYY-MM-DD e l'ora HH:MM "
        "(fuso orario dello studio). Se client_phone manca viene usato il numero della conversazione."
    )
    parameters = {
        "date": ParameterSpec("string", "Data dell'appuntamento (YYYY-MM-DD)", required=True),
        "time": ParameterSpec("string", "Ora di inizio (HH:MM)", required=True),
        "title": ParameterSpec("string", "Motivo dell'appuntamento", required=True),
        "client_phone": ParameterSpec("string", "Telefono del cliente in formato internazionale"),
        "duration": ParameterSpec("number", "Durata in minuti (default 60)"),
        "description": ParameterSpec("string", "Note aggiuntive"),
        "location": ParameterSpec("string", "Luogo (default Studio Gori)"),
    }

    def execute(self, params: dict, context: ToolContext) -> ToolResult:
        db = context.db
        phone = params.get("client_phone") or context.contact_identifier
        if not phone:
            return ToolResult.fail("Numero di telefono del cliente mancante", error="missing_client_phone")

        try:
            day = date.fromisoformat(params["date"])
            at = parse_hhmm(params["time"])
        except ValueError:
            return ToolResult.fail(
                "Formato data/ora non valido: usa YYYY-MM-DD e HH:MM",
                error="invalid_datetime",
            )

        duration = int(params.get("duration") or DEFAULT_DURATION_MINUTES)
        if duration <= 0 or duration > MAX_DURATION_MINUTES:
            return ToolResult.fail("Durata non valida", error="invalid_duration")

        starts_at = datetime.combine(day, at, tzinfo=ZoneInfo(context.timezone)).astimezone(timezone.utc)
        if starts_at <= as_utc(context.now):
            return ToolResult.fail("Non è possibile fissare un appuntamento nel passato", error="past_datetime")

        client = records_service.find_client_by_phone(db, phone)
        if client is None:
            is_contact = records_service.normalize_phone(phone) == records_service.normalize_phone(
                context.contact_identifier
            )
            if not is_contact:
                return ToolResult.fail(f"Nessun cliente trovato con il numero {phone}", error="client_not_found")
            digits = records_service.normalize_phone(phone)
            client = records_service.create_client(
                db,
                first_name=context.contact_name or "Cliente WhatsApp",
                phone=f"+{digits}",
                whatsapp_number=digits,
            )

        when = f"{day.strftime('%d/%m/%Y')} alle {at.strftime('%H:%M')}"
        conflicts = records_service.find_overlapping_appointments(db, starts_at, duration)
        for existing in conflicts:
            if existing.client_id == client.id and as_utc(existing.starts_at) == starts_at:
                return ToolResult.ok(f"Appuntamento già fissato per il {when}", data=_serialize(existing))
        if conflicts:
            return ToolResult.fail(f"Lo slot del {when} è già occupato, proponi un altro orario", error="slot_conflict")

        appointment = records_service.create_appointment(
            db,
            client_id=client.id,
            title=params["title"],
            starts_at=starts_at,
            duration_minutes=duration,
            description=params.get("description"),
            location=params.get("location") or DEFAULT_LOCATION,
        )
        db.commit()
        return ToolResult.ok(f"Appuntamento fissato per il {when}: {appointment.title}", data=_serialize(appointment))


def _serialize(appointment) -> dict:
    return {
        "appointment_id": str(appointment.id),
        "client_id": str(appointment.client_id),
        "title": appointment.title,
        "starts_at": as_utc(appointment.starts_at).isoformat(),
        "duration_minutes": appointment.duration_minutes,
        "location": appointment.location,
        "status": appointment.status,
    }
