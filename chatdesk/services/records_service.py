"""Find/create/update access to client, practice and appointment records used by the AI tools.

These tables belong to the back-office CRUD layer; only the queries the tools
need live here. Functions flush, the caller commits.
"""

import re
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from chatdesk.models import Appointment, Client, Practice
from chatdesk.services.conversation_service import as_utc, coerce_uuid

FISCAL_CODE_RE = re.compile(r"^[A-Z]{6}\d{2}[A-Z]\d{2}[A-Z]\d{3}[A-Z]$")
INACTIVE_PRACTICE_STATUSES = ("COMPLETED", "CANCELLED")


def normalize_phone(value: Optional[str]) -> str:
    """Digits only: '+39 333 123 4567' -> '393331234567'."""
    return re.sub(r"\D", "", value or "")


def _phone_candidates(phone: str) -> list[str]:
    digits = normalize_phone(phone)
    if not digits:
        return []
    return [digits, f"+{digits}"]


def find_client_by_phone(db: Session, phone: str) -> Optional[Client]:
    candidates = _phone_candidates(phone)
    if not candidates:
        return None
    return (
        db.query(Client)
        .filter(or_(Client.phone.in_(candidates), Client.whatsapp_number.in_(candidates)))
        .order_by(Client.created_at)
        .first()
    )


def create_client(
    db: Session,
    *,
    first_name: str,
    last_name: str = "",
    phone: Optional[str] = None,
    whatsapp_number: Optional[str] = None,
    email: Optional[str] = None,
) -> Client:
    client = Client(
        first_name=first_name,
        last_name=last_name,
        phone=phone,
        whatsapp_number=whatsapp_number,
        email=email,
    )
    db.add(client)
    db.flush()
    return client


def detect_search_type(query: str) -> str:
    value = query.strip()
    if "@" in value:
        return "email"
    if FISCAL_CODE_RE.match(value.upper()):
        return "fiscal_code"
    if re.fullmatch(r"[\d\s+().-]{6,}", value):
        return "phone"
    return "name"


def search_clients(db: Session, query: str, search_type: str = "auto", limit: int = 10) -> list[Client]:
    value = query.strip()
    if search_type == "auto":
        search_type = detect_search_type(value)

    q = db.query(Client)
    if search_type == "email":
        q = q.filter(func.lower(Client.email) == value.lower())
    elif search_type == "fiscal_code":
        q = q.filter(func.upper(Client.fiscal_code) == value.upper())
    elif search_type == "phone":
        digits = normalize_phone(value)
        q = q.filter(or_(Client.phone.contains(digits), Client.whatsapp_number.contains(digits)))
    else:
        pattern = f"%{value.lower()}%"
        full_name = func.lower(Client.first_name + " " + Client.last_name)
        q = q.filter(
            or_(
                func.lower(Client.first_name).like(pattern),
                func.lower(Client.last_name).like(pattern),
                full_name.like(pattern),
            )
        )
    return q.order_by(Client.last_name, Client.first_name).limit(limit).all()


def find_overlapping_appointments(
    db: Session,
    starts_at: datetime,
    duration_minutes: int,
) -> list[Appointment]:
    """Non-cancelled appointments intersecting [starts_at, starts_at + duration)."""
    start = as_utc(starts_at)
    end = start + timedelta(minutes=duration_minutes)
    candidates = (
        db.query(Appointment)
        .filter(
            Appointment.status != "CANCELLED",
            Appointment.starts_at < end,
            Appointment.starts_at >= start - timedelta(days=1),
        )
        .all()
    )
    overlapping = []
    for appointment in candidates:
        other_start = as_utc(appointment.starts_at)
        other_end = other_start + timedelta(minutes=appointment.duration_minutes)
        if other_start < end and start < other_end:
            overlapping.append(appointment)
    return overlapping


def create_appointment(
    db: Session,
    *,
    client_id,
    title: str,
    starts_at: datetime,
    duration_minutes: int = 60,
    description: Optional[str] = None,
    location: Optional[str] = None,
) -> Appointment:
    appointment = Appointment(
        client_id=coerce_uuid(client_id),
        title=title,
        description=description,
        location=location,
        starts_at=as_utc(starts_at),
        duration_minutes=duration_minutes,
        appointment_type="CONSULTATION",
        status="SCHEDULED",
    )
    db.add(appointment)
    db.flush()
    return appointment


def upcoming_appointments(db: Session, client_id, now: datetime, limit: int = 5) -> list[Appointment]:
    return (
        db.query(Appointment)
        .filter(
            Appointment.client_id == coerce_uuid(client_id),
            Appointment.status != "CANCELLED",
            Appointment.starts_at >= as_utc(now),
        )
        .order_by(Appointment.starts_at)
        .limit(limit)
        .all()
    )


def recent_practices(db: Session, client_id, limit: int = 5) -> list[Practice]:
    return (
        db.query(Practice)
        .filter(Practice.client_id == coerce_uuid(client_id))
        .order_by(Practice.created_at.desc())
        .limit(limit)
        .all()
    )


def get_practice(db: Session, practice_id) -> Optional[Practice]:
    return db.get(Practice, coerce_uuid(practice_id))


def search_practices(
    db: Session,
    *,
    query: Optional[str] = None,
    status: Optional[str] = None,
    client_id=None,
    limit: int = 10,
) -> list[Practice]:
    q = db.query(Practice)
    if query:
        pattern = f"%{query.strip().lower()}%"
        q = q.filter(or_(func.lower(Practice.title).like(pattern), func.lower(Practice.description).like(pattern)))
    if status:
        q = q.filter(Practice.status == status)
    if client_id is not None:
        q = q.filter(Practice.client_id == coerce_uuid(client_id))
    return q.order_by(Practice.created_at.desc()).limit(limit).all()


def practices_due_within(db: Session, now: datetime, days: int) -> list[Practice]:
    start = as_utc(now)
    return (
        db.query(Practice)
        .filter(
            Practice.due_date.isnot(None),
            Practice.due_date >= start,
            Practice.due_date <= start + timedelta(days=days),
            Practice.status.notin_(INACTIVE_PRACTICE_STATUSES),
        )
        .order_by(Practice.due_date)
        .all()
    )


def update_practice_status(db: Session, practice: Practice, status: str, now: datetime) -> Practice:
    practice.status = status
    practice.updated_at = as_utc(now)
    db.flush()
    return practice


def create_practice(
    db: Session,
    *,
    client_id,
    title: str,
    practice_type: str = "OTHER",
    description: Optional[str] = None,
    due_date: Optional[datetime] = None,
) -> Practice:
    practice = Practice(
        client_id=coerce_uuid(client_id),
        title=title,
        practice_type=practice_type,
        status="PENDING",
        description=description,
        due_date=as_utc(due_date),
    )
    db.add(practice)
    db.flush()
    return practice
