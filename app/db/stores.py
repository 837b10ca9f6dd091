from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session, sessionmaker

from app.clock import CivilClock, as_utc
from shared.contracts.enums import DoseStatus, Role
from shared.contracts.models import (
    AuthIdentity,
    DoseLogDTO,
    GatewayResult,
    NotificationDTO,
    ScheduleCreate,
    ScheduleDTO,
    normalize_identity,
)

from .models import DoseLog, NotificationRecord, Schedule, User, new_id

DEFAULT_LIST_LIMIT = 200


def _insert(session: Session, model):
    """Dialect-specific INSERT that supports ON CONFLICT clauses."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise NotImplementedError(f"conflict-resolving upserts are not supported on {dialect}")


class ScheduleStore:
    def __init__(self, session_factory: sessionmaker, clock: CivilClock) -> None:
        self.session_factory = session_factory
        self.clock = clock

    def list_all(self) -> List[ScheduleDTO]:
        with self.session_factory() as session:
            rows = session.scalars(select(Schedule).order_by(Schedule.time_of_day, Schedule.created_at))
            return [ScheduleDTO.model_validate(row) for row in rows]

    def get(self, schedule_id: str) -> Optional[ScheduleDTO]:
        with self.session_factory() as session:
            row = session.get(Schedule, schedule_id)
            return ScheduleDTO.model_validate(row) if row is not None else None

    def list_for(self, identity: AuthIdentity) -> List[ScheduleDTO]:
        query = select(Schedule).order_by(Schedule.time_of_day)
        if identity.role == Role.GUARDIAN:
            query = query.where(Schedule.owner_id == identity.user_id)
        else:
            query = query.where(Schedule.patient_identity == normalize_identity(identity.email))
        with self.session_factory() as session:
            return [ScheduleDTO.model_validate(row) for row in session.scalars(query)]

    def create(self, owner_id: str, payload: ScheduleCreate) -> ScheduleDTO:
        with self.session_factory.begin() as session:
            row = Schedule(
                id=new_id(),
                owner_id=owner_id,
                patient_identity=payload.patient_identity,
                medicine_name=payload.medicine_name,
                dosage=payload.dosage,
                time_of_day=payload.time_of_day,
                notes=payload.notes,
                caretaker_contact=payload.caretaker_contact,
                created_at=self.clock.now(),
            )
            session.add(row)
            session.flush()
            return ScheduleDTO.model_validate(row)

    def delete(self, owner_id: str, schedule_id: str) -> bool:
        with self.session_factory.begin() as session:
            result = session.execute(
                delete(Schedule).where(Schedule.id == schedule_id, Schedule.owner_id == owner_id)
            )
            return result.rowcount > 0

    def patient_contact(self, patient_identity: str) -> str:
        with self.session_factory() as session:
            phone = session.scalar(
                select(User.phone).where(User.email == normalize_identity(patient_identity))
            )
            return phone or ""

    def is_registered_patient(self, patient_identity: str) -> bool:
        with self.session_factory() as session:
            role = session.scalar(
                select(User.role).where(User.email == normalize_identity(patient_identity))
            )
            return role == Role.PATIENT.value


@dataclass(frozen=True)
class DoseLogWrite:
    schedule_id: str
    date_key: str
    status: DoseStatus
    scheduled_at: Optional[datetime] = None
    taken_at: Optional[datetime] = None
    escalated_at: Optional[datetime] = None
    caretaker_contact: str = ""
    caretaker_called_at: Optional[datetime] = None
    call_provider: Optional[str] = None
    call_reference: Optional[str] = None
    call_status: Optional[str] = None


_MUTABLE_LOG_FIELDS = (
    "status",
    "scheduled_at",
    "taken_at",
    "escalated_at",
    "caretaker_contact",
    "caretaker_called_at",
    "call_provider",
    "call_reference",
    "call_status",
    "updated_at",
)


class DoseLogStore:
    """Per (schedule, day) outcome rows. Every write is one conflict-resolving statement."""

    def __init__(self, session_factory: sessionmaker, clock: CivilClock) -> None:
        self.session_factory = session_factory
        self.clock = clock

    @staticmethod
    def _fetch(session: Session, schedule_id: str, date_key: str) -> Optional[DoseLog]:
        return session.scalar(
            select(DoseLog).where(DoseLog.schedule_id == schedule_id, DoseLog.date_key == date_key)
        )

    def _values(self, record: DoseLogWrite) -> dict:
        now = self.clock.now()
        values = {
            name: as_utc(value) if isinstance(value, datetime) else value
            for name, value in asdict(record).items()
        }
        values["status"] = DoseStatus(record.status).value
        values.update(id=new_id(), created_at=now, updated_at=now)
        return values

    def get(self, schedule_id: str, date_key: str) -> Optional[DoseLogDTO]:
        with self.session_factory() as session:
            row = self._fetch(session, schedule_id, date_key)
            return DoseLogDTO.model_validate(row) if row is not None else None

    def upsert(self, record: DoseLogWrite) -> DoseLogDTO:
        with self.session_factory.begin() as session:
            stmt = _insert(session, DoseLog).values(**self._values(record))
            stmt = stmt.on_conflict_do_update(
                index_elements=["schedule_id", "date_key"],
                set_={name: stmt.excluded[name] for name in _MUTABLE_LOG_FIELDS},
            )
            session.execute(stmt)
            return DoseLogDTO.model_validate(self._fetch(session, record.schedule_id, record.date_key))

    def mark_taken(self, schedule: ScheduleDTO, date_key: str, taken_at: datetime) -> DoseLogDTO:
        return self.upsert(
            DoseLogWrite(
                schedule_id=schedule.id,
                date_key=date_key,
                status=DoseStatus.TAKEN,
                scheduled_at=self.clock.scheduled_at(date_key, schedule.time_of_day),
                taken_at=taken_at,
                caretaker_contact=schedule.caretaker_contact,
            )
        )

    def mark_escalated(
        self,
        schedule: ScheduleDTO,
        date_key: str,
        escalated_at: datetime,
        call: Optional[GatewayResult] = None,
    ) -> DoseLogDTO:
        """Move the day to escalated unless it is already taken.

        The first ``escalated_at`` and ``caretaker_called_at`` survive later
        calls; passing ``call`` records a fresh call attempt over them.
        """
        record = DoseLogWrite(
            schedule_id=schedule.id,
            date_key=date_key,
            status=DoseStatus.ESCALATED,
            scheduled_at=self.clock.scheduled_at(date_key, schedule.time_of_day),
            escalated_at=escalated_at,
            caretaker_contact=schedule.caretaker_contact,
            caretaker_called_at=escalated_at if call is not None else None,
            call_provider=call.provider if call is not None else None,
            call_reference=call.reference if call is not None else None,
            call_status=call.status if call is not None else None,
        )
        table = DoseLog.__table__
        with self.session_factory.begin() as session:
            stmt = _insert(session, DoseLog).values(**self._values(record))
            set_ = {
                "status": stmt.excluded.status,
                "scheduled_at": stmt.excluded.scheduled_at,
                "escalated_at": func.coalesce(table.c.escalated_at, stmt.excluded.escalated_at),
                "caretaker_contact": stmt.excluded.caretaker_contact,
                "updated_at": stmt.excluded.updated_at,
            }
            if call is not None:
                for name in ("caretaker_called_at", "call_provider", "call_reference", "call_status"):
                    set_[name] = stmt.excluded[name]
            stmt = stmt.on_conflict_do_update(
                index_elements=["schedule_id", "date_key"],
                set_=set_,
                where=table.c.status != DoseStatus.TAKEN.value,
            )
            session.execute(stmt)
            return DoseLogDTO.model_validate(self._fetch(session, schedule.id, date_key))

    def claim_call(self, schedule_id: str, date_key: str, called_at: datetime) -> bool:
        """Reserve the day's caretaker call for one caller.

        A single conditional UPDATE: succeeds only on an escalated row with no
        call recorded yet, so overlapping sweeps cannot both place the call.
        """
        with self.session_factory.begin() as session:
            result = session.execute(
                update(DoseLog)
                .where(
                    DoseLog.schedule_id == schedule_id,
                    DoseLog.date_key == date_key,
                    DoseLog.status == DoseStatus.ESCALATED.value,
                    DoseLog.caretaker_called_at.is_(None),
                )
                .values(caretaker_called_at=as_utc(called_at), updated_at=self.clock.now())
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def list_for_schedules(self, schedule_ids: Iterable[str], limit: int = DEFAULT_LIST_LIMIT) -> List[DoseLogDTO]:
        ids = list(schedule_ids)
        if not ids:
            return []
        with self.session_factory() as session:
            rows = session.scalars(
                select(DoseLog)
                .where(DoseLog.schedule_id.in_(ids))
                .order_by(DoseLog.date_key.desc(), DoseLog.updated_at.desc())
                .limit(limit)
            )
            return [DoseLogDTO.model_validate(row) for row in rows]


class NotificationStore:
    def __init__(self, session_factory: sessionmaker, clock: CivilClock) -> None:
        self.session_factory = session_factory
        self.clock = clock

    def get(self, schedule_id: str, date_key: str, event_type: str, recipient_contact: str) -> Optional[NotificationDTO]:
        with self.session_factory() as session:
            row = session.scalar(
                select(NotificationRecord).where(
                    NotificationRecord.schedule_id == schedule_id,
                    NotificationRecord.date_key == date_key,
                    NotificationRecord.event_type == event_type,
                    NotificationRecord.recipient_contact == recipient_contact,
                )
            )
            return NotificationDTO.model_validate(row) if row is not None else None

    def insert_once(
        self,
        *,
        schedule_id: str,
        date_key: str,
        event_type: str,
        recipient_role: str,
        recipient_contact: str,
        message: str,
        result: GatewayResult,
    ) -> Optional[NotificationDTO]:
        """Insert one record for the dedup key; ``None`` if a row already holds it."""
        record_id = new_id()
        with self.session_factory.begin() as session:
            stmt = (
                _insert(session, NotificationRecord)
                .values(
                    id=record_id,
                    schedule_id=schedule_id,
                    date_key=date_key,
                    event_type=event_type,
                    recipient_role=recipient_role,
                    recipient_contact=recipient_contact,
                    message=message,
                    provider=result.provider or "mock",
                    provider_reference=result.reference or "",
                    delivery_status=result.status or "queued",
                    created_at=self.clock.now(),
                )
                .on_conflict_do_nothing(
                    index_elements=["schedule_id", "date_key", "event_type", "recipient_contact"]
                )
            )
            if session.execute(stmt).rowcount == 0:
                return None
            return NotificationDTO.model_validate(session.get(NotificationRecord, record_id))

    def count(self, schedule_id: Optional[str] = None) -> int:
        query = select(func.count()).select_from(NotificationRecord)
        if schedule_id is not None:
            query = query.where(NotificationRecord.schedule_id == schedule_id)
        with self.session_factory() as session:
            return session.scalar(query) or 0

    def list_visible_to(self, identity: AuthIdentity, limit: int = DEFAULT_LIST_LIMIT) -> List[NotificationDTO]:
        query = select(NotificationRecord).join(Schedule, Schedule.id == NotificationRecord.schedule_id)
        if identity.role == Role.GUARDIAN:
            query = query.where(Schedule.owner_id == identity.user_id)
        else:
            query = query.where(Schedule.patient_identity == normalize_identity(identity.email))
        query = query.order_by(NotificationRecord.created_at.desc()).limit(limit)
        with self.session_factory() as session:
            return [NotificationDTO.model_validate(row) for row in session.scalars(query)]
