from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

import structlog
from sqlalchemy.orm import sessionmaker

from app.auth import AttemptLimiter, AuthGate
from app.clock import CivilClock, format_time_of_day, parse_time_of_day
from app.config import Settings
from app.db import build_engine, build_session_factory, init_db
from app.db.stores import DoseLogStore, NotificationStore, ScheduleStore
from services.notifier.dedup import NotificationDeduplicator
from services.notifier.outbound import CallContext, NotificationGateway, TwilioGateway
from shared.contracts.enums import DeliveryStatus, DoseStatus, EventType, RecipientRole, Role, SweepAction
from shared.contracts.models import (
    AuthIdentity,
    DoseTakenResponse,
    EscalateResponse,
    EscalationResult,
    GatewayResult,
    ScheduleCreate,
    ScheduleDTO,
    SendOnceResult,
    SweepFailure,
    SweepReport,
    normalize_identity,
)

logger = structlog.get_logger(__name__)

DEFAULT_ESCALATION_MINUTES = 15


class ScheduleNotFound(KeyError):
    """No schedule exists with the requested id."""


class AuthorizationError(PermissionError):
    """The caller's role or ownership does not permit the action."""


class PatientNotRegistered(ValueError):
    """The schedule names a patient with no patient account."""


def schedule_label(schedule: ScheduleDTO) -> str:
    return f"{schedule.medicine_name} ({schedule.dosage}) at {format_time_of_day(schedule.time_of_day)}"


class EscalationEngine:
    """Classifies each schedule's dose for the current day and acts on it.

    ``overdue = minutes_now - schedule_minutes``:

    * below zero the dose is upcoming and nothing happens;
    * under the threshold it is due, so patient and caretaker get a reminder;
    * at or past the threshold it is missed: the day's log moves to
      escalated, the caretaker is called once, and missed alerts go out.

    A day whose log is already taken is left alone.
    """

    def __init__(
        self,
        schedules: ScheduleStore,
        dose_logs: DoseLogStore,
        notifier: NotificationDeduplicator,
        gateway: NotificationGateway,
        clock: CivilClock,
        escalation_minutes: int = DEFAULT_ESCALATION_MINUTES,
    ) -> None:
        if escalation_minutes <= 0:
            raise ValueError("escalation_minutes must be positive")
        self.schedules = schedules
        self.dose_logs = dose_logs
        self.notifier = notifier
        self.gateway = gateway
        self.clock = clock
        self.escalation_minutes = escalation_minutes

    def notify_due(self, schedule: ScheduleDTO, date_key: str) -> List[SendOnceResult]:
        label = schedule_label(schedule)
        return [
            self.notifier.send_once(
                schedule.id,
                date_key,
                EventType.DUE_PATIENT,
                RecipientRole.PATIENT,
                self.schedules.patient_contact(schedule.patient_identity),
                f"Reminder: Take {label}.",
            ),
            self.notifier.send_once(
                schedule.id,
                date_key,
                EventType.DUE_CARETAKER,
                RecipientRole.CARETAKER,
                schedule.caretaker_contact,
                f"Reminder: {schedule.patient_identity} should take {label}.",
            ),
        ]

    def notify_missed(self, schedule: ScheduleDTO, date_key: str) -> List[SendOnceResult]:
        label = schedule_label(schedule)
        return [
            self.notifier.send_once(
                schedule.id,
                date_key,
                EventType.MISSED_PATIENT,
                RecipientRole.PATIENT,
                self.schedules.patient_contact(schedule.patient_identity),
                f"Missed alert: {label} is overdue by {self.escalation_minutes}+ minutes. Please take it now.",
            ),
            self.notifier.send_once(
                schedule.id,
                date_key,
                EventType.MISSED_CARETAKER,
                RecipientRole.CARETAKER,
                schedule.caretaker_contact,
                f"Alert: {schedule.patient_identity} missed {label}. Escalation workflow started.",
            ),
        ]

    def notify_taken(self, schedule: ScheduleDTO, date_key: str, taken_at: datetime) -> SendOnceResult:
        return self.notifier.send_once(
            schedule.id,
            date_key,
            EventType.TAKEN_CARETAKER,
            RecipientRole.CARETAKER,
            schedule.caretaker_contact,
            lambda: (
                f"Update: {schedule.patient_identity} marked {schedule.medicine_name} "
                f"as taken at {self.clock.format_clock_time(taken_at)}."
            ),
        )

    def _place_call(self, schedule: ScheduleDTO) -> GatewayResult:
        context = CallContext(medicine_name=schedule.medicine_name, patient_identity=schedule.patient_identity)
        try:
            return self.gateway.place_call(schedule.caretaker_contact, context)
        except Exception as exc:
            logger.exception("caretaker_call_raised", schedule_id=schedule.id)
            return GatewayResult(ok=False, provider="unknown", status=DeliveryStatus.FAILED.value, message=str(exc))

    def escalate(
        self,
        schedule: ScheduleDTO,
        date_key: str,
        force_call: bool = False,
        now: Optional[datetime] = None,
    ) -> EscalationResult:
        now = now or self.clock.now()
        log = self.dose_logs.get(schedule.id, date_key)
        if log is not None and log.status == DoseStatus.TAKEN:
            return EscalationResult(log=log)

        if log is None or log.status != DoseStatus.ESCALATED:
            log = self.dose_logs.mark_escalated(schedule, date_key, now)
            if log.status == DoseStatus.TAKEN:
                return EscalationResult(log=log)
            logger.info("dose_escalated", schedule_id=schedule.id, date_key=date_key)

        if not schedule.caretaker_contact:
            return EscalationResult(log=log)
        if not force_call and not self.dose_logs.claim_call(schedule.id, date_key, now):
            return EscalationResult(log=self.dose_logs.get(schedule.id, date_key))

        call_result = self._place_call(schedule)
        log = self.dose_logs.mark_escalated(schedule, date_key, now, call=call_result)
        logger.info(
            "caretaker_call_recorded",
            schedule_id=schedule.id,
            date_key=date_key,
            call_status=call_result.status,
            forced=force_call,
        )
        return EscalationResult(log=log, call_result=call_result)

    def process(self, schedule: ScheduleDTO, date_key: str, minutes_now: int, now: datetime) -> SweepAction:
        log = self.dose_logs.get(schedule.id, date_key)
        if log is not None and log.status == DoseStatus.TAKEN:
            return SweepAction.SKIPPED_TAKEN

        overdue_minutes = minutes_now - parse_time_of_day(schedule.time_of_day)
        if overdue_minutes < 0:
            return SweepAction.UPCOMING

        if overdue_minutes < self.escalation_minutes:
            self.notify_due(schedule, date_key)
            return SweepAction.DUE

        result = self.escalate(schedule, date_key, force_call=False, now=now)
        if result.log is not None and result.log.status == DoseStatus.TAKEN:
            return SweepAction.SKIPPED_TAKEN
        self.notify_missed(schedule, date_key)
        return SweepAction.MISSED

    def run_sweep_once(self) -> SweepReport:
        now = self.clock.now()
        report = SweepReport(
            date_key=self.clock.date_key(now),
            minutes_now=self.clock.minutes_since_midnight(now),
        )

        for schedule in self.schedules.list_all():
            try:
                action = self.process(schedule, report.date_key, report.minutes_now, now)
            except Exception as exc:
                logger.exception("sweep_schedule_failed", schedule_id=schedule.id)
                report.failures.append(SweepFailure(schedule_id=schedule.id, error=str(exc)))
                continue
            setattr(report, action.value, getattr(report, action.value) + 1)

        logger.info(
            "sweep_completed",
            date_key=report.date_key,
            minutes_now=report.minutes_now,
            due=report.due,
            missed=report.missed,
            failures=len(report.failures),
        )
        return report


class MedAssistFlow:
    """Boundary operations invoked by the HTTP layer and the timer."""

    def __init__(self, engine: EscalationEngine, schedules: ScheduleStore, dose_logs: DoseLogStore, clock: CivilClock):
        self.engine = engine
        self.schedules = schedules
        self.dose_logs = dose_logs
        self.clock = clock

    def authorized_schedule(self, schedule_id: str, actor: AuthIdentity) -> ScheduleDTO:
        schedule = self.schedules.get(schedule_id)
        if schedule is None:
            raise ScheduleNotFound(schedule_id)
        if actor.role == Role.GUARDIAN and schedule.owner_id == actor.user_id:
            return schedule
        if actor.role == Role.PATIENT and schedule.patient_identity == normalize_identity(actor.email):
            return schedule
        raise AuthorizationError("Medication plan does not belong to this user.")

    def create_schedule(self, actor: AuthIdentity, payload: ScheduleCreate) -> ScheduleDTO:
        if actor.role != Role.GUARDIAN:
            raise AuthorizationError("Only guardians can create medication plans.")
        if not self.schedules.is_registered_patient(payload.patient_identity):
            raise PatientNotRegistered("Selected patient account not found. Register patient first.")
        schedule = self.schedules.create(actor.user_id, payload)
        logger.info("schedule_created", schedule_id=schedule.id, owner_id=actor.user_id)
        return schedule

    def delete_schedule(self, schedule_id: str, actor: AuthIdentity) -> None:
        schedule = self.schedules.get(schedule_id)
        if schedule is None:
            raise ScheduleNotFound(schedule_id)
        if actor.role != Role.GUARDIAN or schedule.owner_id != actor.user_id:
            raise AuthorizationError("You can delete only your own medication plans.")
        if not self.schedules.delete(actor.user_id, schedule_id):
            raise ScheduleNotFound(schedule_id)
        logger.info("schedule_deleted", schedule_id=schedule_id, owner_id=actor.user_id)

    def on_dose_taken(self, schedule_id: str, actor: AuthIdentity) -> DoseTakenResponse:
        if actor.role != Role.PATIENT:
            raise AuthorizationError("Only the patient can mark a dose as taken.")
        schedule = self.authorized_schedule(schedule_id, actor)

        now = self.clock.now()
        date_key = self.clock.date_key(now)
        log = self.dose_logs.mark_taken(schedule, date_key, now)
        logger.info("dose_taken", schedule_id=schedule.id, date_key=date_key)
        notify_result = self.engine.notify_taken(schedule, date_key, now)
        return DoseTakenResponse(log=log, notify_result=notify_result)

    def on_escalate_requested(self, schedule_id: str, actor: AuthIdentity) -> EscalateResponse:
        schedule = self.authorized_schedule(schedule_id, actor)

        date_key = self.clock.date_key(self.clock.now())
        result = self.engine.escalate(schedule, date_key, force_call=True)
        if result.log is not None and result.log.status == DoseStatus.TAKEN:
            return EscalateResponse(log=result.log)
        notify_results = self.engine.notify_missed(schedule, date_key)
        return EscalateResponse(log=result.log, call_result=result.call_result, notify_results=notify_results)

    def run_sweep_once(self) -> SweepReport:
        return self.engine.run_sweep_once()


@dataclass
class Runtime:
    settings: Settings
    clock: CivilClock
    session_factory: sessionmaker
    gateway: NotificationGateway
    schedules: ScheduleStore
    dose_logs: DoseLogStore
    notifications: NotificationStore
    auth: AuthGate
    limiter: AttemptLimiter
    engine: EscalationEngine
    flow: MedAssistFlow

    def close(self) -> None:
        close = getattr(self.gateway, "close", None)
        if close is not None:
            close()


def build_runtime(
    settings: Settings,
    *,
    session_factory: Optional[sessionmaker] = None,
    gateway: Optional[NotificationGateway] = None,
    clock: Optional[CivilClock] = None,
) -> Runtime:
    """Wire stores, gateway and engine for one process.

    The schema is managed by ``alembic upgrade head``; ``DB_AUTO_CREATE``
    creates it directly instead, for local runs.
    """
    if session_factory is None:
        engine = build_engine(settings.database_url)
        if settings.db_auto_create:
            init_db(engine)
        session_factory = build_session_factory(engine)
    clock = clock or CivilClock(settings.app_timezone)
    gateway = gateway or TwilioGateway(settings)

    schedules = ScheduleStore(session_factory, clock)
    dose_logs = DoseLogStore(session_factory, clock)
    notifications = NotificationStore(session_factory, clock)
    notifier = NotificationDeduplicator(notifications, gateway)
    engine = EscalationEngine(
        schedules=schedules,
        dose_logs=dose_logs,
        notifier=notifier,
        gateway=gateway,
        clock=clock,
        escalation_minutes=settings.escalation_minutes,
    )
    return Runtime(
        settings=settings,
        clock=clock,
        session_factory=session_factory,
        gateway=gateway,
        schedules=schedules,
        dose_logs=dose_logs,
        notifications=notifications,
        auth=AuthGate(session_factory, clock, settings.session_ttl_seconds),
        limiter=AttemptLimiter(settings.auth_rate_window_seconds, settings.auth_rate_max_attempts),
        engine=engine,
        flow=MedAssistFlow(engine=engine, schedules=schedules, dose_logs=dose_logs, clock=clock),
    )


DEMO_GUARDIAN_EMAIL = "guardian@medassist.com"
DEMO_PATIENT_EMAIL = "patient@medassist.com"
DEMO_PASSWORD = "123456"
DEMO_PHONE = "+91 99887 76655"


def seed_demo_data(runtime: Runtime) -> None:
    """Create the demo guardian, patient and one morning plan if absent."""
    auth = runtime.auth
    guardian = auth.find_user(DEMO_GUARDIAN_EMAIL)
    if guardian is None:
        guardian = auth.register_user(
            name="Anita Rao", email=DEMO_GUARDIAN_EMAIL, password=DEMO_PASSWORD, role=Role.GUARDIAN, phone=DEMO_PHONE
        )
    if auth.find_user(DEMO_PATIENT_EMAIL) is None:
        auth.register_user(
            name="Ravi Kumar", email=DEMO_PATIENT_EMAIL, password=DEMO_PASSWORD, role=Role.PATIENT, phone=DEMO_PHONE
        )
    if runtime.schedules.list_for(guardian):
        return
    runtime.schedules.create(
        guardian.user_id,
        ScheduleCreate(
            patient_identity=DEMO_PATIENT_EMAIL,
            medicine_name="Paracetamol",
            dosage="500 mg",
            time_of_day="08:00",
            notes="After breakfast",
            caretaker_contact=DEMO_PHONE,
        ),
    )
    logger.info("demo_data_seeded", guardian_id=guardian.user_id)
