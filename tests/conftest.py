from datetime import datetime
from zoneinfo import ZoneInfo

import pytest

from app.clock import CivilClock, FrozenTime
from app.config import Settings
from app.db import build_engine, build_session_factory, init_db
from medassist import build_runtime
from services.notifier.outbound import FakeGateway
from shared.contracts.enums import Role
from shared.contracts.models import ScheduleCreate

IST = ZoneInfo("Asia/Kolkata")
PATIENT_EMAIL = "asha@example.com"
PATIENT_PHONE = "+919800000002"
CARETAKER_PHONE = "+919800000001"


def ist(hour: int, minute: int, day: int = 2) -> datetime:
    return datetime(2026, 3, day, hour, minute, tzinfo=IST)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="sqlite://",
        app_timezone="Asia/Kolkata",
        escalation_minutes=15,
        sweep_enabled=False,
        twilio_account_sid=None,
        twilio_auth_token=None,
        twilio_phone_number=None,
    )


@pytest.fixture
def frozen() -> FrozenTime:
    return FrozenTime(ist(8, 0))


@pytest.fixture
def session_factory():
    engine = build_engine("sqlite://")
    init_db(engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def runtime(settings, session_factory, gateway, frozen):
    return build_runtime(
        settings,
        session_factory=session_factory,
        gateway=gateway,
        clock=CivilClock("Asia/Kolkata", now_fn=frozen),
    )


@pytest.fixture
def guardian(runtime):
    return runtime.auth.register_user(
        name="Ravi", email="ravi@example.com", password="guardian-pass", role=Role.GUARDIAN
    )


@pytest.fixture
def patient(runtime):
    return runtime.auth.register_user(
        name="Asha", email=PATIENT_EMAIL, password="patient-pass", role=Role.PATIENT, phone=PATIENT_PHONE
    )


@pytest.fixture
def schedule(runtime, guardian, patient):
    return runtime.schedules.create(
        guardian.user_id,
        ScheduleCreate(
            patient_identity=PATIENT_EMAIL,
            medicine_name="Metformin",
            dosage="500 mg",
            time_of_day="08:00",
            caretaker_contact=CARETAKER_PHONE,
        ),
    )
