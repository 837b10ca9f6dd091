from sqlalchemy import inspect

from app.config import Settings
from medassist import build_runtime, seed_demo_data
from services.notifier.outbound import FakeGateway


def _settings(tmp_path, **overrides) -> Settings:
    return Settings(database_url=f"sqlite:///{tmp_path / 'medassist.sqlite'}", sweep_enabled=False, **overrides)


def _tables(runtime) -> set:
    return set(inspect(runtime.session_factory.kw["bind"]).get_table_names())


def test_schema_is_left_to_migrations_by_default(tmp_path):
    runtime = build_runtime(_settings(tmp_path), gateway=FakeGateway())

    assert _tables(runtime) == set()


def test_auto_create_builds_schema_for_local_runs(tmp_path):
    runtime = build_runtime(_settings(tmp_path, db_auto_create=True), gateway=FakeGateway())

    assert {"users", "sessions", "schedules", "dose_logs", "notifications"} <= _tables(runtime)


def test_demo_seed_is_idempotent(runtime):
    seed_demo_data(runtime)
    seed_demo_data(runtime)

    guardian = runtime.auth.find_user("guardian@medassist.com")
    assert [s.medicine_name for s in runtime.schedules.list_for(guardian)] == ["Paracetamol"]
    assert [p.email for p in runtime.auth.list_patients()] == ["patient@medassist.com"]
