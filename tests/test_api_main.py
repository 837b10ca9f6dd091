import pytest
from fastapi.testclient import TestClient

from app.auth import AttemptLimiter
from conftest import CARETAKER_PHONE, PATIENT_EMAIL, ist
from services.api.main import create_app

NEW_SCHEDULE = {
    "patient_identity": " ASHA@example.com ",
    "medicine_name": "Atorvastatin",
    "dosage": "10 mg",
    "time_of_day": "21:00",
    "caretaker_contact": CARETAKER_PHONE,
}


@pytest.fixture
def client(runtime):
    with TestClient(create_app(runtime)) as test_client:
        yield test_client


def _login(client, email, password) -> dict:
    response = client.post("/auth/login", json={"email": email, "password": password})
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.json()['token']}"}


@pytest.fixture
def guardian_headers(client, guardian):
    return _login(client, "ravi@example.com", "guardian-pass")


@pytest.fixture
def patient_headers(client, patient):
    return _login(client, PATIENT_EMAIL, "patient-pass")


def test_health(client):
    body = client.get("/health").json()
    assert body["ok"] is True
    assert body["timezone"] == "Asia/Kolkata"


def test_requests_without_token_are_unauthorized(client, schedule):
    assert client.get("/schedules").status_code == 401
    assert client.post(f"/schedules/{schedule.id}/taken").status_code == 401
    assert client.get("/logs", headers={"Authorization": "Bearer bogus"}).status_code == 401


def test_bad_credentials_and_rate_limit(client, runtime, patient):
    runtime.limiter = AttemptLimiter(window_seconds=600, max_attempts=2)
    bad = {"email": PATIENT_EMAIL, "password": "wrong"}

    assert client.post("/auth/login", json=bad).status_code == 401
    assert client.post("/auth/login", json=bad).status_code == 401
    assert client.post("/auth/login", json=bad).status_code == 429


def test_guardian_creates_lists_and_deletes_schedule(client, guardian_headers, patient_headers):
    created = client.post("/schedules", json=NEW_SCHEDULE, headers=guardian_headers)
    assert created.status_code == 201
    body = created.json()
    assert body["patient_identity"] == PATIENT_EMAIL
    assert body["time_of_day"] == "21:00"

    assert [s["id"] for s in client.get("/schedules", headers=guardian_headers).json()] == [body["id"]]
    assert [s["id"] for s in client.get("/schedules", headers=patient_headers).json()] == [body["id"]]

    assert client.delete(f"/schedules/{body['id']}", headers=guardian_headers).status_code == 204
    assert client.delete(f"/schedules/{body['id']}", headers=guardian_headers).status_code == 404
    assert client.get("/schedules", headers=guardian_headers).json() == []


def test_patient_cannot_create_schedule(client, patient_headers):
    assert client.post("/schedules", json=NEW_SCHEDULE, headers=patient_headers).status_code == 403


@pytest.mark.parametrize(
    "override",
    [
        {"time_of_day": "9:00"},
        {"time_of_day": "25:00"},
        {"patient_identity": "asha"},
        {"medicine_name": ""},
        {"unexpected": "field"},
    ],
)
def test_invalid_schedule_payload_is_rejected(client, guardian_headers, override):
    payload = {**NEW_SCHEDULE, **override}
    assert client.post("/schedules", json=payload, headers=guardian_headers).status_code == 422


def test_patient_marks_taken_and_guardian_sees_log(client, runtime, schedule, frozen, guardian_headers, patient_headers):
    frozen.set(ist(8, 3))

    response = client.post(f"/schedules/{schedule.id}/taken", headers=patient_headers)

    assert response.status_code == 200
    assert response.json()["log"]["status"] == "taken"
    assert response.json()["notify_result"]["sent"] is True
    logs = client.get("/logs", headers=guardian_headers).json()
    assert [(log["date_key"], log["status"]) for log in logs] == [("2026-03-02", "taken")]
    notifications = client.get("/notifications", headers=patient_headers).json()
    assert [n["event_type"] for n in notifications] == ["taken_caretaker"]


def test_guardian_cannot_mark_taken(client, schedule, guardian_headers):
    assert client.post(f"/schedules/{schedule.id}/taken", headers=guardian_headers).status_code == 403


def test_unknown_schedule_is_404(client, patient_headers, guardian_headers):
    assert client.post("/schedules/missing/taken", headers=patient_headers).status_code == 404
    assert client.post("/schedules/missing/escalate", headers=guardian_headers).status_code == 404


def test_escalate_now(client, schedule, frozen, gateway, guardian_headers):
    frozen.set(ist(8, 20))

    response = client.post(f"/schedules/{schedule.id}/escalate", headers=guardian_headers)

    assert response.status_code == 200
    body = response.json()
    assert body["log"]["status"] == "escalated"
    assert body["call_result"]["ok"] is True
    assert len(body["notify_results"]) == 2
    assert len(gateway.calls()) == 1


def test_api_app_never_runs_the_sweep_timer(runtime):
    runtime.settings.sweep_enabled = True

    with TestClient(create_app(runtime)) as test_client:
        assert test_client.get("/health").status_code == 200
        assert not hasattr(test_client.app.state, "sweep_timer")


def test_register_opens_session_and_rejects_duplicates(client):
    payload = {"name": "Leela", "email": "Leela@Example.com", "password": "secret1", "phone": "+919800000003"}

    created = client.post("/auth/register", json=payload)

    assert created.status_code == 201
    body = created.json()
    assert body["user"]["email"] == "leela@example.com"
    assert body["user"]["role"] == "patient"
    me = client.get("/auth/me", headers={"Authorization": f"Bearer {body['token']}"})
    assert me.json()["email"] == "leela@example.com"

    assert client.post("/auth/register", json=payload).status_code == 409
    assert client.post("/auth/register", json={**payload, "email": "x@example.com", "password": "123"}).status_code == 422


def test_logout_revokes_the_token(client, patient_headers):
    assert client.get("/auth/me", headers=patient_headers).status_code == 200

    assert client.post("/auth/logout", headers=patient_headers).json() == {"ok": True}

    assert client.get("/auth/me", headers=patient_headers).status_code == 401
    assert client.post("/auth/logout", headers=patient_headers).status_code == 401


def test_guardian_lists_registered_patients(client, guardian_headers, patient_headers):
    patients = client.get("/users/patients", headers=guardian_headers).json()

    assert [(p["email"], p["phone"]) for p in patients] == [(PATIENT_EMAIL, "+919800000002")]
    assert "password_hash" not in patients[0]
    assert client.get("/users/patients", headers=patient_headers).status_code == 403


def test_schedule_requires_a_registered_patient_account(client, guardian_headers):
    response = client.post(
        "/schedules", json={**NEW_SCHEDULE, "patient_identity": "ghost@example.com"}, headers=guardian_headers
    )
    assert response.status_code == 400
    assert "Register patient first" in response.json()["detail"]

    guardian_as_patient = client.post(
        "/schedules", json={**NEW_SCHEDULE, "patient_identity": "ravi@example.com"}, headers=guardian_headers
    )
    assert guardian_as_patient.status_code == 400


def test_guardian_cannot_delete_another_guardians_plan(client, runtime, schedule):
    runtime.auth.register_user(name="Kiran", email="kiran@example.com", password="other-pass", role="guardian")
    other_headers = _login(client, "kiran@example.com", "other-pass")

    response = client.delete(f"/schedules/{schedule.id}", headers=other_headers)

    assert response.status_code == 403
    assert response.json()["detail"] == "You can delete only your own medication plans."
    assert runtime.schedules.get(schedule.id) is not None


def test_demo_data_is_seeded_once(runtime):
    runtime.settings.seed_demo_data = True

    with TestClient(create_app(runtime)) as test_client:
        headers = _login(test_client, "guardian@medassist.com", "123456")
        assert [s["medicine_name"] for s in test_client.get("/schedules", headers=headers).json()] == ["Paracetamol"]

    with TestClient(create_app(runtime)) as test_client:
        headers = _login(test_client, "patient@medassist.com", "123456")
        assert len(test_client.get("/schedules", headers=headers).json()) == 1
