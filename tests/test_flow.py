import pytest

from conftest import CARETAKER_PHONE, PATIENT_EMAIL, ist
from medassist import AuthorizationError, ScheduleNotFound
from shared.contracts.enums import DoseStatus, EventType, Role, SkipReason

DAY = "2026-03-02"


def test_taken_after_escalation_overrides_log_and_notifies_caretaker(runtime, schedule, patient, frozen, gateway):
    frozen.set(ist(8, 20))
    runtime.flow.run_sweep_once()

    frozen.set(ist(8, 32))
    response = runtime.flow.on_dose_taken(schedule.id, patient)

    assert response.log.status == DoseStatus.TAKEN
    assert response.log.taken_at == ist(8, 32)
    assert response.log.escalated_at is None
    assert response.log.caretaker_called_at is None
    assert response.notify_result.sent
    assert response.notify_result.item.event_type == EventType.TAKEN_CARETAKER
    assert gateway.sms()[-1].to == CARETAKER_PHONE
    assert gateway.sms()[-1].body == f"Update: {PATIENT_EMAIL} marked Metformin as taken at 08:32 AM."


def test_repeated_taken_is_deduplicated(runtime, schedule, patient, frozen, gateway):
    frozen.set(ist(8, 5))
    runtime.flow.on_dose_taken(schedule.id, patient)
    frozen.set(ist(8, 6))

    again = runtime.flow.on_dose_taken(schedule.id, patient)

    assert again.log.taken_at == ist(8, 6)
    assert again.notify_result.reason == SkipReason.ALREADY_SENT
    assert len(gateway.sms()) == 1


def test_only_the_schedule_patient_can_mark_taken(runtime, schedule, guardian, frozen):
    other = runtime.auth.register_user(
        name="Meera", email="meera@example.com", password="other-pass", role=Role.PATIENT
    )

    with pytest.raises(AuthorizationError):
        runtime.flow.on_dose_taken(schedule.id, guardian)
    with pytest.raises(AuthorizationError):
        runtime.flow.on_dose_taken(schedule.id, other)

    assert runtime.dose_logs.get(schedule.id, DAY) is None
    assert runtime.notifications.count() == 0


def test_unknown_schedule_is_not_found(runtime, patient, guardian):
    with pytest.raises(ScheduleNotFound):
        runtime.flow.on_dose_taken("missing", patient)
    with pytest.raises(ScheduleNotFound):
        runtime.flow.on_escalate_requested("missing", guardian)


def test_escalate_now_calls_again_after_sweep_call(runtime, schedule, guardian, frozen, gateway):
    frozen.set(ist(8, 20))
    runtime.flow.run_sweep_once()
    frozen.set(ist(8, 40))

    response = runtime.flow.on_escalate_requested(schedule.id, guardian)

    assert len(gateway.calls()) == 2
    assert response.call_result.ok
    assert response.log.escalated_at == ist(8, 20)
    assert response.log.caretaker_called_at == ist(8, 40)
    assert [result.reason for result in response.notify_results] == [SkipReason.ALREADY_SENT] * 2


def test_escalate_now_before_due_time_still_escalates(runtime, schedule, patient, frozen, gateway):
    frozen.set(ist(7, 30))

    response = runtime.flow.on_escalate_requested(schedule.id, patient)

    assert response.log.status == DoseStatus.ESCALATED
    assert response.log.escalated_at == ist(7, 30)
    assert len(gateway.calls()) == 1
    assert all(result.sent for result in response.notify_results)
    assert gateway.sms()[0].body == (
        "Missed alert: Metformin (500 mg) at 08:00 AM is overdue by 15+ minutes. Please take it now."
    )


def test_escalate_now_on_taken_day_does_nothing(runtime, schedule, patient, guardian, frozen, gateway):
    frozen.set(ist(8, 5))
    runtime.flow.on_dose_taken(schedule.id, patient)
    sent_before = len(gateway.sent)

    response = runtime.flow.on_escalate_requested(schedule.id, guardian)

    assert response.log.status == DoseStatus.TAKEN
    assert response.call_result is None
    assert response.notify_results == []
    assert len(gateway.sent) == sent_before


def test_other_guardian_cannot_escalate(runtime, schedule):
    stranger = runtime.auth.register_user(
        name="Kiran", email="kiran@example.com", password="stranger-pass", role=Role.GUARDIAN
    )

    with pytest.raises(AuthorizationError):
        runtime.flow.on_escalate_requested(schedule.id, stranger)

    assert runtime.dose_logs.get(schedule.id, DAY) is None
