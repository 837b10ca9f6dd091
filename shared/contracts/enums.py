from enum import Enum


class Role(str, Enum):
    GUARDIAN = "guardian"
    PATIENT = "patient"


class DoseStatus(str, Enum):
    TAKEN = "taken"
    ESCALATED = "escalated"


class RecipientRole(str, Enum):
    PATIENT = "patient"
    CARETAKER = "caretaker"


class EventType(str, Enum):
    DUE_PATIENT = "due_patient"
    DUE_CARETAKER = "due_caretaker"
    MISSED_PATIENT = "missed_patient"
    MISSED_CARETAKER = "missed_caretaker"
    TAKEN_CARETAKER = "taken_caretaker"


class SweepAction(str, Enum):
    SKIPPED_TAKEN = "skipped_taken"
    UPCOMING = "upcoming"
    DUE = "due"
    MISSED = "missed"


class SkipReason(str, Enum):
    MISSING_PHONE = "missing_phone"
    ALREADY_SENT = "already_sent"


class DeliveryStatus(str, Enum):
    QUEUED = "queued"
    FAILED = "failed"
    TIMEOUT = "timeout"
    MISSING_CONFIG = "missing_config"
    MISSING_PHONE = "missing_phone"
