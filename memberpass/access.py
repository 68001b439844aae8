from __future__ import annotations

from enum import Enum

from .models import Client, LogStatus


class AccessOutcome(str, Enum):
    GRANTED = "granted"
    DENIED = "denied"
    UNKNOWN = "unknown"


_MESSAGES = {
    AccessOutcome.GRANTED: "Access granted. The client has an active subscription.",
    AccessOutcome.DENIED: "Access denied. This client's subscription is inactive.",
    AccessOutcome.UNKNOWN: "Code invalid or not found.",
}


def decide(client: Client | None) -> AccessOutcome:
    if client is None:
        return AccessOutcome.UNKNOWN
    return AccessOutcome.GRANTED if client.is_active else AccessOutcome.DENIED


def log_status(outcome: AccessOutcome) -> LogStatus | None:
    """Status to record for an outcome; None when nothing is logged."""
    if outcome is AccessOutcome.GRANTED:
        return "success"
    if outcome is AccessOutcome.DENIED:
        return "rejected"
    return None


def outcome_message(outcome: AccessOutcome) -> str:
    return _MESSAGES[outcome]
