from __future__ import annotations

"""
Domain records and their mapping from backend rows.

Rows come back from the backend as loosely-typed JSON dicts with snake_case
column names. Every row is parsed into a domain model here, so the rest of
the package never sees a raw dict.
"""

from datetime import date, datetime, timezone
from typing import Any, Literal, Optional

from pydantic import BaseModel, ValidationError

Role = Literal["admin", "company", "client"]
LogStatus = Literal["success", "rejected"]


class RecordError(ValueError):
    """A backend row could not be parsed into a domain record."""


class Client(BaseModel):
    id: str
    name: str
    email: str = ""
    is_active: bool
    member_code: Optional[str] = None
    phone: Optional[str] = None
    birth_date: Optional[date] = None
    avatar: Optional[str] = None


class ValidationLogEntry(BaseModel):
    id: str
    company_id: str
    company_name: str = ""
    client_id: str
    client_name: str = ""
    status: LogStatus
    timestamp: datetime
    validated_by: Optional[str] = None


class PartnerIdentity(BaseModel):
    """The acting user, as asserted by the auth gateway."""

    user_id: str
    role: Role
    company_id: Optional[str] = None
    access_token: Optional[str] = None


def _as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def client_from_row(row: dict[str, Any]) -> Client:
    """Parse a `profiles` row into a Client."""
    try:
        return Client(
            id=str(row["id"]),
            name=row.get("name") or "",
            email=row.get("email") or "",
            is_active=row["is_active"],
            member_code=row.get("member_code"),
            phone=row.get("phone") or None,
            birth_date=row.get("birth_date") or None,
            avatar=row.get("avatar") or None,
        )
    except (KeyError, TypeError, ValidationError) as e:
        raise RecordError(f"Malformed profile row: {e}") from e


def entry_from_row(row: dict[str, Any]) -> ValidationLogEntry:
    """Parse a `validation_logs_enriched` row into a ValidationLogEntry."""
    try:
        entry = ValidationLogEntry(
            id=str(row["id"]),
            company_id=str(row["company_id"]),
            company_name=row.get("company_name") or "",
            client_id=str(row["client_id"]),
            client_name=row.get("client_name") or "",
            status=row["status"],
            timestamp=row["created_at"],
            validated_by=row.get("validated_by"),
        )
    except (KeyError, TypeError, ValidationError) as e:
        raise RecordError(f"Malformed validation log row: {e}") from e
    entry.timestamp = _as_utc(entry.timestamp)
    return entry


def log_row(company_id: str, client_id: str, status: LogStatus, validated_by: str) -> dict:
    """Build the insert payload for `validation_logs`."""
    return {
        "company_id": company_id,
        "client_id": client_id,
        "status": status,
        "validated_by": validated_by,
    }
