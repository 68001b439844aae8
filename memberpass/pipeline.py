from __future__ import annotations

import logging
from typing import Optional

from pydantic import BaseModel

from .access import AccessOutcome, decide, log_status, outcome_message
from .codes import normalize_code
from .models import PartnerIdentity
from .resolver import MemberResolver
from .validation_log import ValidationLogger

logger = logging.getLogger(__name__)
diagnostics = logging.getLogger("memberpass.diagnostics")


class ClientSummary(BaseModel):
    id: str
    name: str
    email: str
    member_code: Optional[str] = None
    avatar: Optional[str] = None


class ValidationResult(BaseModel):
    outcome: AccessOutcome
    code: str
    message: str
    client: Optional[ClientSummary] = None


class ValidationPipeline:
    """normalize -> resolve -> decide -> log"""

    def __init__(self, resolver: MemberResolver, validation_logger: ValidationLogger):
        self.resolver = resolver
        self.validation_logger = validation_logger

    async def validate(self, raw: str, partner: PartnerIdentity) -> ValidationResult:
        code = normalize_code(raw)
        client = await self.resolver.resolve(code, token=partner.access_token)
        outcome = decide(client)

        summary = None
        if client is not None:
            summary = ClientSummary(
                id=client.id,
                name=client.name,
                email=client.email,
                member_code=client.member_code,
                avatar=client.avatar,
            )
            status = log_status(outcome)
            if partner.company_id and status:
                self.validation_logger.record(partner.company_id, client.id, status, partner)
            else:
                logger.info("Partner %s has no company, validation not logged", partner.user_id)
        else:
            # Not persisted: the log store keys entries by client id
            diagnostics.info(
                "Unknown code %r submitted by %s (company %s)",
                code, partner.user_id, partner.company_id,
            )

        logger.info("Validation of %r by %s: %s", code, partner.user_id, outcome.value)
        return ValidationResult(
            outcome=outcome,
            code=code,
            message=outcome_message(outcome),
            client=summary,
        )
