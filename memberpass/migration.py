from __future__ import annotations

import logging
import random
from dataclasses import dataclass

from .backend import BackendClient, BackendError
from .codes import generate_code, is_canonical

logger = logging.getLogger(__name__)


@dataclass
class MigrationResult:
    updated: int = 0
    skipped: int = 0
    failed: int = 0


async def migrate_member_codes(
    backend: BackendClient,
    rng: random.Random | None = None,
    token: str | None = None,
) -> MigrationResult:
    """
    Reissue every non-canonical member code in the canonical format.

    New codes are checked against every code currently stored plus every
    code issued earlier in this run, so the result never contains a
    duplicate, even when legacy codes were duplicated. Records already in
    canonical form are left alone, which makes re-running safe. Updates are
    applied one by one; a failed update is logged and the batch goes on.
    """
    rng = rng or random.Random()
    assignments = await backend.list_member_codes(token=token)
    used = {code for _, code in assignments}
    result = MigrationResult()

    logger.info("Starting member code migration over %d clients", len(assignments))
    for client_id, old_code in assignments:
        if is_canonical(old_code):
            result.skipped += 1
            continue

        new_code = generate_code(rng)
        while new_code in used:
            new_code = generate_code(rng)
        used.add(new_code)

        try:
            await backend.update_member_code(client_id, new_code, token=token)
        except BackendError as e:
            result.failed += 1
            logger.error("Failed to migrate code of client %s: %s", client_id, e)
            continue
        result.updated += 1
        logger.info("Migrated %s -> %s for client %s", old_code, new_code, client_id)

    logger.info(
        "Member code migration done: %d updated, %d already canonical, %d failed",
        result.updated, result.skipped, result.failed,
    )
    return result
