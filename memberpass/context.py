from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import timezone, tzinfo
from zoneinfo import ZoneInfo

from .backend import BackendClient
from .config import Settings, get_settings
from .models import PartnerIdentity
from .pipeline import ValidationPipeline, ValidationResult
from .resolver import ClientDetailCache, MemberResolver
from .scanner import Decoder, DeviceOpener, ScanSession, ScanState, decode_qr, opencv_opener
from .validation_log import ValidationLogger

logger = logging.getLogger(__name__)


def _zone(name: str) -> tzinfo:
    if name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


class ScannerBusy(Exception):
    """The camera is in use by a scan another user started."""


class ScanTerminal:
    """
    The one camera scan session of this validator, wired to the pipeline.

    A scan belongs to the user who started it. Until it finishes, other
    users can watch its state but can neither cancel it nor read its result.
    """

    def __init__(self, session: ScanSession, pipeline: ValidationPipeline, fps: float):
        self.session = session
        self.pipeline = pipeline
        self.fps = fps
        self.last_result: ValidationResult | None = None
        self.owner: PartnerIdentity | None = None
        self._task: asyncio.Task | None = None

    @property
    def busy(self) -> bool:
        return self._task is not None and not self._task.done()

    def owned_by(self, partner: PartnerIdentity) -> bool:
        return self.owner is not None and self.owner.user_id == partner.user_id

    def result_for(self, partner: PartnerIdentity) -> ValidationResult | None:
        return self.last_result if self.owned_by(partner) else None

    async def start(self, partner: PartnerIdentity) -> ScanState:
        if self.busy:
            if not self.owned_by(partner):
                raise ScannerBusy(f"Scanner in use by {self.owner.user_id}")
            return self.session.state
        self.owner = partner
        self.last_result = None
        self._task = asyncio.create_task(self._scan())
        # One loop turn puts the session in requesting-camera
        await asyncio.sleep(0)
        return self.session.state

    async def _scan(self) -> None:
        try:
            if await self.session.start() is ScanState.SCANNING:
                await self.session.run(self._on_decoded, self.fps)
        except Exception:
            logger.exception("Scan for %s failed", self.owner.user_id)
            self.session.cancel()

    async def _on_decoded(self, text: str) -> None:
        self.last_result = await self.pipeline.validate(text, self.owner)

    def cancel(self, partner: PartnerIdentity) -> None:
        if self.busy and not self.owned_by(partner):
            raise ScannerBusy(f"Scanner in use by {self.owner.user_id}")
        # The scan task exits by itself once the session leaves `scanning`
        self.session.cancel()

    async def close(self, timeout: float = 5.0) -> None:
        self.session.close()
        task, self._task = self._task, None
        if task is None or task.done():
            return
        done, _ = await asyncio.wait({task}, timeout=timeout)
        if not done:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task


class AppContext:
    """
    Everything a request needs, created once per process.

    Replaces module-level singletons: the FastAPI lifespan calls init() on
    startup and teardown() on shutdown, and endpoints receive the context
    through a dependency. Tests build their own with fake collaborators.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        backend: BackendClient | None = None,
        open_device: DeviceOpener | None = None,
        decoder: Decoder = decode_qr,
    ):
        self.settings = settings or get_settings()
        self._backend = backend
        self._open_device = open_device
        self._decoder = decoder

        self.backend: BackendClient | None = None
        self.resolver: MemberResolver | None = None
        self.validation_logger: ValidationLogger | None = None
        self.pipeline: ValidationPipeline | None = None
        self.scanner: ScanTerminal | None = None

    @property
    def ready(self) -> bool:
        return self.pipeline is not None

    async def init(self) -> None:
        settings = self.settings
        tz = _zone(settings.timezone)

        self.backend = self._backend or BackendClient(settings)
        self.resolver = MemberResolver(
            self.backend, ClientDetailCache(ttl=settings.client_cache_ttl)
        )
        self.validation_logger = ValidationLogger(
            self.backend, page_size=settings.history_page_size, tz=tz
        )
        self.pipeline = ValidationPipeline(self.resolver, self.validation_logger)

        open_device = self._open_device or opencv_opener(
            settings.camera_rear_index, settings.camera_front_index
        )
        self.scanner = ScanTerminal(
            ScanSession(open_device, self._decoder), self.pipeline, settings.scan_fps
        )
        logger.info("Validator ready, backend %s", settings.backend_url)

    async def teardown(self) -> None:
        if self.scanner is not None:
            await self.scanner.close()
        if self.validation_logger is not None:
            await self.validation_logger.drain()
            if self.validation_logger.failures:
                logger.warning(
                    "%d validation log writes were lost", self.validation_logger.failures
                )
        if self.backend is not None:
            await self.backend.close()

        self.scanner = None
        self.pipeline = None
        self.validation_logger = None
        self.resolver = None
        self.backend = None
