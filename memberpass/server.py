from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from .backend import BackendError
from .codes import format_as_typed, qr_image_url, qr_payload
from .context import AppContext, ScannerBusy
from .migration import migrate_member_codes
from .models import PartnerIdentity, Role
from .pipeline import ValidationResult
from .validation_log import HistoryPage, HistoryQuery, HistoryWindow

router = APIRouter()


def create_app(context: AppContext | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ctx = context or AppContext()
        logging.basicConfig(level=ctx.settings.log_level.upper())
        await ctx.init()
        app.state.context = ctx
        yield
        await ctx.teardown()

    app = FastAPI(title="Member Pass Validator", lifespan=lifespan)

    # CORS: localhost dev ports + LAN IPs
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:5173",
            "http://localhost:4173",
            "http://localhost:3000",
            "http://127.0.0.1:5173",
            "http://127.0.0.1:4173",
        ],
        allow_origin_regex=r"^https?://192\.168\.\d+\.\d+:\d+$",
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router)
    return app


# --- Dependencies ---


def get_context(request: Request) -> AppContext:
    return request.app.state.context


def get_identity(
    authorization: Optional[str] = Header(default=None),
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
    x_company_id: Optional[str] = Header(default=None),
) -> PartnerIdentity:
    """Identity asserted by the auth gateway in front of this service."""
    if not x_user_id or x_user_role not in ("admin", "company", "client"):
        raise HTTPException(status_code=401, detail="Not authenticated")
    token = None
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization[7:].strip() or None
    return PartnerIdentity(
        user_id=x_user_id,
        role=x_user_role,
        company_id=x_company_id or None,
        access_token=token,
    )


def require_role(*roles: Role):
    def check(identity: PartnerIdentity = Depends(get_identity)) -> PartnerIdentity:
        if identity.role not in roles:
            raise HTTPException(status_code=403, detail="Not allowed for this role")
        return identity

    return check


# --- Models ---


class ValidateRequest(BaseModel):
    code: str


class ScanStatus(BaseModel):
    state: str
    error: Optional[str] = None
    error_message: Optional[str] = None
    result: Optional[ValidationResult] = None


class MigrationResponse(BaseModel):
    success: bool
    updated: int
    skipped: int
    failed: int


# --- Health ---


@router.get("/health")
async def health(ctx: AppContext = Depends(get_context)):
    return {"status": "ok" if ctx.ready else "starting"}


# --- Validation ---


@router.post("/validate", response_model=ValidationResult)
async def validate(
    request: ValidateRequest,
    ctx: AppContext = Depends(get_context),
    partner: PartnerIdentity = Depends(require_role("company")),
):
    """Validate a typed or pasted member code."""
    return await ctx.pipeline.validate(request.code, partner)


@router.get("/codes/format")
async def format_code(value: str = ""):
    """Format partial keyboard input as DDD-DDDD-DD."""
    return {"value": format_as_typed(value)}


# --- Scanning ---


def _scan_status(ctx: AppContext, partner: PartnerIdentity) -> ScanStatus:
    session = ctx.scanner.session
    return ScanStatus(
        state=session.state.value,
        error=session.error_reason.value if session.error_reason else None,
        error_message=session.error_message,
        result=ctx.scanner.result_for(partner),
    )


@router.get("/scan", response_model=ScanStatus)
async def scan_status(
    ctx: AppContext = Depends(get_context),
    partner: PartnerIdentity = Depends(require_role("company")),
):
    return _scan_status(ctx, partner)


@router.post("/scan/start", response_model=ScanStatus)
async def scan_start(
    ctx: AppContext = Depends(get_context),
    partner: PartnerIdentity = Depends(require_role("company")),
):
    try:
        await ctx.scanner.start(partner)
    except ScannerBusy as e:
        raise HTTPException(status_code=409, detail=str(e))
    return _scan_status(ctx, partner)


@router.post("/scan/cancel", response_model=ScanStatus)
async def scan_cancel(
    ctx: AppContext = Depends(get_context),
    partner: PartnerIdentity = Depends(require_role("company")),
):
    try:
        ctx.scanner.cancel(partner)
    except ScannerBusy as e:
        raise HTTPException(status_code=409, detail=str(e))
    return _scan_status(ctx, partner)


# --- History ---


@router.get("/history", response_model=HistoryPage)
async def history(
    search: str = "",
    window: HistoryWindow = "all",
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    page: int = Query(default=1, ge=1),
    ctx: AppContext = Depends(get_context),
    partner: PartnerIdentity = Depends(require_role("company")),
):
    """Visit history of the partner's company."""
    if not partner.company_id:
        raise HTTPException(status_code=400, detail="No company linked to this user")
    query = HistoryQuery(
        search=search,
        window=window,
        start_date=start_date,
        end_date=end_date,
        page=page,
    )
    try:
        return await ctx.validation_logger.history(
            partner.company_id, query, token=partner.access_token
        )
    except BackendError as e:
        raise HTTPException(status_code=502, detail=f"Backend error: {e}")


# --- Clients ---


@router.get("/clients/{client_id}")
async def get_client(
    client_id: str,
    ctx: AppContext = Depends(get_context),
    partner: PartnerIdentity = Depends(require_role("company", "admin")),
):
    """Client details, cached for a few minutes."""
    client = await ctx.resolver.get_client(client_id, token=partner.access_token)
    if client is None:
        raise HTTPException(status_code=404, detail="Client not found")
    return {"client": client}


@router.get("/clients/{client_id}/card")
async def client_card(
    client_id: str,
    size: int = Query(default=300, ge=50, le=1000),
    ctx: AppContext = Depends(get_context),
    identity: PartnerIdentity = Depends(get_identity),
):
    """QR payload and image URL for a client's membership card."""
    if identity.role == "client" and identity.user_id != client_id:
        raise HTTPException(status_code=403, detail="Not your card")
    client = await ctx.resolver.get_client(client_id, token=identity.access_token)
    if client is None:
        raise HTTPException(status_code=404, detail="Client not found")
    payload = qr_payload(client.id, client.member_code)
    return {
        "payload": payload,
        "qr_url": qr_image_url(ctx.settings.qr_service_url, payload, size),
        "member_code": client.member_code,
        "is_active": client.is_active,
    }


# --- Admin ---


@router.post("/admin/migrate-codes", response_model=MigrationResponse)
async def migrate_codes(
    ctx: AppContext = Depends(get_context),
    admin: PartnerIdentity = Depends(require_role("admin")),
):
    """Reissue legacy member codes in the DDD-DDDD-DD format."""
    try:
        result = await migrate_member_codes(ctx.backend, token=admin.access_token)
    except BackendError as e:
        raise HTTPException(status_code=502, detail=f"Migration failed: {e}")
    return MigrationResponse(
        success=True,
        updated=result.updated,
        skipped=result.skipped,
        failed=result.failed,
    )


app = create_app()
