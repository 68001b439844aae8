import time
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from fakes import FakeBackend, make_client
from memberpass.config import Settings
from memberpass.context import AppContext
from memberpass.models import ValidationLogEntry
from memberpass.scanner import Facing, NoCameraFound
from memberpass.server import create_app

COMPANY = {"X-User-Id": "comp1", "X-User-Role": "company", "X-Company-Id": "c1", "Authorization": "Bearer tok"}
OTHER_COMPANY = {"X-User-Id": "comp2", "X-User-Role": "company", "X-Company-Id": "c2", "Authorization": "Bearer tok2"}
ADMIN = {"X-User-Id": "admin1", "X-User-Role": "admin"}
CLIENT = {"X-User-Id": "client1", "X-User-Role": "client"}


class Camera:
    def __init__(self, frames):
        self.frames = list(frames)
        self.released = False

    def read(self):
        return self.frames.pop(0) if self.frames else None

    def release(self):
        self.released = True


@pytest.fixture
def fake_backend():
    return FakeBackend(
        [
            make_client("client1", "John Doe", "123-4567-89", active=True),
            make_client("client2", "Jane Smith", "987-6543-21", active=False),
            make_client("client3", "Legacy Larry", "PASS-8821-X", active=True),
        ]
    )


def make_context(backend, open_device=None):
    settings = Settings(scan_fps=1000.0, history_page_size=20)
    return AppContext(
        settings,
        backend=backend,
        open_device=open_device or (lambda facing: Camera(["qr:" + '{"id":"client1","code":"123-4567-89"}'])),
        decoder=lambda frame: frame[3:] if frame and frame.startswith("qr:") else None,
    )


@pytest.fixture
def api(fake_backend):
    with TestClient(create_app(make_context(fake_backend))) as client:
        yield client


def test_health(api):
    assert api.get("/health").json() == {"status": "ok"}


def test_validate_granted(api, fake_backend):
    response = api.post("/validate", json={"code": "123 456 789"}, headers=COMPANY)
    assert response.status_code == 200
    body = response.json()
    assert body["outcome"] == "granted"
    assert body["code"] == "123-4567-89"
    assert body["client"]["name"] == "John Doe"


def test_validate_denied_and_unknown_are_distinct(api):
    denied = api.post("/validate", json={"code": "987654321"}, headers=COMPANY).json()
    unknown = api.post("/validate", json={"code": "111111111"}, headers=COMPANY).json()
    assert denied["outcome"] == "denied"
    assert unknown["outcome"] == "unknown"
    assert denied["message"] != unknown["message"]
    assert unknown["client"] is None


def test_validate_requires_company_role(api):
    assert api.post("/validate", json={"code": "123456789"}).status_code == 401
    assert api.post("/validate", json={"code": "123456789"}, headers=CLIENT).status_code == 403


def test_format_code(api):
    assert api.get("/codes/format", params={"value": "1234a5"}).json() == {"value": "123-45"}


def test_validations_show_up_in_history(api, fake_backend):
    api.post("/validate", json={"code": "123456789"}, headers=COMPANY)
    api.post("/validate", json={"code": "987-6543-21"}, headers=COMPANY)
    api.post("/validate", json={"code": "000000000"}, headers=COMPANY)

    # Log writes land asynchronously
    deadline = time.monotonic() + 2
    while len(fake_backend.logs) < 2 and time.monotonic() < deadline:
        time.sleep(0.01)

    page = api.get("/history", headers=COMPANY).json()
    assert page["total"] == 2
    assert {e["status"] for e in page["items"]} == {"success", "rejected"}

    page = api.get("/history", params={"search": "jane", "window": "7"}, headers=COMPANY).json()
    assert [e["client_name"] for e in page["items"]] == ["Jane Smith"]


def test_history_window_and_pages(api, fake_backend):
    now = datetime.now(timezone.utc)
    fake_backend.logs = [
        ValidationLogEntry(
            id=f"l{i}",
            company_id="c1",
            client_id="client1",
            client_name="John Doe",
            status="success",
            timestamp=now - timedelta(hours=12 * i, minutes=1),
        )
        for i in range(80)
    ]
    page = api.get("/history", params={"window": "30", "page": 2}, headers=COMPANY).json()
    assert page["total"] == 60
    assert page["total_pages"] == 3
    assert page["page"] == 2
    assert len(page["items"]) == 20


def test_history_rejects_bad_window(api):
    assert api.get("/history", params={"window": "9"}, headers=COMPANY).status_code == 422


def test_client_detail_and_card(api):
    detail = api.get("/clients/client1", headers=COMPANY)
    assert detail.json()["client"]["member_code"] == "123-4567-89"
    assert api.get("/clients/nobody", headers=COMPANY).status_code == 404

    card = api.get("/clients/client1/card", headers=CLIENT).json()
    assert card["payload"] == '{"id":"client1","code":"123-4567-89"}'
    assert card["qr_url"].startswith("https://api.qrserver.com/v1/create-qr-code/?")
    assert api.get("/clients/client2/card", headers=CLIENT).status_code == 403


def test_migration_endpoint(api, fake_backend):
    assert api.post("/admin/migrate-codes", headers=COMPANY).status_code == 403

    first = api.post("/admin/migrate-codes", headers=ADMIN).json()
    assert first == {"success": True, "updated": 1, "skipped": 2, "failed": 0}
    second = api.post("/admin/migrate-codes", headers=ADMIN).json()
    assert second["updated"] == 0


def wait_for_scan(api, headers, done):
    deadline = time.monotonic() + 2
    status = api.get("/scan", headers=headers).json()
    while not done(status) and time.monotonic() < deadline:
        time.sleep(0.01)
        status = api.get("/scan", headers=headers).json()
    return status


def test_scan_start_decodes_and_validates(api):
    started = api.post("/scan/start", headers=COMPANY).json()
    assert started["state"] in ("requesting-camera", "scanning", "idle")

    status = wait_for_scan(api, COMPANY, lambda s: s["result"] is not None)
    assert status["state"] == "idle"
    assert status["result"]["outcome"] == "granted"
    assert status["result"]["client"]["id"] == "client1"


def test_scan_camera_error_and_cancel(fake_backend):
    def no_cameras(facing: Facing):
        raise NoCameraFound(facing.value)

    with TestClient(create_app(make_context(fake_backend, open_device=no_cameras))) as api:
        api.post("/scan/start", headers=COMPANY)
        status = wait_for_scan(api, COMPANY, lambda s: s["state"] == "error")
        assert status["state"] == "error"
        assert status["error"] == "no-camera"
        assert status["error_message"]

        status = api.post("/scan/cancel", headers=COMPANY).json()
        assert status == {"state": "idle", "error": None, "error_message": None, "result": None}


def test_scan_belongs_to_the_user_who_started_it(fake_backend):
    blank = make_context(fake_backend, open_device=lambda facing: Camera([]))
    with TestClient(create_app(blank)) as api:
        api.post("/scan/start", headers=COMPANY)
        wait_for_scan(api, COMPANY, lambda s: s["state"] == "scanning")

        assert api.post("/scan/start", headers=OTHER_COMPANY).status_code == 409
        assert api.post("/scan/cancel", headers=OTHER_COMPANY).status_code == 409
        assert api.get("/scan", headers=OTHER_COMPANY).json()["state"] == "scanning"

        assert api.post("/scan/cancel", headers=COMPANY).json()["state"] == "idle"
        status = wait_for_scan(api, OTHER_COMPANY, lambda s: s["state"] == "idle")
        assert status["state"] == "idle"


def test_scan_result_is_only_shown_to_its_owner(api):
    api.post("/scan/start", headers=COMPANY)
    status = wait_for_scan(api, COMPANY, lambda s: s["result"] is not None)
    assert status["result"]["client"]["name"] == "John Doe"

    other = api.get("/scan", headers=OTHER_COMPANY).json()
    assert other["state"] == "idle"
    assert other["result"] is None


def test_shutdown_closes_backend(fake_backend):
    with TestClient(create_app(make_context(fake_backend))):
        pass
    assert fake_backend.closed
