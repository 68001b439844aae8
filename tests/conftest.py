from __future__ import annotations

import pytest

from fakes import FakeBackend, make_client
from memberpass.models import PartnerIdentity


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def backend():
    return FakeBackend(
        [
            make_client("client1", "John Doe", "123-4567-89", active=True),
            make_client("client2", "Jane Smith", "987-6543-21", active=False),
        ]
    )


@pytest.fixture
def partner():
    return PartnerIdentity(
        user_id="comp1", role="company", company_id="c1", access_token="tok"
    )
