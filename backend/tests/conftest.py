from __future__ import annotations

import pytest

from backend.tests.fakes import CheckoutHarness, build_harness


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def harness() -> CheckoutHarness:
    return build_harness()
