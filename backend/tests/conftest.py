import os
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest
import sentry_sdk
from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Disable outbound Sentry calls during tests
sentry_sdk.init = lambda *args, **kwargs: None  # type: ignore[assignment]
os.environ["SENTRY_DSN"] = ""
test_data_dir = ROOT / "artifacts" / "test-data"
test_data_dir.mkdir(parents=True, exist_ok=True)
os.environ["DATA_DIR"] = str(test_data_dir)
os.environ["MERCADO_PAGO_ACCESS_TOKEN"] = ""
os.environ["MP_WEBHOOK_SECRET"] = ""
os.environ["PRINT_WEBHOOK_URL"] = ""

from backend.pix_checkout.main import create_app  # noqa: E402
from backend.pix_checkout.settings import Settings  # noqa: E402
from backend.pix_checkout.storage import ChargeStore  # noqa: E402
from backend.tests.factories import (  # noqa: E402
    PRINT_URL,
    WEBHOOK_SECRET,
    FakeProvider,
    PrintSinkRecorder,
)


@pytest.fixture
def make_settings(tmp_path) -> Callable[..., Settings]:
    def _make(**overrides: Any) -> Settings:
        values: dict[str, Any] = {
            "DATA_DIR": tmp_path,
            "MERCADO_PAGO_ACCESS_TOKEN": "",
            "RATE_LIMIT_ENABLED": False,
            "SENTRY_DSN": None,
            "MP_WEBHOOK_SECRET": None,
            "PRINT_WEBHOOK_URL": None,
        }
        values.update(overrides)
        return Settings(_env_file=None, **values)

    return _make


@pytest.fixture
def store(tmp_path) -> ChargeStore:
    return ChargeStore(tmp_path / "charges.json")


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def print_sink() -> PrintSinkRecorder:
    return PrintSinkRecorder()


@pytest.fixture
def simulated_client(make_settings, store):
    """App with no credential: every charge is simulated."""
    app = create_app(make_settings(), store=store)
    with TestClient(app) as client:
        yield client


@pytest.fixture
def live_client(make_settings, store, provider, print_sink):
    """App wired to FakeProvider, a signed webhook and a recording print sink."""
    config = make_settings(
        MERCADO_PAGO_ACCESS_TOKEN="APP_USR-1234567890-live",
        MP_WEBHOOK_SECRET=WEBHOOK_SECRET,
        PRINT_WEBHOOK_URL=PRINT_URL,
    )
    app = create_app(
        config,
        gateway=provider,
        store=store,
        printer=print_sink.forwarder(),
    )
    with TestClient(app) as client:
        yield client
