import pytest

from notifyctl.db import init_db, connect_db
from notifyctl.delivery import DeliveryResult


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in ("DEFAULT_COUNTRY_CODE", "WHATSAPP_TEMPLATE_NAME"):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def db_file(tmp_path):
    path = str(tmp_path / "notify.db")
    init_db(path)
    return path


@pytest.fixture
def conn(db_file):
    c = connect_db(db_file)
    yield c
    c.close()


class FakeDelivery:
    """Records calls; fails for recipients listed in `failing`."""

    def __init__(self, failing=()):
        self.failing = set(failing)
        self.calls = []

    def __call__(self, recipient, display_name):
        self.calls.append((recipient, display_name))
        if recipient in self.failing:
            return DeliveryResult.failure("HTTP 400: invalid recipient")
        return DeliveryResult.success({"messages": [{"id": f"wamid.{len(self.calls)}"}]})


@pytest.fixture
def fake_delivery():
    return FakeDelivery()
