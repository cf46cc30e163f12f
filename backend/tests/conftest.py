from __future__ import annotations

import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient


# Ensure `peerline` imports work regardless of current working directory.
ROOT = Path(__file__).resolve().parents[1]
BACKEND_PATH = ROOT
if str(BACKEND_PATH) not in sys.path:
    sys.path.insert(0, str(BACKEND_PATH))

from peerline.core.config import settings
from peerline.main import create_app
from peerline.services.media import MediaAcquisition
from peerline.services.orchestrator import CallOrchestrator
from peerline.services.session_store import InMemoryCallStore
from peerline.services.ws_manager import ConnectionManager
from tests.fakes.fake_clients import FakeCapture, fake_engine_factory


@pytest.fixture(autouse=True)
def data_root(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    root = tmp_path / "data"
    monkeypatch.setattr(settings, "DATA_ROOT", root)
    return root


@pytest.fixture()
def store() -> InMemoryCallStore:
    return InMemoryCallStore()


@pytest.fixture()
def capture() -> FakeCapture:
    return FakeCapture()


@pytest.fixture()
def app(store: InMemoryCallStore, capture: FakeCapture, data_root: Path):
    ws_manager = ConnectionManager()
    orchestrator = CallOrchestrator(
        store,
        self_id="alice",
        media=MediaAcquisition(capture=capture),
        ws_manager=ws_manager,
        directory={"bob": "Bob Builder", "alice": "Alice"}.get,
        engine_factory=fake_engine_factory(),
        poll_interval=60,
        incoming_interval=60,
    )
    return create_app(
        store=store,
        orchestrator=orchestrator,
        ws_manager=ws_manager,
        data_root=data_root,
        start_background=False,
    )


@pytest.fixture()
def client(app):
    with TestClient(app) as test_client:
        yield test_client
