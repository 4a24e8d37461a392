from typing import Any

import pytest

from src.api.config import Settings
from src.api.db import RoomStore, create_db_engine, init_db
from src.api.session import ConnectionContext, RoomSessionEngine
from src.api.ws_manager import ConnectionRegistry, RoomBroadcaster


class FakeChannel:
    """Records what the server sends; can be closed or made to fail."""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.open = True
        self.fail = False

    @property
    def is_open(self) -> bool:
        return self.open

    async def send(self, payload: Any) -> None:
        if self.fail:
            raise RuntimeError("socket went away")
        self.sent.append(payload)

    def types(self) -> list[str]:
        return [m["type"] for m in self.sent]

    def last(self) -> dict[str, Any]:
        return self.sent[-1]


@pytest.fixture
def db_engine(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'rooms.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(db_engine):
    return RoomStore(db_engine)


@pytest.fixture
def settings():
    return Settings(store_timeout_seconds=5.0)


@pytest.fixture
def registry():
    return ConnectionRegistry()


@pytest.fixture
def engine(store, registry, settings):
    return RoomSessionEngine(store, registry, RoomBroadcaster(registry), settings)


@pytest.fixture
def connect():
    def _connect() -> ConnectionContext:
        return ConnectionContext(channel=FakeChannel())

    return _connect
