import sys
from pathlib import Path

import pytest
from sqlmodel import SQLModel, create_engine

# Ensure project root on path
sys.path.append(str(Path(__file__).resolve().parents[1]))

from choreweek.storage import KeyValueStore


@pytest.fixture(autouse=True)
def app_environment(monkeypatch):
    monkeypatch.setenv("CHOREWEEK_SECRET_KEY", "test")
    monkeypatch.setenv("CHOREWEEK_TZ", "UTC")


@pytest.fixture
def kv_store(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'store.db'}")
    SQLModel.metadata.create_all(engine)
    store = KeyValueStore(engine)
    store.init()
    return store
