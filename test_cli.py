"""Tests for the command-line entry point."""

import pytest

import cli
from cluster_tree import empty_tree
from clustering import create_engine
from config import EngineConfig
from embedding_cache import InMemoryEmbeddingCache


class FakeEngine:
    def __init__(self):
        self.reclusters = 0
        self.closed = False

    async def full_recluster(self, processes):
        self.reclusters += 1
        return empty_tree(last_updated=0.0)

    def get_tree(self):
        return empty_tree(last_updated=0.0)

    async def close(self):
        self.closed = True


class EmptyFeed:
    def list_processes(self):
        return []


@pytest.fixture
def wiring(monkeypatch):
    """Replace the engine factory and feed; records every create_engine call."""
    calls = []
    engines = []

    def fake_create_engine(config, persist=None, http_client=None):
        calls.append({"config": config, "persist": persist})
        engines.append(FakeEngine())
        return engines[-1]

    monkeypatch.setattr(cli, "create_engine", fake_create_engine)
    monkeypatch.setattr(cli, "ProcessFeed", EmptyFeed)
    monkeypatch.setattr(cli, "load_config", lambda path: EngineConfig(persist_cache=False))
    return calls, engines


def test_persist_follows_config_without_flag(wiring):
    calls, engines = wiring

    assert cli.main(["--once"]) == 0

    assert calls[0]["persist"] is None
    assert calls[0]["config"].persist_cache is False
    assert engines[0].reclusters == 1
    assert engines[0].closed


def test_no_persist_flag_forces_memory_cache(wiring):
    calls, _ = wiring

    assert cli.main(["--once", "--no-persist"]) == 0

    assert calls[0]["persist"] is False


def test_namer_flag_overrides_config(wiring):
    calls, _ = wiring
    cli.main(["--once", "--namer", "model"])
    assert calls[0]["config"].naming_strategy == "model"


def test_create_engine_honors_persist_cache_setting():
    engine = create_engine(EngineConfig(persist_cache=False))
    assert isinstance(engine.store.cache, InMemoryEmbeddingCache)
