"""Tests for embedding_cache: the sqlite-vec backed cache and its in-memory twin."""

import pytest

from embedding_cache import EmbeddingCache, InMemoryEmbeddingCache


@pytest.fixture
def cache(tmp_path):
    c = EmbeddingCache(tmp_path / "procgroups.db", dimension=4)
    yield c
    c.close()


def test_put_then_get(cache):
    cache.put("node: node server.js", [0.5, 0.25, 0.0, 1.0])
    assert cache.get("node: node server.js") == [0.5, 0.25, 0.0, 1.0]
    assert cache.get("missing") is None
    assert len(cache) == 1


def test_put_is_idempotent(cache):
    cache.put("k", [1.0, 0.0, 0.0, 0.0])
    cache.put("k", [1.0, 0.0, 0.0, 0.0])
    assert len(cache) == 1


def test_put_replaces_existing_vector(cache):
    cache.put("k", [1.0, 0.0, 0.0, 0.0])
    cache.put("k", [0.0, 1.0, 0.0, 0.0])
    assert cache.get("k") == [0.0, 1.0, 0.0, 0.0]


def test_vectors_are_stored_as_float32(cache):
    cache.put("k", [0.1, 0.2, 0.3, 0.4])
    assert cache.get("k") == pytest.approx([0.1, 0.2, 0.3, 0.4], abs=1e-7)


def test_dimension_mismatch_raises(cache):
    with pytest.raises(ValueError):
        cache.put("k", [1.0, 0.0])


def test_survives_reopen(tmp_path):
    db = tmp_path / "procgroups.db"
    first = EmbeddingCache(db, dimension=4)
    first.put("k", [1.0, 2.0, 3.0, 4.0])
    first.put_cluster_name("sig", "Media Stack", "Media", "Players")
    first.close()

    second = EmbeddingCache(db, dimension=4)
    assert second.get("k") == [1.0, 2.0, 3.0, 4.0]
    assert second.get_cluster_name("sig") == {
        "name": "Media Stack",
        "category": "Media",
        "description": "Players",
    }
    second.close()


def test_cluster_name_history(cache):
    assert cache.get_cluster_name("sig") is None
    cache.put_cluster_name("sig", "One", "Other")
    cache.put_cluster_name("sig", "Two", "System", "updated")
    assert cache.get_cluster_name("sig") == {"name": "Two", "category": "System", "description": "updated"}


def test_in_memory_cache_matches_interface():
    cache = InMemoryEmbeddingCache()
    vector = [1.0, 2.0]
    cache.put("k", vector)
    vector.append(3.0)
    assert cache.get("k") == [1.0, 2.0]
    assert len(cache) == 1
    cache.put_cluster_name("sig", "Name", "Other")
    assert cache.get_cluster_name("sig")["description"] == ""
    cache.close()
