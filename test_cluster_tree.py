"""Tests for cluster_tree: tree shape, stats aggregation and rendering."""

import pytest

from cluster_tree import (
    ROOT_ID,
    ROOT_NAME,
    AggregateStats,
    ProcessCluster,
    build_cluster_tree,
    compute_stats,
    empty_tree,
    generate_cluster_id,
    render_tree,
    sum_stats,
)
from process_feed import ProcessDescriptor


def sample():
    return {
        1: ProcessDescriptor(1, "node", "node a.js", cpu=1.5, mem=100.0, net_in=10, net_out=20),
        2: ProcessDescriptor(2, "node", "node b.js", cpu=0.5, mem=50.0),
        3: ProcessDescriptor(3, "Safari", "Safari", cpu=12.0, mem=800.0, net_in=4096),
    }


def test_compute_stats_sums_live_members():
    stats = compute_stats([1, 2, 2, 42], sample())
    assert stats.total_cpu == pytest.approx(2.0)
    assert stats.total_mem == pytest.approx(150.0)
    assert stats.total_net_in == 10
    assert stats.total_net_out == 20
    assert stats.process_count == 2


def test_sum_stats():
    total = sum_stats([AggregateStats(1.0, 2.0, 3.0, 4.0, 1), AggregateStats(1.0, 1.0, 1.0, 1.0, 2)])
    assert total == AggregateStats(2.0, 3.0, 4.0, 5.0, 3)


def test_build_cluster_tree():
    by_pid = sample()
    dev = ProcessCluster(id="dev", name="node", process_ids=[1, 2])
    web = ProcessCluster(id="web", name="Safari", process_ids=[3])
    for cluster in (dev, web):
        cluster.aggregate_stats = compute_stats(cluster.process_ids, by_pid)

    tree = build_cluster_tree([dev, web], last_updated=123.0)

    assert tree.root.id == ROOT_ID
    assert tree.root.name == ROOT_NAME
    assert tree.root.depth == 0
    assert tree.clusters == [dev, web]
    assert all(c.parent == ROOT_ID and c.depth == 1 for c in tree.clusters)
    assert tree.flat_list == [tree.root, dev, web]
    assert tree.get("web") is web
    assert tree.get(ROOT_ID) is tree.root
    assert tree.get("missing") is None
    assert tree.last_updated == 123.0
    assert tree.root.aggregate_stats.total_cpu == pytest.approx(14.0)
    assert tree.root.aggregate_stats.process_count == 3


def test_empty_tree():
    tree = empty_tree(last_updated=5.0)
    assert tree.clusters == []
    assert tree.flat_list == [tree.root]
    assert tree.root.aggregate_stats == AggregateStats()


def test_add_attaches_under_root():
    tree = empty_tree()
    cluster = ProcessCluster(id="new", process_ids=[3])
    cluster.aggregate_stats = compute_stats([3], sample())

    tree.add(cluster)
    tree.add(cluster)

    assert tree.clusters == [cluster]
    assert tree.get("new") is cluster
    assert cluster.parent == ROOT_ID
    assert tree.root.aggregate_stats.total_mem == pytest.approx(800.0)


def test_to_dict_omits_centroids():
    cluster = ProcessCluster(id="dev", name="node", process_ids=[1], centroid=[0.1, 0.2])
    data = build_cluster_tree([cluster], last_updated=1.0).to_dict()
    child = data["root"]["children"][0]
    assert child["name"] == "node"
    assert child["parent"] == ROOT_ID
    assert "centroid" not in child
    assert data["last_updated"] == 1.0


def test_generate_cluster_id_is_unique():
    assert len({generate_cluster_id() for _ in range(100)}) == 100


def test_render_tree_orders_by_cpu():
    by_pid = sample()
    dev = ProcessCluster(id="dev", name="node", category="Development", process_ids=[1, 2])
    web = ProcessCluster(id="web", name="Safari", category="Browser", process_ids=[3])
    for cluster in (dev, web):
        cluster.aggregate_stats = compute_stats(cluster.process_ids, by_pid)

    text = render_tree(build_cluster_tree([dev, web]))

    assert text.startswith(f"=== {ROOT_NAME} ===")
    assert "Clusters: 2 | Processes: 3" in text
    assert text.index("[Browser] Safari") < text.index("[Development] node")
    assert "pids: 1, 2" in text


def test_render_tree_truncates_pid_list():
    cluster = ProcessCluster(id="big", name="many", process_ids=list(range(12)))
    text = render_tree(build_cluster_tree([cluster]), max_pids=5)
    assert "pids: 0, 1, 2, 3, 4 (+7)" in text
