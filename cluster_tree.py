"""
Cluster Tree - cluster types and the single-root tree built from them.

Every full recluster produces a fresh tree: a synthetic root ("All
Processes", depth 0) whose children are the depth-1 clusters. The flat list
holds the root plus every cluster, indexed by id.
"""

import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import Optional

ROOT_ID = "root"
ROOT_NAME = "All Processes"


@dataclass
class AggregateStats:
    total_cpu: float = 0.0
    total_mem: float = 0.0
    total_net_in: float = 0.0
    total_net_out: float = 0.0
    process_count: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ProcessCluster:
    """
    A group of pids. centroid is always derived from member embeddings;
    text_keys lists the member text-groups in join order.
    """
    id: str
    name: str = "Uncategorized"
    description: str = ""
    category: str = "Other"
    process_ids: list[int] = field(default_factory=list)
    centroid: list[float] = field(default_factory=list)
    text_keys: list[str] = field(default_factory=list)
    children: list["ProcessCluster"] = field(default_factory=list)
    parent: Optional[str] = None
    depth: int = 1
    aggregate_stats: AggregateStats = field(default_factory=AggregateStats)

    @property
    def text_group_count(self) -> int:
        return len(set(self.text_keys))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "process_ids": list(self.process_ids),
            "children": [child.to_dict() for child in self.children],
            "parent": self.parent,
            "depth": self.depth,
            "aggregate_stats": self.aggregate_stats.to_dict(),
        }


def generate_cluster_id() -> str:
    return f"cluster-{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}"


def compute_stats(process_ids, by_pid: dict) -> AggregateStats:
    """Sum over the live descriptors whose pid is in process_ids. Dead pids contribute nothing."""
    stats = AggregateStats()
    for pid in dict.fromkeys(process_ids):
        process = by_pid.get(pid)
        if process is None:
            continue
        stats.total_cpu += process.cpu
        stats.total_mem += process.mem
        stats.total_net_in += process.net_in
        stats.total_net_out += process.net_out
        stats.process_count += 1
    return stats


def sum_stats(stats_list) -> AggregateStats:
    total = AggregateStats()
    for stats in stats_list:
        total.total_cpu += stats.total_cpu
        total.total_mem += stats.total_mem
        total.total_net_in += stats.total_net_in
        total.total_net_out += stats.total_net_out
        total.process_count += stats.process_count
    return total


@dataclass
class ClusterTree:
    root: ProcessCluster
    flat_list: list[ProcessCluster]
    last_updated: float
    _index: dict[str, ProcessCluster] = field(default_factory=dict, repr=False)

    def __post_init__(self):
        self._index = {cluster.id: cluster for cluster in self.flat_list}

    def get(self, cluster_id: str) -> Optional[ProcessCluster]:
        return self._index.get(cluster_id)

    @property
    def clusters(self) -> list[ProcessCluster]:
        return self.root.children

    def refresh_root_stats(self):
        self.root.aggregate_stats = sum_stats(c.aggregate_stats for c in self.root.children)

    def add(self, cluster: ProcessCluster):
        """Attach a fast-path cluster under the root."""
        cluster.parent = self.root.id
        cluster.depth = self.root.depth + 1
        if not any(c is cluster for c in self.root.children):
            self.root.children.append(cluster)
        if cluster.id not in self._index:
            self.flat_list.append(cluster)
            self._index[cluster.id] = cluster
        self.refresh_root_stats()

    def to_dict(self) -> dict:
        return {
            "root": self.root.to_dict(),
            "last_updated": self.last_updated,
        }


def build_cluster_tree(clusters: list[ProcessCluster], last_updated: Optional[float] = None) -> ClusterTree:
    root = ProcessCluster(id=ROOT_ID, name=ROOT_NAME, depth=0, children=list(clusters))
    for cluster in clusters:
        cluster.parent = ROOT_ID
        cluster.depth = 1

    tree = ClusterTree(
        root=root,
        flat_list=[root, *clusters],
        last_updated=time.time() if last_updated is None else last_updated,
    )
    tree.refresh_root_stats()
    return tree


def empty_tree(last_updated: Optional[float] = None) -> ClusterTree:
    return build_cluster_tree([], last_updated)


def render_tree(tree: ClusterTree, max_pids: int = 8) -> str:
    """Plain-text view, largest clusters (by cpu) first."""
    stats = tree.root.aggregate_stats
    lines = [
        f"=== {tree.root.name} ===",
        f"Clusters: {len(tree.clusters)} | Processes: {stats.process_count} | "
        f"CPU: {stats.total_cpu:.1f}% | Mem: {stats.total_mem:.0f}MB",
        "=" * 50,
    ]
    ordered = sorted(tree.clusters, key=lambda c: c.aggregate_stats.total_cpu, reverse=True)
    for cluster in ordered:
        s = cluster.aggregate_stats
        lines.append(f"\n[{cluster.category}] {cluster.name}")
        lines.append(
            f"  {s.process_count} proc | cpu {s.total_cpu:.1f}% | mem {s.total_mem:.0f}MB | "
            f"net ↓{s.total_net_in / 1024:.0f}K ↑{s.total_net_out / 1024:.0f}K"
        )
        pids = ", ".join(str(pid) for pid in cluster.process_ids[:max_pids])
        more = f" (+{len(cluster.process_ids) - max_pids})" if len(cluster.process_ids) > max_pids else ""
        lines.append(f"  pids: {pids}{more}")
    return "\n".join(lines)
