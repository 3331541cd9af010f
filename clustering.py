"""
Clustering - procgroups
Groups live processes by the semantic similarity of their command lines.

Two paths over the same cluster set:
  - assign():         fast path. One process, nearest centroid, join or
                      spawn a singleton. Never merges or removes clusters.
  - full_recluster(): heavy path. Activity filter → dedup by text key →
                      batch embedding → greedy agglomerative merge →
                      size filter → naming → stats → publish.

The fast path lets centroids drift (recent-window mean); every full
recluster recomputes them exactly and replaces the whole set.
"""

import time
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional

import numpy as np

from cluster_naming import HeuristicNamer, build_namer, infer_category
from cluster_tree import (
    ClusterTree,
    ProcessCluster,
    build_cluster_tree,
    compute_stats,
    empty_tree,
    generate_cluster_id,
)
from config import EngineConfig
from embedding_cache import EmbeddingCache, InMemoryEmbeddingCache
from embeddings import ChatClient, EmbeddingClient, EmbeddingError
from process_feed import ProcessDescriptor
from vector_store import (
    ProcessVectorStore,
    calculate_centroid,
    cosine_similarity,
    find_nearest_centroid,
)

MIN_ACTIVE_MEM_MB = 0.1


@dataclass
class AssignResult:
    cluster: ProcessCluster
    is_new: bool


@dataclass
class MergeGroup:
    """Working unit of the merge: text-groups, their pids and embeddings."""
    process_ids: list[int] = field(default_factory=list)
    text_keys: list[str] = field(default_factory=list)
    embeddings: list[list[float]] = field(default_factory=list)

    @property
    def size(self) -> int:
        return len(self.text_keys)


def is_active(process: ProcessDescriptor) -> bool:
    """Idle only when every signal is at rest."""
    return (
        process.cpu > 0
        or process.mem > MIN_ACTIVE_MEM_MB
        or process.net_in > 0
        or process.net_out > 0
    )


# ── Merge ─────────────────────────────────────────────────────────────────────

def agglomerative_merge(
    groups: list[MergeGroup],
    merge_threshold: float,
    max_size: int,
) -> list[MergeGroup]:
    """
    Greedy bottom-up merge. Each round merges the most similar eligible pair
    (similarity >= merge_threshold, combined text-groups <= max_size); equal
    similarities resolve to the first pair in row-major order. The merged
    group is appended at the end with an exact centroid.
    """
    groups = list(groups)
    if len(groups) < 2:
        return groups

    centroids = [calculate_centroid(g.embeddings) for g in groups]

    # Upper triangle holds pair similarities; everything else stays -inf
    n = len(groups)
    sim = np.full((n, n), -np.inf)
    for i in range(n):
        for j in range(i + 1, n):
            sim[i, j] = cosine_similarity(centroids[i], centroids[j])

    while len(groups) > 1:
        sizes = np.array([g.size for g in groups])
        eligible = (sim >= merge_threshold) & (sizes[:, None] + sizes[None, :] <= max_size)
        if not eligible.any():
            break

        masked = np.where(eligible, sim, -np.inf)
        i, j = np.unravel_index(int(np.argmax(masked)), masked.shape)

        merged = MergeGroup(
            process_ids=groups[i].process_ids + groups[j].process_ids,
            text_keys=groups[i].text_keys + groups[j].text_keys,
            embeddings=groups[i].embeddings + groups[j].embeddings,
        )
        merged_centroid = calculate_centroid(merged.embeddings)

        keep = [k for k in range(len(groups)) if k not in (i, j)]
        groups = [groups[k] for k in keep] + [merged]
        centroids = [centroids[k] for k in keep] + [merged_centroid]

        sim = np.pad(sim[np.ix_(keep, keep)], ((0, 1), (0, 1)), constant_values=-np.inf)
        for k in range(len(keep)):
            sim[k, -1] = cosine_similarity(centroids[k], merged_centroid)

    return groups


def filter_small_groups(groups: list[MergeGroup], min_size: int, min_kept: int) -> list[MergeGroup]:
    """Drop groups under min_size text-groups, unless that leaves min_kept or fewer."""
    large = [g for g in groups if len(set(g.text_keys)) >= min_size]
    if len(large) <= min_kept:
        return groups
    return large


# ── Engine ────────────────────────────────────────────────────────────────────

class ClusterEngine:
    """
    Owns the current cluster set and tree. One instance per monitored host.

    store: ProcessVectorStore
    namer: HeuristicNamer / ModelNamer (anything with async name_clusters)
    """

    def __init__(
        self,
        store: ProcessVectorStore,
        config: Optional[EngineConfig] = None,
        namer=None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.config = config or EngineConfig()
        self.namer = namer or HeuristicNamer()
        self._clock = clock

        self._tree: ClusterTree = empty_tree(last_updated=0.0)
        self._clusters: list[ProcessCluster] = self._tree.root.children
        self.singleton_debt = 0
        self.last_full_recluster: Optional[float] = None
        self._last_pid_count = 0
        self._recluster_in_progress = False
        self._assigned = 0
        self._recluster_count = 0
        self._skipped_last_cycle = 0
        # Active pids the last recluster left out; the monitor leaves them alone until the next one
        self.excluded_pids: set[int] = set()

    # ── Fast path ─────────────────────────────────────────────────────────────

    def _window_embeddings(self, cluster: ProcessCluster) -> list[list[float]]:
        """Embeddings of the trailing member text-groups; the centroid stands in for any not in memory."""
        window = []
        for key in cluster.text_keys[-self.config.centroid_window:]:
            vector = self.store.get_vector(key)
            if vector is not None:
                window.append(vector.embedding)
            elif cluster.centroid:
                window.append(cluster.centroid)
        return window

    @staticmethod
    def _detach(pid: int, clusters: list[ProcessCluster], keep: Optional[ProcessCluster] = None):
        for cluster in clusters:
            if cluster is not keep and pid in cluster.process_ids:
                cluster.process_ids.remove(pid)

    def _add_singleton(self, process: ProcessDescriptor, key: str, embedding: Optional[list[float]],
                       clusters: list[ProcessCluster]) -> ProcessCluster:
        cluster = ProcessCluster(
            id=generate_cluster_id(),
            name=process.name,
            description=f"Single process: {process.name}",
            category=infer_category([process.name, process.command]),
            process_ids=[process.pid],
            centroid=list(embedding) if embedding else [],
            text_keys=[key],
            aggregate_stats=compute_stats([process.pid], {process.pid: process}),
        )
        if clusters is self._clusters:
            self._tree.add(cluster)
        else:
            clusters.append(cluster)
        self.singleton_debt += 1
        return cluster

    async def assign(
        self,
        process: ProcessDescriptor,
        clusters: Optional[list[ProcessCluster]] = None,
    ) -> AssignResult:
        """
        Place one process. Joins the nearest cluster at or above the join
        threshold, otherwise becomes a singleton (unembedded if the provider
        failed). Aggregate stats of clusters the pid left are corrected on
        the next refresh_stats().
        """
        clusters = self._clusters if clusters is None else clusters
        key = self.store.key_for(process)
        self._assigned += 1

        try:
            embedding = await self.store.get_embedding(process)
        except EmbeddingError as e:
            print(f"[Clustering] No embedding for pid {process.pid} ({process.name}): {e}")
            self._detach(process.pid, clusters)
            return AssignResult(self._add_singleton(process, key, None, clusters), is_new=True)

        nearest = find_nearest_centroid(
            embedding, ((c.id, c.centroid) for c in clusters if c.centroid)
        )
        if nearest is None or nearest.similarity < self.config.join_threshold:
            self._detach(process.pid, clusters)
            return AssignResult(self._add_singleton(process, key, embedding, clusters), is_new=True)

        cluster = next(c for c in clusters if c.id == nearest.id)
        self._detach(process.pid, clusters, keep=cluster)

        if process.pid not in cluster.process_ids:
            cluster.process_ids.append(process.pid)
            stats = cluster.aggregate_stats
            stats.total_cpu += process.cpu
            stats.total_mem += process.mem
            stats.total_net_in += process.net_in
            stats.total_net_out += process.net_out
            stats.process_count += 1

        if key not in cluster.text_keys:
            window = self._window_embeddings(cluster)
            cluster.text_keys.append(key)
            cluster.centroid = calculate_centroid([*window, embedding])

        if clusters is self._clusters:
            self._tree.refresh_root_stats()
        return AssignResult(cluster, is_new=False)

    # ── Heavy path ────────────────────────────────────────────────────────────

    def needs_full_recluster(self, processes: list[ProcessDescriptor]) -> bool:
        if self.last_full_recluster is None:
            return True
        if self.singleton_debt >= self.config.singleton_debt_limit:
            return True
        if self._clock() - self.last_full_recluster > self.config.recluster_interval_seconds:
            return True
        pid_count = len({p.pid for p in processes})
        change = abs(pid_count - self._last_pid_count) / max(self._last_pid_count, 1)
        return change > self.config.pid_change_ratio

    def _publish(self, tree: ClusterTree, pid_count: int, excluded: Iterable[int] = ()):
        self._tree = tree
        self.excluded_pids = set(excluded)
        self._clusters = tree.root.children
        self.singleton_debt = 0
        self.last_full_recluster = tree.last_updated
        self._last_pid_count = pid_count
        self._recluster_count += 1

    async def full_recluster(self, processes: list[ProcessDescriptor]) -> ClusterTree:
        """Rebuild every cluster from scratch. The previous tree stays visible until the new one is published."""
        if self._recluster_in_progress:
            print("[Clustering] Recluster already running")
            return self._tree
        self._recluster_in_progress = True

        try:
            started = self._clock()
            latest = {p.pid: p for p in processes}
            active = [p for p in latest.values() if is_active(p)]

            if not active:
                self._skipped_last_cycle = 0
                self._publish(empty_tree(last_updated=started), len(latest))
                print("[Clustering] No active processes")
                return self._tree

            # One embedding per text-group
            text_groups: dict[str, list[ProcessDescriptor]] = {}
            for process in active:
                text_groups.setdefault(self.store.key_for(process), []).append(process)

            embeddings = await self.store.batch_get_embeddings(
                [members[0] for members in text_groups.values()]
            )

            groups = [
                MergeGroup(
                    process_ids=[p.pid for p in members],
                    text_keys=[key],
                    embeddings=[embeddings[key]],
                )
                for key, members in text_groups.items()
                if key in embeddings
            ]
            self._skipped_last_cycle = len(text_groups) - len(groups)
            if self._skipped_last_cycle:
                print(f"[Clustering] Skipping {self._skipped_last_cycle} text-groups without embeddings")

            merged = agglomerative_merge(
                groups, self.config.merge_threshold, self.config.max_cluster_size
            )
            kept = filter_small_groups(
                merged, self.config.min_cluster_size, self.config.min_clusters_kept
            )

            clusters = [
                ProcessCluster(
                    id=generate_cluster_id(),
                    process_ids=list(g.process_ids),
                    centroid=calculate_centroid(g.embeddings),
                    text_keys=list(g.text_keys),
                )
                for g in kept
            ]

            await self.namer.name_clusters(clusters, active)

            by_pid = {p.pid: p for p in active}
            for cluster in clusters:
                cluster.aggregate_stats = compute_stats(cluster.process_ids, by_pid)

            clustered = {pid for c in clusters for pid in c.process_ids}
            excluded = [p.pid for p in active if p.pid not in clustered]
            self._publish(build_cluster_tree(clusters, last_updated=started), len(latest), excluded)
            print(
                f"[Clustering] Recluster complete: {len(active)} active processes, "
                f"{len(text_groups)} text-groups → {len(clusters)} clusters "
                f"({self._clock() - started:.2f}s)"
            )
            return self._tree
        finally:
            self._recluster_in_progress = False

    # ── Queries ───────────────────────────────────────────────────────────────

    def refresh_stats(self, processes: list[ProcessDescriptor]):
        """Recompute aggregate stats from the latest samples without touching membership."""
        by_pid = {p.pid: p for p in processes}
        for cluster in self._clusters:
            cluster.aggregate_stats = compute_stats(cluster.process_ids, by_pid)
        self._tree.refresh_root_stats()

    def get_current_clusters(self) -> list[ProcessCluster]:
        return list(self._clusters)

    def get_tree(self) -> ClusterTree:
        return self._tree

    def get_stats(self) -> dict:
        return {
            "clusters": len(self._clusters),
            "clustered_pids": sum(len(c.process_ids) for c in self._clusters),
            "singleton_debt": self.singleton_debt,
            "last_full_recluster": self.last_full_recluster,
            "reclusters": self._recluster_count,
            "assigned": self._assigned,
            "skipped_last_cycle": self._skipped_last_cycle,
            "excluded_pids": len(self.excluded_pids),
            "vectors": len(self.store),
            "embedding": dict(self.store.stats),
        }

    async def close(self):
        """Release provider connections and the cache."""
        for client in (self.store.provider, getattr(self.namer, "chat_client", None)):
            close = getattr(client, "close", None)
            if close is not None:
                await close()
        self.store.cache.close()


def create_engine(config: EngineConfig, persist: Optional[bool] = None, http_client=None) -> ClusterEngine:
    """Wire the providers, cache and namer described by config."""
    persist = config.persist_cache if persist is None else persist
    if persist:
        cache = EmbeddingCache(config.db_file, dimension=config.embedding_dimensions)
    else:
        cache = InMemoryEmbeddingCache()

    provider = EmbeddingClient(
        config.api_url,
        config.api_key,
        config.embedding_model,
        http_client=http_client,
        timeout=config.request_timeout,
    )
    chat_client = None
    if config.naming_strategy == "model":
        chat_client = ChatClient(
            config.api_url,
            config.api_key,
            config.chat_model,
            http_client=http_client,
            timeout=config.request_timeout,
        )

    store = ProcessVectorStore(
        provider,
        cache=cache,
        batch_size=config.embedding_batch_size,
        key_max_length=config.key_max_length,
    )
    namer = build_namer(
        config.naming_strategy,
        chat_client=chat_client,
        history=cache,
        max_calls_per_cycle=config.max_model_names_per_cycle,
    )
    return ClusterEngine(store, config=config, namer=namer)
