"""
Vector Store - in-memory index of process embeddings.

Lookup order for a process:
  1. self.vectors        (in-memory, keyed by normalized text)
  2. persistent cache    (EmbeddingCache / InMemoryEmbeddingCache)
  3. embedding provider  (network; concurrent requests for one key share a task)

Many pids share one vector: the key is derived from name + command with
user/system path prefixes stripped, so near-identical commands collapse.
"""

import asyncio
import re
import sqlite3
from dataclasses import dataclass
from typing import Iterable, Optional

import numpy as np
from scipy.spatial.distance import cosine

from embedding_cache import InMemoryEmbeddingCache
from embeddings import EmbeddingError
from process_feed import ProcessDescriptor

KEY_MAX_LENGTH = 500
COMMAND_SUMMARY_LENGTH = 200
DEFAULT_BATCH_SIZE = 50

# Order matters: /System/Library must be rewritten before /Library
_PATH_REWRITES = [
    (re.compile(r"/Applications/[^/]+\.app/Contents/MacOS/"), ""),
    (re.compile(r"/usr/local/bin/"), ""),
    (re.compile(r"/usr/s?bin/"), ""),
    (re.compile(r"/opt/homebrew/bin/"), ""),
    (re.compile(r"/System/Library/\S+"), "[system]"),
    (re.compile(r"/Library/\S+"), "[library]"),
    (re.compile(r"/Users/[^/]+/"), "~/"),
    (re.compile(r"/home/[^/]+/"), "~/"),
    (re.compile(r"/private/var/\S+"), "[var]"),
]


@dataclass(frozen=True)
class ProcessVector:
    key: str
    embedding: list[float]
    text: str


@dataclass(frozen=True)
class NearestCentroid:
    id: str
    similarity: float


# ── Text normalization ────────────────────────────────────────────────────────

def summarize_command(command: str) -> str:
    """Strip install paths and user homes so the text keeps only what identifies the program."""
    if not command:
        return ""
    summary = command
    for pattern, replacement in _PATH_REWRITES:
        summary = pattern.sub(replacement, summary)
    if len(summary) > COMMAND_SUMMARY_LENGTH:
        summary = summary[:COMMAND_SUMMARY_LENGTH] + "..."
    return summary


def process_to_text(process: ProcessDescriptor) -> str:
    return f"{process.name}: {summarize_command(process.command)}"


def text_key(process: ProcessDescriptor, max_length: int = KEY_MAX_LENGTH) -> str:
    return process_to_text(process)[:max_length]


# ── Vector math ───────────────────────────────────────────────────────────────

def cosine_similarity(vec1, vec2) -> float:
    """
    Normalized dot product. 0.0 when either vector has zero magnitude.
    Mismatched dimensions mean the embedding model changed under us: raise.
    """
    a = np.asarray(vec1, dtype=np.float64)
    b = np.asarray(vec2, dtype=np.float64)
    if a.shape != b.shape:
        raise ValueError(f"Vector dimension mismatch: {a.shape} vs {b.shape}")
    if not a.any() or not b.any():
        return 0.0
    return float(1.0 - cosine(a, b))


def calculate_centroid(vectors: list[list[float]]) -> list[float]:
    """Element-wise mean. [] for no input, which callers treat as "no grouping key"."""
    if len(vectors) == 0:
        return []
    return np.mean(np.asarray(vectors, dtype=np.float64), axis=0).tolist()


def find_nearest_centroid(
    vector: list[float],
    centroids: Iterable[tuple[str, list[float]]],
) -> Optional[NearestCentroid]:
    """Linear scan; on equal similarity the first candidate wins."""
    best: Optional[NearestCentroid] = None
    for cluster_id, centroid in centroids:
        similarity = cosine_similarity(vector, centroid)
        if best is None or similarity > best.similarity:
            best = NearestCentroid(id=cluster_id, similarity=similarity)
    return best


# ── Store ─────────────────────────────────────────────────────────────────────

class ProcessVectorStore:
    """
    In-memory vector store for process embeddings.

    provider: anything with `async embed(texts) -> list[list[float]]`
    cache:    anything with get(key) / put(key, vector)
    """

    def __init__(
        self,
        provider,
        cache=None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        key_max_length: int = KEY_MAX_LENGTH,
    ):
        self.provider = provider
        self.cache = cache if cache is not None else InMemoryEmbeddingCache()
        self.batch_size = batch_size
        self.key_max_length = key_max_length
        self.vectors: dict[str, ProcessVector] = {}
        self._pending: dict[str, asyncio.Task] = {}
        self.stats = {
            "memory_hits": 0,
            "cache_hits": 0,
            "requests": 0,
            "fetched": 0,
            "failed": 0,
        }

    def key_for(self, process: ProcessDescriptor) -> str:
        return text_key(process, self.key_max_length)

    def get_vector(self, key: str) -> Optional[ProcessVector]:
        return self.vectors.get(key)

    def _lookup(self, key: str, text: str) -> Optional[list[float]]:
        existing = self.vectors.get(key)
        if existing is not None:
            self.stats["memory_hits"] += 1
            return existing.embedding
        cached = self.cache.get(key)
        if cached is not None:
            self.stats["cache_hits"] += 1
            self.vectors[key] = ProcessVector(key=key, embedding=cached, text=text)
            return cached
        return None

    def _store(self, key: str, text: str, embedding: list[float]):
        try:
            self.cache.put(key, embedding)
        except sqlite3.Error as e:
            print(f"[VectorStore] Cache write failed for '{key[:60]}': {e}")
        self.vectors[key] = ProcessVector(key=key, embedding=embedding, text=text)
        self.stats["fetched"] += 1

    def _track(self, key: str, coro) -> asyncio.Task:
        """Register an in-flight fetch for key so concurrent callers share it."""
        task = asyncio.ensure_future(coro)
        self._pending[key] = task

        def _done(t, key=key):
            if self._pending.get(key) is t:
                del self._pending[key]

        task.add_done_callback(_done)
        return task

    # ── Single fetch ──────────────────────────────────────────────────────────

    async def _fetch_one(self, key: str, text: str) -> list[float]:
        self.stats["requests"] += 1
        vectors = await self.provider.embed([text])
        if len(vectors) != 1:
            raise EmbeddingError(f"Expected 1 embedding, got {len(vectors)}")
        self._store(key, text, vectors[0])
        return vectors[0]

    async def get_embedding(self, process: ProcessDescriptor) -> list[float]:
        """
        Embedding for one process. Raises EmbeddingError (to every waiter)
        if the provider fails; nothing is cached in that case.
        """
        key = self.key_for(process)
        text = process_to_text(process)

        existing = self._lookup(key, text)
        if existing is not None:
            return existing

        task = self._pending.get(key)
        if task is None:
            task = self._track(key, self._fetch_one(key, text))
        return await asyncio.shield(task)

    # ── Batch fetch ───────────────────────────────────────────────────────────

    async def _fetch_batch(self, batch: list[tuple[str, str]]) -> dict[str, list[float]]:
        self.stats["requests"] += 1
        try:
            vectors = await self.provider.embed([text for _, text in batch])
            if len(vectors) != len(batch):
                raise EmbeddingError(f"Expected {len(batch)} embeddings, got {len(vectors)}")
        except EmbeddingError as e:
            if len(batch) > 1:
                print(f"[VectorStore] Batch of {len(batch)} failed, retrying keys one by one: {e}")
            raise
        fetched = {}
        for (key, text), embedding in zip(batch, vectors):
            self._store(key, text, embedding)
            fetched[key] = embedding
        return fetched

    async def _from_batch(self, batch_task: asyncio.Task, key: str, text: str, batch_len: int) -> list[float]:
        """One key's share of a batch. A failed multi-key batch falls back to a single fetch for this key."""
        try:
            fetched = await asyncio.shield(batch_task)
        except EmbeddingError:
            if batch_len == 1:
                raise
            return await self._fetch_one(key, text)
        return fetched[key]

    async def batch_get_embeddings(
        self, processes: list[ProcessDescriptor]
    ) -> dict[str, list[float]]:
        """
        key → embedding for every process that could be embedded.
        Uncached keys go out in batches of batch_size. A failed batch is
        retried key by key, so only keys that fail on their own are missing.
        """
        result: dict[str, list[float]] = {}
        uncached: dict[str, str] = {}
        in_flight: dict[str, asyncio.Task] = {}

        for process in processes:
            key = self.key_for(process)
            if key in result or key in uncached or key in in_flight:
                continue
            text = process_to_text(process)
            existing = self._lookup(key, text)
            if existing is not None:
                result[key] = existing
            elif key in self._pending:
                in_flight[key] = self._pending[key]
            else:
                uncached[key] = text

        items = list(uncached.items())
        for start in range(0, len(items), self.batch_size):
            batch = items[start:start + self.batch_size]
            batch_task = asyncio.ensure_future(self._fetch_batch(batch))
            key_tasks = {
                key: self._track(key, self._from_batch(batch_task, key, text, len(batch)))
                for key, text in batch
            }
            outcomes = await asyncio.gather(*key_tasks.values(), return_exceptions=True)

            errors = []
            for key, outcome in zip(key_tasks, outcomes):
                if isinstance(outcome, EmbeddingError):
                    errors.append(outcome)
                elif isinstance(outcome, BaseException):
                    # Configuration errors such as a dimension mismatch are not per-key
                    raise outcome
                else:
                    result[key] = outcome
            if errors:
                self.stats["failed"] += len(errors)
                batch_no = start // self.batch_size + 1
                print(f"[VectorStore] Batch {batch_no}: {len(errors)} keys not embedded: {errors[0]}")

        for key, task in in_flight.items():
            try:
                result[key] = await asyncio.shield(task)
            except EmbeddingError as e:
                self.stats["failed"] += 1
                print(f"[VectorStore] Shared fetch failed for '{key[:60]}': {e}")

        return result

    # ── Queries ───────────────────────────────────────────────────────────────

    def find_similar(self, embedding: list[float], top_k: int = 10) -> list[tuple[ProcessVector, float]]:
        scored = [
            (vector, cosine_similarity(embedding, vector.embedding))
            for vector in self.vectors.values()
        ]
        scored.sort(key=lambda pair: pair[1], reverse=True)
        return scored[:top_k]

    find_nearest_centroid = staticmethod(find_nearest_centroid)
    calculate_centroid = staticmethod(calculate_centroid)

    def get_all_vectors(self) -> list[ProcessVector]:
        return list(self.vectors.values())

    def remove(self, process: ProcessDescriptor):
        self.vectors.pop(self.key_for(process), None)

    def clear(self):
        """Drop the in-memory index. The persistent cache is left alone."""
        self.vectors.clear()

    @property
    def size(self) -> int:
        return len(self.vectors)

    def __len__(self) -> int:
        return self.size
