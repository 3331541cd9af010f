"""
Embedding Cache - SQLite + sqlite-vec storage for process embeddings and
named-cluster history.

Storage layout (procgroups.db):
  vec_embeddings  - cache_key TEXT, embedding float[N] distance_metric=cosine  (sqlite-vec virtual table)
  cluster_names   - signature, name, category, description, updated_at

Writes are idempotent (same key → same vector), so the only locking is the
write lock that keeps two threads from racing on DELETE+INSERT.
"""

import sqlite3
import threading
import time
from pathlib import Path
from typing import Optional

import numpy as np
import sqlite_vec


class InMemoryEmbeddingCache:
    """Dict-backed cache with the same interface, for tests and --no-persist runs."""

    def __init__(self):
        self._vectors: dict[str, list[float]] = {}
        self._names: dict[str, dict] = {}

    def get(self, key: str) -> Optional[list[float]]:
        return self._vectors.get(key)

    def put(self, key: str, vector: list[float]):
        self._vectors[key] = list(vector)

    def get_cluster_name(self, signature: str) -> Optional[dict]:
        return self._names.get(signature)

    def put_cluster_name(self, signature: str, name: str, category: str, description: str = ""):
        self._names[signature] = {
            "name": name,
            "category": category,
            "description": description,
        }

    def __len__(self) -> int:
        return len(self._vectors)

    def close(self):
        pass


class EmbeddingCache:
    """
    Persistent read-through/write-through embedding cache.

    One connection per thread (WAL allows concurrent readers); vectors are
    stored as float32 blobs in a vec0 table so the dimension is enforced by
    the storage layer as well as by put().
    """

    def __init__(self, db_file: Path, dimension: int = 1536):
        self.db_file = Path(db_file)
        self.dimension = dimension
        self._local = threading.local()
        self._write_lock = threading.Lock()
        self._init_db()

    # ── DB connection ──────────────────────────────────────────────────────────

    def _get_conn(self) -> sqlite3.Connection:
        """Return the per-thread SQLite connection, creating it if needed."""
        if not hasattr(self._local, "conn"):
            conn = sqlite3.connect(str(self.db_file), check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute("PRAGMA busy_timeout=5000")
            conn.enable_load_extension(True)
            sqlite_vec.load(conn)
            conn.enable_load_extension(False)
            self._local.conn = conn
        return self._local.conn

    def _init_db(self):
        self.db_file.parent.mkdir(parents=True, exist_ok=True)
        conn = self._get_conn()
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS cluster_names (
                signature    TEXT PRIMARY KEY,
                name         TEXT NOT NULL,
                category     TEXT NOT NULL DEFAULT 'Other',
                description  TEXT NOT NULL DEFAULT '',
                updated_at   REAL NOT NULL
            );
        """)
        conn.execute(f"""
            CREATE VIRTUAL TABLE IF NOT EXISTS vec_embeddings USING vec0(
                cache_key TEXT,
                embedding float[{int(self.dimension)}] distance_metric=cosine
            )
        """)
        conn.commit()

    # ── Embeddings ────────────────────────────────────────────────────────────

    def get(self, key: str) -> Optional[list[float]]:
        row = self._get_conn().execute(
            "SELECT embedding FROM vec_embeddings WHERE cache_key=?", (key,)
        ).fetchone()
        if row and row[0]:
            return np.frombuffer(row[0], dtype=np.float32).tolist()
        return None

    def put(self, key: str, vector: list[float]):
        if len(vector) != self.dimension:
            raise ValueError(
                f"Embedding dimension {len(vector)} does not match cache dimension {self.dimension}"
            )
        emb_bytes = np.array(vector, dtype=np.float32).tobytes()
        with self._write_lock:
            conn = self._get_conn()
            conn.execute("DELETE FROM vec_embeddings WHERE cache_key=?", (key,))
            conn.execute(
                "INSERT INTO vec_embeddings(cache_key, embedding) VALUES (?, ?)",
                (key, emb_bytes),
            )
            conn.commit()

    def __len__(self) -> int:
        return self._get_conn().execute("SELECT COUNT(*) FROM vec_embeddings").fetchone()[0]

    # ── Named-cluster history ─────────────────────────────────────────────────

    def get_cluster_name(self, signature: str) -> Optional[dict]:
        row = self._get_conn().execute(
            "SELECT name, category, description FROM cluster_names WHERE signature=?",
            (signature,),
        ).fetchone()
        return dict(row) if row else None

    def put_cluster_name(self, signature: str, name: str, category: str, description: str = ""):
        with self._write_lock:
            conn = self._get_conn()
            conn.execute("""
                INSERT OR REPLACE INTO cluster_names
                (signature, name, category, description, updated_at)
                VALUES (?, ?, ?, ?, ?)
            """, (signature, name, category, description, time.time()))
            conn.commit()

    def close(self):
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            del self._local.conn
