"""
Cluster Naming - procgroups
Gives every cluster a human-readable name and a category.

Layered like a decision gate:
  1. Rule-based fast path (always runs, always produces a name)
       single identity → common prefix → dominant member → category fallback
  2. Model path (ModelNamer only) for clusters that fell through to the
     category fallback, cached per membership signature so an unchanged
     cluster never costs a second call across reclusters.
"""

from __future__ import annotations

import hashlib
import json
import os
import re
from collections import Counter
from dataclasses import dataclass
from typing import Iterable, Optional

CATEGORIES = ("System", "Development", "Browser", "Communication", "Media", "Background", "Other")

# Checked in order, first match wins
_CATEGORY_PATTERNS = [
    ("Browser", re.compile(r"chrome|safari|firefox|edge|browser|webkit", re.IGNORECASE)),
    ("Development", re.compile(r"node|python|ruby|java|vscode|xcode|git|npm|yarn", re.IGNORECASE)),
    ("Communication", re.compile(r"slack|zoom|teams|discord|telegram|messages", re.IGNORECASE)),
    ("Media", re.compile(r"spotify|music|video|vlc|quicktime|audio", re.IGNORECASE)),
    ("System", re.compile(r"kernel|launchd|system|daemon|agent", re.IGNORECASE)),
    ("Background", re.compile(r"helper|agent|service|worker", re.IGNORECASE)),
]

_MIN_PREFIX_LENGTH = 3

CLUSTER_NAME_PROMPT = """These processes are running together on one machine and were grouped by similarity.

Processes:
{processes}

Give the group a short, friendly name (2-4 words) and pick one category from:
System, Development, Browser, Communication, Media, Background, Other

Respond with JSON:
{{"name": "<2-4 word group name>", "category": "<category>", "description": "<one short sentence>"}}"""


@dataclass
class ClusterLabel:
    name: str
    description: str
    category: str
    ambiguous: bool = False   # True when only the category fallback applied


# ── Pure heuristics ───────────────────────────────────────────────────────────

def infer_category(texts: Iterable[str]) -> str:
    joined = " ".join(texts).lower()
    for category, pattern in _CATEGORY_PATTERNS:
        if pattern.search(joined):
            return category
    return "Other"


def find_common_prefix(strings: list[str]) -> str:
    return os.path.commonprefix(strings) if strings else ""


def membership_signature(names: Iterable[str]) -> str:
    """Stable id for a cluster's membership that survives pid churn and new cluster ids."""
    joined = "\n".join(sorted(set(names)))
    return hashlib.sha1(joined.encode()).hexdigest()[:16]


def heuristic_label(names: list[str], commands: Iterable[str] = ()) -> ClusterLabel:
    """
    names: one entry per member process (repeats allowed).
    Total: always returns a label.
    """
    unique_names = list(dict.fromkeys(names))
    category = infer_category([*unique_names, *commands])

    if len(unique_names) == 1:
        name = unique_names[0]
        return ClusterLabel(
            name=name,
            description=f"{len(names)} instance(s) of {name}",
            category=category,
        )

    prefix = find_common_prefix(unique_names).rstrip()
    if len(prefix) >= _MIN_PREFIX_LENGTH:
        return ClusterLabel(
            name=prefix,
            description=f"{len(unique_names)} related processes",
            category=category,
        )

    if names:
        dominant, count = Counter(names).most_common(1)[0]
        if count > len(names) * 0.5:
            return ClusterLabel(
                name=f"{dominant} & related",
                description=f"{len(unique_names)} related processes",
                category=category,
            )

    return ClusterLabel(
        name=f"{category} processes",
        description=f"{len(unique_names)} {category.lower()} processes",
        category=category,
        ambiguous=True,
    )


# ── Namers ────────────────────────────────────────────────────────────────────

class HeuristicNamer:
    """Rule-based naming only. No network."""

    @staticmethod
    def _member_names(cluster, by_pid: dict) -> tuple[list[str], list[str]]:
        members = [by_pid[pid] for pid in cluster.process_ids if pid in by_pid]
        names = [p.name for p in members]
        commands = list(dict.fromkeys(p.command for p in members))
        return names, commands

    @staticmethod
    def apply(cluster, label: ClusterLabel):
        cluster.name = label.name
        cluster.description = label.description
        cluster.category = label.category

    def label_for(self, cluster, by_pid: dict) -> ClusterLabel:
        names, commands = self._member_names(cluster, by_pid)
        return heuristic_label(names, commands)

    async def name_clusters(self, clusters: list, processes: list):
        by_pid = {p.pid: p for p in processes}
        for cluster in clusters:
            self.apply(cluster, self.label_for(cluster, by_pid))


class ModelNamer(HeuristicNamer):
    """
    Heuristics first; the chat model only for clusters the heuristics could
    only name by category. Results are remembered per membership signature
    in memory and (if given) in the persistent named-cluster history.
    """

    def __init__(self, chat_client, history=None, max_calls_per_cycle: int = 5):
        self.chat_client = chat_client
        self.history = history
        self.max_calls_per_cycle = max_calls_per_cycle
        self._memo: dict[str, ClusterLabel] = {}
        self.model_calls = 0

    def _recall(self, signature: str) -> Optional[ClusterLabel]:
        label = self._memo.get(signature)
        if label is None and self.history is not None:
            row = self.history.get_cluster_name(signature)
            if row:
                label = ClusterLabel(
                    name=row["name"],
                    description=row.get("description", ""),
                    category=row["category"],
                )
                self._memo[signature] = label
        return label

    def _remember(self, signature: str, label: ClusterLabel):
        self._memo[signature] = label
        if self.history is not None:
            self.history.put_cluster_name(signature, label.name, label.category, label.description)

    async def _ask_model(self, names: list[str], fallback: ClusterLabel) -> Optional[ClusterLabel]:
        unique_names = list(dict.fromkeys(names))[:10]
        prompt = CLUSTER_NAME_PROMPT.format(processes="\n".join(f"- {n}" for n in unique_names))
        try:
            content = await self.chat_client.complete(
                [
                    {"role": "system", "content": "You are a helpful assistant. Respond only with valid JSON."},
                    {"role": "user", "content": prompt},
                ],
                max_tokens=100,
                temperature=0.1,
            )
            parsed = json.loads(content)
        except Exception as e:
            print(f"[Naming] Model naming error: {e}")
            return None

        name = str(parsed.get("name") or "").strip()[:60]
        if not name:
            return None
        category = parsed.get("category")
        if category not in CATEGORIES:
            category = fallback.category
        description = str(parsed.get("description") or fallback.description)[:200]
        return ClusterLabel(name=name, description=description, category=category)

    async def name_clusters(self, clusters: list, processes: list):
        by_pid = {p.pid: p for p in processes}
        calls = 0

        for cluster in clusters:
            label = self.label_for(cluster, by_pid)
            self.apply(cluster, label)
            if not label.ambiguous:
                continue

            names, _ = self._member_names(cluster, by_pid)
            signature = membership_signature(names)
            remembered = self._recall(signature)
            if remembered is not None:
                self.apply(cluster, remembered)
                continue

            if calls >= self.max_calls_per_cycle:
                continue
            calls += 1
            self.model_calls += 1
            named = await self._ask_model(names, label)
            if named is not None:
                self._remember(signature, named)
                self.apply(cluster, named)


def build_namer(strategy: str, chat_client=None, history=None, max_calls_per_cycle: int = 5):
    if strategy == "model":
        if chat_client is None:
            raise ValueError("The model naming strategy needs a chat client")
        return ModelNamer(chat_client, history=history, max_calls_per_cycle=max_calls_per_cycle)
    return HeuristicNamer()
