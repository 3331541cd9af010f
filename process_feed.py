"""
Process Feed - live process descriptors from psutil.

The engine only needs list_processes(); anything with that method can stand
in for ProcessFeed (tests pass plain lists through a small fake).
"""

from collections import Counter
from dataclasses import dataclass

import psutil

_ATTRS = ["pid", "name", "cmdline", "cpu_percent", "memory_info", "username"]


@dataclass(frozen=True)
class ProcessDescriptor:
    """One observation of a process. A newer sample for the same pid replaces it."""
    pid: int
    name: str
    command: str
    cpu: float = 0.0          # percent, may exceed 100 on multi-core
    mem: float = 0.0          # MB resident
    net_in: float = 0.0       # bytes received
    net_out: float = 0.0      # bytes sent
    user: str = ""
    connections: int = 0


class ProcessFeed:
    """
    Pull-based process listing. The first cpu_percent sample psutil returns
    for a process is always 0.0, so the first call primes the counters.
    """

    def __init__(self, include_connections: bool = True):
        self.include_connections = include_connections
        self._primed = False

    def _connection_counts(self) -> Counter:
        try:
            return Counter(
                c.pid for c in psutil.net_connections(kind="inet") if c.pid
            )
        except (psutil.AccessDenied, PermissionError) as e:
            # macOS needs root for system-wide connections
            print(f"[ProcessFeed] Connection counts unavailable: {e}")
            self.include_connections = False
            return Counter()

    def list_processes(self) -> list[ProcessDescriptor]:
        if not self._primed:
            list(psutil.process_iter(["cpu_percent"]))
            self._primed = True

        connections = self._connection_counts() if self.include_connections else Counter()
        processes: list[ProcessDescriptor] = []

        for proc in psutil.process_iter(attrs=_ATTRS):
            try:
                info = proc.info
                cmdline = info.get("cmdline") or []
                name = info.get("name") or ""
                mem_info = info.get("memory_info")
                processes.append(ProcessDescriptor(
                    pid=info["pid"],
                    name=name,
                    command=" ".join(cmdline) if cmdline else name,
                    cpu=float(info.get("cpu_percent") or 0.0),
                    mem=(mem_info.rss / (1024 ** 2)) if mem_info else 0.0,
                    user=info.get("username") or "",
                    connections=connections.get(info["pid"], 0),
                ))
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                # Died mid-poll or not ours to inspect
                continue

        return processes
