"""
Monitor - procgroups
Drives a ClusterEngine from a process feed at a fixed cadence.

Every cycle:
  1. Sample processes from the feed
  2. Full recluster if the engine says one is due
  3. Otherwise assign active pids nobody has claimed yet, then refresh stats.
     Pids the last recluster left out wait for the next recluster.
"""

import asyncio
import threading
import time
from typing import Callable, Optional

from clustering import ClusterEngine, is_active


class ClusterMonitor:
    """
    Polling loop around one engine.

    feed: anything with list_processes() -> list[ProcessDescriptor]
    """

    def __init__(
        self,
        engine: ClusterEngine,
        feed,
        poll_interval: Optional[float] = None,
        on_status: Optional[Callable[[str], None]] = None,
    ):
        self.engine = engine
        self.feed = feed
        self.poll_interval = (
            engine.config.poll_interval_seconds if poll_interval is None else poll_interval
        )
        self.on_status = on_status or print
        self.cycles = 0
        self.last_cycle: Optional[float] = None
        self._running = False
        self._thread: Optional[threading.Thread] = None

    async def run_cycle(self) -> dict:
        """One sample → recluster-or-assign step. Returns a summary of what happened."""
        processes = self.feed.list_processes()
        self.cycles += 1
        self.last_cycle = time.time()

        if self.engine.needs_full_recluster(processes):
            tree = await self.engine.full_recluster(processes)
            return {
                "action": "recluster",
                "processes": len(processes),
                "clusters": len(tree.clusters),
            }

        claimed = {pid for c in self.engine.get_current_clusters() for pid in c.process_ids}
        claimed |= self.engine.excluded_pids
        unclaimed = [p for p in processes if p.pid not in claimed and is_active(p)]
        new_clusters = 0
        for process in unclaimed:
            result = await self.engine.assign(process)
            if result.is_new:
                new_clusters += 1

        self.engine.refresh_stats(processes)
        if unclaimed:
            self.on_status(
                f"[Monitor] Assigned {len(unclaimed)} new processes ({new_clusters} singletons)"
            )
        return {
            "action": "assign",
            "processes": len(processes),
            "assigned": len(unclaimed),
            "new_clusters": new_clusters,
        }

    async def run(self, max_cycles: Optional[int] = None):
        """Loop until stop() or max_cycles. Errors end the cycle, not the loop."""
        self._running = True
        self.on_status("[Monitor] Loop started")
        completed = 0

        while self._running:
            try:
                await self.run_cycle()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.on_status(f"[Monitor] Cycle error: {e}")

            completed += 1
            if max_cycles is not None and completed >= max_cycles:
                break
            try:
                await asyncio.sleep(self.poll_interval)
            except asyncio.CancelledError:
                break

        self._running = False
        self.on_status("[Monitor] Loop stopped")

    def start(self):
        """Run the loop on a background thread with its own event loop."""
        if self._running:
            return
        self._running = True

        def run_in_thread():
            loop = asyncio.new_event_loop()
            asyncio.set_event_loop(loop)
            try:
                loop.run_until_complete(self.run())
            finally:
                loop.close()

        self._thread = threading.Thread(target=run_in_thread, daemon=True)
        self._thread.start()
        self.on_status("[Monitor] Started")

    def stop(self):
        self._running = False
        self.on_status("[Monitor] Stopping...")

    def get_status(self) -> dict:
        return {
            "running": self._running,
            "cycles": self.cycles,
            "last_cycle": self.last_cycle,
            "poll_interval": self.poll_interval,
            **self.engine.get_stats(),
        }
