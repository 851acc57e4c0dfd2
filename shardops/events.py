"""
Observer callbacks fired around topology-changing operations.

Subclass TopologyObserver and override the callbacks of interest, then pass
an instance to Topology. Every callback defaults to doing nothing.
"""

from typing import Any, Optional


class TopologyObserver:
    """No-op observer; override the hooks you need."""

    def on_before_state_change(self, shard, old_state, new_state) -> None:
        pass

    def on_after_state_change(self, shard, old_state, new_state) -> None:
        pass

    def on_before_split(self, shard, pieces: int) -> None:
        pass

    def on_after_split(self, shard, error: Optional[BaseException] = None) -> None:
        pass

    def on_before_promotion(self, pool, candidate) -> None:
        pass

    def on_after_promotion(self, pool, old_master, new_master, replicating: bool) -> None:
        pass

    def on_before_cleanup(self, shard) -> None:
        pass

    def on_after_cleanup(self, shard) -> None:
        pass

    def on_after_sync(self, pool: Any, error: Optional[BaseException] = None) -> None:
        pass
