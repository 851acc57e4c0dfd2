"""
Spare allocators, configuration sinks and pool loaders.

JsonFileTracker keeps the whole inventory in one JSON document:

    {
        "pools":       [Pool.to_hash(), ...],
        "shards":      [Shard.to_hash(), ...],
        "spares":      ["10.0.0.5", {"node": "10.0.0.6:3306", "role": "standby_slave"}, ...],
        "shard_pools": ["shard", ...]
    }

and regenerates an application config document (pools and in-production
shards) on every sync. HttpConfigurationSink PUTs each change to an HTTP
service instead.
"""

import json
import os
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests

from .errors import ConfigurationSyncError, InsufficientSparesError
from .pool import Pool
from .shard import Shard, ShardState


class NullConfigurationSink:
    """Discards every change."""

    def persist(self, pool) -> None:
        return None


class HttpConfigurationSink:
    """PUT each synced pool as JSON to {base_url}/pools/{name}."""

    def __init__(self, base_url: str, user: Optional[str] = None, password: Optional[str] = None, timeout: float = 5):
        self.base_url = base_url.rstrip("/")
        self.auth = (user, password or "") if user else None
        self.timeout = timeout

    @classmethod
    def from_config(cls, config) -> 'HttpConfigurationSink':
        return cls(config.sink_url, config.sink_user, config.sink_password)

    def persist(self, pool) -> None:
        url = f"{self.base_url}/pools/{pool.name}"
        body = {
            "name": pool.name,
            "tracker": pool.to_hash(),
            "app_config": pool.to_hash(for_app_config=True),
        }
        try:
            r = requests.put(url, json=body, auth=self.auth, timeout=self.timeout)
            r.raise_for_status()
        except requests.RequestException as exc:
            raise ConfigurationSyncError(f"PUT {url} failed: {exc}") from exc


class JsonFileTracker:
    """
    Spare allocator, configuration sink and pool loader backed by a JSON file.

    Spares are plain addresses or dicts with a "node" address and optional
    "role"; a claim filters on role only when the entry declares one.
    """

    def __init__(self, path: str, app_config_path: Optional[str] = None):
        self.path = Path(path)
        self.app_config_path = Path(app_config_path) if app_config_path else None
        self.global_pools: List[Dict[str, Any]] = []
        self.shards: List[Dict[str, Any]] = []
        self.spares: List[Any] = []
        self.shard_pools: List[str] = []
        self._lock = threading.RLock()
        self.reload()

    @classmethod
    def from_config(cls, config) -> 'JsonFileTracker':
        return cls(config.tracker_path, config.app_config_path)

    def reload(self) -> None:
        if not self.path.exists():
            return
        with open(self.path) as f:
            data = json.load(f)
        self.global_pools = data.get("pools") or []
        self.shards = data.get("shards") or []
        self.spares = data.get("spares") or []
        self.shard_pools = data.get("shard_pools") or []

    def save(self) -> None:
        data = {
            "pools": self.global_pools,
            "shards": self.shards,
            "spares": self.spares,
            "shard_pools": self.shard_pools,
        }
        _write_json(self.path, data)

    # =========================================================================
    # Spare allocation
    # =========================================================================

    @staticmethod
    def _node(entry: Any) -> str:
        return entry["node"] if isinstance(entry, dict) else str(entry)

    @staticmethod
    def _matches(entry: Any, role: Optional[str]) -> bool:
        if role is None or not isinstance(entry, dict) or not entry.get("role"):
            return True
        return entry["role"] == role

    def count_spares(self, role: Optional[str] = None, like: Any = None, **criteria) -> int:
        with self._lock:
            return sum(1 for entry in self.spares if self._matches(entry, role))

    def claim_spares(self, count: int, role: Optional[str] = None, like: Any = None, **criteria) -> List[str]:
        """
        Remove count matching spares from the document and return their addresses.

        Raises:
            InsufficientSparesError: if fewer than count match
        """
        with self._lock:
            matching = [entry for entry in self.spares if self._matches(entry, role)]
            if len(matching) < count:
                raise InsufficientSparesError(
                    f"Not enough spare machines -- requested {count}, only have {len(matching)}"
                )
            claimed = matching[:count]
            self.spares = [entry for entry in self.spares if not any(entry is c for c in claimed)]
            self.save()
            return [self._node(entry) for entry in claimed]

    # =========================================================================
    # Configuration sink
    # =========================================================================

    def persist(self, pool) -> None:
        """Rewrite the whole document (and the app config) from the pool's topology."""
        topology = pool.topology
        try:
            with self._lock:
                self.global_pools = [p.to_hash() for p in topology.functional_partitions]
                self.shards = [s.to_hash() for s in topology.shards() if s.state != ShardState.RECYCLE]
                for keyspace in topology.keyspaces:
                    if keyspace not in self.shard_pools:
                        self.shard_pools.append(keyspace)
                self.save()
                self.write_app_config(topology)
        except OSError as exc:
            raise ConfigurationSyncError(f"Unable to write {self.path}: {exc}") from exc

    def write_app_config(self, topology) -> None:
        if self.app_config_path is None:
            return
        data = {
            "database": {
                "pools": [p.to_hash(for_app_config=True) for p in topology.functional_partitions],
                "shards": [s.to_hash(for_app_config=True) for s in topology.shards() if s.in_config()],
            }
        }
        _write_json(self.app_config_path, data)
        print(f"Regenerated {self.app_config_path}")

    # =========================================================================
    # Loader
    # =========================================================================

    def load(self, topology) -> List[Pool]:
        """Build every pool and non-recycled shard, then link parents and children."""
        with self._lock:
            pools = [p for p in (Pool.from_hash(h, topology) for h in self.global_pools) if p is not None]
            entries = [h for h in self.shards if h.get("state") != ShardState.RECYCLE.value]
            shards = [Shard.from_hash(h, topology) for h in entries]
            for h in entries:
                Shard.assign_relationships(h, shards)
        return pools + shards


def _write_json(path: Path, data: Dict[str, Any]) -> None:
    tmp = path.with_name(path.name + ".tmp")
    with open(tmp, "w") as f:
        json.dump(data, f, indent=2)
        f.write("\n")
    os.replace(tmp, path)
