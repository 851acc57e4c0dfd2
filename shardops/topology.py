"""
Topology: the registry of every Pool and Shard.

The topology keeps bookkeeping only. Spare machines come from an allocator,
configuration changes go to a sink, and the initial pool list comes from a
loader; all three are supplied at construction.

Allocator interface:
    claim_spares(count, **criteria) -> list of DB or "ip[:port]" strings
    count_spares(**criteria) -> int
Sink interface:
    persist(pool)   (raise ConfigurationSyncError on failure)
Loader interface:
    load(topology) -> list of Pool / Shard
"""

import threading
from typing import Any, Iterable, List, Optional, Union

from .errors import ConfigurationSyncError, InsufficientSparesError, PreconditionError
from .events import TopologyObserver
from .pool import Pool
from .registry import Registry
from .shard import DEFAULT_KEYSPACE, Shard, ShardState, normalize_max_id
from .tracker import NullConfigurationSink
from .utils import print_info, print_warning

VALID_ROLES = ("master", "active_slave", "standby_slave", "backup_slave")


class Topology:
    """All pools and shards of one environment, plus the registry of their DBs."""

    def __init__(
        self,
        config,
        allocator=None,
        sink=None,
        observer: Optional[TopologyObserver] = None,
        loader=None,
        session_factory=None,
    ):
        self.config = config
        self.registry = Registry(config, session_factory)
        self.registry.topology = self
        self.allocator = allocator
        self.sink = sink or NullConfigurationSink()
        self.observer = observer or TopologyObserver()
        self.loader = loader
        self._pools: List[Pool] = []
        self._lock = threading.RLock()
        if loader is not None:
            self.load_pools()

    # =========================================================================
    # Pools and shards
    # =========================================================================

    @property
    def pools(self) -> List[Pool]:
        with self._lock:
            return list(self._pools)

    def shards(self, keyspace: Optional[str] = None) -> List[Shard]:
        """Every shard, or only those of one keyspace."""
        return [p for p in self.pools if isinstance(p, Shard) and (keyspace is None or p.keyspace == keyspace)]

    @property
    def keyspaces(self) -> List[str]:
        names: List[str] = []
        for s in self.shards():
            if s.keyspace not in names:
                names.append(s.keyspace)
        return names

    @property
    def functional_partitions(self) -> List[Pool]:
        """Pools that are not shards."""
        return [p for p in self.pools if not isinstance(p, Shard)]

    def pool(self, target: Any) -> Optional[Pool]:
        """Find a pool by master DB, or by name or alias (case-insensitive)."""
        if isinstance(target, str):
            wanted = target.lower()
            for p in self.pools:
                if p.name.lower() == wanted or wanted in (a.lower() for a in p.aliases):
                    return p
            return None
        for p in self.pools:
            if p.master is target:
                return p
        return None

    def shard(self, min_id: int, max_id: Any = None, keyspace: str = DEFAULT_KEYSPACE) -> Optional[Shard]:
        """
        Find a shard by its range, or by min_id alone when max_id is omitted.

        Raises:
            PreconditionError: if min_id alone matches several shards
        """
        candidates = [s for s in self.shards(keyspace) if s.min_id == int(min_id)]
        if max_id is not None:
            max_id = normalize_max_id(max_id)
            candidates = [s for s in candidates if s.max_id == max_id]
        elif len(candidates) > 1:
            raise PreconditionError(f"Multiple shards found with min_id {min_id}!")
        return candidates[0] if candidates else None

    def add_pool(self, pool: Pool) -> Pool:
        """
        Register a pool or shard.

        Raises:
            PreconditionError: if another pool has the same master, or another
                shard covers the same range of the same keyspace
        """
        with self._lock:
            for existing in self._pools:
                if existing is pool:
                    return pool
                if existing.master is pool.master:
                    raise PreconditionError(f"{pool.master} is already the master of pool {existing}")
                if (isinstance(pool, Shard) and isinstance(existing, Shard)
                        and (existing.min_id, existing.max_id, existing.keyspace)
                        == (pool.min_id, pool.max_id, pool.keyspace)):
                    raise PreconditionError(f"Shard {existing} already covers {pool.min_id}..{pool.max_id}")
            self._pools.append(pool)
        return pool

    def remove_pool(self, pool: Pool) -> None:
        with self._lock:
            if pool in self._pools:
                self._pools.remove(pool)

    # =========================================================================
    # Routing
    # =========================================================================

    def shard_for_id(self, id: int, keyspace: Optional[str] = None) -> Optional[Shard]:
        """
        The shard currently owning id.

        Recycled shards and children still being built are ignored; a child
        already in production wins over its parent during a split.
        """
        choices = [s for s in self.shards(keyspace or DEFAULT_KEYSPACE)
                   if s.state != ShardState.RECYCLE and s.contains(int(id))]
        choices = [s for s in choices if s.parent is None or s.in_config()]
        children = [s for s in choices if s.parent is not None]
        if children:
            return children[0]
        return choices[0] if choices else None

    def shard_db_for_id(self, id: int, mode: str = "read", keyspace: Optional[str] = None):
        shard = self.shard_for_id(id, keyspace)
        if shard is None:
            raise PreconditionError(f"No shard owns ID {id}")
        return shard.db(mode)

    # =========================================================================
    # Spares
    # =========================================================================

    def _require_allocator(self):
        if self.allocator is None:
            raise PreconditionError("No spare allocator configured")
        return self.allocator

    def claim_spares(self, count: int, **criteria) -> List[Any]:
        """
        Claim count spare machines matching criteria (role, like, ...).

        Raises:
            InsufficientSparesError: if fewer than count are available
        """
        if count <= 0:
            return []
        allocator = self._require_allocator()
        with self._lock:
            claimed = list(allocator.claim_spares(count, **criteria))
        if len(claimed) < count:
            raise InsufficientSparesError(f"Not enough spare machines -- requested {count}, only got {len(claimed)}")
        return [self.registry.db(s) if isinstance(s, str) else s.to_db() for s in claimed]

    def count_spares(self, **criteria) -> int:
        allocator = self._require_allocator()
        with self._lock:
            return int(allocator.count_spares(**criteria))

    def claim_spare(self, **criteria):
        return self.claim_spares(1, **criteria)[0]

    # =========================================================================
    # Roles
    # =========================================================================

    @property
    def valid_roles(self) -> List[str]:
        return list(VALID_ROLES)

    @property
    def slave_roles(self) -> List[str]:
        return [r for r in VALID_ROLES if r != "master"]

    def normalize_roles(self, *roles: Union[str, Iterable[str]]) -> List[str]:
        """Lower-case and validate roles; 'slave' expands to every replica role."""
        flat: List[str] = []
        for r in roles:
            if isinstance(r, (list, tuple, set)):
                flat.extend(str(x) for x in r)
            else:
                flat.append(str(r))
        result: List[str] = []
        for r in flat:
            r = r.lower()
            expanded = self.slave_roles if r == "slave" else [r]
            for role in expanded:
                if role not in VALID_ROLES:
                    raise ValueError(f"{role} is not a valid role")
                if role not in result:
                    result.append(role)
        return result

    # =========================================================================
    # Persistence
    # =========================================================================

    def sync(self, pool: Pool) -> bool:
        """
        Persist a pool's configuration through the sink.

        A failing sink is reported as a warning; returns False in that case.
        """
        if not pool.anonymous:
            with self._lock:
                if pool not in self._pools:
                    self._pools.append(pool)
        try:
            self.sink.persist(pool)
        except ConfigurationSyncError as exc:
            print_warning(f"[{pool}] Configuration sync failed: {exc}")
            self.observer.on_after_sync(pool, exc)
            return False
        self.observer.on_after_sync(pool)
        return True

    def load_pools(self) -> None:
        if self.loader is None:
            print_warning("No loader configured, so no pools are imported automatically")
            return
        pools = self.loader.load(self)
        for pool in pools:
            self.add_pool(pool)
        print_info(f"Loaded {len(pools)} pools and shards")

    def clear(self) -> None:
        """Forget every pool, host and DB."""
        with self._lock:
            self._pools = []
        self.registry.clear()

    def refresh(self) -> bool:
        self.clear()
        self.load_pools()
        return True
