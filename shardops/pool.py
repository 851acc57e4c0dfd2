"""
Replication pools and the master promotion protocol.

A Pool is one master plus its replicas, which fall into three classes:
- active: serve production reads (tracked in active_slave_weights)
- standby: kept for failover and for cloning new replicas
- backup: dedicated to backups, never promoted
"""

import time
from typing import Any, Dict, List, Optional, Tuple

from .concurrency import concurrent_each
from .errors import ConsistencyError, OperationTimeout, PreconditionError
from .events import TopologyObserver
from .utils import output, print_step, print_success, print_warning

DEFAULT_WEIGHT = 100
SLAVE_TYPES = ("active", "standby", "backup")
STABLE_POLLS = 3

ROLE_LABELS = {
    "active": "ACTIVE_SLAVE",
    "standby": "STANDBY_SLAVE",
    "backup": "BACKUP_SLAVE",
}


class Pool:
    """A master DB and its classified replicas."""

    def __init__(self, name: str, master, topology, anonymous: bool = False):
        self.name = name
        self.master = master.to_db() if master is not None else None
        self.topology = topology
        self.anonymous = anonymous
        self.aliases: List[str] = []
        self.slave_name: Optional[str] = None
        self.master_read_weight = 0
        self.active_slave_weights: Dict[Any, int] = {}
        # Former masters left outside the replication tree by a promotion
        self.pending_eject: List[Any] = []

    def __str__(self) -> str:
        return self.name

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"

    @property
    def config(self):
        return self.master.config

    @property
    def observer(self) -> TopologyObserver:
        if self.topology is not None:
            return self.topology.observer
        return TopologyObserver()

    def output(self, message: Any, table: Any = None, warning: bool = False) -> str:
        return output(self, message, table, warning)

    # =========================================================================
    # Forwarding to the master
    # =========================================================================

    def probe(self, force: bool = False):
        return self.master.probe(force)

    def data_set_size(self, in_gb: bool = False):
        return self.master.data_set_size(in_gb)

    # =========================================================================
    # Membership
    # =========================================================================

    def slaves(self, slave_type: Optional[str] = None) -> List[Any]:
        """
        All replicas of the master, or only those of one type.

        Args:
            slave_type: None, 'active', 'standby' or 'backup'
        """
        if slave_type is None:
            return list(self.master.slaves or [])
        if slave_type == "active":
            return self.active_slaves()
        if slave_type == "standby":
            return self.standby_slaves()
        if slave_type == "backup":
            return self.backup_slaves()
        return []

    def active_slaves(self) -> List[Any]:
        return [s for s in self.master.slaves or [] if s in self.active_slave_weights]

    def standby_slaves(self) -> List[Any]:
        return [s for s in self.master.slaves or [] if s not in self.active_slave_weights and not s.for_backups()]

    def backup_slaves(self) -> List[Any]:
        return [s for s in self.master.slaves or [] if s not in self.active_slave_weights and s.for_backups()]

    @property
    def nodes(self) -> List[Any]:
        """The master followed by every replica."""
        return [self.master] + self.slaves()

    def has_active_slave(self, slave_db, weight: int = DEFAULT_WEIGHT) -> None:
        slave_db = slave_db.to_db()
        if slave_db is self.master:
            raise PreconditionError("Attempt to mark a DB as its own active slave")
        self.active_slave_weights[slave_db] = int(weight)

    def mark_slave_active(self, slave_db, weight: int = DEFAULT_WEIGHT) -> None:
        """Turn a standby replica into an active one and sync the configuration."""
        if slave_db.for_backups():
            raise PreconditionError("Attempt to make a backup slave be an active slave")
        self.has_active_slave(slave_db, weight)
        self.sync_configuration()

    def mark_slave_standby(self, slave_db) -> None:
        slave_db = slave_db.to_db()
        if slave_db is self.master:
            raise PreconditionError("Cannot call mark_slave_standby on a master")
        self.active_slave_weights.pop(slave_db, None)
        self.sync_configuration()

    def remove_slave(self, slave_db) -> None:
        """
        Detach a replica from the pool permanently (RESET SLAVE ALL on it).

        The executed coordinates are printed first so the change can be
        rolled back by hand.
        """
        slave_db = slave_db.to_db()
        if slave_db.master is not self.master:
            raise PreconditionError(f"{slave_db} is not a slave in pool {self}")
        slave_db.pause_replication()
        slave_db.disable_replication()
        self.active_slave_weights.pop(slave_db, None)
        self.sync_configuration()

    def add_alias(self, name: str) -> bool:
        if name in self.aliases:
            return False
        self.aliases.append(name)
        return True

    def sync_configuration(self) -> None:
        """Hand the pool to the configuration sink; anonymous pools are never synced."""
        if self.anonymous or self.topology is None:
            return
        self.topology.sync(self)

    # =========================================================================
    # Master promotion
    # =========================================================================

    def promote_slave(self, candidate, reattach_old_master: bool = True, wait_timeout: Optional[float] = None) -> bool:
        """
        Make candidate the master of this pool.

        When the current master is reachable it is made read-only and every
        replica is drained to its final binlog position. When it is not, the
        replicas are instead waited on until their progress stops moving.
        Every remaining replica (and, if requested and reachable, the old
        master) is then re-pointed at the candidate and verified before its
        replication is resumed.

        Args:
            candidate: Replica of the current master to promote
            reattach_old_master: Make the old master a replica of the candidate
            wait_timeout: Bound for the replica drain wait in seconds
                (default config.promotion_wait_timeout; None waits forever)

        Returns:
            True if every re-pointed replica is replicating afterwards

        Raises:
            PreconditionError: if candidate is not a promotable replica
            ConsistencyError: if the old master keeps taking writes, a replica
                refuses to pause, or a re-pointed replica reports wrong settings
            OperationTimeout: if the drain wait exceeds wait_timeout
        """
        candidate = candidate.to_db()
        demoted = self.master
        if wait_timeout is None:
            wait_timeout = self.config.promotion_wait_timeout

        replicas = self._known_replicas(demoted)
        if candidate not in replicas:
            raise PreconditionError(f"Cannot promote {candidate}: it is not a replica of {demoted}")
        if candidate.for_backups():
            raise PreconditionError(f"Cannot promote {candidate}: backup slaves are not suitable for promotion")

        self.observer.on_before_promotion(self, candidate)
        print_step(f"[{self}] Promoting {candidate} to replace {demoted}")

        demoted_available = demoted.is_available()
        if demoted_available:
            coords = self._freeze_master(demoted)
            self._wait_for_replicas_at(replicas, coords, wait_timeout)
        else:
            self.output(f"{demoted} is unreachable; waiting for replicas to stop making progress", warning=True)
            self._wait_for_replicas_stable(replicas, wait_timeout)

        concurrent_each(replicas, lambda r: r.pause_replication(), action=f"pausing replicas of {demoted}")
        still_running = [r for r in replicas if r.replicating()]
        if still_running:
            raise ConsistencyError(f"Unable to pause replication on {', '.join(str(r) for r in still_running)}")

        creds = candidate.replication_credentials()
        log_file, log_pos = candidate.binlog_coordinates()

        if demoted_available:
            candidate.disable_replication()
        else:
            candidate.mysql_root_cmd("STOP SLAVE; RESET SLAVE ALL")
            candidate._detach_from_master()
            candidate._master = False
            candidate._repl_paused = None
        candidate.disable_read_only()
        if candidate._slaves is None:
            candidate._slaves = []

        new_replicas = [r for r in replicas if r is not candidate]
        if reattach_old_master and demoted_available:
            new_replicas.append(demoted)
        elif demoted not in self.pending_eject:
            self.pending_eject.append(demoted)

        for r in new_replicas:
            r.change_master_to(candidate, log_file=log_file, log_pos=log_pos,
                               user=creds["user"], password=creds["password"])

        expected = {
            "master_host": candidate.ip,
            "master_user": creds["user"],
            "master_log_file": log_file,
            "exec_master_log_pos": str(log_pos),
        }
        for r in new_replicas:
            status = r.slave_status()
            for option, value in expected.items():
                if status.get(option) != value:
                    raise ConsistencyError(
                        f"Unexpected slave status value for {option} in replica {r} after promotion: "
                        f"{status.get(option)!r} (expected {value!r})"
                    )
            if not r.replicating():
                r.resume_replication()

        self.active_slave_weights.pop(candidate, None)
        self.master = candidate
        self.sync_configuration()

        replicating = all(r.replicating() for r in new_replicas)
        if replicating:
            print_success(f"[{self}] {candidate} is now the master")
        else:
            print_warning(f"[{self}] {candidate} is now the master, but not every replica is replicating")
        self.observer.on_after_promotion(self, demoted, candidate, replicating)
        return replicating

    def _known_replicas(self, demoted) -> List[Any]:
        if demoted._slaves is not None:
            return list(demoted._slaves)
        if demoted.is_available():
            return list(demoted.slaves or [])
        # An unreachable master cannot list its replicas; ask the ones we know
        return [db for db in demoted.registry.known_dbs() if db is not demoted and db.master is demoted]

    def _freeze_master(self, demoted) -> Tuple[str, int]:
        if not demoted.enable_read_only():
            raise ConsistencyError(f"Unable to set read_only on {demoted}")
        coords = demoted.binlog_coordinates()
        if demoted.binlog_coordinates(display_info=False) != coords:
            raise ConsistencyError(f"{demoted} is still taking writes, unable to promote")
        return coords

    def _wait_for_replicas_at(self, replicas: List[Any], coords: Tuple[str, int], timeout: Optional[float]) -> None:
        self.output(f"Waiting for replicas to reach coordinates ({coords[0]}, {coords[1]})")
        start = time.time()
        while True:
            behind = [r for r in replicas if tuple(r.repl_binlog_coordinates(display_info=False)) != tuple(coords)]
            if not behind:
                return
            if timeout is not None and time.time() - start >= timeout:
                raise OperationTimeout(
                    f"Replicas {', '.join(str(r) for r in behind)} did not reach ({coords[0]}, {coords[1]}) "
                    f"within {timeout} seconds"
                )
            time.sleep(1)

    def _wait_for_replicas_stable(self, replicas: List[Any], timeout: Optional[float]) -> None:
        start = time.time()
        previous = None
        unchanged = 0
        while True:
            current = {r: tuple(r.repl_binlog_coordinates(display_info=False)) for r in replicas}
            if current == previous:
                unchanged += 1
                if unchanged >= STABLE_POLLS:
                    return
            else:
                unchanged = 0
            previous = current
            if timeout is not None and time.time() - start >= timeout:
                raise OperationTimeout(f"Replicas of {self} kept making progress for {timeout} seconds")
            time.sleep(1)

    # =========================================================================
    # Reporting and serialization
    # =========================================================================

    def summary(self) -> bool:
        """Print the pool's members."""
        self.probe()
        alias_text = f"  (aliases: {', '.join(self.aliases)})" if self.aliases else ""
        print(f"{self.name}{alias_text}  [{self.master.data_set_size(True)}GB]")
        print(f"\tmaster          = {self.master.ip:<13} {self.master.hostname()}")
        for slave_type in SLAVE_TYPES:
            for i, s in enumerate(self.slaves(slave_type), 1):
                print(f"\t{slave_type:<7} slave {i} = {s.ip:<13} {s.hostname()}")
        return True

    def to_hash(self, for_app_config: bool = False) -> Dict[str, Any]:
        """
        Serialize the pool for the tracker document, or for the application
        config when for_app_config is set (active replicas only).
        """
        if for_app_config:
            slave_data = [{"host": str(db), "weight": w} for db, w in self.active_slave_weights.items()]
        else:
            slave_data = self._slave_data()
        return {
            "name": self.name,
            "aliases": list(self.aliases),
            "slave_name": self.slave_name,
            "master": str(self.master),
            "master_read_weight": self.master_read_weight or 0,
            "slaves": slave_data,
        }

    def _slave_data(self) -> List[Dict[str, Any]]:
        data = [{"host": str(db), "weight": w, "role": ROLE_LABELS["active"]}
                for db, w in self.active_slave_weights.items()]
        data += [{"host": str(db), "role": ROLE_LABELS["standby"]} for db in self.standby_slaves()]
        data += [{"host": str(db), "role": ROLE_LABELS["backup"]} for db in self.backup_slaves()]
        return data

    @classmethod
    def from_hash(cls, data: Dict[str, Any], topology) -> Optional['Pool']:
        if not data.get("master"):
            return None
        registry = topology.registry
        pool = cls(data["name"], registry.db(data["master"]), topology)
        pool.master_read_weight = data.get("master_read_weight") or 0
        pool.slave_name = data.get("slave_name")
        for name in data.get("aliases") or []:
            pool.add_alias(name)
        for slave_info in data.get("slaves") or []:
            if slave_info.get("role") == ROLE_LABELS["active"]:
                pool.has_active_slave(registry.db(slave_info["host"]), slave_info.get("weight", DEFAULT_WEIGHT))
        return pool
