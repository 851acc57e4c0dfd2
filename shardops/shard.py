"""
Range-partitioned pools and their lifecycle.

A Shard owns the rows whose sharding key falls within [min_id, max_id] of a
keyspace. Splitting a shard walks each child through a fixed sequence of
states, and every step is resumable: re-running an operation picks up from
the child's current state instead of repeating completed work.

    initializing -> exporting -> importing -> replicating -> child
        -> needs_cleanup -> ready

The parent goes ready -> deprecated -> recycle. A ready shard may also be
taken read_only or offline for maintenance.
"""

import math
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from .concurrency import concurrent_each, partition_range
from .errors import AggregateError, InsufficientSparesError, InvalidStateError, PreconditionError
from .pool import Pool
from .table import INFINITY, Table
from .utils import print_error, print_header, print_success

# Server options while bulk-loading a child's data
IMPORT_OPTIONS = (
    "--skip-log-bin",
    "--skip-log-slave-updates",
    "--innodb-autoinc-lock-mode=2",
    "--skip-slave-start",
)
MAX_CHAIN_LENGTH = 3
DEFAULT_KEYSPACE = "shard"


class ShardState(str, Enum):
    READY = "ready"
    READ_ONLY = "read_only"
    OFFLINE = "offline"
    INITIALIZING = "initializing"
    EXPORTING = "exporting"
    IMPORTING = "importing"
    REPLICATING = "replicating"
    CHILD = "child"
    NEEDS_CLEANUP = "needs_cleanup"
    DEPRECATED = "deprecated"
    RECYCLE = "recycle"

    def __str__(self) -> str:
        return self.value


TRANSITIONS = {
    ShardState.INITIALIZING: {ShardState.EXPORTING},
    ShardState.EXPORTING: {ShardState.IMPORTING},
    ShardState.IMPORTING: {ShardState.REPLICATING},
    ShardState.REPLICATING: {ShardState.CHILD},
    ShardState.CHILD: {ShardState.NEEDS_CLEANUP},
    ShardState.NEEDS_CLEANUP: {ShardState.READY},
    ShardState.READY: {ShardState.READ_ONLY, ShardState.OFFLINE, ShardState.DEPRECATED, ShardState.CHILD},
    ShardState.READ_ONLY: {ShardState.READY, ShardState.OFFLINE},
    ShardState.OFFLINE: {ShardState.READY, ShardState.READ_ONLY},
    ShardState.DEPRECATED: {ShardState.RECYCLE},
    ShardState.RECYCLE: set(),
}

IN_CONFIG_STATES = {
    ShardState.READY,
    ShardState.CHILD,
    ShardState.NEEDS_CLEANUP,
    ShardState.READ_ONLY,
    ShardState.OFFLINE,
}

MaxId = Union[int, str]


def normalize_max_id(max_id: Any) -> MaxId:
    if str(max_id).upper() == INFINITY:
        return INFINITY
    return int(max_id)


class Shard(Pool):
    """
    A Pool holding one contiguous range of a keyspace.

    Shards have one master and standby replicas only; active (read) replicas
    are not supported. While a child is still being built or cut over, its
    parent link resolves writes to the parent's master.
    """

    def __init__(
        self,
        min_id: int,
        max_id: MaxId,
        master,
        topology,
        state: Union[ShardState, str] = ShardState.READY,
        keyspace: str = DEFAULT_KEYSPACE,
    ):
        self.min_id = int(min_id)
        self.max_id = normalize_max_id(max_id)
        if self.max_id != INFINITY and self.min_id > self.max_id:
            raise ValueError(f"Invalid shard range {self.min_id}..{self.max_id}")
        self.keyspace = keyspace
        self._state = ShardState(state)
        self.children: List['Shard'] = []
        self.parent: Optional['Shard'] = None
        super().__init__(self.generate_name(), master, topology)

    def generate_name(self) -> str:
        return f"{self.keyspace}-{self.min_id}-{str(self.max_id).lower()}"

    @property
    def state(self) -> ShardState:
        return self._state

    def transition_to(self, new_state: Union[ShardState, str]) -> None:
        """
        Move to new_state and sync the configuration.

        Staying in the current state is allowed (used when resuming).

        Raises:
            InvalidStateError: if the transition is not legal
        """
        new_state = ShardState(new_state)
        old_state = self._state
        if new_state != old_state and new_state not in TRANSITIONS[old_state]:
            raise InvalidStateError(f"Shard {self} cannot move from {old_state} to {new_state}")
        self.observer.on_before_state_change(self, old_state, new_state)
        self._state = new_state
        self.sync_configuration()
        self.observer.on_after_state_change(self, old_state, new_state)

    def in_config(self) -> bool:
        """True for states in which the shard serves production traffic."""
        return self._state in IN_CONFIG_STATES

    def contains(self, id: int) -> bool:
        return self.min_id <= id and (self.max_id == INFINITY or id <= self.max_id)

    @property
    def tables(self) -> List[Table]:
        return Table.from_config(self.config, self.keyspace)

    # =========================================================================
    # Membership
    # =========================================================================

    def mark_slave_active(self, slave_db, weight: int = 100) -> None:
        raise PreconditionError("Shards do not support active slaves")

    def active_slaves(self) -> List[Any]:
        return []

    def standby_slaves(self) -> List[Any]:
        """Standby replicas, excluding masters of child shards."""
        child_masters = [c.master for c in self.children]
        return [s for s in super().standby_slaves() if s not in child_masters]

    def db(self, mode: str = "read"):
        """The DB serving reads or writes; a child still sends writes to its parent."""
        if mode == "write" and self.parent is not None:
            return self.parent.master
        return self.master

    def add_child(self, shard: 'Shard') -> None:
        if shard.parent is not None:
            raise PreconditionError(f"Shard {shard} already has a parent!")
        self.children.append(shard)
        shard.parent = self

    def remove_child(self, shard: 'Shard') -> None:
        if shard.parent is not self:
            raise PreconditionError(f"Shard {shard} isn't a child of this shard!")
        self.children.remove(shard)
        shard.parent = None

    # =========================================================================
    # Split
    # =========================================================================

    def init_children(self, count: int, id_ranges: Optional[Sequence[Tuple[int, int]]] = None) -> List['Shard']:
        """
        Create count child shards in the initializing state, each with a
        master claimed from the spare pool.

        Args:
            count: Number of children
            id_ranges: Optional (min_id, max_id) pairs; by default the range is
                divided as evenly as possible with the remainder going to the
                earliest children
        """
        topology = self.topology
        per_pool = self.config.standby_slaves_per_pool
        if count > topology.count_spares(role="master", like=self.master):
            raise InsufficientSparesError("Not enough master role machines in spare pool!")
        replicas = self.slaves()
        like = replicas[0] if replicas else self.master
        if count * per_pool > topology.count_spares(role="standby_slave", like=like):
            raise InsufficientSparesError("Not enough standby_slave role machines in spare pool!")
        if len(replicas) < per_pool:
            raise PreconditionError(f"Must have at least {per_pool} slaves of shard being split")

        ranges = self._child_ranges(count, id_ranges)
        for lo, hi in ranges:
            spare = topology.claim_spare(role="master", like=self.master)
            if spare.running and spare.read_only():
                spare.disable_read_only()
            spare.output(f"Using ID range of {lo} to {hi} (inclusive)")
            child = Shard(lo, hi, spare, topology, ShardState.INITIALIZING, keyspace=self.keyspace)
            self.add_child(child)
            topology.add_pool(child)
            child.sync_configuration()
        return self.children

    def _child_ranges(self, count: int, id_ranges) -> List[Tuple[int, MaxId]]:
        if id_ranges is None:
            if self.max_id == INFINITY:
                raise PreconditionError(f"ID ranges must be supplied to split {self}, whose range is unbounded")
            ranges = partition_range(self.min_id, self.max_id, count)
            if len(ranges) != count:
                raise PreconditionError(f"Range of {self} is too small to split into {count} pieces")
            return ranges

        ranges = [(int(lo), normalize_max_id(hi)) for lo, hi in id_ranges]
        if len(ranges) != count:
            raise PreconditionError("Wrong number of id_ranges supplied")
        expected_min = self.min_id
        for lo, hi in ranges:
            if lo != expected_min or (hi == INFINITY and (lo, hi) != ranges[-1]):
                raise PreconditionError(f"ID ranges {ranges} do not partition {self.min_id}..{self.max_id}")
            if hi != INFINITY:
                if hi < lo:
                    raise PreconditionError(f"Invalid ID range {lo}..{hi}")
                expected_min = hi + 1
        if ranges[-1][1] != self.max_id:
            raise PreconditionError(f"ID ranges {ranges} do not partition {self.min_id}..{self.max_id}")
        return ranges

    def split(self, pieces: int = 2, id_ranges: Optional[Sequence[Tuple[int, int]]] = None) -> List['Shard']:
        """
        Split this shard into `pieces` children.

        Children are cloned from this shard's standby replicas, then rebuilt
        concurrently. A failing child does not stop its siblings; once all of
        them finish, the failures are raised together. The children are left
        replicating from this shard; move_reads_to_children,
        move_writes_to_children and cleanup complete the split.

        Re-running split resumes an interrupted one when the existing number
        of children equals `pieces`.

        Raises:
            InvalidStateError: if this shard is a child or not ready, or the
                existing children do not match `pieces`
            AggregateError: naming every child that failed to rebuild
        """
        if self.parent is not None:
            raise InvalidStateError("Cannot split a shard that is still a child!")
        if self._state != ShardState.READY:
            raise InvalidStateError(f"Cannot split shard {self} in state {self._state}")
        if self.children and len(self.children) != pieces:
            raise InvalidStateError(
                f"Shard {self} already has {len(self.children)} children; refusing to resume a split "
                f"into {pieces} pieces. Manual intervention required."
            )

        print_header(f"Splitting shard {self} into {pieces} pieces")
        self.observer.on_before_split(self, pieces)
        try:
            if not self.children:
                self.init_children(pieces, id_ranges)
            else:
                self.output(f"Resuming split into {pieces} pieces")
            self.clone_to_children()
            concurrent_each(self.children, lambda c: c.rebuild(), action=f"rebuilding children of {self}")
        except AggregateError as exc:
            print_error(f"[{self}] Split failed for {len(exc.failures)} child shard(s)")
            self.observer.on_after_split(self, exc)
            raise
        for child in self.children:
            child.sync_configuration()
        self.observer.on_after_split(self)
        print_success(f"[{self}] Initial split complete.")
        return self.children

    def clone_to_children(self) -> None:
        """
        Make every child's master a replica of this shard's master, cloned
        from standby replicas.

        When two or more standbys exist, one is left replicating. Each source
        feeds a transfer chain of at most three children.
        """
        sources = self.standby_slaves()
        if not sources:
            raise PreconditionError("Need to have at least 1 slave in order to create additional slaves")
        if len(sources) > 1:
            sources = sources[1:]

        targets = []
        for child in self.children:
            child_master = child.master
            if child_master.is_slave() and child_master.master is not self.master:
                raise PreconditionError(f"Child shard master {child_master} is already a slave of another pool")
            if child_master.is_slave():
                child.output("Already slaving from parent shard master")
            else:
                targets.append(child_master)

        while targets:
            chain_length = min(MAX_CHAIN_LENGTH, math.ceil(len(targets) / len(sources)))
            batches = []
            for i, src in enumerate(sources):
                batch = targets[i * chain_length:(i + 1) * chain_length]
                if batch:
                    batches.append((src, batch))
            concurrent_each(batches, lambda b: b[0].enslave_siblings(b[1]), action=f"cloning children of {self}")
            targets = targets[len(sources) * chain_length:]

    def rebuild(self) -> None:
        """
        Reduce a freshly cloned child to its own range and give it replicas.

        Exports the child's range, re-creates the tables, re-imports the
        export with binary logging off, then claims and attaches standby
        replicas and waits for everyone to catch up. Each phase is skipped
        when the state shows it already completed.
        """
        if not self.master.is_slave():
            raise InvalidStateError("Cannot rebuild a shard that isn't still slaving from another shard")
        if self.in_config():
            raise InvalidStateError("Cannot rebuild an active shard")

        tables = self.tables
        master = self.master
        if self._state in (ShardState.INITIALIZING, ShardState.EXPORTING, ShardState.IMPORTING):
            min_id, max_id, infinity = self._copy_range(tables)

        if self._state in (ShardState.INITIALIZING, ShardState.EXPORTING):
            self.transition_to(ShardState.EXPORTING)
            master.export_schemata(tables)
            master.export_data(tables, min_id, max_id, infinity)

        if self._state in (ShardState.EXPORTING, ShardState.IMPORTING):
            self.transition_to(ShardState.IMPORTING)
            master.import_schemata()
            master.restart_mysql(*IMPORT_OPTIONS)
            master.import_data(tables, min_id, max_id, infinity)
            master.restart_mysql()

        if self._state in (ShardState.IMPORTING, ShardState.REPLICATING):
            self.transition_to(ShardState.REPLICATING)
            self._attach_standby_slaves()
        else:
            raise InvalidStateError(f"Shard not in a state compatible with calling rebuild (current state={self._state})")

    def _copy_range(self, tables: Iterable[Table]) -> Tuple[int, int, bool]:
        if self.max_id != INFINITY:
            return self.min_id, self.max_id, False
        # The last shard of a keyspace exports up to its highest key, then
        # everything above it as one extra chunk
        highest = self.min_id
        for t in tables:
            for key in t.sharding_keys:
                value = self.master.highest_table_key_value(t, key)
                if value is not None:
                    highest = max(highest, int(value))
        return self.min_id, highest, True

    def _attach_standby_slaves(self) -> None:
        wanted = self.config.standby_slaves_per_pool
        master = self.master
        if wanted <= 0:
            master.catch_up_to_master()
            return
        needed = wanted - len(self.standby_slaves())
        new_slaves = []
        if needed > 0:
            parent_slaves = self.parent.slaves() if self.parent is not None else []
            like = parent_slaves[0] if parent_slaves else master
            new_slaves = self.topology.claim_spares(needed, role="standby_slave", like=like)
            master.enslave(new_slaves)
            for s in new_slaves:
                s.resume_replication()
        concurrent_each([master] + new_slaves, lambda db: db.catch_up_to_master(), action=f"catching up {self}")

    # =========================================================================
    # Cutover
    # =========================================================================

    def move_reads_to_children(self) -> None:
        """Send reads to the children; writes still reach this shard's master."""
        if self._state not in (ShardState.READY, ShardState.DEPRECATED):
            raise InvalidStateError(f"Cannot move reads off shard {self} in state {self._state}")
        pending = [c for c in self.children if c.state not in (ShardState.REPLICATING, ShardState.CHILD)]
        if not self.children or pending:
            raise InvalidStateError(f"Children of {self} are not ready to take reads: {', '.join(map(str, pending))}")
        for child in self.children:
            child.transition_to(ShardState.CHILD)
        self.transition_to(ShardState.DEPRECATED)

    def move_writes_to_children(self) -> None:
        """Send writes straight to the children."""
        if self._state != ShardState.DEPRECATED:
            raise InvalidStateError(f"Cannot move writes off shard {self} in state {self._state}")
        pending = [c for c in self.children if c.state not in (ShardState.CHILD, ShardState.NEEDS_CLEANUP)]
        if pending:
            raise InvalidStateError(f"Children of {self} are not taking reads yet: {', '.join(map(str, pending))}")
        for child in self.children:
            child.transition_to(ShardState.NEEDS_CLEANUP)

    def branch_move_reads(self, new_master) -> None:
        """
        Send reads to a replica that will take over this shard; writes keep
        going to the current master, which replicates them over.
        """
        new_master = new_master.to_db()
        if self._state != ShardState.READY:
            raise InvalidStateError(f"Shard {self} in wrong state to perform this action! expected ready, found {self._state}")
        if new_master.master is not self.master:
            raise PreconditionError(f"{new_master} is not replicating from {self.master}")
        old_master = self.master
        self.master = new_master
        if old_master not in self.pending_eject:
            self.pending_eject.append(old_master)
        self.transition_to(ShardState.CHILD)

    def branch_move_writes(self) -> None:
        if self._state != ShardState.CHILD or self.parent is not None:
            raise InvalidStateError(f"Shard {self} in wrong state to perform this action! expected child, found {self._state}")
        self.master.disable_read_only()
        self.transition_to(ShardState.NEEDS_CLEANUP)

    # =========================================================================
    # Cleanup
    # =========================================================================

    def cleanup(self) -> None:
        """
        Finish a split or a branched master change.

        On a deprecated parent: revoke its write access, detach every child
        from it, delete each child's out-of-range rows, then recycle the
        parent and mark the children ready.

        On a shard whose master was moved to a new branch: detach the new
        master from the old one and eject the old master together with its
        remaining replicas.

        Raises:
            InvalidStateError: in any other state
        """
        if self._state == ShardState.DEPRECATED and self.children:
            self.observer.on_before_cleanup(self)
            self._cleanup_split()
        elif self.parent is None and not self.children and self._branched():
            self.observer.on_before_cleanup(self)
            self._cleanup_branch()
        else:
            raise InvalidStateError(f"Cannot run cleanup on shard {self} in state {self._state}")
        self.observer.on_after_cleanup(self)

    def _branched(self) -> bool:
        if self._state not in (ShardState.NEEDS_CLEANUP, ShardState.READY):
            return False
        return bool(self.pending_eject) or bool(self._state == ShardState.NEEDS_CLEANUP and self.master.master)

    def _cleanup_split(self) -> None:
        if self.parent is not None:
            raise InvalidStateError("Cannot call cleanup on a child shard")
        for child in self.children:
            if child.state != ShardState.NEEDS_CLEANUP:
                raise InvalidStateError(f"Child {child} state ({child.state}) does not indicate cleanup is needed")
            if not child.master.is_slave():
                raise PreconditionError(f"Child shard master {child.master} should be a slave in order to clean up")

        tables = self.tables
        self.master.revoke_all_access()

        def clean(child):
            child.master.disable_replication()
            child.master.prune_data_to_range(tables, child.min_id, child.max_id)

        concurrent_each(self.children, clean, action=f"cleaning up children of {self}")

        for child in list(self.children):
            child.transition_to(ShardState.READY)
            self.remove_child(child)
            child.sync_configuration()
        self.transition_to(ShardState.RECYCLE)
        self.topology.remove_pool(self)

        print_success(f"[{self}] This shard has now been fully split.")
        for node in self.nodes:
            node.output("This node is no longer in use; please recycle or cancel it.")

    def _cleanup_branch(self) -> None:
        master = self.master
        ejected = list(self.pending_eject)
        old_master = master.master
        if old_master and old_master not in ejected:
            ejected.append(old_master)
        if old_master:
            master.disable_replication()

        for old in ejected:
            if not old.is_available():
                old.output("Unreachable; skipping access revocation", warning=True)
                continue
            old.revoke_all_access()
            for replica in old.slaves or []:
                if replica is not master:
                    replica.output("This node is no longer in use; please recycle or cancel it.")
            old.output("This node is no longer in use; please recycle or cancel it.")
        self.pending_eject = []

        if self._state == ShardState.NEEDS_CLEANUP:
            self.transition_to(ShardState.READY)
        else:
            self.sync_configuration()

    # =========================================================================
    # Reporting and serialization
    # =========================================================================

    def row_counts(self) -> Dict[str, int]:
        """
        Rows per sharded table within this shard's range.

        Counted in chunks on the last standby replica when there is one, so
        the master keeps serving traffic. An unbounded shard is counted up to
        its highest key.
        """
        standbys = self.standby_slaves()
        node = standbys[-1] if standbys else self.master
        node.output(f"Starting counts for {self}")
        tables = self.tables
        min_id, max_id, _ = self._copy_range(tables)
        counts = node.row_counts(tables, min_id, max_id)
        self.output(f"Found counts: {counts}")
        return counts

    def summary(self, with_children: bool = False) -> bool:
        super().summary()
        print(f"\tstate           = {self._state}  range {self.min_id}..{self.max_id}")
        if with_children:
            for child in self.children:
                child.summary()
        return True

    def to_hash(self, for_app_config: bool = False) -> Optional[Dict[str, Any]]:
        """
        Serialize for the tracker document, or for the application config
        (None for shards that should not receive queries).
        """
        if for_app_config:
            if not self.in_config():
                return None
            me: Dict[str, Any] = {"min_id": self.min_id, "max_id": self.max_id}
            if self._state in (ShardState.READY, ShardState.NEEDS_CLEANUP):
                me["host"] = str(self.master)
            elif self._state == ShardState.CHILD:
                writer = self.parent.master if self.parent is not None else self.master.master
                me["host_read"] = str(self.master)
                me["host_write"] = str(writer)
            elif self._state == ShardState.READ_ONLY:
                me["host_read"] = str(self.master)
                me["host_write"] = False
            elif self._state == ShardState.OFFLINE:
                me["host"] = False
            return me

        return {
            "min_id": self.min_id,
            "max_id": self.max_id,
            "keyspace": self.keyspace,
            "parent": self.parent.name if self.parent is not None else None,
            "state": self._state.value,
            "master": str(self.master),
            "slaves": self._slave_data(),
            "pending_eject": [str(db) for db in self.pending_eject],
        }

    @classmethod
    def from_hash(cls, data: Dict[str, Any], topology) -> 'Shard':
        """Build a shard from a tracker entry; parents are linked by assign_relationships."""
        registry = topology.registry
        shard = cls(
            data["min_id"],
            data["max_id"],
            registry.db(data["master"]),
            topology,
            ShardState(data.get("state") or ShardState.READY),
            keyspace=data.get("keyspace") or DEFAULT_KEYSPACE,
        )
        shard.pending_eject = [registry.db(addr) for addr in data.get("pending_eject") or []]
        return shard

    @staticmethod
    def assign_relationships(data: Dict[str, Any], all_shards: List['Shard']) -> None:
        if not data.get("parent"):
            return
        keyspace = data.get("keyspace") or DEFAULT_KEYSPACE
        min_id, max_id = int(data["min_id"]), normalize_max_id(data["max_id"])
        shard = next((s for s in all_shards
                      if s.min_id == min_id and s.max_id == max_id and s.keyspace == keyspace), None)
        parent = next((s for s in all_shards if s.name == data["parent"]), None)
        if parent is None:
            raise PreconditionError(f"Cannot find parent shard {data['parent']}")
        if shard is not None:
            parent.add_child(shard)
