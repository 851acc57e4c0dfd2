"""
State accessors and replication-topology probing of DB.

master, slaves, repl_paused and running are discovered lazily by probe() and
memoized until a forced re-probe. master is a DB, False when the instance has
no master, or None when it cannot be determined (MySQL not running).
"""

import re
import threading
import time
from typing import Any, Dict, List, Optional, Tuple

from ..concurrency import concurrent_each
from ..errors import ConsistencyError, PreconditionError
from ..utils import to_int

NOT_RUNNING_MARKERS = ("not running", "stop/waiting", "inactive")


class StateMixin:

    # =========================================================================
    # Probed attributes
    # =========================================================================

    @property
    def master(self):
        if not self._master and not self.running:
            return None
        if self._master is None:
            self.probe()
        return self._master

    @property
    def slaves(self) -> Optional[List[Any]]:
        if self._slaves is None and not self.running:
            return None
        if self._slaves is None:
            self.probe()
        return self._slaves

    @property
    def repl_paused(self) -> Optional[bool]:
        """True/False for a replica; None for a non-replica or unknown state."""
        if not self.master:
            return None
        if self._repl_paused is None:
            self.probe()
        return self._repl_paused

    @property
    def running(self) -> bool:
        if self._running is None:
            self.probe()
        return bool(self._running)

    @property
    def probed(self) -> bool:
        return all(v is not None for v in (self._master, self._slaves, self._running))

    def probe(self, force: bool = False):
        """
        Discover whether MySQL runs, who its master is, and who replicates from it.

        Does nothing when everything is already known, unless force is set.
        Probing never changes remote state unless the instance is found with
        one replication thread stopped and config.pause_on_inconsistency is on.
        """
        if self.probed and not force:
            return self
        self.output("Probing MySQL installation")
        self._probe_running()
        self.probe_master()
        self.probe_slaves()
        return self

    def _probe_running(self) -> None:
        if self.host.is_available():
            status = self.service("status", self.config.mysql_service).lower()
            self._running = not any(marker in status for marker in NOT_RUNNING_MARKERS)
        else:
            self._running = False

    def probe_master(self) -> None:
        """Read SHOW SLAVE STATUS to find the master and whether replication is paused."""
        if not self._running:
            return
        status = self.slave_status()
        if not status:
            self._master = False
            return

        self._master = self.registry.db(status["master_host"], to_int(status.get("master_port"), 3306))
        io_running = status.get("slave_io_running", "").lower()
        sql_running = status.get("slave_sql_running", "").lower()
        if io_running != sql_running:
            self.output("One replication thread is stopped and the other is not.", warning=True)
            if self.config.verify_replication:
                self.output("You must repair this node manually, OR remove it from its pool permanently if it is unrecoverable.")
                raise ConsistencyError(f"Fatal replication problem on {self}")
            if self.config.pause_on_inconsistency:
                self.pause_replication()
            else:
                self.output("Treating replication as paused; leaving the replication threads untouched", warning=True)
                self._repl_paused = True
        else:
            self._repl_paused = io_running == "no"

    def probe_slaves(self) -> None:
        """
        Find replicas through the Binlog Dump threads in the process list.

        Each candidate is probed concurrently and kept only if its own master
        is this instance.
        """
        if not self._running:
            return
        processes = self.mysql_root_cmd("SHOW PROCESSLIST", terminator=";").split("\n")

        # The same replica can be listed twice in odd edge cases
        ips: List[str] = []
        for line in processes:
            if "Binlog Dump" not in line:
                continue
            ip = line.split()[2].split(":")[0]
            if ip not in ips:
                ips.append(ip)

        found = []
        lock = threading.Lock()

        def check(ip):
            db = self.registry.db(ip)
            db.probe()
            if db.master is self:
                with lock:
                    found.append(db)

        concurrent_each(ips, check, action=f"probing replicas of {self}")
        self._slaves = found

    # =========================================================================
    # Live state
    # =========================================================================

    def global_variables(self) -> Dict[str, str]:
        return {row["Variable_name"]: row["Value"] for row in self.query_return_array("SHOW GLOBAL VARIABLES")}

    def global_status(self) -> Dict[str, str]:
        return {row["Variable_name"]: row["Value"] for row in self.query_return_array("SHOW GLOBAL STATUS")}

    def read_only(self) -> bool:
        return str(self.global_variables().get("read_only", "")).lower() == "on"

    def binary_log_enabled(self) -> bool:
        return str(self.global_variables().get("log_bin", "")).lower() == "on"

    def replicating(self) -> bool:
        """True if both replication threads currently run (asks the server, not the cache)."""
        status = self.slave_status()
        return all(str(status.get(k, "")).lower() == "yes" for k in ("slave_io_running", "slave_sql_running"))

    def is_slave(self) -> bool:
        return bool(self.master)

    def has_slaves(self) -> bool:
        return bool(self.slaves)

    def taking_connections(self, max_conns: int = 4, interval: float = 2.0, threshold: int = 1) -> bool:
        """
        True if more than max_conns connections are open (as seen by the app
        user), or more than threshold new ones arrive within interval seconds.
        """
        if len(self.query_return_array("SHOW PROCESSLIST")) > max_conns:
            return True
        before = to_int(self.global_status().get("Connections"))
        time.sleep(interval)
        return to_int(self.global_status().get("Connections")) - before > threshold

    def taking_writes(self, interval: float = 5.0) -> bool:
        """True if the binlog position moves within interval seconds."""
        coords = self.binlog_coordinates(display_info=False)
        time.sleep(interval)
        return coords != self.binlog_coordinates(display_info=False)

    def is_standby(self) -> bool:
        return not self.running or (self.is_slave() and not self.taking_connections())

    def for_backups(self) -> bool:
        """Backup replicas are never promoted; they are recognized by a hostname starting with 'backup'."""
        return self.host.hostname().startswith("backup")

    def version_tuple(self) -> Tuple[int, ...]:
        result = None
        if self.running:
            version = self.global_variables().get("version")
            if version:
                result = tuple(to_int(part) for part in re.findall(r"\d+", version)[:3])
        if not result:
            out = self.execute("mysqld --version").lower()
            match = re.search(r"ver\s*(\d+)\.(\d+)\.(\d+)", out)
            if not match:
                raise PreconditionError(f"Unable to determine version for {self}")
            result = tuple(int(g) for g in match.groups())
        return result

    def promotable_to_master(self) -> bool:
        """False for backup replicas, the current master, or a node newer than its peers."""
        if self.for_backups():
            return False
        p = self.pool(create_if_missing=True)
        if p.master is self:
            return False
        mine = self.version_tuple()[:2]
        return all(db is self or not db.is_available() or db.version_tuple()[:2] >= mine for db in p.nodes)

    # =========================================================================
    # Pool membership
    # =========================================================================

    def pool(self, create_if_missing: bool = False):
        """
        The Pool this instance belongs to, looked up by master.

        With create_if_missing, an anonymous pool (never synced to the
        configuration sink) is returned when no tracked pool exists.
        """
        from ..pool import Pool

        topology = self.registry.topology
        result = topology.pool(self) if topology is not None else None
        if result is None and topology is not None and self.master:
            result = topology.pool(self.master)
        if result is None and create_if_missing:
            pool_master = self.master or self
            result = Pool(f"anon_pool_{pool_master.ip.replace('.', '')}", pool_master, topology, anonymous=True)
        return result

    def role(self) -> str:
        """One of master, active_slave, standby_slave or backup_slave."""
        p = self.pool()
        if not self.master:
            return "master"
        if p is not None and p.master is self:
            return "master"
        if self.for_backups():
            return "backup_slave"
        if p is not None and self in p.active_slave_weights:
            return "active_slave"
        if p is None and not self.is_standby():
            return "active_slave"
        return "standby_slave"

    def data_set_size(self, in_gb: bool = False):
        """Bytes (or GiB, rounded) used by the app schema plus the shared tablespace."""
        base = self.mysql_directory
        total = self.dir_size(f"{base}/{self.config.mysql_schema}") + self.dir_size(f"{base}/ibdata1")
        return round(total / 1073741824.0) if in_gb else total
