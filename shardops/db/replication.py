"""
Replication and binlog methods of DB.

None of the re-pointing operations start replication on the instance they
re-point: after change_master_to the replica stays paused until
resume_replication is called.
"""

import math
import re
import time
from typing import Any, Dict, Iterable, Optional, Tuple

from ..concurrency import concurrent_each
from ..errors import ConsistencyError, OperationTimeout, PreconditionError

Coordinates = Tuple[str, int]


class ReplicationMixin:

    def slave_status(self) -> Dict[str, str]:
        """
        SHOW SLAVE STATUS as a dict; empty when this is not a replica.

        A status left behind by disable_replication (master_user 'test')
        counts as no status. A missing status on an instance the model
        believes is a replica raises in strict mode and warns otherwise.
        """
        status = self.mysql_root_cmd("SHOW SLAVE STATUS", parse=True)
        if status.get("master_user") == "test":
            status = {}
        if self._master and not status:
            message = f"should be a slave of {self._master}, but SHOW SLAVE STATUS indicates otherwise"
            if self.config.verify_replication:
                raise ConsistencyError(f"{self}: {message}")
            self.output(message, warning=True)
        return status

    # =========================================================================
    # Start / stop
    # =========================================================================

    def pause_replication(self) -> Coordinates:
        """STOP SLAVE, unless already paused. Returns the executed coordinates."""
        if not self.master:
            raise PreconditionError(f"{self} has no master")
        self.output(f"Pausing replication from {self._master}.")
        if self._repl_paused:
            self.output("Replication was already paused.")
        else:
            self.output(self.mysql_root_cmd("STOP SLAVE"))
            self._repl_paused = True
        return self.repl_binlog_coordinates()

    def resume_replication(self) -> None:
        if not self.master:
            raise PreconditionError(f"{self} has no master")
        self.repl_binlog_coordinates()
        self.output(f"Resuming replication from {self._master}.")
        self.output(self.mysql_root_cmd("START SLAVE"))
        self._repl_paused = False

    def pause_replication_with(self, *others) -> Coordinates:
        """
        Stop this replica and its siblings at the same position of their master.

        Every node is paused, then the ones that stopped behind are replayed up
        to the furthest node's executed coordinates.

        Returns:
            The shared master coordinates

        Raises:
            PreconditionError: if no other node is given or the nodes do not
                share a master
            ConsistencyError: if the nodes did not end up at the same position
        """
        if not others:
            raise PreconditionError("pause_replication_with requires at least one other DB")
        master = self.master
        if not master:
            raise PreconditionError(f"{self} is not a slave")
        nodes = [self] + [db for db in others if db is not self]
        if any(db.master is not master for db in nodes):
            raise PreconditionError("pause_replication_with requires all nodes to have the same master")

        concurrent_each(nodes, lambda db: db.pause_replication(), action="pausing replication")
        positions = [(db, db.repl_binlog_coordinates(display_info=False)) for db in nodes]
        furthest = max((coords for _, coords in positions), key=_coordinates_key)
        behind = [db for db, coords in positions if coords != furthest]
        concurrent_each(
            behind,
            lambda db: db.resume_replication_until(furthest),
            action=f"replaying up to ({furthest[0]}, {furthest[1]})",
        )

        if any(db.repl_binlog_coordinates(display_info=False) != furthest for db in nodes):
            raise ConsistencyError(
                "Unexpectedly unable to stop slaves in the same position; perhaps something restarted replication?"
            )
        return furthest

    def resume_replication_until(self, binlog_coord: Coordinates, timeout: float = 3600) -> None:
        """
        Replay up to binlog_coord of the master, then leave replication paused.

        Blocks until the coordinates are reached.

        Raises:
            OperationTimeout: if they are not reached within timeout seconds
            ConsistencyError: if the SQL thread stopped before reaching them
        """
        log_file, log_pos = binlog_coord
        self.output(f"Resuming replication until master coords ({log_file}, {log_pos}), "
                    f"waiting for up to {timeout} seconds.")
        self.output(self.mysql_root_cmd(
            f"START SLAVE UNTIL MASTER_LOG_FILE = '{log_file}', MASTER_LOG_POS = {log_pos}"
        ))
        result = self.query_return_first_value("SELECT MASTER_POS_WAIT(%s, %s, %s)", log_file, log_pos, timeout)
        if result is None or int(result) == -1:
            # An UNTIL condition must not be left behind
            self.mysql_root_cmd("STOP SLAVE")
            self._repl_paused = True
            if result is None:
                raise ConsistencyError(f"{self} stopped replicating before reaching ({log_file}, {log_pos})")
            raise OperationTimeout(f"{self} did not reach master coords ({log_file}, {log_pos}) within {timeout} seconds")

        # START SLAVE UNTIL leaves the IO thread running
        self.output(self.mysql_root_cmd("STOP SLAVE IO_THREAD"))
        self._repl_paused = True

    def disable_replication(self) -> None:
        """Permanently detach from the master. Only a re-clone can undo this."""
        self.pause_replication()
        self.output("Disabling replication; this db is no longer a slave.")
        self.output(self.mysql_root_cmd("CHANGE MASTER TO master_user='test'; RESET SLAVE ALL"))
        self._detach_from_master()
        self._master = False
        self._repl_paused = None

    def _detach_from_master(self) -> None:
        old = self._master
        if old and old._slaves is not None and self in old._slaves:
            old._slaves.remove(self)

    def change_master_to(
        self,
        new_master,
        log_file: Optional[str] = None,
        log_pos: Optional[int] = None,
        user: Optional[str] = None,
        password: Optional[str] = None,
    ):
        """
        Point this instance at new_master. Replication is left paused.

        Without explicit coordinates, new_master's current binlog position is
        used; that is refused while new_master is receiving updates, since a
        moving position cannot be captured safely.

        Args:
            new_master: DB to replicate from; None means disable_replication()
            log_file: Master binlog file (must be given together with log_pos)
            log_pos: Master binlog position
            user: Replication user (default: replication_credentials())
            password: Replication password
        """
        if new_master is None:
            return self.disable_replication()
        if new_master is self.master:
            return None
        if new_master is self or new_master.master is self:
            raise PreconditionError("Circular replication not supported")
        if (log_file is None) != (log_pos is None):
            raise ValueError("log_file and log_pos must be supplied together")

        if log_file is None:
            if (new_master.is_slave() and not new_master.repl_paused) or new_master.taking_writes(0.5):
                raise ConsistencyError(
                    f"Cannot use default coordinates of {new_master}: it is receiving updates"
                )
            log_file, log_pos = new_master.binlog_coordinates()

        if user is None or password is None:
            creds = self.replication_credentials()
            user = user or creds["user"]
            password = password or creds["password"]

        if self._master and not self._repl_paused:
            self.pause_replication()

        result = self.mysql_root_cmd(
            f"CHANGE MASTER TO MASTER_HOST='{new_master.ip}', MASTER_PORT={new_master.port}, "
            f"MASTER_LOG_FILE='{log_file}', MASTER_LOG_POS={log_pos}, "
            f"MASTER_USER='{user}', MASTER_PASSWORD='{password}'"
        )
        self.output(f"Changing master to {new_master} with coordinates ({log_file}, {log_pos}). {result}")

        self._detach_from_master()
        self._master = new_master
        self._repl_paused = True
        siblings = new_master.slaves
        if siblings is not None and self not in siblings:
            siblings.append(self)
        return result

    # =========================================================================
    # Cloning new replicas
    # =========================================================================

    def enslave(self, targets: Iterable[Any], repl_user: Optional[str] = None, repl_pass: Optional[str] = None) -> None:
        """
        Clone this instance onto targets and make them replicate from it.

        The targets are left paused at this instance's coordinates.
        """
        targets = list(targets)
        if self.master and not self._repl_paused:
            self.pause_replication()
        creds = self.replication_credentials()
        log_file, log_pos = self.binlog_coordinates()

        self.clone_to(targets)
        for t in targets:
            t.change_master_to(
                self,
                log_file=log_file,
                log_pos=log_pos,
                user=repl_user or creds["user"],
                password=repl_pass or creds["password"],
            )
            t.enable_read_only()
        if self._master and self._repl_paused:
            self.resume_replication()

    def enslave_siblings(self, targets: Iterable[Any]) -> None:
        """
        Clone this replica onto targets and make them replicate from its master.

        The targets are left paused at this replica's executed coordinates.
        """
        if not self.master:
            raise PreconditionError("Can only call enslave_siblings on a slave instance")
        targets = list(targets)
        if not self._repl_paused:
            self.pause_replication()
        creds = self.replication_credentials()
        log_file, log_pos = self.repl_binlog_coordinates()
        master = self._master

        self.clone_to(targets)
        for t in targets:
            t.change_master_to(master, log_file=log_file, log_pos=log_pos, user=creds["user"], password=creds["password"])
            t.enable_read_only()
        if self._repl_paused:
            self.resume_replication()

    # =========================================================================
    # Coordinates and lag
    # =========================================================================

    def repl_binlog_coordinates(self, display_info: bool = True) -> Coordinates:
        """The master coordinates this replica has executed through."""
        if not self.master:
            raise PreconditionError(f"{self} is not a slave")
        status = self.slave_status()
        coords = (status.get("relay_master_log_file"), int(status.get("exec_master_log_pos") or 0))
        if display_info:
            self.output(f"Has executed through master's binlog coordinates of ({coords[0]}, {coords[1]}).")
        return coords

    def binlog_coordinates(self, display_info: bool = True) -> Coordinates:
        """This instance's own binlog position."""
        status = self.mysql_root_cmd("SHOW MASTER STATUS", parse=True)
        if not status.get("file"):
            raise PreconditionError(
                f"Cannot obtain binlog coordinates of {self} because binary logging is not enabled"
            )
        coords = (status["file"], int(status.get("position") or 0))
        if display_info:
            self.output(f"Own binlog coordinates are ({coords[0]}, {coords[1]}).")
        return coords

    def seconds_behind_master(self) -> Optional[int]:
        if not self.master:
            raise PreconditionError(f"{self} is not a slave")
        lag = self.slave_status().get("seconds_behind_master")
        if lag is None or lag == "NULL":
            return None
        return int(lag)

    def catch_up_to_master(self, timeout: Optional[float] = None, threshold: int = 3, poll_frequency: float = 5):
        """
        Resume replication if needed and wait until lag stays at zero.

        Succeeds after `threshold` consecutive zero-lag polls while the master
        takes writes, or as soon as the executed coordinates equal an idle
        master's position. Polling slows down in proportion to the lag.

        Raises:
            OperationTimeout: if not caught up within timeout seconds
            ConsistencyError: if replication cannot be restarted
        """
        if not self.master:
            raise PreconditionError(f"{self} is not a slave")
        timeout = self.config.catch_up_timeout if timeout is None else timeout
        if self._repl_paused:
            self.resume_replication()

        master = self._master
        master_coords = master.binlog_coordinates()
        master_moving = False
        times_at_zero = 0
        start = time.time()
        self.output("Waiting to catch up to master")
        while time.time() - start < timeout:
            lag = self.seconds_behind_master()
            if lag == 0:
                if master_moving or master.binlog_coordinates(display_info=False) != master_coords:
                    master_moving = True
                    times_at_zero += 1
                    if times_at_zero >= threshold:
                        self.output("Caught up to master.")
                        return True
                elif self.repl_binlog_coordinates(display_info=False) == master_coords:
                    self.output("Caught up to master completely (no writes occurring).")
                    return True
                time.sleep(poll_frequency)
            elif lag is None:
                self.resume_replication()
                time.sleep(1)
                if self.seconds_behind_master() is None:
                    raise ConsistencyError(f"Unable to restart replication on {self}")
            else:
                self.output(f"Currently {lag} seconds behind master.")
                times_at_zero = 0
                extra_sleep_time = 300 if lag > 30000 else math.ceil(lag / 100)
                time.sleep(poll_frequency + extra_sleep_time)
        raise OperationTimeout(f"{self} did not catch up to its master within {timeout} seconds")

    def replication_credentials(self) -> Dict[str, str]:
        """
        Replication user and password, read from master.info of this replica
        (or of its first replica), falling back to the configured credentials.
        """
        if self.master or self.slaves:
            target = self if self._master else self._slaves[0]
            results = target.execute(f"cat {self.mysql_directory}/master.info | head -6 | tail -2").split()
            if len(results) == 2 and results[0] != "test":
                return {"user": results[0], "password": results[1]}
        return dict(self.config.replication_credentials)

    def ahead_of_coordinates(self, binlog_coord: Coordinates) -> bool:
        """True if this node has progressed past binlog_coord in its pool's master binlog."""
        if self.pool(create_if_missing=True).master is self:
            mine = self.binlog_coordinates(display_info=False)
        else:
            mine = self.repl_binlog_coordinates(display_info=False)
        if tuple(mine) == tuple(binlog_coord):
            return False
        if mine[0] == binlog_coord[0]:
            return mine[1] > binlog_coord[1]
        return _logfile_number(mine[0]) > _logfile_number(binlog_coord[0])

    def ahead_of(self, node) -> bool:
        my_pool = self.pool(create_if_missing=True)
        if node.pool(create_if_missing=True).master is not my_pool.master:
            raise PreconditionError(f"Node {node} is not in the same pool as {self}")
        if my_pool.master is node:
            coords = node.binlog_coordinates(display_info=False)
        else:
            coords = node.repl_binlog_coordinates(display_info=False)
        return self.ahead_of_coordinates(coords)


def _logfile_number(name: str) -> int:
    match = re.search(r"(\d+)$", name or "")
    if not match:
        raise ValueError(f"Unexpected binlog file name {name!r}")
    return int(match.group(1))


def _coordinates_key(coords: Coordinates) -> Tuple[int, int]:
    return _logfile_number(coords[0]), int(coords[1])
