"""
Export, import, pruning and cloning of data sets.

Chunked exports and imports split an ID range into the table's configured
number of chunks and run them through a bounded worker pool. Every chunk is
retried independently with a linear backoff before the whole table fails.
"""

import threading
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from mysql.connector import Error as MySQLError

from ..concurrency import concurrent_each, in_chunks, partition_range
from ..errors import ConsistencyError, PreconditionError, ShardOpsError
from ..table import INFINITY, Table
from ..utils import to_int

IMPORT_EXPORT_USER = "shardops"
CHUNK_RETRIES = 10
CLONE_TARGET_MAX_BYTES = 100000000


class ImportExportMixin:

    # =========================================================================
    # Schema
    # =========================================================================

    def export_schemata(self, tables: Iterable[Table]) -> None:
        self.output("Exporting table definitions")
        password = self.config.mysql_root_password
        supply_root_pw = f"-p{password}" if password else ""
        supply_port = "" if self.port == 3306 else f"-h 127.0.0.1 -P {self.port}"
        names = " ".join(t.name for t in tables)
        self.output(self.execute(
            f"mysqldump {supply_root_pw} {supply_port} -d {self.config.mysql_schema} {names} "
            f">{self.config.export_location}/create_tables_{self.port}.sql"
        ))

    def import_schemata(self) -> None:
        """Drop and re-create the exported tables from the schema dump."""
        self.output("Dropping and re-creating table definitions")
        self.output(self.mysql_root_cmd(
            f"source {self.config.export_location}/create_tables_{self.port}.sql", terminator=""
        ))

    # =========================================================================
    # Data export / import
    # =========================================================================

    def _open_file_user(self, session_init: Optional[str] = None) -> None:
        self.create_user(IMPORT_EXPORT_USER)
        self.grant_privileges(IMPORT_EXPORT_USER)
        self.grant_privileges(IMPORT_EXPORT_USER, "*", "FILE")
        self.reconnect(user=IMPORT_EXPORT_USER, session_init=session_init)

    def _close_file_user(self) -> None:
        # The next query reconnects as the app user
        self.disconnect()
        self.drop_user(IMPORT_EXPORT_USER)

    def export_data(self, tables: Iterable[Table], min_id=None, max_id=None, infinity: bool = False) -> Dict[str, int]:
        """
        Export every table's rows in [min_id, max_id] to files in export_location.

        Replication is paused first. Row counts are remembered for the
        verification done by import_data.
        """
        if self._master and not self._repl_paused:
            self.pause_replication()
        try:
            self._open_file_user()
            for t in tables:
                self._counts[t.name] = self.export_table_data(t, min_id, max_id, infinity)
        finally:
            self._close_file_user()
        return dict(self._counts)

    def export_table_data(self, table: Table, min_id=None, max_id=None, infinity: bool = False) -> int:
        if min_id is None or max_id is None or table.chunks < 1:
            self.output("Exporting all data", table)
            rows_exported = self.query(table.sql_export_range())
            self.output(f"{rows_exported} rows exported", table)
            return rows_exported

        self.output(f"Exporting data for ID range {min_id}..{max_id}", table)
        progress = _ChunkProgress(self, table, "Export")

        def export_chunk(lo, hi):
            rows = self._retry_chunk(
                table, "EXPORT", f"{lo}-{hi}",
                lambda: self.query(table.sql_export_range(lo, hi)),
                delay=1.0,
                cleanup=lambda: self.execute(f"rm -f {table.export_file_path(lo, hi)}"),
            )
            progress.completed()
            return rows

        rows_exported = sum(in_chunks(
            min_id, max_id, table.chunks, export_chunk,
            ceiling=self.worker_ceiling, action=f"exporting {table}",
        ))

        if infinity:
            self.output("Exporting infinity range.", table)
            lo = max_id + 1
            rows_exported += self._retry_chunk(
                table, "EXPORT", f"{lo}-{INFINITY}",
                lambda: self.query(table.sql_export_range(lo, None)),
                delay=1.0,
                cleanup=lambda: self.execute(f"rm -f {table.export_file_path(lo, None)}"),
            )
            self.output("Export of infinity range complete.", table)

        self.output(f"{rows_exported} rows exported", table)
        return rows_exported

    def import_data(self, tables: Iterable[Table], min_id=None, max_id=None, infinity: bool = False) -> Dict[str, int]:
        """
        Load exported files back, with unique checks relaxed, and verify counts.

        Each table's import count must equal its export count. When this
        process did not run the export (a resumed rebuild), the expected count
        is taken from the export files themselves before they are loaded.

        Raises:
            PreconditionError: if binary logging is still enabled
            ConsistencyError: if an export file is missing, or an imported row
                count differs from the export
        """
        if self.binary_log_enabled():
            raise PreconditionError("Binary logging must be disabled prior to calling import_data")
        tables = list(tables)
        expected: Dict[str, int] = {}
        for t in tables:
            if t.name in self._counts:
                expected[t.name] = self._counts[t.name]
            else:
                self.output("No export count recorded in this session; counting rows in the export files", t)
                expected[t.name] = self.exported_row_count(t, min_id, max_id, infinity)

        self.disable_read_only()
        try:
            self._open_file_user(session_init="SET unique_checks = 0")
            import_counts = {t.name: self.import_table_data(t, min_id, max_id, infinity) for t in tables}
            for name, imported in import_counts.items():
                if imported == expected[name]:
                    self.output(f"Verified import count matches export count for table {name}")
                else:
                    raise ConsistencyError(
                        f"Import count ({imported}) does not match export count ({expected[name]}) for table {name}"
                    )
        finally:
            self._close_file_user()
        return import_counts

    def export_file_paths(self, table: Table, min_id=None, max_id=None, infinity: bool = False) -> List[str]:
        """The files export_table_data writes for a range, in chunk order."""
        if min_id is None or max_id is None or table.chunks < 1:
            return [table.export_file_path()]
        paths = [table.export_file_path(lo, hi) for lo, hi in partition_range(min_id, max_id, table.chunks)]
        if infinity:
            paths.append(table.export_file_path(max_id + 1, None))
        return paths

    def exported_row_count(self, table: Table, min_id=None, max_id=None, infinity: bool = False) -> int:
        """
        Count the rows waiting in a table's export files, one line per row.

        Raises:
            ConsistencyError: if any of the files is missing
        """
        paths = self.export_file_paths(table, min_id, max_id, infinity)
        counted: Dict[str, int] = {}
        for line in self.execute(f"wc -l {' '.join(paths)}").split("\n"):
            fields = line.split()
            if len(fields) == 2 and fields[1] in paths:
                counted[fields[1]] = to_int(fields[0])
        missing = [p for p in paths if p not in counted]
        if missing:
            raise ConsistencyError(f"Export files missing on {self}: {' '.join(missing)}")
        total = sum(counted.values())
        self.output(f"{total} rows found in {len(paths)} export files", table)
        return total

    def import_table_data(self, table: Table, min_id=None, max_id=None, infinity: bool = False) -> int:
        if min_id is None or max_id is None or table.chunks < 1:
            self.output("Importing all data", table)
            rows_imported = self.query(table.sql_import_range())
            self.output(f"{rows_imported} rows imported", table)
            return rows_imported

        self.output(f"Importing data for ID range {min_id}..{max_id}", table)
        progress = _ChunkProgress(self, table, "Import")

        def import_chunk(lo, hi):
            rows = self._retry_chunk(
                table, "IMPORT", f"{lo}-{hi}",
                lambda: self.query(table.sql_import_range(lo, hi)),
                delay=3.0,
            )
            progress.completed()
            self.execute(f"rm -f {table.export_file_path(lo, hi)}")
            return rows

        rows_imported = sum(in_chunks(
            min_id, max_id, table.chunks, import_chunk,
            ceiling=self.worker_ceiling, action=f"importing {table}",
        ))

        if infinity:
            self.output("Importing infinity range", table)
            lo = max_id + 1
            rows_imported += self._retry_chunk(
                table, "IMPORT", f"{lo}-{INFINITY}",
                lambda: self.query(table.sql_import_range(lo, None)),
                delay=3.0,
            )
            self.execute(f"rm -f {table.export_file_path(lo, None)}")
            self.output("Import of infinity range complete", table)

        self.output(f"{rows_imported} rows imported", table)
        return rows_imported

    def _retry_chunk(self, table: Table, verb: str, label: str, fn: Callable[[], Any], delay: float,
                     cleanup: Optional[Callable[[], Any]] = None) -> Any:
        attempts = 0
        while True:
            try:
                return fn()
            except (MySQLError, ShardOpsError) as exc:
                if attempts >= CHUNK_RETRIES:
                    self.output(f"{verb} ERROR: {exc}, chunk {label}, giving up", table, warning=True)
                    raise
                attempts += 1
                self.output(f"{verb} ERROR: {exc}, chunk {label}, attempt {attempts}, re-trying after delay",
                            table, warning=True)
                if cleanup is not None:
                    cleanup()
                time.sleep(delay * attempts)

    def row_counts(self, tables: Union[Table, List[Table]], min_id=None, max_id=None) -> Dict[str, int]:
        """Row count per table within [min_id, max_id], counted in chunks where configured."""
        if isinstance(tables, Table):
            tables = [tables]
        counts: Dict[str, int] = {}
        for t in tables:
            if min_id is not None and max_id is not None and t.chunks > 1:
                counts[t.name] = sum(in_chunks(
                    min_id, max_id, t.chunks,
                    lambda lo, hi, t=t: to_int(self.query_return_first_value(t.sql_count_rows(lo, hi))),
                    max_workers=self.config.max_concurrency,
                    ceiling=self.worker_ceiling,
                    action=f"counting {t}",
                ))
            else:
                counts[t.name] = to_int(self.query_return_first_value(t.sql_count_rows(min_id, max_id)))
            self.output(f"{counts[t.name]} rows counted", t)
        return counts

    def highest_table_key_value(self, table: Table, key: Optional[str] = None):
        key = key or table.first_pk_col or table.sharding_keys[0]
        return self.query_return_first_value(f"SELECT MAX({key}) FROM {table.name}")

    # =========================================================================
    # Pruning
    # =========================================================================

    def prune_data_to_range(self, tables: Iterable[Table], keep_min_id, keep_max_id) -> int:
        """Delete every row outside [keep_min_id, keep_max_id] from each table."""
        self.disconnect()
        total = 0
        for t in tables:
            self.output(f"Cleaning up data, pruning to only keep range {keep_min_id}-{keep_max_id}", t)
            rows_deleted = 0
            for direction in ("asc", "desc"):
                rows_deleted += self.delete_table_data_outside_range(t, keep_min_id, keep_max_id, direction)
            self.output(f"Done cleanup; {rows_deleted} rows deleted", t)
            total += rows_deleted
        return total

    def delete_table_data_outside_range(self, table: Table, keep_min_id, keep_max_id, direction: str) -> int:
        """
        Walk the sharding key away from the kept range, deleting one key value
        at a time.

        Args:
            direction: 'asc' removes ids above keep_max_id, 'desc' ids below keep_min_id
        """
        if direction == "asc":
            dir_english = "Ascending"
            boundary = keep_max_id
            if boundary == INFINITY:
                return 0
            self.output(f"Removing rows with ID > {boundary}", table)
        elif direction == "desc":
            dir_english = "Descending"
            boundary = keep_min_id
            self.output(f"Removing rows with ID < {boundary}", table)
        else:
            raise ValueError(f"Unknown direction parameter {direction}")

        rows_deleted = 0
        multi_key = len(table.sharding_keys) > 1
        for col in table.sharding_keys:
            deleter_sql = table.sql_cleanup_delete(col, keep_min_id, keep_max_id)
            current = boundary
            iterations = 0
            while True:
                current = self.query_return_first_value(table.sql_cleanup_next_id(col, current, direction))
                if current is None:
                    break
                rows_deleted += self.query(deleter_sql, current)

                # Cross-column preservation checks are expensive for the server
                if multi_key:
                    time.sleep(0.0001)

                iterations += 1
                if iterations % 50000 == 0:
                    self.output(f"{dir_english} deletion progress: through {col} {current}, "
                                f"deleted {rows_deleted} rows so far", table)
        return rows_deleted

    # =========================================================================
    # Cloning
    # =========================================================================

    def clone_to(self, targets: Iterable[Any]) -> None:
        """
        Copy this instance's data directory onto targets.

        MySQL is stopped on the source and every target for the copy, which
        uses the chained transfer so the source is read once. Targets come
        back up with replication stopped and no master; the caller re-points
        them.
        """
        targets = list(targets)
        if self.master and self.master in targets:
            raise PreconditionError("Cannot clone an instance onto its master")

        destinations = {}
        for t in targets:
            destinations[t] = t.mysql_directory
            if t.data_set_size() > CLONE_TARGET_MAX_BYTES:
                raise PreconditionError(f"Over 100 MB of existing MySQL data on target {t}, aborting copy!")

        databases = [
            line.split(":")[-1].strip()
            for line in self.mysql_root_cmd("SHOW DATABASES").split("\n")
            if "Database:" in line
        ]
        databases = [d for d in databases if d not in self.config.mysql_clone_ignore]

        if self.master and not self._repl_paused:
            self.pause_replication()

        concurrent_each([self] + targets, lambda db: db.stop_mysql(), action="stopping MySQL for clone")
        concurrent_each(
            targets,
            lambda db: db.execute(f"rm -rf {db.mysql_directory}/ib_logfile*"),
            action="removing InnoDB log files",
        )

        files = list(dict.fromkeys(databases + ["ibdata1", self.config.mysql_schema]))
        self.transfer_directory(self.mysql_directory, destinations, files=files, overwrite=True)

        for t in targets:
            t._detach_from_master()
            t._master, t._slaves, t._repl_paused = False, [], None

        def restart(db):
            if db is self:
                db.start_mysql()
            else:
                db.start_mysql("--skip-slave-start")

        concurrent_each([self] + targets, restart, action="starting MySQL after clone")


class _ChunkProgress:
    """Thread-safe chunk counter reporting every 20 chunks on large tables."""

    def __init__(self, db, table: Table, verb: str):
        self.db = db
        self.table = table
        self.verb = verb
        self.done = 0
        self.lock = threading.Lock()

    def completed(self) -> None:
        with self.lock:
            self.done += 1
            if self.table.chunks >= 40 and self.done % 20 == 0:
                percent = 100 * self.done // self.table.chunks
                self.db.output(f"{self.verb} {percent}% complete.", self.table)
