"""
Connection and query methods of DB.

Two paths reach a MySQL instance:
- mysql_root_cmd runs the mysql command-line client as root over SSH, for
  server-control statements that need administrative privileges.
- query* methods go through a mysql-connector pool opened as the app user (or
  a temporary import/export user) over the MySQL protocol.
"""

import re
import time
from contextlib import contextmanager
from typing import Any, Dict, List, Optional

from ..errors import QueryError, UnreachableError
from ..utils import MAX_POOL_SIZE, mysql_connection_pool

ERROR_LINE_PATTERN = re.compile(r"^ERROR", re.MULTILINE)


class ClientMixin:

    # =========================================================================
    # Root access through the mysql client
    # =========================================================================

    def mysql_root_cmd(
        self,
        cmd: str,
        terminator: str = "\\G",
        parse: bool = False,
        attempts: Optional[int] = 3,
    ):
        """
        Run a statement as root through the remote mysql client.

        Args:
            cmd: SQL to run; several statements may be joined with '; '
            terminator: Statement terminator, '\\G' for vertical output
            parse: Parse a single-row vertical result into a dict
                (only meaningful with the '\\G' terminator)
            attempts: Total attempts; pass 0 or None for non-idempotent statements

        Returns:
            Raw client output, or a dict when parse is set

        Raises:
            QueryError: if the client reported an error on the last attempt
        """
        attempts = max(1, int(attempts or 1))
        failures = 0
        while True:
            try:
                if not self.running:
                    raise QueryError(f"MySQL is not running on {self}")
                result = self.execute(self._root_client_command(cmd, terminator), retries=0)
                if result and result.lower().startswith("error "):
                    raise QueryError(result)
                if parse and terminator == "\\G":
                    return self.parse_vertical_result(result)
                return result
            except (QueryError, UnreachableError) as exc:
                failures += 1
                if failures >= attempts:
                    raise
                self.output(f"Root query \"{cmd}\" failed: {exc}, re-trying after delay", warning=True)
                time.sleep(3 * failures)

    def _root_client_command(self, cmd: str, terminator: str) -> str:
        password = self.config.mysql_root_password
        supply_root_pw = f"-p{password}" if password else ""
        supply_port = "" if self.port == 3306 else f"-h 127.0.0.1 -P {self.port}"
        return f"mysql {supply_root_pw} {supply_port} -ss -e \"{cmd}{terminator}\" {self.config.mysql_schema}"

    @staticmethod
    def parse_vertical_result(text: Optional[str]) -> Dict[str, str]:
        """Parse single-row '\\G' output into {lowercased column: value}."""
        results: Dict[str, str] = {}
        if not text:
            return results
        if ERROR_LINE_PATTERN.search(text):
            raise QueryError(text.rstrip("\n"))
        for line in text.split("\n"):
            col, sep, val = line.partition(":")
            if not sep:
                continue
            results[col.strip().lower()] = val.strip()
        return results

    # =========================================================================
    # Pooled app connections
    # =========================================================================

    def connect(self, user: Optional[str] = None, schema: Optional[str] = None, session_init: Optional[str] = None):
        """
        Return the connection pool for (user, schema), building it if needed.

        An existing pool is reused when the identity and session-init statement
        are unchanged; otherwise it is torn down and rebuilt.
        """
        cfg = self.config
        user = user or cfg.mysql_app_user
        schema = schema or cfg.mysql_schema
        if self._sql_pool is not None and (self._user, self._schema, self._session_init) == (user, schema, session_init):
            return self._sql_pool

        self.disconnect()
        conn_cfg = {
            "host": self.ip,
            "port": self.port,
            "user": user,
            "password": cfg.mysql_app_password,
        }
        self._sql_pool = mysql_connection_pool(
            conn_cfg,
            pool_name=f"{self.ip}:{self.port}:{user}",
            pool_size=self.worker_ceiling,
            database=schema,
        )
        self._user, self._schema, self._session_init = user, schema, session_init
        return self._sql_pool

    def reconnect(self, user: Optional[str] = None, schema: Optional[str] = None, session_init: Optional[str] = None):
        return self.connect(user=user or self._user, schema=schema or self._schema, session_init=session_init)

    def disconnect(self) -> None:
        """Close the pool's idle connections and forget it; the next query reconnects."""
        pool, self._sql_pool = self._sql_pool, None
        self._user = self._schema = self._session_init = None
        if pool is not None:
            # mysql-connector has no public close for a pool
            pool._remove_connections()

    @property
    def worker_ceiling(self) -> int:
        """Largest number of concurrent queries one pool can serve."""
        return max(1, min(self.config.max_concurrency, MAX_POOL_SIZE))

    @contextmanager
    def _connection(self):
        pool = self._sql_pool if self._sql_pool is not None else self.connect()
        conn = pool.get_connection()
        try:
            if self._session_init:
                cur = conn.cursor()
                try:
                    cur.execute(self._session_init)
                finally:
                    cur.close()
            yield conn
        finally:
            conn.close()

    def query(self, sql: str, *binds) -> int:
        """
        Execute a write (INSERT, UPDATE, DELETE, LOAD DATA, SELECT INTO OUTFILE).

        Returns:
            The last insert id if one was generated, otherwise the affected row count
        """
        with self._connection() as conn:
            cur = conn.cursor()
            try:
                cur.execute(sql, binds or None)
                return cur.lastrowid if cur.lastrowid else cur.rowcount
            finally:
                cur.close()

    def query_return_array(self, sql: str, *binds) -> List[Dict[str, Any]]:
        """Execute a read and return every row as a dict."""
        with self._connection() as conn:
            cur = conn.cursor(dictionary=True, buffered=True)
            try:
                cur.execute(sql, binds or None)
                return cur.fetchall()
            finally:
                cur.close()

    def query_return_first(self, sql: str, *binds) -> Optional[Dict[str, Any]]:
        with self._connection() as conn:
            cur = conn.cursor(dictionary=True, buffered=True)
            try:
                cur.execute(sql, binds or None)
                return cur.fetchone()
            finally:
                cur.close()

    def query_return_first_value(self, sql: str, *binds) -> Any:
        row = self.query_return_first(sql, *binds)
        if not row:
            return None
        return next(iter(row.values()))
