"""MySQL server start/stop/restart through the host's init system."""

from ..errors import ShardOpsError
from ..utils import to_int


class ServerMixin:

    @property
    def mysql_directory(self) -> str:
        return self.config.mysql_datadir

    def _listening_count(self) -> int:
        return to_int(self.execute(f"netstat -ln | grep ':{self.port}\\s' | wc -l"))

    def stop_mysql(self) -> None:
        self.output("Attempting to shutdown MySQL")
        self.disconnect()
        self.output(self.service("stop", self.config.mysql_service))
        if self._listening_count() != 0:
            raise ShardOpsError(f"[{self.ip}] Failed to shut down MySQL: Something is still listening on port {self.port}")
        self._options = []
        self._running = False

    def start_mysql(self, *options: str) -> None:
        """
        Start MySQL with optional extra server options.

        Passing --skip-slave-start leaves a replica paused after start-up.
        """
        if self._master:
            self._repl_paused = "--skip-slave-start" in options
        if self._listening_count() != 0:
            raise ShardOpsError(f"[{self.ip}] Failed to start MySQL: Something is already listening on port {self.port}")
        if options:
            self.output(f"Attempting to start MySQL with options {' '.join(options)}")
        else:
            self.output("Attempting to start MySQL, no option overrides supplied")
        self.output(self.service("start", self.config.mysql_service, " ".join(options)))
        self._options = list(options)
        self.confirm_listening()
        self._running = True
        if "--skip-networking" not in self._options and self.role() == "master":
            self.disable_read_only()

    def restart_mysql(self, *options: str) -> None:
        """Restart MySQL, restoring the current SQL connection identity afterwards."""
        if self._master:
            self._repl_paused = "--skip-slave-start" in options

        user, schema, session_init = self._user, self._schema, self._session_init
        had_connection = self._sql_pool is not None
        self.disconnect()

        if options:
            self.output(f"Attempting to restart MySQL with options {' '.join(options)}")
        else:
            self.output("Attempting to restart MySQL, no option overrides supplied")
        self.output(self.service("restart", self.config.mysql_service, " ".join(options)))
        self._options = list(options)
        self.confirm_listening()
        self._running = True

        if "--skip-networking" not in self._options:
            if self.role() == "master":
                self.disable_read_only()
            if had_connection:
                self.connect(user=user, schema=schema, session_init=session_init)

    def confirm_listening(self, timeout: float = 10) -> bool:
        if "--skip-networking" in self._options:
            self.output("Unable to confirm mysqld listening because server started with --skip-networking")
            return False
        return self.host.wait_for_listener(self.port, timeout)
