"""
The DB class: one MySQL instance, identified by IP and port.

DB is assembled from mixins grouped by concern (client, state, replication,
privileges, server control, import/export). Host operations it needs are
forwarded explicitly to the Host it wraps.
"""

from typing import Any, Dict, List, Optional

from ..utils import output
from .client import ClientMixin
from .import_export import ImportExportMixin
from .privileges import PrivilegesMixin
from .replication import ReplicationMixin
from .server import ServerMixin
from .state import StateMixin


class DB(ClientMixin, StateMixin, ReplicationMixin, PrivilegesMixin, ServerMixin, ImportExportMixin):
    """
    A MySQL instance.

    Obtain instances through Registry.db() so that the same IP and port
    always map to the same object.
    """

    def __init__(self, ip: str, port: int, registry):
        self.ip = ip
        self.port = int(port)
        self.registry = registry
        self.host = registry.host(ip)

        # Probed state; None means not yet known
        self._master = None
        self._slaves: Optional[List['DB']] = None
        self._repl_paused: Optional[bool] = None
        self._running: Optional[bool] = None

        self._sql_pool = None
        self._user: Optional[str] = None
        self._schema: Optional[str] = None
        self._session_init: Optional[str] = None
        self._options: List[str] = []
        self._counts: Dict[str, int] = {}

    @property
    def config(self):
        return self.registry.config

    def __str__(self) -> str:
        return f"{self.ip}:{self.port}"

    def __repr__(self) -> str:
        return f"<DB {self}>"

    def __lt__(self, other: 'DB') -> bool:
        return (self.ip, self.port) < (other.ip, other.port)

    def to_db(self) -> 'DB':
        return self

    def to_host(self):
        return self.host

    def same_host_as(self, other: Any) -> bool:
        return other is not None and self.host is other.to_host()

    def output(self, message: Any, table: Any = None, warning: bool = False) -> str:
        return output(self, message, table, warning)

    # =========================================================================
    # Host forwarding
    # =========================================================================

    def execute(self, command: str, retries: int = 2, check: bool = False, timeout: Optional[float] = None) -> str:
        return self.host.execute(command, retries=retries, check=check, timeout=timeout)

    def is_available(self, force: bool = False) -> bool:
        return self.host.is_available(force)

    def hostname(self) -> str:
        return self.host.hostname()

    def service(self, operation: str, name: str, options: str = "") -> str:
        return self.host.service(operation, name, options)

    def confirm_installed(self, program: str) -> bool:
        return self.host.confirm_installed(program)

    def dir_list(self, path: str):
        return self.host.dir_list(path)

    def dir_size(self, path: str) -> int:
        return self.host.dir_size(path)

    def compare_dir(self, base_dir: str, targets: Any, files: Optional[List[str]] = None) -> bool:
        return self.host.compare_dir(base_dir, targets, files)

    def wait_for_listener(self, port: int, timeout: float = 10) -> bool:
        return self.host.wait_for_listener(port, timeout)

    def transfer_directory(self, base_dir: str, targets: Any, files=None, port: Optional[int] = None,
                           overwrite: bool = False) -> bool:
        return self.host.transfer_directory(base_dir, targets, files=files, port=port, overwrite=overwrite)
