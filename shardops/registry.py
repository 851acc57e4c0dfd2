"""
Identity registry for Host and DB objects.

Two references to the same IP (or IP and port) always resolve to the same
object, so cached probe results and SSH session pools are shared. The
registry is owned by a Topology and passed down explicitly.
"""

import threading
from typing import Callable, Dict, Optional, Tuple

from .ssh import SSHSession, open_session

DEFAULT_PORT = 3306


class Registry:
    """Lookup-or-create accessor for Hosts (by IP) and DBs (by IP and port)."""

    def __init__(self, config, session_factory: Optional[Callable] = None):
        self.config = config
        self.session_factory = session_factory or open_session
        self.topology = None
        self._hosts: Dict[str, object] = {}
        self._dbs: Dict[Tuple[str, int], object] = {}
        self._lock = threading.RLock()

    def open_session(self, ip: str) -> SSHSession:
        return self.session_factory(ip, self.config)

    def host(self, ip: str):
        from .host import Host

        with self._lock:
            if ip not in self._hosts:
                self._hosts[ip] = Host(ip, self)
            return self._hosts[ip]

    def db(self, ip: str, port: Optional[int] = None):
        """
        Return the DB for ip and port.

        Args:
            ip: IP address, or "ip:port"
            port: Port; defaults to 3306 (or the port embedded in ip)
        """
        from .db import DB

        if ":" in ip:
            ip, embedded = ip.split(":", 1)
            port = port or int(embedded)
        port = int(port or DEFAULT_PORT)
        with self._lock:
            key = (ip, port)
            if key not in self._dbs:
                self._dbs[key] = DB(ip, port, self)
            return self._dbs[key]

    def known_dbs(self):
        with self._lock:
            return list(self._dbs.values())

    def clear(self) -> None:
        """Forget every Host and DB, closing idle SSH sessions."""
        with self._lock:
            hosts = list(self._hosts.values())
            self._hosts.clear()
            self._dbs.clear()
        for host in hosts:
            host.close_connections()
