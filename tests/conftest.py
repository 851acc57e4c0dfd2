"""Shared fixtures: a scripted remote shell and a topology wired to it."""

import threading
from unittest.mock import MagicMock

import pytest

from shardops.config import Config
from shardops.topology import Topology


class FakeShell:
    """
    Scripted replacement for every remote host.

    Rules match on a substring of the command (optionally only for one IP);
    the most recently added matching rule wins. A rule response is either
    literal output or a callable taking (ip, command) and returning
    (status, output). Unmatched commands succeed with no output.
    """

    def __init__(self):
        self.commands = []
        self.rules = []
        self.lock = threading.Lock()

    def on(self, pattern, response="", status=0, ip=None):
        self.rules.insert(0, (ip, pattern, response, status))

    def run(self, ip, command):
        with self.lock:
            self.commands.append((ip, command))
        if command == "echo ping":
            return 0, "ping\n"
        for rule_ip, pattern, response, status in self.rules:
            if (rule_ip is None or rule_ip == ip) and pattern in command:
                if callable(response):
                    return response(ip, command)
                return status, response
        return 0, ""

    def commands_for(self, ip):
        with self.lock:
            return [c for i, c in self.commands if i == ip]

    def ran(self, text, ip=None):
        with self.lock:
            return any(text in c for i, c in self.commands if ip is None or i == ip)


class FakeSession:
    def __init__(self, ip, shell):
        self.ip = ip
        self.shell = shell
        self.closed = False

    def run(self, command, timeout=None):
        return self.shell.run(self.ip, command)

    def is_active(self):
        return not self.closed

    def close(self):
        self.closed = True


@pytest.fixture
def shell():
    return FakeShell()


@pytest.fixture
def config():
    return Config(
        mysql_repl_password="replpass",
        sharded_tables={
            "shard": {
                "users": {"sharding_key": "user_id", "chunks": 4},
                "follows": {"sharding_keys": ["follower_id", "followee_id"], "chunks": 2},
            }
        },
    )


@pytest.fixture
def topology(config, shell):
    allocator = MagicMock()
    sink = MagicMock()
    return Topology(
        config,
        allocator=allocator,
        sink=sink,
        session_factory=lambda ip, cfg: FakeSession(ip, shell),
    )


@pytest.fixture
def make_db(topology):
    """Create a DB whose probed state is already known, so nothing is probed remotely."""

    def _make(ip, port=3306, running=True, master=False, slaves=None, repl_paused=None):
        db = topology.registry.db(ip, port)
        db._running = running
        db._master = master
        db._slaves = [] if slaves is None else list(slaves)
        db._repl_paused = repl_paused
        if master:
            if master._slaves is None:
                master._slaves = []
            if db not in master._slaves:
                master._slaves.append(db)
        return db

    return _make


def vertical(**columns):
    """Render columns the way `mysql -e "...\\G"` prints a single row."""
    lines = ["*************************** 1. row ***************************"]
    lines += [f"{name}: {value}" for name, value in columns.items()]
    return "\n".join(lines)
