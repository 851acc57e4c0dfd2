#!/usr/bin/env python3
"""
Runtime configuration.

A Config is built once at start-up (from a JSON file, a dict, or defaults) and
handed to the Topology, which shares it with every Host and DB it creates.
Selected values can be overridden through SHARDOPS_* environment variables.
"""

import json
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional


DEFAULT_CONFIG_PATH = "/etc/shardops.json"


def get_config_path() -> Path:
    """Get the path to the configuration file."""
    return Path(os.environ.get("SHARDOPS_CONFIG", DEFAULT_CONFIG_PATH))


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Config:
    """Settings shared by every Host, DB, Pool and Shard of a Topology."""

    # Concurrency
    max_concurrency: int = 20
    standby_slaves_per_pool: int = 2

    # MySQL access
    mysql_schema: str = "test"
    mysql_app_user: str = "app"
    mysql_app_password: str = ""
    mysql_repl_user: str = "repl"
    mysql_repl_password: str = ""
    mysql_root_password: Optional[str] = None
    mysql_grant_ips: List[str] = field(default_factory=lambda: ["192.168.%"])
    mysql_grant_privs: List[str] = field(default_factory=lambda: ["ALL"])
    mysql_datadir: str = "/var/lib/mysql"
    mysql_clone_ignore: List[str] = field(
        default_factory=lambda: ["information_schema", "performance_schema", "sys"]
    )
    mysql_service: str = "mysql"

    # Import / export
    export_location: str = "/tmp"
    sharded_tables: Dict[str, Dict[str, Dict[str, Any]]] = field(default_factory=dict)

    # Replication consistency
    verify_replication: bool = True
    pause_on_inconsistency: bool = False
    promotion_wait_timeout: Optional[float] = None
    catch_up_timeout: int = 3600

    # Transfer pipeline
    compress_with: Optional[str] = None
    decompress_with: Optional[str] = None
    encrypt_with: Optional[str] = None
    decrypt_with: Optional[str] = None
    transfer_port: int = 7000

    # SSH
    ssh_user: str = "root"
    ssh_port: int = 22
    ssh_keys: Optional[List[str]] = None
    ssh_timeout: int = 5
    ssh_pool_size: int = 8

    # Collaborators
    tracker_path: str = "/etc/shardops_tracker.json"
    app_config_path: Optional[str] = None
    sink_url: Optional[str] = None
    sink_user: Optional[str] = None
    sink_password: Optional[str] = None

    def __post_init__(self):
        """Override defaults with values from the environment."""
        env = os.environ
        if env.get("SHARDOPS_MYSQL_ROOT_PASSWORD"):
            self.mysql_root_password = env["SHARDOPS_MYSQL_ROOT_PASSWORD"]
        if env.get("SHARDOPS_SSH_USER"):
            self.ssh_user = env["SHARDOPS_SSH_USER"]
        if env.get("SHARDOPS_SSH_PORT"):
            self.ssh_port = int(env["SHARDOPS_SSH_PORT"])
        if env.get("SHARDOPS_MAX_CONCURRENCY"):
            self.max_concurrency = int(env["SHARDOPS_MAX_CONCURRENCY"])
        if env.get("SHARDOPS_VERIFY_REPLICATION"):
            self.verify_replication = _env_bool(env["SHARDOPS_VERIFY_REPLICATION"])
        if env.get("SHARDOPS_EXPORT_LOCATION"):
            self.export_location = env["SHARDOPS_EXPORT_LOCATION"]

        if self.max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        if self.standby_slaves_per_pool < 0:
            raise ValueError("standby_slaves_per_pool cannot be negative")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Config':
        """Create a Config from a dictionary, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> 'Config':
        """Load configuration from a JSON file."""
        if config_path is None:
            config_path = get_config_path()
        config_path = Path(config_path)

        if not config_path.exists():
            raise FileNotFoundError(f"Configuration not found: {config_path}")

        with open(config_path) as f:
            data = json.load(f)
        return cls.from_dict(data)

    @property
    def app_credentials(self) -> Dict[str, str]:
        return {"user": self.mysql_app_user, "password": self.mysql_app_password}

    @property
    def replication_credentials(self) -> Dict[str, str]:
        return {"user": self.mysql_repl_user, "password": self.mysql_repl_password}

    def tables_for(self, keyspace: str) -> Dict[str, Dict[str, Any]]:
        """Table definitions of a keyspace; a flat mapping is treated as the only keyspace."""
        tables = self.sharded_tables or {}
        if keyspace in tables and isinstance(tables[keyspace], dict):
            return tables[keyspace]
        if tables and all(isinstance(v, dict) and ("sharding_key" in v or "sharding_keys" in v)
                          for v in tables.values()):
            return tables
        return {}


def load_config_if_exists() -> Optional[Config]:
    """Load config if it exists, return None otherwise."""
    try:
        return Config.load()
    except FileNotFoundError:
        return None
