#!/usr/bin/env python3
"""
Common utilities shared by the topology objects.

This module provides shared functionality for:
- Console output formatting and entity-scoped progress narration
- MySQL connection pool construction
- Small parsing helpers for remote command output
"""

import re
import time
from typing import Any, Dict, Optional

from mysql.connector import pooling


# =============================================================================
# Console Output Formatting
# =============================================================================

class Colors:
    """ANSI color codes for terminal output."""
    RED = '\033[0;31m'
    GREEN = '\033[0;32m'
    YELLOW = '\033[1;33m'
    BLUE = '\033[0;34m'
    CYAN = '\033[0;36m'
    MAGENTA = '\033[0;35m'
    BOLD = '\033[1m'
    NC = '\033[0m'  # No Color


def print_header(message: str) -> None:
    """Print a header message with decorative border."""
    print()
    print(f"{Colors.BLUE}╔════════════════════════════════════════════════════════════╗{Colors.NC}")
    print(f"{Colors.BLUE}║{Colors.NC} {message:<58} {Colors.BLUE}║{Colors.NC}")
    print(f"{Colors.BLUE}╚════════════════════════════════════════════════════════════╝{Colors.NC}")
    print()


def print_step(message: str) -> None:
    """Print a step message."""
    print(f"{Colors.YELLOW}▶ {message}{Colors.NC}")


def print_success(message: str) -> None:
    """Print a success message."""
    print(f"{Colors.GREEN}✓ {message}{Colors.NC}")


def print_error(message: str) -> None:
    """Print an error message."""
    print(f"{Colors.RED}✗ {message}{Colors.NC}")


def print_warning(message: str) -> None:
    """Print a warning message."""
    print(f"{Colors.YELLOW}⚠ {message}{Colors.NC}")


def print_info(message: str) -> None:
    """Print an info message."""
    print(f"{Colors.CYAN}ℹ {message}{Colors.NC}")


def output(entity: Any, message: Any, table: Any = None, warning: bool = False) -> str:
    """
    Print a timestamped progress line scoped to an entity.

    Args:
        entity: Host, DB, Pool or Shard the message is about (rendered with str())
        message: Text to display; empty output becomes "Completed (no output)"
        table: Optional table the message refers to
        warning: Render the line in the warning color

    Returns:
        The formatted line (without color codes)
    """
    text = str(message).strip() if message is not None else ""
    if not text:
        text = "Completed (no output)"
    line = time.strftime("%H:%M:%S") + f" [{entity}] "
    if table is not None:
        line += f"{getattr(table, 'name', table)}: "
    line += text
    if warning:
        print(f"{Colors.YELLOW}{line}{Colors.NC}")
    else:
        print(line)
    return line


# =============================================================================
# MySQL Connections
# =============================================================================

# mysql-connector caps pool_size at 32
MAX_POOL_SIZE = pooling.CNX_POOL_MAXSIZE

_ALLOWED_CONNECT_KEYS = {
    "host",
    "port",
    "user",
    "password",
    "database",
    "connection_timeout",
    "use_pure",
    "autocommit",
    "ssl_disabled",
    "ssl_ca",
    "ssl_cert",
    "ssl_key",
    "unix_socket",
    "auth_plugin",
    "charset",
    "collation",
    "read_timeout",
    "write_timeout",
}


def connect_args(cfg: Dict[str, Any], database: Optional[str] = None) -> Dict[str, Any]:
    """Filter connection settings down to what mysql-connector accepts and apply defaults."""
    c = {k: v for k, v in dict(cfg).items() if k in _ALLOWED_CONNECT_KEYS}

    c.setdefault("use_pure", True)
    c.setdefault("autocommit", True)
    c.setdefault("ssl_disabled", True)
    # Keep a wedged server from hanging a worker forever
    c.setdefault("connection_timeout", 5)
    c.setdefault("read_timeout", 3600)
    c.setdefault("write_timeout", 60)

    if database:
        c["database"] = database
    return c


def mysql_connection_pool(
    cfg: Dict[str, Any],
    pool_name: str,
    pool_size: int,
    database: Optional[str] = None,
) -> pooling.MySQLConnectionPool:
    """
    Build a mysql-connector connection pool.

    Args:
        cfg: Connection settings (extra keys are ignored)
        pool_name: Pool name; characters mysql-connector rejects are replaced
        pool_size: Requested size, clamped to 1..MAX_POOL_SIZE
        database: Default schema

    Returns:
        MySQLConnectionPool
    """
    safe_name = re.sub(r"[^a-zA-Z0-9._:\-*$#]", "_", pool_name)[:64]
    size = max(1, min(int(pool_size), MAX_POOL_SIZE))
    return pooling.MySQLConnectionPool(
        pool_name=safe_name,
        pool_size=size,
        pool_reset_session=True,
        **connect_args(cfg, database=database),
    )


# =============================================================================
# Parsing Helpers
# =============================================================================

def to_int(value: Any, default: int = 0) -> int:
    """Convert remote command output to int, tolerating blanks."""
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return default
