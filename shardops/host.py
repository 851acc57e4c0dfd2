"""
Host: a UNIX server reachable over SSH as a privileged user.

A Host keeps a small pool of validated SSH sessions, runs commands with
bounded retry, and implements the chained directory transfer used to clone
MySQL data directories onto one or more machines with a single read of the
source.
"""

import re
import threading
import time
from collections import deque
from typing import Any, Dict, List, Optional, Tuple, Union

from .errors import (
    ConsistencyError,
    DestinationNotEmptyError,
    OperationTimeout,
    PreconditionError,
    RemoteCommandError,
    ShardOpsError,
    TransferError,
    UnreachableError,
)
from .ssh import SSH_ERRORS, SSHSession
from .utils import output, to_int

IPV4_PATTERN = re.compile(r"^\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}$")

# One line of `ls --color=never -1AgGF`: perms, links, size, date, name
LS_LINE_PATTERN = re.compile(r"^[\.\w-]+\s+\d+\s+(?P<size>\d+).*(?:\d\d:\d\d|\d{4})\s+(?P<name>.*)$")

SSH_CONNECT_ATTEMPTS = 5
FIFO_WAIT_SECONDS = 10
STAGE_JOIN_SECONDS = 30


def to_host(obj: Any) -> 'Host':
    """Return the Host behind a Host or DB."""
    if isinstance(obj, Host):
        return obj
    return obj.to_host()


class Host:
    """A machine the topology manages through its remote shell."""

    def __init__(self, ip: str, registry):
        if not IPV4_PATTERN.match(ip):
            raise ValueError(f"Invalid IP address: {ip}")
        self.ip = ip
        self.registry = registry
        self._sessions: List[SSHSession] = []
        self._lock = threading.Lock()
        self._available: Optional[bool] = None
        self._hostname: Optional[str] = None
        self._cores: Optional[int] = None

    @property
    def config(self):
        return self.registry.config

    def __str__(self) -> str:
        return self.ip

    def __repr__(self) -> str:
        return f"<Host {self.ip}>"

    def to_host(self) -> 'Host':
        return self

    def output(self, message: Any, table: Any = None, warning: bool = False) -> str:
        return output(self, message, table, warning=warning)

    # =========================================================================
    # Remote execution
    # =========================================================================

    def get_ssh_connection(self) -> SSHSession:
        """
        Return a working SSH session, reusing an idle one when possible.

        Each candidate session is validated with an `echo ping` round-trip;
        sessions that fail validation are closed and discarded.

        Raises:
            UnreachableError: if no working session is obtained after 5 attempts
        """
        for attempt in range(SSH_CONNECT_ATTEMPTS):
            session = None
            with self._lock:
                if self._sessions:
                    session = self._sessions.pop(0)
            if session is None:
                try:
                    session = self.registry.open_session(self.ip)
                except SSH_ERRORS as exc:
                    self.output(f"Unable to SSH on attempt {attempt + 1}: {exc}", warning=True)
                    continue

            try:
                _, result = session.run("echo ping")
            except SSH_ERRORS:
                result = None
            if result is not None and result.strip() == "ping":
                self._available = True
                return session
            self.output("Discarding nonfunctional SSH connection")
            session.close()

        self._available = False
        raise UnreachableError(
            f"Unable to obtain working SSH connection to {self} after {SSH_CONNECT_ATTEMPTS} attempts"
        )

    def save_ssh_connection(self, session: SSHSession) -> None:
        """Return a session to the idle pool, or close it if unusable or the pool is full."""
        if not session.is_active():
            self.output("Discarding nonfunctional SSH connection")
            session.close()
            return
        with self._lock:
            if len(self._sessions) < self.config.ssh_pool_size:
                self._sessions.append(session)
                return
        session.close()

    def close_connections(self) -> None:
        with self._lock:
            sessions, self._sessions = self._sessions, []
        for session in sessions:
            session.close()

    def execute(
        self,
        command: str,
        retries: int = 2,
        check: bool = False,
        timeout: Optional[float] = None,
    ) -> str:
        """
        Run a command on this host and return its output.

        Args:
            command: Shell command line
            retries: Extra attempts after a connection failure, sleeping
                `failures` seconds between attempts. Pass 0 for commands that
                are not idempotent.
            check: Raise RemoteCommandError when the command exits non-zero
            timeout: Optional per-command channel timeout in seconds

        Returns:
            Combined stdout/stderr with trailing newlines removed

        Raises:
            UnreachableError: if every attempt failed at the connection level
            RemoteCommandError: if check is set and the command failed
        """
        retries = max(0, int(retries or 0))
        failures = 0
        while True:
            session = self.get_ssh_connection()
            try:
                status, result = session.run(command, timeout=timeout)
                break
            except SSH_ERRORS as exc:
                session.close()
                failures += 1
                if failures > retries:
                    raise UnreachableError(f"Command \"{command}\" on {self} failed: {exc}") from exc
                self.output(f"Command \"{command}\" failed, re-trying after delay", warning=True)
                time.sleep(failures)

        self.save_ssh_connection(session)
        if check and status != 0:
            raise RemoteCommandError(self, command, status, result)
        return result.rstrip("\n")

    def is_available(self, force: bool = False) -> bool:
        """True if the host answers over SSH. The first answer is cached unless force is set."""
        if self._available is None or force:
            try:
                self.execute("echo ping")
            except UnreachableError as exc:
                self.output(f"Host is unreachable: {exc}", warning=True)
                self._available = False
        return bool(self._available)

    def wait_for_listener(self, port: int, timeout: float = 10) -> bool:
        """Poll until some process listens on port, or raise OperationTimeout."""
        deadline = time.time() + timeout
        while True:
            listening = to_int(self.execute(f"netstat -ln | grep ':{port}\\s' | wc -l"))
            if listening > 0:
                return True
            if time.time() >= deadline:
                raise OperationTimeout(f"Nothing is listening on {self.ip}:{port} after {timeout} seconds")
            time.sleep(1)

    def wait_for_fifo(self, path: str, timeout: float = FIFO_WAIT_SECONDS) -> bool:
        deadline = time.time() + timeout
        while True:
            if self.execute(f"test -p {path} && echo yes || echo no").strip() == "yes":
                return True
            if time.time() >= deadline:
                raise OperationTimeout(f"FIFO {path} not found on {self} after {timeout} seconds")
            time.sleep(1)

    def service(self, operation: str, name: str, options: str = "") -> str:
        """Run an init-system operation (start, stop, restart, status) for a service."""
        return self.execute(f"service {name} {operation} {options}".rstrip(), retries=0)

    def confirm_installed(self, program: str) -> bool:
        """Raise PreconditionError unless program is on the remote PATH."""
        found = self.execute(f"which {program} 2>/dev/null")
        if not found.strip() or f"no {program} in" in found:
            raise PreconditionError(f"{program} not installed on {self}, or missing from path")
        return True

    def hostname(self) -> str:
        if not self.is_available():
            return "unknown"
        if self._hostname is None:
            self._hostname = self.execute("hostname").strip()
        return self._hostname

    def cores(self) -> int:
        if self._cores is None:
            count = to_int(self.execute(r"grep -c 'processor\s*:' /proc/cpuinfo"), default=1)
            self._cores = count or 1
        return self._cores

    # =========================================================================
    # Directory listing / comparison
    # =========================================================================

    def dir_list(self, path: str) -> Dict[str, Union[int, str]]:
        """
        List a directory (or single file) as {name: size}.

        Subdirectories are reported with a size of '/'.
        """
        ls_out = self.execute(f"ls --color=never -1AgGF {path}")
        result: Dict[str, Union[int, str]] = {}
        for line in ls_out.split("\n"):
            match = LS_LINE_PATTERN.match(line)
            if not match:
                continue
            raw_name = match.group("name")
            name = raw_name[:-1] if raw_name and raw_name[-1] in "*/=>@|" else raw_name
            result[name.split("/")[-1]] = "/" if raw_name.endswith("/") else int(match.group("size"))
        return result

    def dir_size(self, path: str) -> int:
        """Recursively compute the size in bytes of the files under path."""
        total = 0
        for name, size in self.dir_list(path).items():
            total += self.dir_size(f"{path}/{name}") if size == "/" else int(size)
        return total

    def compare_dir(self, base_dir: str, targets: Any, files: Optional[List[str]] = None) -> bool:
        """
        Compare file names and sizes under base_dir with every destination.

        Walks the tree breadth-first starting from `files` (default: the whole
        directory).

        Raises:
            ConsistencyError: naming the first mismatching path
        """
        filenames = _normalize_files(files)
        base_dir = _with_slash(base_dir)
        destinations = _normalize_destinations(targets, base_dir)

        queue = deque(filenames)
        while queue:
            rel = queue.popleft()
            source_listing = self.dir_list(base_dir + rel)
            for target, path in destinations.items():
                target_listing = target.dir_list(path + rel)
                for name, size in source_listing.items():
                    target_size = target_listing.get(name, "MISSING")
                    if size != target_size:
                        raise ConsistencyError(
                            f"Directory listing mismatch when comparing {self}:{base_dir}{rel}/{name} "
                            f"to {target}:{path}{rel}/{name} (size: {size} vs {target_size})"
                        )
            queue.extend(f"{rel.rstrip('/')}/{name}" for name, size in source_listing.items() if size == "/")
        return True

    # =========================================================================
    # Chained transfer
    # =========================================================================

    def transfer_directory(
        self,
        base_dir: str,
        targets: Any,
        files: Optional[List[str]] = None,
        port: Optional[int] = None,
        overwrite: bool = False,
    ) -> bool:
        """
        Copy base_dir (or selected files in it) to one or more hosts.

        The destinations form a chain: the source streams a tar archive to the
        first destination, and each destination except the last tees the
        stream to local disk and onward to the next one through a named pipe.

        Args:
            base_dir: Source directory, also the default destination directory
            targets: Host/DB, list of them, or mapping of Host/DB to destination dir
            files: Names relative to base_dir to copy (default: everything)
            port: netcat port (default: config.transfer_port)
            overwrite: Skip the check that destinations are empty

        Returns:
            True once the copy is verified

        Raises:
            PreconditionError: suspicious destination path or no targets
            DestinationNotEmptyError: destination holds data and overwrite is False
            TransferError: any chain stage failed; the chain is not retried
            ConsistencyError: verification found a mismatch
        """
        filenames = _normalize_files(files)
        base_dir = _with_slash(base_dir)
        destinations = _normalize_destinations(targets, base_dir)
        port = int(port or self.config.transfer_port)

        for target, path in destinations.items():
            _validate_destination(target, path)

        compress, decompress = self._compression_stages(destinations)
        encrypt, decrypt = self._encryption_stages(destinations)

        for target, path in destinations.items():
            target.execute(f"mkdir -p {path}")
            if not overwrite:
                all_paths = " ".join(path + f for f in filenames)
                for name, size in target.dir_list(all_paths).items():
                    if size != "/" and int(size) > 0:
                        raise DestinationNotEmptyError(f"File {name} exists on destination and has nonzero size!")

        chain = list(destinations)
        stages = _ChainStages()
        try:
            for i, target in enumerate(reversed(chain)):
                path = destinations[target]
                if i == 0:
                    stages.start(target, f"cd {path} && nc -l {port}{decrypt}{decompress} | tar x")
                    target.wait_for_listener(port)
                    target.output("Listening with netcat.")
                else:
                    downstream = chain[len(chain) - i]
                    fifo = f"fifo{port}"
                    stages.start(target, f"cd {path} && mkfifo {fifo} && nc {downstream.ip} {port} <{fifo} && rm {fifo}")
                    target.wait_for_fifo(f"{path}{fifo}")
                    stages.start(target, f"cd {path} && nc -l {port} | tee {fifo}{decrypt}{decompress} | tar x")
                    target.wait_for_listener(port)
                    target.output(f"Listening with netcat, and chaining to {downstream}.")

            file_list = " ".join(filenames)
            self.output(f"Sending files over to {chain[0]}: {file_list}")
            try:
                self.execute(
                    f"cd {base_dir} && tar c {file_list}{compress}{encrypt} | nc {chain[0].ip} {port}",
                    retries=0,
                    check=True,
                )
            except (RemoteCommandError, UnreachableError) as exc:
                raise TransferError(f"Sending from {self} failed: {exc}") from exc
        except ShardOpsError:
            stages.abort(port, destinations)
            raise

        failures = stages.join()
        if failures:
            details = "; ".join(f"{host}: {exc}" for host, exc in failures)
            raise TransferError(f"Transfer chain failed: {details}")
        self.output("File copy complete.")

        self.output("Verifying file sizes and types on all destinations.")
        self.compare_dir(base_dir, destinations, filenames)
        self.output("Verification successful.")
        return True

    def _compression_stages(self, destinations: Dict['Host', str]) -> Tuple[str, str]:
        cfg = self.config
        if not (cfg.compress_with and cfg.decompress_with):
            self.output("Compression disabled -- no compression method configured")
            return "", ""
        self.confirm_installed(cfg.compress_with.split(" ")[0])
        for target in destinations:
            target.confirm_installed(cfg.decompress_with.split(" ")[0])
        self.output(f"Using {cfg.compress_with.split(' ')[0]} for compression")
        return f" | {cfg.compress_with}", f" | {cfg.decompress_with}"

    def _encryption_stages(self, destinations: Dict['Host', str]) -> Tuple[str, str]:
        cfg = self.config
        if not (cfg.encrypt_with and cfg.decrypt_with):
            return "", ""
        self.confirm_installed(cfg.encrypt_with.split(" ")[0])
        for target in destinations:
            target.confirm_installed(cfg.decrypt_with.split(" ")[0])
        self.output(f"Using {cfg.encrypt_with.split(' ')[0]} for encryption")
        return f" | {cfg.encrypt_with}", f" | {cfg.decrypt_with}"


class _ChainStages:
    """Background threads running the long-lived commands of a transfer chain."""

    def __init__(self):
        self._threads: List[threading.Thread] = []
        self._hosts: List[Host] = []
        self._failures: List[Tuple[Host, BaseException]] = []
        self._lock = threading.Lock()

    def start(self, host: Host, command: str) -> None:
        def run():
            try:
                host.execute(command, retries=0, check=True)
            except (RemoteCommandError, UnreachableError) as exc:
                with self._lock:
                    self._failures.append((host, exc))

        thread = threading.Thread(target=run, name=f"chain-{host.ip}", daemon=True)
        thread.start()
        self._threads.append(thread)
        if host not in self._hosts:
            self._hosts.append(host)

    def join(self, timeout: Optional[float] = None) -> List[Tuple[Host, BaseException]]:
        for thread in self._threads:
            thread.join(timeout)
        return list(self._failures)

    def abort(self, port: int, destinations: Dict[Host, str]) -> None:
        """Kill the listeners and FIFO forwarders already started, then reap their threads."""
        # Bracketing the first character keeps pkill from matching its own shell
        listener = f"[n]c -l {port}"
        forwarder = f"[m]kfifo fifo{port}"
        for host in self._hosts:
            try:
                host.execute(
                    f"pkill -f '{listener}'; pkill -f '{forwarder}'; rm -f {destinations[host]}fifo{port}",
                    retries=0,
                )
            except UnreachableError as exc:
                host.output(f"Unable to stop transfer stages: {exc}", warning=True)
        self.join(STAGE_JOIN_SECONDS)


def _normalize_files(files: Any) -> List[str]:
    if not files:
        return ["."]
    if isinstance(files, str):
        return [files]
    return list(files)


def _with_slash(path: str) -> str:
    return path if path.endswith("/") else path + "/"


def _normalize_destinations(targets: Any, base_dir: str) -> Dict[Host, str]:
    if isinstance(targets, dict):
        destinations = {to_host(t): _with_slash(d) for t, d in targets.items()}
    else:
        if not isinstance(targets, (list, tuple, set)):
            targets = [targets]
        destinations = {to_host(t): base_dir for t in targets}
    if not destinations:
        raise PreconditionError("No target hosts supplied")
    return destinations


def _validate_destination(target: Host, path: str) -> None:
    stripped = path.rstrip("/")
    if stripped in ("", ".") or ".." in path or "./" in path:
        raise PreconditionError(f"Directory {target}:{path} looks suspicious")
