"""
Persistent SSH sessions backed by paramiko.

A session wraps one connected paramiko.SSHClient and runs commands on it,
returning (exit_status, combined stdout and stderr). Hosts keep idle
sessions in a pool and hand them out again after a validation round-trip.
"""

from typing import List, Optional, Tuple

import paramiko

# Errors that mean the transport itself is broken, as opposed to a command failing
SSH_ERRORS = (paramiko.SSHException, OSError, EOFError)


class SSHSession:
    """A reusable SSH connection to one host."""

    def __init__(self, client: paramiko.SSHClient, ip: str):
        self.client = client
        self.ip = ip

    @classmethod
    def open(
        cls,
        ip: str,
        user: str = "root",
        port: int = 22,
        key_filenames: Optional[List[str]] = None,
        timeout: int = 5,
    ) -> 'SSHSession':
        """Connect to ip as user. Host keys are accepted without verification."""
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        client.connect(
            ip,
            port=port,
            username=user,
            key_filename=key_filenames,
            timeout=timeout,
            banner_timeout=timeout,
            auth_timeout=timeout,
        )
        return cls(client, ip)

    def run(self, command: str, timeout: Optional[float] = None) -> Tuple[int, str]:
        """
        Execute a command and wait for it to finish.

        stderr is merged into stdout on the channel, so both arrive
        interleaved in the order the command wrote them.

        Returns:
            Tuple of (exit_status, combined output)
        """
        stdin, stdout, _stderr = self.client.exec_command(command, timeout=timeout)
        stdout.channel.set_combine_stderr(True)
        stdin.close()
        out = stdout.read().decode(errors="replace")
        exit_status = stdout.channel.recv_exit_status()
        return exit_status, out

    def is_active(self) -> bool:
        transport = self.client.get_transport()
        return transport is not None and transport.is_active()

    def close(self) -> None:
        self.client.close()


def open_session(ip: str, config) -> SSHSession:
    """Default session factory: connect using the SSH settings of a Config."""
    return SSHSession.open(
        ip,
        user=config.ssh_user,
        port=config.ssh_port,
        key_filenames=config.ssh_keys,
        timeout=config.ssh_timeout,
    )
