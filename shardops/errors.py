"""
Exception taxonomy.

Every failure raised by the library derives from ShardOpsError, which is a
RuntimeError so callers that only know about RuntimeError keep working.
"""

from typing import Any, List, Sequence, Tuple


class ShardOpsError(RuntimeError):
    """Base class for all topology management errors."""


# Transient infrastructure faults ---------------------------------------------

class RemoteCommandError(ShardOpsError):
    """A checked remote command exited non-zero."""

    def __init__(self, host: Any, command: str, status: int, output: str = ""):
        self.host = host
        self.command = command
        self.status = status
        self.output = output
        super().__init__(f"Command on {host} exited with status {status}: {command}"
                         + (f" ({output.strip()})" if output and output.strip() else ""))


class UnreachableError(ShardOpsError):
    """No working remote shell session could be obtained."""


class QueryError(ShardOpsError):
    """A root-privileged mysql client command reported an error."""


# Consistency faults ----------------------------------------------------------

class ConsistencyError(ShardOpsError):
    """Observed replication or data state disagrees with what the model expects."""


# Precondition violations -----------------------------------------------------

class PreconditionError(ShardOpsError):
    """The requested operation is not allowed in the current state."""


class InvalidStateError(PreconditionError):
    """Illegal state transition, or operation invoked in the wrong state."""


class InsufficientSparesError(PreconditionError):
    """The spare allocator cannot satisfy a request."""


class DestinationNotEmptyError(PreconditionError):
    """A transfer destination already holds data and overwrite was not requested."""


# Other -----------------------------------------------------------------------

class TransferError(ShardOpsError):
    """A stage of the chained transfer failed."""


class OperationTimeout(ShardOpsError):
    """A bounded wait expired."""


class ConfigurationSyncError(ShardOpsError):
    """A configuration sink could not persist a change."""


class AggregateError(ShardOpsError):
    """
    One or more items of a concurrent operation failed.

    Raised only after every item has finished. `failures` holds
    (item, exception) pairs in the order the items were supplied.
    """

    def __init__(self, failures: Sequence[Tuple[Any, BaseException]], action: str = "operation"):
        self.failures: List[Tuple[Any, BaseException]] = list(failures)
        details = "; ".join(f"{item}: {exc}" for item, exc in self.failures)
        super().__init__(f"{len(self.failures)} item(s) failed during {action}: {details}")

    @property
    def items(self) -> List[Any]:
        return [item for item, _ in self.failures]
