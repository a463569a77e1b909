"""Library exceptions for the tiervault package."""


class TierVaultError(Exception):
    """Base exception for tiervault."""

    pass


class ConfigurationError(TierVaultError):
    """
    Raised when configuration or policy rules are malformed or contradictory.

    Fatal at startup: the orchestrator never runs with an invalid policy.

    Attributes:
        field: Name of the offending setting or rule (if known)
    """

    def __init__(self, message: str, field: str | None = None) -> None:
        self.field = field
        prefix = f"{field}: " if field else ""
        super().__init__(f"Invalid configuration: {prefix}{message}")


class CollectionError(TierVaultError):
    """
    Raised when the chunk inventory cannot be collected.

    Aborts the current tiering run only; the next scheduled run starts
    again from scratch.

    Attributes:
        attempts: Number of collection attempts made
    """

    def __init__(self, message: str, attempts: int = 1) -> None:
        self.attempts = attempts
        super().__init__(f"Inventory collection failed after {attempts} attempt(s): {message}")


class ActionError(TierVaultError):
    """
    Raised when a single tiering action fails.

    Isolated to the action: never aborts the run.

    Attributes:
        chunk_id: Chunk the action targeted
        retryable: Whether the failure is worth retrying
    """

    retryable: bool = False

    def __init__(self, chunk_id: str, message: str) -> None:
        self.chunk_id = chunk_id
        super().__init__(f"Action on chunk {chunk_id} failed: {message}")


class TransientActionError(ActionError):
    """Timeouts, lock contention, dropped connections. Retried."""

    retryable = True


class PermanentActionError(ActionError):
    """Invalid chunk references, constraint violations. Not retried."""

    retryable = False


class ChunkNotFoundError(PermanentActionError):
    """Raised when a chunk no longer exists in the database engine."""

    def __init__(self, chunk_id: str) -> None:
        super().__init__(chunk_id, "chunk not found")


class BackupError(TierVaultError):
    """
    Raised when a backup operation fails.

    Attributes:
        backup_id: Backup record involved (if one was created)
    """

    def __init__(self, message: str, backup_id: str | None = None) -> None:
        self.backup_id = backup_id
        super().__init__(message)


class DumpError(BackupError):
    """Raised when producing a dump or WAL archive fails."""

    pass


class ReplicationError(BackupError):
    """Raised when copying an artifact to the remote target fails."""

    pass


class VerificationError(BackupError):
    """Raised when an artifact's checksum, size or structure does not check out."""

    pass


class EncryptionError(BackupError):
    """Raised when an artifact cannot be encrypted or fails decryption."""

    pass


class ExhaustionError(TierVaultError):
    """
    Raised when a storage target is full or below its free-space floor.

    Attributes:
        target: Name of the exhausted tier or storage target
        percent_used: Usage percentage when known
    """

    def __init__(self, target: str, percent_used: float | None = None, detail: str = "") -> None:
        self.target = target
        self.percent_used = percent_used
        usage = f" ({percent_used:.1f}% used)" if percent_used is not None else ""
        extra = f": {detail}" if detail else ""
        super().__init__(f"Storage target {target} exhausted{usage}{extra}")


class InvalidTransitionError(TierVaultError):
    """Raised when a record is moved through a forbidden status transition."""

    def __init__(self, record_id: str, current: str, requested: str) -> None:
        self.record_id = record_id
        self.current = current
        self.requested = requested
        super().__init__(f"Record {record_id} cannot move from {current} to {requested}")


class AlreadyRunningError(TierVaultError):
    """
    Raised when a job is triggered while another instance holds its run-lock.

    Attributes:
        job: Job name
        holder_pid: PID recorded in the lock file, if readable
    """

    def __init__(self, job: str, holder_pid: int | None = None) -> None:
        self.job = job
        self.holder_pid = holder_pid
        holder = f" (pid {holder_pid})" if holder_pid else ""
        super().__init__(f"Job {job} is already running{holder}")


__all__ = [
    "TierVaultError",
    "ConfigurationError",
    "CollectionError",
    "ActionError",
    "TransientActionError",
    "PermanentActionError",
    "ChunkNotFoundError",
    "BackupError",
    "DumpError",
    "ReplicationError",
    "VerificationError",
    "EncryptionError",
    "ExhaustionError",
    "InvalidTransitionError",
    "AlreadyRunningError",
]
