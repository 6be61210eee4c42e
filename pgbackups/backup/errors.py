"""
Error taxonomy for the backup pipeline.

Every pipeline step failure is a BackupError subclass tagged with the step
it happened in. Adapter modules raise their own low-level errors
(SourceError, StorageError, CompressionError); the pipeline translates them
into these.
"""


class BackupError(Exception):
    """Base class for backup pipeline failures."""
    step = 'backup'


class CredentialsUnavailable(BackupError):
    """Raised when database credentials cannot be read from a container."""
    step = 'credentials'


class DumpFailed(BackupError):
    """Raised when the dump command fails or produces an implausible file."""
    step = 'dump'


class CompressionFailed(BackupError):
    """Raised when the dump cannot be compressed."""
    step = 'compress'


class UploadFailed(BackupError):
    """Raised when the compressed dump cannot be stored."""
    step = 'upload'


class VerificationFailed(BackupError):
    """Raised when an uploaded object does not look like a database dump."""
    step = 'verify'


class RetentionDeleteFailed(BackupError):
    """A single retention delete failed. Never fatal to the pipeline."""
    step = 'retention'

    def __init__(self, key: str, reason):
        super().__init__(f"Failed to delete {key}: {reason}")
        self.key = key


class UnparseableBackupKey(BackupError, ValueError):
    """A stored key has no valid backups/YYYY/MM/DD/ date path."""
    step = 'retention'

    def __init__(self, key: str):
        super().__init__(f"Could not extract backup date from key: {key}")
        self.key = key
