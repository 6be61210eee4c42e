"""
Backup pipeline - drives one site's backup from dump to status record.

Workflow:
1. Resolve database credentials from the container
2. Dump the database to a private local file
3. Gzip the dump in place
4. Upload to backups/YYYY/MM/DD/{site}.sql.gz
5. Verify the stored object's header
6. Remove the local file
7. Apply the retention policy to the site's bucket
8. Record the outcome in the status ledger
"""

import enum
import logging
import os
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import List, Optional

from pgbackups.config import Site
from pgbackups.status import StatusRecord, StatusRecorder, SUCCESS, FAILURE
from pgbackups.utils.files import open_private, remove_quietly
from pgbackups.utils.formatting import format_bytes
from .compression import compress_file, has_dump_signature, CompressionError, PG_DUMP_SIGNATURE
from .errors import (
    BackupError,
    CredentialsUnavailable,
    DumpFailed,
    CompressionFailed,
    UploadFailed,
    VerificationFailed,
)
from .retention import RetentionManager, RetentionResult
from .sources import SourceError
from .storage import StorageError, generate_backup_key


logger = logging.getLogger(__name__)

DEFAULT_MIN_DUMP_BYTES = 100
VERIFY_RANGE = (0, 1023)


class PipelineState(enum.Enum):
    START = 'start'
    CREDENTIALS_RESOLVED = 'credentials_resolved'
    DUMPED = 'dumped'
    COMPRESSED = 'compressed'
    UPLOADED = 'uploaded'
    VERIFIED = 'verified'
    LOCAL_CLEANED = 'local_cleaned'
    RETENTION_APPLIED = 'retention_applied'
    RECORDED = 'recorded'


@dataclass
class BackupArtifact:
    site_id: str
    local_path: str
    byte_size: int
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class PipelineResult:
    site_id: str
    outcome: str
    last_state: PipelineState
    byte_size: int = 0
    key: Optional[str] = None
    error: Optional[BackupError] = None
    retention: Optional[RetentionResult] = None
    logs: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.outcome == SUCCESS


class BackupPipeline:
    """
    Runs the backup state machine for one site at a time.

    Steps run strictly in order with no retries; the first failing step
    aborts the site. The local artifact never outlives run().
    """

    def __init__(
        self,
        source,
        storage,
        recorder: StatusRecorder,
        backup_dir: str,
        min_dump_bytes: int = DEFAULT_MIN_DUMP_BYTES,
        signature: bytes = PG_DUMP_SIGNATURE
    ):
        """
        Args:
            source: Container data source (DockerPostgresSource or compatible)
            storage: Object store client (S3Storage or compatible)
            recorder: Status ledger
            backup_dir: Working directory for local dump files
            min_dump_bytes: Dumps smaller than this are treated as failed
            signature: Bytes expected near the start of a valid dump
        """
        self.source = source
        self.storage = storage
        self.recorder = recorder
        self.backup_dir = backup_dir
        self.min_dump_bytes = min_dump_bytes
        self.signature = signature
        self.retention = RetentionManager(storage)

        self.state = PipelineState.START
        self.logs = []

    def run(self, site: Site, today: Optional[date] = None) -> PipelineResult:
        """
        Back up one site.

        Args:
            site: Site to back up
            today: Date used for the storage key and retention (default: today)

        Returns:
            PipelineResult; failures are reported in it, not raised
        """
        today = today or date.today()
        self.state = PipelineState.START
        self.logs = []

        self._log(f"Backing up: {site.site_id} (container: {site.source_ref}, bucket: {site.store_ref})")

        result = PipelineResult(site_id=site.site_id, outcome=FAILURE, last_state=self.state)
        artifact = None

        try:
            credentials = self._resolve_credentials(site)
            artifact = self._dump(site, credentials)
            artifact = self._compress(artifact)
            compressed_size = artifact.byte_size

            key = self._upload(site, artifact, today)
            result.key = key

            try:
                self._verify(site, key)
            finally:
                self._cleanup_local(artifact)
                artifact = None

            result.retention = self._apply_retention(site, today)
            result.byte_size = self._stored_size(site, key, default=compressed_size)
            result.outcome = SUCCESS
            self._log(f"Backup complete for {site.site_id}")

        except BackupError as e:
            result.error = e
            self._log(f"Backup failed for {site.site_id} at {e.step}: {e}", level=logging.ERROR)

        except Exception as e:
            logger.exception(f"Unexpected error backing up {site.site_id}")
            result.error = BackupError(f"Unexpected error: {e}")
            self._log(f"Backup failed for {site.site_id}: {e}", level=logging.ERROR)

        finally:
            if artifact is not None:
                remove_quietly(artifact.local_path)

        if result.error is not None:
            result.byte_size = 0

        result.last_state = self.state
        self._record(site, result, today)
        result.logs = list(self.logs)
        return result

    def _resolve_credentials(self, site: Site):
        try:
            credentials = self.source.resolve_credentials(site.source_ref)
        except SourceError as e:
            raise CredentialsUnavailable(str(e))
        self.state = PipelineState.CREDENTIALS_RESOLVED
        return credentials

    def _dump(self, site: Site, credentials) -> BackupArtifact:
        """
        Dump the site's database to {backup_dir}/{site}.sql.

        Raises:
            DumpFailed: If pg_dump fails or the file is implausibly small
        """
        local_path = os.path.join(self.backup_dir, f"{site.site_id}.sql")

        try:
            os.makedirs(self.backup_dir, exist_ok=True)
            with open_private(local_path) as sink:
                self.source.run_dump(site.source_ref, credentials, sink)
        except (SourceError, OSError) as e:
            remove_quietly(local_path)
            raise DumpFailed(str(e))

        size = os.path.getsize(local_path)
        if size < self.min_dump_bytes:
            remove_quietly(local_path)
            raise DumpFailed(f"Dump file suspiciously small ({size} bytes). Backup may have failed.")

        self._log(f"pg_dump completed: {format_bytes(size)}")
        self.state = PipelineState.DUMPED

        try:
            tables = self.source.list_tables(site.source_ref, credentials)
        except SourceError:
            tables = []
        if tables:
            self._log(f"Tables backed up: {', '.join(tables)}")

        return BackupArtifact(site_id=site.site_id, local_path=local_path, byte_size=size)

    def _compress(self, artifact: BackupArtifact) -> BackupArtifact:
        try:
            compressed_path = compress_file(artifact.local_path)
        except CompressionError as e:
            raise CompressionFailed(str(e))

        size = os.path.getsize(compressed_path)
        self._log(f"Compressed to: {format_bytes(size)}")
        self.state = PipelineState.COMPRESSED

        return BackupArtifact(
            site_id=artifact.site_id,
            local_path=compressed_path,
            byte_size=size,
            created_at=artifact.created_at
        )

    def _upload(self, site: Site, artifact: BackupArtifact, today: date) -> str:
        """
        Upload the compressed dump.

        Raises:
            UploadFailed: On any storage error, including bucket creation
        """
        key = generate_backup_key(site.site_id, today)

        try:
            self.storage.ensure_bucket(site.store_ref)
            self.storage.upload(site.store_ref, key, artifact.local_path)
        except StorageError as e:
            raise UploadFailed(f"Failed to upload backup to S3 bucket {site.store_ref}: {e}")

        self._log(f"Uploaded to s3://{site.store_ref}/{key}")
        self.state = PipelineState.UPLOADED
        return key

    def _verify(self, site: Site, key: str):
        """
        Check the stored object's first bytes for the dump signature.

        A failed verification leaves the object in place.

        Raises:
            VerificationFailed: If the header cannot be fetched or is wrong
        """
        start, end = VERIFY_RANGE

        try:
            header = self.storage.get_range(site.store_ref, key, start, end)
        except StorageError as e:
            raise VerificationFailed(f"Failed to download backup header from s3://{site.store_ref}/{key}: {e}")

        if not has_dump_signature(header, self.signature):
            raise VerificationFailed(f"Backup verification failed: s3://{site.store_ref}/{key} is not a valid PostgreSQL dump")

        self._log("Backup verification: OK")
        self.state = PipelineState.VERIFIED

    def _cleanup_local(self, artifact: BackupArtifact):
        if remove_quietly(artifact.local_path):
            self._log("Cleaned up local backup file")
        if self.state == PipelineState.VERIFIED:
            self.state = PipelineState.LOCAL_CLEANED

    def _apply_retention(self, site: Site, today: date) -> Optional[RetentionResult]:
        try:
            result = self.retention.apply(site.store_ref, today)
        except StorageError as e:
            self._log(f"Retention skipped, could not list bucket {site.store_ref}: {e}", level=logging.WARNING)
            result = None
        else:
            self._log(f"Retention policy applied: {result.deleted} old backups deleted")

        self.state = PipelineState.RETENTION_APPLIED
        return result

    def _stored_size(self, site: Site, key: str, default: int) -> int:
        try:
            return self.storage.head(site.store_ref, key)
        except StorageError as e:
            self._log(f"Could not read stored size of {key}: {e}", level=logging.WARNING)
            return default

    def _record(self, site: Site, result: PipelineResult, today: date):
        self.recorder.record(StatusRecord(
            date=today,
            site_id=site.site_id,
            outcome=result.outcome,
            byte_size=result.byte_size,
            error_text=str(result.error) if result.error else ''
        ))
        self.state = PipelineState.RECORDED

    def _log(self, message: str, level: int = logging.INFO):
        """
        Log a message and keep a timestamped copy for this run.

        Args:
            message: Log message
            level: logging level
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {logging.getLevelName(level)}: {message}")
        logger.log(level, message)
