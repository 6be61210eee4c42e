"""
Tiered retention policy for stored backups.

Tiers, evaluated in order (first match wins):
- daily: anything up to 7 days old
- weekly: Sundays up to 35 days old
- monthly: the first Sunday of each month, kept indefinitely

Everything else is deleted. Keys whose date path cannot be parsed are never
deleted; they are reported as unknown.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import date
from typing import Iterable, List, Optional, Dict

from .errors import RetentionDeleteFailed, UnparseableBackupKey
from .storage import StorageError


logger = logging.getLogger(__name__)

DAILY_DAYS = 7
WEEKLY_DAYS = 35
SUNDAY = 6  # date.weekday()

BACKUP_PREFIX = 'backups/'
_KEY_DATE_RE = re.compile(r'backups/(\d{4})/(\d{2})/(\d{2})/')


@dataclass(frozen=True)
class RetentionDecision:
    keep: bool
    tier: Optional[str] = None


@dataclass
class RetentionPlan:
    keep: List[str] = field(default_factory=list)
    delete: List[str] = field(default_factory=list)
    unknown: List[str] = field(default_factory=list)


@dataclass
class RetentionResult:
    kept: int = 0
    deleted: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[RetentionDeleteFailed] = field(default_factory=list)


def is_sunday(day: date) -> bool:
    return day.weekday() == SUNDAY


def is_first_sunday(day: date) -> bool:
    """True if day is the first Sunday of its calendar month."""
    return is_sunday(day) and day.day <= 7


def classify(backup_date: date, today: date) -> RetentionDecision:
    """
    Decide whether a backup taken on backup_date is kept as of today.

    Args:
        backup_date: Calendar date of the backup
        today: Reference date

    Returns:
        RetentionDecision with the matching tier, or keep=False
    """
    days_old = (today - backup_date).days

    if days_old <= DAILY_DAYS:
        return RetentionDecision(keep=True, tier='daily')

    if is_sunday(backup_date) and days_old <= WEEKLY_DAYS:
        return RetentionDecision(keep=True, tier='weekly')

    if is_first_sunday(backup_date):
        return RetentionDecision(keep=True, tier='monthly')

    return RetentionDecision(keep=False)


def parse_backup_date(key: str) -> date:
    """
    Extract the backup date from a key like backups/2025/01/15/site.sql.gz.

    Raises:
        UnparseableBackupKey: If the key has no valid date path
    """
    match = _KEY_DATE_RE.search(key)
    if not match:
        raise UnparseableBackupKey(key)

    year, month, day = (int(part) for part in match.groups())
    try:
        return date(year, month, day)
    except ValueError:
        raise UnparseableBackupKey(key)


def plan_retention(keys: Iterable[str], today: date) -> RetentionPlan:
    """
    Split stored keys into keep, delete and unknown sets.

    Unknown keys are logged as anomalies and left out of both keep and
    delete.
    """
    plan = RetentionPlan()

    for key in keys:
        if not key:
            continue

        try:
            backup_date = parse_backup_date(key)
        except UnparseableBackupKey as e:
            logger.warning(str(e))
            plan.unknown.append(key)
            continue

        if classify(backup_date, today).keep:
            plan.keep.append(key)
        else:
            plan.delete.append(key)

    return plan


class RetentionManager:
    """
    Applies the retention policy to one bucket of an object store.

    Deletes are issued one key at a time. A failed delete is logged and
    counted; it never stops the pass.
    """

    def __init__(self, storage):
        """
        Args:
            storage: Object store client (S3Storage or compatible)
        """
        self.storage = storage

    def _list(self, bucket: str) -> List[str]:
        return self.storage.list_keys(bucket, prefix=BACKUP_PREFIX)

    def apply(self, bucket: str, today: date) -> RetentionResult:
        """
        Delete every backup in bucket that the policy does not keep.

        Returns:
            RetentionResult with kept/deleted/failed/skipped counts

        Raises:
            StorageError: If the bucket cannot be listed
        """
        logger.info(f"Applying retention policy to bucket: {bucket}")

        plan = plan_retention(self._list(bucket), today)
        result = RetentionResult(kept=len(plan.keep), skipped=len(plan.unknown))

        if not plan.keep and not plan.delete and not plan.unknown:
            logger.info(f"No backups found in bucket {bucket}")
            return result

        for key in plan.delete:
            logger.info(f"Deleting old backup: {key}")
            try:
                self.storage.delete(bucket, key)
                result.deleted += 1
            except StorageError as e:
                error = RetentionDeleteFailed(key, e)
                logger.error(str(error))
                result.errors.append(error)
                result.failed += 1

        logger.info(
            f"Retention complete: kept {result.kept}, deleted {result.deleted}, "
            f"failed {result.failed}, skipped {result.skipped}"
        )
        return result

    def preview(self, bucket: str, today: date) -> RetentionPlan:
        """Dry run: return what apply() would keep and delete."""
        logger.info(f"Previewing retention policy for bucket: {bucket}")
        return plan_retention(self._list(bucket), today)

    def stats(self, bucket: str, today: date) -> Dict[str, int]:
        """
        Count stored backups per retention tier.

        Returns:
            Dict with 'daily', 'weekly', 'monthly' and 'expired' counts
        """
        counts = {'daily': 0, 'weekly': 0, 'monthly': 0, 'expired': 0}

        for key in self._list(bucket):
            try:
                backup_date = parse_backup_date(key)
            except UnparseableBackupKey:
                continue

            decision = classify(backup_date, today)
            counts[decision.tier or 'expired'] += 1

        return counts
