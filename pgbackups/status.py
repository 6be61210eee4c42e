"""
Append-only status ledger of per-site backup outcomes.

One record per line:

    YYYY-MM-DD|site_id|<success|failure>|byte_size|error_text

The ledger feeds the weekly digest and the status API. Records are never
rewritten or compacted.
"""

import logging
import os
from dataclasses import dataclass
from datetime import date, timedelta
from typing import List, Optional


logger = logging.getLogger(__name__)

SUCCESS = 'success'
FAILURE = 'failure'


@dataclass(frozen=True)
class StatusRecord:
    date: date
    site_id: str
    outcome: str
    byte_size: int = 0
    error_text: str = ''

    @property
    def succeeded(self) -> bool:
        return self.outcome == SUCCESS

    def to_line(self) -> str:
        # Keep one record on one line whatever the error says
        error_text = ' '.join(self.error_text.replace('|', '/').split())
        return f"{self.date.isoformat()}|{self.site_id}|{self.outcome}|{self.byte_size}|{error_text}"

    @classmethod
    def from_line(cls, line: str) -> 'StatusRecord':
        """
        Parse a ledger line.

        Raises:
            ValueError: If the line is malformed
        """
        parts = line.rstrip('\n').split('|', 4)
        if len(parts) != 5:
            raise ValueError(f"Expected 5 fields, got {len(parts)}")

        day, site_id, outcome, byte_size, error_text = parts
        if outcome not in (SUCCESS, FAILURE):
            raise ValueError(f"Unknown outcome: {outcome}")

        return cls(
            date=date.fromisoformat(day),
            site_id=site_id,
            outcome=outcome,
            byte_size=int(byte_size or 0),
            error_text=error_text
        )

    def to_dict(self) -> dict:
        return {
            'date': self.date.isoformat(),
            'site_id': self.site_id,
            'outcome': self.outcome,
            'byte_size': self.byte_size,
            'error_text': self.error_text
        }


class StatusRecorder:
    """
    File-backed status ledger.

    record() never raises: losing a status line must not abort a backup run.
    """

    def __init__(self, path: str):
        self.path = path

    def record(self, entry: StatusRecord):
        try:
            directory = os.path.dirname(self.path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(self.path, 'a', encoding='utf-8') as f:
                f.write(entry.to_line() + '\n')
        except OSError as e:
            logger.error(f"Failed to record status for {entry.site_id}: {e}")

    def query(self, since: date) -> List[StatusRecord]:
        """
        Return every record dated on or after since, in insertion order.

        Malformed lines are skipped with a warning.
        """
        if not os.path.exists(self.path):
            return []

        records = []
        with open(self.path, 'r', encoding='utf-8') as f:
            for line_number, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                try:
                    entry = StatusRecord.from_line(line)
                except ValueError as e:
                    logger.warning(f"Skipping malformed status line {line_number} in {self.path}: {e}")
                    continue
                if entry.date >= since:
                    records.append(entry)

        return records

    def weekly(self, today: Optional[date] = None) -> List[StatusRecord]:
        """Records from the past 7 days."""
        today = today or date.today()
        return self.query(today - timedelta(days=7))


def summarize(records: List[StatusRecord]) -> dict:
    """
    Aggregate ledger records into totals and per-site counts.

    Returns:
        Dict with 'total', 'succeeded', 'failed', 'total_bytes' and 'sites'
    """
    summary = {
        'total': len(records),
        'succeeded': 0,
        'failed': 0,
        'total_bytes': 0,
        'sites': {}
    }

    for entry in records:
        site = summary['sites'].setdefault(entry.site_id, {
            'succeeded': 0,
            'failed': 0,
            'total_bytes': 0,
            'last_outcome': None,
            'last_date': None
        })

        if entry.succeeded:
            summary['succeeded'] += 1
            summary['total_bytes'] += entry.byte_size
            site['succeeded'] += 1
            site['total_bytes'] += entry.byte_size
        else:
            summary['failed'] += 1
            site['failed'] += 1

        site['last_outcome'] = entry.outcome
        site['last_date'] = entry.date.isoformat()

    return summary
