"""
Email notifications via AWS SES.

Sends an alert for every failed site and a weekly digest built from the
status ledger. Sending is fire-and-forget: errors are logged and never
reach the backup run.
"""

import logging
from collections import OrderedDict
from datetime import date, datetime, timezone
from typing import List, Optional

import boto3
from botocore.exceptions import ClientError, BotoCoreError

from pgbackups.status import StatusRecord
from pgbackups.utils.formatting import format_bytes


logger = logging.getLogger(__name__)

DIGEST_WEEKDAY = 6  # Sunday, date.weekday()


def is_digest_day(today: date) -> bool:
    return today.weekday() == DIGEST_WEEKDAY


def build_failure_body(site_id: str, message: str, today: date, log_excerpt: Optional[List[str]] = None) -> str:
    lines = [
        'BACKUP FAILURE ALERT',
        '',
        f"Site: {site_id}",
        f"Date: {today.isoformat()}",
        f"Time: {datetime.now(timezone.utc).strftime('%H:%M:%S UTC')}",
        '',
        'Error:',
        message,
    ]

    if log_excerpt:
        lines += [
            '',
            f"Log excerpt (last {len(log_excerpt)} lines):",
            '-' * 40,
            *log_excerpt,
            '-' * 40,
        ]

    lines += ['', 'This is an automated message from pgbackups.']
    return '\n'.join(lines)


def build_digest_body(records: List[StatusRecord], week_start: date) -> str:
    """
    Render the weekly digest, grouped by site in ledger order.
    """
    lines = ['WEEKLY BACKUP DIGEST', f"Week of {week_start.isoformat()}", '']

    if not records:
        lines.append('No backup activity recorded this week.')
    else:
        by_site = OrderedDict()
        for entry in records:
            by_site.setdefault(entry.site_id, []).append(entry)

        success_count = 0
        failure_count = 0
        total_size = 0

        for site_id, entries in by_site.items():
            lines.append(f"Site: {site_id}")
            for entry in entries:
                day_name = entry.date.strftime('%a')
                if entry.succeeded:
                    lines.append(f"  {day_name}: OK {format_bytes(entry.byte_size)}")
                    success_count += 1
                    total_size += entry.byte_size
                else:
                    lines.append(f"  {day_name}: FAILED {entry.error_text}")
                    failure_count += 1
            lines.append('')

        lines += [
            '-' * 40,
            'Summary:',
            f"  Successful backups: {success_count}",
            f"  Failed backups: {failure_count}",
            f"  Total data backed up: {format_bytes(total_size)}",
        ]

    lines += ['', 'This is an automated message from pgbackups.']
    return '\n'.join(lines)


class NullNotifier:
    """Notifier used when email is disabled."""

    def notify_failure(self, site_id: str, message: str, log_excerpt: Optional[List[str]] = None):
        logger.info("Email notifications disabled, skipping failure alert")

    def notify_digest(self, records: List[StatusRecord], week_start: date):
        logger.info("Email notifications disabled, skipping weekly digest")

    def send_test(self) -> bool:
        logger.info("Email notifications are disabled")
        return True


class SESNotifier:
    """
    Sends plain-text emails through AWS SES.
    """

    def __init__(
        self,
        sender: str,
        recipient: str,
        region: str = 'us-east-2',
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        on_failure: bool = True,
        weekly_digest: bool = True
    ):
        self.sender = sender
        self.recipient = recipient
        self.region = region
        self.on_failure = on_failure
        self.weekly_digest = weekly_digest

        self.ses_client = boto3.client(
            'ses',
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            region_name=region
        )

    def send_email(self, subject: str, body: str) -> bool:
        """
        Send one email.

        Returns:
            True if SES accepted the message, False otherwise
        """
        logger.info(f"Sending email: {subject}")

        try:
            self.ses_client.send_email(
                Source=self.sender,
                Destination={'ToAddresses': [self.recipient]},
                Message={
                    'Subject': {'Data': subject, 'Charset': 'UTF-8'},
                    'Body': {'Text': {'Data': body, 'Charset': 'UTF-8'}}
                }
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to send email: {e}")
            return False

        logger.info("Email sent successfully")
        return True

    def notify_failure(self, site_id: str, message: str, log_excerpt: Optional[List[str]] = None):
        if not self.on_failure:
            return

        today = date.today()
        subject = f"[BACKUP FAILED] {site_id} - {today.isoformat()}"
        self.send_email(subject, build_failure_body(site_id, message, today, log_excerpt))

    def notify_digest(self, records: List[StatusRecord], week_start: date):
        if not self.weekly_digest:
            return

        subject = f"[BACKUP DIGEST] Week of {week_start.isoformat()}"
        self.send_email(subject, build_digest_body(records, week_start))

    def send_test(self) -> bool:
        body = '\n'.join([
            'This is a test email from pgbackups.',
            '',
            'If you received this message, your email notifications are configured correctly.',
            '',
            'Configuration:',
            f"  From: {self.sender}",
            f"  To: {self.recipient}",
            f"  Region: {self.region}",
        ])
        return self.send_email('[BACKUP TEST] Email configuration test', body)


def create_notifier(config):
    """
    Build the notifier from app configuration.

    Returns NullNotifier when email is disabled or incomplete.
    """
    if not config.get('EMAIL_ENABLED'):
        return NullNotifier()

    if not config.get('EMAIL_FROM') or not config.get('EMAIL_TO'):
        logger.error("Email configuration incomplete (EMAIL_FROM or EMAIL_TO not set)")
        return NullNotifier()

    return SESNotifier(
        sender=config['EMAIL_FROM'],
        recipient=config['EMAIL_TO'],
        region=config.get('AWS_DEFAULT_REGION') or 'us-east-2',
        access_key=config.get('AWS_ACCESS_KEY_ID') or None,
        secret_key=config.get('AWS_SECRET_ACCESS_KEY') or None,
        on_failure=config.get('EMAIL_ON_FAILURE', True),
        weekly_digest=config.get('EMAIL_WEEKLY_DIGEST', True)
    )
