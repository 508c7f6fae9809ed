"""
Email notification utilities for Directory Sync.

This module sends run summaries and operational failure alerts over SMTP.
Whether a summary is mailed depends on its outcome and the email_on_success,
email_on_error and email_on_failure settings.
"""

import smtplib
import logging
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Dict, List, Any, Optional, Iterable
from datetime import datetime

from directory_sync.models import SyncOutcome, SyncRunSummary, SyncStatus

logger = logging.getLogger(__name__)

MAX_ERRORS_IN_EMAIL = 10


def _recipients(config: Dict[str, Any], recipients: Optional[Iterable[str]] = None) -> List[str]:
    if recipients:
        return list(recipients)
    email_to = config.get('email_to', [])
    if isinstance(email_to, str):
        email_to = [email_to]
    return list(email_to)


def send_email(subject: str, body: str, config: Dict[str, Any],
               recipients: Optional[Iterable[str]] = None) -> bool:
    """
    Send email notification using SMTP.

    Args:
        subject: Email subject line
        body: Email body content
        config: ``notifications`` configuration dictionary
        recipients: Addresses overriding ``email_to``

    Returns:
        True if email sent successfully, False otherwise
    """
    if not config.get('enable_email', False):
        logger.debug("Email notifications disabled")
        return False

    smtp_server = config.get('smtp_server')
    smtp_port = config.get('smtp_port', 587)
    smtp_username = config.get('smtp_username')
    smtp_password = config.get('smtp_password')
    smtp_tls = config.get('smtp_tls', True)
    smtp_timeout = config.get('smtp_timeout', 30)

    email_from = config.get('email_from', smtp_username)
    email_to = _recipients(config, recipients)

    if not smtp_server:
        logger.error("SMTP server not configured")
        return False

    if not email_to:
        logger.error("No email recipients configured")
        return False

    logger.debug(f"Sending email to {len(email_to)} recipients via {smtp_server}:{smtp_port}")

    msg = MIMEMultipart()
    msg['From'] = email_from
    msg['To'] = ', '.join(email_to)
    msg['Subject'] = subject
    msg.attach(MIMEText(body, 'plain'))

    try:
        if smtp_port == 465:
            server = smtplib.SMTP_SSL(smtp_server, smtp_port, timeout=smtp_timeout)
        else:
            server = smtplib.SMTP(smtp_server, smtp_port, timeout=smtp_timeout)
            if smtp_tls:
                server.starttls()

        try:
            if smtp_username and smtp_password:
                server.login(smtp_username, smtp_password)
            server.sendmail(email_from, email_to, msg.as_string())
        finally:
            server.quit()

    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Failed to send email notification: {e}")
        return False

    logger.info(f"Email notification sent successfully: {subject}")
    return True


def _should_send(summary: SyncRunSummary, config: Dict[str, Any]) -> bool:
    if summary.status == SyncStatus.FAILED:
        return config.get('email_on_failure', True)
    if summary.status == SyncStatus.COMPLETED_WITH_ERRORS:
        return config.get('email_on_error', True)
    return config.get('email_on_success', False)


def _format_runtime(runtime_seconds: float) -> str:
    if runtime_seconds > 60:
        minutes = int(runtime_seconds // 60)
        seconds = runtime_seconds % 60
        return f"{minutes}m {seconds:.1f}s"
    return f"{runtime_seconds:.2f} seconds"


def format_summary_body(summary: SyncRunSummary, config: Dict[str, Any]) -> str:
    """Render the plain-text body of a run summary email."""
    body_lines = [
        "Directory Sync Summary Report",
        f"Sync ID: {summary.sync_id}",
        f"Mode: {summary.mode}",
        f"Status: {summary.status}",
        f"Started: {summary.started_at.strftime('%Y-%m-%d %H:%M:%S')} UTC",
        f"Runtime: {_format_runtime(summary.runtime_seconds)}",
        "",
        "Statistics:",
        f"  Processed: {summary.total_processed}",
        f"  Added: {summary.added}",
        f"  Updated: {summary.updated}",
        f"  Deactivated: {summary.deactivated}",
        f"  Skipped: {summary.skipped}",
        f"  Errors: {summary.errors}",
        ""
    ]

    if summary.fallback_to_full:
        body_lines.extend(["The delta sync failed; a full sync is recommended.", ""])

    if summary.error_details:
        body_lines.append("Error Details:")
        for i, error in enumerate(summary.error_details[:MAX_ERRORS_IN_EMAIL], 1):
            body_lines.append(f"  {i}. {error}")
        remaining = len(summary.error_details) - MAX_ERRORS_IN_EMAIL + summary.error_details_dropped
        if remaining > 0:
            body_lines.append(f"  ... and {remaining} more errors")
        body_lines.append("")

    if config.get('include_added_users', False):
        added = [result for result in summary.results if result.outcome == SyncOutcome.ADDED]
        if added:
            max_users = config.get('max_users_to_list', 20)
            body_lines.append("Added Users:")
            for result in added[:max_users]:
                body_lines.append(f"  - {result.display_name} ({result.identifier})")
            if len(added) > max_users:
                body_lines.append(f"  ... and {len(added) - max_users} more")
            body_lines.append("")

    body_lines.append("This is an automated message from Directory Sync.")
    return '\n'.join(body_lines)


def send_sync_summary(summary: SyncRunSummary, config: Dict[str, Any],
                      recipients: Optional[Iterable[str]] = None) -> bool:
    """
    Mail a run summary if its outcome is enabled for notification.

    Args:
        summary: Finished or failed run summary
        config: ``notifications`` configuration dictionary
        recipients: Addresses overriding ``email_to``

    Returns:
        True if an email was sent
    """
    if not _should_send(summary, config):
        logger.debug(f"No notification configured for status {summary.status}")
        return False

    subject = f"Directory Sync {summary.mode}: {summary.status}"
    if summary.errors:
        subject += f" ({summary.errors} errors)"

    return send_email(subject, format_summary_body(summary, config), config, recipients)


def send_failure_notification(
    title: str,
    error_message: str,
    config: Dict[str, Any],
    additional_info: Optional[Dict[str, Any]] = None
) -> bool:
    """
    Send notification for failures that happen before a run starts.

    Args:
        title: Failure title/type
        error_message: Error description
        config: Notification configuration
        additional_info: Optional additional context

    Returns:
        True if notification sent successfully
    """
    if not config.get('email_on_failure', True):
        logger.debug("Failure email notifications disabled")
        return False

    timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')

    body_lines = [
        "Directory Sync Failure Report",
        f"Timestamp: {timestamp}",
        "",
        f"Failure Type: {title}",
        f"Error Message: {error_message}",
        ""
    ]

    if additional_info:
        body_lines.append("Additional Information:")
        for key, value in additional_info.items():
            body_lines.append(f"  {key}: {value}")
        body_lines.append("")

    body_lines.extend([
        "Please check the application logs for more detailed information.",
        "",
        "This is an automated message from Directory Sync."
    ])

    return send_email(f"Directory Sync Alert: {title}", '\n'.join(body_lines), config)


def test_notification_config(config: Dict[str, Any]) -> bool:
    """
    Test email notification configuration by sending a test email.

    Args:
        config: Notification configuration to test

    Returns:
        True if test email sent successfully
    """
    test_subject = "Directory Sync: Configuration Test"
    test_body = """This is a test email from Directory Sync.

If you receive this message, your email notification configuration is working correctly.

Test details:
- SMTP Server: {}
- SMTP Port: {}
- From Address: {}
- Recipients: {}

This is an automated test message.""".format(
        config.get('smtp_server', 'not configured'),
        config.get('smtp_port', 'not configured'),
        config.get('email_from', 'not configured'),
        ', '.join(_recipients(config))
    )

    result = send_email(test_subject, test_body, config)
    if result:
        logger.info("Test notification sent successfully")
    else:
        logger.error("Test notification failed")
    return result
