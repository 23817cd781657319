"""
Email notifications for the LDAP to Moodle sync.

Sends mail for aborted runs, LDAP connection failures, runs that finished with
per-user failures, and (optionally) a summary of every successful run.
"""

import smtplib
import logging
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Dict, List, Any, Optional
from datetime import datetime

logger = logging.getLogger(__name__)

MAX_LISTED_FAILURES = 20


def send_email(subject: str, body: str, config: Dict[str, Any]) -> bool:
    """
    Send email notification using SMTP.

    Args:
        subject: Email subject line
        body: Email body content
        config: Notification configuration dictionary

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

    email_from = config.get('email_from', smtp_username)
    email_to = config.get('email_to', [])

    if not smtp_server:
        logger.error("SMTP server not configured")
        return False

    if not email_to:
        logger.error("No email recipients configured")
        return False

    if isinstance(email_to, str):
        email_to = [email_to]

    msg = MIMEMultipart()
    msg['From'] = email_from
    msg['To'] = ', '.join(email_to)
    msg['Subject'] = subject
    msg.attach(MIMEText(body, 'plain'))

    try:
        logger.debug(f"Sending email to {len(email_to)} recipients via {smtp_server}:{smtp_port}")
        if smtp_port == 465:
            server = smtplib.SMTP_SSL(smtp_server, smtp_port)
        else:
            server = smtplib.SMTP(smtp_server, smtp_port)
            if smtp_tls:
                server.starttls()

        try:
            if smtp_username and smtp_password:
                server.login(smtp_username, smtp_password)
            server.sendmail(email_from, email_to, msg.as_string())
        finally:
            server.quit()

        logger.info(f"Email notification sent successfully: {subject}")
        return True

    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Failed to send email notification: {e}")
        return False


def _format_runtime(runtime_seconds: float) -> str:
    if runtime_seconds > 60:
        minutes = int(runtime_seconds // 60)
        return f"{minutes}m {runtime_seconds % 60:.1f}s"
    return f"{runtime_seconds:.2f} seconds"


def send_failure_notification(
    title: str,
    error_message: str,
    config: Dict[str, Any],
    additional_info: Optional[Dict[str, Any]] = None
) -> bool:
    """
    Send notification for an aborted sync run.

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

    body_lines = [
        "LDAP to Moodle Sync Failure Report",
        f"Timestamp: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        "",
        f"Failure Type: {title}",
        f"Error Message: {error_message}",
        "",
    ]

    if additional_info:
        body_lines.append("Additional Information:")
        for key, value in additional_info.items():
            body_lines.append(f"  {key}: {value}")
        body_lines.append("")

    body_lines.extend([
        "The sync timestamp was not advanced; the next run retries the same changes.",
        "Please check the application logs for more detailed information.",
    ])

    return send_email(f"LDAP Moodle Sync Alert: {title}", '\n'.join(body_lines), config)


def send_ldap_connection_failure(error_message: str, config: Dict[str, Any], retry_count: int = 0) -> bool:
    """Send notification for LDAP connection failures."""
    additional_info = {
        'Component': 'LDAP Connection',
        'Retry Attempts': retry_count,
        'Impact': 'Sync run aborted - no Moodle users changed',
    }
    return send_failure_notification("LDAP Connection Failed", error_message, config, additional_info)


def _summary_lines(stats: Dict[str, Any]) -> List[str]:
    lines = [
        f"  Runtime: {_format_runtime(stats.get('runtime_seconds', 0))}",
        f"  Dry run: {'yes' if stats.get('dry_run') else 'no'}",
        f"  Users created: {stats.get('created', 0)}",
        f"  Users updated: {stats.get('updated', 0)}",
        f"  Users suspended: {stats.get('suspended', 0)}",
        f"  Users excluded: {stats.get('excluded', 0)}",
        f"  Failures: {stats.get('failed', 0)}",
    ]
    failures = stats.get('failures') or []
    if failures:
        lines.append("")
        lines.append("Failed users:")
        for action, identifier, message in failures[:MAX_LISTED_FAILURES]:
            lines.append(f"  {action} {identifier}: {message}")
        if len(failures) > MAX_LISTED_FAILURES:
            lines.append(f"  ... and {len(failures) - MAX_LISTED_FAILURES} more")
    return lines


def send_user_errors_notification(stats: Dict[str, Any], config: Dict[str, Any]) -> bool:
    """
    Send notification for a run that completed with per-user failures.

    Args:
        stats: SyncStats.as_dict() of the run
        config: Notification configuration

    Returns:
        True if notification sent successfully
    """
    if not config.get('email_on_failure', True) or not stats.get('failed'):
        return False

    body_lines = [
        "LDAP to Moodle Sync Error Report",
        f"Timestamp: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        "",
        "The sync run completed, but some users could not be processed:",
        "",
    ] + _summary_lines(stats)

    subject = f"LDAP Moodle Sync Alert: {stats.get('failed')} user operations failed"
    return send_email(subject, '\n'.join(body_lines), config)


def send_success_summary(stats: Dict[str, Any], config: Dict[str, Any]) -> bool:
    """
    Send summary notification for a successful sync run.

    Args:
        stats: SyncStats.as_dict() of the run
        config: Notification configuration

    Returns:
        True if notification sent successfully
    """
    if not config.get('email_on_success', False):
        logger.debug("Success email notifications disabled")
        return False

    body_lines = [
        "LDAP to Moodle Sync Summary Report",
        f"Timestamp: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        "",
        "Statistics:",
    ] + _summary_lines(stats)

    return send_email("LDAP Moodle Sync: Successful Completion", '\n'.join(body_lines), config)


def test_notification_config(config: Dict[str, Any]) -> bool:
    """
    Test email notification configuration by sending a test email.

    Args:
        config: Notification configuration to test

    Returns:
        True if test email sent successfully
    """
    email_to = config.get('email_to', [])
    if isinstance(email_to, str):
        email_to = [email_to]

    body = '\n'.join([
        "This is a test email from the LDAP to Moodle sync.",
        "",
        "If you receive this message, your email notification configuration is working correctly.",
        "",
        f"- SMTP Server: {config.get('smtp_server', 'not configured')}",
        f"- SMTP Port: {config.get('smtp_port', 'not configured')}",
        f"- From Address: {config.get('email_from', 'not configured')}",
        f"- Recipients: {', '.join(email_to)}",
    ])

    result = send_email("LDAP Moodle Sync: Configuration Test", body, config)
    if result:
        logger.info("Test notification sent successfully")
    else:
        logger.error("Test notification failed")
    return result
