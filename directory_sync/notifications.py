"""
Email notification utilities for Directory Sync.

Sends SMTP notifications for failed runs, applied-operation errors and,
optionally, a summary of every completed run.
"""

import smtplib
import logging
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Dict, List, Any, Optional
from datetime import datetime

logger = logging.getLogger(__name__)

PRODUCT_NAME = "Directory Sync"
MAX_LISTED_ERRORS = 10


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
    email_from = config.get('email_from', smtp_username)
    email_to = config.get('email_to', [])
    
    if not smtp_server:
        logger.error("SMTP server not configured")
        return False
    
    if isinstance(email_to, str):
        email_to = [email_to]
    if not email_to:
        logger.error("No email recipients configured")
        return False
    
    msg = MIMEMultipart()
    msg['From'] = email_from
    msg['To'] = ', '.join(email_to)
    msg['Subject'] = subject
    msg.attach(MIMEText(body, 'plain'))
    
    logger.debug(f"Sending email to {len(email_to)} recipients via {smtp_server}:{smtp_port}")
    
    try:
        if smtp_port == 465:
            server = smtplib.SMTP_SSL(smtp_server, smtp_port)
        else:
            server = smtplib.SMTP(smtp_server, smtp_port)
            if config.get('smtp_tls', True):
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


def send_failure_notification(
    title: str,
    error_message: str,
    config: Dict[str, Any],
    additional_info: Optional[Dict[str, Any]] = None
) -> bool:
    """
    Send notification for a run that could not complete.
    
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
        f"{PRODUCT_NAME} Failure Report",
        f"Timestamp: {_timestamp()}",
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
        f"This is an automated message from {PRODUCT_NAME}."
    ])
    
    return send_email(f"{PRODUCT_NAME} Alert: {title}", '\n'.join(body_lines), config)


def send_operation_errors_notification(
    run_stats: Dict[str, Any],
    errors: List[str],
    config: Dict[str, Any]
) -> bool:
    """
    Send notification listing directory operations that failed during a run.
    
    Args:
        run_stats: Counts from the run summary
        errors: Error messages of failed operations
        config: Notification configuration
        
    Returns:
        True if notification sent successfully
    """
    if not config.get('email_on_failure', True):
        logger.debug("Failure email notifications disabled")
        return False
    
    body_lines = [
        f"{PRODUCT_NAME} Operation Error Report",
        f"Timestamp: {_timestamp()}",
        "",
        f"Created: {run_stats.get('created', 0)}",
        f"Updated: {run_stats.get('updated', 0)}",
        f"Deleted: {run_stats.get('deleted', 0)}",
        f"Failed operations: {len(errors)}",
        "",
        "Error Details:"
    ]
    
    for i, error in enumerate(errors[:MAX_LISTED_ERRORS], 1):
        body_lines.append(f"  {i}. {error}")
    if len(errors) > MAX_LISTED_ERRORS:
        body_lines.append(f"  ... and {len(errors) - MAX_LISTED_ERRORS} more errors")
    
    body_lines.extend([
        "",
        "Completed operations were kept. Fix the cause and re-run to converge.",
        "",
        f"This is an automated message from {PRODUCT_NAME}."
    ])
    
    subject = f"{PRODUCT_NAME} Alert: {len(errors)} Directory Operations Failed"
    return send_email(subject, '\n'.join(body_lines), config)


def send_success_summary(run_stats: Dict[str, Any], config: Dict[str, Any]) -> bool:
    """
    Send summary notification for a completed run.
    
    Args:
        run_stats: Dictionary containing run statistics
        config: Notification configuration
        
    Returns:
        True if notification sent successfully
    """
    if not config.get('email_on_success', False):
        logger.debug("Success email notifications disabled")
        return False
    
    runtime_seconds = run_stats.get('runtime_seconds', 0)
    if runtime_seconds > 60:
        runtime_str = f"{int(runtime_seconds // 60)}m {runtime_seconds % 60:.1f}s"
    else:
        runtime_str = f"{runtime_seconds:.2f} seconds"
    
    body_lines = [
        f"{PRODUCT_NAME} Summary Report",
        f"Timestamp: {_timestamp()}",
        "",
        "Reconciliation completed successfully!",
        "",
        "Statistics:",
        f"  Total runtime: {runtime_str}",
        f"  Users created: {run_stats.get('created', 0)}",
        f"  Users updated: {run_stats.get('updated', 0)}",
        f"  Users deleted: {run_stats.get('deleted', 0)}",
        f"  Users unchanged: {run_stats.get('unchanged', 0)}",
        f"  Protected accounts: {run_stats.get('protected', 0)}",
        f"  Managers assigned: {run_stats.get('managers_assigned', 0)}",
        f"  Managers removed: {run_stats.get('managers_removed', 0)}",
        f"  Warnings: {run_stats.get('warnings', 0)}",
        "",
        f"This is an automated message from {PRODUCT_NAME}."
    ]
    
    return send_email(f"{PRODUCT_NAME}: Successful Completion", '\n'.join(body_lines), config)


def send_directory_connection_failure(error_message: str, config: Dict[str, Any]) -> bool:
    """Send notification when the directory snapshot could not be read."""
    additional_info = {
        'Component': 'Directory Connection',
        'Impact': 'Reconciliation aborted before any change was applied'
    }
    return send_failure_notification("Directory Connection Failed", error_message, config, additional_info)


def send_configuration_error(error_message: str, config_path: Optional[str], config: Dict[str, Any]) -> bool:
    """
    Send notification for configuration errors.
    
    Args:
        error_message: Configuration error description
        config_path: Path to configuration file
        config: Notification configuration (may be partial)
    """
    additional_info = {
        'Component': 'Configuration',
        'Config Path': config_path or 'default',
        'Impact': 'Reconciliation aborted before any change was applied'
    }
    return send_failure_notification("Configuration Error", error_message, config, additional_info)


def test_notification_config(config: Dict[str, Any]) -> bool:
    """
    Test email notification configuration by sending a test email.
    
    Args:
        config: Notification configuration to test
        
    Returns:
        True if test email sent successfully
    """
    recipients = config.get('email_to', [])
    if isinstance(recipients, str):
        recipients = [recipients]
    
    test_body = '\n'.join([
        f"This is a test email from {PRODUCT_NAME}.",
        "",
        "If you receive this message, your email notification configuration is working correctly.",
        "",
        "Test details:",
        f"- SMTP Server: {config.get('smtp_server', 'not configured')}",
        f"- SMTP Port: {config.get('smtp_port', 'not configured')}",
        f"- From Address: {config.get('email_from', 'not configured')}",
        f"- Recipients: {', '.join(recipients)}",
        "",
        "This is an automated test message."
    ])
    
    result = send_email(f"{PRODUCT_NAME}: Configuration Test", test_body, config)
    if result:
        logger.info("Test notification sent successfully")
    else:
        logger.error("Test notification failed")
    return result


def _timestamp() -> str:
    return datetime.now().strftime('%Y-%m-%d %H:%M:%S')
