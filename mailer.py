import logging
import smtplib
from email.message import EmailMessage
from socket import gaierror, timeout

from config_models import EmailConfig

logger = logging.getLogger(__name__)


class MailerError(Exception):
    """Exception raised for email sending errors."""

    pass


def send_notification_email(
    config: EmailConfig,
    subject: str,
    recipient: str,
    body: str,
    cc: str = "",
) -> bool:
    """Send a plain-text billing notification.

    Args:
        config: Email configuration.
        subject: Email subject.
        recipient: Email recipient address.
        body: Email body text.
        cc: CC address (optional, defaults to none).

    Returns:
        True if email was sent successfully.

    Raises:
        MailerError: If email sending fails.
    """
    if not recipient:
        raise MailerError("No recipient address for notification")

    message = EmailMessage()
    message["Subject"] = subject
    message["From"] = config.sender
    message["To"] = recipient
    if cc:
        message["Cc"] = cc
    message.set_content(body)

    try:
        logger.info("Sending email to %s with subject: %s", recipient, subject)
        with smtplib.SMTP(config.smtp_host, config.smtp_port, timeout=30) as server:
            server.starttls()
            if config.smtp_user:
                server.login(config.smtp_user, config.smtp_password)
            server.send_message(message)
        logger.info("Email sent successfully to %s", recipient)
        return True

    except smtplib.SMTPAuthenticationError as e:
        logger.error("SMTP authentication failed: %s", e)
        raise MailerError(f"Email authentication failed: {e}") from e

    except smtplib.SMTPRecipientsRefused as e:
        logger.error("Recipients refused: %s", e)
        raise MailerError(f"Email recipients refused: {e}") from e

    except smtplib.SMTPException as e:
        logger.error("SMTP error: %s", e)
        raise MailerError(f"Failed to send email: {e}") from e

    except (gaierror, timeout) as e:
        logger.error("Network error while sending email: %s", e)
        raise MailerError(f"Network error: could not connect to mail server: {e}") from e

    except OSError as e:
        logger.error("OS error while sending email: %s", e)
        raise MailerError(f"Failed to send email: {e}") from e
