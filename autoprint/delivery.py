"""
Document delivery: local print command or email-to-printer.
"""

import logging
import shlex
import smtplib
import subprocess
from email.message import EmailMessage
from pathlib import Path
from typing import Optional

from autoprint.config import DeliveryConfig

logger = logging.getLogger(__name__)


class DeliveryError(Exception):
    """Raised when a document could not be printed or sent."""
    pass


class DeliveryTransport:
    """Sends rendered documents to the printer."""

    def __init__(self, config: DeliveryConfig, smtp_factory=None):
        """
        Initialize the transport.

        Args:
            config: Delivery settings (print command, SMTP server, printer address)
            smtp_factory: Optional callable(host, port, timeout) returning an SMTP client
        """
        self.config = config
        self._smtp_factory = smtp_factory

    def deliver(self, path: Path, mode: str, subject: Optional[str] = None):
        """
        Deliver a document.

        Args:
            path: Document to deliver
            mode: 'local' or 'email'
            subject: Email subject (email mode)

        Raises:
            DeliveryError: If delivery fails
        """
        path = Path(path)
        if mode == 'local':
            self.print_local(path)
        elif mode == 'email':
            self.send_email(path, subject or path.stem)
        else:
            raise DeliveryError(f"Unknown print mode: {mode}")

    def print_local(self, path: Path):
        """Run the configured print command for the document."""
        command = self.config.print_command.format(path=shlex.quote(str(path)))
        timeout = self.config.print_timeout_seconds
        logger.info(f"Executing print command: {command}")

        try:
            result = subprocess.run(
                command,
                shell=True,
                capture_output=True,
                text=True,
                timeout=timeout
            )
        except subprocess.TimeoutExpired as e:
            logger.error(f"Print command timed out after {timeout}s: {command}")
            raise DeliveryError(f"Print command timed out after {timeout}s") from e
        except OSError as e:
            raise DeliveryError(f"Print command could not be started: {e}") from e

        if result.returncode != 0:
            raise DeliveryError(
                f"Print command failed with exit code {result.returncode}: {result.stderr.strip()}"
            )
        logger.info(f"Sent {path.name} to local printer")

    def _connect(self) -> smtplib.SMTP:
        host = self.config.smtp_host
        port = self.config.smtp_port
        timeout = self.config.smtp_timeout_seconds
        if self._smtp_factory is not None:
            return self._smtp_factory(host, port, timeout)
        if port == 465:
            return smtplib.SMTP_SSL(host, port, timeout=timeout)
        return smtplib.SMTP(host, port, timeout=timeout)

    def send_email(self, path: Path, subject: str):
        """Email the document as an attachment to the printer address."""
        if not self.config.printer_email:
            raise DeliveryError("PRINTER_EMAIL is not configured")

        message = EmailMessage()
        message['From'] = self.config.email_from or self.config.smtp_user
        message['To'] = self.config.printer_email
        message['Subject'] = f"Attendee list: {subject}"
        message.set_content(f"Attached is the attendee list for {subject}.")
        message.add_attachment(
            path.read_bytes(),
            maintype='application',
            subtype='octet-stream',
            filename=path.name,
        )

        try:
            with self._connect() as smtp:
                if self.config.smtp_port != 465:
                    smtp.starttls()
                if self.config.smtp_user:
                    smtp.login(self.config.smtp_user, self.config.smtp_password)
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Failed to send email: {e}")
            raise DeliveryError(f"Failed to send email to {self.config.printer_email}: {e}") from e

        logger.info(f"Email sent to {self.config.printer_email} with {path.name}")
