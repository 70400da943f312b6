import asyncio
import html
import logging
import smtplib
import ssl
from email.message import EmailMessage
from typing import List, Optional

from noticewatch.config import EmailConfig
from noticewatch.models import Item, NotificationResult

logger = logging.getLogger(__name__)

# 4xx replies are temporary per RFC 5321
TRANSIENT_SMTP_CODES = range(400, 500)


class EmailNotifier:
    channel = "email"

    def __init__(self, config: EmailConfig, max_retries: int = 3, retry_wait: float = 5.0):
        """
        Send new-item notifications over SMTP, one message per recipient.

        Args:
            config: SMTP settings and recipient lists
            max_retries: Attempts per recipient on transient SMTP errors
            retry_wait: Seconds between those attempts
        """
        self.config = config
        self.max_retries = max(1, max_retries)
        self.retry_wait = retry_wait

    def _recipients(self, restrict_to_dev: bool) -> List[str]:
        deployment = self.config.deployment_notification
        if restrict_to_dev and deployment.enabled and deployment.dev_email:
            logger.info(f"🔧 Sending deployment notification to dev: {deployment.dev_email}")
            return [deployment.dev_email]

        if restrict_to_dev:
            logger.warning("Deployment notification disabled, falling back to all recipients")
        logger.info(f"📧 Sending notification to all recipients: {self.config.to_emails}")
        return list(self.config.to_emails)

    async def send_notification(self, title: str, message: str, items: Optional[List[Item]] = None,
                                restrict_to_dev: bool = False) -> NotificationResult:
        """
        Email the notification to every recipient of the chosen audience.
        Partial delivery counts as success; the failed addresses are listed.
        """
        items = items or []
        if not self.config.enabled:
            return NotificationResult(
                success=False,
                channel=self.channel,
                message="Email notification is disabled",
                error="Email notification is disabled",
            )

        recipients = self._recipients(restrict_to_dev)
        if not recipients:
            return NotificationResult(success=False, channel=self.channel, message="",
                                      error="No recipients configured")

        text_body = self._prepare_text(title, message, items)
        html_body = self._prepare_html(title, message, items)

        sent = 0
        failures = []
        for to_email in recipients:
            email = self._build_message(to_email, title, text_body, html_body)
            try:
                await self._send_with_retry(email)
                sent += 1
                logger.info(f"✅ Email sent successfully to: {to_email}")
            except (smtplib.SMTPException, OSError, ValueError) as e:
                failures.append(f"{to_email}: {e}")
                logger.error(f"❌ Failed to send email to {to_email}: {e}")

        if sent == len(recipients):
            return NotificationResult(success=True, channel=self.channel,
                                      message=f"Email sent to all {sent} recipients")
        if sent > 0:
            return NotificationResult(
                success=True,
                channel=self.channel,
                message=f"Email sent to {sent}/{len(recipients)} recipients",
                recipient_failures=failures,
            )

        summary = f"Failed to send to all recipients: {', '.join(failures)}"
        return NotificationResult(success=False, channel=self.channel, message=summary,
                                  recipient_failures=failures, error=summary)

    async def _send_with_retry(self, email: EmailMessage):
        for attempt in range(self.max_retries):
            try:
                await asyncio.to_thread(self._deliver, email)
                return
            except smtplib.SMTPResponseException as e:
                if e.smtp_code in TRANSIENT_SMTP_CODES and attempt < self.max_retries - 1:
                    logger.warning(
                        f"⚠️ Temporary SMTP error {e.smtp_code}. Waiting {self.retry_wait}s before retry "
                        f"{attempt + 1}/{self.max_retries}..."
                    )
                    await asyncio.sleep(self.retry_wait)
                    continue
                raise

    def _open_connection(self) -> smtplib.SMTP:
        context = ssl.create_default_context()
        if self.config.smtp_port == 465:
            smtp = smtplib.SMTP_SSL(self.config.smtp_server, self.config.smtp_port,
                                    timeout=self.config.timeout_seconds, context=context)
        else:
            smtp = smtplib.SMTP(self.config.smtp_server, self.config.smtp_port,
                                timeout=self.config.timeout_seconds)
            smtp.ehlo()
            if smtp.has_extn("starttls"):
                smtp.starttls(context=context)
                smtp.ehlo()
        if self.config.username:
            try:
                smtp.login(self.config.username, self.config.password)
            except smtplib.SMTPException:
                smtp.close()
                raise
        return smtp

    def _deliver(self, email: EmailMessage):
        with self._open_connection() as smtp:
            smtp.send_message(email)

    async def test_connection(self) -> bool:
        if not self.config.enabled:
            return False

        def _check():
            with self._open_connection() as smtp:
                smtp.noop()

        try:
            await asyncio.to_thread(_check)
            return True
        except (smtplib.SMTPException, OSError, ValueError) as e:
            logger.error(f"SMTP connection test failed: {e}")
            return False

    def _build_message(self, to_email: str, subject: str, text_body: str, html_body: str) -> EmailMessage:
        email = EmailMessage()
        email["Subject"] = subject
        email["From"] = self.config.from_email
        email["To"] = to_email
        email.set_content(text_body)
        email.add_alternative(html_body, subtype="html")
        return email

    def _prepare_text(self, title: str, message: str, items: List[Item]) -> str:
        lines = [title, "", message, ""]
        if items:
            lines.append("New Message Items:")
            for idx, item in enumerate(items, 1):
                lines.append(f"{idx}. {item.title}")
                lines.append(f"   Link: {item.link}")
                if item.date:
                    lines.append(f"   Date: {item.date}")
                lines.append("")
        return "\n".join(lines)

    def _prepare_html(self, title: str, message: str, items: List[Item]) -> str:
        parts = [
            "<html><head><meta charset=\"utf-8\"></head>",
            "<body style=\"font-family: Arial, sans-serif; line-height: 1.6; color: #333;\">",
            f"<h2>{html.escape(title)}</h2>",
            f"<p>{html.escape(message)}</p>",
        ]
        if items:
            parts.append("<h3>New Message Items:</h3>")
            for item in items:
                link = html.escape(item.link, quote=True)
                parts.append("<div style=\"margin: 15px 0; padding: 15px; border-left: 4px solid #007bff;\">")
                parts.append(f"<div><b>{html.escape(item.title)}</b></div>")
                parts.append(f"<div><a href=\"{link}\">{link}</a></div>")
                if item.date:
                    parts.append(f"<div><small>{html.escape(item.date)}</small></div>")
                parts.append("</div>")
        parts.append("</body></html>")
        return "\n".join(parts)
