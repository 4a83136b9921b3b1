"""Operator notifications for encoder failures and recoveries."""

from __future__ import annotations

import asyncio
import logging
import smtplib
import ssl
from email.message import EmailMessage
from typing import Optional, Set

import requests

from .config import NotifierConfig
from .models import PipelineEvent, PipelineEventKind

logger = logging.getLogger(__name__)


class Notifier:
    """Deliver ``PipelineEvent``s to a webhook, an e-mail inbox, or both."""

    def __init__(self, config: NotifierConfig, source: str = "tiered-stream"):
        self.config = config
        self.source = source
        self._pending: Set[asyncio.Task] = set()

    @property
    def enabled(self) -> bool:
        return bool(self.config.webhook_url or self._email_configured)

    @property
    def _email_configured(self) -> bool:
        return bool(self.config.smtp_host and self.config.email_from and self.config.email_to)

    def wants(self, event: PipelineEvent) -> bool:
        if not self.enabled:
            return False
        return event.kind is not PipelineEventKind.RECOVERED or self.config.notify_recoveries

    def notify(self, event: PipelineEvent) -> None:
        if not self.wants(event):
            return
        if self.config.webhook_url:
            self._post_webhook(event)
        if self._email_configured:
            self._send_email(event)

    def notify_background(self, event: PipelineEvent) -> Optional[asyncio.Task]:
        """Deliver from a worker thread so the event loop never waits on I/O."""
        if not self.wants(event):
            return None
        task = asyncio.get_running_loop().create_task(asyncio.to_thread(self.notify, event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    def _post_webhook(self, event: PipelineEvent) -> None:
        payload = {"source": self.source, **event.to_payload()}
        try:
            response = requests.post(self.config.webhook_url, json=payload, timeout=self.config.timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            logger.error("Failed to send webhook for %s: %s", event.subject, exc)

    def _send_email(self, event: PipelineEvent) -> None:
        email = EmailMessage()
        email["From"] = self.config.email_from or ""
        email["To"] = self.config.email_to or ""
        email["Subject"] = f"[{self.source}] {event.subject}"
        lines = [event.detail, "", f"Tier: {event.tier_id}", f"Attempt: {event.attempt}"]
        if event.pid is not None:
            lines.append(f"Encoder pid: {event.pid}")
        lines.append(f"At: {event.occurred_at.isoformat()}")
        email.set_content("\n".join(lines))

        context = ssl.create_default_context()
        try:
            with smtplib.SMTP(self.config.smtp_host, self.config.smtp_port, timeout=self.config.timeout) as smtp:
                smtp.starttls(context=context)
                if self.config.smtp_username and self.config.smtp_password:
                    smtp.login(self.config.smtp_username, self.config.smtp_password)
                smtp.send_message(email)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("Failed to e-mail %s: %s", event.subject, exc)
