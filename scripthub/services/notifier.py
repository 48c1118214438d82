"""
Notifier - fan one alert out to e-mail, Slack, Telegram and webhooks.

Channels are independent: a channel that fails is logged as a warning and
the rest still get the alert.

Usage:
    notifier = Notifier(NotifierConfig(email="ops@example.com", slack_webhook=url))
    await notifier.send("DISK ALERT: 1 filesystems above 90%", body)
"""

import logging
import os
import socket
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from scripthub.services.command_runner import CommandRunner, command_exists, get_command_runner

logger = logging.getLogger("scripthub.notifier")

NOTIFY_TIMEOUT = float(os.getenv("SCRIPTHUB_NOTIFY_TIMEOUT", "10"))
TELEGRAM_API_URL = os.getenv("TELEGRAM_API_URL", "https://api.telegram.org")


@dataclass
class NotifierConfig:
    email: Optional[str] = None
    slack_webhook: Optional[str] = None
    telegram_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    webhook_url: Optional[str] = None

    @property
    def enabled(self) -> bool:
        return bool(
            self.email
            or self.slack_webhook
            or (self.telegram_token and self.telegram_chat_id)
            or self.webhook_url
        )


def slack_payload(subject: str, body: str, hostname: Optional[str] = None) -> Dict[str, Any]:
    """Block Kit payload: subject section, body as code block, context line."""
    hostname = hostname or socket.gethostname()
    timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    return {
        "text": subject,
        "blocks": [
            {"type": "section", "text": {"type": "mrkdwn", "text": f"*{subject}*"}},
            {"type": "section", "text": {"type": "mrkdwn", "text": f"```{body}```"}},
            {
                "type": "context",
                "elements": [{"type": "mrkdwn", "text": f"Host: {hostname} | {timestamp}"}],
            },
        ],
    }


class Notifier:
    """Sends alerts to every configured channel."""

    def __init__(
        self,
        config: NotifierConfig,
        runner: Optional[CommandRunner] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config
        self.runner = runner or get_command_runner()
        self._client = client

    async def send(self, subject: str, body: str) -> List[str]:
        """
        Deliver an alert.

        Returns:
            Names of the channels that accepted it
        """
        delivered = []
        if not self.config.enabled:
            return delivered

        if self.config.email:
            if await self._send_email(subject, body):
                delivered.append("email")

        http_channels = []
        if self.config.slack_webhook:
            http_channels.append(("slack", self.config.slack_webhook, slack_payload(subject, body)))
        if self.config.telegram_token and self.config.telegram_chat_id:
            http_channels.append((
                "telegram",
                f"{TELEGRAM_API_URL}/bot{self.config.telegram_token}/sendMessage",
                {"chat_id": self.config.telegram_chat_id, "text": f"{subject}\n\n{body}"},
            ))
        if self.config.webhook_url:
            http_channels.append((
                "webhook",
                self.config.webhook_url,
                {
                    "subject": subject,
                    "message": body,
                    "hostname": socket.gethostname(),
                    "timestamp": datetime.now().isoformat(timespec="seconds"),
                },
            ))

        if http_channels:
            client = self._client or httpx.AsyncClient(timeout=NOTIFY_TIMEOUT)
            try:
                for name, url, payload in http_channels:
                    if await self._post(client, name, url, payload):
                        delivered.append(name)
            finally:
                if self._client is None:
                    await client.aclose()

        return delivered

    async def _post(self, client: httpx.AsyncClient, name: str, url: str, payload: Dict[str, Any]) -> bool:
        try:
            response = await client.post(url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"Failed to send {name} notification: {e}")
            return False
        logger.info(f"Alert sent via {name}")
        return True

    async def _send_email(self, subject: str, body: str) -> bool:
        recipient = self.config.email
        if command_exists("mail"):
            result = await self.runner.run(["mail", "-s", subject, recipient], input=body)
        elif command_exists("sendmail"):
            message = f"To: {recipient}\nSubject: {subject}\n\n{body}\n"
            result = await self.runner.run(["sendmail", "-t"], input=message)
        else:
            logger.warning("Neither 'mail' nor 'sendmail' is available; e-mail alert skipped")
            return False

        if not result.success:
            logger.warning(f"Failed to send e-mail to {recipient}: {result.stderr}")
            return False
        logger.info(f"Alert e-mailed to {recipient}")
        return True
