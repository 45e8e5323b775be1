"""Gmail sending via Composio."""

import asyncio
from typing import Optional

import structlog
from composio.sdk import Composio

from outflow.core.config import Settings
from outflow.core.errors import EmailSendError

log = structlog.get_logger()

# Cache for user_id lookups
_user_id_cache: dict[str, str] = {}


def _get_client() -> Composio:
    """Get Composio client (uses COMPOSIO_API_KEY env var)."""
    return Composio()


def _get_user_id_for_account(client: Composio, connected_account_id: str) -> Optional[str]:
    """Look up user_id for a connected account."""
    if connected_account_id in _user_id_cache:
        return _user_id_cache[connected_account_id]

    try:
        accounts = client.connected_accounts.list()
        for item in accounts.items:
            if item.id == connected_account_id:
                _user_id_cache[connected_account_id] = item.user_id
                return item.user_id
    except Exception as e:
        log.warning("failed_to_get_user_id", error=str(e))

    return None


def _unpack(result) -> tuple[bool, dict, Optional[str]]:
    # Handle both object and dict responses
    if isinstance(result, dict):
        return result.get("successful", False), result.get("data") or {}, result.get("error")
    return result.successful, result.data or {}, result.error


class ComposioEmailSender:
    """Email collaborator for ACTION_EMAIL nodes.

    Each send is attempted up to ``max_attempts`` times; when all attempts
    fail, EmailSendError is raised and the node fails.
    """

    def __init__(
        self,
        from_name: str = "Chris",
        connected_account_id: Optional[str] = None,
        max_attempts: int = 3,
        retry_delay_seconds: float = 2.0,
    ):
        self.from_name = from_name
        self.connected_account_id = connected_account_id or None
        self.max_attempts = max(1, max_attempts)
        self.retry_delay_seconds = retry_delay_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> "ComposioEmailSender":
        return cls(
            from_name=settings.gmail.from_name,
            connected_account_id=settings.gmail.connected_account_id,
            max_attempts=settings.sending.max_attempts,
            retry_delay_seconds=settings.sending.retry_delay_seconds,
        )

    async def send(self, to: str, subject: str, body: str) -> dict:
        """Send a new email.

        Returns dict with thread_id and message_id.
        """
        last_error = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await self._send_once(to, subject, body)
            except Exception as e:
                last_error = e
                log.warning("send_attempt_failed", to=to, attempt=attempt,
                            max_attempts=self.max_attempts, error=str(e))
                if attempt < self.max_attempts:
                    await asyncio.sleep(self.retry_delay_seconds * attempt)

        log.error("send_failed", to=to, attempts=self.max_attempts, error=str(last_error))
        raise EmailSendError(f"Failed to send email to {to} after {self.max_attempts} attempts: {last_error}")

    async def _send_once(self, to: str, subject: str, body: str) -> dict:
        log.info("sending_new_email", to=to, subject=subject,
                 connected_account_id=self.connected_account_id)

        client = _get_client()

        execute_kwargs = {
            "slug": "GMAIL_SEND_EMAIL",
            "arguments": {
                "recipient_email": to,
                "subject": subject,
                "body": body,
                "from_name": self.from_name,
            },
            "dangerously_skip_version_check": True,
        }
        if self.connected_account_id:
            execute_kwargs["connected_account_id"] = self.connected_account_id
            user_id = _get_user_id_for_account(client, self.connected_account_id)
            if user_id:
                execute_kwargs["user_id"] = user_id

        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(
            None,
            lambda: client.tools.execute(**execute_kwargs)
        )

        successful, data, error = _unpack(result)
        if not successful:
            raise EmailSendError(f"Composio rejected the send: {error or 'Unknown error'}")

        return {
            "thread_id": data.get("threadId"),
            "message_id": data.get("id"),
        }
