# outflow/services/slack_notifier.py
"""Slack notification service for failed executions."""

import os
from typing import Optional

import httpx
import structlog

from outflow.workflows.state import ExecutionState

log = structlog.get_logger()


class SlackNotifier:
    """Service for sending Slack notifications."""

    def __init__(self, webhook_url: Optional[str] = None):
        """Initialize with webhook URL."""
        self.webhook_url = webhook_url or os.getenv("SLACK_WEBHOOK_URL")

    async def send_failure(self, state: ExecutionState, reason: str) -> bool:
        """Report a FAILED execution to Slack.

        Usable directly as the scheduler's ``on_failure`` hook.

        Args:
            state: The execution that failed
            reason: Error recorded on the failing history entry

        Returns:
            True if sent successfully
        """
        if not self.webhook_url:
            log.warning("slack_webhook_not_configured")
            return False

        blocks = [
            {
                "type": "header",
                "text": {
                    "type": "plain_text",
                    "text": "❌ Workflow execution failed",
                }
            },
            {
                "type": "section",
                "fields": [
                    {"type": "mrkdwn", "text": f"*Workflow:*\n{state.workflow_id}"},
                    {"type": "mrkdwn", "text": f"*Lead:*\n{state.lead_id}"},
                    {"type": "mrkdwn", "text": f"*Node:*\n{state.current_node_id}"},
                    {"type": "mrkdwn", "text": f"*Version:*\n{state.workflow_version}"},
                ]
            },
            {
                "type": "section",
                "text": {"type": "mrkdwn", "text": f"*Error:*\n{reason[:500]}"}
            },
        ]

        try:
            async with httpx.AsyncClient(timeout=10.0) as client:
                response = await client.post(
                    self.webhook_url,
                    json={"blocks": blocks},
                )
                response.raise_for_status()
                log.info("slack_failure_sent", workflow_id=state.workflow_id, lead_id=state.lead_id)
                return True

        except Exception as e:
            log.error("slack_send_error", error=str(e))
            return False
