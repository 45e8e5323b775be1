"""External notification services."""

from outflow.services.slack_notifier import SlackNotifier
