"""Slack notifications for finished tasks."""

import logging
from dataclasses import dataclass

from pardus.core.events import TASK_COMPLETED, TASK_FAILED, EventBus

logger = logging.getLogger(__name__)

# Longest excerpt of agent output or error text included in a message
EXCERPT_CHARS = 500


class SlackError(Exception):
    """Raised when a Slack operation fails."""


@dataclass
class SlackMessage:
    channel: str
    ts: str
    text: str


def get_client(token: str | None):
    """Get a Slack WebClient. Returns None if no token provided."""
    if not token:
        return None
    from slack_sdk import WebClient
    return WebClient(token=token)


def send_message(
    token: str | None,
    channel: str,
    text: str,
    blocks: list[dict] | None = None,
) -> SlackMessage:
    """Send a message to a Slack channel."""
    from slack_sdk.errors import SlackApiError

    client = get_client(token)
    if not client:
        raise SlackError("Slack not configured: SLACK_BOT_TOKEN not set")

    try:
        response = client.chat_postMessage(
            channel=channel,
            text=text,
            blocks=blocks,
        )
    except SlackApiError as e:
        raise SlackError(f"Slack API error: {e.response['error']}") from e

    return SlackMessage(
        channel=response["channel"],
        ts=response["ts"],
        text=text,
    )


def _excerpt(text: str | None) -> str:
    text = (text or "").strip()
    if len(text) > EXCERPT_CHARS:
        return text[:EXCERPT_CHARS] + "..."
    return text


def format_task_notification(
    task_uuid: str, title: str, status: str, detail: str | None = None
) -> list[dict]:
    """Format a task completion or failure as Slack blocks."""
    status_emoji = {
        "completed": ":white_check_mark:",
        "failed": ":red_circle:",
    }
    emoji = status_emoji.get(status, ":grey_question:")

    blocks = [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": f"{emoji} *Task {status}*\n*{title}* (`{task_uuid}`)",
            },
        }
    ]
    if excerpt := _excerpt(detail):
        blocks.append(
            {"type": "section", "text": {"type": "mrkdwn", "text": f"```{excerpt}```"}}
        )
    return blocks


class SlackNotifier:
    """Posts to a channel whenever a task completes or fails."""

    def __init__(self, token: str, channel: str):
        self.token = token
        self.channel = channel
        self._bus: EventBus | None = None

    def attach(self, bus: EventBus):
        bus.on(TASK_COMPLETED, self.on_completed)
        bus.on(TASK_FAILED, self.on_failed)
        self._bus = bus

    def detach(self):
        if self._bus:
            self._bus.off(TASK_COMPLETED, self.on_completed)
            self._bus.off(TASK_FAILED, self.on_failed)
            self._bus = None

    def on_completed(self, task: dict):
        self._notify(task, "completed", task.get("output"))

    def on_failed(self, task: dict):
        self._notify(task, "failed", task.get("error"))

    def _notify(self, task: dict, status: str, detail: str | None):
        title = task.get("title", "")
        try:
            send_message(
                self.token,
                self.channel,
                text=f"Task {status}: {title}",
                blocks=format_task_notification(task.get("uuid", ""), title, status, detail),
            )
        except SlackError as e:
            logger.warning("Slack notification failed: %s", e)


def notifier_from_config(config) -> SlackNotifier | None:
    """Build a notifier when both a Slack token and channel are configured."""
    if not (config.slack_bot_token and config.slack_channel):
        return None
    return SlackNotifier(config.slack_bot_token, config.slack_channel)
