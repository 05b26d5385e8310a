"""Slack Web API integration for release notifications."""

from dataclasses import dataclass

from release_dashboard.state.models import CommitInfo

MAX_CHANGES_LENGTH = 2800

RELEASE_STATUS = {
    "building": (":hammer:", "Building"),
    "testing": (":test_tube:", "Testing"),
    "internal": (":package:", "Internal Testing"),
    "alpha": (":video_game:", "Alpha"),
    "beta": (":dart:", "Beta"),
    "released": (":rocket:", "Released"),
    "failed": (":x:", "Failed"),
}


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
    channel: str | None,
    text: str,
    blocks: list[dict] | None = None,
) -> SlackMessage:
    """Send a message to a Slack channel."""
    client = get_client(token)
    if not client:
        raise SlackError("Slack not configured: SLACK_BOT_TOKEN not set")
    if not channel:
        raise SlackError("Slack not configured: SLACK_CHANNEL not set")

    from slack_sdk.errors import SlackApiError
    try:
        response = client.chat_postMessage(channel=channel, text=text, blocks=blocks)
    except SlackApiError as e:
        raise SlackError(f"Slack post failed: {e.response.get('error', e)}") from e

    return SlackMessage(
        channel=response["channel"],
        ts=response["ts"],
        text=text,
    )


def format_changes(changesets: list[CommitInfo], max_length: int = MAX_CHANGES_LENGTH) -> str:
    """Bullet list of changeset messages, cut off with a ``+N more`` line."""
    if not changesets:
        return "_No changes_"
    lines = []
    length = 0
    for count, cs in enumerate(changesets):
        line = f"• {cs.message or 'No message'}"
        if length + len(line) + 1 > max_length:
            lines.append(f"_+{len(changesets) - count} more_")
            break
        lines.append(line)
        length += len(line) + 1
    return "\n".join(lines)


def format_release_notes(
    project_name: str,
    branch: str,
    from_changeset: int,
    to_changeset: int,
    changesets: list[CommitInfo],
    status: str = "building",
    platforms: list[str] | None = None,
) -> list[dict]:
    """Format a release announcement as Slack blocks."""
    emoji, label = RELEASE_STATUS.get(status, (":clipboard:", status))
    blocks = [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": f"{emoji} *{project_name}*  {label}\n`{branch}` cs{from_changeset} → cs{to_changeset}",
            },
        },
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": format_changes(changesets)},
        },
    ]
    if platforms:
        names = " • ".join("iOS" if p == "ios" else "Android" for p in platforms)
        blocks.append({"type": "context", "elements": [{"type": "mrkdwn", "text": names}]})
    return blocks
