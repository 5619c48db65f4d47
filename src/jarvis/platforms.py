"""Per-platform limits and reply formatting."""

from typing import Any
from xml.sax.saxutils import escape

from .memory.models import Platform

PLATFORM_NAMES = {
    Platform.TELEGRAM: "Telegram",
    Platform.SMS: "SMS",
    Platform.DISCORD: "Discord",
}

# Discord tolerates long messages; SMS and Telegram replies are kept short
MAX_OUTPUT_TOKENS = {
    Platform.TELEGRAM: 300,
    Platform.SMS: 300,
    Platform.DISCORD: 1024,
}

MESSAGE_LIMITS = {
    Platform.TELEGRAM: 4000,
    Platform.SMS: 1600,
    Platform.DISCORD: 2000,
}

EMBED_DESCRIPTION_LIMIT = 4096
EMBED_COLOR = 0x5865F2


def platform_name(platform: Platform) -> str:
    return PLATFORM_NAMES[Platform(platform)]


def is_long_form(platform: Platform) -> bool:
    """Whether the platform tolerates long replies."""
    return Platform(platform) == Platform.DISCORD


def max_output_tokens(platform: Platform) -> int:
    return MAX_OUTPUT_TOKENS[Platform(platform)]


def truncate_message(text: str, max_length: int = MESSAGE_LIMITS[Platform.TELEGRAM]) -> str:
    """Cut text to max_length characters, marking the cut with '...'."""
    if len(text) <= max_length:
        return text
    return text[:max_length] + "..."


def format_sms_reply(text: str) -> str:
    """Wrap a reply in a TwiML envelope."""
    if not text:
        return "<Response></Response>"
    return f"<Response><Message>{escape(text)}</Message></Response>"


def format_discord_embed(title: str, text: str, color: int = EMBED_COLOR) -> dict[str, Any]:
    """Build a Discord embed object."""
    return {
        "title": title,
        "description": truncate_message(text, EMBED_DESCRIPTION_LIMIT - 3),
        "color": color,
    }
