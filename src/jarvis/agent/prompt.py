"""Prompt builder for the assistant."""

from collections.abc import Sequence

from ..memory.models import Platform, UserProfile
from ..platforms import is_long_form, platform_name

PERSONA = (
    "You are Jarvis, an AI business assistant. You are helpful, professional, "
    "and efficient. If you don't know something, say so honestly. Always be "
    "friendly and professional."
)

SHORT_REPLY_RULE = (
    "- You respond via {platform} messages, so keep responses concise but helpful."
)
LONG_REPLY_RULE = (
    "- {platform} allows longer messages, so you may give detailed answers "
    "when they help."
)

CLOSING_RULES = """- Use what you know about the user naturally; don't recite the list of facts.
- You remember past conversations with this user across sessions."""


def build_system_prompt(
    profile: UserProfile,
    facts: Sequence[str],
    platform: Platform,
) -> str:
    """Build the system prompt from the user's profile and memory.

    Args:
        profile: The user's profile (name and summary are used).
        facts: Known facts about the user, oldest first.
        platform: The platform the current message arrived on.

    Returns:
        Complete system prompt string.
    """
    name = platform_name(platform)
    sections = [PERSONA, f"Current platform: {name}."]

    if profile.name:
        sections.append(f"You are talking with {profile.name}.")

    if profile.summary.strip():
        sections.append(f"Summary of previous conversations:\n{profile.summary.strip()}")

    if facts:
        fact_lines = "\n".join(f"- {fact}" for fact in facts)
        sections.append(f"What you know about this user:\n{fact_lines}")

    length_rule = LONG_REPLY_RULE if is_long_form(platform) else SHORT_REPLY_RULE
    sections.append("Guidelines:\n" + length_rule.format(platform=name) + "\n" + CLOSING_RULES)

    return "\n\n".join(sections)
