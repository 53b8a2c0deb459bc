"""Display helpers for chats."""

from __future__ import annotations

from collections.abc import Mapping

from chat_sync.schemas.chat import ChatRecord, ChatType


def chat_display_name(
    chat: ChatRecord,
    current_uid: str,
    names: Mapping[str, str] | None = None,
) -> str:
    """Return the title to show for ``chat``.

    Group chats use their name, falling back to ``"Group Chat"``. One-to-one
    chats are titled after the other participant, using ``names`` when it
    knows them and the tail of their uid otherwise.
    """
    if chat.type is ChatType.GROUP:
        return chat.name or "Group Chat"

    other = next((uid for uid in chat.participant_ids if uid != current_uid), None)
    if other is None:
        return "Chat"
    if names and other in names:
        return names[other]
    return f"User {other[-4:]}"


def initials(display_name: str) -> str:
    """Return up to two uppercase initials for an avatar."""
    words = display_name.split()
    if not words:
        return "?"
    if len(words) == 1:
        return words[0][:2].upper()
    return "".join(word[0] for word in words[:2]).upper()
