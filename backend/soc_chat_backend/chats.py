"""Lookups on ``chats/{chatId}`` documents shared by the feature services."""

from __future__ import annotations

from typing import Any

__all__ = ["chat_members"]


def chat_members(db: Any, chat_id: str) -> list[str]:
    """Return the member uids of a chat, empty when the chat does not exist.

    Firestore errors propagate to the caller.
    """

    if not chat_id:
        return []
    snapshot = db.collection("chats").document(chat_id).get()
    if not snapshot.exists:
        return []
    members = (snapshot.to_dict() or {}).get("members")
    if not isinstance(members, (list, tuple)):
        return []
    return [str(member) for member in members if member]