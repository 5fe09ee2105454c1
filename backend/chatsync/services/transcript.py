"""Read-side helpers: serialization, the welcome placeholder, exports and relative times."""

from datetime import datetime

from chatsync.models.conversation import Conversation, Turn, as_utc, utcnow


def serialize_conversation(conv: Conversation) -> dict:
    return {
        "id": conv.id,
        "owner_id": conv.owner_id,
        "title": conv.title,
        "created_at": conv.created_at.isoformat() if conv.created_at else None,
        "updated_at": conv.updated_at.isoformat() if conv.updated_at else None,
        "last_message": conv.last_message,
        "last_sender": conv.last_sender,
        "pinned": conv.pinned,
        "category": conv.category,
    }


def serialize_turn(turn: Turn) -> dict:
    return {
        "id": turn.id,
        "conversation_id": turn.conversation_id,
        "sender": turn.sender,
        "text": turn.text,
        "created_at": turn.created_at.isoformat() if turn.created_at else None,
        "has_image": turn.has_image,
        "image_data": turn.image_data,
        "image_url": turn.image_url,
        "is_error": turn.is_error,
        "is_welcome": False,
    }


def welcome_turn(display_name: str = "") -> dict:
    """Placeholder shown for an empty log. It is never written to the log."""
    return {
        "id": None,
        "conversation_id": None,
        "sender": "assistant",
        "text": f"Hello {display_name or 'there'}! I'm your AI assistant. Ask me anything!",
        "created_at": None,
        "has_image": False,
        "image_data": None,
        "image_url": None,
        "is_error": False,
        "is_welcome": True,
    }


def with_welcome(turns: list[dict], display_name: str = "") -> list[dict]:
    return turns if turns else [welcome_turn(display_name)]


def export_transcript(turns: list[dict]) -> str:
    """Plain-text transcript, one block per turn."""
    return "\n\n".join(
        f"{'You' if t['sender'] == 'user' else 'AI'}: {t['text']}"
        for t in turns
        if not t.get("is_welcome")
    )


def format_relative(timestamp: datetime | None, now: datetime | None = None) -> str:
    if timestamp is None:
        return "Just now"
    now = as_utc(now) if now else utcnow()
    seconds = (now - as_utc(timestamp)).total_seconds()

    if seconds < 60:
        return "Just now"
    if seconds < 3600:
        return f"{int(seconds // 60)}m ago"
    if seconds < 86400:
        return f"{int(seconds // 3600)}h ago"
    if seconds < 604800:
        return f"{int(seconds // 86400)}d ago"
    return as_utc(timestamp).date().isoformat()
