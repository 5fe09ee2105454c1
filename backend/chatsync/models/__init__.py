from chatsync.models.conversation import Conversation, Turn, Sender, Category

__all__ = ["Conversation", "Turn", "Sender", "Category"]
