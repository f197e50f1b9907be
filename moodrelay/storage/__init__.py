"""
Conversation storage: data models and the in-memory store.
"""
from moodrelay.storage.models import Conversation, Message
from moodrelay.storage.conversation_store import ConversationStore

__all__ = ["Conversation", "Message", "ConversationStore"]
