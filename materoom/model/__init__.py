from materoom.model.user import User
from materoom.model.conversation import Conversation
from materoom.model.message import Message

__all__ = ["User", "Conversation", "Message"]
