from materoom.crud.user_crud import user_crud
from materoom.crud.conversation_crud import conversation_crud
from materoom.crud.message_crud import message_crud

__all__ = [
    "user_crud",
    "conversation_crud",
    "message_crud",
]
