from .session_layer import (
    init_redis,
    close_redis,
    create_session,
    get_session,
    remove_session,
    extract_token,
    resolve_user_id,
)

__all__ = [
    "init_redis",
    "close_redis",
    "create_session",
    "get_session",
    "remove_session",
    "extract_token",
    "resolve_user_id",
]
