"""
Session layer - Redis-based bearer token store and validation.

Tokens are issued by the auth service at login; this layer only stores and
resolves them (token -> {user_id, email, is_active}).
"""
from typing import Optional, Dict, Any
import logging
import json
import uuid
import redis

logger = logging.getLogger(__name__)

# Redis connection pool and client
_redis_pool: Optional[redis.ConnectionPool] = None
_redis_client: Optional[redis.Redis] = None
_session_ttl: int = 604800


def init_redis(host: str, port: int, db: int, session_ttl: int = 604800) -> None:
    """Initialize Redis connection pool. Call once at app startup."""
    global _redis_pool, _redis_client, _session_ttl
    _redis_pool = redis.ConnectionPool(
        host=host,
        port=port,
        db=db,
        decode_responses=True,
        max_connections=10
    )
    _redis_client = redis.Redis(connection_pool=_redis_pool)
    _session_ttl = session_ttl
    logger.info(f"Redis initialized: {host}:{port}/{db}, TTL: {session_ttl}s")


def close_redis() -> None:
    global _redis_pool, _redis_client
    if _redis_pool is not None:
        _redis_pool.disconnect()
    _redis_pool = None
    _redis_client = None


def _get_redis_client() -> redis.Redis:
    """Get Redis client. Raises if not initialized."""
    if _redis_client is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis_client


def _key(token: str) -> str:
    return f"session:{token}"


def create_session(token: str, user_data: Dict[str, Any]) -> None:
    """Store token and user data in Redis session with TTL."""
    client = _get_redis_client()
    client.setex(_key(token), _session_ttl, json.dumps(user_data))
    logger.info(f"Session created for user: {user_data.get('user_id')}")


def get_session(token: str) -> Optional[Dict[str, Any]]:
    """Get user data from Redis session if token exists."""
    client = _get_redis_client()
    data = client.get(_key(token))
    if data:
        return json.loads(data)
    return None


def remove_session(token: str) -> bool:
    """Remove token from Redis session (logout)."""
    client = _get_redis_client()
    result = client.delete(_key(token))
    if result > 0:
        logger.info("Session removed for token")
        return True
    return False


def extract_token(auth_header: Optional[str]) -> Optional[str]:
    """Extract bearer token from Authorization header."""
    if not auth_header:
        return None

    parts = auth_header.split(" ")
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None

    return parts[1]


def resolve_user_id(token: Optional[str]) -> Optional[uuid.UUID]:
    """
    Resolve a bearer credential to a user id.
    Returns None when the token is missing, unknown, expired or belongs to an
    inactive user. Redis outages are logged and treated as invalid credentials.
    """
    if not token:
        return None
    try:
        session = get_session(token)
    except redis.RedisError as e:
        logger.error("Session lookup failed: %s", e)
        return None
    if not session or not session.get("is_active", True):
        return None
    try:
        return uuid.UUID(str(session.get("user_id")))
    except (TypeError, ValueError):
        logger.warning("Session has malformed user_id")
        return None
