"""
Mint a session token for an existing user so the chat API and gateway can be
exercised without the auth service.

Run from project root: python -m scripts.create_dev_session user@example.com
Creates the user first when --create is given; --name sets the display name.
"""
import argparse
import logging
import secrets
import sys

# Add project root so materoom imports work
sys.path.insert(0, ".")

from materoom.core.config import settings
from materoom.core.database import SessionLocal
from materoom.crud import user_crud
from materoom.session import init_redis, create_session

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def run(email: str, create: bool = False, name: str = None) -> str:
    db = SessionLocal()
    try:
        user = user_crud.get_by_email(db, email)
        if not user:
            if not create:
                logger.error("User with email %r not found. Pass --create to add it.", email)
                sys.exit(1)
            user = user_crud.create_from_dict(db, obj_in={"email": email, "name": name})
            logger.info("Created user %s (%s)", user.id, email)
        elif name and user.name != name:
            user = user_crud.update(db, db_obj=user, obj_in={"name": name})
        user_data = {"user_id": str(user.id), "email": user.email, "is_active": bool(user.is_active)}
    finally:
        db.close()

    init_redis(
        host=settings.REDIS_HOST,
        port=settings.REDIS_PORT,
        db=settings.REDIS_DB,
        session_ttl=settings.SESSION_TTL,
    )
    token = secrets.token_urlsafe(32)
    create_session(token, user_data)
    return token


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__.strip().splitlines()[0])
    parser.add_argument("email")
    parser.add_argument("--create", action="store_true")
    parser.add_argument("--name", default=None)
    args = parser.parse_args()
    print(run(args.email, create=args.create, name=args.name))
