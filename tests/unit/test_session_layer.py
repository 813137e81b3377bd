import json
import uuid

import redis

from materoom.session import create_session, remove_session, resolve_user_id, session_layer


class TestResolveUserId:
    def test_valid_token(self, fake_redis):
        user_id = uuid.uuid4()
        create_session("abc", {"user_id": str(user_id), "email": "a@example.com", "is_active": True})

        assert resolve_user_id("abc") == user_id

    def test_missing_or_unknown_token(self, fake_redis):
        assert resolve_user_id(None) is None
        assert resolve_user_id("") is None
        assert resolve_user_id("nope") is None

    def test_removed_session(self, fake_redis):
        create_session("abc", {"user_id": str(uuid.uuid4()), "is_active": True})

        assert remove_session("abc") is True
        assert resolve_user_id("abc") is None

    def test_inactive_user(self, fake_redis):
        create_session("abc", {"user_id": str(uuid.uuid4()), "is_active": False})

        assert resolve_user_id("abc") is None

    def test_malformed_user_id(self, fake_redis):
        fake_redis.store["session:abc"] = json.dumps({"user_id": "not-a-uuid"})

        assert resolve_user_id("abc") is None

    def test_store_outage_rejects(self, monkeypatch):
        class DownRedis:
            def get(self, key):
                raise redis.ConnectionError("connection refused")

        monkeypatch.setattr(session_layer, "_get_redis_client", lambda: DownRedis())

        assert resolve_user_id("abc") is None
