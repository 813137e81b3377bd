from materoom.client.state import MessageLog


def _msg(mid, created_at, sender="u2", read=False, content="hi"):
    return {
        "id": mid,
        "conversation_id": "c1",
        "sender_id": sender,
        "content": content,
        "read": read,
        "created_at": created_at,
    }


class TestMessageLog:
    """Local message list keyed by id."""

    def test_merge_deduplicates_by_id(self):
        log = MessageLog()

        assert log.merge([_msg("m1", "2026-01-01T10:00:00")]) == ["m1"]
        assert log.merge([_msg("m1", "2026-01-01T10:00:00")]) == []
        assert len(log) == 1
        assert "m1" in log

    def test_items_are_oldest_first(self):
        log = MessageLog()
        log.merge([
            _msg("m2", "2026-01-01T10:00:02"),
            _msg("m1", "2026-01-01T10:00:01"),
            _msg("m3", "2026-01-01T10:00:02.500000"),
        ])

        assert [m["id"] for m in log.items()] == ["m1", "m2", "m3"]

    def test_read_flag_never_reverts(self):
        log = MessageLog()
        log.merge([_msg("m1", "2026-01-01T10:00:00", read=True)])
        log.merge([_msg("m1", "2026-01-01T10:00:00", read=False)])

        assert log.items()[0]["read"] is True

    def test_mark_read_touches_only_listed_ids(self):
        log = MessageLog()
        log.merge([
            _msg("m1", "2026-01-01T10:00:01"),
            _msg("m2", "2026-01-01T10:00:02"),
            _msg("m3", "2026-01-01T10:00:03"),
        ])

        assert log.mark_read(["m1", "m3", "missing"]) == 2
        assert {m["id"]: m["read"] for m in log.items()} == {"m1": True, "m2": False, "m3": True}
        assert log.mark_read(["m1"]) == 0
