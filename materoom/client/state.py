"""
Local client-side chat state.
"""
from typing import Any, Dict, Iterable, List


class MessageLog:
    """
    Messages of one conversation keyed by id.

    Every delivery path (gateway event, REST send response, poll) goes through
    merge(), so a message id appears at most once.
    """

    def __init__(self) -> None:
        self._by_id: Dict[str, Dict[str, Any]] = {}

    def __len__(self) -> int:
        return len(self._by_id)

    def __contains__(self, message_id: str) -> bool:
        return str(message_id) in self._by_id

    def merge(self, messages: Iterable[Dict[str, Any]]) -> List[str]:
        """Upsert by id. Returns ids that were not present before."""
        added = []
        for msg in messages:
            mid = str(msg["id"])
            current = self._by_id.get(mid)
            if current is None:
                self._by_id[mid] = dict(msg)
                added.append(mid)
            else:
                # read only ever goes false -> true
                read = current.get("read") or msg.get("read")
                current.update(msg)
                current["read"] = bool(read)
        return added

    def mark_read(self, message_ids: Iterable[str]) -> int:
        count = 0
        for mid in message_ids:
            msg = self._by_id.get(str(mid))
            if msg is not None and not msg.get("read"):
                msg["read"] = True
                count += 1
        return count

    def items(self) -> List[Dict[str, Any]]:
        """Oldest first, matching the store's history order."""
        return sorted(self._by_id.values(), key=lambda m: (str(m.get("created_at") or ""), str(m["id"])))
