from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Mapping, Optional

from kami.core.store import KeyValueStore

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 50
VALID_ROLES = {"user", "assistant"}

Turn = Dict[str, str]
FactMap = Dict[str, str]


def history_key(user_id: str, conversation_id: str) -> str:
    return f"chat:{user_id}:{conversation_id}"


def profile_key(user_id: str) -> str:
    return f"memory:{user_id}"


def summary_key(user_id: str, conversation_id: str) -> str:
    return f"summary:{user_id}:{conversation_id}"


def tracker_key(user_id: str, conversation_id: str) -> str:
    return f"tracker:{user_id}:{conversation_id}"


def truncate_history(turns: List[Turn], limit: int = DEFAULT_HISTORY_LIMIT) -> List[Turn]:
    if limit <= 0:
        return []
    if len(turns) <= limit:
        return list(turns)
    return list(turns[-limit:])


def merge_facts(facts: Mapping[str, str], updates: Mapping[str, str]) -> FactMap:
    merged = dict(facts)
    merged.update(updates)
    return merged


def sanitize_history(raw: Any) -> List[Turn]:
    if not isinstance(raw, list):
        if raw is not None:
            logger.warning("stored history is not a list, resetting")
        return []
    turns: List[Turn] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        role = item.get("role")
        content = item.get("content")
        if role not in VALID_ROLES or not isinstance(content, str) or not content:
            continue
        turns.append({"role": role, "content": content})
    return turns


def sanitize_facts(raw: Any) -> FactMap:
    if not isinstance(raw, dict):
        if raw is not None:
            logger.warning("stored profile is not an object, resetting")
        return {}
    facts: FactMap = {}
    for key, value in raw.items():
        label = str(key).strip()
        if not label or value is None:
            continue
        facts[label] = str(value)
    return facts


class SessionStore:
    """History, profile, summary and extraction-tracker records for one store.

    Reads and writes are independent calls: a turn does read-modify-write on the
    history and profile without any lock, so two concurrent turns for the same
    session can overwrite each other and the later write wins.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        history_ttl_sec: int = 2592000,
        profile_ttl_sec: int = 7776000,
    ) -> None:
        self.store = store
        self.history_limit = history_limit
        self.history_ttl_sec = history_ttl_sec
        self.profile_ttl_sec = profile_ttl_sec

    @property
    def backend(self) -> str:
        return self.store.backend

    async def load_history(self, user_id: str, conversation_id: str) -> List[Turn]:
        return sanitize_history(await self.store.get(history_key(user_id, conversation_id)))

    async def save_history(self, user_id: str, conversation_id: str, turns: List[Turn]) -> List[Turn]:
        trimmed = truncate_history(turns, self.history_limit)
        await self.store.set_with_expiry(history_key(user_id, conversation_id), trimmed, self.history_ttl_sec)
        return trimmed

    async def load_profile(self, user_id: str) -> FactMap:
        return sanitize_facts(await self.store.get(profile_key(user_id)))

    async def save_profile(self, user_id: str, facts: FactMap) -> bool:
        return await self.store.set_with_expiry(profile_key(user_id), facts, self.profile_ttl_sec)

    async def delete_profile(self, user_id: str) -> int:
        return await self.store.delete(profile_key(user_id))

    async def load_summary(self, user_id: str, conversation_id: str) -> str:
        value = await self.store.get(summary_key(user_id, conversation_id))
        if value is None:
            return ""
        return value if isinstance(value, str) else str(value)

    async def load_tracker(self, user_id: str, conversation_id: str) -> Optional[Dict[str, Any]]:
        value = await self.store.get(tracker_key(user_id, conversation_id))
        return value if isinstance(value, dict) else None

    async def record_extraction(
        self,
        user_id: str,
        conversation_id: str,
        *,
        summary: str,
        updated_keys: List[str],
    ) -> Dict[str, Any]:
        previous = await self.load_tracker(user_id, conversation_id) or {}
        tracker = {
            "extractions": int(previous.get("extractions") or 0) + 1,
            "last_keys": updated_keys,
            "last_summary": summary,
            "updated_at_ms": int(time.time() * 1000),
        }
        if summary:
            await self.store.set_with_expiry(summary_key(user_id, conversation_id), summary, self.profile_ttl_sec)
        await self.store.set_with_expiry(tracker_key(user_id, conversation_id), tracker, self.profile_ttl_sec)
        return tracker

    async def clear_session(self, user_id: str, conversation_id: str) -> int:
        return await self.store.delete(
            history_key(user_id, conversation_id),
            summary_key(user_id, conversation_id),
            tracker_key(user_id, conversation_id),
        )
