from __future__ import annotations

import logging
import unicodedata
from dataclasses import dataclass
from typing import Optional

from kami.core.metrics import metrics
from kami.core.prompt import format_facts
from kami.core.session import SessionStore

logger = logging.getLogger(__name__)

SHOW_MEMORY_COMMAND = "bạn nhớ gì về tôi"
FORGET_ALL_COMMAND = "quên hết đi"

SHOW_MEMORY_COMMANDS = frozenset({SHOW_MEMORY_COMMAND, "xem bộ nhớ", "show memory", "/memory"})
FORGET_ALL_COMMANDS = frozenset({FORGET_ALL_COMMAND, "xóa bộ nhớ", "forget everything", "/forget-all"})
FORGET_KEY_PREFIXES = ("quên ", "forget ")
MAX_FORGET_KEY_CHARS = 40
MAX_FORGET_KEY_WORDS = 5


@dataclass
class CommandReply:
    name: str
    message: str
    memory_count: int
    memory_changed: bool = False


def _normalize(text: str) -> str:
    return " ".join(unicodedata.normalize("NFC", text or "").strip().lower().split())


def match_command(text: str) -> Optional[tuple[str, str]]:
    normalized = _normalize(text)
    phrase = normalized.rstrip(" ?!.")
    if phrase in SHOW_MEMORY_COMMANDS:
        return "show_memory", ""
    if phrase in FORGET_ALL_COMMANDS:
        return "forget_all", ""
    for prefix in FORGET_KEY_PREFIXES:
        if normalized.startswith(prefix):
            cleaned = " ".join(unicodedata.normalize("NFC", text or "").split())
            key = cleaned[len(prefix):].strip()
            if _looks_like_key(key):
                return "forget_key", key
    return None


def _looks_like_key(argument: str) -> bool:
    # "quên mật khẩu wifi thì làm sao?" is a question, not a memory label.
    if not argument or argument.endswith("?"):
        return False
    return len(argument) <= MAX_FORGET_KEY_CHARS and len(argument.split()) <= MAX_FORGET_KEY_WORDS


async def run_command(text: str, user_id: str, sessions: SessionStore) -> Optional[CommandReply]:
    matched = match_command(text)
    if matched is None:
        return None
    name, argument = matched
    metrics.inc("chat_command_total", {"command": name})

    if name == "show_memory":
        facts = await sessions.load_profile(user_id)
        if not facts:
            return CommandReply(name, "🧠 Tôi chưa ghi nhớ thông tin nào về bạn.", 0)
        message = (
            f"🧠 Những gì tôi nhớ về bạn ({len(facts)} mục):\n{format_facts(facts)}\n\n"
            f'Gõ "quên <mục>" để xóa một mục hoặc "{FORGET_ALL_COMMAND}" để xóa toàn bộ.'
        )
        return CommandReply(name, message, len(facts))

    if name == "forget_all":
        await sessions.delete_profile(user_id)
        logger.info("profile cleared by command user_id=%s", user_id)
        return CommandReply(name, "🗑️ Đã xóa toàn bộ thông tin tôi ghi nhớ về bạn.", 0, memory_changed=True)

    facts = await sessions.load_profile(user_id)
    if argument not in facts:
        message = (
            f'❓ Không tìm thấy mục "{argument}" trong bộ nhớ. '
            f'Gõ "{SHOW_MEMORY_COMMAND}" để xem danh sách các mục đã ghi nhớ.'
        )
        return CommandReply(name, message, len(facts))
    facts.pop(argument)
    if facts:
        await sessions.save_profile(user_id, facts)
    else:
        await sessions.delete_profile(user_id)
    return CommandReply(name, f'🗑️ Đã quên "{argument}".', len(facts), memory_changed=True)
