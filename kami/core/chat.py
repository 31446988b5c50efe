from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from kami.core.commands import run_command
from kami.core.completion import CompletionGateway, CompletionRequest
from kami.core.intent import IntentClassifier
from kami.core.memory_extractor import MemoryExtractor
from kami.core.metrics import metrics
from kami.core.prompt import build_system_prompt
from kami.core.session import SessionStore, merge_facts, truncate_history
from kami.core.web_search import NOT_FOUND_DIGEST, WebAugmenter

logger = logging.getLogger(__name__)

EMPTY_REPLY = "Xin lỗi, tôi không thể tạo phản hồi lúc này."
WEB_FOOTER = "🌐 _Có tham khảo thông tin từ web._"
MEMORY_FOOTER = "🧠 _Đã cập nhật bộ nhớ: {summary}_"


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class ChatTurnResult:
    message: str
    user_id: str
    conversation_id: str
    history_length: int
    memory_updated: bool
    memory_count: int
    used_web_search: bool
    command: Optional[str] = None
    model: Optional[str] = None
    temperature: Optional[float] = None
    intent: Optional[str] = None
    complexity: Optional[str] = None
    success: bool = True

    def to_payload(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "userId": self.user_id,
            "conversationId": self.conversation_id,
            "historyLength": self.history_length,
            "memoryUpdated": self.memory_updated,
            "memoryCount": self.memory_count,
            "usedWebSearch": self.used_web_search,
            "command": self.command,
            "model": self.model,
            "temperature": self.temperature,
            "intent": self.intent,
            "complexity": self.complexity,
            "timestamp": now_iso(),
        }


class ConversationOrchestrator:
    def __init__(
        self,
        *,
        gateway: CompletionGateway,
        sessions: SessionStore,
        augmenter: WebAugmenter,
        extractor: MemoryExtractor,
        model: str,
        temperature: float = 0.7,
        max_tokens: int = 2500,
        top_p: float = 0.9,
        intents: Optional[IntentClassifier] = None,
    ) -> None:
        self.gateway = gateway
        self.sessions = sessions
        self.augmenter = augmenter
        self.extractor = extractor
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.top_p = top_p
        self.intents = intents or IntentClassifier()

    async def handle(self, message: str, user_id: str = "default", conversation_id: str = "default") -> ChatTurnResult:
        reply = await run_command(message, user_id, self.sessions)
        if reply is not None:
            history = await self.sessions.load_history(user_id, conversation_id)
            return ChatTurnResult(
                message=reply.message,
                user_id=user_id,
                conversation_id=conversation_id,
                history_length=len(history),
                memory_updated=reply.memory_changed,
                memory_count=reply.memory_count,
                used_web_search=False,
                command=reply.name,
            )

        history = await self.sessions.load_history(user_id, conversation_id)
        facts = await self.sessions.load_profile(user_id)

        intent = self.intents.classify(message)
        temperature = self.intents.temperature_for(intent, self.temperature)

        history.append({"role": "user", "content": message})
        history = truncate_history(history, self.sessions.history_limit)

        digest: Optional[str] = None
        if self.augmenter.needs_search(message):
            logger.info("web search triggered user_id=%s", user_id)
            digest = await self.augmenter.fetch_digest(message)
        used_web = digest is not None and digest != NOT_FOUND_DIGEST

        system_prompt = build_system_prompt(facts, digest)
        completion = await self.gateway.complete(
            CompletionRequest(
                messages=[{"role": "system", "content": system_prompt}, *history],
                model=self.model,
                temperature=temperature,
                max_tokens=self.max_tokens,
                top_p=self.top_p,
                stream=False,
            )
        )
        answer = completion.content.strip() or EMPTY_REPLY
        if used_web:
            answer = f"{answer}\n\n{WEB_FOOTER}"

        memory_updated = False
        extraction = await self.extractor.extract(message, facts)
        if extraction.has_new_info and extraction.updates:
            previous_count = len(facts)
            facts = merge_facts(facts, extraction.updates)
            await self.sessions.save_profile(user_id, facts)
            summary = extraction.summary or ", ".join(f"{k}: {v}" for k, v in extraction.updates.items())
            await self.sessions.record_extraction(
                user_id,
                conversation_id,
                summary=summary,
                updated_keys=list(extraction.updates.keys()),
            )
            memory_updated = True
            answer = f"{answer}\n\n{MEMORY_FOOTER.format(summary=summary)}"
            logger.info("memory updated user_id=%s facts %d -> %d", user_id, previous_count, len(facts))

        history.append({"role": "assistant", "content": answer})
        history = await self.sessions.save_history(user_id, conversation_id, history)

        metrics.inc(
            "chat_turn_total",
            {
                "web": "true" if used_web else "false",
                "memory": "true" if memory_updated else "false",
                "intent": intent.type,
            },
        )
        return ChatTurnResult(
            message=answer,
            user_id=user_id,
            conversation_id=conversation_id,
            history_length=len(history),
            memory_updated=memory_updated,
            memory_count=len(facts),
            used_web_search=used_web,
            model=self.model,
            temperature=temperature,
            intent=intent.type,
            complexity=intent.complexity,
        )

    async def history(self, user_id: str, conversation_id: str = "default") -> Dict[str, Any]:
        turns = await self.sessions.load_history(user_id, conversation_id)
        items = [
            {"id": idx, "role": turn["role"], "content": turn["content"], "isUser": turn["role"] == "user"}
            for idx, turn in enumerate(turns)
        ]
        return {"history": items, "total": len(items)}

    async def profile(self, user_id: str, conversation_id: str = "default") -> Dict[str, Any]:
        facts = await self.sessions.load_profile(user_id)
        summary = await self.sessions.load_summary(user_id, conversation_id)
        return {"profile": facts, "summary": summary, "profileCount": len(facts)}

    async def clear(self, user_id: str, conversation_id: str = "default") -> Dict[str, Any]:
        removed = await self.sessions.clear_session(user_id, conversation_id)
        logger.info("session cleared user_id=%s conversation_id=%s removed=%d", user_id, conversation_id, removed)
        return {"cleared": ["history", "summary", "tracker"], "removed": removed, "storage": self.sessions.backend}
