from __future__ import annotations

import logging
from typing import Optional

import httpx

from kami.core.chat import ConversationOrchestrator
from kami.core.completion import CompletionGateway
from kami.core.credentials import build_pool
from kami.core.memory_extractor import MemoryExtractor
from kami.core.session import SessionStore
from kami.core.settings import Settings
from kami.core.store import KeyValueStore, create_store
from kami.core.web_search import WebAugmenter

logger = logging.getLogger(__name__)

_orchestrator: Optional[ConversationOrchestrator] = None


def build_orchestrator(
    settings: Settings,
    *,
    store: Optional[KeyValueStore] = None,
    llm_transport: Optional[httpx.AsyncBaseTransport] = None,
    web_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ConversationOrchestrator:
    pool = build_pool(settings.api_keys, settings.credential_strategy)
    kv = store if store is not None else create_store(settings.redis_url)
    gateway = CompletionGateway(
        pool,
        settings.base_url,
        timeout_sec=settings.llm_timeout_sec,
        transport=llm_transport,
    )
    sessions = SessionStore(
        kv,
        history_limit=settings.history_limit,
        history_ttl_sec=settings.history_ttl_sec,
        profile_ttl_sec=settings.profile_ttl_sec,
    )
    augmenter = WebAugmenter(
        search_url=settings.search_url,
        wiki_url_template=settings.wiki_url_template,
        lang=settings.persona_lang,
        timeout_sec=settings.search_timeout_sec,
        store=kv,
        cache_ttl_sec=settings.search_cache_ttl_sec,
        transport=web_transport,
    )
    extractor = MemoryExtractor(
        gateway,
        model=settings.memory_model,
        temperature=settings.memory_temperature,
        max_tokens=settings.memory_max_tokens,
    )
    logger.info(
        "loaded %d api keys (%s), models main=%s memory=%s, store=%s",
        pool.size,
        pool.strategy,
        settings.main_model,
        settings.memory_model,
        kv.backend,
    )
    return ConversationOrchestrator(
        gateway=gateway,
        sessions=sessions,
        augmenter=augmenter,
        extractor=extractor,
        model=settings.main_model,
        temperature=settings.temperature,
        max_tokens=settings.max_tokens,
        top_p=settings.top_p,
    )


def get_orchestrator() -> ConversationOrchestrator:
    global _orchestrator
    if _orchestrator is not None:
        return _orchestrator
    from kami.core.settings import SETTINGS

    _orchestrator = build_orchestrator(SETTINGS)
    return _orchestrator


def set_orchestrator(orchestrator: Optional[ConversationOrchestrator]) -> None:
    global _orchestrator
    _orchestrator = orchestrator


async def check_store() -> bool:
    orchestrator = get_orchestrator()
    healthy = await orchestrator.sessions.store.ping()
    if not healthy:
        logger.error("session store %s is not reachable", orchestrator.sessions.backend)
    return healthy


async def shutdown() -> None:
    global _orchestrator
    if _orchestrator is None:
        return
    await _orchestrator.sessions.store.close()
    _orchestrator = None
