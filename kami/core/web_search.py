from __future__ import annotations

import logging
import re
import unicodedata
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Sequence
from urllib.parse import quote

import httpx

from kami.core.metrics import metrics
from kami.core.store import KeyValueStore

logger = logging.getLogger(__name__)

NOT_FOUND_DIGEST = "Không tìm thấy thông tin liên quan trên web."
MAX_RELATED_SNIPPETS = 3


@dataclass(frozen=True)
class TriggerRule:
    category: str
    pattern: str


DEFAULT_TRIGGER_RULES: tuple[TriggerRule, ...] = (
    TriggerRule(
        "temporal_recency",
        r"hiện (tại|nay|giờ)|bây giờ|lúc này|hôm (nay|qua)|tuần (này|trước)|tháng (này|trước)|năm nay"
        r"|thời tiết|\b(today|tonight|right now|currently|this (week|month|year)|weather)\b",
    ),
    TriggerRule(
        "quantity_statistics",
        r"bao nhiêu|số lượng|thống kê|dân số|tỷ lệ|xếp hạng|\b(how (many|much)|statistics?|population|ranking)\b",
    ),
    TriggerRule(
        "recent_events",
        r"mới nhất|gần đây|vừa (rồi|qua|xảy ra)|sự kiện|đang diễn ra|tỷ số|trận đấu"
        r"|\b(latest|recent(ly)?|just happened|match result)\b",
    ),
    TriggerRule(
        "price_exchange",
        r"(?<!đánh )(?<!\w)giá(?!\w)|tỷ giá|chi phí|bao nhiêu tiền|\b(price|prices|exchange rate|cost)\b",
    ),
    TriggerRule(
        "news",
        r"tin tức|thời sự|bản tin|cập nhật|\b(news|headlines?|update)\b",
    ),
    TriggerRule(
        "geography_admin",
        r"sáp nhập|tỉnh thành|thủ đô|địa giới|đơn vị hành chính|\b(capital of|province|merger of)\b",
    ),
    TriggerRule(
        "living_person_status",
        r"còn sống|qua đời|đã mất|đương nhiệm|tổng thống|thủ tướng|chủ tịch"
        r"|\b(still alive|passed away|current (president|ceo|prime minister))\b",
    ),
    TriggerRule(
        "new_version",
        r"phiên bản mới|bản cập nhật|tính năng mới|ra mắt|phát hành"
        r"|\b(new version|new feature|released?|launch(ed)?)\b",
    ),
)


def _normalize(text: str) -> str:
    return unicodedata.normalize("NFC", text or "")


class SearchTrigger:
    def __init__(self, rules: Iterable[TriggerRule] = DEFAULT_TRIGGER_RULES) -> None:
        self.rules = tuple(rules)
        self._compiled = [(rule.category, re.compile(_normalize(rule.pattern), re.IGNORECASE)) for rule in self.rules]

    def matched_categories(self, text: str) -> list[str]:
        normalized = _normalize(text)
        return [category for category, pattern in self._compiled if pattern.search(normalized)]

    def needs_search(self, text: str) -> bool:
        normalized = _normalize(text)
        return any(pattern.search(normalized) for _, pattern in self._compiled)


_DEFAULT_TRIGGER = SearchTrigger()


def needs_search(text: str) -> bool:
    return _DEFAULT_TRIGGER.needs_search(text)


def _related_texts(topics: Any) -> list[str]:
    texts: list[str] = []
    if not isinstance(topics, list):
        return texts
    for item in topics:
        if not isinstance(item, dict):
            continue
        nested = item.get("Topics")
        if isinstance(nested, list):
            texts.extend(_related_texts(nested))
            continue
        text = item.get("Text")
        if isinstance(text, str) and text.strip():
            texts.append(text.strip())
    return texts


def build_digest(abstract: str | None, related: Sequence[str]) -> Optional[str]:
    parts: list[str] = []
    if abstract and abstract.strip():
        parts.append(abstract.strip())
    snippets = [item for item in related if item][:MAX_RELATED_SNIPPETS]
    if snippets:
        parts.append("\n".join(f"{idx}. {text}" for idx, text in enumerate(snippets, start=1)))
    if not parts:
        return None
    return "\n\n".join(parts)


def _cache_key(query: str) -> str:
    return f"search:{' '.join(_normalize(query).lower().split())}"


class WebAugmenter:
    """Fetches a short web digest: DuckDuckGo instant answers, then Wikipedia."""

    def __init__(
        self,
        *,
        search_url: str,
        wiki_url_template: str,
        lang: str = "vi",
        timeout_sec: float = 10.0,
        store: Optional[KeyValueStore] = None,
        cache_ttl_sec: int = 1800,
        trigger: Optional[SearchTrigger] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.search_url = search_url
        self.wiki_url_template = wiki_url_template
        self.lang = lang
        self.timeout_sec = timeout_sec
        self.store = store
        self.cache_ttl_sec = cache_ttl_sec
        self.trigger = trigger or _DEFAULT_TRIGGER
        self._transport = transport

    def needs_search(self, text: str) -> bool:
        return self.trigger.needs_search(text)

    async def fetch_digest(self, query: str) -> Optional[str]:
        query = (query or "").strip()
        if not query:
            return None
        key = _cache_key(query)
        if self.store is not None:
            cached = await self.store.get(key)
            if isinstance(cached, str) and cached.strip():
                metrics.inc("web_search_cache_hit_total")
                return cached

        try:
            digest = await self._fetch(query)
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("web digest fetch failed for %r: %s", query[:80], exc)
            metrics.inc("web_search_total", {"result": "error"})
            return None

        metrics.inc("web_search_total", {"result": "not_found" if digest == NOT_FOUND_DIGEST else "ok"})
        if self.store is not None and digest != NOT_FOUND_DIGEST:
            await self.store.set_with_expiry(key, digest, self.cache_ttl_sec)
        return digest

    async def _fetch(self, query: str) -> str:
        async with httpx.AsyncClient(
            timeout=self.timeout_sec,
            transport=self._transport,
            follow_redirects=True,
        ) as client:
            digest = await self._instant_answer(client, query)
            if digest:
                return digest
            summary = await self._encyclopedia_summary(client, query)
            if summary:
                return summary
        return NOT_FOUND_DIGEST

    async def _instant_answer(self, client: httpx.AsyncClient, query: str) -> Optional[str]:
        params = {"q": query, "format": "json", "no_html": "1", "skip_disambig": "1"}
        response = await client.get(self.search_url, params=params)
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict):
            raise ValueError("instant answer payload is not an object")
        abstract = data.get("AbstractText") if isinstance(data.get("AbstractText"), str) else ""
        return build_digest(abstract, _related_texts(data.get("RelatedTopics")))

    async def _encyclopedia_summary(self, client: httpx.AsyncClient, query: str) -> Optional[str]:
        title = quote(query.replace(" ", "_"), safe="")
        url = self.wiki_url_template.format(lang=self.lang, title=title)
        response = await client.get(url, headers={"accept": "application/json"})
        if response.status_code == 404:
            return None
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict):
            raise ValueError("encyclopedia payload is not an object")
        extract = data.get("extract")
        if isinstance(extract, str) and extract.strip():
            return extract.strip()
        return None
