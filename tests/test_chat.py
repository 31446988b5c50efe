import asyncio
import dataclasses
import json

import httpx
import pytest

from kami.core import runtime
from kami.core.chat import EMPTY_REPLY, MEMORY_FOOTER, WEB_FOOTER
from kami.core.errors import PoolExhaustedError
from kami.core.metrics import metrics
from kami.core.prompt import FACTS_HEADER, PERSONA, WEB_HEADER
from kami.core.settings import SETTINGS
from kami.core.store import MemoryStore
from kami.core.web_search import NOT_FOUND_DIGEST

MAIN_MODEL = "main-model"
MEMORY_MODEL = "memory-model"


class FakeProvider:
    def __init__(self, reply="Chào bạn!", extraction='{"hasNewInfo": false}', main_status=200, memory_status=200):
        self.reply = reply
        self.extraction = extraction
        self.main_status = main_status
        self.memory_status = memory_status
        self.main_calls = []
        self.memory_calls = []

    def __call__(self, request):
        body = json.loads(request.content)
        if body["model"] == MEMORY_MODEL:
            self.memory_calls.append(body)
            if self.memory_status != 200:
                return httpx.Response(self.memory_status, json={"error": {"message": "Rate limit reached"}})
            return _reply(self.extraction)
        self.main_calls.append(body)
        if self.main_status != 200:
            return httpx.Response(self.main_status, json={"error": {"message": "Rate limit reached"}})
        return _reply(self.reply)

    def last_system_prompt(self):
        return self.main_calls[-1]["messages"][0]["content"]


def _reply(content):
    return httpx.Response(200, json={"choices": [{"message": {"role": "assistant", "content": content}}]})


def _no_web(request):
    raise AssertionError(f"unexpected web request {request.url}")


def _orchestrator(provider, web=_no_web, store=None):
    settings = dataclasses.replace(
        SETTINGS,
        api_keys=["key-1", "key-2"],
        credential_strategy="round_robin",
        base_url="https://llm.test/v1",
        main_model=MAIN_MODEL,
        memory_model=MEMORY_MODEL,
        history_limit=50,
        search_url="https://search.test/",
        wiki_url_template="https://{lang}.wiki.test/page/summary/{title}",
    )
    return runtime.build_orchestrator(
        settings,
        store=store or MemoryStore(),
        llm_transport=httpx.MockTransport(provider),
        web_transport=httpx.MockTransport(web),
    )


def test_plain_turn_persists_history():
    provider = FakeProvider(reply="Chào An, rất vui được gặp bạn!")
    orchestrator = _orchestrator(provider)

    result = asyncio.run(orchestrator.handle("Xin chào", "user_an", "default"))

    assert result.success is True
    assert result.message == "Chào An, rất vui được gặp bạn!"
    assert result.history_length == 2
    assert result.memory_updated is False
    assert result.used_web_search is False
    assert provider.last_system_prompt() == PERSONA
    assert provider.main_calls[0]["messages"][1:] == [{"role": "user", "content": "Xin chào"}]
    history = asyncio.run(orchestrator.sessions.load_history("user_an", "default"))
    assert history == [
        {"role": "user", "content": "Xin chào"},
        {"role": "assistant", "content": "Chào An, rất vui được gặp bạn!"},
    ]


def test_introduction_is_remembered_and_listed_without_model_call():
    provider = FakeProvider(
        reply="Rất vui được làm quen với bạn, An!",
        extraction=json.dumps(
            {"hasNewInfo": True, "updates": {"Tên": "An", "Nghề nghiệp": "Kỹ sư"}, "summary": "Tên An, nghề kỹ sư"},
            ensure_ascii=False,
        ),
    )
    orchestrator = _orchestrator(provider)

    first = asyncio.run(orchestrator.handle("Tôi tên là An, tôi là kỹ sư", "user_an"))

    assert first.memory_updated is True
    assert first.memory_count == 2
    assert first.message.endswith(MEMORY_FOOTER.format(summary="Tên An, nghề kỹ sư"))
    profile = asyncio.run(orchestrator.profile("user_an"))
    assert profile["profile"] == {"Tên": "An", "Nghề nghiệp": "Kỹ sư"}
    assert profile["summary"] == "Tên An, nghề kỹ sư"

    calls_before = len(provider.main_calls) + len(provider.memory_calls)
    listing = asyncio.run(orchestrator.handle("bạn nhớ gì về tôi", "user_an"))

    assert listing.command == "show_memory"
    assert "- Tên: An" in listing.message
    assert "- Nghề nghiệp: Kỹ sư" in listing.message
    assert listing.memory_count == 2
    assert listing.history_length == 2
    assert len(provider.main_calls) + len(provider.memory_calls) == calls_before


def test_known_facts_reach_the_system_prompt():
    provider = FakeProvider()
    store = MemoryStore()
    orchestrator = _orchestrator(provider, store=store)
    asyncio.run(orchestrator.sessions.save_profile("user_an", {"Tên": "An"}))

    asyncio.run(orchestrator.handle("Bạn có khỏe không?", "user_an"))

    prompt = provider.last_system_prompt()
    assert FACTS_HEADER in prompt
    assert "- Tên: An" in prompt


def test_web_digest_is_used_and_footer_added():
    provider = FakeProvider(reply="Giá vàng SJC khoảng 80 triệu đồng/lượng.")

    def web(request):
        return httpx.Response(200, json={"AbstractText": "Giá vàng SJC hôm nay 80 triệu đồng/lượng."})

    result = asyncio.run(_orchestrator(provider, web=web).handle("Giá vàng hôm nay bao nhiêu?", "user_an"))

    assert result.used_web_search is True
    assert result.message.endswith(WEB_FOOTER)
    prompt = provider.last_system_prompt()
    assert WEB_HEADER in prompt
    assert "Giá vàng SJC hôm nay 80 triệu đồng/lượng." in prompt


def test_web_not_found_is_injected_without_footer():
    provider = FakeProvider()

    def web(request):
        if request.url.host == "search.test":
            return httpx.Response(200, json={"AbstractText": "", "RelatedTopics": []})
        return httpx.Response(404)

    result = asyncio.run(_orchestrator(provider, web=web).handle("Thời tiết hôm nay thế nào?", "user_an"))

    assert result.used_web_search is False
    assert WEB_FOOTER not in result.message
    assert NOT_FOUND_DIGEST in provider.last_system_prompt()


def test_web_failure_answers_without_digest():
    provider = FakeProvider()

    def web(request):
        return httpx.Response(503)

    result = asyncio.run(_orchestrator(provider, web=web).handle("Tin tức mới nhất hôm nay?", "user_an"))

    assert result.success is True
    assert result.used_web_search is False
    assert provider.last_system_prompt() == PERSONA


def test_extraction_failure_does_not_fail_the_turn():
    metrics.reset()
    provider = FakeProvider(reply="Chào An!", memory_status=500)

    result = asyncio.run(_orchestrator(provider).handle("Tôi tên là An", "user_an"))

    assert result.success is True
    assert result.message == "Chào An!"
    assert result.memory_updated is False
    assert metrics.get("memory_extract_total", {"result": "call_failed"}) == 1


def test_extraction_rate_limited_does_not_fail_the_turn():
    provider = FakeProvider(reply="Chào An!", memory_status=429)

    result = asyncio.run(_orchestrator(provider).handle("Tôi tên là An", "user_an"))

    assert result.success is True
    assert result.memory_updated is False
    assert len(provider.memory_calls) == 2


def test_main_pool_exhausted_propagates_and_keeps_history():
    provider = FakeProvider(main_status=429)
    orchestrator = _orchestrator(provider)

    with pytest.raises(PoolExhaustedError):
        asyncio.run(orchestrator.handle("Xin chào", "user_an"))

    assert len(provider.main_calls) == 2
    assert asyncio.run(orchestrator.sessions.load_history("user_an", "default")) == []


def test_empty_model_reply_uses_fallback_text():
    result = asyncio.run(_orchestrator(FakeProvider(reply="   ")).handle("Xin chào", "user_an"))

    assert result.message == EMPTY_REPLY


def test_history_is_capped_at_fifty_turns():
    provider = FakeProvider()
    orchestrator = _orchestrator(provider)
    seeded = [{"role": "user" if i % 2 == 0 else "assistant", "content": f"turn {i}"} for i in range(50)]
    asyncio.run(orchestrator.sessions.save_history("user_an", "default", seeded))

    result = asyncio.run(orchestrator.handle("Xin chào", "user_an"))

    assert result.history_length == 50
    sent = provider.main_calls[0]["messages"]
    assert len(sent) == 51
    assert sent[1] == {"role": "assistant", "content": "turn 1"}
    history = asyncio.run(orchestrator.sessions.load_history("user_an", "default"))
    assert history[0] == {"role": "user", "content": "turn 2"}
    assert history[-1] == {"role": "assistant", "content": "Chào bạn!"}


def test_forget_all_command_empties_profile():
    orchestrator = _orchestrator(FakeProvider())
    asyncio.run(orchestrator.sessions.save_profile("user_an", {"Tên": "An", "Tuổi": "30"}))

    result = asyncio.run(orchestrator.handle("quên hết đi", "user_an"))

    assert result.command == "forget_all"
    assert result.memory_count == 0
    assert asyncio.run(orchestrator.profile("user_an"))["profile"] == {}


def test_history_and_clear_views():
    orchestrator = _orchestrator(FakeProvider(reply="Chào!"))
    asyncio.run(orchestrator.handle("Xin chào", "user_an", "c1"))

    view = asyncio.run(orchestrator.history("user_an", "c1"))
    cleared = asyncio.run(orchestrator.clear("user_an", "c1"))

    assert view["total"] == 2
    assert view["history"][0] == {"id": 0, "role": "user", "content": "Xin chào", "isUser": True}
    assert view["history"][1]["isUser"] is False
    assert cleared["removed"] == 1
    assert cleared["storage"] == "memory"
    assert asyncio.run(orchestrator.history("user_an", "c1"))["total"] == 0


def test_payload_uses_camel_case_fields():
    result = asyncio.run(_orchestrator(FakeProvider()).handle("Xin chào", "user_an"))

    payload = result.to_payload()

    assert set(payload) == {
        "success",
        "message",
        "userId",
        "conversationId",
        "historyLength",
        "memoryUpdated",
        "memoryCount",
        "usedWebSearch",
        "command",
        "model",
        "temperature",
        "intent",
        "complexity",
        "timestamp",
    }


def test_intent_sets_sampling_temperature():
    provider = FakeProvider(reply="Ngày xửa ngày xưa...")
    orchestrator = _orchestrator(provider)

    creative = asyncio.run(orchestrator.handle("Kể cho tôi một câu chuyện cười", "user_an"))
    general = asyncio.run(orchestrator.handle("Xin chào", "user_an"))
    technical = asyncio.run(orchestrator.handle("Giúp tôi debug đoạn code Python này", "user_an"))

    assert [call["temperature"] for call in provider.main_calls] == [0.9, 0.7, 0.5]
    assert (creative.intent, creative.temperature) == ("creative", 0.9)
    assert (general.intent, general.temperature) == ("general", 0.7)
    assert (technical.intent, technical.complexity) == ("technical", "complex")
    assert all(call["temperature"] == 0.2 for call in provider.memory_calls)


def test_turn_reports_model_and_temperature():
    provider = FakeProvider()

    def web(request):
        return httpx.Response(200, json={"AbstractText": "Giá vàng SJC hôm nay 80 triệu đồng/lượng."})

    payload = asyncio.run(_orchestrator(provider, web=web).handle("Giá vàng hôm nay bao nhiêu?", "user_an")).to_payload()

    assert payload["model"] == MAIN_MODEL
    assert payload["temperature"] == 0.4
    assert payload["intent"] == "search"
    assert provider.main_calls[0]["temperature"] == 0.4


def test_command_turn_reports_no_model():
    result = asyncio.run(_orchestrator(FakeProvider()).handle("bạn nhớ gì về tôi", "user_an"))

    assert result.model is None
    assert result.temperature is None
    assert result.intent is None
