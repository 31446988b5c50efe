import os
from dataclasses import dataclass, field

MAX_NUMBERED_KEYS = 6


def _split_keys(raw: str) -> list[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]


def _collect_api_keys() -> list[str]:
    keys: list[str] = []
    for idx in range(1, MAX_NUMBERED_KEYS + 1):
        value = os.getenv(f"GROQ_API_KEY_{idx}", "").strip()
        if value:
            keys.append(value)
    single = os.getenv("GROQ_API_KEY", "").strip()
    if single:
        keys.append(single)
    keys.extend(_split_keys(os.getenv("GROQ_API_KEYS", "")))
    deduped: list[str] = []
    for key in keys:
        if key not in deduped:
            deduped.append(key)
    return deduped


@dataclass
class Settings:
    api_keys: list[str]
    credential_strategy: str
    base_url: str
    main_model: str
    memory_model: str
    temperature: float
    max_tokens: int
    top_p: float
    memory_temperature: float
    memory_max_tokens: int
    llm_timeout_sec: float
    redis_url: str
    history_limit: int
    history_ttl_sec: int
    profile_ttl_sec: int
    max_message_chars: int
    user_id_pattern: str
    default_user_id: str
    default_conversation_id: str
    persona_lang: str
    search_url: str
    wiki_url_template: str
    search_timeout_sec: float
    search_cache_ttl_sec: int
    cors_origins: list[str] = field(default_factory=list)


def load_settings() -> Settings:
    return Settings(
        api_keys=_collect_api_keys(),
        credential_strategy=os.getenv("KAMI_CREDENTIAL_STRATEGY", "random").strip().lower(),
        base_url=os.getenv("KAMI_LLM_BASE_URL", "https://api.groq.com/openai/v1").rstrip("/"),
        main_model=os.getenv("KAMI_MAIN_MODEL", "llama-3.3-70b-versatile").strip(),
        memory_model=os.getenv("KAMI_MEMORY_MODEL", "llama-3.1-8b-instant").strip(),
        temperature=float(os.getenv("KAMI_TEMPERATURE", "0.7")),
        max_tokens=int(os.getenv("KAMI_MAX_TOKENS", "2500")),
        top_p=float(os.getenv("KAMI_TOP_P", "0.9")),
        memory_temperature=float(os.getenv("KAMI_MEMORY_TEMPERATURE", "0.2")),
        memory_max_tokens=int(os.getenv("KAMI_MEMORY_MAX_TOKENS", "400")),
        llm_timeout_sec=float(os.getenv("KAMI_LLM_TIMEOUT_SEC", "60")),
        redis_url=os.getenv("REDIS_URL", "").strip(),
        history_limit=max(1, int(os.getenv("KAMI_HISTORY_LIMIT", "50"))),
        history_ttl_sec=int(os.getenv("KAMI_HISTORY_TTL_SEC", "2592000")),
        profile_ttl_sec=int(os.getenv("KAMI_PROFILE_TTL_SEC", "7776000")),
        max_message_chars=int(os.getenv("KAMI_MAX_MESSAGE_CHARS", "3000")),
        user_id_pattern=os.getenv("KAMI_USER_ID_PATTERN", r"^user_[A-Za-z0-9_\-]{1,64}$"),
        default_user_id=os.getenv("KAMI_DEFAULT_USER_ID", "default").strip() or "default",
        default_conversation_id=os.getenv("KAMI_DEFAULT_CONVERSATION_ID", "default").strip() or "default",
        persona_lang=os.getenv("KAMI_PERSONA_LANG", "vi").strip() or "vi",
        search_url=os.getenv("KAMI_SEARCH_URL", "https://api.duckduckgo.com/").strip(),
        wiki_url_template=os.getenv(
            "KAMI_WIKI_URL_TEMPLATE",
            "https://{lang}.wikipedia.org/api/rest_v1/page/summary/{title}",
        ).strip(),
        search_timeout_sec=float(os.getenv("KAMI_SEARCH_TIMEOUT_SEC", "10")),
        search_cache_ttl_sec=int(os.getenv("KAMI_SEARCH_CACHE_TTL_SEC", "1800")),
        cors_origins=_split_keys(os.getenv("CORS_ALLOW_ORIGINS", "")),
    )


SETTINGS = load_settings()
