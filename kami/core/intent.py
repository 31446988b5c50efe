from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass
from typing import Iterable, Mapping, Optional

GENERAL_INTENT = "general"
COMPLEX_MESSAGE_CHARS = 200


@dataclass(frozen=True)
class IntentRule:
    intent: str
    pattern: str


# First match wins, so the order is the priority.
DEFAULT_INTENT_RULES: tuple[IntentRule, ...] = (
    IntentRule(
        "search",
        r"hiện (tại|nay|giờ)|bây giờ|lúc này|(?<!\w)tìm(?!\w)|tra cứu|năm (19|20)\d{2}|mới nhất|gần đây"
        r"|tin tức|thời tiết|(?<!đánh )(?<!\w)giá(?!\w)|cập nhật|xu hướng|\bsearch\b",
    ),
    IntentRule("comparison", r"so sánh|khác nhau|tốt hơn|nên chọn|đâu là|hay hơn"),
    IntentRule("creative", r"(?<!\w)viết(?!\w)|(?<!\w)kể(?!\w)|sáng tác|làm thơ|bài hát|câu chuyện|truyện"),
    IntentRule(
        "technical",
        r"lập trình|\b(code|debug|fix|algorithm|function|class|git|api|database)\b",
    ),
    IntentRule(
        "calculation",
        r"(?<!\w)tính(?!\w)|\bcalculate\b|\d+\s*[-+*/=^]\s*\d+|phương trình|(?<!\w)toán(?!\w)|bao nhiêu\s+\d",
    ),
    IntentRule("explanation", r"giải thích|tại sao|vì sao|làm sao|như thế nào|thế nào là"),
)

INTENT_TEMPERATURES: dict[str, float] = {
    "creative": 0.9,
    "technical": 0.5,
    "calculation": 0.3,
    "search": 0.4,
}

_BASE_COMPLEXITY = {"creative": "medium", "technical": "complex"}


@dataclass(frozen=True)
class Intent:
    type: str = GENERAL_INTENT
    complexity: str = "simple"


class IntentClassifier:
    """Labels a message with a coarse intent used to pick the sampling temperature."""

    def __init__(
        self,
        rules: Iterable[IntentRule] = DEFAULT_INTENT_RULES,
        temperatures: Optional[Mapping[str, float]] = None,
    ) -> None:
        self.rules = tuple(rules)
        self.temperatures = dict(INTENT_TEMPERATURES if temperatures is None else temperatures)
        self._compiled = [
            (rule.intent, re.compile(unicodedata.normalize("NFC", rule.pattern), re.IGNORECASE))
            for rule in self.rules
        ]

    def classify(self, text: str) -> Intent:
        normalized = unicodedata.normalize("NFC", text or "")
        intent_type = GENERAL_INTENT
        for name, pattern in self._compiled:
            if pattern.search(normalized):
                intent_type = name
                break
        complexity = _BASE_COMPLEXITY.get(intent_type, "simple")
        if len(normalized) > COMPLEX_MESSAGE_CHARS or normalized.count("?") > 1:
            complexity = "complex"
        return Intent(type=intent_type, complexity=complexity)

    def temperature_for(self, intent: Intent, default: float) -> float:
        return self.temperatures.get(intent.type, default)
