from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from kami.core.completion import CompletionGateway, CompletionRequest
from kami.core.errors import CompletionError
from kami.core.metrics import metrics

logger = logging.getLogger(__name__)

EXTRACTION_SYSTEM = "Bạn là trợ lý phân tích thông tin người dùng. CHỈ TRẢ VỀ JSON THUẦN, KHÔNG KÈM VĂN BẢN KHÁC."

EXTRACTION_TEMPLATE = """Phân tích tin nhắn và trích xuất CHỈ những thông tin cá nhân lâu dài của người dùng.

TIN NHẮN: "{message}"

THÔNG TIN ĐÃ BIẾT: {known}

Quy tắc:
- Chỉ lưu thông tin bền vững: danh tính (tên, tuổi), nghề nghiệp, nơi ở, sở thích, gia đình, mục tiêu, ghi chú sức khỏe, và mọi điều người dùng yêu cầu "hãy nhớ".
- Bỏ qua câu hỏi thông thường, yêu cầu tìm kiếm và trạng thái tạm thời ("đang đói", "muốn tìm...").
- Dùng khóa tiếng Việt dễ đọc, ví dụ "Tên", "Tuổi", "Nghề nghiệp", "Nơi ở", "Sở thích".
- Nếu thông tin mới chính xác hơn thông tin đã biết thì cập nhật cùng khóa.

Trả về JSON:
{{
  "hasNewInfo": true,
  "updates": {{"Khóa": "giá trị"}},
  "summary": "tóm tắt ngắn những gì vừa ghi nhớ"
}}

Nếu không có thông tin cá nhân mới, trả về:
{{"hasNewInfo": false}}"""


@dataclass
class ExtractionResult:
    has_new_info: bool = False
    updates: Dict[str, str] = field(default_factory=dict)
    summary: str = ""


def _find_json_object(text: str) -> Optional[str]:
    start = text.find("{")
    if start == -1:
        return None
    depth = 0
    in_string = False
    escaped = False
    for idx in range(start, len(text)):
        ch = text[idx]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start : idx + 1]
    end = text.rfind("}")
    if end <= start:
        return None
    return text[start : end + 1]


def _clean_updates(raw: Any) -> Dict[str, str]:
    if not isinstance(raw, dict):
        return {}
    updates: Dict[str, str] = {}
    for key, value in raw.items():
        label = str(key).strip()
        if value is None or isinstance(value, (dict, list)):
            continue
        text = str(value).strip()
        if label and text:
            updates[label] = text
    return updates


def parse_extraction(text: str | None) -> Optional[ExtractionResult]:
    if not isinstance(text, str):
        return None
    trimmed = text.strip()
    if trimmed.startswith("```"):
        trimmed = re.sub(r"^```(?:json)?", "", trimmed).strip()
        trimmed = re.sub(r"```$", "", trimmed).strip()
    candidate = _find_json_object(trimmed)
    if candidate is None:
        return None
    try:
        data = json.loads(candidate)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None
    if data.get("hasNewInfo") is not True:
        return ExtractionResult()
    updates = _clean_updates(data.get("updates"))
    if not updates:
        return ExtractionResult()
    summary = data.get("summary")
    return ExtractionResult(
        has_new_info=True,
        updates=updates,
        summary=summary.strip() if isinstance(summary, str) else "",
    )


class MemoryExtractor:
    def __init__(
        self,
        gateway: CompletionGateway,
        *,
        model: str,
        temperature: float = 0.2,
        max_tokens: int = 400,
    ) -> None:
        self.gateway = gateway
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens

    def build_messages(self, message: str, facts: Dict[str, str]) -> list[dict[str, str]]:
        prompt = EXTRACTION_TEMPLATE.format(
            message=message,
            known=json.dumps(facts, ensure_ascii=False, indent=2),
        )
        return [
            {"role": "system", "content": EXTRACTION_SYSTEM},
            {"role": "user", "content": prompt},
        ]

    async def extract(self, message: str, facts: Dict[str, str]) -> ExtractionResult:
        request = CompletionRequest(
            messages=self.build_messages(message, facts),
            model=self.model,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )
        try:
            result = await self.gateway.complete(request)
        except Exception as exc:
            reason = "rate_limited" if isinstance(exc, CompletionError) and exc.status_code == 429 else "call_failed"
            logger.warning("memory extraction call failed: %s", exc)
            metrics.inc("memory_extract_total", {"result": reason})
            return ExtractionResult()

        parsed = parse_extraction(result.content)
        if parsed is None:
            metrics.inc("memory_extract_total", {"result": "invalid_json"})
            return ExtractionResult()
        metrics.inc("memory_extract_total", {"result": "new_info" if parsed.has_new_info else "none"})
        return parsed
