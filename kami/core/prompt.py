from __future__ import annotations

from typing import Mapping, Optional

PERSONA = (
    "Bạn là KAMI, một trợ lý AI thông minh, chính xác và thân thiện, được tạo ra bởi Nguyễn Đức Thạnh. "
    "Luôn trả lời bằng tiếng Việt trừ khi người dùng yêu cầu ngôn ngữ khác."
)

WEB_HEADER = "📊 THÔNG TIN MỚI NHẤT TỪ WEB:"
WEB_DIRECTIVE = (
    "⚠️ Ưu tiên thông tin từ web ở trên hơn kiến thức sẵn có của bạn khi hai nguồn mâu thuẫn nhau."
)

FACTS_HEADER = "👤 THÔNG TIN ĐÃ BIẾT VỀ NGƯỜI DÙNG:"
FACTS_DIRECTIVES = (
    "⚠️ Sử dụng những thông tin này một cách tự nhiên khi phù hợp. "
    "Không nhắc lại chúng nếu người dùng không hỏi. "
    "Thể hiện sự quen thuộc qua giọng điệu và cách xưng hô thay vì liệt kê lại."
)


def format_facts(facts: Mapping[str, str]) -> str:
    return "\n".join(f"- {key}: {value}" for key, value in facts.items())


def build_system_prompt(facts: Mapping[str, str], digest: Optional[str] = None) -> str:
    sections = [PERSONA]
    if digest is not None:
        sections.append(f"{WEB_HEADER}\n{digest}\n\n{WEB_DIRECTIVE}")
    if facts:
        sections.append(f"{FACTS_HEADER}\n{format_facts(facts)}\n\n{FACTS_DIRECTIVES}")
    return "\n\n".join(sections)
