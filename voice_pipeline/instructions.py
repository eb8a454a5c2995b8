"""
Responder system instructions for Vietnamese conversation.

Supports persona-based configuration:
- A base system prompt per persona
- Fixed farewell and fallback texts per persona
- Persona selection via argument or the PERSONA env var

Every instruction is grounded with:
- The current time in Vietnam (GMT+7), so "today" and "tomorrow" resolve locally
- The user profile (name, gender -> form of address, custom personality)
- A JSON-only reminder when search grounding is enabled, because the response
  schema cannot be enforced in that mode

Persona files are YAML (preferred) or JSON, loaded with PyYAML's safe_load.
"""

import os
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .models import UserProfile


VIETNAM_TZ = timezone(timedelta(hours=7), name="GMT+7")

# Python weekday() order, Monday first
_WEEKDAYS = ("Thứ Hai", "Thứ Ba", "Thứ Tư", "Thứ Năm", "Thứ Sáu", "Thứ Bảy", "Chủ Nhật")

DEFAULT_FAREWELL_TEXT = "Tạm biệt bạn! Hẹn gặp lại."
DEFAULT_FALLBACK_TEXT = "Xin lỗi, hiện tại ViVi đang gặp chút khó khăn khi kết nối. Bạn thử lại sau nhé!"

# Used only when no persona file can be found at all
BASE_INSTRUCTIONS = """
Bạn là ViVi - một trợ lý thông minh, tinh tế và hữu ích.
Trả lời ngắn gọn, tự nhiên, bằng Tiếng Việt. Câu đầu tiên phải ngắn.
Bạn phải LUÔN LUÔN trả về định dạng JSON hợp lệ với "type" và "textResponse".
""".strip()

SEARCH_JSON_REMINDER = (
    "QUAN TRỌNG: Bạn đang có quyền truy cập Google Search. Sau khi tìm kiếm xong, "
    "bạn PHẢI trả về KẾT QUẢ DƯỚI DẠNG JSON THUẦN TÚY. KHÔNG được thêm bất kỳ văn bản "
    "dẫn dắt, giải thích hay markdown (như ```json) nào bên ngoài khối JSON."
)


def _get_personas_dir() -> Path:
    return Path(__file__).parent / "personas"


def _load_file(path: Path) -> Dict[str, Any]:
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Persona file {path} must contain a mapping at top-level")
        return data


def load_persona(persona_name: str) -> Dict[str, Any]:
    """
    Load persona configuration from a YAML or JSON file.

    Resolution order:
    1) <name>.yaml
    2) <name>.yml
    3) <name>.json
    4) default.yaml / default.yml / default.json
    5) hardcoded default fallback
    """
    personas_dir = _get_personas_dir()

    for name in (persona_name, "default"):
        for suffix in (".yaml", ".yml", ".json"):
            candidate = personas_dir / f"{name}{suffix}"
            if candidate.exists():
                return _load_file(candidate)

    return {
        "name": "default",
        "prompt": BASE_INSTRUCTIONS,
        "farewell_text": DEFAULT_FAREWELL_TEXT,
        "fallback_text": DEFAULT_FALLBACK_TEXT,
    }


def get_persona(persona: Optional[str] = None) -> Dict[str, Any]:
    """
    Priority:
    1. persona argument
    2. PERSONA environment variable
    3. "default"
    """
    return load_persona(persona or os.getenv("PERSONA", "default"))


def get_farewell_text(persona: Optional[str] = None) -> str:
    return get_persona(persona).get("farewell_text") or DEFAULT_FAREWELL_TEXT


def get_fallback_text(persona: Optional[str] = None) -> str:
    return get_persona(persona).get("fallback_text") or DEFAULT_FALLBACK_TEXT


def format_time_context(now: Optional[datetime] = None) -> str:
    """Current Vietnam time, e.g. "Thứ Hai, 14:05:00 19/10/2026"."""
    if now is None:
        now = datetime.now(VIETNAM_TZ)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local = now.astimezone(VIETNAM_TZ)
    return f"{_WEEKDAYS[local.weekday()]}, {local.strftime('%H:%M:%S %d/%m/%Y')}"


def build_system_instruction(
    profile: Optional[UserProfile] = None,
    search_enabled: bool = False,
    now: Optional[datetime] = None,
    persona: Optional[str] = None,
) -> str:
    """
    Build the complete system instruction for one responder call.

    Args:
        profile: User profile; omitted sections are skipped
        search_enabled: Append the JSON-only reminder for search mode
        now: Clock override (naive values are taken as UTC)
        persona: Persona name; falls back to PERSONA env var, then "default"
    """
    instruction = get_persona(persona).get("prompt", BASE_INSTRUCTIONS).strip()

    instruction += "\n\nTHÔNG TIN NGỮ CẢNH THỜI GIAN THỰC (GMT+7):"
    instruction += f"\n- Thời gian hiện tại: {format_time_context(now)}"
    instruction += (
        "\n- Mọi thông tin tìm kiếm, thời tiết, giá cả, tin tức PHẢI dựa trên mốc thời gian này "
        "và vị trí mặc định là Việt Nam (trừ khi người dùng chỉ định khác)."
    )

    if profile is not None:
        instruction += "\n\nTHÔNG TIN NGƯỜI DÙNG:\n"
        if profile.name:
            instruction += f'- Tên người dùng: "{profile.name}".\n'
        if profile.gender:
            instruction += f"- Giới tính: {profile.gender}.\n"
        name_part = f" tên là {profile.name}" if profile.name else ""
        instruction += (
            f'- Khi xưng hô, hãy gọi người dùng là "{profile.address_term}"{name_part} '
            "một cách thân mật, tự nhiên."
        )

        if profile.custom_personality.strip():
            instruction += "\n\n★ YÊU CẦU ĐẶC BIỆT VỀ TÍNH CÁCH (TỪ NGƯỜI DÙNG):\n"
            instruction += f'Người dùng muốn bạn cư xử như sau: "{profile.custom_personality}".\n'
            instruction += (
                "HÃY HÓA THÂN HOÀN TOÀN vào tính cách này trong mọi câu trả lời, "
                "nhưng vẫn đảm bảo cung cấp thông tin chính xác và hữu ích."
            )

    if search_enabled:
        instruction += f"\n\n{SEARCH_JSON_REMINDER}"

    return instruction
