"""
账户类型与调度候选
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

DEFAULT_PRIORITY = 50


class AccountKind(str, Enum):
    """上游账户类型"""

    CLAUDE_OFFICIAL = "claude-official"  # OAuth 主账户
    CLAUDE_CONSOLE = "claude-console"
    BEDROCK = "bedrock"
    CCR = "ccr"
    GEMINI = "gemini"  # Gemini OAuth (Code Assist)
    GEMINI_API = "gemini-api"  # Gemini API Key

    @property
    def is_gemini(self) -> bool:
        return self in GEMINI_KINDS


CLAUDE_KINDS = (
    AccountKind.CLAUDE_OFFICIAL,
    AccountKind.CLAUDE_CONSOLE,
    AccountKind.BEDROCK,
    AccountKind.CCR,
)
GEMINI_KINDS = (AccountKind.GEMINI, AccountKind.GEMINI_API)


def parse_priority(value: Any) -> int:
    """int(priority)，缺失或非法时取默认 50（0 也视为缺失）"""
    try:
        priority = int(value)
    except (TypeError, ValueError):
        return DEFAULT_PRIORITY
    return priority or DEFAULT_PRIORITY


def parse_timestamp(value: Any) -> float:
    """ISO 字符串或毫秒时间戳 -> epoch 秒；无法解析返回 0"""
    if value is None or value == "":
        return 0.0
    if isinstance(value, (int, float)):
        return float(value) / 1000.0
    text = str(value).strip()
    if text.lstrip("-").isdigit():
        return float(text) / 1000.0
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return 0.0
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class AccountCandidate:
    """一次调度决策中的临时候选，不做持久化"""

    account_id: str
    kind: AccountKind
    priority: int = DEFAULT_PRIORITY
    last_used_at: float = 0.0
    name: str = ""
    record: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_record(cls, record: Dict[str, Any], kind: AccountKind) -> "AccountCandidate":
        return cls(
            account_id=str(record.get("id", "")),
            kind=kind,
            priority=parse_priority(record.get("priority")),
            last_used_at=parse_timestamp(record.get("lastUsedAt")),
            name=record.get("name") or "",
            record=record,
        )

    def sort_key(self):
        # 优先级数字小的优先；同优先级最久未使用的优先
        return (self.priority, self.last_used_at)


@dataclass(frozen=True)
class AccountSelection:
    """调度结果，也是会话映射的存储内容"""

    account_id: str
    kind: AccountKind

    def to_dict(self) -> Dict[str, str]:
        return {"accountId": self.account_id, "accountType": self.kind.value}

    @classmethod
    def from_dict(cls, data: Any) -> Optional["AccountSelection"]:
        if not isinstance(data, dict):
            return None
        try:
            return cls(account_id=str(data["accountId"]), kind=AccountKind(data["accountType"]))
        except (KeyError, ValueError):
            return None
