from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any, Literal, Union

DEFAULT_TITLE = "New Conversation"
_TITLE_MAX_LENGTH = 60


def utc_now() -> datetime:
    return datetime.now(UTC)


def to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    # Naive values stay naive so they read back exactly as written.
    return datetime.fromisoformat(value)


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"
    SYSTEM = "system"


# --- message content -------------------------------------------------------


@dataclass(frozen=True)
class TextPart:
    text: str


@dataclass(frozen=True)
class ImagePart:
    url: str
    detail: str = "auto"


ContentPart = Union[TextPart, ImagePart]


@dataclass(frozen=True)
class TextContent:
    text: str


@dataclass(frozen=True)
class PartsContent:
    parts: tuple[ContentPart, ...]


@dataclass(frozen=True)
class ToolResultContent:
    text: str
    is_error: bool = False


MessageContent = Union[TextContent, PartsContent, ToolResultContent]


def content_text(content: MessageContent) -> str:
    """Flatten content to plain text. Image parts contribute nothing."""
    if isinstance(content, TextContent):
        return content.text
    if isinstance(content, ToolResultContent):
        return content.text
    if isinstance(content, PartsContent):
        return "\n".join(p.text for p in content.parts if isinstance(p, TextPart))
    raise TypeError(f"Unsupported message content: {type(content).__name__}")


def content_to_dict(content: MessageContent) -> dict[str, Any]:
    if isinstance(content, TextContent):
        return {"type": "text", "text": content.text}
    if isinstance(content, ToolResultContent):
        return {"type": "tool_result", "text": content.text, "isError": content.is_error}
    if isinstance(content, PartsContent):
        parts: list[dict[str, Any]] = []
        for part in content.parts:
            if isinstance(part, TextPart):
                parts.append({"type": "text", "text": part.text})
            elif isinstance(part, ImagePart):
                parts.append({"type": "image", "url": part.url, "detail": part.detail})
            else:
                raise TypeError(f"Unsupported content part: {type(part).__name__}")
        return {"type": "parts", "parts": parts}
    raise TypeError(f"Unsupported message content: {type(content).__name__}")


def content_from_dict(data: Any) -> MessageContent:
    if isinstance(data, str):
        return TextContent(data)
    if not isinstance(data, dict):
        raise ValueError(f"Invalid message content: {data!r}")
    kind = data.get("type")
    if kind == "text":
        return TextContent(str(data.get("text", "")))
    if kind == "tool_result":
        return ToolResultContent(str(data.get("text", "")), bool(data.get("isError", False)))
    if kind == "parts":
        parts: list[ContentPart] = []
        for part in data.get("parts", []):
            part_type = part.get("type")
            if part_type == "text":
                parts.append(TextPart(str(part.get("text", ""))))
            elif part_type == "image":
                parts.append(ImagePart(str(part.get("url", "")), str(part.get("detail", "auto"))))
            else:
                raise ValueError(f"Unknown content part type: {part_type!r}")
        return PartsContent(tuple(parts))
    raise ValueError(f"Unknown content type: {kind!r}")


# --- messages --------------------------------------------------------------


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    arguments: str = "{}"


@dataclass(frozen=True)
class PageRef:
    url: str
    title: str = ""
    kind: str = "link"


@dataclass(frozen=True)
class ChatMessage:
    role: Role
    content: MessageContent
    tool_calls: tuple[ToolCall, ...] = ()
    page_refs: tuple[PageRef, ...] = ()
    timestamp: datetime | None = None
    name: str | None = None
    tool_call_id: str | None = None

    @classmethod
    def system(cls, text: str) -> ChatMessage:
        return cls(Role.SYSTEM, TextContent(text))

    @classmethod
    def user(cls, text: str, *, timestamp: datetime | None = None) -> ChatMessage:
        return cls(Role.USER, TextContent(text), timestamp=timestamp)

    @classmethod
    def assistant(
        cls,
        text: str,
        *,
        tool_calls: tuple[ToolCall, ...] = (),
        timestamp: datetime | None = None,
    ) -> ChatMessage:
        return cls(Role.ASSISTANT, TextContent(text), tool_calls=tool_calls, timestamp=timestamp)

    @classmethod
    def tool(
        cls,
        tool_call_id: str,
        text: str,
        *,
        name: str | None = None,
        is_error: bool = False,
    ) -> ChatMessage:
        return cls(Role.TOOL, ToolResultContent(text, is_error), name=name, tool_call_id=tool_call_id)

    @property
    def text(self) -> str:
        return content_text(self.content)

    def with_content(self, content: MessageContent) -> ChatMessage:
        return replace(self, content=content)

    def with_appended_text(self, delta: str) -> ChatMessage:
        if isinstance(self.content, TextContent):
            return replace(self, content=TextContent(self.content.text + delta))
        if isinstance(self.content, ToolResultContent):
            return replace(self, content=ToolResultContent(self.content.text + delta, self.content.is_error))
        if isinstance(self.content, PartsContent):
            return replace(self, content=PartsContent(self.content.parts + (TextPart(delta),)))
        raise TypeError(f"Unsupported message content: {type(self.content).__name__}")

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "role": self.role.value,
            "content": content_to_dict(self.content),
        }
        if self.tool_calls:
            data["toolCalls"] = [
                {"id": tc.id, "name": tc.name, "arguments": tc.arguments} for tc in self.tool_calls
            ]
        if self.page_refs:
            data["pageRefs"] = [{"url": r.url, "title": r.title, "kind": r.kind} for r in self.page_refs]
        if self.timestamp is not None:
            data["timestamp"] = to_iso(self.timestamp)
        if self.name is not None:
            data["name"] = self.name
        if self.tool_call_id is not None:
            data["toolCallId"] = self.tool_call_id
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChatMessage:
        return cls(
            role=Role(data["role"]),
            content=content_from_dict(data.get("content", "")),
            tool_calls=tuple(
                ToolCall(str(tc["id"]), str(tc["name"]), str(tc.get("arguments", "{}")))
                for tc in data.get("toolCalls", [])
            ),
            page_refs=tuple(
                PageRef(str(r["url"]), str(r.get("title", "")), str(r.get("kind", "link")))
                for r in data.get("pageRefs", [])
            ),
            timestamp=from_iso(data.get("timestamp")),
            name=data.get("name"),
            tool_call_id=data.get("toolCallId"),
        )


# --- sessions --------------------------------------------------------------


@dataclass(frozen=True)
class SessionIndexEntry:
    id: str
    title: str
    updated_at: datetime
    message_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "updatedAt": to_iso(self.updated_at),
            "messageCount": self.message_count,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionIndexEntry:
        return cls(
            id=str(data["id"]),
            title=str(data.get("title", DEFAULT_TITLE)),
            updated_at=from_iso(data["updatedAt"]),
            message_count=int(data.get("messageCount", 0)),
        )


@dataclass
class ChatSession:
    id: str
    tenant_id: str
    title: str
    messages: list[ChatMessage]
    created_at: datetime
    updated_at: datetime
    summary: str | None = None
    is_summarizing: bool = False
    # Set on snapshots opened through a share link; never persisted.
    read_only: bool = False

    @property
    def message_count(self) -> int:
        return len(self.messages)

    @staticmethod
    def derive_title(messages: list[ChatMessage]) -> str:
        for message in messages:
            if message.role == Role.USER:
                content = message.text.strip()
                if not content:
                    break
                if len(content) > _TITLE_MAX_LENGTH:
                    return content[:_TITLE_MAX_LENGTH] + "..."
                return content
        return DEFAULT_TITLE

    def index_entry(self) -> SessionIndexEntry:
        return SessionIndexEntry(self.id, self.title, self.updated_at, self.message_count)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tenantId": self.tenant_id,
            "title": self.title,
            "messages": [m.to_dict() for m in self.messages],
            "createdAt": to_iso(self.created_at),
            "updatedAt": to_iso(self.updated_at),
            "messageCount": self.message_count,
            "summary": self.summary,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChatSession:
        return cls(
            id=str(data["id"]),
            tenant_id=str(data["tenantId"]),
            title=str(data.get("title") or DEFAULT_TITLE),
            messages=[ChatMessage.from_dict(m) for m in data.get("messages", [])],
            created_at=from_iso(data["createdAt"]),
            updated_at=from_iso(data["updatedAt"]),
            summary=data.get("summary"),
        )


# --- budget ----------------------------------------------------------------


@dataclass(frozen=True)
class TokenBudgetSnapshot:
    used: int
    remaining: int
    limit: int
    percentage: float


@dataclass(frozen=True)
class ContextTokens:
    message_tokens: int
    tool_tokens: int
    total_tokens: int
    breakdown: dict[str, int]


@dataclass(frozen=True)
class StorageStats:
    used: int
    total: int
    session_count: int


# --- sharing ---------------------------------------------------------------


@dataclass(frozen=True)
class ExpiryConfig:
    type: Literal["hours", "days", "never"]
    value: int | None = None

    def __post_init__(self) -> None:
        if self.type not in ("hours", "days", "never"):
            raise ValueError(f"Unknown expiry type: {self.type!r}")
        if self.type != "never" and (self.value is None or self.value <= 0):
            raise ValueError(f"Expiry of type {self.type!r} needs a positive value")

    @classmethod
    def hours(cls, value: int) -> ExpiryConfig:
        return cls("hours", value)

    @classmethod
    def days(cls, value: int) -> ExpiryConfig:
        return cls("days", value)

    @classmethod
    def never(cls) -> ExpiryConfig:
        return cls("never")

    def expires_at(self, now: datetime) -> datetime | None:
        if self.type == "hours":
            return now + timedelta(hours=self.value)
        if self.type == "days":
            return now + timedelta(days=self.value)
        return None

    def key(self) -> str:
        return "never" if self.type == "never" else f"{self.type}-{self.value}"


EXPIRY_OPTIONS: list[tuple[str, ExpiryConfig]] = [
    ("1 hour", ExpiryConfig.hours(1)),
    ("1 day", ExpiryConfig.days(1)),
    ("7 days", ExpiryConfig.days(7)),
    ("30 days", ExpiryConfig.days(30)),
    ("90 days", ExpiryConfig.days(90)),
    ("Never", ExpiryConfig.never()),
]


@dataclass(frozen=True)
class ShareRecord:
    share_id: str
    session_id: str
    tenant_id: str
    created_at: datetime
    expires_at: datetime | None = None
    revoked: bool = False

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def is_active(self, now: datetime) -> bool:
        return not self.revoked and not self.is_expired(now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "shareId": self.share_id,
            "sessionId": self.session_id,
            "tenantId": self.tenant_id,
            "createdAt": to_iso(self.created_at),
            "expiresAt": to_iso(self.expires_at),
            "revoked": self.revoked,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ShareRecord:
        return cls(
            share_id=str(data["shareId"]),
            session_id=str(data["sessionId"]),
            tenant_id=str(data["tenantId"]),
            created_at=from_iso(data["createdAt"]),
            expires_at=from_iso(data.get("expiresAt")),
            revoked=bool(data.get("revoked", False)),
        )


@dataclass
class PromptParts:
    instruction: str
    user_input: str
    context: str | None = None


@dataclass(frozen=True)
class TextChunk:
    text: str
    start_index: int
    end_index: int


@dataclass
class CostBreakdown:
    input_cost: float
    output_cost: float
    total_cost: float = field(init=False)

    def __post_init__(self) -> None:
        self.total_cost = self.input_cost + self.output_cost
