"""Conversation message model.

Messages are frozen once created; the agent loop only ever appends new
messages to its running list. Content is either a plain string or an ordered
tuple of parts (text, image, file), matching what multimodal providers accept.

Dict shape (used by memory stores and provider adapters):
    {
        "id": "9f0c...",
        "role": "user",
        "content": "hello" | [{"type": "text", "text": "..."}, ...],
        "timestamp": 1700000000000,
        "metadata": {...}            # optional
    }
"""

import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple, Union

ROLES = ("system", "user", "assistant")


def _new_id() -> str:
    return uuid.uuid4().hex


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class TextPart:
    text: str
    type: str = "text"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "text", "text": self.text}


@dataclass(frozen=True)
class ImagePart:
    """Inline image, either a URL or base64 data with a media type."""

    url: str = ""
    data: str = ""
    media_type: str = "image/png"
    type: str = "image"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "image", "url": self.url, "data": self.data, "media_type": self.media_type}

    def as_url(self) -> str:
        if self.url:
            return self.url
        return f"data:{self.media_type};base64,{self.data}"


@dataclass(frozen=True)
class FilePart:
    filename: str
    data: str = ""
    media_type: str = "application/octet-stream"
    text: str = ""
    type: str = "file"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "file",
            "filename": self.filename,
            "data": self.data,
            "media_type": self.media_type,
            "text": self.text,
        }


ContentPart = Union[TextPart, ImagePart, FilePart]
Content = Union[str, Tuple[ContentPart, ...]]


def part_from_dict(data: Dict[str, Any]) -> ContentPart:
    kind = data.get("type", "text")
    if kind == "image":
        return ImagePart(
            url=data.get("url", ""),
            data=data.get("data", ""),
            media_type=data.get("media_type", "image/png"),
        )
    if kind == "file":
        return FilePart(
            filename=data.get("filename", ""),
            data=data.get("data", ""),
            media_type=data.get("media_type", "application/octet-stream"),
            text=data.get("text", ""),
        )
    return TextPart(text=str(data.get("text", "")))


@dataclass(frozen=True)
class ConversationMessage:
    role: str
    content: Content
    id: str = field(default_factory=_new_id)
    timestamp: int = field(default_factory=_now_ms)
    metadata: Optional[Dict[str, Any]] = None

    def __post_init__(self):
        if self.role not in ROLES:
            raise ValueError(f"Invalid message role: {self.role!r}")
        if isinstance(self.content, list):
            # Freeze part lists so the message stays immutable.
            object.__setattr__(self, "content", tuple(self.content))

    @classmethod
    def user(cls, content: Content, **kwargs) -> "ConversationMessage":
        return cls(role="user", content=content, **kwargs)

    @classmethod
    def assistant(cls, content: Content, **kwargs) -> "ConversationMessage":
        return cls(role="assistant", content=content, **kwargs)

    @classmethod
    def system(cls, content: Content, **kwargs) -> "ConversationMessage":
        return cls(role="system", content=content, **kwargs)

    @property
    def text(self) -> str:
        """Concatenated text of the message (parts joined by newlines)."""
        if isinstance(self.content, str):
            return self.content
        return "\n".join(p.text for p in self.content if isinstance(p, TextPart))

    def has_content(self) -> bool:
        if isinstance(self.content, str):
            return bool(self.content.strip())
        for part in self.content:
            if isinstance(part, TextPart):
                if part.text.strip():
                    return True
            else:
                return True
        return False

    def to_dict(self) -> Dict[str, Any]:
        if isinstance(self.content, str):
            content: Any = self.content
        else:
            content = [p.to_dict() for p in self.content]
        data = {
            "id": self.id,
            "role": self.role,
            "content": content,
            "timestamp": self.timestamp,
        }
        if self.metadata:
            data["metadata"] = dict(self.metadata)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConversationMessage":
        content = data.get("content", "")
        if isinstance(content, list):
            content = tuple(part_from_dict(p) if isinstance(p, dict) else TextPart(str(p)) for p in content)
        elif content is None:
            content = ""
        elif not isinstance(content, str):
            content = str(content)
        kwargs: Dict[str, Any] = {}
        if data.get("id"):
            kwargs["id"] = str(data["id"])
        if data.get("timestamp") is not None:
            kwargs["timestamp"] = int(data["timestamp"])
        if data.get("metadata"):
            kwargs["metadata"] = data["metadata"]
        return cls(role=data.get("role", "user"), content=content, **kwargs)
