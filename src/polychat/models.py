"""Persisted chat data: messages and sessions."""

from __future__ import annotations

import enum
import time
import uuid

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_SESSION_TITLE = "新对话"


class Role(str, enum.Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


def _new_id() -> str:
    return str(uuid.uuid4())


class Message(BaseModel):
    """One chat message.

    Timestamps are epoch seconds.  When all three are present,
    ``complete_time >= first_token_time >= send_time``.
    """

    model_config = ConfigDict(ser_json_bytes="base64", val_json_bytes="base64")

    id: str = Field(default_factory=_new_id)
    role: Role
    text: str = ""
    image_bytes: bytes | None = None
    thinking_text: str | None = None
    send_time: float | None = None
    first_token_time: float | None = None
    complete_time: float | None = None

    @property
    def first_token_latency_ms(self) -> int | None:
        if self.send_time is None or self.first_token_time is None:
            return None
        return int((self.first_token_time - self.send_time) * 1000)

    @property
    def generation_time_ms(self) -> int | None:
        if self.first_token_time is None or self.complete_time is None:
            return None
        return int((self.complete_time - self.first_token_time) * 1000)

    @property
    def total_time_ms(self) -> int | None:
        if self.send_time is None or self.complete_time is None:
            return None
        return int((self.complete_time - self.send_time) * 1000)

    @property
    def is_complete(self) -> bool:
        return self.complete_time is not None


class Session(BaseModel):
    """Ordered list of messages plus title bookkeeping."""

    id: str = Field(default_factory=_new_id)
    title: str = DEFAULT_SESSION_TITLE
    messages: list[Message] = Field(default_factory=list)
    last_modified: float = Field(default_factory=time.time)
    note: str | None = None
    # Set once a generated or user-chosen title replaces the derived one
    title_final: bool = False

    @property
    def is_untitled(self) -> bool:
        return self.title == DEFAULT_SESSION_TITLE or not self.title

    def first_user_message(self) -> Message | None:
        for msg in self.messages:
            if msg.role == Role.USER:
                return msg
        return None

    def index_of(self, message_id: str) -> int | None:
        for i, msg in enumerate(self.messages):
            if msg.id == message_id:
                return i
        return None


class ModelInfo(BaseModel):
    id: str
    display_name: str | None = None

    @property
    def name(self) -> str:
        return self.display_name or self.id
