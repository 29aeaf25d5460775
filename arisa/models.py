"""Wire models shared by the daemon and the core worker.

Attributes are snake_case; JSON uses the camelCase aliases of the local RPC.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class IncomingMessage(_WireModel):
    """A user message received by a channel adapter."""

    chat_id: str = Field(alias="chatId")
    sender: str = "user"
    text: str = ""
    message_id: Optional[str] = Field(default=None, alias="messageId")
    attachments: list[str] = Field(default_factory=list)


class CoreResponse(_WireModel):
    """Reply produced by the core worker (or the fallback path)."""

    text: str
    files: list[str] = Field(default_factory=list)


class MessageEnvelope(_WireModel):
    """Body of ``POST /message``."""

    message: IncomingMessage


class SendRequest(_WireModel):
    """Body of ``POST /send`` on the daemon push server."""

    chat_id: str = Field(default="", alias="chatId")
    text: str = ""
    files: list[str] = Field(default_factory=list)
