from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


Role = Literal["user", "assistant"]


class _Record(BaseModel):
    """Persisted records use camelCase keys on disk and in API payloads."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Message(_Record):
    id: str
    role: Role
    content: str
    is_markup: bool = False
    pending: bool = False
    timestamp: int


class Card(_Record):
    id: str
    topic: str
    content: str
    target_message_id: str
    timestamp: int
    pinned: bool = False
    collapsed: bool = False


class Session(_Record):
    id: str
    title: str
    created_at: int
    timestamp: int
    messages: List[Message] = Field(default_factory=list)
    cards: List[Card] = Field(default_factory=list)
    pinned: bool = False


class SessionDocument(_Record):
    sessions: List[Session] = Field(default_factory=list)
    active_session_id: Optional[str] = None


class PosterLogEntry(_Record):
    id: str
    input_key: str
    area: str
    season: Optional[str] = None
    timestamp: int
    result_artifact: Optional[str] = None
    raw_response_text: str = ""


class PosterHistoryEntry(_Record):
    id: str
    url: str
    area: str
    season: Optional[str] = None
    created_at: str


class UserRecord(_Record):
    id: str
    email: Optional[str] = None
    nick: Optional[str] = None
    poster_history: List[PosterHistoryEntry] = Field(default_factory=list)


# --- API payloads ---


class AdditionalMessage(BaseModel):
    role: str = "user"
    content: str
    content_type: str = "text"


class ChatProxyRequest(BaseModel):
    message: Optional[str] = None
    stream: Optional[bool] = None
    user_id: Optional[str] = None
    bot_id: Optional[str] = None
    bot_alias: Optional[str] = None
    additional_messages: Optional[List[AdditionalMessage]] = None


class PosterRequest(BaseModel):
    area: Optional[str] = None
    season: Optional[str] = None


class PosterHistoryResponse(BaseModel):
    history: List[PosterHistoryEntry]


class SessionSummary(_Record):
    id: str
    title: str
    timestamp: int
    pinned: bool = False
    message_count: int = 0
    active: bool = False


class SessionListResponse(_Record):
    active_session_id: str
    sessions: List[SessionSummary]


class TurnRequest(BaseModel):
    content: str = Field(min_length=1)
    bot_alias: Optional[str] = None
    user_id: Optional[str] = None


class SessionPatch(BaseModel):
    pinned: bool


class CardPatch(BaseModel):
    pinned: Optional[bool] = None
    collapsed: Optional[bool] = None


class Recipe(BaseModel):
    id: int
    title: str
    tags: List[str]
