"""
meterchat/models/conversation.py

Conversation threads and the turns inside them.
"""

from datetime import datetime
from typing import Literal, Optional
from pydantic import BaseModel, ConfigDict, Field

Role = Literal["user", "assistant"]

TITLE_MAX_CHARS = 50
DEFAULT_TITLE = "New conversation"


class Turn(BaseModel):
    """One message in the history sent to the model."""
    model_config = ConfigDict(frozen=True)

    role: Role
    content: str = Field(min_length=1)


class Conversation(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    user_id: int
    title: str
    created_at: Optional[datetime] = None


class Message(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    conversation_id: int
    role: Role
    content: str
    tokens_used: int = 0
    created_at: Optional[datetime] = None


def title_from_turns(turns: list[Turn]) -> str:
    """Title is the first user message, truncated."""
    for turn in turns:
        if turn.role == "user":
            title = turn.content.strip()[:TITLE_MAX_CHARS]
            return title or DEFAULT_TITLE
    return DEFAULT_TITLE
