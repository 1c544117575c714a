"""
Chat API routes.

- POST /api/chat: Send the turn history, get the model reply (quota-gated)
- GET  /api/chat/usage: Current usage against the plan limit
- GET  /api/chat/conversations: Recent conversations
- GET  /api/chat/conversations/{conversation_id}: Messages of one conversation
"""
from datetime import datetime
from typing import List, Optional
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from meterchat.core.auth import get_current_user_email
from meterchat.features.chat.service import get_conversation_messages, list_conversations, send_message
from meterchat.features.usage.service import get_usage
from meterchat.models.conversation import Role, Turn


router = APIRouter(prefix="/chat", tags=["chat"])


class ChatTurn(BaseModel):
    role: Role
    content: str = Field(min_length=1, max_length=100_000)


class ChatRequest(BaseModel):
    messages: List[ChatTurn] = Field(min_length=1)
    conversation_id: Optional[int] = None


class UsageView(BaseModel):
    used: int
    limit: int
    plan: str


class ChatResponse(BaseModel):
    response: str
    conversation_id: int
    usage: UsageView


class UsageResponse(BaseModel):
    usage: UsageView


class ConversationSummary(BaseModel):
    id: int
    title: str
    created_at: Optional[datetime]


class ConversationListResponse(BaseModel):
    conversations: List[ConversationSummary]


class MessageView(BaseModel):
    role: str
    content: str


class ConversationMessagesResponse(BaseModel):
    messages: List[MessageView]


@router.post("", response_model=ChatResponse)
def chat(request: ChatRequest, email: str = Depends(get_current_user_email)):
    """
    Send a message.

    Errors:
        401: Not authenticated
        404: Unknown user or conversation
        429: Quota exhausted (error.details carries used, limit, plan)
        502: Model API failure (usage not counted)
    """
    turns = [Turn(role=turn.role, content=turn.content) for turn in request.messages]
    reply = send_message(email, turns, request.conversation_id)
    return {
        "response": reply.reply,
        "conversation_id": reply.conversation_id,
        "usage": reply.usage.model_dump(),
    }


@router.get("/usage", response_model=UsageResponse)
def usage(email: str = Depends(get_current_user_email)):
    return {"usage": get_usage(email).model_dump()}


@router.get("/conversations", response_model=ConversationListResponse)
def conversations(email: str = Depends(get_current_user_email)):
    return {
        "conversations": [
            {"id": c.id, "title": c.title, "created_at": c.created_at}
            for c in list_conversations(email)
        ]
    }


@router.get("/conversations/{conversation_id}", response_model=ConversationMessagesResponse)
def conversation_messages(conversation_id: int, email: str = Depends(get_current_user_email)):
    return {
        "messages": [
            {"role": m.role, "content": m.content}
            for m in get_conversation_messages(email, conversation_id)
        ]
    }
