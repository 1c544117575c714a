"""
meterchat/features/chat/service.py

Quota-gated chat exchanges and conversation history.

send_message:
1. Resolve the user (NotFoundError)
2. Check the quota against the current plan (QuotaExceededError)
3. Resolve the referenced conversation, if any (NotFoundError)
4. Call the model (UpstreamModelError, nothing written)
5. In one transaction: create-or-reuse the conversation, append the user turn
   and the reply, count the exchange with the guarded increment
"""

from dataclasses import dataclass
from typing import List, Optional, Sequence

from sqlalchemy import insert, select
from sqlalchemy.orm import Session

from meterchat.core.database import get_db_session, conversations, messages
from meterchat.core.errors import NotFoundError, ValidationError
from meterchat.core.logging import log_event
from meterchat.features.chat.model_client import ChatModel, Completion, get_chat_model
from meterchat.features.usage.service import consume_message, enforce_quota
from meterchat.features.users.service import require_user
from meterchat.models.conversation import Conversation, Message, Turn, title_from_turns
from meterchat.models.user import UsageSnapshot

HISTORY_PAGE_SIZE = 50


@dataclass(frozen=True)
class ChatReply:
    reply: str
    conversation_id: int
    usage: UsageSnapshot


def validate_turns(turns: Sequence[Turn]) -> None:
    if not turns:
        raise ValidationError("At least one message is required")
    if turns[-1].role != "user":
        raise ValidationError("The last message must come from the user")
    if any(not turn.content.strip() for turn in turns):
        raise ValidationError("Messages cannot be empty")


def _row_to_conversation(row) -> Conversation:
    return Conversation(id=row.id, user_id=row.user_id, title=row.title, created_at=row.created_at)


def _owned_conversation(session: Session, user_id: int, conversation_id: int) -> Conversation:
    row = session.execute(
        select(conversations)
        .where(conversations.c.id == conversation_id)
        .where(conversations.c.user_id == user_id)
    ).first()
    if row is None:
        raise NotFoundError("Conversation not found")
    return _row_to_conversation(row)


def _record_exchange(
    user_id: int,
    turns: Sequence[Turn],
    conversation_id: Optional[int],
    completion: Completion,
) -> ChatReply:
    with get_db_session() as session:
        if conversation_id is None:
            conversation_id = session.execute(
                insert(conversations).values(user_id=user_id, title=title_from_turns(list(turns)))
            ).inserted_primary_key[0]
        else:
            # Re-check ownership inside the write transaction
            _owned_conversation(session, user_id, conversation_id)

        session.execute(
            insert(messages).values(
                conversation_id=conversation_id,
                role="user",
                content=turns[-1].content,
                tokens_used=completion.input_tokens,
            )
        )
        session.execute(
            insert(messages).values(
                conversation_id=conversation_id,
                role="assistant",
                content=completion.text,
                tokens_used=completion.output_tokens,
            )
        )
        # Raises QuotaExceededError and rolls the inserts back if the guard fails
        usage = consume_message(session, user_id, completion.input_tokens, completion.output_tokens)

    return ChatReply(reply=completion.text, conversation_id=conversation_id, usage=usage)


def send_message(
    email: str,
    turns: Sequence[Turn],
    conversation_id: Optional[int] = None,
    *,
    model: Optional[ChatModel] = None,
) -> ChatReply:
    validate_turns(turns)
    user = require_user(email)
    enforce_quota(user)

    if conversation_id is not None:
        with get_db_session() as session:
            _owned_conversation(session, user.id, conversation_id)

    completion = (model or get_chat_model()).complete(turns)

    reply = _record_exchange(user.id, turns, conversation_id, completion)
    log_event(
        "info",
        "chat.exchange",
        user_email=user.email,
        event_type="chat.exchange",
        extra={
            "conversation_id": reply.conversation_id,
            "used": reply.usage.used,
            "limit": reply.usage.limit,
            "input_tokens": completion.input_tokens,
            "output_tokens": completion.output_tokens,
        },
    )
    return reply


def list_conversations(email: str, limit: int = HISTORY_PAGE_SIZE) -> List[Conversation]:
    """Most recent conversations first."""
    user = require_user(email)
    with get_db_session() as session:
        rows = session.execute(
            select(conversations)
            .where(conversations.c.user_id == user.id)
            .order_by(conversations.c.created_at.desc(), conversations.c.id.desc())
            .limit(limit)
        ).all()
        return [_row_to_conversation(row) for row in rows]


def get_conversation_messages(email: str, conversation_id: int) -> List[Message]:
    """Messages of one of the caller's conversations, in creation order."""
    user = require_user(email)
    with get_db_session() as session:
        _owned_conversation(session, user.id, conversation_id)
        rows = session.execute(
            select(messages)
            .where(messages.c.conversation_id == conversation_id)
            .order_by(messages.c.id)
        ).all()
        return [
            Message(
                id=row.id,
                conversation_id=row.conversation_id,
                role=row.role,
                content=row.content,
                tokens_used=row.tokens_used,
                created_at=row.created_at,
            )
            for row in rows
        ]
