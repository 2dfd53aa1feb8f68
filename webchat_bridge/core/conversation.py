"""Conversation state: caller conversations -> upstream chat linkage.

Web chat upstreams thread messages server side. Each turn must name the
upstream chat it belongs to and, for some providers, the id of the previous
assistant message. :class:`ConversationManager` tracks that linkage per
caller conversation on top of :class:`SessionRegistry`.
"""

from __future__ import annotations

import hashlib
import logging
import uuid
from collections.abc import Awaitable, Callable, Mapping

from ..types import ConversationSession, ModelInfo, SessionConflictError
from .registry import SessionRegistry

logger = logging.getLogger(__name__)

CONVERSATION_HEADER = "x-conversation-id"


# ---------------------------------------------------------------------------
# Request helpers
# ---------------------------------------------------------------------------

def message_text(msg: dict) -> str:
    """Plain text of a message whose content is a string or text blocks."""
    content = msg.get("content", "")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            b.get("text", "") for b in content
            if isinstance(b, dict) and b.get("type") == "text"
        )
    return ""


def is_first_turn(messages: list[dict]) -> bool:
    """True when the history holds exactly one user and no assistant message."""
    roles = [m.get("role") for m in messages]
    return roles.count("user") == 1 and "assistant" not in roles


def conversation_key(body: dict, headers: Mapping[str, str] | None = None) -> str:
    """Derive the caller-side conversation key for a request.

    Priority: ``X-Conversation-Id`` header, then ``conversation_id`` /
    ``chat_id`` in the body, then a fingerprint of the system prompt and the
    first user message, which stays the same for every turn of a
    conversation.
    """
    if headers is not None:
        explicit = headers.get(CONVERSATION_HEADER) or headers.get("X-Conversation-Id")
        if explicit:
            return str(explicit)
    for field_name in ("conversation_id", "chat_id"):
        value = body.get(field_name)
        if value:
            return str(value)

    messages = body.get("messages") or []
    system = "\n".join(message_text(m) for m in messages if m.get("role") == "system")
    first_user = next(
        (message_text(m) for m in messages if m.get("role") == "user"), "",
    )
    digest = hashlib.sha256(f"{system}\x00{first_user}".encode()).hexdigest()
    return digest[:16]


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------

class ConversationManager:
    """Resolve, advance and serialize turns of upstream conversations."""

    def __init__(
        self,
        registry: SessionRegistry,
        create_chat: Callable[[ModelInfo | None], Awaitable[str | None]] | None = None,
        *,
        fixed_chat_id: str = "",
        on_conflict: str = "reject",
    ) -> None:
        self.registry = registry
        self.create_chat = create_chat
        self.fixed_chat_id = fixed_chat_id
        self.on_conflict = on_conflict

    async def _new_chat_id(self, model: ModelInfo | None = None) -> str:
        if self.fixed_chat_id:
            return self.fixed_chat_id
        if self.create_chat is not None:
            chat_id = await self.create_chat(model)
            if chat_id:
                return chat_id
        return uuid.uuid4().hex

    async def resolve(
        self,
        key: str,
        *,
        reset: bool = False,
        model: ModelInfo | None = None,
    ) -> ConversationSession:
        """Return the session for *key*, creating it on first use.

        With ``reset=True`` an existing idle session is dropped first so the
        request starts a fresh upstream conversation.
        """
        if reset and await self.registry.remove(key, only_idle=True) is not None:
            logger.info("Session %s reset (new conversation)", key[:12])

        created = key not in self.registry
        session = await self.registry.get_or_create(
            key, lambda: self._new_chat_id(model),
        )
        if created:
            logger.info("Session %s -> upstream chat %s", key[:12], session.chat_id)
        return session

    async def advance(
        self,
        session: ConversationSession,
        new_parent_id: str | None,
        *,
        chat_id: str | None = None,
    ) -> ConversationSession:
        """Record linkage from the upstream. Repeating the same id is a no-op."""
        changes: dict = {}
        if new_parent_id and new_parent_id != session.parent_id:
            changes["parent_id"] = new_parent_id
        if chat_id and chat_id != session.chat_id:
            changes["chat_id"] = chat_id
        if not changes:
            return session
        updated = await self.registry.update(session.key, **changes)
        if updated is None:
            # evicted or reset by another request; keep the caller's copy in sync
            for name, value in changes.items():
                setattr(session, name, value)
            return session
        return updated

    async def complete_turn(self, session: ConversationSession) -> None:
        await self.registry.update(session.key, turns=session.turns + 1)

    async def begin_turn(
        self,
        key: str,
        *,
        reset: bool = False,
        model: ModelInfo | None = None,
    ) -> TurnLease:
        """Resolve *key* and take its turn lock before any upstream work.

        In ``reject`` mode a held lock raises :class:`SessionConflictError`;
        in ``queue`` mode the call waits its turn. A session that was reset
        or evicted while we waited is resolved again, so the lock returned
        always belongs to the session the registry holds for *key*.
        """
        while True:
            session = await self.resolve(key, reset=reset, model=model)
            if self.on_conflict == "reject" and session.in_flight:
                raise SessionConflictError(key)
            await session.turn_lock.acquire()
            if self.registry.get(key) is session:
                return TurnLease(session)
            session.turn_lock.release()
            reset = False


class TurnLease:
    """Ownership of one session's turn lock. :meth:`release` is idempotent."""

    def __init__(self, session: ConversationSession) -> None:
        self.session = session
        self.held = True

    def release(self) -> None:
        if self.held:
            self.held = False
            self.session.turn_lock.release()
