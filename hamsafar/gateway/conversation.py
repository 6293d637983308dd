"""Per-conversation bounded history with submission-ordered reply appends.

Each conversation keeps its last `history_limit` turns (oldest evicted
first). Caller turns are appended directly. Replies produced by the
dispatcher go through a ticket sequence instead:

  ticket = store.reserve(conversation_id)   # at submission
  store.commit(conversation_id, ticket, text)  # on success
  store.release(conversation_id, ticket)       # on failure / cancel

Committed replies are only written once every earlier ticket of the same
conversation has been committed or released, so a fast later reply can
never land before a slow earlier one, and a ticket writes at most once.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 20


@dataclass
class _Conversation:
    """History and reply sequencing state for one conversation."""

    turns: deque[str]
    next_ticket: int = 0  # Next ticket handed out by reserve()
    next_to_flush: int = 0  # Oldest ticket not yet written or released
    cleared_below: int = 0  # Tickets under this were superseded by clear()
    # ticket -> reply text, or None when released without a reply
    resolved: dict[int, str | None] = field(default_factory=dict)


class ConversationStore:
    """In-memory conversation history keyed by conversation id.

    Not persisted; lives for the process lifetime.
    """

    def __init__(self, history_limit: int = DEFAULT_HISTORY_LIMIT, reply_prefix: str = ""):
        if history_limit < 1:
            raise ValueError("history_limit must be >= 1")
        self.history_limit = history_limit
        self.reply_prefix = reply_prefix
        self._conversations: dict[str, _Conversation] = {}

    def _get(self, conversation_id: str) -> _Conversation:
        if conversation_id not in self._conversations:
            self._conversations[conversation_id] = _Conversation(turns=deque(maxlen=self.history_limit))
        return self._conversations[conversation_id]

    # -- caller turns -----------------------------------------------------

    def add_turn(self, conversation_id: str, text: str) -> None:
        """Append a caller-authored turn, evicting the oldest at the limit."""
        self._get(conversation_id).turns.append(text)

    def history(self, conversation_id: str) -> list[str]:
        conv = self._conversations.get(conversation_id)
        return list(conv.turns) if conv else []

    def render(self, conversation_id: str, last_n: int | None = None) -> str:
        """Join the most recent turns with newlines (for prompt building)."""
        turns = self.history(conversation_id)
        if last_n is not None:
            turns = turns[-last_n:] if last_n > 0 else []
        return "\n".join(turns)

    def clear(self, conversation_id: str) -> None:
        """Forget a conversation's turns.

        Replies still in flight are dropped when they resolve. The ticket
        sequence is kept so they can never take a slot handed out later.
        """
        conv = self._conversations.get(conversation_id)
        if conv is None:
            return
        conv.turns.clear()
        conv.resolved.clear()
        conv.next_to_flush = conv.next_ticket
        conv.cleared_below = conv.next_ticket

    def __contains__(self, conversation_id: str) -> bool:
        conv = self._conversations.get(conversation_id)
        return conv is not None and (bool(conv.turns) or conv.next_ticket > conv.next_to_flush)

    # -- ordered reply appends --------------------------------------------

    def reserve(self, conversation_id: str) -> int:
        """Hand out the next reply slot for a conversation."""
        conv = self._get(conversation_id)
        ticket = conv.next_ticket
        conv.next_ticket += 1
        return ticket

    def commit(self, conversation_id: str, ticket: int, text: str) -> None:
        """Record the reply for a ticket; flushes in ticket order."""
        self._resolve(conversation_id, ticket, self.reply_prefix + text)

    def release(self, conversation_id: str, ticket: int) -> None:
        """Give up a ticket without appending anything."""
        self._resolve(conversation_id, ticket, None)

    def pending_replies(self, conversation_id: str) -> int:
        """Tickets reserved but not yet flushed."""
        conv = self._conversations.get(conversation_id)
        if conv is None:
            return 0
        return conv.next_ticket - conv.next_to_flush

    def _resolve(self, conversation_id: str, ticket: int, text: str | None) -> None:
        conv = self._conversations.get(conversation_id)
        if conv is not None and ticket < conv.cleared_below:
            logger.debug("Dropping reply for ticket %d of %s, history was cleared", ticket, conversation_id)
            return
        if conv is None or ticket < conv.next_to_flush or ticket >= conv.next_ticket:
            logger.warning("Ignoring unknown or already resolved ticket %s for %s", ticket, conversation_id)
            return
        if ticket in conv.resolved:
            logger.warning("Ticket %d for %s resolved twice, keeping the first", ticket, conversation_id)
            return

        conv.resolved[ticket] = text

        while conv.next_to_flush in conv.resolved:
            reply = conv.resolved.pop(conv.next_to_flush)
            if reply is not None:
                conv.turns.append(reply)
            conv.next_to_flush += 1
