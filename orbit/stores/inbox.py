"""Inbox store -- store-and-forward mail between agents, no broker.

Reading (get_pending) never mutates; archiving (mark_read) is the explicit
commit. The turn orchestration fetches, attempts work, and only then
archives, so a failed engine call never silently loses mail. Delivery is
at-least-once: a crash between the archive write and the pending delete
leaves the message pending, and a later drain archives it again.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import UTC, datetime

from orbit.storage.records import StorageBackend, new_record_id, validate_key
from orbit.stores.agents import validate_agent_name
from orbit.stores.schemas import InboxMessage, SendMessage

logger = logging.getLogger(__name__)


def _arrival_order(msg: InboxMessage) -> tuple[datetime, str]:
    return (msg.created_at, msg.id)


class InboxStore:
    """Per-agent mailbox with pending/ and archive/ record sets."""

    def __init__(self, backend: StorageBackend) -> None:
        self._backend = backend

    def _pending(self, agent_name: str):
        return self._backend.records(
            ("agents", validate_agent_name(agent_name), "inbox", "pending"), InboxMessage
        )

    def _archive(self, agent_name: str):
        return self._backend.records(
            ("agents", validate_agent_name(agent_name), "inbox", "archive"), InboxMessage
        )

    async def send(self, params: SendMessage) -> InboxMessage:
        """Durably create a pending message in the recipient's mailbox.

        The recipient does not need to exist or be loaded.
        """
        msg = InboxMessage(
            id=new_record_id(),
            from_agent=params.from_agent,
            to_agent=params.to_agent,
            message=params.message,
            message_type=params.message_type,
            request_id=params.request_id,
        )
        await self._pending(params.to_agent).put(msg.id, msg)
        logger.info(
            "Inbox %s -> %s: %s %s", msg.from_agent, msg.to_agent, msg.message_type, msg.id
        )
        return msg

    async def get_pending(self, agent_name: str) -> list[InboxMessage]:
        """All pending messages, oldest first. Repeatable read."""
        messages = await self._pending(agent_name).list()
        return sorted(messages, key=_arrival_order)

    async def get_archived(self, agent_name: str) -> list[InboxMessage]:
        messages = await self._archive(agent_name).list()
        return sorted(messages, key=_arrival_order)

    async def mark_read(
        self,
        agent_name: str,
        message_ids: Iterable[str],
        claimed_by: str | None = None,
    ) -> int:
        """Archive the given pending messages and return how many moved.

        Idempotent: ids that are already archived, unknown, or not in this
        agent's own pending mailbox are skipped without error.
        """
        pending = self._pending(agent_name)
        archive = self._archive(agent_name)
        moved = 0

        for message_id in message_ids:
            try:
                validate_key(message_id)
            except ValueError:
                logger.debug("Ignoring malformed message id %r for %s", message_id, agent_name)
                continue

            msg = await pending.get(message_id)
            if msg is None:
                logger.debug("Message %s not pending for %s, skipping", message_id, agent_name)
                continue
            if msg.to_agent != agent_name:
                logger.warning(
                    "Message %s in %s's mailbox is addressed to %s, skipping",
                    message_id, agent_name, msg.to_agent,
                )
                continue

            archived = msg.model_copy(
                update={
                    "status": "archived",
                    "read_at": datetime.now(UTC),
                    "claimed_by": claimed_by,
                }
            )
            # Archive first: a crash in between leaves the message pending,
            # never lost
            await archive.put(message_id, archived)
            await pending.delete(message_id)
            moved += 1

        if moved:
            logger.debug("Archived %d inbox message(s) for %s", moved, agent_name)
        return moved
