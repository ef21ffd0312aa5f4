"""
Messaging collaborator interface
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List
from uuid import uuid4

from ..exceptions import MessagingUnavailableError
from ..models.flow import MessageKind


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SentMessage:
    message_id: str
    conversation_id: str
    kind: MessageKind
    content: Any
    idempotency_key: str


class MessagingGateway(ABC):
    """Delivers bot output to the lead conversation"""

    @abstractmethod
    async def send(
        self,
        conversation_id: str,
        content: Any,
        kind: MessageKind,
        idempotency_key: str,
    ) -> str:
        """
        Send one piece of content and return the message id

        Implementations must treat a repeated ``idempotency_key`` as the same
        send and return the original id. Raise ``MessagingUnavailableError``
        when the channel cannot be reached.
        """
        pass


class InMemoryMessagingGateway(MessagingGateway):
    """Records sends; ``fail_next`` simulates an unreachable channel"""

    def __init__(self):
        self.sent: List[SentMessage] = []
        self._by_key: Dict[str, SentMessage] = {}
        self.fail_next = 0

    async def send(
        self,
        conversation_id: str,
        content: Any,
        kind: MessageKind,
        idempotency_key: str,
    ) -> str:
        if self.fail_next > 0:
            self.fail_next -= 1
            raise MessagingUnavailableError("Messaging channel unavailable")

        existing = self._by_key.get(idempotency_key)
        if existing is not None:
            logger.debug(f"Duplicate send suppressed for key {idempotency_key}")
            return existing.message_id

        message = SentMessage(
            message_id=uuid4().hex,
            conversation_id=conversation_id,
            kind=kind,
            content=content,
            idempotency_key=idempotency_key,
        )
        self.sent.append(message)
        self._by_key[idempotency_key] = message
        return message.message_id
