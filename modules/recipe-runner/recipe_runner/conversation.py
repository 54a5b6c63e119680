"""Per-tool conversation state for one recipe run."""

import logging
import uuid
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)


class ConversationState(str, Enum):
    NO_CONVERSATION = "no-conversation"
    ACTIVE = "active"


@dataclass(frozen=True)
class ConversationHandle:
    """Opaque token for one conversation with a tool.

    `continuing` is true when the invocation resumes the conversation the
    previous invocation started; builders translate it into their own
    continuation flag. Handles mean nothing once the run ends.
    """

    tool: str
    token: str
    continuing: bool = False


class ConversationManager:
    """Decides, per target tool, whether the next invocation starts fresh or continues.

    NoConversation -> Active on the first invocation. With strategy
    `continue`, a step whose continueConversation flag is true reuses the
    active handle; anything else starts a new Active conversation. Nothing
    here touches documents.
    """

    def __init__(self, strategy: str = "separate"):
        self.strategy = strategy
        self._active: dict[str, ConversationHandle] = {}

    def state(self, tool: str) -> ConversationState:
        return ConversationState.ACTIVE if tool in self._active else ConversationState.NO_CONVERSATION

    def current(self, tool: str) -> ConversationHandle | None:
        return self._active.get(tool)

    def begin(self, tool: str, continue_conversation: bool = True) -> ConversationHandle:
        """Return the handle to use for the next invocation of `tool`."""
        active = self._active.get(tool)
        if active is not None and self.strategy == "continue" and continue_conversation:
            handle = ConversationHandle(tool=tool, token=active.token, continuing=True)
            logger.debug("Continuing conversation %s for %s", handle.token, tool)
        else:
            handle = ConversationHandle(tool=tool, token=uuid.uuid4().hex, continuing=False)
            logger.debug("Starting conversation %s for %s", handle.token, tool)
        self._active[tool] = handle
        return handle

    def reset(self) -> None:
        self._active.clear()
