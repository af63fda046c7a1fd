"""
Message dispatch by kind.

A dispatcher is built with the message types its context must handle
and refuses to start if any of them has no handler, so adding a message
kind without handling it fails at construction rather than at runtime.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Type

from sync.messages import Message

logger = logging.getLogger(__name__)

MessageHandler = Callable[[Any, str], Awaitable[Optional[Dict[str, Any]]]]


class MissingHandlerError(Exception):
    """A required message kind has no handler."""


class MessageDispatcher:
    """Routes each message to the handler registered for its kind."""

    def __init__(
        self,
        context: str,
        required: Iterable[Type[Message]],
        handlers: Dict[Type[Message], MessageHandler],
    ) -> None:
        """
        Args:
            context: Name used in log lines ("coordinator", "panel", ...).
            required: Message types this context must handle.
            handlers: Handler per message type.

        Raises:
            MissingHandlerError: If a required type has no handler.
        """
        missing = [cls.kind for cls in required if cls not in handlers]
        if missing:
            raise MissingHandlerError(f"{context} has no handler for: {', '.join(missing)}")

        self.context = context
        self._handlers: Dict[str, MessageHandler] = {cls.kind: h for cls, h in handlers.items()}

    async def dispatch(self, message: Message, sender: str) -> Dict[str, Any]:
        """
        Run the handler for a message.

        Returns:
            The handler's response, or an error response for unknown kinds.
        """
        handler = self._handlers.get(message.kind)
        if handler is None:
            logger.warning(f"{self.context}: unhandled message {message.kind} from {sender}")
            return {
                "success": False,
                "error": f"Unknown message type: {message.kind}",
                "error_type": "unknown_message",
            }
        return await handler(message, sender) or {}
