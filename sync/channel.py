"""
Point-to-point message channel between contexts.

Each context registers a handler under an address ("coordinator",
"panel", "tab:<id>"). Messages are serialized on send and rebuilt on
delivery, so sender and receiver never share objects.

Delivery semantics:
    request()   awaits the receiver's response; raises ReceiverUnavailable
                when nobody is registered at the address.
    send()      fire-and-forget; a missing receiver or a failing handler
                drops the message (logged at debug/warning) and returns False.
    broadcast() send() to every registered address except the sender.

Dropped messages are never retried. Receivers recover by asking for
`get-state` when they (re)load.
"""

import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sync.messages import Message, parse_message

logger = logging.getLogger(__name__)

COORDINATOR = "coordinator"
PANEL = "panel"
TAB_PREFIX = "tab:"

Handler = Callable[[Message, str], Awaitable[Optional[Dict[str, Any]]]]


def tab_address(tab_id: int) -> str:
    return f"{TAB_PREFIX}{tab_id}"


class ReceiverUnavailable(Exception):
    """No context is listening at the requested address."""

    def __init__(self, address: str) -> None:
        super().__init__(f"No receiver at {address}")
        self.address = address


def _wire_copy(payload: Dict[str, Any]) -> Dict[str, Any]:
    return json.loads(json.dumps(payload))


class MessageChannel:
    """In-process channel with request/response and broadcast."""

    def __init__(self) -> None:
        self._endpoints: Dict[str, Handler] = {}

    def register(self, address: str, handler: Handler) -> None:
        if address in self._endpoints:
            logger.debug(f"Replacing receiver at {address}")
        self._endpoints[address] = handler

    def unregister(self, address: str) -> None:
        self._endpoints.pop(address, None)

    def is_registered(self, address: str) -> bool:
        return address in self._endpoints

    def addresses(self, prefix: Optional[str] = None) -> List[str]:
        return [a for a in self._endpoints if prefix is None or a.startswith(prefix)]

    async def request(self, sender: str, address: str, message: Message) -> Dict[str, Any]:
        """
        Deliver a message and wait for the response.

        Returns:
            The receiver's response dict ({} when it returned nothing).

        Raises:
            ReceiverUnavailable: If no receiver is registered at the address.
        """
        handler = self._endpoints.get(address)
        if handler is None:
            raise ReceiverUnavailable(address)

        delivered = parse_message(_wire_copy(message.to_dict()))
        response = await handler(delivered, sender)
        return _wire_copy(response) if response else {}

    async def send(self, sender: str, address: str, message: Message) -> bool:
        """
        Fire-and-forget delivery.

        Returns:
            True if a handler ran to completion, False if the message was dropped.
        """
        handler = self._endpoints.get(address)
        if handler is None:
            logger.debug(f"Dropped {message.kind} to {address}: no receiver")
            return False

        try:
            delivered = parse_message(_wire_copy(message.to_dict()))
            await handler(delivered, sender)
        except Exception as e:
            logger.warning(f"Dropped {message.kind} to {address}: {e}")
            return False
        return True

    async def broadcast(
        self, sender: str, message: Message, prefix: Optional[str] = None
    ) -> int:
        """
        Send to every registered address except the sender.

        Args:
            prefix: Only addresses starting with this prefix (e.g. "tab:").

        Returns:
            Number of receivers that handled the message.
        """
        delivered = 0
        for address in self.addresses(prefix):
            if address == sender:
                continue
            if await self.send(sender, address, message):
                delivered += 1
        return delivered
