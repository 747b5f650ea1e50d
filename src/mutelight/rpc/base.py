"""
Voice client RPC interface.

The voice source only talks to this interface, so tests can drive it with a
fake client and the IPC transport can be swapped out.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional

from ..errors import ErrorType, MuteLightError, TransientError

EventHandler = Callable[[str, Dict[str, Any]], None]
DisconnectHandler = Callable[[str], None]

# Error code the voice client returns for "not in a voice channel" and
# similar state errors
UNKNOWN_ERROR_CODE = 5000

_EXPECTED_ABSENCE_MESSAGES = ("not in a voice channel", "not authenticated")


class RpcError(MuteLightError):
    """Error response to an RPC command."""

    def __init__(self, code: Optional[int], message: str):
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_type = ErrorType.EXPECTED_ABSENCE if self.is_expected_absence() else ErrorType.TRANSIENT

    def is_expected_absence(self) -> bool:
        if self.code == UNKNOWN_ERROR_CODE:
            return True
        text = (self.message or "").lower()
        return any(m in text for m in _EXPECTED_ABSENCE_MESSAGES)

    def __str__(self) -> str:
        if self.code is None:
            return self.message
        return f"[{self.code}] {self.message}"


class RpcConnectionError(TransientError):
    """The RPC transport is unavailable or was lost."""
    pass


def is_expected_absence(error: BaseException) -> bool:
    return isinstance(error, RpcError) and error.is_expected_absence()


class RpcClient(ABC):
    """Connection to the voice client's local RPC endpoint."""

    def __init__(self) -> None:
        self._event_handler: Optional[EventHandler] = None
        self._disconnect_handler: Optional[DisconnectHandler] = None

    def set_event_handler(self, handler: Optional[EventHandler]) -> None:
        """Receive pushed events as handler(evt, data)."""
        self._event_handler = handler

    def set_disconnect_handler(self, handler: Optional[DisconnectHandler]) -> None:
        """Called once with a reason when an established connection drops."""
        self._disconnect_handler = handler

    def _dispatch_event(self, evt: str, data: Dict[str, Any]) -> None:
        if self._event_handler is not None:
            self._event_handler(evt, data)

    def _notify_disconnect(self, reason: str) -> None:
        if self._disconnect_handler is not None:
            self._disconnect_handler(reason)

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """True while the transport is open and authenticated."""
        pass

    @property
    @abstractmethod
    def user_id(self) -> Optional[str]:
        """Id of the authenticated local user."""
        pass

    @abstractmethod
    async def connect(self) -> None:
        """Open, handshake and authenticate.

        Raises:
            RpcConnectionError: if the endpoint is unreachable
            RpcError: if the voice client rejects the handshake or auth
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close the connection. Does not call the disconnect handler."""
        pass

    @abstractmethod
    async def request(self, cmd: str, args: Optional[Dict[str, Any]] = None,
                      evt: Optional[str] = None) -> Dict[str, Any]:
        """Send a command and return the response ``data``."""
        pass

    async def get_selected_voice_channel(self) -> Optional[Dict[str, Any]]:
        """The voice channel the user is in, or None."""
        data = await self.request("GET_SELECTED_VOICE_CHANNEL")
        return data or None

    async def get_voice_settings(self) -> Dict[str, Any]:
        return await self.request("GET_VOICE_SETTINGS") or {}

    async def subscribe(self, evt: str, args: Optional[Dict[str, Any]] = None) -> None:
        await self.request("SUBSCRIBE", args, evt=evt)

    async def unsubscribe(self, evt: str, args: Optional[Dict[str, Any]] = None) -> None:
        await self.request("UNSUBSCRIBE", args, evt=evt)
