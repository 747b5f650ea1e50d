"""
Connection lifecycle for the voice client RPC.

Reconnects with exponential backoff (base_delay * 2 ** attempt) and gives up
after max_attempts automatic attempts until connect() is called again.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from .errors import ErrorType, Outcome, RetryConfig
from .events import Connected, Disconnected, EventChannel, ReconnectExhausted
from .rpc.base import RpcClient
from .voice_source import VoiceStateSource

logger = logging.getLogger(__name__)


class ConnectionSupervisor:
    """Owns connect/disconnect of the RPC client and the voice source."""

    def __init__(
        self,
        client: RpcClient,
        source: VoiceStateSource,
        events: Optional[EventChannel] = None,
        base_delay: float = 5.0,
        max_attempts: int = 10,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Initialize supervisor.

        Args:
            client: RPC client to connect
            source: Voice source started while connected
            events: Channel for Connected / Disconnected / ReconnectExhausted
            base_delay: First reconnect delay in seconds
            max_attempts: Automatic reconnect attempts before giving up
            sleep: Awaitable used for reconnect delays
        """
        self._client = client
        self._source = source
        self._events = events
        self._backoff = RetryConfig(max_attempts=max_attempts, initial_delay=base_delay)
        self._sleep = sleep

        self._connected = False
        self._exhausted = False
        self._stopped = False
        self._attempts = 0
        self._reconnect_task: Optional[asyncio.Task] = None
        self._disconnect_task: Optional[asyncio.Task] = None

        client.set_disconnect_handler(self._on_disconnect)

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def exhausted(self) -> bool:
        """True once the reconnect budget ran out, until connect() is called."""
        return self._exhausted

    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    def configure(self, base_delay: Optional[float] = None, max_attempts: Optional[int] = None) -> None:
        if base_delay is not None:
            self._backoff.initial_delay = base_delay
        if max_attempts is not None:
            self._backoff.max_attempts = max_attempts

    async def connect(self) -> Outcome:
        """Explicit connect. Resets the reconnect budget."""
        self._stopped = False
        self._exhausted = False
        self._attempts = 0
        self._cancel_disconnect_handling()
        self._cancel_reconnect()
        if self._connected:
            return Outcome.success(message="Already connected")
        return await self._try_connect()

    async def disconnect(self) -> None:
        """Stop reconnecting, stop polling and close the client."""
        self._stopped = True
        self._cancel_reconnect()
        self._cancel_disconnect_handling()
        await self._source.stop()
        await self._client.close()
        self._set_connected(False, "disconnect requested")

    async def wait_reconnects(self) -> None:
        """Wait until disconnect handling and the reconnect chain settle."""
        while True:
            task = self._disconnect_task
            if task is None or task.done():
                task = self._reconnect_task
            if task is None or task.done():
                return
            await asyncio.gather(task, return_exceptions=True)

    async def _try_connect(self) -> Outcome:
        try:
            await self._client.connect()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Voice client RPC connect failed: %s", e)
            outcome = Outcome.from_error(e)
            self._schedule_reconnect()
            return outcome

        self._attempts = 0
        self._exhausted = False
        self._set_connected(True)
        await self._source.start()
        return Outcome.success()

    def _schedule_reconnect(self) -> None:
        if self._stopped:
            return
        if self._attempts >= self._backoff.max_attempts:
            self._exhausted = True
            logger.error("Voice client RPC unreachable after %d reconnect attempts; giving up",
                         self._attempts)
            if self._events is not None:
                self._events.publish(ReconnectExhausted(attempts=self._attempts))
            return

        delay = self._backoff.delay_for(self._attempts)
        self._attempts += 1
        logger.info("Reconnecting in %.1fs (attempt %d/%d)", delay, self._attempts, self._backoff.max_attempts)
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float) -> None:
        await self._sleep(delay)
        await self._try_connect()

    def _cancel_reconnect(self) -> None:
        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _cancel_disconnect_handling(self) -> None:
        task = self._disconnect_task
        self._disconnect_task = None
        if task is not None and not task.done():
            task.cancel()

    def _on_disconnect(self, reason: str) -> None:
        self._set_connected(False, reason)
        self._disconnect_task = asyncio.create_task(self._handle_disconnect())

    async def _handle_disconnect(self) -> None:
        # A connect() may have won the race since the drop was reported
        if self._connected:
            return
        await self._source.stop()
        if not self._connected:
            self._schedule_reconnect()

    def _set_connected(self, connected: bool, reason: str = "") -> None:
        if connected == self._connected:
            return
        self._connected = connected
        if self._events is None:
            return
        if connected:
            self._events.publish(Connected(user_id=self._client.user_id))
        else:
            self._events.publish(Disconnected(reason=reason))

    def status(self) -> dict:
        return {
            "connected": self._connected,
            "exhausted": self._exhausted,
            "reconnect_attempts": self._attempts,
            "reconnect_pending": self.reconnect_pending,
            "error_type": ErrorType.PERMANENT.value if self._exhausted else None,
        }
