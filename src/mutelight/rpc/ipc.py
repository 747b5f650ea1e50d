"""
Discord local RPC over IPC.

Frames are an 8-byte little-endian header (opcode, payload length) followed
by a JSON payload. Responses are matched to requests by nonce; frames with
cmd DISPATCH are pushed events.
"""

import asyncio
import json
import logging
import os
import struct
import sys
import uuid
from enum import IntEnum
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from . import oauth
from .base import RpcClient, RpcConnectionError, RpcError

logger = logging.getLogger(__name__)

_HEADER = struct.Struct("<II")
_MAX_PIPES = 10
# Sandboxed installs put the socket one level down
_SANDBOX_DIRS = ("", "app/com.discordapp.Discord", "snap.discord")


class Opcode(IntEnum):
    HANDSHAKE = 0
    FRAME = 1
    CLOSE = 2
    PING = 3
    PONG = 4


def candidate_paths(environ: Optional[Dict[str, str]] = None) -> List[str]:
    """Socket / pipe paths the voice client may be listening on, in order."""
    if sys.platform == "win32":
        return [rf"\\?\pipe\discord-ipc-{i}" for i in range(_MAX_PIPES)]

    environ = os.environ if environ is None else environ
    bases = []
    for key in ("XDG_RUNTIME_DIR", "TMPDIR", "TMP", "TEMP"):
        value = environ.get(key)
        if value and value not in bases:
            bases.append(value)
    if "/tmp" not in bases:
        bases.append("/tmp")

    paths = []
    for base in bases:
        for sub in _SANDBOX_DIRS:
            for i in range(_MAX_PIPES):
                paths.append(os.path.join(base, sub, f"discord-ipc-{i}"))
    return paths


def encode_frame(op: int, payload: Dict[str, Any]) -> bytes:
    body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    return _HEADER.pack(int(op), len(body)) + body


async def read_frame(reader: asyncio.StreamReader) -> Tuple[int, Dict[str, Any]]:
    """Read one frame. Raises IncompleteReadError at end of stream."""
    header = await reader.readexactly(_HEADER.size)
    op, length = _HEADER.unpack(header)
    body = await reader.readexactly(length)
    try:
        payload = json.loads(body.decode("utf-8")) if body else {}
    except ValueError as e:
        raise RpcConnectionError(f"Malformed RPC frame: {e}") from e
    return op, payload


async def _open(path: str) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    if sys.platform == "win32":
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader()
        protocol = asyncio.StreamReaderProtocol(reader)
        transport, _ = await loop.create_pipe_connection(lambda: protocol, path)
        writer = asyncio.StreamWriter(transport, protocol, reader, loop)
        return reader, writer
    return await asyncio.open_unix_connection(path)


class DiscordIpcClient(RpcClient):
    """
    RPC client over the voice client's local IPC socket.

    When a client secret is configured the client runs the
    AUTHORIZE -> token exchange -> AUTHENTICATE flow on connect and keeps the
    access token in memory for later reconnects.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str = "",
        ipc_path: Optional[str] = None,
        request_timeout: float = 5.0,
        authorize_timeout: float = 120.0,
        http_session: Optional[aiohttp.ClientSession] = None,
        token_url: str = oauth.TOKEN_URL,
    ):
        """
        Initialize client.

        Args:
            client_id: Application client id
            client_secret: Application client secret (empty disables auth)
            ipc_path: Fixed socket path; discovered from the environment when None
            request_timeout: Timeout of ordinary commands, in seconds
            authorize_timeout: Timeout of AUTHORIZE, which waits for the user
            http_session: Session used for the token exchange
            token_url: OAuth token endpoint
        """
        super().__init__()
        self._client_id = client_id
        self._client_secret = client_secret
        self._ipc_path = ipc_path
        self._request_timeout = request_timeout
        self._authorize_timeout = authorize_timeout
        self._http_session = http_session
        self._token_url = token_url

        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._pending: Dict[str, asyncio.Future] = {}
        self._write_lock = asyncio.Lock()
        self._connected = False
        self._closing = False
        self._user_id: Optional[str] = None
        self._access_token: Optional[str] = None
        self.path: Optional[str] = None

    @property
    def is_connected(self) -> bool:
        return self._connected and self._writer is not None and not self._writer.is_closing()

    @property
    def user_id(self) -> Optional[str]:
        return self._user_id

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        if self.is_connected:
            return
        if not self._client_id:
            raise RpcError(None, "No client id configured")

        await self._open_socket()
        try:
            await self._handshake()
            self._closing = False
            self._reader_task = asyncio.create_task(self._reader_loop())
            if self._client_secret:
                await self._authenticate()
            else:
                logger.warning("No client secret configured; voice state queries will be rejected")
        except BaseException:
            await self._teardown()
            raise

        self._connected = True
        logger.info("Connected to voice client RPC at %s (user %s)", self.path, self._user_id)

    async def close(self) -> None:
        self._closing = True
        if self._writer is not None and not self._writer.is_closing():
            try:
                self._writer.write(encode_frame(Opcode.CLOSE, {}))
            except (OSError, RuntimeError):
                logger.debug("Could not send CLOSE frame", exc_info=True)
        await self._teardown()

    async def _teardown(self) -> None:
        self._connected = False
        writer = self._writer
        self._writer = None
        self._reader = None
        if writer is not None:
            writer.close()
            try:
                await writer.wait_closed()
            except (OSError, RuntimeError):
                logger.debug("RPC writer close raised", exc_info=True)

        task = self._reader_task
        self._reader_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        self._fail_pending(RpcConnectionError("RPC connection closed"))

    async def _open_socket(self) -> None:
        paths = [self._ipc_path] if self._ipc_path else candidate_paths()
        last_error: Optional[Exception] = None
        for path in paths:
            try:
                self._reader, self._writer = await _open(path)
            except (OSError, NotImplementedError) as e:
                last_error = e
                continue
            self.path = path
            return
        raise RpcConnectionError(f"Voice client RPC socket not found ({last_error})")

    async def _handshake(self) -> None:
        await self._send(Opcode.HANDSHAKE, {"v": 1, "client_id": self._client_id})
        try:
            op, payload = await asyncio.wait_for(read_frame(self._reader), self._request_timeout)
        except asyncio.TimeoutError as e:
            raise RpcConnectionError("Timed out waiting for handshake reply") from e
        except (asyncio.IncompleteReadError, OSError) as e:
            raise RpcConnectionError(f"Connection closed during handshake: {e}") from e

        if op == Opcode.CLOSE:
            raise RpcError(payload.get("code"), payload.get("message", "Handshake rejected"))
        if payload.get("cmd") != "DISPATCH" or payload.get("evt") != "READY":
            raise RpcError(None, f"Unexpected handshake reply: {payload.get('cmd')}/{payload.get('evt')}")

        user = (payload.get("data") or {}).get("user") or {}
        self._user_id = user.get("id")

    async def _authenticate(self) -> None:
        if self._access_token:
            try:
                await self._send_authenticate(self._access_token)
                return
            except RpcError as e:
                logger.info("Cached access token rejected (%s), authorizing again", e)
                self._access_token = None

        data = await self.request(
            "AUTHORIZE",
            {"client_id": self._client_id, "scopes": list(oauth.SCOPES), "prompt": "consent"},
            timeout=self._authorize_timeout,
        )
        code = data.get("code")
        if not code:
            raise RpcError(None, "AUTHORIZE returned no code")
        token = await oauth.exchange_code(
            code,
            self._client_id,
            self._client_secret,
            session=self._http_session,
            token_url=self._token_url,
        )
        await self._send_authenticate(token)
        self._access_token = token

    async def _send_authenticate(self, token: str) -> None:
        data = await self.request("AUTHENTICATE", {"access_token": token})
        user = data.get("user") or {}
        if user.get("id"):
            self._user_id = user["id"]

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def request(self, cmd: str, args: Optional[Dict[str, Any]] = None,
                      evt: Optional[str] = None, timeout: Optional[float] = None) -> Dict[str, Any]:
        if self._writer is None or self._reader_task is None:
            raise RpcConnectionError("Not connected to voice client RPC")

        nonce = str(uuid.uuid4())
        message: Dict[str, Any] = {"cmd": cmd, "args": args or {}, "nonce": nonce}
        if evt is not None:
            message["evt"] = evt

        future = asyncio.get_running_loop().create_future()
        self._pending[nonce] = future
        try:
            await self._send(Opcode.FRAME, message)
            payload = await asyncio.wait_for(future, timeout or self._request_timeout)
        except asyncio.TimeoutError as e:
            raise RpcConnectionError(f"Timed out waiting for {cmd}") from e
        finally:
            self._pending.pop(nonce, None)

        if payload.get("evt") == "ERROR":
            data = payload.get("data") or {}
            raise RpcError(data.get("code"), data.get("message", "Unknown RPC error"))
        return payload.get("data") or {}

    async def _send(self, op: int, payload: Dict[str, Any]) -> None:
        if self._writer is None:
            raise RpcConnectionError("RPC writer is not ready")
        logger.debug("TX op=%s %s", int(op), payload.get("cmd", ""))
        async with self._write_lock:
            try:
                self._writer.write(encode_frame(op, payload))
                await self._writer.drain()
            except (OSError, RuntimeError) as e:
                raise RpcConnectionError(f"RPC write failed: {e}") from e

    def _fail_pending(self, error: Exception) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        self._pending.clear()

    # ------------------------------------------------------------------
    # Reader
    # ------------------------------------------------------------------

    async def _reader_loop(self) -> None:
        reason = "connection closed"
        try:
            while self._reader is not None:
                op, payload = await read_frame(self._reader)
                if op == Opcode.PING:
                    await self._send(Opcode.PONG, payload)
                elif op == Opcode.CLOSE:
                    reason = payload.get("message") or "closed by voice client"
                    break
                elif op == Opcode.FRAME:
                    self._handle_frame(payload)
        except asyncio.CancelledError:
            raise
        except (asyncio.IncompleteReadError, OSError) as e:
            reason = f"connection lost: {e}"
        except RpcConnectionError as e:
            reason = str(e)

        self._reader_task = None
        was_connected = self._connected
        intentional = self._closing
        await self._teardown()
        logger.debug("RPC reader stopped: %s", reason)
        if was_connected and not intentional:
            logger.warning("Voice client RPC disconnected: %s", reason)
            self._notify_disconnect(reason)

    def _handle_frame(self, payload: Dict[str, Any]) -> None:
        nonce = payload.get("nonce")
        if payload.get("cmd") == "DISPATCH" and not nonce:
            evt = payload.get("evt")
            if evt:
                try:
                    self._dispatch_event(evt, payload.get("data") or {})
                except Exception:
                    logger.exception("RPC event handler failed for %s", evt)
            return

        future = self._pending.get(nonce) if nonce else None
        if future is not None and not future.done():
            future.set_result(payload)
        else:
            logger.debug("Unmatched RPC frame %s/%s", payload.get("cmd"), payload.get("evt"))
