"""Named message channels between the host, its companion and the CLI.

Two primitives share a single transport, a Unix domain socket carrying one
JSON object per line:

- A **persistent channel**: long-lived, bidirectional and ordered. The client
  opens it with a ``{"type": "connect", "name": ...}`` handshake; afterwards
  either side may send at any time, messages are delivered in send order and
  close callbacks fire exactly once when either end goes away.
- A **one-shot message**: ``{"type": "one_shot", "message": {...}}``, answered
  by exactly one reply line, after which the server hangs up. There is no
  delivery guarantee if the host is not listening at that moment.

Reaching a peer that does not exist raises ``ChannelError``. Callers are
expected to treat that as recoverable and retry later.
"""

import asyncio
import contextlib
import inspect
import json
from collections.abc import Callable
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from tabkeeper.exceptions import ChannelClosedError, ChannelError
from tabkeeper.logging import get_logger

LOG = get_logger(__name__)

# Upper bound on a single encoded message
MAX_LINE = 1024 * 1024

# Name of the companion heartbeat channel
HEARTBEAT_CHANNEL = "keep-alive"

Message = dict[str, Any]
MessageHandler = Callable[[Message], Any]
CloseHandler = Callable[[], Any]
ChannelHandler = Callable[["Channel"], None]
OneShotHandler = Callable[[Message], Any]


def encode(message: Message) -> bytes:
    """Encode a message as one newline-terminated JSON line."""
    return json.dumps(message, separators=(",", ":")).encode() + b"\n"


def decode(line: bytes) -> Message:
    """Decode a JSON line into a message.

    Raises:
        ValueError: If the line is not a JSON object.
    """
    message = json.loads(line)
    if not isinstance(message, dict):
        raise ValueError("message must be a JSON object")
    return message


async def _call(handler: Callable[..., Any], *args: Any) -> Any:
    """Invoke a sync or async callback and return its result."""
    result = handler(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


class Channel:
    """One end of a persistent, ordered, bidirectional message pipe.

    Handlers registered with ``on_message`` run one at a time on the
    channel's reader task, so they observe messages in send order. Register
    handlers before the next ``await`` after ``open_channel`` returns; the
    reader task does not run before then.

    Attributes:
        name: Channel name sent in the connect handshake.
    """

    def __init__(
        self,
        name: str,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        self.name = name
        self._reader = reader
        self._writer = writer
        self._message_handlers: list[MessageHandler] = []
        self._close_handlers: list[CloseHandler] = []
        self._reader_task: asyncio.Task[None] | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def on_message(self, handler: MessageHandler) -> None:
        """Register a callback for each incoming message."""
        self._message_handlers.append(handler)

    def on_close(self, handler: CloseHandler) -> None:
        """Register a callback fired once when the channel is torn down."""
        self._close_handlers.append(handler)

    def start(self) -> None:
        """Start delivering incoming messages. Idempotent."""
        if self._reader_task is None and not self._closed:
            self._reader_task = asyncio.create_task(
                self._read_loop(), name=f"channel:{self.name}"
            )

    async def send(self, message: Message) -> None:
        """Send a message to the other end.

        Raises:
            ChannelClosedError: If the channel is closed or the write fails.
        """
        if self._closed:
            raise ChannelClosedError(f"Channel {self.name!r} is closed")
        try:
            self._writer.write(encode(message))
            await self._writer.drain()
        except (ConnectionError, OSError) as exc:
            await self._teardown()
            raise ChannelClosedError(f"Channel {self.name!r} write failed: {exc}") from exc

    async def close(self) -> None:
        """Close the channel and stop the reader task."""
        task = self._reader_task
        await self._teardown()
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _read_loop(self) -> None:
        try:
            while not self._closed:
                line = await self._reader.readline()
                if not line:
                    break
                try:
                    message = decode(line)
                except ValueError:
                    LOG.warning("channel_message_undecodable", channel=self.name)
                    continue
                for handler in list(self._message_handlers):
                    try:
                        await _call(handler, message)
                    except Exception:  # noqa: BLE001 - a bad handler must not kill the channel
                        LOG.exception("channel_message_handler_failed", channel=self.name)
        except (ConnectionError, OSError, ValueError) as exc:
            # ValueError: line exceeded MAX_LINE
            LOG.debug("channel_read_failed", channel=self.name, error=str(exc))
        finally:
            await self._teardown()

    async def _teardown(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._writer.close()
        with contextlib.suppress(ConnectionError, OSError):
            await self._writer.wait_closed()
        for handler in self._close_handlers:
            try:
                await _call(handler)
            except Exception:  # noqa: BLE001 - every close handler gets its turn
                LOG.exception("channel_close_handler_failed", channel=self.name)


class ChannelServer:
    """Host-side listener accepting persistent channels and one-shot messages.

    Args:
        socket_path: Unix socket to listen on. A stale socket file left by a
            previous host is removed before binding.
        on_channel: Called with each newly accepted Channel, before any of its
            messages are delivered.
        on_one_shot: Called with each one-shot message; its (optionally
            awaitable) return value is sent back as the reply.
        handshake_timeout: Seconds a client has to send its first line.
    """

    def __init__(
        self,
        socket_path: Path,
        on_channel: ChannelHandler,
        on_one_shot: OneShotHandler,
        handshake_timeout: float = 5.0,
    ) -> None:
        self.socket_path = socket_path
        self._on_channel = on_channel
        self._on_one_shot = on_one_shot
        self._handshake_timeout = handshake_timeout
        self._server: asyncio.Server | None = None
        self._channels: set[Channel] = set()

    @property
    def channels(self) -> set[Channel]:
        """Currently open persistent channels."""
        return set(self._channels)

    async def start(self) -> None:
        self.socket_path.parent.mkdir(parents=True, exist_ok=True)
        self.socket_path.unlink(missing_ok=True)
        self._server = await asyncio.start_unix_server(
            self._handle_client, path=str(self.socket_path), limit=MAX_LINE
        )
        LOG.info("channel_server_listening", socket=str(self.socket_path))

    async def close(self) -> None:
        """Stop accepting, close open channels and remove the socket file."""
        server, self._server = self._server, None
        if server is not None:
            server.close()
        for channel in list(self._channels):
            await channel.close()
        if server is not None:
            await server.wait_closed()
        self.socket_path.unlink(missing_ok=True)

    async def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        try:
            line = await asyncio.wait_for(reader.readline(), timeout=self._handshake_timeout)
            hello = decode(line)
        except (TimeoutError, ConnectionError, OSError, ValueError) as exc:
            LOG.debug("channel_handshake_failed", error=str(exc))
            writer.close()
            return

        kind = hello.get("type")
        if kind == "connect":
            channel = Channel(str(hello.get("name", "")), reader, writer)
            self._channels.add(channel)
            channel.on_close(lambda: self._channels.discard(channel))
            self._on_channel(channel)
            channel.start()
            return

        if kind == "one_shot":
            reply = await self._answer(hello.get("message"))
            try:
                writer.write(encode(reply))
                await writer.drain()
            except (ConnectionError, OSError) as exc:
                LOG.debug("one_shot_reply_failed", error=str(exc))
            finally:
                writer.close()
                with contextlib.suppress(ConnectionError, OSError):
                    await writer.wait_closed()
            return

        LOG.warning("channel_handshake_unknown", type=kind)
        writer.close()

    async def _answer(self, message: Any) -> Message:
        if not isinstance(message, dict):
            return {"error": "one-shot message must be a JSON object"}
        try:
            reply = await _call(self._on_one_shot, message)
        except Exception as exc:  # noqa: BLE001 - reported to the sender instead
            LOG.exception("one_shot_handler_failed", action=message.get("action"))
            return {"error": str(exc)}
        return reply if isinstance(reply, dict) else {}


@runtime_checkable
class Messenger(Protocol):
    """Client-side access to the host: the two messaging capabilities."""

    async def open_channel(self, name: str) -> Channel:
        """Open a persistent channel to the host.

        Raises:
            ChannelError: If the host is not reachable.
        """
        ...

    async def send_one_shot(self, message: Message) -> Message:
        """Send one message and wait for the host's reply.

        Raises:
            ChannelError: If the host is not reachable or does not reply.
        """
        ...


class UnixSocketMessenger:
    """Messenger backed by the host's Unix socket.

    Example:
        >>> messenger = UnixSocketMessenger(Path("/tmp/tabkeeper.sock"))
        >>> reply = await messenger.send_one_shot({"action": "ping"})
    """

    def __init__(self, socket_path: Path, timeout: float = 10.0) -> None:
        self.socket_path = socket_path
        self.timeout = timeout

    async def _connect(self) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        try:
            return await asyncio.wait_for(
                asyncio.open_unix_connection(str(self.socket_path), limit=MAX_LINE),
                timeout=self.timeout,
            )
        except (TimeoutError, OSError) as exc:
            raise ChannelError(f"Cannot reach host at {self.socket_path}: {exc}") from exc

    async def open_channel(self, name: str) -> Channel:
        reader, writer = await self._connect()
        try:
            writer.write(encode({"type": "connect", "name": name}))
            await writer.drain()
        except (ConnectionError, OSError) as exc:
            writer.close()
            raise ChannelError(f"Channel handshake failed: {exc}") from exc
        channel = Channel(name, reader, writer)
        channel.start()
        return channel

    async def send_one_shot(self, message: Message) -> Message:
        reader, writer = await self._connect()
        try:
            writer.write(encode({"type": "one_shot", "message": message}))
            await writer.drain()
            line = await asyncio.wait_for(reader.readline(), timeout=self.timeout)
        except (TimeoutError, OSError, ValueError) as exc:
            raise ChannelError(f"One-shot delivery failed: {exc}") from exc
        finally:
            writer.close()
            with contextlib.suppress(ConnectionError, OSError):
                await writer.wait_closed()
        if not line:
            raise ChannelError("Host closed the connection without replying")
        try:
            return decode(line)
        except ValueError as exc:
            raise ChannelError(f"Undecodable reply from host: {exc}") from exc
