"""Companion heartbeat emitter.

Runs in a child process started by the host. Its only job is to keep
talking to the host so the host never looks idle: it holds a persistent
channel open, pings over it on a fixed period, and sends a redundant
one-shot heartbeat on every tick so that either path alone is enough.

Nothing here is fatal. A dropped channel is reopened after a short
backoff; a failed one-shot is simply ignored until the next tick. The one
way out besides a signal is losing the parent: once the host process is
gone the companion exits instead of ticking into an empty socket forever.

Run standalone with ``python -m tabkeeper.companion``.
"""

import asyncio
import os
import signal
from dataclasses import asdict, dataclass
from typing import Any

from tabkeeper.channel import HEARTBEAT_CHANNEL, Channel, Messenger, UnixSocketMessenger
from tabkeeper.exceptions import ChannelError
from tabkeeper.logging import configure_logging, get_logger

LOG = get_logger(__name__)


@dataclass
class PingStats:
    """Counters reported periodically by the emitter."""

    channel_sent: int = 0
    channel_failed: int = 0
    one_shot_sent: int = 0
    one_shot_failed: int = 0
    acks: int = 0
    reconnects: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


class HeartbeatEmitter:
    """Emit heartbeats to the host over both messaging paths.

    Args:
        messenger: Access to the host's channel and one-shot primitives.
        interval: Seconds between ticks. Must stay well below the host's
            idle-suspend window.
        reconnect_delay: Seconds to wait before reopening a dropped channel.
        stats_every: Log ping statistics every N ticks (0 disables).
        parent_pid: PID of the host that started us. When set, the emitter
            stops as soon as it has been re-parented.
    """

    def __init__(
        self,
        messenger: Messenger,
        interval: float = 10.0,
        reconnect_delay: float = 1.0,
        stats_every: int = 30,
        parent_pid: int | None = None,
    ) -> None:
        self.messenger = messenger
        self.interval = interval
        self.reconnect_delay = reconnect_delay
        self.stats_every = stats_every
        self.parent_pid = parent_pid
        self.channel: Channel | None = None
        self.ping_sequence = 0
        self.stats = PingStats()
        self._reconnect: asyncio.TimerHandle | None = None
        self._connected_once = False
        self._background: set[asyncio.Task[None]] = set()
        self._stopped = asyncio.Event()

    async def connect(self) -> None:
        """Open the channel to the host unless one is already open."""
        if self.channel is not None:
            return
        try:
            channel = await self.messenger.open_channel(HEARTBEAT_CHANNEL)
        except ChannelError as exc:
            LOG.debug("companion_connect_failed", error=str(exc))
            self._schedule_reconnect()
            return

        channel.on_message(self._on_message)
        channel.on_close(lambda: self._on_close(channel))
        self.channel = channel
        if self._connected_once:
            self.stats.reconnects += 1
        self._connected_once = True
        LOG.info(
            "companion_connected", channel=HEARTBEAT_CHANNEL, reconnects=self.stats.reconnects
        )

    def _on_message(self, message: dict[str, Any]) -> None:
        if message.get("kind") == "pong":
            self.stats.acks += 1

    def _on_close(self, channel: Channel) -> None:
        if self.channel is channel:
            self.channel = None
        LOG.warning("companion_channel_closed", reconnect_in=self.reconnect_delay)
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._reconnect is not None or self._stopped.is_set():
            return
        loop = asyncio.get_running_loop()
        self._reconnect = loop.call_later(self.reconnect_delay, self._fire_reconnect)

    def _fire_reconnect(self) -> None:
        self._reconnect = None
        task = asyncio.create_task(self.connect())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def tick(self) -> None:
        """Send one heartbeat over the channel and one over the one-shot path."""
        self.ping_sequence += 1
        seq = self.ping_sequence

        if self.channel is not None:
            try:
                await self.channel.send({"kind": "ping", "seq": seq})
                self.stats.channel_sent += 1
            except ChannelError as exc:
                self.stats.channel_failed += 1
                LOG.warning("companion_ping_failed", seq=seq, error=str(exc))
                self.channel = None
                await self.connect()
        else:
            await self.connect()

        try:
            await self.messenger.send_one_shot({"action": "heartbeat", "seq": seq})
            self.stats.one_shot_sent += 1
        except ChannelError:
            # host may be restarting; the channel path or the next tick covers it
            self.stats.one_shot_failed += 1

        if self.stats_every and seq % self.stats_every == 0:
            LOG.info("companion_ping_stats", seq=seq, **self.stats.to_dict())

    def host_gone(self) -> bool:
        """True once the process that started the companion has exited."""
        return self.parent_pid is not None and os.getppid() != self.parent_pid

    async def run(self) -> None:
        """Connect and tick until ``stop()`` is called or the host dies."""
        await self.connect()
        while not self._stopped.is_set():
            if self.host_gone():
                LOG.warning("companion_host_gone", parent_pid=self.parent_pid)
                await self.stop()
                return
            await self.tick()
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.interval)
            except TimeoutError:
                continue

    async def stop(self) -> None:
        """Stop ticking and close the channel."""
        self._stopped.set()
        if self._reconnect is not None:
            self._reconnect.cancel()
            self._reconnect = None
        channel, self.channel = self.channel, None
        if channel is not None:
            await channel.close()
        for task in list(self._background):
            task.cancel()


async def _run_companion() -> None:
    from tabkeeper.config import get_settings

    settings = get_settings()
    emitter = HeartbeatEmitter(
        UnixSocketMessenger(settings.resolved_socket_path, timeout=settings.heartbeat_interval),
        interval=settings.heartbeat_interval,
        reconnect_delay=settings.reconnect_delay,
        parent_pid=os.getppid(),
    )
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda: asyncio.ensure_future(emitter.stop()))

    LOG.info("companion_started", interval=settings.heartbeat_interval)
    await emitter.run()
    LOG.info("companion_stopped", **emitter.stats.to_dict())


def main() -> None:
    """Process entry point for the companion."""
    from tabkeeper.config import get_settings

    settings = get_settings()
    configure_logging(
        level=settings.log_level,
        json_output=settings.log_format == "json",
        process="companion",
    )
    asyncio.run(_run_companion())


if __name__ == "__main__":
    main()
