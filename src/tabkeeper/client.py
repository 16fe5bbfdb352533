"""Synchronous client for the tabkeeper daemon.

Used by the CLI (and scripts) to talk to a running host over its socket.
Each call is one one-shot request.

Example::

    from tabkeeper.client import TabkeeperClient

    client = TabkeeperClient()
    client.update_settings({"refreshInterval": 5})
    result = client.test_keepalive()
    print(result.success_count, result.error_count)
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

from tabkeeper.channel import UnixSocketMessenger
from tabkeeper.config import get_settings
from tabkeeper.exceptions import ChannelError, ServiceNotRunningError, TabkeeperError
from tabkeeper.executor import ActionResult
from tabkeeper.policy.model import ActivityLogEntry, PolicySnapshot


class TabkeeperClient:
    """One-shot request client.

    Args:
        socket_path: Daemon socket; defaults to the configured one.
        timeout: Seconds to wait for a reply; defaults to the configured
            request timeout.
    """

    def __init__(self, socket_path: Path | None = None, timeout: float | None = None) -> None:
        settings = get_settings()
        self.messenger = UnixSocketMessenger(
            socket_path or settings.resolved_socket_path,
            timeout=timeout if timeout is not None else settings.request_timeout,
        )

    def request(self, action: str, **payload: Any) -> dict[str, Any]:
        """Send one request and return the daemon's reply.

        Raises:
            ServiceNotRunningError: If the daemon cannot be reached.
            TabkeeperError: If the daemon answered with an error.
        """
        message = {"action": action, **payload}
        try:
            reply = asyncio.run(self.messenger.send_one_shot(message))
        except ChannelError as exc:
            raise ServiceNotRunningError(str(exc)) from exc
        if "error" in reply:
            raise TabkeeperError(str(reply["error"]))
        return reply

    def is_running(self) -> bool:
        try:
            return self.request("ping").get("status") == "pong"
        except TabkeeperError:
            return False

    def get_settings(self) -> PolicySnapshot:
        return PolicySnapshot.from_dict(self.request("get_settings"))

    def update_settings(self, partial: dict[str, Any]) -> bool:
        return bool(self.request("update_settings", settings=partial).get("success"))

    def test_keepalive(self) -> ActionResult:
        return ActionResult.from_dict(self.request("test_keepalive"))

    def diagnostics(self) -> dict[str, Any]:
        return self.request("diagnostics")

    def activity_log(self) -> list[ActivityLogEntry]:
        entries = (ActivityLogEntry.from_dict(e) for e in self.request("get_activity_log").get("entries", []))
        return [entry for entry in entries if entry is not None]

    def clear_activity_log(self) -> bool:
        return bool(self.request("clear_activity_log").get("success"))
