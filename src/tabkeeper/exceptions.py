"""Custom exceptions for tabkeeper package."""


class TabkeeperError(Exception):
    """Base exception class for all tabkeeper errors."""


class ChannelError(TabkeeperError):
    """Raised when the other end of a channel cannot be reached."""


class ChannelClosedError(ChannelError):
    """Raised when sending on a channel that has already been torn down."""


class CompanionError(TabkeeperError):
    """Raised when the companion process cannot be started or stopped."""


class PolicyStoreError(TabkeeperError):
    """Raised when the policy file cannot be read or written."""


class BrowserError(TabkeeperError):
    """Raised when the browser's DevTools endpoint is unreachable."""


class DispatchError(TabkeeperError):
    """Raised when a keep-alive action against a single tab fails.

    Attributes:
        target_id: DevTools id of the tab the action was aimed at.
    """

    def __init__(self, message: str, target_id: str | None = None) -> None:
        super().__init__(message)
        self.target_id = target_id


class ServiceNotRunningError(TabkeeperError):
    """Raised when the tabkeeper daemon is not reachable over its socket."""
