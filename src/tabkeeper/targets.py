"""Browser tabs as keep-alive targets.

Tabs are discovered through Chrome's DevTools HTTP endpoint
(``/json/list``) and acted upon through a nodriver connection attached to
the same remote-debugging port. Start Chrome with
``--remote-debugging-port=9222`` for tabkeeper to see its tabs.

Logging:
    - **WARNING**: dispatch failures and an unreachable DevTools endpoint
    - **DEBUG**: per-tab dispatch successes and reconnects
"""

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable
from urllib.parse import urlparse

import requests

from tabkeeper.exceptions import BrowserError, DispatchError
from tabkeeper.logging import get_logger

if TYPE_CHECKING:
    import nodriver

LOG = get_logger(__name__)

INTERNAL_SCHEMES = (
    "chrome://",
    "chrome-extension://",
    "chrome-untrusted://",
    "devtools://",
    "edge://",
)

# Runs inside the page: nudge the usual idle detectors, press "extend
# session" buttons inside visible expiry warnings, then acknowledge.
PING_SCRIPT = """
(() => {
  document.dispatchEvent(new MouseEvent('mousemove', {
    view: window, bubbles: true, cancelable: true,
    clientX: Math.random() * 10, clientY: Math.random() * 10
  }));
  window.scrollBy(0, 1);
  setTimeout(() => window.scrollBy(0, -1), 100);
  try {
    const img = new Image();
    img.src = window.location.origin + '/favicon.ico?' + Date.now();
  } catch (e) {}
  const selectors = [
    'input[type="hidden"][name*="session"]',
    'input[type="hidden"][name*="token"]',
    'input[type="hidden"][name*="csrf"]',
    '[data-session]',
    '[data-keepalive]'
  ];
  for (const selector of selectors) {
    for (const el of document.querySelectorAll(selector)) {
      if (el.focus && el.blur) { el.focus(); setTimeout(() => el.blur(), 10); }
    }
  }
  const warningSelectors = [
    '[class*="session"][class*="warning"]',
    '[class*="timeout"][class*="warning"]',
    '[class*="expire"][class*="warning"]',
    '[id*="session"][id*="warning"]',
    '[id*="timeout"][id*="warning"]'
  ];
  let extended = 0;
  for (const selector of warningSelectors) {
    for (const warning of document.querySelectorAll(selector)) {
      for (const button of warning.querySelectorAll('button, a, input[type="button"]')) {
        const text = (button.textContent || button.value || '').toLowerCase();
        if (text.includes('extend') || text.includes('stay') || text.includes('continue')) {
          button.click();
          extended++;
        }
      }
    }
  }
  return {success: true, extended, url: window.location.href, title: document.title};
})()
"""


def is_internal_url(url: str) -> bool:
    """True for empty URLs and the browser's own internal pages."""
    return not url or url.startswith(INTERNAL_SCHEMES)


@dataclass(frozen=True)
class Target:
    """One browser tab.

    Attributes:
        id: DevTools target id.
        url: Current page URL.
        title: Page title.
    """

    id: str
    url: str
    title: str = ""

    @property
    def host(self) -> str:
        """Lower-cased hostname of the tab's URL ('' if it has none)."""
        return (urlparse(self.url).hostname or "").lower()


@runtime_checkable
class TargetSource(Protocol):
    """Enumerates tabs and performs keep-alive actions on them."""

    async def list_targets(self) -> list[Target]:
        """Return the current tabs.

        Raises:
            BrowserError: If the browser cannot be reached.
        """
        ...

    async def reload(self, target: Target) -> None:
        """Force the tab to reload.

        Raises:
            DispatchError: If the reload was not accepted.
        """
        ...

    async def ping(self, target: Target) -> dict[str, Any]:
        """Deliver a keep-alive nudge to the tab and return its acknowledgement.

        Raises:
            DispatchError: If the tab did not acknowledge.
        """
        ...


class CDPTargetSource:
    """TargetSource backed by Chrome's remote-debugging port.

    Args:
        host: Remote debugging host.
        port: Remote debugging port.
        timeout: HTTP timeout in seconds for tab enumeration.
    """

    def __init__(self, host: str = "127.0.0.1", port: int = 9222, timeout: float = 5.0) -> None:
        self.host = host
        self.port = port
        self.timeout = timeout
        self._browser: nodriver.Browser | None = None

    @property
    def endpoint(self) -> str:
        return f"http://{self.host}:{self.port}"

    def _fetch_list(self) -> list[dict[str, Any]]:
        try:
            response = requests.get(f"{self.endpoint}/json/list", timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as exc:
            raise BrowserError(f"DevTools endpoint {self.endpoint} unavailable: {exc}") from exc
        if not isinstance(data, list):
            raise BrowserError(f"Unexpected /json/list payload from {self.endpoint}")
        return data

    async def list_targets(self) -> list[Target]:
        entries = await asyncio.to_thread(self._fetch_list)
        targets = []
        for entry in entries:
            if not isinstance(entry, dict) or entry.get("type") != "page":
                continue
            url = str(entry.get("url") or "")
            if is_internal_url(url):
                continue
            targets.append(Target(id=str(entry.get("id", "")), url=url, title=str(entry.get("title", ""))))
        return targets

    async def _connect(self) -> "nodriver.Browser":
        if self._browser is not None:
            return self._browser
        import nodriver as uc

        try:
            self._browser = await uc.start(host=self.host, port=self.port)
        except Exception as exc:  # noqa: BLE001 - nodriver raises varied exception types
            raise BrowserError(f"Cannot attach to browser at {self.endpoint}: {exc}") from exc
        LOG.debug("cdp_browser_attached", endpoint=self.endpoint)
        return self._browser

    async def _tab(self, target: Target) -> Any:
        browser = await self._connect()
        await browser.update_targets()
        for tab in browser.tabs:
            if tab.target.target_id == target.id:
                return tab
        raise DispatchError(f"Tab {target.id} no longer exists", target_id=target.id)

    async def reload(self, target: Target) -> None:
        try:
            tab = await self._tab(target)
            await tab.reload()
        except DispatchError:
            raise
        except Exception as exc:  # noqa: BLE001 - nodriver raises varied exception types
            await self.close()
            raise DispatchError(f"Reload failed: {exc}", target_id=target.id) from exc

    async def ping(self, target: Target) -> dict[str, Any]:
        try:
            tab = await self._tab(target)
            result = await tab.evaluate(PING_SCRIPT, await_promise=False, return_by_value=True)
        except DispatchError:
            raise
        except Exception as exc:  # noqa: BLE001 - nodriver raises varied exception types
            await self.close()
            raise DispatchError(f"Ping failed: {exc}", target_id=target.id) from exc
        if not isinstance(result, dict) or not result.get("success"):
            raise DispatchError("Tab did not acknowledge the ping", target_id=target.id)
        if result.get("extended"):
            LOG.info("session_warning_extended", tab=target.id, buttons=result["extended"])
        return result

    async def close(self) -> None:
        """Detach from the browser without closing it."""
        browser, self._browser = self._browser, None
        if browser is None:
            return
        try:
            await browser.connection.aclose()
        except Exception:  # noqa: BLE001 - best-effort cleanup
            LOG.debug("cdp_browser_detach_failed", exc_info=True)
        try:
            from nodriver.core.util import get_registered_instances

            get_registered_instances().discard(browser)
        except Exception:  # noqa: BLE001 - best-effort cleanup
            LOG.debug("deregister_nodriver_browser_failed", exc_info=True)
