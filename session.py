import asyncio
import inspect
import time
from typing import Any, Awaitable, Callable, Optional

from playwright.async_api import Error as PWError, Page
from rich.console import Console

from errors import EvaluationError, NavigationError, SessionTimeout


console = Console()


class RenderingSession:
    """One command at a time against a rendered Playwright page, all of it
    bounded by a single overall deadline.

    Any operation issued after the deadline fails immediately with
    `SessionTimeout`; an operation still running when the deadline passes is
    cancelled and raises `SessionTimeout` as well.
    """

    def __init__(
        self,
        page: Page,
        deadline_seconds: float,
        *,
        nav_timeout_ms: int = 60000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.page = page
        self.nav_timeout_ms = nav_timeout_ms
        self._clock = clock
        self._deadline = clock() + deadline_seconds

    def remaining(self) -> float:
        return max(0.0, self._deadline - self._clock())

    async def _bounded(self, awaitable: Awaitable[Any], what: str) -> Any:
        remaining = self.remaining()
        if remaining <= 0:
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            raise SessionTimeout(f"deadline expired before {what}")
        try:
            return await asyncio.wait_for(awaitable, timeout=remaining)
        except asyncio.TimeoutError as e:
            raise SessionTimeout(f"deadline expired during {what}") from e

    async def navigate(self, url: str, ready_selector: str = "body") -> None:
        try:
            await self._bounded(
                self.page.goto(url, wait_until="domcontentloaded", timeout=self.nav_timeout_ms),
                f"navigation to {url}",
            )
            await self._bounded(
                self.page.wait_for_selector(ready_selector, state="attached", timeout=self.nav_timeout_ms),
                f"waiting for {ready_selector}",
            )
        except PWError as e:
            raise NavigationError(f"failed to navigate to {url}: {e}") from e

    async def evaluate(self, script: str, arg: Optional[Any] = None) -> Any:
        try:
            return await self._bounded(self.page.evaluate(script, arg), "script evaluation")
        except PWError as e:
            raise EvaluationError(str(e)) from e

    async def sleep(self, seconds: float) -> None:
        await self._bounded(asyncio.sleep(seconds), f"a {seconds:.1f}s wait")

    async def wait_for(self, selector: str, timeout_ms: int = 10000) -> bool:
        """Wait for `selector` to become visible; False if it never does."""
        try:
            await self._bounded(
                self.page.wait_for_selector(selector, state="visible", timeout=timeout_ms),
                f"waiting for {selector}",
            )
            return True
        except PWError as e:
            console.log(f"Warning: selector {selector!r} not found: {e}")
            return False

    async def set_viewport(self, width: int, height: int) -> bool:
        try:
            await self._bounded(
                self.page.set_viewport_size({"width": width, "height": height}),
                "viewport resize",
            )
            return True
        except PWError as e:
            console.log(f"Warning: failed to set viewport: {e}")
            return False
