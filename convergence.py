from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Protocol, Tuple

from rich.console import Console

from errors import EvaluationError


console = Console()

#
# Scroll convergence
# - `ConvergenceState` is the pure state machine: it only sees samples and
#   probe outcomes, so the termination predicate is testable without a page
# - `ConvergenceDriver` runs cycles against a session: sample, scroll, click
#   "show more", settle, re-sample, then feeds the state machine
# - Thresholds are empirical slack and live in `ConvergenceSettings`


AFFORDANCE_PHRASES = ("show more", "show me more", "load more", "see more")

# Clicked only when no phrase matches and the caller asked for activation
AFFORDANCE_FALLBACK_SELECTOR = '[data-test-id*="more"], [data-test-id*="More"]'


SAMPLE_SCRIPT = """
({ itemSelector, containerSelector }) => {
  const general = document.querySelectorAll(itemSelector).length;
  const contained = containerSelector ? document.querySelectorAll(containerSelector).length : 0;
  return { count: Math.max(general, contained), height: document.body.scrollHeight };
}
"""

SCROLL_SCRIPT = """
({ itemSelector, scrollContainerSelector, stepRatio }) => {
  const currentScroll = window.pageYOffset || document.documentElement.scrollTop;
  const maxScroll = document.body.scrollHeight - window.innerHeight;
  const step = window.innerHeight * stepRatio;
  if (maxScroll - currentScroll < step) {
    window.scrollTo(0, document.body.scrollHeight);
  } else {
    window.scrollBy(0, step);
  }
  if (scrollContainerSelector) {
    const container = document.querySelector(scrollContainerSelector);
    if (container && container.scrollHeight > container.clientHeight) {
      container.scrollTop = container.scrollHeight;
    }
  }
  const items = document.querySelectorAll(itemSelector);
  const last = items.length > 0 ? items[items.length - 1] : null;
  if (last) {
    last.scrollIntoView({ behavior: 'smooth', block: 'end' });
  }
  window.dispatchEvent(new Event('scroll', { bubbles: true }));
  document.dispatchEvent(new Event('scroll', { bubbles: true }));
  if (last) {
    last.dispatchEvent(new Event('intersect', { bubbles: true }));
  }
}
"""

SCROLL_TO_BOTTOM_SCRIPT = """
({ itemSelector }) => {
  window.scrollTo(0, document.body.scrollHeight);
  const items = document.querySelectorAll(itemSelector);
  if (items.length > 0) {
    items[items.length - 1].scrollIntoView({ behavior: 'smooth', block: 'end' });
  }
  window.dispatchEvent(new Event('scroll', { bubbles: true }));
}
"""

# Returns true when an affordance exists; clicks it first when `activate` is set
AFFORDANCE_SCRIPT = """
({ phrases, activate, fallbackSelector }) => {
  const candidates = Array.from(document.querySelectorAll('button, a'));
  for (const el of candidates) {
    const text = (el.textContent || '').toLowerCase().trim();
    if (phrases.some((p) => text.includes(p))) {
      if (activate) {
        el.click();
      }
      return true;
    }
  }
  if (activate && fallbackSelector) {
    const fallback = document.querySelector(fallbackSelector);
    if (fallback) {
      fallback.click();
      return true;
    }
  }
  return false;
}
"""


class Session(Protocol):
    async def evaluate(self, script: str, arg: Optional[Any] = None) -> Any: ...

    async def sleep(self, seconds: float) -> None: ...


class ConvergencePhase(str, Enum):
    SCROLLING = "scrolling"
    PROBING = "probing"
    CONVERGED = "converged"
    TIMED_OUT = "timed_out"


@dataclass
class ConvergenceSettings:
    item_streak_threshold: int = 15
    height_streak_threshold: int = 8
    max_cycles: int = 500
    final_cycles: int = 10
    scroll_step_ratio: float = 0.9
    scroll_settle_seconds: float = 1.0
    affordance_settle_seconds: float = 3.0
    settle_seconds: float = 4.0
    final_settle_seconds: float = 3.0


@dataclass
class ConvergenceState:
    settings: ConvergenceSettings
    previous_count: int = 0
    previous_height: int = 0
    no_new_items_streak: int = 0
    no_height_change_streak: int = 0
    attempt: int = 0
    phase: ConvergencePhase = ConvergencePhase.SCROLLING

    @property
    def finished(self) -> bool:
        return self.phase in (ConvergencePhase.CONVERGED, ConvergencePhase.TIMED_OUT)

    def observe(self, count: int, height: int) -> None:
        """Fold one post-cycle sample into the streaks."""
        if height == self.previous_height:
            self.no_height_change_streak += 1
        else:
            self.no_height_change_streak = 0
        if count == self.previous_count:
            self.no_new_items_streak += 1
        else:
            self.no_new_items_streak = 0
        self.previous_count = count
        self.previous_height = height
        if (
            self.no_new_items_streak >= self.settings.item_streak_threshold
            and self.no_height_change_streak >= self.settings.height_streak_threshold
        ):
            self.phase = ConvergencePhase.PROBING

    def resolve_probe(self, affordance_present: bool) -> None:
        if self.phase is not ConvergencePhase.PROBING:
            return
        if affordance_present:
            # An idle page with a visible "show more" is not done
            self.no_new_items_streak = 0
            self.phase = ConvergencePhase.SCROLLING
        else:
            self.phase = ConvergencePhase.CONVERGED

    def end_cycle(self) -> None:
        self.attempt += 1
        if not self.finished and self.attempt >= self.settings.max_cycles:
            self.phase = ConvergencePhase.TIMED_OUT


@dataclass
class ConvergenceResult:
    phase: ConvergencePhase
    cycles: int
    item_count: int
    height: int


class ConvergenceDriver:
    def __init__(
        self,
        session: Session,
        settings: ConvergenceSettings,
        *,
        item_selector: str,
        container_selector: str = "",
        scroll_container_selector: str = "",
    ) -> None:
        self.session = session
        self.settings = settings
        self.item_selector = item_selector
        self.container_selector = container_selector
        self.scroll_container_selector = scroll_container_selector

    async def sample(self) -> Optional[Tuple[int, int]]:
        """Return `(item_count, page_height)` or None when the page did not answer."""
        try:
            result: Dict[str, Any] = await self.session.evaluate(
                SAMPLE_SCRIPT,
                {"itemSelector": self.item_selector, "containerSelector": self.container_selector},
            )
            return int(result["count"]), int(result["height"])
        except (EvaluationError, KeyError, TypeError, ValueError) as e:
            console.log(f"  Error sampling page: {e}")
            return None

    async def trigger_loading(self) -> None:
        try:
            await self.session.evaluate(
                SCROLL_SCRIPT,
                {
                    "itemSelector": self.item_selector,
                    "scrollContainerSelector": self.scroll_container_selector,
                    "stepRatio": self.settings.scroll_step_ratio,
                },
            )
        except EvaluationError as e:
            console.log(f"  Error scrolling: {e}")
            return
        await self.session.sleep(self.settings.scroll_settle_seconds)

    async def scroll_to_bottom(self) -> bool:
        try:
            await self.session.evaluate(SCROLL_TO_BOTTOM_SCRIPT, {"itemSelector": self.item_selector})
            return True
        except EvaluationError as e:
            console.log(f"  Error scrolling to bottom: {e}")
            return False

    async def activate_affordance(self, fallback: bool = True) -> bool:
        arg = {
            "phrases": list(AFFORDANCE_PHRASES),
            "activate": True,
            "fallbackSelector": AFFORDANCE_FALLBACK_SELECTOR if fallback else None,
        }
        try:
            clicked = await self.session.evaluate(AFFORDANCE_SCRIPT, arg)
        except EvaluationError as e:
            console.log(f"  Error looking for a 'show more' button: {e}")
            return False
        return bool(clicked)

    async def affordance_present(self) -> bool:
        try:
            present = await self.session.evaluate(
                AFFORDANCE_SCRIPT,
                {"phrases": list(AFFORDANCE_PHRASES), "activate": False, "fallbackSelector": None},
            )
        except EvaluationError as e:
            # Never conclude absence from a failed probe
            console.log(f"  Error probing for a 'show more' button: {e}")
            return True
        return bool(present)

    async def run_cycle(self, state: ConvergenceState) -> None:
        before = await self.sample()
        await self.trigger_loading()
        if await self.activate_affordance():
            console.log("  Clicked 'Show More' button")
            await self.session.sleep(self.settings.affordance_settle_seconds)
        await self.session.sleep(self.settings.settle_seconds)

        after = await self.sample()
        if after is None:
            console.log("  No information gained this cycle")
        else:
            count, height = after
            delta = height - before[1] if before else 0
            console.log(f"  Found {count} products so far (page height: {height}, change: {delta})")
            if count != state.previous_count:
                console.log(f"  New products detected: {state.previous_count} -> {count}")
            state.observe(count, height)

        if state.phase is ConvergencePhase.PROBING:
            present = await self.affordance_present()
            if present:
                console.log("No new products but found a button, continuing...")
            else:
                console.log("No new products or page growth and no more buttons. Scrolling complete.")
            state.resolve_probe(present)
        state.end_cycle()

    async def final_pass(self, state: ConvergenceState) -> None:
        """A few last-chance cycles, since the dual-threshold rule can exit early."""
        for i in range(self.settings.final_cycles):
            if await self.activate_affordance(fallback=False):
                console.log(f"  Clicked 'Show More' button in final attempt {i + 1}")
                await self.session.sleep(self.settings.settle_seconds)
            if not await self.scroll_to_bottom():
                continue
            await self.session.sleep(self.settings.final_settle_seconds)
            sample = await self.sample()
            if sample is None:
                continue
            count, height = sample
            if count > state.previous_count:
                console.log(f"Found additional products after final scroll attempt {i + 1}: {count} total")
                state.previous_count = count
            state.previous_height = height

    async def run(self) -> ConvergenceResult:
        state = ConvergenceState(self.settings)
        console.log("Scrolling to load all products...")
        while not state.finished:
            await self.run_cycle(state)
        if state.phase is ConvergencePhase.TIMED_OUT:
            console.log(f"Reached {state.attempt} scroll cycles without converging; continuing with what loaded")
        console.log(f"Finished scrolling. Total products found: {state.previous_count}")
        console.log("Final scroll attempts to ensure all products are loaded...")
        await self.final_pass(state)
        return ConvergenceResult(
            phase=state.phase,
            cycles=state.attempt,
            item_count=state.previous_count,
            height=state.previous_height,
        )
