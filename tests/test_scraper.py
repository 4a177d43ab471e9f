import asyncio
import json
import time
from contextlib import asynccontextmanager
from decimal import Decimal
from pathlib import Path

import pytest
from playwright.async_api import Error as PWError

import scraper
from db import ProductDB
from errors import NavigationError, SessionTimeout
from models import ProductRecord
from scraper import Config, acquire_from_session, acquire_with_retries, main, run_scrape


@pytest.fixture
def cfg(tmp_path):
    return Config(
        output_db=str(tmp_path / "open_box.sqlite"),
        output_json=str(tmp_path / "open_box_products.json"),
        initial_wait_ms=0,
        item_streak_threshold=2,
        height_streak_threshold=2,
        max_scroll_cycles=20,
        final_scroll_cycles=1,
        settle_ms=0,
        scroll_settle_ms=0,
        affordance_settle_ms=0,
        final_settle_ms=0,
        scrape_retries=3,
    )


def products():
    return [
        ProductRecord(name="Blue Vase", product_url="https://www.potterybarn.com/products/blue-vase/", price=Decimal("89.99")),
        ProductRecord(name="Lamp", product_url="https://www.potterybarn.com/products/lamp/", grade="Open Box"),
    ]


def test_config_reads_environment(monkeypatch):
    monkeypatch.setenv("LISTING_URL", "https://example.com/open-box/")
    monkeypatch.setenv("MAX_SCROLL_CYCLES", "42")
    monkeypatch.setenv("HEADLESS", "false")
    monkeypatch.setenv("SETTLE_MS", "1500")
    c = Config()
    assert c.listing_url == "https://example.com/open-box/"
    assert c.max_scroll_cycles == 42
    assert c.headless is False
    settings = c.convergence_settings()
    assert settings.max_cycles == 42
    assert settings.settle_seconds == 1.5
    assert settings.item_streak_threshold == 15


def test_acquire_from_session_converges_then_extracts(cfg, fake_session_cls, cell):
    session = fake_session_cls(
        sample=lambda i: (2, 800),
        cells=[
            cell(index=0, ariaProduct="blue-vase", amounts=["129.99", "89.99"]),
            cell(index=1, linkHref="/products/lamp/", nameText="Lamp", text="open box"),
        ],
    )
    records = asyncio.run(acquire_from_session(session, cfg))
    assert session.navigated == [cfg.listing_url]
    assert session.viewports == [(1920, 1080)]
    assert [r.product_url for r in records] == [
        "https://www.potterybarn.com/products/blue-vase/",
        "https://www.potterybarn.com/products/lamp/",
    ]
    assert records[0].price == Decimal("89.99")
    assert records[1].grade == "Open Box"


def test_retries_until_acquisition_succeeds(cfg):
    attempts = []

    async def flaky(c, remaining):
        attempts.append(remaining)
        if len(attempts) < 3:
            raise NavigationError("net::ERR_CONNECTION_RESET")
        return products()

    records = asyncio.run(acquire_with_retries(cfg, flaky, backoff_seconds=0))
    assert len(attempts) == 3
    assert len(records) == 2
    # Every attempt gets what is left of one deadline, never a fresh one
    assert attempts[0] <= cfg.deadline_seconds
    assert attempts == sorted(attempts, reverse=True)


def test_last_error_is_raised_after_all_retries(cfg):
    attempts = []

    async def unreachable(c, remaining):
        attempts.append(remaining)
        raise NavigationError("net::ERR_NAME_NOT_RESOLVED")

    with pytest.raises(NavigationError):
        asyncio.run(acquire_with_retries(cfg, unreachable, backoff_seconds=0))
    assert len(attempts) == 3


def test_session_timeout_is_not_retried(cfg):
    attempts = []

    async def always_late(c, remaining):
        attempts.append(remaining)
        raise SessionTimeout("deadline expired during a wait")

    with pytest.raises(SessionTimeout):
        asyncio.run(acquire_with_retries(cfg, always_late, backoff_seconds=0))
    assert len(attempts) == 1


class HangingPage:
    """A page whose navigation never completes."""

    async def goto(self, url, wait_until=None, timeout=None):
        await asyncio.sleep(10)

    async def wait_for_selector(self, selector, state=None, timeout=None):
        await asyncio.sleep(10)


def test_hung_navigation_expires_the_run_deadline_once(cfg, monkeypatch):
    launches = []

    @asynccontextmanager
    async def hanging_browser(c):
        launches.append(c)
        yield HangingPage()

    monkeypatch.setattr(scraper, "open_browser_page", hanging_browser)
    cfg.deadline_seconds = 0.3
    cfg.scrape_retries = 3

    started = time.monotonic()
    with pytest.raises(SessionTimeout):
        asyncio.run(acquire_with_retries(cfg, backoff_seconds=0))
    assert len(launches) == 1
    assert time.monotonic() - started < 2


def test_deadline_spent_during_backoff_stops_retrying(cfg):
    now = [0.0]
    attempts = []

    async def slow_failure(c, remaining):
        attempts.append(remaining)
        now[0] += cfg.deadline_seconds - 1
        raise NavigationError("net::ERR_CONNECTION_RESET")

    with pytest.raises(SessionTimeout):
        asyncio.run(acquire_with_retries(cfg, slow_failure, backoff_seconds=2, clock=lambda: now[0]))
    assert attempts == [cfg.deadline_seconds]


def test_browser_launch_failure_becomes_navigation_error(cfg, monkeypatch):
    @asynccontextmanager
    async def missing_browser(c):
        raise PWError("Executable doesn't exist at /ms-playwright/chromium/chrome")
        yield

    monkeypatch.setattr(scraper, "open_browser_page", missing_browser)
    with pytest.raises(NavigationError, match="Executable doesn't exist"):
        asyncio.run(scraper.acquire_products(cfg, 5))


def test_main_exits_cleanly_when_browser_is_missing(tmp_path, monkeypatch):
    monkeypatch.setenv("OUTPUT_DB", str(tmp_path / "cli.sqlite"))
    monkeypatch.setenv("OUTPUT_JSON", "")
    monkeypatch.setenv("SCRAPE_RETRIES", "1")

    @asynccontextmanager
    async def missing_browser(c):
        raise PWError("Executable doesn't exist")
        yield

    monkeypatch.setattr(scraper, "open_browser_page", missing_browser)
    assert main(["scrape"]) == 1


def test_run_scrape_persists_and_writes_snapshot(cfg):
    async def acquire(c, remaining):
        return products()

    summary = asyncio.run(run_scrape(cfg, acquire))
    assert summary.found == 2
    assert (summary.upsert.new, summary.upsert.updated) == (2, 0)
    snapshot = json.loads(Path(cfg.output_json).read_text())
    assert [p["url"] for p in snapshot] == [r.product_url for r in products()]
    assert ProductDB(cfg.output_db).list_products().total == 2

    again = asyncio.run(run_scrape(cfg, acquire))
    assert (again.upsert.new, again.upsert.updated) == (0, 2)


def test_zero_products_is_a_successful_no_op(cfg):
    async def empty(c, remaining):
        return []

    summary = asyncio.run(run_scrape(cfg, empty))
    assert summary.found == 0
    assert summary.upsert is None
    assert not Path(cfg.output_db).exists()


def test_main_load_and_query_commands(tmp_path, monkeypatch):
    db_path = tmp_path / "cli.sqlite"
    monkeypatch.setenv("OUTPUT_DB", str(db_path))
    snapshot = tmp_path / "snapshot.json"
    snapshot.write_text(json.dumps([r.to_wire() for r in products()]))

    assert main(["load", str(snapshot)]) == 0
    assert main(["list", "--sort", "price", "--order", "asc"]) == 0
    assert main(["list", "--grade", "Open Box"]) == 0
    assert main(["show", "1"]) == 0
    assert main(["show", "999"]) == 1
    assert main(["health"]) == 0


def test_main_exit_codes_for_fatal_errors(tmp_path, monkeypatch):
    monkeypatch.setenv("OUTPUT_DB", str(tmp_path / "cli.sqlite"))
    monkeypatch.setenv("OUTPUT_JSON", "")
    monkeypatch.setenv("SCRAPE_RETRIES", "1")

    bad = tmp_path / "bad.json"
    bad.write_text("{not json")
    assert main(["load", str(bad)]) == 1
    assert main(["load", str(tmp_path / "missing.json")]) == 1

    async def unreachable(c, remaining):
        raise NavigationError("failed to navigate")

    monkeypatch.setattr(scraper, "acquire_products", unreachable)
    assert main(["scrape"]) == 1
    assert main(["init-db"]) == 0
