import argparse
import asyncio
import os
import sys
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Sequence

from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table
from playwright.async_api import Error as PWError, Page, async_playwright

from convergence import ConvergenceDriver, ConvergenceSettings
from db import ProductDB, ProductPage, SORT_COLUMNS, SORT_ORDERS, UpsertSummary
from errors import ExtractionError, NavigationError, ScrapeError, SessionTimeout
from extractor import CONTAINER_SELECTOR, ITEM_SELECTOR, SCROLL_CONTAINER_SELECTOR, extract_products
from models import ProductRecord, StoredProduct, dump_wire_records, parse_wire_records
from session import RenderingSession


console = Console()

#
# High-level overview
# - Configuration: runtime knobs via environment variables (`Config`)
# - Browser: headless Chromium page with automation markers disabled
# - Acquisition: navigate, converge the infinite scroll, extract once
# - Snapshot: write the extracted records as a JSON array
# - Persistence: one transactional upsert keyed on product URL
# - Entrypoint: `main` parses the subcommand and maps failures to exit codes


DEFAULT_LISTING_URL = "https://www.potterybarn.com/shop/sale/open-box-deals/"
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


def _env(name: str, default: str) -> Any:
    return field(default_factory=lambda: os.getenv(name, default))


def _env_int(name: str, default: int) -> Any:
    return field(default_factory=lambda: int(os.getenv(name, str(default))))


def _env_float(name: str, default: float) -> Any:
    return field(default_factory=lambda: float(os.getenv(name, str(default))))


@dataclass
class Config:
    listing_url: str = _env("LISTING_URL", DEFAULT_LISTING_URL)
    output_db: str = _env("OUTPUT_DB", "open_box.sqlite")
    output_json: str = _env("OUTPUT_JSON", "open_box_products.json")
    user_agent: str = _env("USER_AGENT", DEFAULT_USER_AGENT)
    headless: bool = field(default_factory=lambda: os.getenv("HEADLESS", "true").lower() == "true")
    deadline_seconds: float = _env_float("DEADLINE_SECONDS", 30 * 60)
    nav_timeout_ms: int = _env_int("NAV_TIMEOUT_MS", 60000)
    viewport_width: int = _env_int("VIEWPORT_WIDTH", 1920)
    viewport_height: int = _env_int("VIEWPORT_HEIGHT", 1080)
    initial_wait_ms: int = _env_int("INITIAL_WAIT_MS", 2000)
    item_streak_threshold: int = _env_int("ITEM_STREAK_THRESHOLD", 15)
    height_streak_threshold: int = _env_int("HEIGHT_STREAK_THRESHOLD", 8)
    max_scroll_cycles: int = _env_int("MAX_SCROLL_CYCLES", 500)
    final_scroll_cycles: int = _env_int("FINAL_SCROLL_CYCLES", 10)
    settle_ms: int = _env_int("SETTLE_MS", 4000)
    scroll_settle_ms: int = _env_int("SCROLL_SETTLE_MS", 1000)
    affordance_settle_ms: int = _env_int("AFFORDANCE_SETTLE_MS", 3000)
    final_settle_ms: int = _env_int("FINAL_SETTLE_MS", 3000)
    scrape_retries: int = _env_int("SCRAPE_RETRIES", 3)

    def convergence_settings(self) -> ConvergenceSettings:
        return ConvergenceSettings(
            item_streak_threshold=self.item_streak_threshold,
            height_streak_threshold=self.height_streak_threshold,
            max_cycles=self.max_scroll_cycles,
            final_cycles=self.final_scroll_cycles,
            scroll_settle_seconds=self.scroll_settle_ms / 1000.0,
            affordance_settle_seconds=self.affordance_settle_ms / 1000.0,
            settle_seconds=self.settle_ms / 1000.0,
            final_settle_seconds=self.final_settle_ms / 1000.0,
        )


@dataclass
class RunSummary:
    found: int
    upsert: Optional[UpsertSummary] = None


@asynccontextmanager
async def open_browser_page(cfg: Config) -> AsyncIterator[Page]:
    """Launch headless Chromium and yield one page; always closes the browser."""
    async with async_playwright() as p:
        launch_kwargs: Dict[str, Any] = {
            "headless": cfg.headless,
            "args": [
                "--disable-blink-features=AutomationControlled",
                "--disable-gpu",
                "--no-sandbox",
                "--disable-dev-shm-usage",
            ],
        }
        console.log("Launching browser...")
        browser = await p.chromium.launch(**launch_kwargs)
        try:
            context = await browser.new_context(user_agent=cfg.user_agent)
            page = await context.new_page()
            yield page
            await context.close()
        finally:
            await browser.close()


async def acquire_from_session(session: RenderingSession, cfg: Config) -> List[ProductRecord]:
    """Drive an open session: navigate, converge, extract."""
    console.log(f"Navigating to {cfg.listing_url}...")
    await session.navigate(cfg.listing_url, "body")
    await session.set_viewport(cfg.viewport_width, cfg.viewport_height)

    console.log("Waiting for products to load...")
    await session.sleep(cfg.initial_wait_ms / 1000.0)
    await session.wait_for(ITEM_SELECTOR)

    driver = ConvergenceDriver(
        session,
        cfg.convergence_settings(),
        item_selector=ITEM_SELECTOR,
        container_selector=CONTAINER_SELECTOR,
        scroll_container_selector=SCROLL_CONTAINER_SELECTOR,
    )
    result = await driver.run()
    console.log(f"Scrolling ended in phase '{result.phase.value}' after {result.cycles} cycles")
    return await extract_products(session, cfg.listing_url)


async def acquire_products(cfg: Config, deadline_seconds: float) -> List[ProductRecord]:
    """One acquisition attempt; `deadline_seconds` is what is left of the run's deadline."""
    try:
        async with open_browser_page(cfg) as page:
            session = RenderingSession(page, deadline_seconds, nav_timeout_ms=cfg.nav_timeout_ms)
            return await acquire_from_session(session, cfg)
    except PWError as e:
        # Launch failures and a browser dying outside a session call
        raise NavigationError(f"browser failure: {e}") from e


Acquire = Callable[[Config, float], Awaitable[List[ProductRecord]]]


async def acquire_with_retries(
    cfg: Config,
    acquire: Optional[Acquire] = None,
    backoff_seconds: float = 2.0,
    clock: Callable[[], float] = time.monotonic,
) -> List[ProductRecord]:
    """Retry the whole acquisition with linear backoff under one overall
    deadline. `SessionTimeout` is never retried; other failures are retried
    until attempts run out and the last one is re-raised."""
    acquire = acquire or acquire_products
    attempts = max(1, cfg.scrape_retries)
    deadline = clock() + cfg.deadline_seconds
    attempt = 1
    while True:
        remaining = deadline - clock()
        if remaining <= 0:
            raise SessionTimeout("deadline expired before the next scrape attempt")
        try:
            console.log(f"Starting scrape (attempt {attempt}/{attempts})...")
            return await asyncio.wait_for(acquire(cfg, remaining), timeout=remaining)
        except asyncio.TimeoutError as e:
            raise SessionTimeout(f"deadline of {cfg.deadline_seconds}s expired") from e
        except SessionTimeout:
            raise
        except ScrapeError as e:
            console.log(f"Scraping failed (attempt {attempt}/{attempts}): {e}")
            if attempt >= attempts:
                console.log("Scraping failed after all retries")
                raise
        wait = attempt * backoff_seconds
        if wait >= deadline - clock():
            raise SessionTimeout("deadline would expire during retry backoff")
        console.log(f"Retrying in {wait} seconds...")
        await asyncio.sleep(wait)
        attempt += 1


def write_snapshot(path: Path, records: Sequence[ProductRecord]) -> None:
    path.write_text(dump_wire_records(list(records)), encoding="utf-8")
    console.log(f"Wrote {len(records)} products to {path}")


def persist(cfg: Config, records: Sequence[ProductRecord]) -> UpsertSummary:
    db = ProductDB(cfg.output_db)
    db.ensure_schema()
    return db.upsert_products(records)


async def run_scrape(cfg: Config, acquire: Optional[Acquire] = None, backoff_seconds: float = 2.0) -> RunSummary:
    console.log("Starting scrape...")
    records = await acquire_with_retries(cfg, acquire, backoff_seconds)
    console.log(f"Found {len(records)} products")
    if cfg.output_json:
        write_snapshot(Path(cfg.output_json), records)
    if not records:
        console.log("No products found")
        return RunSummary(found=0)
    summary = persist(cfg, records)
    print_summary(len(records), summary)
    console.log("Scraping complete!")
    return RunSummary(found=len(records), upsert=summary)


def load_snapshot(cfg: Config, path: Path) -> RunSummary:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ExtractionError(f"failed to read {path}: {e}") from e
    records = parse_wire_records(text)
    console.log(f"Loaded {len(records)} products from {path}")
    if not records:
        return RunSummary(found=0)
    summary = persist(cfg, records)
    print_summary(len(records), summary)
    return RunSummary(found=len(records), upsert=summary)


def print_summary(found: int, summary: UpsertSummary) -> None:
    table = Table(title="Scrape summary")
    for col in ("found", "new", "updated", "skipped", "failed"):
        table.add_column(col, justify="right")
    table.add_row(
        str(found), str(summary.new), str(summary.updated), str(summary.skipped), str(summary.failed)
    )
    console.print(table)


def print_products(products: Sequence[StoredProduct], title: str) -> None:
    table = Table(title=title)
    table.add_column("id", justify="right")
    table.add_column("name")
    table.add_column("price", justify="right")
    table.add_column("grade")
    table.add_column("url", overflow="fold")
    table.add_column("updated")
    for p in products:
        table.add_row(
            str(p.id),
            p.name or "",
            f"{p.price:.2f}" if p.price is not None else "",
            p.grade or "",
            p.product_url,
            p.updated_at,
        )
    console.print(table)


def print_page(result: ProductPage) -> None:
    print_products(result.products, f"Products (page {result.page}/{result.total_pages}, {result.total} total)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Scrape open-box listings into a sqlite catalog")
    sub = parser.add_subparsers(dest="command")

    scrape = sub.add_parser("scrape", help="Scroll the listing, extract products and store them (default)")
    scrape.add_argument("--url", help="Listing URL (overrides LISTING_URL)")

    load = sub.add_parser("load", help="Store products from a JSON snapshot file")
    load.add_argument("file", type=Path)

    lst = sub.add_parser("list", help="List stored products")
    lst.add_argument("--page", type=int, default=1)
    lst.add_argument("--limit", type=int, default=50)
    lst.add_argument("--sort", default="created_at", choices=SORT_COLUMNS)
    lst.add_argument("--order", default="DESC", type=str.upper, choices=SORT_ORDERS)
    lst.add_argument("--name", help="Case-insensitive name search")
    lst.add_argument("--grade", help="Only products with this grade")

    show = sub.add_parser("show", help="Show one stored product")
    show.add_argument("id", type=int)

    sub.add_parser("init-db", help="Create the products table if missing")
    sub.add_parser("health", help="Check the database connection")
    return parser


def load_env() -> None:
    # Load from .env if present
    load_dotenv()


def run_command(args: argparse.Namespace, cfg: Config) -> int:
    command = args.command or "scrape"
    if command == "scrape":
        if getattr(args, "url", None):
            cfg.listing_url = args.url
        asyncio.run(run_scrape(cfg))
        return 0
    if command == "load":
        load_snapshot(cfg, args.file)
        return 0

    db = ProductDB(cfg.output_db)
    if command == "init-db":
        db.ensure_schema()
        console.log(f"Database schema initialized in {cfg.output_db}")
        return 0
    if command == "health":
        db.ping()
        console.log(f"Database {cfg.output_db} is healthy")
        return 0
    db.ensure_schema()
    if command == "show":
        product = db.get_product(args.id)
        if product is None:
            console.log(f"Product {args.id} not found")
            return 1
        print_products([product], f"Product {product.id}")
        return 0
    if command == "list":
        if args.grade:
            products = db.products_by_grade(args.grade)
            print_products(products, f"Grade {args.grade} ({len(products)} products)")
        else:
            print_page(
                db.list_products(page=args.page, limit=args.limit, sort=args.sort, order=args.order, name=args.name)
            )
        return 0
    raise ValueError(f"unknown command {command}")


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Entrypoint: load configuration, run the chosen command, map failures
    to a non-zero exit code."""
    load_env()
    args = build_parser().parse_args(argv)
    cfg = Config()
    try:
        return run_command(args, cfg)
    except KeyboardInterrupt:
        console.log("Interrupted by user")
        return 130
    except ScrapeError as e:
        console.log(f"Fatal error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
