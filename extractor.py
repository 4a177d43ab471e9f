import json
import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set
from urllib.parse import quote, urljoin, urlparse

from rich.console import Console

from errors import EvaluationError, ExtractionError
from models import ProductRecord


console = Console()

#
# Listing extraction
# - Markup knowledge: selectors for the open-box grid and its product cells
# - In-page snapshot: one JSON object of raw facts per candidate cell
# - Resolvers: per-field ordered chains; the first non-empty value wins
# - `build_records`: dedup by product URL (first seen wins) and isolate
#   failures per cell


ITEM_SELECTOR = '[data-component="Shop-ProductCell"], .grid-item'
SCROLL_CONTAINER_SELECTOR = (
    "#subcat-page > div.sub-cat-container.sub-cat-container-page-with-aside > section > div.two-column-grid"
)
CONTAINER_SELECTOR = f"{SCROLL_CONTAINER_SELECTOR} > div.grid-item"

CELL_SELECTORS: Dict[str, str] = {
    "itemSelector": ITEM_SELECTOR,
    "containerSelector": CONTAINER_SELECTOR,
    "cellSelector": '[data-component="Shop-ProductCell"]',
    "cellContainerSelector": ".product-cell-container",
    "nameSelector": '[data-test-id="product-info"] span, .product-name a span, .product-name span, h2, h3, h4',
    "linkSelector": '[data-test-id="product-image-link"], .product-image-link, .product-name a',
    "productLinkSelector": 'a[href*="/product/"], a[href*="/products/"]',
    "imageSelector": '[data-test-id="product-image"], img.product-image, .product-image-link img',
    "amountSelector": '[data-test-id="amount"], .product-price .amount',
    "contractGradeSelector": ".contractgrade",
}

SNAPSHOT_SCRIPT = """
(s) => {
  const contained = document.querySelectorAll(s.containerSelector);
  const general = document.querySelectorAll(s.itemSelector);
  const elements = contained.length >= general.length ? contained : general;
  const text = (el) => (el && el.textContent ? el.textContent.trim() : null);
  const attr = (el, name) => (el ? el.getAttribute(name) : null);
  const cells = [];
  for (let i = 0; i < elements.length; i++) {
    const el = elements[i];
    try {
      const inner = el.querySelector(s.cellSelector);
      const labelledBy = attr(inner || el, 'aria-labelledby');
      const link = el.querySelector(s.linkSelector);
      const productLink = el.querySelector(s.productLinkSelector);
      const image = el.querySelector(s.imageSelector);
      cells.push({
        index: i,
        signals: {
          hasProductCell: !!inner,
          isGridItem: el.classList.contains('grid-item'),
          hasCellContainer: !!el.querySelector(s.cellContainerSelector),
        },
        ariaProduct: attr(el, 'aria-product') || attr(inner, 'aria-product'),
        labelledByText: labelledBy ? text(document.getElementById(labelledBy)) : null,
        nameText: text(el.querySelector(s.nameSelector)),
        linkHref: attr(link, 'href'),
        productHref: attr(productLink, 'href'),
        linkLabel: attr(productLink, 'aria-label'),
        imageAlt: attr(el.querySelector('img'), 'alt'),
        imageSrc: attr(image, 'src'),
        imageLazySrc: attr(image, 'data-src'),
        amounts: Array.from(el.querySelectorAll(s.amountSelector)).map((a) => a.textContent.trim()),
        contractGrade: !!el.querySelector(s.contractGradeSelector),
        text: el.textContent || '',
      });
    } catch (e) {
      cells.push({ index: i, error: String(e) });
    }
  }
  return JSON.stringify(cells);
}
"""

AMOUNT_RE = re.compile(r"\d+(?:\.\d+)?")

GRADE_PATTERNS = (
    (re.compile(r"\bgrade[\s:-]*a\b"), "A"),
    (re.compile(r"\bgrade[\s:-]*b\b"), "B"),
    (re.compile(r"\bgrade[\s:-]*c\b"), "C"),
    (re.compile(r"\bopen[\s-]*box\b"), "Open Box"),
)

CONTRACT_GRADE = "Contract Grade"


@dataclass
class ResolveContext:
    origin: str

    @classmethod
    def for_page(cls, page_url: str) -> "ResolveContext":
        parsed = urlparse(page_url)
        return cls(origin=f"{parsed.scheme}://{parsed.netloc}")


Cell = Dict[str, Any]
Resolver = Callable[[Cell, ResolveContext], Optional[str]]


def first_resolved(resolvers: Sequence[Resolver], cell: Cell, ctx: ResolveContext) -> Optional[str]:
    for resolver in resolvers:
        value = resolver(cell, ctx)
        if value:
            return value
    return None


def _clean(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    value = re.sub(r"\s+", " ", value).strip()
    return value or None


def normalize_url(url: Optional[str], origin: str) -> Optional[str]:
    """Make protocol-relative and root-relative URLs absolute against `origin`."""
    url = _clean(url)
    if not url:
        return None
    if url.startswith("http://") or url.startswith("https://"):
        return url
    if url.startswith("//"):
        return f"https:{url}"
    if url.startswith("/"):
        return origin + url
    return urljoin(origin + "/", url)


def slugify(name: str) -> str:
    slug = re.sub(r"\s+", "-", name.lower())
    return quote(re.sub(r"[^a-z0-9-]", "", slug))


# URL resolvers

def url_from_product_id(cell: Cell, ctx: ResolveContext) -> Optional[str]:
    product_id = _clean(cell.get("ariaProduct"))
    return f"/products/{product_id}/" if product_id else None


def url_from_product_link(cell: Cell, ctx: ResolveContext) -> Optional[str]:
    return _clean(cell.get("linkHref"))


def url_from_any_product_anchor(cell: Cell, ctx: ResolveContext) -> Optional[str]:
    return _clean(cell.get("productHref"))


URL_RESOLVERS: Sequence[Resolver] = (url_from_product_id, url_from_product_link, url_from_any_product_anchor)


def resolve_url(cell: Cell, ctx: ResolveContext) -> Optional[str]:
    return normalize_url(first_resolved(URL_RESOLVERS, cell, ctx), ctx.origin)


def synthesize_url(name: Optional[str], index: Any, ctx: ResolveContext) -> str:
    """Fallback key for cells without any link; not stable across runs."""
    if name:
        return f"{ctx.origin}/products/{slugify(name)}/"
    return f"{ctx.origin}/products/unknown-{index}/"


# Name resolvers

def name_from_labelled_by(cell: Cell, ctx: ResolveContext) -> Optional[str]:
    return _clean(cell.get("labelledByText"))


def name_from_name_element(cell: Cell, ctx: ResolveContext) -> Optional[str]:
    return _clean(cell.get("nameText"))


def name_from_link_label(cell: Cell, ctx: ResolveContext) -> Optional[str]:
    return _clean(cell.get("linkLabel"))


def name_from_image_alt(cell: Cell, ctx: ResolveContext) -> Optional[str]:
    return _clean(cell.get("imageAlt"))


def name_from_product_id(cell: Cell, ctx: ResolveContext) -> Optional[str]:
    product_id = _clean(cell.get("ariaProduct"))
    if not product_id:
        return None
    return re.sub(r"\b\w", lambda m: m.group(0).upper(), product_id.replace("-", " "))


NAME_RESOLVERS: Sequence[Resolver] = (
    name_from_labelled_by,
    name_from_name_element,
    name_from_link_label,
    name_from_image_alt,
    name_from_product_id,
)


def resolve_name(cell: Cell, ctx: ResolveContext) -> Optional[str]:
    return first_resolved(NAME_RESOLVERS, cell, ctx)


# Image resolvers

def image_from_src(cell: Cell, ctx: ResolveContext) -> Optional[str]:
    return _clean(cell.get("imageSrc"))


def image_from_lazy_src(cell: Cell, ctx: ResolveContext) -> Optional[str]:
    return _clean(cell.get("imageLazySrc"))


IMAGE_RESOLVERS: Sequence[Resolver] = (image_from_src, image_from_lazy_src)


def resolve_image(cell: Cell, ctx: ResolveContext) -> Optional[str]:
    return normalize_url(first_resolved(IMAGE_RESOLVERS, cell, ctx), ctx.origin)


def parse_amount(text: Any) -> Optional[Decimal]:
    if not isinstance(text, str):
        return None
    m = AMOUNT_RE.search(text.replace(",", ""))
    if not m:
        return None
    try:
        return Decimal(m.group(0))
    except InvalidOperation:
        return None


def resolve_price(cell: Cell) -> Optional[Decimal]:
    """Lowest of all displayed amounts; struck-through list prices lose."""
    amounts = [a for a in (parse_amount(t) for t in cell.get("amounts") or []) if a is not None]
    return min(amounts) if amounts else None


def grade_from_text(text: Any) -> Optional[str]:
    if not isinstance(text, str):
        return None
    lowered = text.lower()
    for pattern, grade in GRADE_PATTERNS:
        if pattern.search(lowered):
            return grade
    return None


def resolve_grade(cell: Cell) -> Optional[str]:
    if cell.get("contractGrade"):
        return CONTRACT_GRADE
    return grade_from_text(cell.get("text"))


def is_product_cell(cell: Cell) -> bool:
    signals = cell.get("signals")
    return isinstance(signals, dict) and any(bool(v) for v in signals.values())


def build_records(cells: Iterable[Any], ctx: ResolveContext) -> List[ProductRecord]:
    """Resolve cell snapshots into records, unique by `product_url`.

    First seen wins: a later cell with the same URL is dropped even when it
    carries richer data.
    """
    records: List[ProductRecord] = []
    seen: Set[str] = set()
    for position, cell in enumerate(cells):
        if not isinstance(cell, dict):
            console.log(f"Skipping malformed cell #{position}: {cell!r}")
            continue
        index = cell.get("index", position)
        if cell.get("error"):
            console.log(f"Error extracting product #{index}: {cell['error']}")
            continue
        if not is_product_cell(cell):
            continue
        try:
            url = resolve_url(cell, ctx)
            if url and url in seen:
                continue
            name = resolve_name(cell, ctx)
            if not name and not url:
                continue
            if not url:
                url = synthesize_url(name, index, ctx)
                if url in seen:
                    continue
            seen.add(url)
            records.append(
                ProductRecord(
                    name=name,
                    product_url=url,
                    image_url=resolve_image(cell, ctx),
                    price=resolve_price(cell),
                    grade=resolve_grade(cell),
                )
            )
        except Exception as e:
            console.log(f"Error extracting product #{index}: {e}")
            continue
        if len(records) % 200 == 0:
            console.log(f"Processed {position + 1} cells, {len(records)} products...")
    return records


def parse_snapshot(raw: Any) -> List[Any]:
    if isinstance(raw, list):
        return raw
    try:
        cells = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise ExtractionError(f"failed to parse cell snapshot JSON: {e}") from e
    if not isinstance(cells, list):
        raise ExtractionError(f"expected a JSON array of cells, got {type(cells).__name__}")
    return cells


async def extract_products(session: Any, page_url: str) -> List[ProductRecord]:
    """Read the converged page once and resolve every product cell."""
    console.log("Extracting product data...")
    try:
        raw = await session.evaluate(SNAPSHOT_SCRIPT, CELL_SELECTORS)
    except EvaluationError as e:
        raise ExtractionError(f"failed to extract products: {e}") from e
    cells = parse_snapshot(raw)
    records = build_records(cells, ResolveContext.for_page(page_url))
    console.log(f"Extracted {len(records)} products from {len(cells)} elements")
    return records
