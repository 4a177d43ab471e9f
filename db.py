import math
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Iterable, List, Optional

from rich.console import Console

from errors import PersistenceError
from models import ProductRecord, StoredProduct


console = Console()

SORT_COLUMNS = ("created_at", "name", "price", "grade")
SORT_ORDERS = ("ASC", "DESC")

PRODUCT_COLUMNS = "id, name, price, grade, image_url, product_url, created_at, updated_at"

UPSERT_SQL = """
INSERT INTO products(name, price, grade, image_url, product_url, created_at, updated_at)
VALUES(?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(product_url) DO UPDATE SET
  name = excluded.name,
  price = excluded.price,
  grade = excluded.grade,
  image_url = excluded.image_url,
  updated_at = excluded.updated_at
RETURNING id, created_at, updated_at
"""


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class UpsertSummary:
    new: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    ids: List[int] = field(default_factory=list)

    @property
    def saved(self) -> int:
        return self.new + self.updated


@dataclass
class ProductPage:
    products: List[StoredProduct]
    page: int
    limit: int
    total: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


def _row_to_product(row: sqlite3.Row) -> StoredProduct:
    price = row["price"]
    return StoredProduct(
        id=row["id"],
        name=row["name"],
        price=Decimal(str(price)) if price is not None else None,
        grade=row["grade"],
        image_url=row["image_url"],
        product_url=row["product_url"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class ProductDB:
    def __init__(self, db_path: str, clock: Callable[[], str] = now_iso) -> None:
        self.db_path = db_path
        self.clock = clock

    def _conn(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(self.db_path)
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
        except sqlite3.Error as e:
            raise PersistenceError(f"failed to connect to database {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        return conn

    def ensure_schema(self) -> None:
        conn = self._conn()
        try:
            with conn:
                conn.executescript(
                    """
                    CREATE TABLE IF NOT EXISTS products (
                      id INTEGER PRIMARY KEY AUTOINCREMENT,
                      name TEXT,
                      price NUMERIC,
                      grade TEXT,
                      image_url TEXT,
                      product_url TEXT NOT NULL UNIQUE,
                      created_at TEXT NOT NULL,
                      updated_at TEXT NOT NULL
                    );

                    CREATE INDEX IF NOT EXISTS idx_products_grade ON products(grade);
                    """
                )
        except sqlite3.Error as e:
            raise PersistenceError(f"failed to initialize schema: {e}") from e
        finally:
            conn.close()

    def ping(self) -> bool:
        conn = self._conn()
        try:
            return conn.execute("SELECT 1").fetchone()[0] == 1
        except sqlite3.Error as e:
            raise PersistenceError(f"database unreachable: {e}") from e
        finally:
            conn.close()

    def upsert_products(self, records: Iterable[ProductRecord]) -> UpsertSummary:
        """Insert-or-update every record keyed on `product_url` in a single
        transaction. Individual failures are logged and skipped; a failed
        commit is fatal for the whole batch."""
        summary = UpsertSummary()
        ts = self.clock()
        conn = self._conn()
        try:
            for r in records:
                if not r.product_url:
                    console.log(f"Skipping product without URL: {r.name}")
                    summary.skipped += 1
                    continue
                try:
                    rows = conn.execute(
                        UPSERT_SQL,
                        (
                            r.name,
                            str(r.price) if r.price is not None else None,
                            r.grade,
                            r.image_url,
                            r.product_url,
                            ts,
                            ts,
                        ),
                    ).fetchall()
                except sqlite3.Error as e:
                    console.log(f"Error saving product {r.name or r.product_url}: {e}")
                    summary.failed += 1
                    continue
                row = rows[0]
                summary.ids.append(row["id"])
                if row["created_at"] == row["updated_at"]:
                    summary.new += 1
                else:
                    summary.updated += 1
            try:
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise PersistenceError(f"failed to commit transaction: {e}") from e
        finally:
            conn.close()
        console.log(f"Saved {summary.new} new products, updated {summary.updated} existing products")
        return summary

    def get_product(self, product_id: int) -> Optional[StoredProduct]:
        conn = self._conn()
        try:
            row = conn.execute(
                f"SELECT {PRODUCT_COLUMNS} FROM products WHERE id = ?",
                (product_id,),
            ).fetchone()
        finally:
            conn.close()
        return _row_to_product(row) if row else None

    def products_by_grade(self, grade: str) -> List[StoredProduct]:
        conn = self._conn()
        try:
            rows = conn.execute(
                f"SELECT {PRODUCT_COLUMNS} FROM products WHERE grade = ? ORDER BY created_at DESC, id DESC",
                (grade,),
            ).fetchall()
        finally:
            conn.close()
        return [_row_to_product(r) for r in rows]

    def list_products(
        self,
        *,
        page: int = 1,
        limit: int = 50,
        sort: str = "created_at",
        order: str = "DESC",
        name: Optional[str] = None,
    ) -> ProductPage:
        """Paginated listing with a whitelisted sort and optional name search."""
        page = max(1, page)
        limit = max(1, limit)
        sort_column = sort if sort in SORT_COLUMNS else "created_at"
        sort_order = order.upper() if order and order.upper() in SORT_ORDERS else "DESC"
        where = ""
        params: List[object] = []
        if name and name.strip():
            # LIKE is case-insensitive for ASCII in sqlite
            where = "WHERE name LIKE ?"
            params.append(f"%{name.strip()}%")
        conn = self._conn()
        try:
            rows = conn.execute(
                f"SELECT {PRODUCT_COLUMNS} FROM products {where} "
                f"ORDER BY {sort_column} {sort_order}, id {sort_order} LIMIT ? OFFSET ?",
                (*params, limit, (page - 1) * limit),
            ).fetchall()
            total = conn.execute(f"SELECT COUNT(*) FROM products {where}", params).fetchone()[0]
        finally:
            conn.close()
        return ProductPage(
            products=[_row_to_product(r) for r in rows],
            page=page,
            limit=limit,
            total=total,
        )
