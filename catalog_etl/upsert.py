"""Database helpers for idempotent catalog upserts.

:class:`CatalogStore` is the persistence boundary used by the ingestion
coordinator; :class:`PostgresCatalogStore` implements it with plain SQL over
psycopg2. Every per-record write happens inside :meth:`transaction`, which
commits on success, rolls back on error and turns concurrency errors such as
serialization failures into :class:`~catalog_etl.errors.TransactionConflict`.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Mapping, Optional, Protocol

import psycopg2
from psycopg2 import errors as pg_errors
from psycopg2 import sql
from psycopg2.extensions import connection as PGConnection
from psycopg2.extras import RealDictCursor

from .config import get_db_connection_string
from .errors import TransactionConflict
from .models import CatalogEntry, Feed, FeedStatus, Listing, Product, Retailer, RetailerRole

LOGGER = logging.getLogger(__name__)

PRODUCT_UPDATABLE_FIELDS = (
    "title",
    "brand",
    "category",
    "description",
    "image",
    "source_image_url",
    "tags",
)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS retailers (
    id SERIAL PRIMARY KEY,
    name TEXT NOT NULL UNIQUE,
    domain TEXT NOT NULL,
    role TEXT NOT NULL DEFAULT 'SPOKE',
    logo TEXT,
    scrape_interval_ms INTEGER NOT NULL DEFAULT 2000
);

CREATE TABLE IF NOT EXISTS products (
    id SERIAL PRIMARY KEY,
    slug TEXT NOT NULL UNIQUE,
    title TEXT NOT NULL,
    brand TEXT NOT NULL DEFAULT 'Unknown',
    category TEXT NOT NULL DEFAULT 'Plugin',
    description TEXT,
    image TEXT,
    source_image_url TEXT,
    min_price NUMERIC(12, 2),
    max_regular_price NUMERIC(12, 2),
    max_discount INTEGER NOT NULL DEFAULT 0,
    tags TEXT[] NOT NULL DEFAULT '{}',
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS listings (
    id SERIAL PRIMARY KEY,
    url TEXT NOT NULL UNIQUE,
    title TEXT NOT NULL DEFAULT '',
    price NUMERIC(12, 2) NOT NULL,
    original_price NUMERIC(12, 2),
    in_stock BOOLEAN NOT NULL DEFAULT TRUE,
    currency TEXT NOT NULL DEFAULT 'USD',
    product_id INTEGER NOT NULL REFERENCES products(id) ON DELETE CASCADE,
    retailer_id INTEGER NOT NULL REFERENCES retailers(id) ON DELETE CASCADE,
    last_scraped TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS listings_product_idx ON listings (product_id);
CREATE INDEX IF NOT EXISTS listings_retailer_idx ON listings (retailer_id);

CREATE TABLE IF NOT EXISTS price_history (
    id BIGSERIAL PRIMARY KEY,
    listing_id INTEGER NOT NULL REFERENCES listings(id) ON DELETE CASCADE,
    seen_at TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp(),
    price NUMERIC(12, 2) NOT NULL
);
CREATE INDEX IF NOT EXISTS price_history_listing_idx ON price_history (listing_id, seen_at DESC);

CREATE TABLE IF NOT EXISTS feeds (
    id SERIAL PRIMARY KEY,
    name TEXT NOT NULL,
    url TEXT NOT NULL,
    format TEXT NOT NULL DEFAULT 'JSON',
    status TEXT NOT NULL DEFAULT 'IDLE',
    error_message TEXT,
    last_synced_at TIMESTAMPTZ,
    retailer_id INTEGER NOT NULL REFERENCES retailers(id) ON DELETE CASCADE
);
"""

_FEED_SELECT = """
    SELECT
        f.id, f.name, f.url, f.format, f.status, f.error_message, f.last_synced_at,
        r.id AS retailer_id, r.name AS retailer_name, r.domain AS retailer_domain,
        r.role AS retailer_role, r.logo AS retailer_logo,
        r.scrape_interval_ms AS retailer_scrape_interval_ms
    FROM feeds f
    JOIN retailers r ON r.id = f.retailer_id
"""

_LISTING_COLUMNS = (
    "id, url, title, price, original_price, in_stock, currency, product_id, retailer_id, last_scraped"
)


class CatalogTransaction(Protocol):
    """Writes that make up one atomic per-record change."""

    def create_product(self, **fields: Any) -> Product:
        ...

    def update_product(self, product_id: int, fields: Mapping[str, Any]) -> None:
        ...

    def get_product(self, product_id: int) -> Optional[Product]:
        ...

    def slug_exists(self, slug: str) -> bool:
        ...

    def find_listing(self, url: str) -> Optional[Listing]:
        ...

    def upsert_listing(self, **fields: Any) -> Listing:
        ...

    def latest_price(self, listing_id: int) -> Optional[float]:
        ...

    def append_price(self, listing_id: int, price: float) -> None:
        ...

    def recalculate_product_stats(self, product_id: int) -> None:
        ...

    def delete_listing(self, listing_id: int) -> None:
        ...

    def count_listings(self, product_id: int) -> int:
        ...

    def delete_product(self, product_id: int) -> None:
        ...


class CatalogStore(Protocol):
    """Persistence collaborator for retailers, feeds and the catalog."""

    def ensure_schema(self) -> None:
        ...

    def upsert_retailer(
        self,
        name: str,
        domain: str,
        role: Optional[RetailerRole] = None,
        logo: Optional[str] = None,
        scrape_interval_ms: Optional[int] = None,
    ) -> Retailer:
        ...

    def get_retailer(self, name: str) -> Optional[Retailer]:
        ...

    def add_feed(self, name: str, url: str, retailer_id: int, fmt: str = "JSON") -> Feed:
        ...

    def get_feed(self, feed_id: int) -> Optional[Feed]:
        ...

    def list_feeds(self) -> List[Feed]:
        ...

    def delete_feed(self, feed_id: int) -> Optional[Feed]:
        ...

    def count_feeds(self, retailer_id: int) -> int:
        ...

    def set_feed_status(
        self, feed_id: int, status: FeedStatus, error_message: Optional[str] = None
    ) -> None:
        ...

    def load_catalog(self) -> List[CatalogEntry]:
        ...

    def listings_for_retailer(self, retailer_id: int) -> List[Listing]:
        ...

    def transaction(self) -> Any:
        ...


def get_db_connection(dsn: Optional[str] = None) -> PGConnection:
    """Return a psycopg2 connection using the DSN from the environment."""
    return psycopg2.connect(dsn or get_db_connection_string())


@contextmanager
def _translate_conflicts() -> Iterator[None]:
    try:
        yield
    except (
        pg_errors.SerializationFailure,
        pg_errors.DeadlockDetected,
        pg_errors.UniqueViolation,
    ) as exc:
        raise TransactionConflict(str(exc).strip()) from exc


def _feed_from_row(row: Mapping[str, Any]) -> Feed:
    retailer = Retailer(
        id=row["retailer_id"],
        name=row["retailer_name"],
        domain=row["retailer_domain"],
        role=row["retailer_role"],
        logo=row["retailer_logo"],
        scrape_interval_ms=row["retailer_scrape_interval_ms"],
    )
    return Feed(
        id=row["id"],
        name=row["name"],
        url=row["url"],
        format=row["format"],
        status=row["status"],
        error_message=row["error_message"],
        last_synced_at=row["last_synced_at"],
        retailer=retailer,
    )


class PostgresTransaction:
    """Catalog writes bound to one open psycopg2 transaction."""

    def __init__(self, conn: PGConnection) -> None:
        self.conn = conn

    def _cursor(self):
        return self.conn.cursor(cursor_factory=RealDictCursor)

    def create_product(self, **fields: Any) -> Product:
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO products (
                    slug, title, brand, category, description, image, source_image_url,
                    min_price, max_regular_price, max_discount, tags
                )
                VALUES (
                    %(slug)s, %(title)s, %(brand)s, %(category)s, %(description)s, %(image)s,
                    %(source_image_url)s, %(min_price)s, %(max_regular_price)s, %(max_discount)s, %(tags)s
                )
                RETURNING *;
                """,
                {
                    "slug": fields["slug"],
                    "title": fields["title"],
                    "brand": fields.get("brand", "Unknown"),
                    "category": fields.get("category", "Plugin"),
                    "description": fields.get("description"),
                    "image": fields.get("image"),
                    "source_image_url": fields.get("source_image_url"),
                    "min_price": fields.get("min_price"),
                    "max_regular_price": fields.get("max_regular_price"),
                    "max_discount": fields.get("max_discount", 0),
                    "tags": list(fields.get("tags") or []),
                },
            )
            return Product(**cur.fetchone())

    def update_product(self, product_id: int, fields: Mapping[str, Any]) -> None:
        unknown = set(fields) - set(PRODUCT_UPDATABLE_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update product fields: {sorted(unknown)}")
        if not fields:
            return
        assignments = [
            sql.SQL("{} = {}").format(sql.Identifier(name), sql.Placeholder(name)) for name in fields
        ]
        assignments.append(sql.SQL("updated_at = NOW()"))
        query = sql.SQL("UPDATE products SET {} WHERE id = {}").format(
            sql.SQL(", ").join(assignments), sql.Placeholder("product_id")
        )
        params = {**fields, "product_id": product_id}
        if "tags" in params:
            params["tags"] = list(params["tags"])
        with self.conn.cursor() as cur:
            cur.execute(query, params)

    def get_product(self, product_id: int) -> Optional[Product]:
        with self._cursor() as cur:
            cur.execute("SELECT * FROM products WHERE id = %s;", (product_id,))
            row = cur.fetchone()
        return Product(**row) if row else None

    def slug_exists(self, slug: str) -> bool:
        with self.conn.cursor() as cur:
            cur.execute("SELECT 1 FROM products WHERE slug = %s;", (slug,))
            return cur.fetchone() is not None

    def find_listing(self, url: str) -> Optional[Listing]:
        with self._cursor() as cur:
            cur.execute(f"SELECT {_LISTING_COLUMNS} FROM listings WHERE url = %s;", (url,))
            row = cur.fetchone()
        return Listing(**row) if row else None

    def upsert_listing(self, **fields: Any) -> Listing:
        """Insert or update a listing keyed by its url."""
        with self._cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO listings (
                    url, title, price, original_price, in_stock, currency,
                    product_id, retailer_id, last_scraped
                )
                VALUES (
                    %(url)s, %(title)s, %(price)s, %(original_price)s, %(in_stock)s, %(currency)s,
                    %(product_id)s, %(retailer_id)s, NOW()
                )
                ON CONFLICT (url) DO UPDATE
                SET
                    price = EXCLUDED.price,
                    original_price = EXCLUDED.original_price,
                    in_stock = EXCLUDED.in_stock,
                    currency = EXCLUDED.currency,
                    product_id = EXCLUDED.product_id,
                    last_scraped = NOW()
                RETURNING {_LISTING_COLUMNS};
                """,
                {
                    "url": fields["url"],
                    "title": fields.get("title", ""),
                    "price": fields["price"],
                    "original_price": fields.get("original_price"),
                    "in_stock": fields.get("in_stock", True),
                    "currency": fields.get("currency", "USD"),
                    "product_id": fields["product_id"],
                    "retailer_id": fields["retailer_id"],
                },
            )
            return Listing(**cur.fetchone())

    def latest_price(self, listing_id: int) -> Optional[float]:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                SELECT price
                FROM price_history
                WHERE listing_id = %s
                ORDER BY seen_at DESC, id DESC
                LIMIT 1;
                """,
                (listing_id,),
            )
            row = cur.fetchone()
        return float(row[0]) if row is not None else None

    def append_price(self, listing_id: int, price: float) -> None:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO price_history (listing_id, seen_at, price)
                VALUES (%s, clock_timestamp(), %s);
                """,
                (listing_id, price),
            )

    def recalculate_product_stats(self, product_id: int) -> None:
        """Refresh min price, max regular price and max discount from listings."""
        with self.conn.cursor() as cur:
            cur.execute(
                """
                UPDATE products p
                SET
                    min_price = s.min_price,
                    max_regular_price = s.max_regular,
                    max_discount = CASE
                        WHEN s.max_regular > s.min_price
                        THEN ROUND((s.max_regular - s.min_price) / s.max_regular * 100)::INTEGER
                        ELSE 0
                    END
                FROM (
                    SELECT MIN(price) AS min_price, MAX(COALESCE(original_price, price)) AS max_regular
                    FROM listings
                    WHERE product_id = %(product_id)s
                ) s
                WHERE p.id = %(product_id)s AND s.min_price IS NOT NULL;
                """,
                {"product_id": product_id},
            )

    def delete_listing(self, listing_id: int) -> None:
        with self.conn.cursor() as cur:
            cur.execute("DELETE FROM listings WHERE id = %s;", (listing_id,))

    def count_listings(self, product_id: int) -> int:
        with self.conn.cursor() as cur:
            cur.execute("SELECT COUNT(*) FROM listings WHERE product_id = %s;", (product_id,))
            return int(cur.fetchone()[0])

    def delete_product(self, product_id: int) -> None:
        with self.conn.cursor() as cur:
            cur.execute("DELETE FROM products WHERE id = %s;", (product_id,))


class PostgresCatalogStore:
    """:class:`CatalogStore` backed by PostgreSQL."""

    def __init__(self, dsn: Optional[str] = None, *, conn: Optional[PGConnection] = None) -> None:
        self.dsn = dsn or get_db_connection_string()
        self._conn = conn

    @property
    def conn(self) -> PGConnection:
        if self._conn is None or self._conn.closed:
            self._conn = get_db_connection(self.dsn)
            self._conn.autocommit = False
        return self._conn

    def close(self) -> None:
        if self._conn is not None and not self._conn.closed:
            self._conn.close()

    @contextmanager
    def transaction(self) -> Iterator[PostgresTransaction]:
        """Run the block in one transaction; commit on success, roll back on error."""
        conn = self.conn
        try:
            with _translate_conflicts():
                yield PostgresTransaction(conn)
                conn.commit()
        except Exception:
            conn.rollback()
            raise

    def _fetchall(self, query: str, params: Any = None) -> List[Dict[str, Any]]:
        with self.transaction() as tx:
            with tx._cursor() as cur:
                cur.execute(query, params)
                return list(cur.fetchall())

    def _fetchone(self, query: str, params: Any = None) -> Optional[Dict[str, Any]]:
        rows = self._fetchall(query, params)
        return rows[0] if rows else None

    def ensure_schema(self) -> None:
        with self.transaction() as tx:
            with tx.conn.cursor() as cur:
                cur.execute(SCHEMA_SQL)
        LOGGER.info("Catalog schema ensured")

    def upsert_retailer(
        self,
        name: str,
        domain: str,
        role: Optional[RetailerRole] = None,
        logo: Optional[str] = None,
        scrape_interval_ms: Optional[int] = None,
    ) -> Retailer:
        """Create or update a retailer by name; optional fields change only when given."""
        row = self._fetchone(
            """
            INSERT INTO retailers (name, domain, role, logo, scrape_interval_ms)
            VALUES (
                %(name)s, %(domain)s, COALESCE(%(role)s, 'SPOKE'), %(logo)s,
                COALESCE(%(interval)s, 2000)
            )
            ON CONFLICT (name) DO UPDATE
            SET
                role = COALESCE(%(role)s, retailers.role),
                logo = COALESCE(EXCLUDED.logo, retailers.logo),
                scrape_interval_ms = COALESCE(%(interval)s, retailers.scrape_interval_ms)
            RETURNING *;
            """,
            {
                "name": name,
                "domain": domain,
                "role": role.value if role else None,
                "logo": logo,
                "interval": scrape_interval_ms,
            },
        )
        return Retailer(**row)

    def get_retailer(self, name: str) -> Optional[Retailer]:
        row = self._fetchone("SELECT * FROM retailers WHERE name = %s;", (name,))
        return Retailer(**row) if row else None

    def add_feed(self, name: str, url: str, retailer_id: int, fmt: str = "JSON") -> Feed:
        row = self._fetchone(
            "INSERT INTO feeds (name, url, format, retailer_id) VALUES (%s, %s, %s, %s) RETURNING id;",
            (name, url, fmt, retailer_id),
        )
        return self.get_feed(row["id"])

    def get_feed(self, feed_id: int) -> Optional[Feed]:
        row = self._fetchone(_FEED_SELECT + " WHERE f.id = %s;", (feed_id,))
        return _feed_from_row(row) if row else None

    def list_feeds(self) -> List[Feed]:
        return [_feed_from_row(row) for row in self._fetchall(_FEED_SELECT + " ORDER BY f.id;")]

    def delete_feed(self, feed_id: int) -> Optional[Feed]:
        feed = self.get_feed(feed_id)
        if feed is None:
            return None
        with self.transaction() as tx:
            with tx.conn.cursor() as cur:
                cur.execute("DELETE FROM feeds WHERE id = %s;", (feed_id,))
        return feed

    def count_feeds(self, retailer_id: int) -> int:
        row = self._fetchone("SELECT COUNT(*) AS n FROM feeds WHERE retailer_id = %s;", (retailer_id,))
        return int(row["n"])

    def set_feed_status(
        self, feed_id: int, status: FeedStatus, error_message: Optional[str] = None
    ) -> None:
        with self.transaction() as tx:
            with tx.conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE feeds
                    SET
                        status = %(status)s,
                        error_message = %(error_message)s,
                        last_synced_at = CASE
                            WHEN %(status)s = 'SUCCESS' THEN NOW()
                            ELSE last_synced_at
                        END
                    WHERE id = %(feed_id)s;
                    """,
                    {"status": status.value, "error_message": error_message, "feed_id": feed_id},
                )

    def load_catalog(self) -> List[CatalogEntry]:
        rows = self._fetchall(
            "SELECT id, slug, title, brand, image, source_image_url, tags FROM products ORDER BY id;"
        )
        return [CatalogEntry(**row) for row in rows]

    def listings_for_retailer(self, retailer_id: int) -> List[Listing]:
        rows = self._fetchall(
            f"SELECT {_LISTING_COLUMNS} FROM listings WHERE retailer_id = %s ORDER BY id;",
            (retailer_id,),
        )
        return [Listing(**row) for row in rows]
