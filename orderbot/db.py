import logging
import time

import psycopg
from psycopg.rows import dict_row

from .catalog import MemoryCatalog
from .config import DATABASE_URL
from .errors import UpstreamUnavailable
from .models import Category, Client, LineItem, Order, OrderStatus, Product
from .orders import export_order, format_order_id, line_detail_id
from .pricing import TIERS, TierPricing, normalize_tier

log = logging.getLogger("orderbot.db")


# =========================
# Connection
# =========================
def get_conn(dsn=None):
    dsn = dsn or DATABASE_URL
    if not dsn:
        raise RuntimeError("DATABASE_URL is not set")
    return psycopg.connect(dsn, row_factory=dict_row)


# =========================
# Init / migrations (safe)
# =========================
SCHEMA_SQL = """
-- Clientes
CREATE TABLE IF NOT EXISTS clients (
  id INTEGER PRIMARY KEY,
  name TEXT NOT NULL,
  phone TEXT NOT NULL DEFAULT '',
  address TEXT NOT NULL DEFAULT '',
  zone TEXT NOT NULL DEFAULT '',
  price_tier INTEGER NOT NULL DEFAULT 1,
  preferred_products INTEGER[] NOT NULL DEFAULT '{}',
  created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

-- Categorias
CREATE TABLE IF NOT EXISTS categories (
  id INTEGER PRIMARY KEY,
  name TEXT NOT NULL DEFAULT ''
);

-- Productos (price = precio base, price1..price5 = listas)
CREATE TABLE IF NOT EXISTS products (
  id INTEGER PRIMARY KEY,
  category_id INTEGER,
  name TEXT NOT NULL,
  price INTEGER NOT NULL DEFAULT 0,
  price1 INTEGER,
  price2 INTEGER,
  price3 INTEGER,
  price4 INTEGER,
  price5 INTEGER,
  active BOOLEAN NOT NULL DEFAULT TRUE
);

-- Pedidos
CREATE SEQUENCE IF NOT EXISTS order_number_seq;

CREATE TABLE IF NOT EXISTS orders (
  id TEXT PRIMARY KEY,
  created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
  client_id INTEGER,
  client_name TEXT NOT NULL DEFAULT '',
  item_count INTEGER NOT NULL DEFAULT 0,
  total INTEGER NOT NULL DEFAULT 0,
  status TEXT NOT NULL DEFAULT 'PENDIENTE'
);

-- DetallePedidos
CREATE TABLE IF NOT EXISTS order_lines (
  id TEXT PRIMARY KEY,
  order_id TEXT NOT NULL REFERENCES orders(id) ON DELETE CASCADE,
  position INTEGER NOT NULL DEFAULT 0,
  product_id INTEGER,
  product_name TEXT NOT NULL DEFAULT '',
  category_id INTEGER,
  quantity INTEGER NOT NULL,
  unit_price INTEGER NOT NULL,
  line_total INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_products_category ON products(category_id);
CREATE INDEX IF NOT EXISTS idx_order_lines_order ON order_lines(order_id);

-- columns added after the first release
ALTER TABLE clients ADD COLUMN IF NOT EXISTS preferred_products INTEGER[] NOT NULL DEFAULT '{}';
ALTER TABLE order_lines ADD COLUMN IF NOT EXISTS position INTEGER NOT NULL DEFAULT 0;
"""


def init_db(dsn=None):
    """Create missing tables and columns. Safe to run on every start."""
    with get_conn(dsn) as conn:
        with conn.cursor() as cur:
            cur.execute(SCHEMA_SQL)
        conn.commit()


# =========================
# Row mapping
# =========================
def row_to_client(row) -> Client:
    return Client(
        id=int(row["id"]),
        name=row.get("name") or "",
        phone=row.get("phone") or "",
        address=row.get("address") or "",
        zone=row.get("zone") or "",
        price_tier=normalize_tier(row.get("price_tier")),
        preferred_product_ids=tuple(int(p) for p in row.get("preferred_products") or ()),
    )


def row_to_product(row) -> Product:
    tier_prices = {}
    for tier in TIERS:
        value = row.get(f"price{tier}")
        if value is not None:
            tier_prices[tier] = int(value)
    return Product(
        id=int(row["id"]),
        category_id=int(row["category_id"]) if row.get("category_id") is not None else 0,
        name=row.get("name") or "",
        base_price=int(row.get("price") or 0),
        tier_prices=tier_prices,
        active=bool(row.get("active")),
    )


def row_to_order(row) -> Order:
    return Order(
        order_id=row["id"],
        timestamp=row["created_at"],
        client_id=row.get("client_id"),
        client_name=row.get("client_name") or "",
        line_item_count=int(row.get("item_count") or 0),
        total=int(row.get("total") or 0),
        status=OrderStatus.parse(row.get("status")),
    )


def row_to_line(row) -> LineItem:
    return LineItem(
        product_id=row.get("product_id"),
        product_name=row.get("product_name") or "",
        category_id=row.get("category_id"),
        quantity=int(row["quantity"]),
        unit_price=int(row["unit_price"]),
    )


# =========================
# Store
# =========================
class PostgresStore:
    """
    Catalog store and order sink on PostgreSQL.

    Catalog reads go through a snapshot refreshed at most every
    ``cache_seconds``. When the database cannot be read the last good
    snapshot keeps serving; with no snapshot yet the labeled sample catalog
    is used (if allowed), otherwise UpstreamUnavailable is raised.

    Writes are retried ``retries`` times. ``append`` uses ON CONFLICT DO
    NOTHING so retrying an order that actually got written is harmless.
    """

    def __init__(self, dsn=None, pricing=None, order_id_prefix="PED", retries=3, retry_delay=0.5,
                 use_sample_catalog=True, cache_seconds=30.0, clock=time.monotonic, exporters=()):
        self.dsn = dsn
        self.pricing = pricing or TierPricing()
        self.order_id_prefix = order_id_prefix
        self.retries = max(retries, 1)
        self.retry_delay = retry_delay
        self.use_sample_catalog = use_sample_catalog
        self.cache_seconds = cache_seconds
        self._clock = clock
        self._snapshot: MemoryCatalog | None = None
        self._exporters = list(exporters)
        self._loaded_at = 0.0

    # ---------- plumbing ----------

    def _retry(self, what, fn):
        last = None
        for attempt in range(1, self.retries + 1):
            try:
                return fn()
            except psycopg.Error as e:
                last = e
                log.warning("%s failed (attempt %s/%s): %s", what, attempt, self.retries, e)
                if attempt < self.retries and self.retry_delay:
                    time.sleep(self.retry_delay)
        raise UpstreamUnavailable(f"{what} failed after {self.retries} attempts") from last

    def _fetch_catalog(self) -> MemoryCatalog:
        with get_conn(self.dsn) as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT id, name, phone, address, zone, price_tier, preferred_products FROM clients ORDER BY id")
                clients = [row_to_client(r) for r in cur.fetchall()]
                cur.execute("SELECT id, name FROM categories ORDER BY id")
                categories = [Category(id=int(r["id"]), name=r.get("name") or "") for r in cur.fetchall()]
                cur.execute(
                    """
                    SELECT id, category_id, name, price, price1, price2, price3, price4, price5, active
                    FROM products
                    ORDER BY id
                    """
                )
                products = [row_to_product(r) for r in cur.fetchall()]
        return MemoryCatalog(clients, categories, products, pricing=self.pricing)

    def _current(self) -> MemoryCatalog:
        now = self._clock()
        if self._snapshot is not None and now - self._loaded_at < self.cache_seconds:
            return self._snapshot
        try:
            self._snapshot = self._retry("load catalog", self._fetch_catalog)
        except UpstreamUnavailable:
            if self._snapshot is not None:
                log.warning("Catalog database unreachable, serving the last loaded snapshot")
            elif self.use_sample_catalog:
                log.error("Catalog database unreachable and nothing cached, serving the SAMPLE catalog")
                self._snapshot = MemoryCatalog.sample(pricing=self.pricing, reason="catalog database unreachable")
            else:
                raise
        self._loaded_at = now
        return self._snapshot

    def invalidate(self) -> None:
        self._loaded_at = 0.0

    @property
    def is_fallback(self) -> bool:
        return bool(self._snapshot and self._snapshot.is_fallback)

    # ---------- catalog ----------

    def list_clients(self):
        return self._current().list_clients()

    def get_client(self, client_id):
        return self._current().get_client(client_id)

    def search_clients(self, term):
        return self._current().search_clients(term)

    def list_categories(self):
        return self._current().list_categories()

    def get_category(self, category_id):
        return self._current().get_category(category_id)

    def list_products(self, category_id=None, active_only=True):
        return self._current().list_products(category_id=category_id, active_only=active_only)

    def get_product(self, product_id):
        return self._current().get_product(product_id)

    def search_products(self, term, category_id=None):
        return self._current().search_products(term, category_id=category_id)

    def price_for(self, product, client):
        return self.pricing.price_for(product, client)

    def add_client(self, name: str) -> Client:
        name = name.strip()

        def insert():
            with get_conn(self.dsn) as conn:
                with conn.cursor() as cur:
                    # serialize id allocation between concurrent inserts
                    cur.execute("LOCK TABLE clients IN SHARE ROW EXCLUSIVE MODE")
                    cur.execute("SELECT COALESCE(MAX(id), 0) + 1 AS next_id FROM clients")
                    new_id = int(cur.fetchone()["next_id"])
                    cur.execute(
                        "INSERT INTO clients (id, name, price_tier) VALUES (%s, %s, 1)",
                        (new_id, name),
                    )
                conn.commit()
            return new_id

        new_id = self._retry("add client", insert)
        log.info("Added client %s (%s)", new_id, name)
        self.invalidate()
        return Client(id=new_id, name=name, price_tier=1)

    def replace_catalog(self, clients=(), categories=(), products=()) -> None:
        """Upsert catalog rows (spreadsheet import). Rows missing from the input are left alone."""
        clients, categories, products = list(clients), list(categories), list(products)
        with get_conn(self.dsn) as conn:
            with conn.cursor() as cur:
                for c in clients:
                    cur.execute(
                        """
                        INSERT INTO clients (id, name, phone, address, zone, price_tier, preferred_products)
                        VALUES (%s, %s, %s, %s, %s, %s, %s)
                        ON CONFLICT (id) DO UPDATE SET
                          name = EXCLUDED.name,
                          phone = EXCLUDED.phone,
                          address = EXCLUDED.address,
                          zone = EXCLUDED.zone,
                          price_tier = EXCLUDED.price_tier,
                          preferred_products = EXCLUDED.preferred_products
                        """,
                        (c.id, c.name, c.phone, c.address, c.zone, c.price_tier, list(c.preferred_product_ids)),
                    )
                for cat in categories:
                    cur.execute(
                        """
                        INSERT INTO categories (id, name) VALUES (%s, %s)
                        ON CONFLICT (id) DO UPDATE SET name = EXCLUDED.name
                        """,
                        (cat.id, cat.name),
                    )
                for p in products:
                    tiers = [p.tier_prices.get(t) for t in TIERS]
                    cur.execute(
                        """
                        INSERT INTO products (id, category_id, name, price, price1, price2, price3, price4, price5, active)
                        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                        ON CONFLICT (id) DO UPDATE SET
                          category_id = EXCLUDED.category_id,
                          name = EXCLUDED.name,
                          price = EXCLUDED.price,
                          price1 = EXCLUDED.price1,
                          price2 = EXCLUDED.price2,
                          price3 = EXCLUDED.price3,
                          price4 = EXCLUDED.price4,
                          price5 = EXCLUDED.price5,
                          active = EXCLUDED.active
                        """,
                        (p.id, p.category_id, p.name, p.base_price, *tiers, p.active),
                    )
            conn.commit()
        log.info("Imported %s clients, %s categories, %s products", len(clients), len(categories), len(products))
        self.invalidate()

    # ---------- orders ----------

    def next_order_id(self) -> str:
        def allocate():
            with get_conn(self.dsn) as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT nextval('order_number_seq') AS n")
                    number = int(cur.fetchone()["n"])
                conn.commit()
            return number

        return format_order_id(self.order_id_prefix, self._retry("allocate order id", allocate))

    def append(self, order: Order, lines) -> None:
        lines = list(lines)

        def write():
            with get_conn(self.dsn) as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        """
                        INSERT INTO orders (id, created_at, client_id, client_name, item_count, total, status)
                        VALUES (%s, %s, %s, %s, %s, %s, %s)
                        ON CONFLICT (id) DO NOTHING
                        """,
                        (order.order_id, order.timestamp, order.client_id, order.client_name,
                         order.line_item_count, order.total, order.status.value),
                    )
                    inserted = cur.rowcount == 1
                    for n, item in enumerate(lines, 1):
                        cur.execute(
                            """
                            INSERT INTO order_lines
                              (id, order_id, position, product_id, product_name, category_id, quantity, unit_price, line_total)
                            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                            ON CONFLICT (id) DO NOTHING
                            """,
                            (line_detail_id(order.order_id, n), order.order_id, n, item.product_id,
                             item.product_name, item.category_id, item.quantity, item.unit_price,
                             item.line_total),
                        )
                conn.commit()
            return inserted

        if self._retry(f"store order {order.order_id}", write):
            export_order(self._exporters, order, lines)
        else:
            log.info("Order %s already stored, skipping duplicate append", order.order_id)

    def list_orders(self) -> list[Order]:
        def fetch():
            with get_conn(self.dsn) as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        """
                        SELECT id, created_at, client_id, client_name, item_count, total, status
                        FROM orders
                        ORDER BY created_at ASC
                        """
                    )
                    return [row_to_order(r) for r in cur.fetchall()]

        return self._retry("list orders", fetch)

    def get_order(self, order_id: str):
        def fetch():
            with get_conn(self.dsn) as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        """
                        SELECT id, created_at, client_id, client_name, item_count, total, status
                        FROM orders
                        WHERE id = %s
                        """,
                        (order_id,),
                    )
                    row = cur.fetchone()
                    if not row:
                        return None
                    cur.execute(
                        """
                        SELECT product_id, product_name, category_id, quantity, unit_price
                        FROM order_lines
                        WHERE order_id = %s
                        ORDER BY position, id
                        """,
                        (order_id,),
                    )
                    return row_to_order(row), [row_to_line(r) for r in cur.fetchall()]

        return self._retry(f"load order {order_id}", fetch)
