"""
Catalog store: clients, categories and products.

The dialogue engine only talks to the methods of ``MemoryCatalog`` (the
PostgreSQL store in ``orderbot.db`` exposes the same ones):

```
list_clients() / get_client(id) / search_clients(term) / add_client(name)
list_categories() / get_category(id)
list_products(category_id=None, active_only=True) / get_product(id)
search_products(term, category_id=None)
price_for(product, client) -> int
```

Search is substring based, case and accent insensitive ("perez" finds
"Juan Pérez") and keeps catalog order. Categories whose name is blank or a
placeholder left behind by a spreadsheet export ("undefined", "null") are
never returned.
"""

import logging
import threading
import unicodedata

from .models import Category, Client, Product
from .pricing import TierPricing

log = logging.getLogger("orderbot.catalog")

PLACEHOLDER_NAMES = {"undefined", "null", "none", "nan"}


def normalize(text) -> str:
    decomposed = unicodedata.normalize("NFKD", str(text or ""))
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return stripped.casefold().strip()


def usable_name(name) -> bool:
    value = str(name or "").strip()
    return bool(value) and value.lower() not in PLACEHOLDER_NAMES


def usable_categories(categories) -> list[Category]:
    return [c for c in categories if usable_name(c.name)]


def search_by_name(items, term: str) -> list:
    """Items whose ``name`` contains ``term``, in their original order."""
    needle = normalize(term)
    if not needle:
        return []
    return [it for it in items if usable_name(it.name) and needle in normalize(it.name)]


def next_client_id(clients) -> int:
    return max((c.id for c in clients), default=0) + 1


# Clearly labeled demo data. Used when no spreadsheet or database is
# configured, or when the database is down and nothing was cached yet.
SAMPLE_CLIENTS = [
    Client(id=1, name="Juan Pérez", price_tier=1, preferred_product_ids=(1, 3)),
    Client(id=2, name="María González", price_tier=2, preferred_product_ids=(2,)),
    Client(id=3, name="Carlos Rodríguez", price_tier=1),
]

SAMPLE_CATEGORIES = [
    Category(id=1, name="Galletitas"),
    Category(id=2, name="Bebidas"),
    Category(id=3, name="Lácteos"),
]

SAMPLE_PRODUCTS = [
    Product(
        id=1, category_id=1, name="Oreo Original 117g", base_price=450,
        tier_prices={1: 450, 2: 420, 3: 400, 4: 380, 5: 360},
    ),
    Product(
        id=2, category_id=2, name="Coca Cola 500ml", base_price=350,
        tier_prices={1: 350, 2: 330, 3: 310, 4: 290, 5: 270},
    ),
    Product(
        id=3, category_id=3, name="Leche Entera 1L", base_price=280,
        tier_prices={1: 280, 2: 260, 3: 240, 4: 220, 5: 200},
    ),
]


class MemoryCatalog:
    def __init__(self, clients=(), categories=(), products=(), pricing=None, is_fallback=False):
        self._lock = threading.Lock()
        self._clients: list[Client] = list(clients)
        self._categories: list[Category] = list(categories)
        self._products: list[Product] = list(products)
        self.pricing = pricing or TierPricing()
        self.is_fallback = is_fallback

    @classmethod
    def sample(cls, pricing=None, reason="no spreadsheet or database configured") -> "MemoryCatalog":
        log.warning("Using the built-in SAMPLE catalog (%s)", reason)
        return cls(SAMPLE_CLIENTS, SAMPLE_CATEGORIES, SAMPLE_PRODUCTS, pricing=pricing, is_fallback=True)

    def replace(self, clients=None, categories=None, products=None) -> None:
        with self._lock:
            if clients is not None:
                self._clients = list(clients)
            if categories is not None:
                self._categories = list(categories)
            if products is not None:
                self._products = list(products)
            self.is_fallback = False

    # ---------- clients ----------

    def list_clients(self) -> list[Client]:
        return [c for c in self._clients if usable_name(c.name)]

    def get_client(self, client_id) -> Client | None:
        for c in self._clients:
            if c.id == client_id:
                return c
        return None

    def search_clients(self, term: str) -> list[Client]:
        return search_by_name(self._clients, term)

    def add_client(self, name: str) -> Client:
        with self._lock:
            client = Client(id=next_client_id(self._clients), name=name.strip(), price_tier=1)
            self._clients.append(client)
        log.info("Added client %s (%s)", client.id, client.name)
        return client

    # ---------- categories ----------

    def list_categories(self) -> list[Category]:
        return usable_categories(self._categories)

    def get_category(self, category_id) -> Category | None:
        for c in self.list_categories():
            if c.id == category_id:
                return c
        return None

    # ---------- products ----------

    def list_products(self, category_id=None, active_only=True) -> list[Product]:
        out = []
        for p in self._products:
            if active_only and not p.active:
                continue
            if category_id is not None and p.category_id != category_id:
                continue
            out.append(p)
        return out

    def get_product(self, product_id) -> Product | None:
        for p in self._products:
            if p.id == product_id:
                return p
        return None

    def search_products(self, term: str, category_id=None) -> list[Product]:
        return search_by_name(self.list_products(category_id=category_id), term)

    def price_for(self, product: Product, client: Client | None) -> int:
        return self.pricing.price_for(product, client)
