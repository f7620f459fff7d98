from datetime import datetime

import pytest

from orderbot.catalog import MemoryCatalog, SAMPLE_CATEGORIES, SAMPLE_CLIENTS, SAMPLE_PRODUCTS
from orderbot.config import EngineOptions
from orderbot.engine import DialogueEngine
from orderbot.models import Category, Product
from orderbot.orders import MemoryOrderSink

FIXED_NOW = datetime(2025, 3, 14, 10, 30)


@pytest.fixture
def catalog():
    categories = list(SAMPLE_CATEGORIES) + [Category(id=4, name="Congelados"), Category(id=5, name="undefined")]
    products = list(SAMPLE_PRODUCTS) + [
        Product(id=4, category_id=1, name="Oreo Rellena Doble", base_price=500, tier_prices={1: 500, 2: 470}),
        Product(id=5, category_id=2, name="Sprite 500ml", base_price=340, active=False),
    ]
    return MemoryCatalog(SAMPLE_CLIENTS, categories, products)


@pytest.fixture
def sink():
    return MemoryOrderSink()


@pytest.fixture
def make_engine(catalog, sink):
    def factory(catalog=catalog, sink=sink, **options):
        return DialogueEngine(catalog, sink, options=EngineOptions(**options), clock=lambda: FIXED_NOW)

    return factory


@pytest.fixture
def engine(make_engine):
    return make_engine()
