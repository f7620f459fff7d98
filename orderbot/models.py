"""
Domain records shared by the stores, the dialogue engine and the transports.

Ids are integers for catalog rows (they come from the spreadsheet's
``*_id`` columns) and strings for orders (``PED001`` ...).
"""

import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


class State(Enum):
    IDLE = "idle"
    AWAITING_CLIENT_SELECTION = "awaiting_client_selection"
    AWAITING_CLIENT_SEARCH = "awaiting_client_search"
    AWAITING_NEW_CLIENT_NAME = "awaiting_new_client_name"
    AWAITING_CATEGORY_SELECTION = "awaiting_category_selection"
    AWAITING_PRODUCT_SELECTION = "awaiting_product_selection"
    AWAITING_PRODUCT_SEARCH = "awaiting_product_search"
    AWAITING_QUANTITY = "awaiting_quantity"
    REVIEWING_CART = "reviewing_cart"
    FINALIZED = "finalized"


class OrderStatus(Enum):
    # values are what the Pedidos sheet stores in its "estado" column
    DRAFT = "BORRADOR"
    PENDING = "PENDIENTE"
    CONFIRMED = "CONFIRMADO"
    CANCELLED = "CANCELADO"

    @classmethod
    def parse(cls, raw) -> "OrderStatus":
        value = str(raw or "").strip().upper()
        for status in cls:
            if status.value == value or status.name == value:
                return status
        return cls.PENDING


@dataclass(frozen=True)
class Client:
    id: int
    name: str
    phone: str = ""
    address: str = ""
    zone: str = ""
    price_tier: int = 1
    preferred_product_ids: tuple = ()


@dataclass(frozen=True)
class Category:
    id: int
    name: str


@dataclass(frozen=True)
class Product:
    id: int
    category_id: int
    name: str
    base_price: int = 0
    # tier number (1..5) -> price, filled from the precio1..precio5 columns
    tier_prices: dict = field(default_factory=dict, hash=False, compare=False)
    active: bool = True


@dataclass(frozen=True)
class LineItem:
    product_id: int
    product_name: str
    category_id: int
    quantity: int
    unit_price: int

    @property
    def line_total(self) -> int:
        return self.quantity * self.unit_price


@dataclass(frozen=True)
class Order:
    order_id: str
    timestamp: datetime
    client_id: int
    client_name: str
    line_item_count: int
    total: int
    status: OrderStatus = OrderStatus.PENDING


@dataclass(frozen=True)
class Choice:
    label: str
    token: str


@dataclass
class Prompt:
    """One outgoing message. No choices means free text is expected next."""

    text: str
    choices: list = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "text": self.text,
            "choices": [{"label": c.label, "token": c.token} for c in self.choices],
        }


@dataclass
class Session:
    user_id: str
    state: State = State.IDLE
    cart: list = field(default_factory=list)
    selected_client: Optional[Client] = None
    selected_category: Optional[Category] = None
    selected_product: Optional[Product] = None
    selected_unit_price: Optional[int] = None
    pending_order_id: Optional[str] = None
    last_seen: float = field(default_factory=time.monotonic)

    def clear_selection(self) -> None:
        self.selected_category = None
        self.selected_product = None
        self.selected_unit_price = None

    def cart_total(self) -> int:
        return sum(item.line_total for item in self.cart)
