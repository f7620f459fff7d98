import itertools
import logging
import threading
from datetime import datetime

from .errors import InvariantViolation
from .models import Client, LineItem, Order, OrderStatus

log = logging.getLogger("orderbot.orders")


def format_order_id(prefix: str, number: int) -> str:
    return f"{prefix}{number:03d}"


def line_detail_id(order_id: str, position: int) -> str:
    """Id of the n-th (1-based) line of an order, as stored in DetallePedidos."""
    return f"{order_id}_{position}"


def build_order(order_id: str, client: Client | None, cart, now: datetime | None = None) -> tuple[Order, list[LineItem]]:
    """
    Snapshot a cart into an order record plus its lines.

    Raises InvariantViolation for an empty cart or when no client is bound;
    nothing is allocated or written in that case.
    """
    if not cart:
        raise InvariantViolation("cart is empty")
    if client is None:
        raise InvariantViolation("no client selected")
    lines = list(cart)
    order = Order(
        order_id=order_id,
        timestamp=now or datetime.now(),
        client_id=client.id,
        client_name=client.name,
        line_item_count=len(lines),
        total=sum(item.line_total for item in lines),
        status=OrderStatus.PENDING,
    )
    return order, lines


def export_order(exporters, order: Order, lines) -> None:
    """Hand a stored order to each exporter. A failing exporter is logged and skipped."""
    for exporter in exporters:
        try:
            exporter.export(order, lines)
        except Exception as e:
            log.exception("Exporting order %s failed: %s", order.order_id, e)


def decrement_line(cart, position: int) -> list[LineItem]:
    """Return a new cart with line ``position`` (0-based) reduced by one; 0 drops it."""
    out = []
    for idx, item in enumerate(cart):
        if idx != position:
            out.append(item)
            continue
        if item.quantity > 1:
            out.append(
                LineItem(
                    product_id=item.product_id,
                    product_name=item.product_name,
                    category_id=item.category_id,
                    quantity=item.quantity - 1,
                    unit_price=item.unit_price,
                )
            )
    return out


class MemoryOrderSink:
    """
    Append-only order store kept in process memory.

    Appending an order id that is already stored is a no-op, so a caller
    retrying after a timeout cannot create a duplicate. ``exporters`` get a
    copy of every new order (e.g. the spreadsheet mirror); an exporter
    failure is logged and does not undo the append.
    """

    def __init__(self, prefix: str = "PED", start: int = 1, exporters=()):
        self._prefix = prefix
        self._counter = itertools.count(start)
        self._lock = threading.Lock()
        self._orders: dict[str, Order] = {}
        self._lines: dict[str, list[LineItem]] = {}
        self._exporters = list(exporters)

    def next_order_id(self) -> str:
        with self._lock:
            while True:
                order_id = format_order_id(self._prefix, next(self._counter))
                if order_id not in self._orders:
                    return order_id

    def append(self, order: Order, lines) -> None:
        with self._lock:
            if order.order_id in self._orders:
                log.info("Order %s already stored, skipping duplicate append", order.order_id)
                return
            self._orders[order.order_id] = order
            self._lines[order.order_id] = list(lines)
        export_order(self._exporters, order, lines)

    def list_orders(self) -> list[Order]:
        return list(self._orders.values())

    def get_order(self, order_id: str):
        order = self._orders.get(order_id)
        if order is None:
            return None
        return order, list(self._lines.get(order_id, []))
