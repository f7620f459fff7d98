"""
Spreadsheet layout of the catalog and the order log (.xlsx via openpyxl).

One sheet per table, header row 1, one record per row:

```
Clientes        cliente_id | nombre | telefono | direccion | zona | lista | productos_preferidos (optional, "1, 7")
Categorias      categoria_id | categoria_nombre
Productos       producto_id | categoria_id | producto_nombre | precio | precio1..precio5 | activo (SI/NO)
Pedidos         pedido_id | fecha_hora | cliente_id | cliente_nombre | items_cantidad | total | estado
DetallePedidos  detalle_id | pedido_id | producto_id | producto_nombre | categoria_id | cantidad | precio_unitario | importe
```

Columns are looked up by header name so extra columns are ignored.
Rows without an id or a name are skipped.
"""

import logging
import os
import threading

from openpyxl import Workbook, load_workbook

from .models import Category, Client, LineItem, Order, Product
from .orders import line_detail_id
from .pricing import TIERS, normalize_tier

log = logging.getLogger("orderbot.workbook")

CLIENTS_SHEET = "Clientes"
CATEGORIES_SHEET = "Categorias"
PRODUCTS_SHEET = "Productos"
ORDERS_SHEET = "Pedidos"
ORDER_LINES_SHEET = "DetallePedidos"

ORDER_HEADERS = ["pedido_id", "fecha_hora", "cliente_id", "cliente_nombre", "items_cantidad", "total", "estado"]
ORDER_LINE_HEADERS = [
    "detalle_id", "pedido_id", "producto_id", "producto_nombre",
    "categoria_id", "cantidad", "precio_unitario", "importe",
]

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


def _to_int(value, default=None):
    if value in (None, "", "nan"):
        return default
    try:
        return int(float(str(value).replace(",", ".").strip()))
    except (TypeError, ValueError):
        return default


def _to_text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip()


def _to_ids(value) -> tuple:
    if value in (None, ""):
        return ()
    parts = _to_text(value).replace(";", ",").split(",")
    return tuple(i for i in (_to_int(p) for p in parts) if i is not None)


def _is_active(value) -> bool:
    # empty cell counts as active
    text = _to_text(value).upper()
    return text not in ("NO", "N", "FALSE", "0")


def _sheet_rows(wb, title: str) -> list[dict]:
    if title not in wb.sheetnames:
        log.warning("Sheet %r not found in workbook", title)
        return []
    sheet = wb[title]
    rows_iter = sheet.iter_rows(min_row=1, max_row=1, values_only=True)
    headers_row = next(rows_iter, None)
    if not headers_row:
        return []
    headers = [str(h).strip().lower() if h is not None else "" for h in headers_row]
    out = []
    for row in sheet.iter_rows(min_row=2, values_only=True):
        if not any(cell not in (None, "") for cell in row):
            continue
        out.append({name: row[idx] for idx, name in enumerate(headers) if name and idx < len(row)})
    return out


def parse_clients(rows) -> list[Client]:
    clients = []
    for row in rows:
        client_id = _to_int(row.get("cliente_id"))
        name = _to_text(row.get("nombre"))
        if client_id is None or not name:
            continue
        clients.append(
            Client(
                id=client_id,
                name=name,
                phone=_to_text(row.get("telefono")),
                address=_to_text(row.get("direccion")),
                zone=_to_text(row.get("zona")),
                price_tier=normalize_tier(row.get("lista")),
                preferred_product_ids=_to_ids(row.get("productos_preferidos")),
            )
        )
    return clients


def parse_categories(rows) -> list[Category]:
    categories = []
    for row in rows:
        category_id = _to_int(row.get("categoria_id"))
        if category_id is None:
            continue
        # blank/placeholder names are kept here and filtered by the catalog
        categories.append(Category(id=category_id, name=_to_text(row.get("categoria_nombre"))))
    return categories


def parse_products(rows) -> list[Product]:
    products = []
    for row in rows:
        product_id = _to_int(row.get("producto_id"))
        name = _to_text(row.get("producto_nombre"))
        if product_id is None or not name:
            continue
        tier_prices = {}
        for tier in TIERS:
            value = _to_int(row.get(f"precio{tier}"))
            if value is not None:
                tier_prices[tier] = value
        products.append(
            Product(
                id=product_id,
                category_id=_to_int(row.get("categoria_id"), 0),
                name=name,
                base_price=_to_int(row.get("precio"), 0),
                tier_prices=tier_prices,
                active=_is_active(row.get("activo")),
            )
        )
    return products


def load_catalog(path: str) -> tuple[list[Client], list[Category], list[Product]]:
    """Read clients, categories and products from an .xlsx file."""
    wb = load_workbook(path, read_only=True, data_only=True)
    try:
        clients = parse_clients(_sheet_rows(wb, CLIENTS_SHEET))
        categories = parse_categories(_sheet_rows(wb, CATEGORIES_SHEET))
        products = parse_products(_sheet_rows(wb, PRODUCTS_SHEET))
    finally:
        wb.close()
    log.info(
        "Loaded catalog from %s: %s clients, %s categories, %s products",
        path, len(clients), len(categories), len(products),
    )
    return clients, categories, products


def order_row(order: Order) -> list:
    return [
        order.order_id,
        order.timestamp.strftime(TIMESTAMP_FORMAT),
        order.client_id,
        order.client_name,
        order.line_item_count,
        order.total,
        order.status.value,
    ]


def order_line_rows(order: Order, lines) -> list[list]:
    rows = []
    for n, item in enumerate(lines, 1):
        rows.append([
            line_detail_id(order.order_id, n),
            order.order_id,
            item.product_id,
            item.product_name,
            item.category_id,
            item.quantity,
            item.unit_price,
            item.line_total,
        ])
    return rows


class WorkbookOrderExporter:
    """Appends every finalized order to the Pedidos/DetallePedidos sheets of ``path``."""

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()

    def _open(self):
        if os.path.exists(self.path):
            return load_workbook(self.path)
        wb = Workbook()
        # drop the default empty sheet
        wb.remove(wb.active)
        return wb

    @staticmethod
    def _sheet(wb, title, headers):
        if title in wb.sheetnames:
            return wb[title]
        sheet = wb.create_sheet(title)
        sheet.append(headers)
        return sheet

    def export(self, order: Order, lines: list[LineItem]) -> None:
        with self._lock:
            wb = self._open()
            orders = self._sheet(wb, ORDERS_SHEET, ORDER_HEADERS)
            details = self._sheet(wb, ORDER_LINES_SHEET, ORDER_LINE_HEADERS)
            orders.append(order_row(order))
            for row in order_line_rows(order, lines):
                details.append(row)
            wb.save(self.path)
        log.info("Order %s written to %s", order.order_id, self.path)
