import logging
import os
from dataclasses import dataclass
from datetime import date, timedelta

from fastapi import FastAPI, Request, HTTPException
from fastapi.responses import HTMLResponse, JSONResponse
from fastapi.templating import Jinja2Templates
from pydantic import BaseModel
from telegram import Update

from . import config
from .catalog import MemoryCatalog, normalize
from .engine import DialogueEngine
from .errors import NotFoundError, UpstreamUnavailable
from .models import OrderStatus
from .orders import MemoryOrderSink, line_detail_id
from .pricing import make_pricing, tier_name
from .sessions import SessionStore

log = logging.getLogger("orderbot.web")

TEMPLATES_DIR = os.path.join(os.path.dirname(__file__), "templates")
templates = Jinja2Templates(directory=TEMPLATES_DIR)

SECRET_HEADER = "X-Telegram-Bot-Api-Secret-Token"


@dataclass
class Services:
    catalog: object
    orders: object
    engine: DialogueEngine
    telegram: object = None
    database: bool = False


def build_services() -> Services:
    """Wire stores, engine and (if a token is set) the Telegram application from the environment."""
    store_options = config.load_store_options()
    pricing = make_pricing(store_options.pricing_mode)
    exporters = []
    if config.ORDERS_XLSX:
        from .workbook import WorkbookOrderExporter

        exporters.append(WorkbookOrderExporter(config.ORDERS_XLSX))

    database = bool(config.DATABASE_URL)
    if database:
        from .db import PostgresStore

        store = PostgresStore(
            dsn=config.DATABASE_URL,
            pricing=pricing,
            order_id_prefix=store_options.order_id_prefix,
            retries=store_options.retries,
            retry_delay=store_options.retry_delay,
            use_sample_catalog=store_options.use_sample_catalog,
            exporters=exporters,
        )
        catalog, orders = store, store
    else:
        if config.CATALOG_XLSX:
            from .workbook import load_catalog

            clients, categories, products = load_catalog(config.CATALOG_XLSX)
            catalog = MemoryCatalog(clients, categories, products, pricing=pricing)
        else:
            catalog = MemoryCatalog.sample(pricing=pricing)
        orders = MemoryOrderSink(prefix=store_options.order_id_prefix, exporters=exporters)

    engine = DialogueEngine(
        catalog,
        orders,
        sessions=SessionStore(idle_seconds=store_options.session_idle_seconds),
        options=config.load_engine_options(),
    )

    telegram = None
    if config.TELEGRAM_BOT_TOKEN:
        from .bot import build_application

        telegram = build_application(engine, config.TELEGRAM_BOT_TOKEN)

    return Services(catalog=catalog, orders=orders, engine=engine, telegram=telegram, database=database)


def prepare_database(services: Services) -> None:
    """Create the schema and, if CATALOG_XLSX is set, upsert the spreadsheet catalog into it."""
    if not services.database:
        return
    from .db import init_db

    init_db(config.DATABASE_URL)
    if config.CATALOG_XLSX:
        from .workbook import load_catalog

        services.catalog.replace_catalog(*load_catalog(config.CATALOG_XLSX))


# ----------------------
# JSON shapes (column names of the order workbook)
# ----------------------
def client_json(c) -> dict:
    return {
        "cliente_id": c.id,
        "nombre": c.name,
        "telefono": c.phone,
        "direccion": c.address,
        "zona": c.zone,
        "lista": c.price_tier,
        "lista_nombre": tier_name(c.price_tier),
        "productos_preferidos": list(c.preferred_product_ids),
    }


def category_json(c) -> dict:
    return {"categoria_id": c.id, "categoria_nombre": c.name}


def product_json(p) -> dict:
    data = {
        "producto_id": p.id,
        "categoria_id": p.category_id,
        "producto_nombre": p.name,
        "precio": p.base_price,
        "activo": "SI" if p.active else "NO",
    }
    for tier, price in sorted(p.tier_prices.items()):
        data[f"precio{tier}"] = price
    return data


def order_json(o) -> dict:
    return {
        "pedido_id": o.order_id,
        "fecha_hora": o.timestamp.isoformat(),
        "cliente_id": o.client_id,
        "cliente_nombre": o.client_name,
        "items_cantidad": o.line_item_count,
        "total": o.total,
        "estado": o.status.value,
    }


def line_json(order_id, n, item) -> dict:
    return {
        "detalle_id": line_detail_id(order_id, n),
        "pedido_id": order_id,
        "producto_id": item.product_id,
        "producto_nombre": item.product_name,
        "categoria_id": item.category_id,
        "cantidad": item.quantity,
        "precio_unitario": item.unit_price,
        "importe": item.line_total,
    }


def filter_orders(orders, estado=None, q=None) -> list:
    """Dashboard order filter: status ("TODOS" or empty means any) and a client name / order id term."""
    estado = (estado or "").strip().upper()
    needle = normalize(q)
    out = []
    for o in orders:
        if estado and estado != "TODOS" and o.status.value != estado:
            continue
        if needle and needle not in normalize(o.client_name) and needle not in normalize(o.order_id):
            continue
        out.append(o)
    return out


def sales_by_day(orders, today: date, days: int = 7) -> list[dict]:
    """Order count and sales total per calendar day, oldest first, ending ``today``."""
    buckets = {today - timedelta(days=n): [0, 0] for n in range(days)}
    for o in orders:
        bucket = buckets.get(o.timestamp.date())
        if bucket is not None:
            bucket[0] += 1
            bucket[1] += o.total
    return [
        {"fecha": day.isoformat(), "pedidos": count, "total": total}
        for day, (count, total) in sorted(buckets.items())
    ]


def compute_stats(catalog, orders, today: date | None = None) -> dict:
    all_orders = orders.list_orders()
    return {
        "totalClientes": len(catalog.list_clients()),
        "totalProductos": len(catalog.list_products(active_only=True)),
        "totalPedidos": len(all_orders),
        "ventasTotal": sum(o.total for o in all_orders if o.status != OrderStatus.CANCELLED),
        "ventasPorDia": sales_by_day(all_orders, today or date.today()),
    }


class ChatIn(BaseModel):
    user_id: str
    text: str = ""


def create_app(services: Services | None = None) -> FastAPI:
    app = FastAPI(title="orderbot")
    app.state.services = services

    def svc() -> Services:
        if app.state.services is None:
            app.state.services = build_services()
        return app.state.services

    @app.on_event("startup")
    async def startup():
        s = svc()
        prepare_database(s)
        if s.telegram is not None:
            await s.telegram.initialize()
            if config.WEBHOOK_URL:
                url = f"{config.WEBHOOK_URL}/webhook"
                await s.telegram.bot.set_webhook(
                    url,
                    secret_token=config.WEBHOOK_SECRET or None,
                    allowed_updates=Update.ALL_TYPES,
                )
                log.info("Telegram webhook set to %s", url)

    @app.on_event("shutdown")
    async def shutdown():
        s = app.state.services
        if s is not None and s.telegram is not None:
            await s.telegram.shutdown()

    @app.exception_handler(UpstreamUnavailable)
    async def upstream_unavailable(request: Request, exc: UpstreamUnavailable):
        log.warning("Upstream unavailable on %s: %s", request.url.path, exc)
        return JSONResponse({"detail": "Store unavailable"}, status_code=503)

    @app.exception_handler(NotFoundError)
    async def not_found(request: Request, exc: NotFoundError):
        return JSONResponse({"detail": str(exc)}, status_code=404)

    # ----------------------
    # DASHBOARD
    # ----------------------
    @app.get("/", response_class=HTMLResponse)
    def dashboard(request: Request, estado: str = "TODOS", q: str = ""):
        s = svc()
        matching = filter_orders(s.orders.list_orders(), estado, q)
        recent = sorted(matching, key=lambda o: o.timestamp, reverse=True)[:10]
        return templates.TemplateResponse(
            request,
            "dashboard.html",
            {
                "stats": compute_stats(s.catalog, s.orders),
                "orders": recent,
                "demo": getattr(s.catalog, "is_fallback", False),
                "estado": estado.upper(),
                "q": q,
            },
        )

    @app.get("/health")
    def health():
        s = svc()
        return {
            "status": "ok",
            "telegram_configured": s.telegram is not None,
            "database_configured": s.database,
            "sample_catalog": getattr(s.catalog, "is_fallback", False),
        }

    # ----------------------
    # API
    # ----------------------
    @app.get("/api/clientes")
    def api_clients():
        return [client_json(c) for c in svc().catalog.list_clients()]

    @app.get("/api/categorias")
    def api_categories():
        return [category_json(c) for c in svc().catalog.list_categories()]

    @app.get("/api/productos")
    def api_products(categoria_id: int | None = None, incluir_inactivos: bool = False):
        products = svc().catalog.list_products(category_id=categoria_id, active_only=not incluir_inactivos)
        return [product_json(p) for p in products]

    @app.get("/api/pedidos")
    def api_orders(estado: str | None = None, q: str | None = None):
        return [order_json(o) for o in filter_orders(svc().orders.list_orders(), estado, q)]

    @app.get("/api/pedidos/{order_id}")
    def api_order(order_id: str):
        found = svc().orders.get_order(order_id)
        if not found:
            raise NotFoundError(f"Pedido {order_id} no encontrado")
        order, lines = found
        data = order_json(order)
        data["detalles"] = [line_json(order.order_id, n, item) for n, item in enumerate(lines, 1)]
        return data

    @app.get("/api/stats")
    def api_stats():
        s = svc()
        return compute_stats(s.catalog, s.orders)

    # ----------------------
    # WEB CHAT
    # ----------------------
    @app.post("/api/chat")
    async def api_chat(payload: ChatIn):
        user_id = payload.user_id.strip()
        if not user_id:
            raise HTTPException(status_code=400, detail="user_id is required")
        engine = svc().engine
        # keep web users apart from Telegram ids
        key = f"web:{user_id}"
        prompts = await engine.process(key, payload.text)
        return {
            "state": engine.state_of(key).value,
            "prompts": [p.as_dict() for p in prompts],
        }

    # ----------------------
    # TELEGRAM WEBHOOK
    # ----------------------
    @app.post("/webhook")
    async def telegram_webhook(request: Request):
        s = svc()
        if s.telegram is None:
            raise HTTPException(status_code=404, detail="Telegram is not configured")
        if config.WEBHOOK_SECRET and request.headers.get(SECRET_HEADER) != config.WEBHOOK_SECRET:
            log.warning("Rejected webhook call with a wrong secret token")
            raise HTTPException(status_code=403, detail="Forbidden")
        data = await request.json()
        update = Update.de_json(data, s.telegram.bot)
        await s.telegram.process_update(update)
        return {"ok": True}

    return app


app = create_app()
