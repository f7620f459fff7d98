"""
Order-taking dialogue.

One ``DialogueEngine`` serves every user. Each call to ``process(user_id,
text)`` takes the user's session lock, interprets ``text`` against the
session state and returns the prompts to send back. ``text`` is either what
the user typed or the token of a button they tapped (``client_3``,
``category_2``, ``product_7``, ``finalize`` ...); buttons work in any
state, typed text is read according to the state.

Flow: client -> category -> product -> quantity -> cart -> checkout.

``process`` never raises: bad input gets a corrective reprompt in the same
state, an unreachable store gets a "try again later" message and a log
entry for the operator.
"""

import asyncio
import logging
import re
from datetime import datetime

from .catalog import normalize, usable_name
from .config import EngineOptions
from .errors import OrderBotError, UpstreamUnavailable
from .models import Choice, LineItem, Prompt, Session, State
from .orders import build_order, decrement_line
from .pricing import client_tier, tier_name
from .sessions import SessionStore

log = logging.getLogger("orderbot.engine")

RESTART_COMMANDS = {"/start", "/reiniciar", "/restart"}
RESET_COMMANDS = {"/cancelar", "/cancel"}
ORDER_KEYWORDS = {"pedido", "crear pedido", "hacer pedido", "nuevo pedido"}

QUANTITY_RE = re.compile(r"^[0-9]+$")

# button tokens
NEW_ORDER = "new_order"
CONTINUE_ORDER = "continue_order"
ADD_MORE = "add_more"
SELECT_CLIENT = "select_client"
LIST_CLIENTS = "list_clients"
SEARCH_CLIENT = "search_client"
NEW_CLIENT = "new_client"
CANCEL_CLIENT_SEARCH = "cancel_client_search"
CANCEL_NEW_CLIENT = "cancel_new_client"
SEARCH_PRODUCT = "search_product"
CANCEL_SEARCH = "cancel_search"
CANCEL_PRODUCT = "cancel_product"
LIST_PRODUCTS = "list_products"
VIEW_CART = "view_cart"
CLEAR_CART = "clear_cart"
FINALIZE = "finalize"
MAIN_MENU = "main_menu"
HELP = "help"

CLIENT_PREFIX = "client_"
CATEGORY_PREFIX = "category_"
SEARCH_CATEGORY_PREFIX = "search_category_"
PRODUCT_PREFIX = "product_"
LESS_PREFIX = "less_"

# typed commands while reviewing the cart
CART_KEYWORDS = {
    "agregar": ADD_MORE,
    "agregar mas": ADD_MORE,
    "ver": VIEW_CART,
    "ver carrito": VIEW_CART,
    "carrito": VIEW_CART,
    "finalizar": FINALIZE,
    "confirmar": FINALIZE,
    "vaciar": CLEAR_CART,
    "vaciar carrito": CLEAR_CART,
}

HELP_TEXT = """❓ AYUDA - CÓMO USAR EL BOT

🛍️ Hacer un pedido:
1. Presioná "Hacer pedido" y elegí el cliente
2. Seleccioná una categoría
3. Elegí un producto
4. Escribí la cantidad
5. Repetí para más productos
6. Finalizá el pedido

🔍 Buscar productos:
- En todo el catálogo o dentro de una categoría
- Escribí al menos 2 letras del nombre

⚡ Comandos:
/start - Menú principal (descarta el pedido en curso)
/cancelar - Cancelar la operación actual"""


def money(amount) -> str:
    return f"${amount}"


def parse_id(raw: str) -> int | None:
    try:
        return int(raw)
    except ValueError:
        return None


def main_menu_choices() -> list[Choice]:
    return [
        Choice("🛍️ Hacer pedido", NEW_ORDER),
        Choice("🔍 Buscar producto", SEARCH_PRODUCT),
        Choice("📋 Ver productos", LIST_PRODUCTS),
        Choice("🛒 Ver carrito", VIEW_CART),
        Choice("❓ Ayuda", HELP),
    ]


def format_cart_lines(cart) -> list[str]:
    lines = []
    for n, item in enumerate(cart, 1):
        lines.append(f"{n}. {item.product_name}\n   {item.quantity}x {money(item.unit_price)} = {money(item.line_total)}")
    return lines


class DialogueEngine:
    def __init__(self, catalog, orders, sessions: SessionStore | None = None,
                 options: EngineOptions | None = None, clock=datetime.now):
        self.catalog = catalog
        self.orders = orders
        self.sessions = sessions or SessionStore()
        self.options = options or EngineOptions()
        self._clock = clock

        self._tokens = {
            NEW_ORDER: self._new_order,
            CONTINUE_ORDER: self._continue_order,
            ADD_MORE: self._continue_order,
            SELECT_CLIENT: self._select_client,
            LIST_CLIENTS: self._list_clients,
            SEARCH_CLIENT: self._search_client,
            NEW_CLIENT: self._new_client,
            CANCEL_CLIENT_SEARCH: self._cancel_client_search,
            CANCEL_NEW_CLIENT: self._cancel_new_client,
            SEARCH_PRODUCT: self._search_product,
            CANCEL_SEARCH: self._cancel_search,
            CANCEL_PRODUCT: self._cancel_product,
            LIST_PRODUCTS: self._list_products,
            VIEW_CART: self._view_cart,
            CLEAR_CART: self._clear_cart,
            FINALIZE: self._finalize,
            MAIN_MENU: self._main_menu,
            HELP: self._help,
        }
        # longest prefix first: "search_category_" before "category_"
        self._prefixed = [
            (SEARCH_CATEGORY_PREFIX, self._search_category),
            (CATEGORY_PREFIX, self._pick_category),
            (CLIENT_PREFIX, self._pick_client),
            (PRODUCT_PREFIX, self._pick_product),
            (LESS_PREFIX, self._less),
        ]
        self._text_handlers = {
            State.AWAITING_CLIENT_SELECTION: self._on_client_search_text,
            State.AWAITING_CLIENT_SEARCH: self._on_client_search_text,
            State.AWAITING_NEW_CLIENT_NAME: self._on_new_client_name,
            State.AWAITING_PRODUCT_SELECTION: self._on_product_search_text,
            State.AWAITING_PRODUCT_SEARCH: self._on_product_search_text,
            State.AWAITING_QUANTITY: self._on_quantity,
            State.AWAITING_CATEGORY_SELECTION: self._on_category_text,
            State.REVIEWING_CART: self._on_cart_text,
        }

    # =========================
    # Entry point
    # =========================
    async def process(self, user_id, text) -> list[Prompt]:
        text = (text or "").strip()
        self.sessions.evict_idle()
        async with self.sessions.lock(user_id):
            if text.lower() in RESTART_COMMANDS:
                self.sessions.delete(user_id)
                session = self.sessions.get_or_create(user_id)
                prompts = self._welcome(session)
                self.sessions.save(session)
                return prompts

            session = self.sessions.get_or_create(user_id)
            try:
                # store calls block (database retries), keep them off the event loop
                prompts = await asyncio.to_thread(self._dispatch, session, text)
            except UpstreamUnavailable as e:
                log.warning("Store unavailable while handling %r from %s: %s", text, user_id, e)
                prompts = [Prompt(
                    "⚠️ El servicio no está disponible en este momento. Intentá de nuevo en unos minutos.",
                    [Choice("🏠 Menú principal", MAIN_MENU)],
                )]
            except OrderBotError as e:
                log.info("Rejected %r from %s: %s", text, user_id, e)
                prompts = [Prompt(f"❌ {e}", main_menu_choices())]
            except Exception:
                log.exception("Unhandled error while handling %r from %s", text, user_id)
                prompts = [Prompt(
                    "❌ Ocurrió un error inesperado. Intentá de nuevo.",
                    [Choice("🏠 Menú principal", MAIN_MENU)],
                )]
            self.sessions.save(session)
            return prompts

    def state_of(self, user_id) -> State:
        session = self.sessions.get(user_id)
        return session.state if session else State.IDLE

    def _dispatch(self, s: Session, text: str) -> list[Prompt]:
        if text.lower() in RESET_COMMANDS:
            return self._reset(s)
        if not text:
            return self._fallback(s)

        handler = self._tokens.get(text)
        if handler:
            return handler(s)
        for prefix, prefixed in self._prefixed:
            if text.startswith(prefix):
                return prefixed(s, text[len(prefix):])

        text_handler = self._text_handlers.get(s.state)
        if text_handler:
            return text_handler(s, text)
        if normalize(text) in ORDER_KEYWORDS:
            return self._new_order(s)
        return self._fallback(s)

    # =========================
    # Global
    # =========================
    def _welcome(self, s: Session) -> list[Prompt]:
        s.state = State.IDLE
        text = "🛒 ¡Bienvenido a la Distribuidora!\n\nSeleccioná una opción:"
        if getattr(self.catalog, "is_fallback", False):
            text += "\n\n⚠️ Modo demostración: se está usando el catálogo de ejemplo."
        return [Prompt(text, main_menu_choices())]

    def _reset(self, s: Session) -> list[Prompt]:
        s.clear_selection()
        s.state = State.IDLE
        return [Prompt("❌ Operación cancelada\n\n¿Qué deseas hacer?", [
            Choice("🛍️ Hacer pedido", NEW_ORDER),
            Choice("🔍 Buscar producto", SEARCH_PRODUCT),
            Choice("🛒 Ver carrito", VIEW_CART),
        ])]

    def _main_menu(self, s: Session) -> list[Prompt]:
        s.clear_selection()
        s.state = State.IDLE
        return [Prompt("🏠 Menú principal\n\nSeleccioná una opción:", main_menu_choices())]

    def _help(self, s: Session) -> list[Prompt]:
        return [Prompt(HELP_TEXT, [
            Choice("🛍️ Hacer pedido", NEW_ORDER),
            Choice("🔍 Buscar producto", SEARCH_PRODUCT),
            Choice("🏠 Menú principal", MAIN_MENU),
        ])]

    def _fallback(self, s: Session) -> list[Prompt]:
        return [Prompt("❓ No entiendo ese mensaje.\n\nUsá /start para ver el menú principal.", main_menu_choices())]

    # =========================
    # Client selection
    # =========================
    def _new_order(self, s: Session) -> list[Prompt]:
        if s.state == State.FINALIZED:
            s.cart = []
            if not self.options.keep_client_after_checkout:
                s.selected_client = None
        return self._continue_order(s)

    def _continue_order(self, s: Session) -> list[Prompt]:
        if s.selected_client is None:
            return self._client_prompt(s, "Primero seleccioná un cliente para el pedido:")
        return self._show_categories(s)

    def _select_client(self, s: Session) -> list[Prompt]:
        return self._client_prompt(s, "¿Cómo querés seleccionar el cliente?")

    def _client_prompt(self, s: Session, intro: str) -> list[Prompt]:
        s.state = State.AWAITING_CLIENT_SELECTION
        return [Prompt(
            f"👤 SELECCIONAR CLIENTE\n\n{intro}\n\nTambién podés escribir parte del nombre para buscarlo.",
            [
                Choice("📋 Ver lista de clientes", LIST_CLIENTS),
                Choice("🔍 Buscar cliente", SEARCH_CLIENT),
                Choice("➕ Agregar nuevo cliente", NEW_CLIENT),
                Choice("🔙 Volver al menú", MAIN_MENU),
            ],
        )]

    def _list_clients(self, s: Session) -> list[Prompt]:
        clients = self.catalog.list_clients()
        s.state = State.AWAITING_CLIENT_SELECTION
        if not clients:
            return [Prompt("❌ No hay clientes registrados.\n\n¿Deseas agregar uno?", [
                Choice("➕ Agregar nuevo cliente", NEW_CLIENT),
                Choice("🔙 Volver al menú", MAIN_MENU),
            ])]
        limit = self.options.search_limit
        choices = [Choice(f"👤 {c.name}", f"{CLIENT_PREFIX}{c.id}") for c in clients[:limit]]
        if len(clients) > limit:
            header = f"👥 LISTA DE CLIENTES (mostrando primeros {limit} de {len(clients)})"
            choices.append(Choice("🔍 Buscar cliente específico", SEARCH_CLIENT))
        else:
            header = f"👥 LISTA DE CLIENTES ({len(clients)} clientes)"
        choices.append(Choice("➕ Nuevo cliente", NEW_CLIENT))
        choices.append(Choice("🔙 Volver", MAIN_MENU))
        return [Prompt(f"{header}:\n\nSeleccioná un cliente:", choices)]

    def _search_client(self, s: Session) -> list[Prompt]:
        s.state = State.AWAITING_CLIENT_SEARCH
        return [Prompt(
            "🔍 BUSCAR CLIENTE\n\nEscribí el nombre del cliente (o parte del nombre):\n\n"
            "Ejemplos: \"juan\", \"maría\", \"pérez\"",
            [Choice("❌ Cancelar búsqueda", CANCEL_CLIENT_SEARCH)],
        )]

    def _on_client_search_text(self, s: Session, text: str) -> list[Prompt]:
        if len(text) < self.options.min_search_length:
            return [Prompt(
                f"❌ Escribí al menos {self.options.min_search_length} letras para buscar.\n\nO usá /cancelar para volver.",
                [Choice("❌ Cancelar búsqueda", CANCEL_CLIENT_SEARCH)],
            )]

        matches = self.catalog.search_clients(text)
        if not matches:
            return [Prompt(f"❌ No encontré clientes con \"{text}\".\n\n¿Qué deseas hacer?", [
                Choice("🔍 Buscar de nuevo", SEARCH_CLIENT),
                Choice("📋 Ver lista completa", LIST_CLIENTS),
                Choice("➕ Agregar nuevo cliente", NEW_CLIENT),
                Choice("🏠 Menú principal", MAIN_MENU),
            ])]
        if len(matches) == 1:
            return self._bind_client(s, matches[0])

        limit = self.options.search_limit
        if len(matches) > limit:
            header = f"🔍 Encontré {len(matches)} clientes con \"{text}\" (mostrando primeros {limit}):"
        else:
            header = f"🔍 Encontré {len(matches)} clientes con \"{text}\":"
        choices = [Choice(f"👤 {c.name}", f"{CLIENT_PREFIX}{c.id}") for c in matches[:limit]]
        choices += [
            Choice("🔍 Nueva búsqueda", SEARCH_CLIENT),
            Choice("📋 Ver lista", LIST_CLIENTS),
            Choice("➕ Nuevo cliente", NEW_CLIENT),
            Choice("🏠 Menú principal", MAIN_MENU),
        ]
        return [Prompt(header, choices)]

    def _pick_client(self, s: Session, raw_id: str) -> list[Prompt]:
        client_id = parse_id(raw_id)
        client = self.catalog.get_client(client_id) if client_id is not None else None
        if client is None:
            return [Prompt("❌ Cliente no encontrado.", [
                Choice("📋 Ver lista", LIST_CLIENTS),
                Choice("🔙 Volver", MAIN_MENU),
            ])]
        return self._bind_client(s, client)

    def _bind_client(self, s: Session, client) -> list[Prompt]:
        s.selected_client = client
        tier = client_tier(client)
        ack = Prompt(f"✅ Cliente seleccionado: {client.name} (Lista {tier} - {tier_name(tier)})")
        return [ack] + self._show_categories(s)

    def _new_client(self, s: Session) -> list[Prompt]:
        s.state = State.AWAITING_NEW_CLIENT_NAME
        return [Prompt(
            "➕ AGREGAR NUEVO CLIENTE\n\nEscribí el nombre completo del nuevo cliente:\n\nEjemplo: \"Juan Pérez\"",
            [Choice("❌ Cancelar", CANCEL_NEW_CLIENT)],
        )]

    def _on_new_client_name(self, s: Session, text: str) -> list[Prompt]:
        if len(text) < self.options.min_search_length:
            return [Prompt(
                f"❌ El nombre debe tener al menos {self.options.min_search_length} caracteres. Intentá de nuevo:",
                [Choice("❌ Cancelar", CANCEL_NEW_CLIENT)],
            )]
        if not usable_name(text):
            # the catalog hides placeholder names, the client could never be found again
            return [Prompt(
                f"❌ \"{text}\" no es un nombre válido. Escribí el nombre completo del cliente:",
                [Choice("❌ Cancelar", CANCEL_NEW_CLIENT)],
            )]
        try:
            client = self.catalog.add_client(text)
        except UpstreamUnavailable as e:
            log.error("Could not add client %r: %s", text, e)
            return [Prompt("❌ Error agregando cliente. Escribí el nombre de nuevo o elegí otra opción:", [
                Choice("📋 Ver lista existente", LIST_CLIENTS),
                Choice("🏠 Menú principal", MAIN_MENU),
            ])]
        s.selected_client = client
        s.state = State.IDLE
        return [Prompt(f"✅ Cliente \"{client.name}\" agregado y seleccionado\n\n¿Qué deseas hacer ahora?", [
            Choice("🛍️ Continuar con pedido", CONTINUE_ORDER),
            Choice("👤 Cambiar cliente", SELECT_CLIENT),
            Choice("🏠 Menú principal", MAIN_MENU),
        ])]

    def _cancel_client_search(self, s: Session) -> list[Prompt]:
        s.state = State.IDLE
        return [Prompt("❌ Búsqueda de cliente cancelada\n\n¿Qué deseas hacer?", [
            Choice("📋 Ver lista de clientes", LIST_CLIENTS),
            Choice("➕ Agregar nuevo cliente", NEW_CLIENT),
            Choice("🏠 Menú principal", MAIN_MENU),
        ])]

    def _cancel_new_client(self, s: Session) -> list[Prompt]:
        s.state = State.IDLE
        return [Prompt("❌ Creación de cliente cancelada\n\n¿Qué deseas hacer?", [
            Choice("📋 Ver lista de clientes", LIST_CLIENTS),
            Choice("🔍 Buscar cliente", SEARCH_CLIENT),
            Choice("🏠 Menú principal", MAIN_MENU),
        ])]

    # =========================
    # Categories and products
    # =========================
    def _show_categories(self, s: Session) -> list[Prompt]:
        categories = self.catalog.list_categories()
        if not categories:
            s.state = State.IDLE
            return [Prompt("❌ No hay categorías disponibles en este momento.", [Choice("🏠 Menú principal", MAIN_MENU)])]
        s.selected_category = None
        s.state = State.AWAITING_CATEGORY_SELECTION
        client_name = s.selected_client.name if s.selected_client else "No seleccionado"
        choices = [Choice(f"📂 {c.name}", f"{CATEGORY_PREFIX}{c.id}") for c in categories]
        choices += [
            Choice("🔍 Buscar producto", SEARCH_PRODUCT),
            Choice("👤 Cambiar cliente", SELECT_CLIENT),
            Choice("🔙 Volver al menú", MAIN_MENU),
        ]
        return [Prompt(f"👤 Cliente: {client_name}\n\n📂 Seleccioná una categoría:", choices)]

    def _on_category_text(self, s: Session, text: str) -> list[Prompt]:
        wanted = normalize(text)
        for category in self.catalog.list_categories():
            if normalize(category.name) == wanted:
                return self._pick_category(s, str(category.id))
        if wanted in ORDER_KEYWORDS:
            return self._show_categories(s)
        return [Prompt(f"❌ No encontré la categoría \"{text}\".")] + self._show_categories(s)

    def _pick_category(self, s: Session, raw_id: str) -> list[Prompt]:
        category_id = parse_id(raw_id)
        category = self.catalog.get_category(category_id) if category_id is not None else None
        if category is None:
            return [Prompt("❌ Categoría no encontrada.")] + self._continue_order(s)

        products = self.catalog.list_products(category_id=category.id, active_only=True)
        if not products:
            s.state = State.AWAITING_CATEGORY_SELECTION
            return [Prompt("❌ No hay productos disponibles en esta categoría.", [
                Choice("🔙 Volver a categorías", ADD_MORE),
            ])]

        s.selected_category = category
        s.state = State.AWAITING_PRODUCT_SELECTION
        preferred = set(s.selected_client.preferred_product_ids) if s.selected_client else set()
        choices = [
            Choice(f"{'⭐' if p.id in preferred else '🛍️'} {p.name}", f"{PRODUCT_PREFIX}{p.id}")
            for p in products
        ]
        choices += [
            Choice("🔍 Buscar en esta categoría", f"{SEARCH_CATEGORY_PREFIX}{category.id}"),
            Choice("🔙 Volver a categorías", ADD_MORE),
            Choice("🏠 Menú principal", MAIN_MENU),
        ]
        return [Prompt(
            f"📂 {category.name}\n\n🛍️ Seleccioná un producto (o escribí parte del nombre para buscar):",
            choices,
        )]

    def _search_product(self, s: Session) -> list[Prompt]:
        s.selected_category = None
        s.state = State.AWAITING_PRODUCT_SEARCH
        return [Prompt(
            "🔍 BUSCAR PRODUCTO\n\nEscribí el nombre del producto que buscás (o parte del nombre):\n\n"
            "Ejemplos: \"oreo\", \"coca\", \"leche\"",
            [Choice("❌ Cancelar búsqueda", CANCEL_SEARCH)],
        )]

    def _search_category(self, s: Session, raw_id: str) -> list[Prompt]:
        category_id = parse_id(raw_id)
        category = self.catalog.get_category(category_id) if category_id is not None else None
        if category is None:
            return [Prompt("❌ Categoría no encontrada.")] + self._continue_order(s)
        s.selected_category = category
        s.state = State.AWAITING_PRODUCT_SEARCH
        return [Prompt(
            f"🔍 BUSCAR EN {category.name.upper()}\n\nEscribí el nombre del producto que buscás:",
            [
                Choice("🔙 Volver a productos", f"{CATEGORY_PREFIX}{category.id}"),
                Choice("❌ Cancelar búsqueda", CANCEL_SEARCH),
            ],
        )]

    def _cancel_search(self, s: Session) -> list[Prompt]:
        s.selected_category = None
        s.state = State.IDLE
        return [Prompt("❌ Búsqueda cancelada\n\n¿Qué deseas hacer?", [
            Choice("🛍️ Hacer pedido", NEW_ORDER),
            Choice("🔍 Buscar producto", SEARCH_PRODUCT),
            Choice("🏠 Menú principal", MAIN_MENU),
        ])]

    def _on_product_search_text(self, s: Session, text: str) -> list[Prompt]:
        if len(text) < self.options.min_search_length:
            return [Prompt(
                f"❌ Escribí al menos {self.options.min_search_length} letras para buscar.\n\nO usá /cancelar para volver.",
                [Choice("❌ Cancelar búsqueda", CANCEL_SEARCH)],
            )]

        category = s.selected_category
        matches = self.catalog.search_products(text, category.id if category else None)
        if not matches:
            where = " en esta categoría" if category else ""
            return [Prompt(f"❌ No encontré productos con \"{text}\"{where}.\n\n¿Qué deseas hacer?", [
                Choice("🔍 Buscar de nuevo", SEARCH_PRODUCT),
                Choice("📂 Ver por categorías", ADD_MORE),
                Choice("🏠 Menú principal", MAIN_MENU),
            ])]
        if len(matches) == 1:
            return self._bind_product(s, matches[0])

        limit = self.options.search_limit
        if len(matches) > limit:
            header = f"🔍 Encontré {len(matches)} productos con \"{text}\" (mostrando primeros {limit}):"
        else:
            header = f"🔍 Encontré {len(matches)} productos con \"{text}\":"
        choices = [Choice(f"🛍️ {p.name}", f"{PRODUCT_PREFIX}{p.id}") for p in matches[:limit]]
        choices += [
            Choice("🔍 Nueva búsqueda", SEARCH_PRODUCT),
            Choice("📂 Ver categorías", ADD_MORE),
            Choice("🏠 Menú principal", MAIN_MENU),
        ]
        return [Prompt(header, choices)]

    def _pick_product(self, s: Session, raw_id: str) -> list[Prompt]:
        product_id = parse_id(raw_id)
        product = self.catalog.get_product(product_id) if product_id is not None else None
        if product is None or not product.active:
            return [Prompt("❌ Producto no encontrado.", [Choice("🔙 Volver a productos", ADD_MORE)])]
        return self._bind_product(s, product)

    def _bind_product(self, s: Session, product) -> list[Prompt]:
        client = s.selected_client
        if client is None:
            # the unit price depends on the client's tier
            return self._client_prompt(s, "Antes de elegir productos seleccioná el cliente:")

        price = self.catalog.price_for(product, client)
        s.selected_product = product
        s.selected_unit_price = price
        s.state = State.AWAITING_QUANTITY
        return [Prompt(
            f"📦 {product.name}\n👤 Cliente: {client.name} (Lista {client_tier(client)})\n"
            f"💰 Precio: {money(price)}\n\n¿Cuántas unidades querés?{self._quantity_hint()}",
            [Choice("❌ Cancelar", CANCEL_PRODUCT)],
        )]

    def _cancel_product(self, s: Session) -> list[Prompt]:
        s.clear_selection()
        s.state = State.IDLE
        return [Prompt("❌ Selección cancelada\n\n¿Qué deseas hacer?", [
            Choice("🛍️ Hacer pedido", NEW_ORDER),
            Choice("🛒 Ver carrito", VIEW_CART),
        ])]

    def _list_products(self, s: Session) -> list[Prompt]:
        products = self.catalog.list_products(active_only=True)
        if not products:
            return [Prompt("❌ No hay productos disponibles en este momento.", [Choice("🏠 Menú principal", MAIN_MENU)])]

        client = s.selected_client
        out = ["📦 PRODUCTOS DISPONIBLES:", ""]
        out.append(f"👤 Cliente: {client.name if client else 'No seleccionado'} (Lista {client_tier(client)})")
        grouped = {}
        for p in products:
            grouped.setdefault(p.category_id, []).append(p)
        sections = [(c.name, grouped.pop(c.id)) for c in self.catalog.list_categories() if c.id in grouped]
        leftovers = [p for items in grouped.values() for p in items]
        if leftovers:
            sections.append(("Sin categoría", leftovers))
        for name, items in sections:
            out.append(f"\n📂 {name}")
            for p in items:
                out.append(f"   • {p.name} - {money(self.catalog.price_for(p, client))}")
        return [Prompt("\n".join(out), [
            Choice("🛍️ Hacer pedido", NEW_ORDER),
            Choice("🔍 Buscar producto", SEARCH_PRODUCT),
            Choice("🏠 Menú principal", MAIN_MENU),
        ])]

    # =========================
    # Quantity and cart
    # =========================
    def _quantity_hint(self) -> str:
        if self.options.quantity_max:
            return f"\n\nEscribí un número entre 1 y {self.options.quantity_max}."
        return "\n\nEscribí un número mayor a 0."

    def _on_quantity(self, s: Session, text: str) -> list[Prompt]:
        retry = [Choice("❌ Cancelar", CANCEL_PRODUCT)]
        if not QUANTITY_RE.match(text):
            return [Prompt(f"❌ Por favor ingresá solo números.{self._quantity_hint()}", retry)]
        quantity = int(text)
        qmax = self.options.quantity_max
        if quantity <= 0 or (qmax and quantity > qmax):
            return [Prompt(f"❌ Cantidad inválida.{self._quantity_hint()}", retry)]

        product = s.selected_product
        if product is None or s.selected_unit_price is None:
            log.warning("Quantity received for user %s without a selected product", s.user_id)
            return [Prompt("❌ Se perdió el producto seleccionado. Elegilo de nuevo.")] + self._continue_order(s)

        item = LineItem(
            product_id=product.id,
            product_name=product.name,
            category_id=product.category_id,
            quantity=quantity,
            unit_price=s.selected_unit_price,
        )
        s.cart.append(item)
        s.pending_order_id = None
        s.clear_selection()
        s.state = State.REVIEWING_CART
        return [Prompt(
            f"✅ Agregado: {quantity}x {item.product_name}\nSubtotal: {money(item.line_total)}\n"
            f"Total del pedido: {money(s.cart_total())}\n\n¿Qué deseas hacer?",
            [
                Choice("➕ Agregar más productos", ADD_MORE),
                Choice("🛒 Ver carrito", VIEW_CART),
                Choice("✅ Finalizar pedido", FINALIZE),
            ],
        )]

    def _view_cart(self, s: Session) -> list[Prompt]:
        if not s.cart:
            return [Prompt("🛒 Tu carrito está vacío\n\n¿Deseas agregar productos?", [
                Choice("🛍️ Hacer pedido", NEW_ORDER),
                Choice("🔍 Buscar producto", SEARCH_PRODUCT),
                Choice("🏠 Menú principal", MAIN_MENU),
            ])]
        s.state = State.REVIEWING_CART
        text = "🛒 TU CARRITO:\n\n" + "\n\n".join(format_cart_lines(s.cart)) + f"\n\n💰 TOTAL: {money(s.cart_total())}"
        choices = []
        if self.options.zero_quantity_removes:
            choices += [Choice(f"➖ {item.product_name}", f"{LESS_PREFIX}{n}") for n, item in enumerate(s.cart, 1)]
        choices += [
            Choice("➕ Agregar más", ADD_MORE),
            Choice("🔍 Buscar producto", SEARCH_PRODUCT),
            Choice("🗑️ Vaciar carrito", CLEAR_CART),
            Choice("✅ Finalizar pedido", FINALIZE),
        ]
        return [Prompt(text, choices)]

    def _less(self, s: Session, raw_position: str) -> list[Prompt]:
        if not self.options.zero_quantity_removes:
            return self._fallback(s)
        position = parse_id(raw_position)
        if position is None or not 1 <= position <= len(s.cart):
            return [Prompt("❌ Ese producto ya no está en el carrito.")] + self._view_cart(s)
        s.cart = decrement_line(s.cart, position - 1)
        s.pending_order_id = None
        return self._view_cart(s)

    def _clear_cart(self, s: Session) -> list[Prompt]:
        s.cart = []
        s.pending_order_id = None
        s.clear_selection()
        s.state = State.IDLE
        return [Prompt("🗑️ Carrito vaciado\n\n¿Deseas hacer un nuevo pedido?", [
            Choice("🛍️ Hacer pedido", NEW_ORDER),
            Choice("🏠 Menú principal", MAIN_MENU),
        ])]

    def _on_cart_text(self, s: Session, text: str) -> list[Prompt]:
        token = CART_KEYWORDS.get(normalize(text))
        if token:
            return self._tokens[token](s)
        return [Prompt(
            "Opciones disponibles:\n• \"agregar\" - Más productos\n• \"ver\" - Ver carrito\n"
            "• \"finalizar\" - Confirmar pedido\n• \"vaciar\" - Vaciar carrito",
            [
                Choice("➕ Agregar más productos", ADD_MORE),
                Choice("🛒 Ver carrito", VIEW_CART),
                Choice("✅ Finalizar pedido", FINALIZE),
            ],
        )]

    # =========================
    # Checkout
    # =========================
    def _finalize(self, s: Session) -> list[Prompt]:
        if not s.cart:
            return [Prompt("❌ No tenés productos en el carrito.", [
                Choice("🛍️ Hacer pedido", NEW_ORDER),
                Choice("🔍 Buscar producto", SEARCH_PRODUCT),
            ])]
        client = s.selected_client
        if client is None:
            return [Prompt("❌ Debés seleccionar un cliente primero.", [
                Choice("👤 Seleccionar cliente", SELECT_CLIENT),
                Choice("🛒 Ver carrito", VIEW_CART),
            ])]

        # reuse the id of a failed attempt so a retry cannot store the order twice
        order_id = s.pending_order_id or self.orders.next_order_id()
        s.pending_order_id = order_id
        order, lines = build_order(order_id, client, s.cart, now=self._clock())
        try:
            self.orders.append(order, lines)
        except UpstreamUnavailable as e:
            log.error("Could not store order %s for client %s: %s", order_id, client.id, e)
            return [Prompt(
                "⚠️ No pudimos registrar el pedido en este momento. Tu carrito se mantiene: "
                "intentá finalizar de nuevo en unos minutos.",
                [Choice("✅ Finalizar pedido", FINALIZE), Choice("🛒 Ver carrito", VIEW_CART)],
            )]

        log.info("Order %s stored: client=%s lines=%s total=%s", order.order_id, client.id,
                 order.line_item_count, order.total)
        s.cart = []
        s.pending_order_id = None
        s.clear_selection()
        if not self.options.keep_client_after_checkout:
            s.selected_client = None
        s.state = State.FINALIZED

        text = (
            "📋 PEDIDO ENVIADO\n\n"
            f"📋 Pedido: {order.order_id}\n"
            f"👤 Cliente: {order.client_name}\n"
            f"📅 Fecha: {order.timestamp.strftime('%d/%m/%Y %H:%M')}\n\n"
            f"⏳ Estado: {order.status.value}\n\n"
            "🛒 PRODUCTOS:\n" + "\n".join(format_cart_lines(lines)) +
            f"\n\n💰 TOTAL: {money(order.total)}\n\n⏳ Tu pedido está pendiente de confirmación"
        )
        if s.selected_client is not None:
            choices = [
                Choice("🛍️ Nuevo pedido (mismo cliente)", NEW_ORDER),
                Choice("👤 Cambiar cliente", SELECT_CLIENT),
                Choice("🏠 Menú principal", MAIN_MENU),
            ]
        else:
            choices = [Choice("🛍️ Nuevo pedido", NEW_ORDER), Choice("🏠 Menú principal", MAIN_MENU)]
        return [Prompt(text, choices)]
