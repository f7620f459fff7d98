import pytest

from orderbot.catalog import MemoryCatalog, SAMPLE_CATEGORIES, SAMPLE_PRODUCTS
from orderbot.errors import UpstreamUnavailable
from orderbot.models import Client, LineItem, OrderStatus, Product, State
from orderbot.orders import MemoryOrderSink


async def run(engine, user, *messages):
    prompts = []
    for text in messages:
        prompts = await engine.process(user, text)
    return prompts


def tokens(prompts):
    return [c.token for p in prompts for c in p.choices]


def texts(prompts):
    return "\n".join(p.text for p in prompts)


@pytest.mark.asyncio
async def test_full_order_tier_one(engine, sink):
    prompts = await engine.process("u1", "new_order")
    assert engine.state_of("u1") == State.AWAITING_CLIENT_SELECTION
    assert "list_clients" in tokens(prompts)

    prompts = await engine.process("u1", "ju")
    assert engine.state_of("u1") == State.AWAITING_CATEGORY_SELECTION
    assert engine.sessions.get("u1").selected_client.id == 1
    assert "category_1" in tokens(prompts)
    # placeholder category never shown
    assert "category_5" not in tokens(prompts)

    prompts = await engine.process("u1", "category_1")
    assert engine.state_of("u1") == State.AWAITING_PRODUCT_SELECTION
    assert "product_1" in tokens(prompts)

    await engine.process("u1", "product_1")
    session = engine.sessions.get("u1")
    assert session.state == State.AWAITING_QUANTITY
    assert session.selected_unit_price == 450

    prompts = await engine.process("u1", "3")
    assert session.state == State.REVIEWING_CART
    assert session.cart == [LineItem(1, "Oreo Original 117g", 1, 3, 450)]
    assert "finalize" in tokens(prompts)

    prompts = await engine.process("u1", "finalize")
    assert session.state == State.FINALIZED
    assert session.cart == []
    orders = sink.list_orders()
    assert len(orders) == 1
    order = orders[0]
    assert order.order_id == "PED001"
    assert order.client_name == "Juan Pérez"
    assert order.total == 1350
    assert order.line_item_count == 1
    assert order.status == OrderStatus.PENDING
    assert "PED001" in texts(prompts)
    assert "PENDIENTE" in texts(prompts)
    assert "14/03/2025 10:30" in texts(prompts)


@pytest.mark.asyncio
async def test_full_order_tier_two(engine, sink):
    await run(engine, "u2", "new_order", "maria", "category_2", "product_2")
    assert engine.sessions.get("u2").selected_unit_price == 330
    await run(engine, "u2", "2", "finalize")
    order, lines = sink.get_order("PED001")
    assert order.total == 660
    assert lines[0].unit_price == 330


@pytest.mark.asyncio
async def test_order_with_several_lines(engine, sink):
    await run(engine, "u1", "new_order", "client_1", "category_1", "product_1", "3")
    await run(engine, "u1", "add_more", "category_2", "product_2", "2", "finalize")
    order, lines = sink.get_order("PED001")
    assert order.line_item_count == 2
    assert order.total == 3 * 450 + 2 * 350
    assert [line.product_id for line in lines] == [1, 2]


@pytest.mark.asyncio
@pytest.mark.parametrize("bad", ["abc", "0", "51", "-1", "2.5", "1e3"])
async def test_invalid_quantity_reprompts(engine, bad):
    await run(engine, "u1", "new_order", "client_1", "category_1", "product_1")
    prompts = await engine.process("u1", bad)
    session = engine.sessions.get("u1")
    assert session.state == State.AWAITING_QUANTITY
    assert session.cart == []
    assert session.selected_product.id == 1
    assert "cancel_product" in tokens(prompts)


@pytest.mark.asyncio
async def test_quantity_upper_bound_is_inclusive(engine):
    await run(engine, "u1", "new_order", "client_1", "category_1", "product_1", "50")
    assert engine.sessions.get("u1").cart[0].quantity == 50


@pytest.mark.asyncio
async def test_quantity_without_upper_bound(make_engine):
    engine = make_engine(quantity_max=None)
    await run(engine, "u1", "new_order", "client_1", "category_1", "product_1", "500")
    assert engine.sessions.get("u1").cart[0].quantity == 500


@pytest.mark.asyncio
async def test_empty_category(engine):
    await run(engine, "u1", "new_order", "client_1")
    prompts = await engine.process("u1", "category_4")
    session = engine.sessions.get("u1")
    assert session.state == State.AWAITING_CATEGORY_SELECTION
    assert session.selected_category is None
    assert "No hay productos" in texts(prompts)


@pytest.mark.asyncio
async def test_search_results_are_truncated(make_engine, sink):
    clients = [Client(id=i, name=f"Cliente Número {i}") for i in range(1, 13)]
    catalog = MemoryCatalog(clients, SAMPLE_CATEGORIES, SAMPLE_PRODUCTS)
    engine = make_engine(catalog=catalog)
    await engine.process("u1", "new_order")
    prompts = await engine.process("u1", "cli")
    assert engine.state_of("u1") == State.AWAITING_CLIENT_SELECTION
    assert "mostrando primeros 10" in texts(prompts)
    client_tokens = [t for t in tokens(prompts) if t.startswith("client_")]
    assert client_tokens == [f"client_{i}" for i in range(1, 11)]


class CountingCatalog(MemoryCatalog):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.searches = 0

    def search_clients(self, term):
        self.searches += 1
        return super().search_clients(term)


@pytest.mark.asyncio
async def test_short_search_term_is_rejected_before_lookup(make_engine, catalog):
    counting = CountingCatalog(catalog.list_clients(), catalog.list_categories(), catalog.list_products())
    engine = make_engine(catalog=counting)
    await run(engine, "u1", "new_order", "search_client")
    prompts = await engine.process("u1", "j")
    assert counting.searches == 0
    assert engine.state_of("u1") == State.AWAITING_CLIENT_SEARCH
    assert "al menos 2" in texts(prompts)


@pytest.mark.asyncio
async def test_client_search_without_matches(engine):
    await engine.process("u1", "new_order")
    prompts = await engine.process("u1", "zzz")
    assert engine.state_of("u1") == State.AWAITING_CLIENT_SELECTION
    assert {"search_client", "list_clients", "new_client"} <= set(tokens(prompts))


@pytest.mark.asyncio
async def test_list_clients(engine):
    prompts = await run(engine, "u1", "new_order", "list_clients")
    assert [t for t in tokens(prompts) if t.startswith("client_")] == ["client_1", "client_2", "client_3"]


@pytest.mark.asyncio
async def test_add_new_client(engine, catalog):
    await run(engine, "u1", "new_order", "new_client")
    assert engine.state_of("u1") == State.AWAITING_NEW_CLIENT_NAME
    await engine.process("u1", "Pedro Gómez")
    session = engine.sessions.get("u1")
    assert session.selected_client.id == 4
    assert session.selected_client.price_tier == 1
    assert catalog.get_client(4).name == "Pedro Gómez"
    await engine.process("u1", "continue_order")
    assert session.state == State.AWAITING_CATEGORY_SELECTION


@pytest.mark.asyncio
async def test_checkout_with_empty_cart_is_rejected(engine, sink):
    await engine.process("u1", "new_order")
    prompts = await engine.process("u1", "finalize")
    assert engine.state_of("u1") == State.AWAITING_CLIENT_SELECTION
    assert sink.list_orders() == []
    assert "No tenés productos" in texts(prompts)


@pytest.mark.asyncio
async def test_checkout_without_client_is_rejected(engine, sink):
    session = engine.sessions.get_or_create("u1")
    session.cart = [LineItem(1, "Oreo Original 117g", 1, 1, 450)]
    session.state = State.REVIEWING_CART
    await engine.process("u1", "finalize")
    assert session.state == State.REVIEWING_CART
    assert len(session.cart) == 1
    assert sink.list_orders() == []


@pytest.mark.asyncio
async def test_product_needs_a_client_first(engine):
    await engine.process("u1", "product_1")
    session = engine.sessions.get("u1")
    assert session.state == State.AWAITING_CLIENT_SELECTION
    assert session.selected_product is None


@pytest.mark.asyncio
async def test_price_is_frozen_when_product_is_chosen(engine, catalog):
    await run(engine, "u1", "new_order", "client_1", "category_1", "product_1")
    repriced = [
        Product(id=1, category_id=1, name="Oreo Original 117g", base_price=999, tier_prices={1: 999})
    ] + catalog.list_products()[1:]
    catalog.replace(products=repriced)
    await engine.process("u1", "2")
    assert engine.sessions.get("u1").cart[0].unit_price == 450


@pytest.mark.asyncio
async def test_product_search_single_match_goes_to_quantity(engine):
    await run(engine, "u1", "new_order", "client_2", "search_product")
    assert engine.state_of("u1") == State.AWAITING_PRODUCT_SEARCH
    await engine.process("u1", "coca")
    session = engine.sessions.get("u1")
    assert session.state == State.AWAITING_QUANTITY
    assert session.selected_product.id == 2
    assert session.selected_unit_price == 330


@pytest.mark.asyncio
async def test_typing_in_product_list_searches_the_category(engine):
    await run(engine, "u1", "new_order", "client_1", "category_1")
    prompts = await engine.process("u1", "oreo")
    assert engine.state_of("u1") == State.AWAITING_PRODUCT_SELECTION
    assert [t for t in tokens(prompts) if t.startswith("product_")] == ["product_1", "product_4"]


@pytest.mark.asyncio
async def test_inactive_product_cannot_be_picked(engine):
    await run(engine, "u1", "new_order", "client_1", "category_2")
    await engine.process("u1", "product_5")
    assert engine.sessions.get("u1").selected_product is None


@pytest.mark.asyncio
async def test_reset_keeps_cart(engine):
    await run(engine, "u1", "new_order", "client_1", "category_1", "product_1", "2", "add_more", "category_2", "product_2")
    await engine.process("u1", "/cancelar")
    session = engine.sessions.get("u1")
    assert session.state == State.IDLE
    assert session.selected_product is None
    assert session.selected_unit_price is None
    assert len(session.cart) == 1
    assert session.selected_client.id == 1


@pytest.mark.asyncio
async def test_restart_discards_everything(engine):
    await run(engine, "u1", "new_order", "client_1", "category_1", "product_1", "2")
    prompts = await engine.process("u1", "/start")
    session = engine.sessions.get("u1")
    assert session.state == State.IDLE
    assert session.cart == []
    assert session.selected_client is None
    assert "new_order" in tokens(prompts)


@pytest.mark.asyncio
async def test_new_order_after_checkout_keeps_client(engine):
    await run(engine, "u1", "new_order", "client_2", "category_1", "product_1", "1", "finalize")
    await engine.process("u1", "new_order")
    session = engine.sessions.get("u1")
    assert session.state == State.AWAITING_CATEGORY_SELECTION
    assert session.selected_client.id == 2
    assert session.cart == []


@pytest.mark.asyncio
async def test_new_order_after_checkout_can_reask_client(make_engine):
    engine = make_engine(keep_client_after_checkout=False)
    await run(engine, "u1", "new_order", "client_2", "category_1", "product_1", "1", "finalize")
    assert engine.sessions.get("u1").selected_client is None
    await engine.process("u1", "new_order")
    assert engine.state_of("u1") == State.AWAITING_CLIENT_SELECTION


@pytest.mark.asyncio
async def test_clear_cart(engine):
    await run(engine, "u1", "new_order", "client_1", "category_1", "product_1", "2", "clear_cart")
    session = engine.sessions.get("u1")
    assert session.state == State.IDLE
    assert session.cart == []


@pytest.mark.asyncio
async def test_view_empty_cart_keeps_state(engine):
    await engine.process("u1", "new_order")
    prompts = await engine.process("u1", "view_cart")
    assert engine.state_of("u1") == State.AWAITING_CLIENT_SELECTION
    assert "vacío" in texts(prompts)


@pytest.mark.asyncio
async def test_zero_quantity_removes_line(make_engine):
    engine = make_engine(zero_quantity_removes=True)
    await run(engine, "u1", "new_order", "client_1", "category_1", "product_1", "2")
    prompts = await engine.process("u1", "view_cart")
    assert "less_1" in tokens(prompts)
    await engine.process("u1", "less_1")
    session = engine.sessions.get("u1")
    assert session.cart[0].quantity == 1
    assert session.cart[0].unit_price == 450
    await engine.process("u1", "less_1")
    assert session.cart == []


@pytest.mark.asyncio
async def test_cart_is_append_only_by_default(engine):
    await run(engine, "u1", "new_order", "client_1", "category_1", "product_1", "2")
    prompts = await engine.process("u1", "view_cart")
    assert not any(t.startswith("less_") for t in tokens(prompts))
    await engine.process("u1", "less_1")
    assert engine.sessions.get("u1").cart[0].quantity == 2


class FlakySink(MemoryOrderSink):
    def __init__(self, failures=1):
        super().__init__()
        self.failures = failures
        self.allocated = 0

    def next_order_id(self):
        self.allocated += 1
        return super().next_order_id()

    def append(self, order, lines):
        if self.failures:
            self.failures -= 1
            raise UpstreamUnavailable("orders table unreachable")
        super().append(order, lines)


@pytest.mark.asyncio
async def test_failed_checkout_keeps_cart_and_retries_same_id(make_engine):
    sink = FlakySink(failures=1)
    engine = make_engine(sink=sink)
    await run(engine, "u1", "new_order", "client_1", "category_1", "product_1", "2")
    prompts = await engine.process("u1", "finalize")
    session = engine.sessions.get("u1")
    assert session.state == State.REVIEWING_CART
    assert len(session.cart) == 1
    assert "finalize" in tokens(prompts)
    assert sink.list_orders() == []

    await engine.process("u1", "finalize")
    assert session.state == State.FINALIZED
    assert [o.order_id for o in sink.list_orders()] == ["PED001"]
    assert sink.allocated == 1


class BrokenCatalog(MemoryCatalog):
    def search_clients(self, term):
        raise UpstreamUnavailable("clients sheet unreachable")

    def list_categories(self):
        raise RuntimeError("boom")


@pytest.mark.asyncio
async def test_unreachable_catalog_gets_a_message(make_engine, catalog):
    engine = make_engine(catalog=BrokenCatalog(catalog.list_clients()))
    await engine.process("u1", "new_order")
    prompts = await engine.process("u1", "juan")
    assert "no está disponible" in texts(prompts)
    assert engine.state_of("u1") == State.AWAITING_CLIENT_SELECTION


@pytest.mark.asyncio
async def test_unexpected_error_does_not_escape(make_engine, catalog, caplog):
    engine = make_engine(catalog=BrokenCatalog(catalog.list_clients()))
    await engine.process("u1", "new_order")
    prompts = await engine.process("u1", "client_1")
    assert "error inesperado" in texts(prompts)
    assert "Unhandled error" in caplog.text


@pytest.mark.asyncio
@pytest.mark.parametrize("text", ["", "hola", "42", "client_abc", "category_99", "product_", "less_x", "/cancel"])
async def test_any_input_gets_an_answer(engine, text):
    for setup in ([], ["new_order"], ["new_order", "client_1", "category_1", "product_1"]):
        await run(engine, "u1", "/start", *setup)
        prompts = await engine.process("u1", text)
        assert prompts
        assert all(p.text for p in prompts)


@pytest.mark.asyncio
async def test_order_keyword_starts_an_order(engine):
    await engine.process("u1", "Hacer pedido")
    assert engine.state_of("u1") == State.AWAITING_CLIENT_SELECTION


@pytest.mark.asyncio
async def test_list_products_uses_client_prices(engine):
    await run(engine, "u1", "new_order", "client_2")
    prompts = await engine.process("u1", "list_products")
    text = texts(prompts)
    assert "Oreo Original 117g - $420" in text
    assert "Sprite" not in text


@pytest.mark.asyncio
async def test_sample_catalog_welcome_mentions_demo_mode(make_engine):
    engine = make_engine(catalog=MemoryCatalog.sample())
    prompts = await engine.process("u1", "/start")
    assert "Modo demostración" in texts(prompts)


@pytest.mark.asyncio
async def test_users_do_not_share_carts(engine):
    await run(engine, "a", "new_order", "client_1", "category_1", "product_1", "2")
    await run(engine, "b", "new_order", "client_2")
    assert engine.sessions.get("b").cart == []
    assert len(engine.sessions.get("a").cart) == 1


@pytest.mark.asyncio
async def test_bread_and_milk_order_total(make_engine, sink):
    catalog = MemoryCatalog(
        [Client(id=1, name="Panadería Sol")],
        SAMPLE_CATEGORIES[:1],
        [
            Product(id=1, category_id=1, name="Pan", base_price=850),
            Product(id=2, category_id=1, name="Leche", base_price=1200),
        ],
    )
    engine = make_engine(catalog=catalog)
    await run(engine, "u1", "new_order", "sol", "product_1", "2", "add_more", "product_2", "1")
    assert engine.sessions.get("u1").cart_total() == 2900
    await engine.process("u1", "finalize")
    order = sink.list_orders()[0]
    assert order.total == 2900
    assert order.line_item_count == 2


@pytest.mark.asyncio
async def test_ten_matches_are_not_marked_truncated(make_engine):
    clients = [Client(id=i, name=f"Cliente Número {i}") for i in range(1, 11)]
    engine = make_engine(catalog=MemoryCatalog(clients, SAMPLE_CATEGORIES, SAMPLE_PRODUCTS))
    await engine.process("u1", "new_order")
    prompts = await engine.process("u1", "cli")
    assert "mostrando primeros" not in texts(prompts)
    assert len([t for t in tokens(prompts) if t.startswith("client_")]) == 10


class CountingProductCatalog(MemoryCatalog):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.searches = 0

    def search_products(self, term, category_id=None):
        self.searches += 1
        return super().search_products(term, category_id=category_id)


@pytest.mark.asyncio
@pytest.mark.parametrize("setup", [["search_product"], ["new_order", "client_1", "category_1"]])
async def test_short_product_search_is_rejected_before_lookup(make_engine, catalog, setup):
    counting = CountingProductCatalog(catalog.list_clients(), catalog.list_categories(), catalog.list_products())
    engine = make_engine(catalog=counting)
    await run(engine, "u1", *setup)
    state = engine.state_of("u1")
    assert state in (State.AWAITING_PRODUCT_SEARCH, State.AWAITING_PRODUCT_SELECTION)
    prompts = await engine.process("u1", "o")
    assert counting.searches == 0
    assert engine.state_of("u1") == state
    assert "al menos 2" in texts(prompts)


@pytest.mark.asyncio
async def test_typed_cart_commands(engine, sink):
    await run(engine, "u1", "new_order", "client_1", "category_1", "product_1", "3")
    prompts = await engine.process("u1", "Ver")
    assert "TU CARRITO" in texts(prompts)
    await engine.process("u1", "agregar")
    assert engine.state_of("u1") == State.AWAITING_CATEGORY_SELECTION
    await run(engine, "u1", "category_2", "product_2", "1")
    await engine.process("u1", "FINALIZAR")
    assert engine.state_of("u1") == State.FINALIZED
    assert sink.list_orders()[0].line_item_count == 2


@pytest.mark.asyncio
async def test_unknown_text_in_cart_lists_the_options(engine, sink):
    await run(engine, "u1", "new_order", "client_1", "category_1", "product_1", "3")
    prompts = await engine.process("u1", "quizás")
    assert engine.state_of("u1") == State.REVIEWING_CART
    assert "finalizar" in texts(prompts)
    assert "finalize" in tokens(prompts)
    assert sink.list_orders() == []


@pytest.mark.asyncio
async def test_typed_category_name(engine):
    await run(engine, "u1", "new_order", "client_1")
    await engine.process("u1", "bebidas")
    session = engine.sessions.get("u1")
    assert session.state == State.AWAITING_PRODUCT_SELECTION
    assert session.selected_category.name == "Bebidas"

    await engine.process("u1", "add_more")
    prompts = await engine.process("u1", "Lacteos")
    assert engine.state_of("u1") == State.AWAITING_PRODUCT_SELECTION
    assert "product_3" in tokens(prompts)


@pytest.mark.asyncio
async def test_unknown_category_name_reprompts(engine):
    await run(engine, "u1", "new_order", "client_1")
    prompts = await engine.process("u1", "Fiambres")
    assert engine.state_of("u1") == State.AWAITING_CATEGORY_SELECTION
    assert "No encontré la categoría" in texts(prompts)
    assert "category_1" in tokens(prompts)


@pytest.mark.asyncio
@pytest.mark.parametrize("name", ["null", "Undefined", "NaN"])
async def test_placeholder_client_name_is_rejected(engine, catalog, name):
    await run(engine, "u1", "new_order", "new_client")
    prompts = await engine.process("u1", name)
    assert engine.state_of("u1") == State.AWAITING_NEW_CLIENT_NAME
    assert "no es un nombre válido" in texts(prompts)
    assert len(catalog._clients) == 3


@pytest.mark.asyncio
async def test_client_ack_shows_the_price_list_name(engine):
    prompts = await run(engine, "u1", "new_order", "client_2")
    assert "Lista 2 - Mayorista B" in texts(prompts)


@pytest.mark.asyncio
async def test_preferred_products_are_starred(engine):
    prompts = await run(engine, "u1", "new_order", "client_1", "category_1")
    labels = {c.token: c.label for p in prompts for c in p.choices}
    assert labels["product_1"] == "⭐ Oreo Original 117g"
    assert labels["product_4"] == "🛍️ Oreo Rellena Doble"
