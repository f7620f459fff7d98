import logging

from telegram import (
    Update,
    InlineKeyboardMarkup,
    InlineKeyboardButton,
)
from telegram.error import TelegramError
from telegram.ext import (
    Application,
    CommandHandler,
    MessageHandler,
    CallbackQueryHandler,
    ContextTypes,
    filters,
)

from .engine import DialogueEngine

log = logging.getLogger("orderbot.bot")

ENGINE_KEY = "engine"


def render_keyboard(choices) -> InlineKeyboardMarkup | None:
    # one button per row, the way the menus were designed
    if not choices:
        return None
    return InlineKeyboardMarkup(
        [[InlineKeyboardButton(c.label, callback_data=c.token)] for c in choices]
    )


def get_engine(context: ContextTypes.DEFAULT_TYPE) -> DialogueEngine:
    return context.application.bot_data[ENGINE_KEY]


async def send_prompts(context: ContextTypes.DEFAULT_TYPE, chat_id: int, prompts) -> None:
    for prompt in prompts:
        try:
            await context.bot.send_message(
                chat_id=chat_id,
                text=prompt.text,
                reply_markup=render_keyboard(prompt.choices),
            )
        except TelegramError as e:
            # the session already moved on; a lost message is not retried
            log.warning("Failed to send message to chat %s: %s", chat_id, e)


async def handle(update: Update, context: ContextTypes.DEFAULT_TYPE, text: str) -> None:
    user = update.effective_user
    chat = update.effective_chat
    if not user or not chat:
        return
    prompts = await get_engine(context).process(user.id, text)
    await send_prompts(context, chat.id, prompts)


async def cmd_start(update: Update, context: ContextTypes.DEFAULT_TYPE):
    await handle(update, context, "/start")


async def cmd_restart(update: Update, context: ContextTypes.DEFAULT_TYPE):
    await handle(update, context, "/reiniciar")


async def cmd_cancel(update: Update, context: ContextTypes.DEFAULT_TYPE):
    await handle(update, context, "/cancelar")


async def on_text(update: Update, context: ContextTypes.DEFAULT_TYPE):
    if not update.message:
        return
    await handle(update, context, update.message.text or "")


async def on_callback(update: Update, context: ContextTypes.DEFAULT_TYPE):
    query = update.callback_query
    if not query:
        return
    try:
        await query.answer()
    except TelegramError as e:
        log.warning("Failed to answer callback query: %s", e)
    await handle(update, context, query.data or "")


async def on_error(update: object, context: ContextTypes.DEFAULT_TYPE):
    log.error("Unhandled error while processing update %s", update, exc_info=context.error)


def build_application(engine: DialogueEngine, token: str) -> Application:
    if not token:
        raise RuntimeError("TELEGRAM_BOT_TOKEN is not set")

    application = Application.builder().token(token).build()
    application.bot_data[ENGINE_KEY] = engine

    application.add_handler(CommandHandler("start", cmd_start))
    application.add_handler(CommandHandler(["reiniciar", "restart"], cmd_restart))
    application.add_handler(CommandHandler(["cancelar", "cancel"], cmd_cancel))
    application.add_handler(CallbackQueryHandler(on_callback))
    application.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, on_text))
    application.add_error_handler(on_error)

    return application
