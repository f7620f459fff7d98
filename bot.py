import logging

from telegram import Update

from orderbot import config

# =========================
# LOGGING
# =========================
logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    format=config.LOG_FORMAT,
)
log = logging.getLogger("bot")


def main():
    # fatal: a bot without a token would just sit there
    if not config.TELEGRAM_BOT_TOKEN:
        raise RuntimeError("TELEGRAM_BOT_TOKEN is not set")

    from orderbot.main import build_services, prepare_database

    services = build_services()
    prepare_database(services)

    log.info("Starting bot...")
    application = services.telegram
    log.info("Bot polling started")
    application.run_polling(allowed_updates=Update.ALL_TYPES)


if __name__ == "__main__":
    main()
