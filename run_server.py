#!/usr/bin/env python3
"""Casino dispute server: HTTP API, Telegram webhook, voting sweeper.

Configuration comes from CASINO_* env vars (never in code).
"""

import os, sys, logging
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import uvicorn

from casino.app import create_app
from casino.bot import TelegramBot
from casino.config import Config
from casino.db import Database
from casino.notifier import LogNotifier


def main(env=None):
    config = Config.from_env(env)
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    db_dir = os.path.dirname(config.db_path)
    if db_dir:
        os.makedirs(db_dir, exist_ok=True)
    db = Database(config.db_path)

    bot = TelegramBot(config.bot_token) if config.bot_token else None
    notifier = bot or LogNotifier()
    app = create_app(config=config, db=db, notifier=notifier, bot=bot, start_sweeper=True)

    if bot:
        print("[server] Telegram bot enabled (webhook at /telegram/webhook)")
    else:
        print("[server] No CASINO_BOT_TOKEN, notifications go to the log")
    if config.require_auth:
        print("[server] Signed init data required on mutating calls")
    print(f"[server] Voting window {config.voting_hours:g}h, sweep every {config.sweep_interval:g}s")
    print(f"[server] Database {config.db_path}")
    print(f"[server] Listening on {config.host}:{config.port}")

    uvicorn.run(app, host=config.host, port=config.port)


if __name__ == "__main__":
    main()
