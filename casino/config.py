"""Runtime configuration.

Read once from the environment at startup and passed explicitly to the
app factory. Secrets come from env vars, never from code.
"""

import os
from dataclasses import dataclass

from protocol import DEFAULT_FLIP_DELAY, DEFAULT_SWEEP_INTERVAL, DEFAULT_VOTING_HOURS, INIT_DATA_MAX_AGE


def _bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Config:
    db_path: str = ":memory:"
    host: str = "0.0.0.0"
    port: int = 8000
    bot_token: str = ""
    bot_id: int | None = None
    telegram_pubkey: str = ""
    webapp_url: str = ""
    webhook_secret: str = ""
    admin_token: str = ""
    require_auth: bool = False
    init_data_max_age: int = INIT_DATA_MAX_AGE
    voting_hours: float = DEFAULT_VOTING_HOURS
    flip_delay: float = DEFAULT_FLIP_DELAY
    sweep_interval: float = DEFAULT_SWEEP_INTERVAL
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env=None) -> "Config":
        env = os.environ if env is None else env
        bot_token = env.get("CASINO_BOT_TOKEN", "")
        bot_id = env.get("CASINO_BOT_ID", "")
        if not bot_id and ":" in bot_token:
            bot_id = bot_token.split(":", 1)[0]
        return cls(
            db_path=env.get("CASINO_DB", "casino.db"),
            host=env.get("CASINO_HOST", "0.0.0.0"),
            port=int(env.get("CASINO_PORT", "8000")),
            bot_token=bot_token,
            bot_id=int(bot_id) if bot_id else None,
            telegram_pubkey=env.get("CASINO_TELEGRAM_PUBKEY", ""),
            webapp_url=env.get("CASINO_WEBAPP_URL", ""),
            webhook_secret=env.get("CASINO_WEBHOOK_SECRET", ""),
            admin_token=env.get("CASINO_ADMIN_TOKEN", ""),
            require_auth=_bool(env.get("CASINO_REQUIRE_AUTH", "0")),
            init_data_max_age=int(env.get("CASINO_INIT_DATA_MAX_AGE", str(INIT_DATA_MAX_AGE))),
            voting_hours=float(env.get("CASINO_VOTING_HOURS", str(DEFAULT_VOTING_HOURS))),
            flip_delay=float(env.get("CASINO_FLIP_DELAY", str(DEFAULT_FLIP_DELAY))),
            sweep_interval=float(env.get("CASINO_SWEEP_INTERVAL", str(DEFAULT_SWEEP_INTERVAL))),
            log_level=env.get("CASINO_LOG_LEVEL", "INFO").upper(),
        )
