"""HTTP API for the dispute game (FastAPI).

Endpoints for the dispute lifecycle: create, accept, decline, cancel,
choose, vote, resolve; the coinflip room handshake; player accounts and
the admin surface; and the Telegram webhook.

Engine and coordinator calls return Results; ``_unwrap`` turns a failed
one into an HTTPException with the error's status code. When
``require_auth`` is on, mutating calls carry Telegram Mini App init data
in ``X-Telegram-Init-Data`` and the signed user must be the actor.
"""

import hmac
import logging
import time
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import FastAPI, HTTPException, Path, Query, Request
from pydantic import BaseModel, ConfigDict, Field

from casino.accounts import AccountStore
from casino.bot import BotHandler, TelegramBot
from casino.config import Config
from casino.db import Database
from casino.engine import DisputeEngine
from casino.errors import DisputeError, Result
from casino.ledger import Ledger
from casino.notifier import LogNotifier, Notifier
from casino.rng import RandomSource
from casino.rooms import RoomCoordinator
from casino.sweeper import VotingSweeper
from protocol import MAX_TELEGRAM_ID
from telegram_auth import InitDataError, verify_init_data, verify_init_data_signature

logger = logging.getLogger(__name__)

UserIdPath = Annotated[int, Path(gt=0, le=MAX_TELEGRAM_ID)]


# --- Request models ---
# Wire names are camelCase, as the mini-app sends them.

class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class CreateDisputeRequest(_Body):
    creator_id: int = Field(alias="creatorId", gt=0, le=MAX_TELEGRAM_ID)
    opponent_id: int | None = Field(default=None, alias="opponentId", gt=0, le=MAX_TELEGRAM_ID)
    question: str
    amount: int


class ActorRequest(_Body):
    user_id: int = Field(alias="userId", gt=0, le=MAX_TELEGRAM_ID)


class ReadyRequest(_Body):
    user_id: int = Field(alias="userId", gt=0, le=MAX_TELEGRAM_ID)
    ready: bool = True


class ChoiceRequest(_Body):
    user_id: int = Field(alias="userId", gt=0, le=MAX_TELEGRAM_ID)
    choice: bool


class VoteRequest(_Body):
    voter_id: int = Field(alias="voterId", gt=0, le=MAX_TELEGRAM_ID)
    vote_for: str = Field(alias="voteFor")  # "creator" or "opponent"


class RegisterRequest(_Body):
    telegram_id: int = Field(alias="telegramId", gt=0, le=MAX_TELEGRAM_ID)
    first_name: str = Field(default="", alias="firstName")
    last_name: str | None = Field(default=None, alias="lastName")
    username: str | None = None


class BalanceRequest(_Body):
    amount: int | None = None  # absolute balance
    delta: int | None = None   # relative adjustment


class FlagsRequest(_Body):
    win_rate: float | None = Field(default=None, alias="winRate")
    is_banned: bool | None = Field(default=None, alias="isBanned")


def _unwrap(result: Result):
    """Value of a successful Result, or raise the matching HTTPException."""
    if not result.ok:
        raise HTTPException(result.error.status_code, result.error.message)
    return result.value


def _call(fn, *args, **kwargs):
    """Run an account-store call, mapping DisputeError onto HTTP."""
    try:
        return fn(*args, **kwargs)
    except DisputeError as e:
        raise HTTPException(e.status_code, e.message)


# --- App factory ---

def create_app(
    config: Config | None = None,
    db: Database | None = None,
    engine: DisputeEngine | None = None,
    rooms: RoomCoordinator | None = None,
    notifier: Notifier | None = None,
    rng: RandomSource | None = None,
    bot: TelegramBot | None = None,
    scheduler=None,
    clock=time.time,
    start_sweeper: bool = False,
) -> FastAPI:
    """Create the FastAPI app with injected dependencies.

    Anything not passed in is built from ``config``. A TelegramBot passed
    as ``bot`` also serves as the notifier unless one is given.
    """
    _config = config or Config()

    if engine is None:
        _db = db or Database(_config.db_path)
        ledger = Ledger(_db)
        accounts = AccountStore(_db, ledger)
        engine = DisputeEngine(
            _db, accounts, ledger,
            notifier=notifier or bot or LogNotifier(),
            rng=rng, voting_hours=_config.voting_hours, clock=clock,
        )
    _engine = engine
    _accounts = engine.accounts
    _ledger = engine.ledger
    _rooms = rooms or RoomCoordinator(_engine, flip_delay=_config.flip_delay, scheduler=scheduler, clock=clock)
    _bot_handler = BotHandler(_engine, _accounts, bot, webapp_url=_config.webapp_url) if bot else None
    _sweeper = VotingSweeper(_engine, interval=_config.sweep_interval)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if start_sweeper:
            _sweeper.start()
        try:
            yield
        finally:
            if start_sweeper:
                _sweeper.stop()
            if bot is not None:
                bot.close()

    app = FastAPI(title="Casino Disputes", version="1.0", lifespan=lifespan)

    # Exposed for run_server and tests
    app.state.config = _config
    app.state.engine = _engine
    app.state.accounts = _accounts
    app.state.ledger = _ledger
    app.state.rooms = _rooms
    app.state.sweeper = _sweeper
    app.state.bot = bot

    # --- Auth ---

    def _authenticate(request: Request, actor_id: int):
        """Check the signed init data names ``actor_id``. No-op unless require_auth."""
        if not _config.require_auth:
            return
        init_data = request.headers.get("X-Telegram-Init-Data", "")
        if not init_data:
            raise HTTPException(401, "Signed init data required (X-Telegram-Init-Data header)")
        try:
            if _config.bot_token:
                user = verify_init_data(init_data, _config.bot_token, max_age=_config.init_data_max_age)
            elif _config.bot_id:
                kwargs = {"public_key_hex": _config.telegram_pubkey} if _config.telegram_pubkey else {}
                user = verify_init_data_signature(init_data, _config.bot_id,
                                                  max_age=_config.init_data_max_age, **kwargs)
            else:
                raise HTTPException(401, "Server has no bot credentials to verify init data")
        except InitDataError as e:
            raise HTTPException(401, f"Authentication failed: {e}")
        if user["id"] != actor_id:
            raise HTTPException(403, "Init data user does not match the actor")

    def _require_admin(request: Request):
        token = request.headers.get("X-Admin-Token", "")
        if not _config.admin_token:
            raise HTTPException(403, "Admin API disabled")
        if not hmac.compare_digest(token, _config.admin_token):
            raise HTTPException(403, "Invalid admin token")

    # --- Disputes ---
    # Fixed paths are declared before /disputes/{dispute_id}

    @app.post("/disputes")
    def create_dispute(req: CreateDisputeRequest, request: Request):
        _authenticate(request, req.creator_id)
        return _unwrap(_engine.create(req.creator_id, req.opponent_id, req.question, req.amount))

    @app.get("/disputes/active-votings")
    def active_votings(limit: int = 50):
        return _unwrap(_engine.list_active_votings(limit=max(1, min(limit, 200))))

    @app.post("/disputes/check-expired")
    def check_expired():
        resolved = _engine.resolve_expired_votings()
        return {"resolved": resolved, "count": len(resolved)}

    @app.get("/disputes/user/{user_id}")
    def user_disputes(user_id: UserIdPath, limit: int = 50):
        return _unwrap(_engine.list_for_user(user_id, limit=max(1, min(limit, 200))))

    @app.get("/disputes/{dispute_id}")
    def get_dispute(dispute_id: str):
        return _unwrap(_engine.get(dispute_id))

    @app.post("/disputes/{dispute_id}/accept")
    def accept_dispute(dispute_id: str, req: ActorRequest, request: Request):
        _authenticate(request, req.user_id)
        return _unwrap(_engine.accept(dispute_id, req.user_id))

    @app.post("/disputes/{dispute_id}/decline")
    def decline_dispute(dispute_id: str, req: ActorRequest, request: Request):
        _authenticate(request, req.user_id)
        return _unwrap(_engine.decline(dispute_id, req.user_id))

    @app.post("/disputes/{dispute_id}/cancel")
    def cancel_dispute(dispute_id: str, req: ActorRequest, request: Request):
        _authenticate(request, req.user_id)
        return _unwrap(_engine.cancel(dispute_id, req.user_id))

    @app.post("/disputes/{dispute_id}/choose")
    def choose(dispute_id: str, req: ChoiceRequest, request: Request):
        _authenticate(request, req.user_id)
        return _unwrap(_engine.make_choice(dispute_id, req.user_id, req.choice))

    @app.post("/disputes/{dispute_id}/vote")
    def vote(dispute_id: str, req: VoteRequest, request: Request):
        _authenticate(request, req.voter_id)
        return _unwrap(_engine.add_vote(dispute_id, req.voter_id, req.vote_for))

    @app.post("/disputes/{dispute_id}/resolve")
    def resolve(dispute_id: str):
        return _unwrap(_engine.resolve_by_voting(dispute_id))

    # --- Rooms ---

    @app.post("/disputes/{dispute_id}/room")
    def join_room(dispute_id: str, req: ActorRequest, request: Request):
        _authenticate(request, req.user_id)
        return _unwrap(_rooms.join(dispute_id, req.user_id))

    @app.get("/disputes/{dispute_id}/room")
    def room_status(dispute_id: str, user_id: int | None = Query(default=None, gt=0, le=MAX_TELEGRAM_ID)):
        return _unwrap(_rooms.get_status(dispute_id, user_id))

    @app.post("/disputes/{dispute_id}/room/ready")
    def room_ready(dispute_id: str, req: ReadyRequest, request: Request):
        _authenticate(request, req.user_id)
        return _unwrap(_rooms.set_ready(dispute_id, req.user_id, req.ready))

    @app.post("/disputes/{dispute_id}/room/close")
    def close_room(dispute_id: str, req: ActorRequest, request: Request):
        _authenticate(request, req.user_id)
        return _unwrap(_rooms.close_room(dispute_id, req.user_id))

    # --- Accounts ---

    @app.post("/users")
    def register_user(req: RegisterRequest, request: Request):
        _authenticate(request, req.telegram_id)
        account = _accounts.register(req.telegram_id, req.first_name, req.last_name, req.username)
        return account.to_dict()

    @app.get("/users/{telegram_id}")
    def get_user(telegram_id: UserIdPath):
        return _call(_accounts.require, telegram_id).to_dict()

    @app.get("/users/{telegram_id}/transactions")
    def user_transactions(telegram_id: UserIdPath, limit: int = 50):
        _call(_accounts.require, telegram_id)
        return _ledger.for_user(telegram_id, limit=max(1, min(limit, 500)))

    @app.post("/admin/users/{telegram_id}/balance")
    def admin_balance(telegram_id: UserIdPath, req: BalanceRequest, request: Request):
        _require_admin(request)
        if (req.amount is None) == (req.delta is None):
            raise HTTPException(400, "Provide exactly one of amount or delta")
        if req.amount is not None:
            account = _call(_accounts.set_balance, telegram_id, req.amount)
        else:
            account = _call(_accounts.admin_adjust, telegram_id, req.delta)
        return account.to_dict()

    @app.post("/admin/users/{telegram_id}/flags")
    def admin_flags(telegram_id: UserIdPath, req: FlagsRequest, request: Request):
        _require_admin(request)
        account = _call(_accounts.require, telegram_id)
        if req.win_rate is not None:
            account = _call(_accounts.set_win_rate, telegram_id, req.win_rate)
        if req.is_banned is not None:
            account = _call(_accounts.set_banned, telegram_id, req.is_banned)
        return account.to_dict()

    # --- Telegram ---

    @app.post("/telegram/webhook")
    def telegram_webhook(update: dict, request: Request):
        if _config.webhook_secret:
            token = request.headers.get("X-Telegram-Bot-Api-Secret-Token", "")
            if not hmac.compare_digest(token, _config.webhook_secret):
                raise HTTPException(403, "Invalid webhook secret")
        if _bot_handler is None:
            raise HTTPException(503, "Bot not configured")
        handled = _bot_handler.handle_update(update)
        logger.debug("Webhook update %s: %s", update.get("update_id"), handled)
        return {"ok": True, "handled": handled}

    @app.get("/health")
    def health():
        return {"ok": True, "sweeper": _sweeper.running}

    return app
