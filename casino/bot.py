"""Telegram Bot API client and webhook update handling.

TelegramBot is a thin synchronous client over httpx; it is also the
production Notifier. BotHandler turns webhook updates into engine calls:
inline queries share pending disputes, Accept/Decline buttons run the
same logic as the HTTP API and edit the shared message in place.
"""

import logging
from concurrent.futures import ThreadPoolExecutor

import httpx

from casino import messages
from casino.accounts import AccountStore
from casino.engine import DisputeEngine

logger = logging.getLogger(__name__)

TELEGRAM_API_URL = "https://api.telegram.org"


class TelegramError(Exception):
    pass


class TelegramBot:
    """Bot API calls. ``send`` is fire-and-forget on a small thread pool."""

    def __init__(self, token: str, client: httpx.Client | None = None,
                 api_url: str = TELEGRAM_API_URL, background: bool = True):
        self.token = token
        self.client = client or httpx.Client(timeout=10)
        self.api_url = api_url
        self._pool = ThreadPoolExecutor(max_workers=4, thread_name_prefix="tg-send") if background else None

    def call(self, method: str, **params) -> dict:
        payload = {k: v for k, v in params.items() if v is not None}
        resp = self.client.post(f"{self.api_url}/bot{self.token}/{method}", json=payload)
        try:
            data = resp.json()
        except ValueError:
            raise TelegramError(f"{method}: HTTP {resp.status_code}")
        if not data.get("ok"):
            raise TelegramError(f"{method}: {data.get('description', resp.status_code)}")
        return data.get("result")

    def send_message(self, chat_id: int, text: str, reply_markup: dict | None = None) -> dict:
        return self.call("sendMessage", chat_id=chat_id, text=text, reply_markup=reply_markup)

    def edit_message_text(self, text: str, chat_id: int | None = None, message_id: int | None = None,
                          inline_message_id: str | None = None, reply_markup: dict | None = None):
        return self.call("editMessageText", text=text, chat_id=chat_id, message_id=message_id,
                         inline_message_id=inline_message_id, reply_markup=reply_markup)

    def answer_callback_query(self, callback_query_id: str, text: str = "", show_alert: bool = False):
        return self.call("answerCallbackQuery", callback_query_id=callback_query_id,
                         text=text or None, show_alert=show_alert)

    def answer_inline_query(self, inline_query_id: str, results: list[dict], button: dict | None = None):
        return self.call("answerInlineQuery", inline_query_id=inline_query_id, results=results,
                         cache_time=0, is_personal=True, button=button)

    # Notifier
    def send(self, user_id: int, text: str) -> None:
        if self._pool is None:
            self.send_message(user_id, text)
            return
        future = self._pool.submit(self.send_message, user_id, text)

        def _log_failure(f):
            if f.exception() is not None:
                logger.warning("Telegram delivery to %s failed: %s", user_id, f.exception())

        future.add_done_callback(_log_failure)

    def close(self):
        if self._pool is not None:
            self._pool.shutdown(wait=False)
        self.client.close()


class BotHandler:
    """Dispatches webhook updates."""

    def __init__(self, engine: DisputeEngine, accounts: AccountStore, bot: TelegramBot, webapp_url: str = ""):
        self.engine = engine
        self.accounts = accounts
        self.bot = bot
        self.webapp_url = webapp_url

    def handle_update(self, update: dict) -> str:
        """Process one update. Returns what was handled, for logging/tests."""
        for kind in ("message", "inline_query", "chosen_inline_result", "callback_query"):
            payload = update.get(kind)
            if payload is None:
                continue
            sender = payload.get("from")
            if sender:
                self._register(sender)
            handler = getattr(self, f"_on_{kind}")
            try:
                handler(payload)
            except TelegramError as e:
                logger.warning("Telegram call failed while handling %s: %s", kind, e)
            return kind
        return "ignored"

    def _register(self, sender: dict) -> None:
        if sender.get("is_bot"):
            return
        self.accounts.register(
            sender["id"], first_name=sender.get("first_name", ""),
            last_name=sender.get("last_name"), username=sender.get("username"),
        )

    # --- Messages ---

    def _on_message(self, message: dict) -> None:
        text = (message.get("text") or "").strip()
        if text.split(" ", 1)[0].split("@", 1)[0] != "/start":
            return
        markup = None
        if self.webapp_url:
            markup = {"inline_keyboard": [[{"text": "🎰 Play", "web_app": {"url": self.webapp_url}}]]}
        self.bot.send_message(message["chat"]["id"], messages.start_reply(), reply_markup=markup)

    # --- Inline sharing ---

    def _on_inline_query(self, query: dict) -> None:
        user_id = query["from"]["id"]
        text = (query.get("query") or "").strip()
        disputes = []
        if text:
            result = self.engine.get(text)
            if result.ok and result.value["status"] == "pending" and result.value["creator"]["telegram_id"] == user_id:
                disputes = [result.value]
        if not disputes:
            disputes = self.engine.pending_for_creator(user_id)

        results = [self._article(d) for d in disputes]
        button = None
        if not results and self.webapp_url:
            button = {"text": "Create a dispute", "web_app": {"url": self.webapp_url}}
        self.bot.answer_inline_query(query["id"], results, button=button)

    def _article(self, snap: dict) -> dict:
        return {
            "type": "article",
            "id": snap["id"],
            "title": f"{snap['question']} ({snap['amount']} coins)",
            "description": "Tap to challenge someone",
            "input_message_content": {"message_text": messages.dispute_card(snap)},
            "reply_markup": self._pending_keyboard(snap["id"]),
        }

    def _on_chosen_inline_result(self, chosen: dict) -> None:
        if chosen.get("inline_message_id"):
            self.engine.attach_message(chosen["result_id"], inline_message_id=chosen["inline_message_id"])

    # --- Buttons ---

    def _on_callback_query(self, cq: dict) -> None:
        action, _, dispute_id = (cq.get("data") or "").partition(":")
        user_id = cq["from"]["id"]
        if action == "accept":
            result = self.engine.accept(dispute_id, user_id)
            ok_text = "Dispute accepted! Open the game to flip."
        elif action == "decline":
            result = self.engine.decline(dispute_id, user_id)
            ok_text = "Dispute declined."
        else:
            self.bot.answer_callback_query(cq["id"])
            return

        if not result.ok:
            self.bot.answer_callback_query(cq["id"], text=result.error.message, show_alert=True)
            return

        snap = result.value
        self.bot.answer_callback_query(cq["id"], text=ok_text)
        self._edit_in_place(cq, snap)

    def _edit_in_place(self, cq: dict, snap: dict) -> None:
        markup = self._game_keyboard(snap["id"]) if snap["status"] == "active" else None
        text = messages.dispute_card(snap)
        if cq.get("inline_message_id"):
            self.bot.edit_message_text(text, inline_message_id=cq["inline_message_id"], reply_markup=markup)
        elif cq.get("message"):
            msg = cq["message"]
            self.bot.edit_message_text(text, chat_id=msg["chat"]["id"], message_id=msg["message_id"],
                                       reply_markup=markup)
        elif snap["inline_message_id"] or snap["message_id"]:
            self.bot.edit_message_text(text, chat_id=snap["chat_id"], message_id=snap["message_id"],
                                       inline_message_id=snap["inline_message_id"], reply_markup=markup)

    @staticmethod
    def _pending_keyboard(dispute_id: str) -> dict:
        return {"inline_keyboard": [[
            {"text": "✅ Accept", "callback_data": f"accept:{dispute_id}"},
            {"text": "❌ Decline", "callback_data": f"decline:{dispute_id}"},
        ]]}

    def _game_keyboard(self, dispute_id: str) -> dict | None:
        if not self.webapp_url:
            return None
        sep = "&" if "?" in self.webapp_url else "?"
        # web_app buttons only work in private chats; a plain link works everywhere
        return {"inline_keyboard": [[
            {"text": "🎮 Open game", "url": f"{self.webapp_url}{sep}disputeId={dispute_id}"},
        ]]}
