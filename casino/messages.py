"""Plain-text messages for dispute notifications and bot replies."""

import time

from protocol import ROLE_CREATOR, ROLE_OPPONENT

SIDE_LABELS = {"heads": "Heads", "tails": "Tails"}

STATUS_LABELS = {
    "pending": "⏳ Waiting for opponent",
    "active": "🎲 In progress",
    "voting": "🗳 Voting",
    "completed": "✅ Completed",
    "cancelled": "🚫 Cancelled",
    "rejected": "❌ Declined",
}


def _name(snapshot: dict, role: str) -> str:
    return (snapshot.get(role) or {}).get("name") or "Unknown"


def dispute_card(snapshot: dict) -> str:
    """Shareable summary used for inline results and in-place edits."""
    lines = [
        f"⚔️ Dispute: {snapshot['question']}",
        f"💰 Stake: {snapshot['amount']} coins each",
        f"👤 {_name(snapshot, ROLE_CREATOR)}: {SIDE_LABELS[snapshot['creator']['side']]}",
    ]
    if snapshot["opponent"]["telegram_id"] is not None:
        lines.append(f"👤 {_name(snapshot, ROLE_OPPONENT)}: {SIDE_LABELS[snapshot['opponent']['side']]}")
    lines.append(f"Status: {STATUS_LABELS.get(snapshot['status'], snapshot['status'])}")
    if snapshot["status"] == "completed":
        lines.append(outcome_line(snapshot))
    return "\n".join(lines)


def outcome_line(snapshot: dict) -> str:
    if snapshot["is_draw"]:
        return "🤝 Draw, stakes refunded"
    winner = snapshot.get("winner_name") or "Unknown"
    if snapshot["result"]:
        return f"🪙 {SIDE_LABELS[snapshot['result']]}! Winner: {winner} (+{snapshot['payout']})"
    return f"🏆 Winner by vote: {winner} (+{snapshot['payout']})"


def accepted(snapshot: dict) -> str:
    return (
        f"✅ {_name(snapshot, ROLE_OPPONENT)} accepted your dispute \"{snapshot['question']}\".\n"
        f"{snapshot['amount']} coins were reserved from each side. Open the game and press Ready!"
    )


def declined(snapshot: dict) -> str:
    return f"❌ {_name(snapshot, ROLE_OPPONENT)} declined your dispute \"{snapshot['question']}\"."


def cancelled(snapshot: dict) -> str:
    return f"🚫 {_name(snapshot, ROLE_CREATOR)} cancelled the dispute \"{snapshot['question']}\"."


def opponent_joined(snapshot: dict, role: str) -> str:
    return f"👋 {_name(snapshot, role)} joined the room for \"{snapshot['question']}\"."


def opponent_ready(snapshot: dict, role: str) -> str:
    return f"🟢 {_name(snapshot, role)} is ready. Waiting for you!"


def result_for(snapshot: dict, user_id: int) -> str:
    """Personalised result message for one participant."""
    head = f"Dispute \"{snapshot['question']}\" is over.\n{outcome_line(snapshot)}"
    if snapshot["is_draw"]:
        return f"{head}\nYour {snapshot['amount']} coins are back on your balance."
    if snapshot["winner_id"] == user_id:
        return f"🎉 {head}\nYou won {snapshot['payout']} coins (commission {snapshot['commission']})."
    return f"😔 {head}\nYou lost {snapshot['amount']} coins."


def voting_started(snapshot: dict, now: float | None = None) -> str:
    deadline = snapshot["voting"]["deadline"]
    now = time.time() if now is None else now
    hours = max(0, round((deadline - now) / 3600)) if deadline else 0
    return (
        f"🗳 You and your opponent disagree on \"{snapshot['question']}\".\n"
        f"Voting is open for about {hours}h. The majority decides the winner."
    )


def start_reply() -> str:
    return (
        "🎰 Welcome to the casino!\n"
        "Tap Play to open the games, or type @bot in any chat to share a dispute."
    )
