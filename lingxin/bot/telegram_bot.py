"""
Lingxin Commitments — Telegram Bot.

Telegram is the request layer of the commitment engine: free-text messages
become commitments, commands list and manage them, and the job queue
triggers the scheduler sweep every few minutes. Nudges go back out through
the same bot.

Security-first: unauthorized users are silently ignored.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from functools import wraps
from typing import TYPE_CHECKING, Any, Callable, Coroutine
from zoneinfo import ZoneInfo

from telegram import InlineKeyboardButton, InlineKeyboardMarkup, Update
from telegram.ext import (
    Application,
    ApplicationBuilder,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from lingxin.config import settings
from lingxin.core import commitment_service as service
from lingxin.data.models import CommitmentStatus
from lingxin.ports.commitment_port import CommitmentError

if TYPE_CHECKING:
    from lingxin.core.scheduler import SweepResult
    from lingxin.data.db import CommitmentDB, NudgeLogDB, NudgePrefsDB
    from lingxin.data.models import Commitment, NudgePreference
    from lingxin.ports.notification_port import NudgeNotifier

logger = logging.getLogger(__name__)

_STATUS_ICONS = {
    CommitmentStatus.DRAFT: "📝",
    CommitmentStatus.SCHEDULED: "⏳",
    CommitmentStatus.COMPLETED: "✅",
    CommitmentStatus.CANCELLED: "✖️",
}

_GENERIC_ERROR = "Sorry, something went wrong. Please try again."


# ---------------------------------------------------------------------------
# Security: silent-ignore decorator
# ---------------------------------------------------------------------------


def authorized_only(
    func: Callable[..., Coroutine[Any, Any, None]],
) -> Callable[..., Coroutine[Any, Any, None]]:
    """Decorator that silently ignores messages from unauthorized users.

    Does NOT send any response to strangers: the bot must not reveal
    its existence to unauthorized users.
    """

    @wraps(func)
    async def wrapper(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        user = update.effective_user
        if user is None or user.id not in settings.ALLOWED_USER_IDS:
            uid = user.id if user else "unknown"
            logger.warning("Unauthorized access attempt from user_id=%s", uid)
            return  # Silent ignore
        return await func(update, context)

    return wrapper


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _store(context: ContextTypes.DEFAULT_TYPE) -> CommitmentDB:
    return context.bot_data["store"]


def _prefs_store(context: ContextTypes.DEFAULT_TYPE) -> NudgePrefsDB:
    return context.bot_data["prefs"]


def _user_prefs(context: ContextTypes.DEFAULT_TYPE, user_id: int) -> NudgePreference:
    return _prefs_store(context).ensure_defaults(user_id)


def _format_when(commitment: Commitment, tz: str) -> str:
    if commitment.when_time is None:
        return "time not set"
    return commitment.when_time.astimezone(ZoneInfo(tz)).strftime("%Y-%m-%d %H:%M")


def _format_commitment(commitment: Commitment, tz: str) -> str:
    """One line per commitment: short id, status icon, title, local time."""
    icon = _STATUS_ICONS[commitment.status]
    line = f"{commitment.id[:8]} {icon} {commitment.title} — {_format_when(commitment, tz)}"
    if commitment.when_rrule:
        line += f" 🔁 {commitment.when_rrule.removeprefix('FREQ=').lower()}"
    return line


def _parse_hour(raw: str) -> str | None:
    """Accept "22", "22:00" or "7:30"; return normalized HH:MM or None."""
    raw = raw.strip()
    hour_s, _, minute_s = raw.partition(":")
    try:
        hour = int(hour_s)
        minute = int(minute_s) if minute_s else 0
    except ValueError:
        return None
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        return None
    return f"{hour:02d}:{minute:02d}"


async def _run_sweep(bot_data: dict) -> SweepResult:
    """Run one scheduler sweep with the ports stored in bot_data."""
    from lingxin.core.scheduler import run_sweep

    return await run_sweep(
        datetime.now(timezone.utc),
        bot_data["store"],
        bot_data["prefs"],
        bot_data["log"],
        notifier=bot_data.get("notifier"),
    )


async def _resolve_id_arg(
    update: Update, context: ContextTypes.DEFAULT_TYPE, usage: str,
) -> str | None:
    """Resolve the first command argument to a full commitment id, or reply with usage."""
    if not context.args:
        await update.message.reply_text(f"Usage: {usage}\nUse /list to see IDs.")
        return None
    try:
        return _store(context).resolve_id(update.effective_user.id, context.args[0])
    except CommitmentError as exc:
        await update.message.reply_text(str(exc))
        return None


# ---------------------------------------------------------------------------
# Capture: free text → commitment
# ---------------------------------------------------------------------------


@authorized_only
async def handle_text(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Extract a commitment from a text message and schedule it (or ask when)."""
    user_id = update.effective_user.id
    text = update.message.text or ""

    try:
        prefs = _user_prefs(context, user_id)
        result = service.capture(_store(context), user_id, text, service.user_now(prefs))
    except CommitmentError as exc:
        await update.message.reply_text(str(exc))
        return
    except Exception as exc:
        logger.error("Capture error: %s", exc)
        await update.message.reply_text(_GENERIC_ERROR)
        return

    if result.kind is service.CaptureKind.NO_ACTION:
        await update.message.reply_text(
            "I couldn't find a commitment in your message. Try something like: "
            "'明天早上 提醒我 運動', 'remind me tomorrow at 18:00 to call mom' or "
            "'every day at 08:00 walk'."
        )
        return

    commitment = result.commitment
    if result.kind is service.CaptureKind.NEEDS_CLARIFICATION:
        options = result.draft.suggestions.time_options
        context.user_data.setdefault("pending_options", {})[commitment.id] = options
        keyboard = [
            [InlineKeyboardButton(label, callback_data=f"pick:{commitment.id}:{i}")]
            for i, label in enumerate(options)
        ]
        await update.message.reply_text(
            f"📝 {commitment.title}\nWhen should I remind you?",
            reply_markup=InlineKeyboardMarkup(keyboard),
        )
        return

    await update.message.reply_text(
        f"✅ Scheduled: {_format_commitment(commitment, prefs.timezone)}"
    )
    await _sweep_on_demand(context)


async def _sweep_on_demand(context: ContextTypes.DEFAULT_TYPE) -> None:
    """Fire anything that is already due right after a commitment is created."""
    try:
        await _run_sweep(context.bot_data)
    except Exception as exc:
        logger.error("On-demand sweep failed: %s", exc)


async def _handle_pick_callback(
    update: Update, context: ContextTypes.DEFAULT_TYPE
) -> None:
    """Handle the inline button tap that schedules a draft at a suggested time."""
    query = update.callback_query
    await query.answer()

    # Verify the user is authorized
    user = query.from_user
    if user is None or user.id not in settings.ALLOWED_USER_IDS:
        return

    _, commitment_id, index = query.data.split(":")
    options = context.user_data.get("pending_options", {}).get(commitment_id)
    if not options:
        await query.edit_message_text("This suggestion has expired. Please send the message again.")
        return

    try:
        prefs = _user_prefs(context, user.id)
        commitment = service.confirm_draft(
            _store(context), user.id, commitment_id, options[int(index)],
            service.user_now(prefs),
        )
    except CommitmentError as exc:
        await query.edit_message_text(str(exc))
        return
    except Exception as exc:
        logger.error("Draft confirmation error: %s", exc)
        await query.edit_message_text(_GENERIC_ERROR)
        return

    context.user_data["pending_options"].pop(commitment_id, None)
    await query.edit_message_text(
        f"✅ Scheduled: {_format_commitment(commitment, prefs.timezone)}"
    )
    await _sweep_on_demand(context)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@authorized_only
async def cmd_start(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /start — create default nudge preferences and say hello."""
    try:
        prefs = _user_prefs(context, update.effective_user.id)
    except Exception as exc:
        logger.error("/start error: %s", exc)
        await update.message.reply_text(_GENERIC_ERROR)
        return

    await update.message.reply_text(
        "Welcome to Lingxin!\n\n"
        "Tell me what you want to remember and when:\n"
        "• 明天早上 提醒我 運動\n"
        "• remind me tomorrow at 18:00 to call mom\n"
        "• every day at 08:00 walk\n\n"
        f"Timezone: {prefs.timezone}, up to {prefs.max_daily_nudges} nudges a day.\n"
        "Type /help for the full command list."
    )


@authorized_only
async def cmd_help(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /help — list available commands."""
    await update.message.reply_text(
        "Available commands:\n"
        "/list [status] [limit] — List commitments (all, draft, scheduled, completed, cancelled)\n"
        "/cancel <id> — Cancel a commitment\n"
        "/reactivate <id> — Schedule a completed or cancelled commitment again\n"
        "/delete <id> — Delete a commitment permanently\n"
        "/stopseries <id> — Cancel every upcoming occurrence of a recurring commitment\n"
        "/dnd <start> <end> | off — Set or disable quiet hours (e.g. /dnd 22 8)\n"
        "/limit <n> — Maximum nudges per day\n"
        "/help — Show this message"
    )


@authorized_only
async def cmd_list(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /list [status] [limit] — newest commitments first."""
    user_id = update.effective_user.id
    status_filter = "all"
    limit = settings.LIST_LIMIT
    for arg in context.args or []:
        if arg.isdigit():
            limit = int(arg)
        else:
            status_filter = arg.lower()

    try:
        prefs = _user_prefs(context, user_id)
        commitments = _store(context).list(user_id, status_filter, limit)
    except CommitmentError as exc:
        await update.message.reply_text(str(exc))
        return
    except Exception as exc:
        logger.error("/list error: %s", exc)
        await update.message.reply_text("Couldn't load commitments. Please try again.")
        return

    if not commitments:
        await update.message.reply_text("No commitments found.")
        return

    lines = ["Your commitments:\n"]
    lines.extend(_format_commitment(c, prefs.timezone) for c in commitments)
    await update.message.reply_text("\n".join(lines))


async def _lifecycle_command(
    update: Update,
    context: ContextTypes.DEFAULT_TYPE,
    usage: str,
    action: Callable[[CommitmentDB, int, str], Any],
    done_message: Callable[[Any], str],
) -> None:
    """Shared flow for /cancel, /reactivate, /delete and /stopseries."""
    commitment_id = await _resolve_id_arg(update, context, usage)
    if commitment_id is None:
        return

    user_id = update.effective_user.id
    try:
        outcome = action(_store(context), user_id, commitment_id)
    except CommitmentError as exc:
        await update.message.reply_text(str(exc))
        return
    except Exception as exc:
        logger.error("%s error: %s", usage.split()[0], exc)
        await update.message.reply_text(_GENERIC_ERROR)
        return

    await update.message.reply_text(done_message(outcome))


@authorized_only
async def cmd_cancel(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /cancel <id>."""
    await _lifecycle_command(
        update, context, "/cancel <id>", service.cancel,
        lambda c: f"✖️ Cancelled: {c.title}",
    )


@authorized_only
async def cmd_reactivate(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /reactivate <id>."""
    await _lifecycle_command(
        update, context, "/reactivate <id>", service.reactivate,
        lambda c: f"⏳ Scheduled again: {c.title}",
    )
    await _sweep_on_demand(context)


@authorized_only
async def cmd_delete(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /delete <id> — hard delete."""
    await _lifecycle_command(
        update, context, "/delete <id>",
        lambda store, user_id, cid: store.delete(user_id, cid),
        lambda _: "🗑 Commitment deleted.",
    )


@authorized_only
async def cmd_stopseries(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /stopseries <id>."""
    await _lifecycle_command(
        update, context, "/stopseries <id>", service.stop_series,
        lambda count: f"✖️ Recurring commitment stopped ({count} upcoming cancelled).",
    )


@authorized_only
async def cmd_dnd(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /dnd <start> <end> | /dnd off."""
    args = context.args or []
    user_id = update.effective_user.id

    if len(args) == 1 and args[0].lower() == "off":
        try:
            service.disable_dnd(_prefs_store(context), _user_prefs(context, user_id))
        except Exception as exc:
            logger.error("/dnd error: %s", exc)
            await update.message.reply_text(_GENERIC_ERROR)
            return
        await update.message.reply_text("🔔 Quiet hours disabled.")
        return

    start = _parse_hour(args[0]) if len(args) == 2 else None
    end = _parse_hour(args[1]) if len(args) == 2 else None
    if start is None or end is None:
        await update.message.reply_text("Usage: /dnd <start> <end> (e.g. /dnd 22 8) or /dnd off")
        return

    try:
        prefs = service.set_dnd(_prefs_store(context), _user_prefs(context, user_id), start, end)
    except CommitmentError as exc:
        await update.message.reply_text(str(exc))
        return
    except Exception as exc:
        logger.error("/dnd error: %s", exc)
        await update.message.reply_text(_GENERIC_ERROR)
        return

    await update.message.reply_text(
        f"🌙 Quiet hours: {prefs.dnd_start_time}–{prefs.dnd_end_time} ({prefs.timezone})"
    )


@authorized_only
async def cmd_limit(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /limit <n>."""
    args = context.args or []
    if len(args) != 1 or not args[0].isdigit():
        await update.message.reply_text("Usage: /limit <n> (e.g. /limit 5)")
        return

    user_id = update.effective_user.id
    try:
        prefs = service.set_daily_limit(
            _prefs_store(context), _user_prefs(context, user_id), int(args[0]),
        )
    except CommitmentError as exc:
        await update.message.reply_text(str(exc))
        return
    except Exception as exc:
        logger.error("/limit error: %s", exc)
        await update.message.reply_text(_GENERIC_ERROR)
        return

    await update.message.reply_text(f"👍 Up to {prefs.max_daily_nudges} nudges a day.")


# ---------------------------------------------------------------------------
# Application wiring
# ---------------------------------------------------------------------------


def build_app(
    store: CommitmentDB | None = None,
    prefs: NudgePrefsDB | None = None,
    event_log: NudgeLogDB | None = None,
    notifier: NudgeNotifier | None = None,
) -> Application:
    """Build and configure the Telegram Application with all handlers.

    Args:
        store: Commitment store. Defaults to CommitmentDB on DATABASE_PATH.
        prefs: Nudge preference store. Defaults to NudgePrefsDB.
        event_log: Nudge log. Defaults to NudgeLogDB.
        notifier: Notification port implementation. Defaults to TelegramNotifier
                  (created from the bot instance after app is built).
    """
    from lingxin.data.db import CommitmentDB, NudgeLogDB, NudgePrefsDB

    app = ApplicationBuilder().token(settings.TELEGRAM_BOT_TOKEN).build()

    if notifier is None:
        from lingxin.adapters.telegram_notifier import TelegramNotifier
        notifier = TelegramNotifier(app.bot)

    # Store ports in bot_data for handler access
    app.bot_data["store"] = store or CommitmentDB()
    app.bot_data["prefs"] = prefs or NudgePrefsDB()
    app.bot_data["log"] = event_log or NudgeLogDB()
    app.bot_data["notifier"] = notifier

    # Commands
    app.add_handler(CommandHandler("start", cmd_start))
    app.add_handler(CommandHandler("help", cmd_help))
    app.add_handler(CommandHandler("list", cmd_list))
    app.add_handler(CommandHandler("cancel", cmd_cancel))
    app.add_handler(CommandHandler("reactivate", cmd_reactivate))
    app.add_handler(CommandHandler("delete", cmd_delete))
    app.add_handler(CommandHandler("stopseries", cmd_stopseries))
    app.add_handler(CommandHandler("dnd", cmd_dnd))
    app.add_handler(CommandHandler("limit", cmd_limit))
    app.add_handler(CallbackQueryHandler(_handle_pick_callback, pattern=r"^pick:[0-9a-f]+:\d+$"))

    # Text messages (non-command)
    app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, handle_text))

    _setup_sweep_job(app)

    logger.info("Telegram bot application built with %d handlers", len(app.handlers[0]))
    return app


def _setup_sweep_job(app: Application) -> None:
    """Register the periodic scheduler sweep on the job queue."""

    async def _sweep_job_callback(context: ContextTypes.DEFAULT_TYPE) -> None:
        try:
            await _run_sweep(context.bot_data)
        except Exception as exc:
            logger.error("Scheduled sweep failed: %s", exc)

    app.job_queue.run_repeating(
        _sweep_job_callback,
        interval=settings.SWEEP_INTERVAL_MINUTES * 60,
        first=10,
        name="commitment_sweep",
    )

    logger.info("Commitment sweep scheduled every %d min", settings.SWEEP_INTERVAL_MINUTES)


def main() -> None:
    """Entry point: build the app and start polling."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logger.info("Starting Lingxin commitment bot...")
    app = build_app()
    app.run_polling()


if __name__ == "__main__":
    main()
