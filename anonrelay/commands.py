"""
Routes inbound events to the relay flows and operator commands.

Operator triggers only run for events from the configured operator
conversation; anyone else issuing them is silently ignored. Events from the
supervisor conversation are never relayed.
"""

import logging
import re
from typing import Callable, Dict, Optional

from sqlalchemy.orm import Session

from anonrelay import texts
from anonrelay.blocks import BlockOutcome, block, list_blocked, unblock
from anonrelay.broadcast import broadcast
from anonrelay.channel import InboundEvent
from anonrelay.identity import add_note, get_by_pseudonym
from anonrelay.relay import Dispatch, DrainStatus, RelayEngine
from anonrelay.utils import parse_pseudonym

logger = logging.getLogger(__name__)

_LEADING_ID_RE = re.compile(r"^#?\d+\s*")


def _tell_operator(relay: RelayEngine, text: str) -> None:
    relay.notify(relay.operator_chat_ref, text, "operator_reply")


def _pseudonym_or_usage(relay: RelayEngine, args: str, usage: str) -> Optional[int]:
    pseudonym_id = parse_pseudonym(args)
    if pseudonym_id is None:
        _tell_operator(relay, texts.INVALID_ID.format(usage=usage))
    return pseudonym_id


# =============================================================================
# Operator Command Handlers
# =============================================================================

def handle_newmsg(relay: RelayEngine, db: Session, event: InboundEvent) -> None:
    try:
        report = relay.drain(db)
    except Exception as e:
        logger.error(f"Error processing new messages: {e}")
        _tell_operator(relay, texts.DRAIN_ERROR)
        return

    if report.status is DrainStatus.EMPTY:
        _tell_operator(relay, texts.NO_NEW_MESSAGES)
    elif report.status is DrainStatus.BUSY:
        _tell_operator(relay, texts.DRAIN_BUSY)


def handle_block(relay: RelayEngine, db: Session, event: InboundEvent) -> None:
    args = event.command_args
    pseudonym_id = _pseudonym_or_usage(relay, args, "/block #ID [reason: optional reason]")
    if pseudonym_id is None:
        return

    reason = args.split("reason:", 1)[1].strip() if "reason:" in args else None
    result = block(db, relay.channel, pseudonym_id, reason)
    if result.outcome is BlockOutcome.NOT_FOUND:
        _tell_operator(relay, texts.USER_NOT_FOUND.format(pseudonym_id=pseudonym_id))
        return
    _tell_operator(
        relay,
        texts.USER_BLOCKED.format(pseudonym_id=pseudonym_id, reason=result.user.block_reason),
    )


def handle_unblock(relay: RelayEngine, db: Session, event: InboundEvent) -> None:
    pseudonym_id = _pseudonym_or_usage(relay, event.command_args, "/unblock #ID")
    if pseudonym_id is None:
        return

    result = unblock(db, relay.channel, pseudonym_id)
    if result.outcome is BlockOutcome.NOT_FOUND:
        _tell_operator(relay, texts.USER_NOT_FOUND.format(pseudonym_id=pseudonym_id))
        return
    _tell_operator(relay, texts.USER_UNBLOCKED.format(pseudonym_id=pseudonym_id))


def handle_blocklist(relay: RelayEngine, db: Session, event: InboundEvent) -> None:
    users = list_blocked(db)
    if not users:
        _tell_operator(relay, texts.NO_BLOCKED_USERS)
        return

    body = "".join(
        texts.BLOCKED_LIST_ENTRY.format(
            pseudonym_id=user.pseudonym_id,
            reason=user.block_reason or "No reason provided",
        )
        for user in users
    )
    _tell_operator(relay, texts.BLOCKED_LIST_HEADER + body.rstrip())


def handle_note(relay: RelayEngine, db: Session, event: InboundEvent) -> None:
    args = event.command_args
    pseudonym_id = _pseudonym_or_usage(relay, args, "/note #ID your note text")
    if pseudonym_id is None:
        return

    note_text = _LEADING_ID_RE.sub("", args).strip()
    if not note_text:
        _tell_operator(relay, texts.NOTE_REQUIRED)
        return

    user = add_note(db, pseudonym_id, note_text)
    if user is None:
        _tell_operator(relay, texts.USER_NOT_FOUND.format(pseudonym_id=pseudonym_id))
        return

    entry = user.notes.split("\n\n")[-1]
    _tell_operator(
        relay,
        texts.NOTE_ADDED.format(pseudonym_id=pseudonym_id, entry=entry, notes=user.notes),
    )


def handle_viewnotes(relay: RelayEngine, db: Session, event: InboundEvent) -> None:
    pseudonym_id = _pseudonym_or_usage(relay, event.command_args, "/viewnotes #ID")
    if pseudonym_id is None:
        return

    user = get_by_pseudonym(db, pseudonym_id)
    if user is None:
        _tell_operator(relay, texts.USER_NOT_FOUND.format(pseudonym_id=pseudonym_id))
    elif not user.notes:
        _tell_operator(relay, texts.NO_NOTES.format(pseudonym_id=pseudonym_id))
    else:
        _tell_operator(relay, texts.NOTES.format(pseudonym_id=pseudonym_id, notes=user.notes))


def handle_broadcast(relay: RelayEngine, db: Session, event: InboundEvent) -> None:
    payload = event.reply_to.content if event.reply_to else None
    if payload is None:
        _tell_operator(relay, texts.BROADCAST_NEEDS_REPLY)
        return
    if not payload.is_supported:
        _tell_operator(relay, texts.BROADCAST_UNSUPPORTED)
        return

    _tell_operator(relay, texts.BROADCAST_STARTED)
    report = broadcast(
        db,
        relay.channel,
        payload,
        relay.operator_chat_ref,
        delay_ms=relay.settings.BROADCAST_DELAY_MS,
    )
    _tell_operator(relay, texts.BROADCAST_DONE.format(sent=report.sent, failed=report.failed))


def handle_help(relay: RelayEngine, db: Session, event: InboundEvent) -> None:
    _tell_operator(relay, texts.HELP)


OPERATOR_COMMANDS: Dict[str, Callable[[RelayEngine, Session, InboundEvent], None]] = {
    "/newmsg": handle_newmsg,
    "/block": handle_block,
    "/unblock": handle_unblock,
    "/blocklist": handle_blocklist,
    "/note": handle_note,
    "/viewnotes": handle_viewnotes,
    "/broadcast": handle_broadcast,
    "/help": handle_help,
}

PUBLIC_COMMANDS = {"/start", "/getchatid"}


# =============================================================================
# Event Routing
# =============================================================================

def dispatch_event(
    relay: RelayEngine,
    db: Session,
    event: InboundEvent,
    dispatch: Optional[Dispatch] = None,
) -> str:
    """
    Route one inbound event.

    Returns:
        Outcome label: "command", "reply", "ignored" or the inbound
        outcome (accepted, duplicate, blocked, unsupported)
    """
    settings = relay.settings
    if settings.supervisor_enabled and event.chat_ref == settings.SUPERVISOR_CHAT_REF:
        return "ignored"

    command = event.command

    if command == "/start":
        relay.notify(event.chat_ref, texts.WELCOME, "welcome")
        return "command"
    if command == "/getchatid":
        relay.notify(event.chat_ref, texts.CHAT_ID.format(chat_ref=event.chat_ref), "chat_id")
        logger.info("Chat ID requested")
        return "command"

    if event.chat_ref == relay.operator_chat_ref:
        handler = OPERATOR_COMMANDS.get(command) if command else None
        if handler is not None:
            logger.info(f"Operator command: {command}")
            handler(relay, db, event)
            return "command"
        if command is None and event.reply_to is not None:
            relay.reply(db, event)
            return "reply"
        return "ignored"

    # Operator commands from anyone else are dropped without a trace
    if command in OPERATOR_COMMANDS:
        return "ignored"

    result = relay.accept_inbound(db, event, dispatch=dispatch)
    return result.outcome.value
