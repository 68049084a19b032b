"""MLS channel: connects an account's bus to the host's message dispatcher.

The dispatcher is whatever turns an inbound message into replies; it is
called as ``dispatcher(ctx, deliver)`` where ``deliver(text)`` sends a reply
back to the group through the relay binary.
"""

import logging
import re
import threading
import time

from mlsbus.bus import BusHandle, start_bus
from mlsbus.config import AccountConfig
from mlsbus.errors import ConfigError, SendError
from mlsbus.metrics import Metrics
from mlsbus.models import InboundMessage, MessageContext
from mlsbus.transport import send_message

logger = logging.getLogger(__name__)

CHANNEL_ID = "mls"
TEXT_CHUNK_LIMIT = 4000

_GROUP_ID_RE = re.compile(r"^[0-9a-fA-F]{32,64}$")


def normalize_target(target: str) -> str:
    return target.strip().lower()


def looks_like_group_id(value: str) -> bool:
    return bool(_GROUP_ID_RE.match(value.strip()))


def normalize_allow_entry(entry: str) -> str:
    return entry.strip().lower()


def format_allow_from(allow_from: list) -> list[str]:
    return [str(e).strip() for e in allow_from if str(e).strip()]


def chunk_text(text: str, limit: int = TEXT_CHUNK_LIMIT) -> list[str]:
    return [text[i:i + limit] for i in range(0, len(text), limit)]


def _now_ms() -> int:
    return int(time.time() * 1000)


class MlsChannel:
    def __init__(self, account: AccountConfig, dispatcher, sender=send_message):
        self._account = account
        self._dispatcher = dispatcher
        self._sender = sender
        self._metrics = Metrics()
        self._bus: BusHandle | None = None
        self._lock = threading.RLock()
        self.last_start_at: int | None = None
        self.last_stop_at: int | None = None
        self.last_error: str | None = None

    @property
    def account(self) -> AccountConfig:
        return self._account

    @property
    def running(self) -> bool:
        return self._bus is not None and self._bus.running

    @property
    def metrics(self) -> Metrics:
        return self._metrics

    def security_policy(self) -> dict:
        """Who may address this account, with entries normalized for matching."""
        return {
            "policy": self._account.dm_policy,
            "allow_from": [normalize_allow_entry(e)
                           for e in format_allow_from(self._account.allow_from)],
            "policy_path": "channels.mls.dmPolicy",
            "allow_from_path": "channels.mls.allowFrom",
            "approve_hint": ("To approve, add the sender's pubkey to "
                             "channels.mls.allowFrom in your config."),
        }

    def display_name(self, pubkey: str) -> str:
        return self._account.identities.get(pubkey, pubkey[:8])

    def start(self) -> BusHandle:
        acct = self._account
        logger.info("[%s] starting MLS channel (selfPubkey: %s)",
                    acct.account_id, acct.self_pubkey)
        if not acct.configured:
            raise ConfigError("MLS channel not configured, need selfPubkey and burrowPath")

        with self._lock:
            if self._bus is not None:
                return self._bus
            self._bus = start_bus(
                acct.log_path,
                acct.offset_path,
                acct.self_pubkey,
                self._on_message,
                on_error=self._on_bus_error,
                dedup_window=acct.dedup_window,
                dedup_max_size=acct.dedup_max_size,
                poll_interval=acct.poll_interval,
                metrics=self._metrics,
            )
            self.last_start_at = _now_ms()
        logger.info("[%s] MLS channel started, tailing %s", acct.account_id, acct.log_path)
        return self._bus

    def stop(self) -> None:
        with self._lock:
            if self._bus is None:
                return
            self._bus.close()
            self._bus = None
            self.last_stop_at = _now_ms()
        logger.info("[%s] MLS channel stopped", self._account.account_id)

    def send_text(self, to: str, text: str) -> dict:
        """Send *text* to group *to*, split into chunks the relay accepts."""
        acct = self._account
        if not acct.configured:
            raise ConfigError("MLS channel not configured")
        for chunk in chunk_text(text or ""):
            self._sender(acct.burrow_path, acct.burrow_dir, acct.key_path, to, chunk)
        return {"channel": CHANNEL_ID, "to": to, "message_id": f"mls-{_now_ms()}"}

    def snapshot(self) -> dict:
        acct = self._account
        return {
            "account_id": acct.account_id,
            "enabled": acct.enabled,
            "configured": acct.configured,
            "self_pubkey": acct.self_pubkey,
            "running": self.running,
            "last_start_at": self.last_start_at,
            "last_stop_at": self.last_stop_at,
            "last_error": self.last_error,
            "dm_policy": acct.dm_policy,
            "allow_from": format_allow_from(acct.allow_from),
            "allow_groups": format_allow_from(acct.allow_groups),
            "counters": self._metrics.get_all()["counters"],
        }

    def build_context(self, msg: InboundMessage) -> MessageContext:
        return MessageContext(
            body=msg.content,
            sender_id=msg.sender_pubkey,
            sender_name=self.display_name(msg.sender_pubkey),
            to=self._account.self_pubkey,
            session_key=f"{CHANNEL_ID}:{msg.group_id}",
            account_id=self._account.account_id,
            group_id=msg.group_id,
            message_sid=f"mls-{_now_ms()}",
            timestamp_ms=_now_ms(),
        )

    def _on_message(self, msg: InboundMessage) -> None:
        acct_id = self._account.account_id
        ctx = self.build_context(msg)
        logger.info("[%s] inbound from %s in group %s: %s",
                    acct_id, ctx.sender_name, msg.group_id, msg.content[:80])

        reply_group = self._account.reply_group_id or msg.group_id

        def deliver(text: str | None) -> None:
            if not text or not text.strip():
                return
            try:
                self.send_text(reply_group, text)
                logger.info("[%s] sent reply to MLS group %s", acct_id, reply_group)
            except SendError as e:
                self.last_error = str(e)
                logger.error("[%s] Failed to send MLS reply: %s", acct_id, e)

        try:
            self._dispatcher(ctx, deliver)
        except Exception as e:
            self.last_error = str(e)
            logger.error("[%s] dispatch failed: %s", acct_id, e)

    def _on_bus_error(self, err: Exception) -> None:
        self.last_error = str(err)
        logger.error("[%s] MLS bus error: %s", self._account.account_id, err)
