"""TailReader: incremental, restart-safe reads of the relay's event log.

Each trigger runs at most one read pass over the bytes between the stored
cursor and end of file. Triggers that arrive while a pass is active are
collapsed into one follow-up pass. The cursor only advances over complete,
newline-terminated lines, so a line the relay is still writing is picked up
whole on the next pass.
"""

import logging
import os
import threading

from mlsbus.decoder import LineDecoder
from mlsbus.dedup import DedupFilter
from mlsbus.metrics import Metrics
from mlsbus.models import InboundMessage
from mlsbus.offset_store import OffsetStore

logger = logging.getLogger(__name__)


class TailReader:
    def __init__(
        self,
        log_path: str,
        offset_store: OffsetStore,
        decoder: LineDecoder,
        dedup: DedupFilter,
        on_message,
        on_error=None,
        metrics: Metrics | None = None,
    ):
        self._log_path = log_path
        self._store = offset_store
        self._decoder = decoder
        self._dedup = dedup
        self._on_message = on_message
        self._on_error = on_error
        self._metrics = metrics or Metrics()
        self._offset = offset_store.load()
        self._inode: int | None = None
        self._in_flight = threading.Lock()
        self._pending = False
        self._closed = False
        self._pass_id = 0

    @property
    def offset(self) -> int:
        return self._offset

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def metrics(self) -> Metrics:
        return self._metrics

    def close(self) -> None:
        """Stop accepting triggers. A pass already running is left to finish."""
        self._closed = True

    def trigger_read(self) -> int:
        """Run a read pass unless one is active. Returns messages delivered."""
        delivered = 0
        while not self._closed:
            if not self._in_flight.acquire(blocking=False):
                self._pending = True
                return delivered
            try:
                while True:
                    self._pending = False
                    delivered += self._read_pass()
                    if not self._pending or self._closed:
                        break
            finally:
                self._in_flight.release()
            # A trigger that landed between the last check and release().
            if not self._pending:
                break
        return delivered

    def _read_pass(self) -> int:
        self._pass_id += 1
        self._metrics.increment("passes")

        if not os.path.exists(self._log_path):
            return 0
        try:
            stat = os.stat(self._log_path)
        except OSError as e:
            self._metrics.increment("io_errors")
            self._report(e)
            return 0

        dirty = False
        if self._inode is not None and stat.st_ino != self._inode:
            logger.info("Log rotated (inode %d -> %d): %s",
                        self._inode, stat.st_ino, self._log_path)
            self._metrics.increment("rotations")
            self._offset = 0
            dirty = True
        self._inode = stat.st_ino

        if stat.st_size < self._offset:
            logger.info("Log truncated (size %d < offset %d), restarting from 0: %s",
                        stat.st_size, self._offset, self._log_path)
            self._metrics.increment("truncations")
            self._offset = 0
            self._store.save(self._offset)
            return 0
        if stat.st_size == self._offset:
            if dirty:
                self._store.save(self._offset)
            return 0

        start = self._offset
        delivered = 0
        try:
            with open(self._log_path, "rb") as f:
                f.seek(start)
                for raw in f:
                    # Unterminated tail: the relay is mid-write.
                    if not raw.endswith(b"\n"):
                        break
                    self._offset += len(raw)
                    self._metrics.increment("lines_read")
                    delivered += self._process_line(raw)
        except OSError as e:
            self._metrics.increment("io_errors")
            self._report(e)
        finally:
            if dirty or self._offset != start:
                self._store.save(self._offset)

        if delivered:
            logger.info("[pass %d] delivered %d message(s), offset %d -> %d",
                        self._pass_id, delivered, start, self._offset)
        return delivered

    def _process_line(self, raw: bytes) -> int:
        msg = self._decoder.decode(raw)
        if msg is None:
            self._metrics.increment("lines_skipped")
            return 0

        if self._dedup.is_duplicate(msg.sender_pubkey, msg.group_id, msg.content):
            self._metrics.increment("duplicates_skipped")
            logger.debug("[pass %d] DEDUP-SKIP: %s", self._pass_id, msg.content[:40])
            return 0

        logger.debug("[pass %d] DELIVER: %s (offset=%d)",
                     self._pass_id, msg.content[:40], self._offset)
        return self._deliver(msg)

    def _deliver(self, msg: InboundMessage) -> int:
        try:
            self._on_message(msg)
        except Exception as e:
            self._metrics.increment("handler_errors")
            self._report(e)
            return 0
        self._metrics.increment("messages_delivered")
        return 1

    def _report(self, err: Exception) -> None:
        if self._on_error is None:
            logger.error("Bus error on %s: %s", self._log_path, err)
            return
        try:
            self._on_error(err)
        except Exception:
            logger.exception("Error callback failed while reporting: %s", err)
