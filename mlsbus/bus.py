"""Engine entry point: start_bus() wires the tailing pipeline for one log."""

import logging

from mlsbus.decoder import LineDecoder
from mlsbus.dedup import DedupFilter
from mlsbus.metrics import Metrics
from mlsbus.offset_store import OffsetStore
from mlsbus.tail_reader import TailReader
from mlsbus.watcher import ChangeWatcher

logger = logging.getLogger(__name__)


class BusHandle:
    """Lifecycle handle returned by start_bus()."""

    def __init__(self, reader: TailReader, watcher: ChangeWatcher):
        self._reader = reader
        self._watcher = watcher
        self._closed = False

    @property
    def running(self) -> bool:
        return not self._closed

    @property
    def offset(self) -> int:
        return self._reader.offset

    @property
    def metrics(self) -> Metrics:
        return self._reader.metrics

    @property
    def watching(self) -> bool:
        return self._watcher.watching

    def trigger(self) -> int:
        """Run a read pass now, e.g. from an external timer."""
        return self._reader.trigger_read()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._reader.close()
        self._watcher.stop()
        logger.info("Bus closed at offset %d", self._reader.offset)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


def start_bus(
    log_path: str,
    offset_path: str,
    self_pubkey: str,
    on_message,
    on_error=None,
    dedup_window: float = 30.0,
    dedup_max_size: int = 200,
    poll_interval: float | None = None,
    metrics: Metrics | None = None,
) -> BusHandle:
    """Start tailing *log_path* and deliver new messages to *on_message*.

    The watch is established before the initial read so nothing appended in
    between is missed. A failed watch is reported to *on_error*; the returned
    handle still works through trigger() and the optional poller.
    """
    store = OffsetStore(offset_path)
    reader = TailReader(
        log_path,
        store,
        LineDecoder(self_pubkey),
        DedupFilter(window_seconds=dedup_window, max_size=dedup_max_size),
        on_message,
        on_error=on_error,
        metrics=metrics,
    )
    logger.info("Starting bus on %s at offset %d", log_path, reader.offset)

    watcher = ChangeWatcher(log_path, reader, on_error=on_error,
                            poll_interval=poll_interval)
    watcher.start()
    reader.trigger_read()
    return BusHandle(reader, watcher)
