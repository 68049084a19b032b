"""Tests for the tail reader's read-pass state machine."""

import builtins
import threading

import pytest

from conftest import message_line
from mlsbus.decoder import LineDecoder
from mlsbus.dedup import DedupFilter
from mlsbus.offset_store import OffsetStore
from mlsbus.tail_reader import TailReader


class Collector:
    def __init__(self):
        self.messages = []
        self.errors = []

    def on_message(self, msg):
        self.messages.append(msg)

    def on_error(self, err):
        self.errors.append(err)

    @property
    def contents(self) -> list[str]:
        return [m.content for m in self.messages]


@pytest.fixture()
def sink():
    return Collector()


@pytest.fixture()
def make_reader(log_file, offset_file, sink):
    def _make(dedup=None, on_message=None, self_pubkey="self"):
        return TailReader(
            str(log_file),
            OffsetStore(str(offset_file)),
            LineDecoder(self_pubkey),
            dedup if dedup is not None else DedupFilter(),
            on_message or sink.on_message,
            on_error=sink.on_error,
        )
    return _make


class TestReadPass:
    def test_three_line_scenario(self, make_reader, sink, append, log_file, offset_file):
        first = '{"type":"message","allowed":true,"senderPubkey":"A","groupId":"G","content":"hi"}\n'
        own = '{"type":"message","allowed":true,"senderPubkey":"self","groupId":"G","content":"ignored"}\n'
        append(first, first, own)

        reader = make_reader()
        assert reader.trigger_read() == 1

        assert len(sink.messages) == 1
        assert sink.messages[0].sender_pubkey == "A"
        assert sink.messages[0].content == "hi"
        total = len((first + first + own).encode("utf-8"))
        assert reader.offset == total
        assert offset_file.read_text() == str(total)
        assert sink.errors == []

    def test_missing_log_is_noop(self, make_reader, sink, offset_file):
        reader = make_reader()
        assert reader.trigger_read() == 0
        assert reader.offset == 0
        assert not offset_file.exists()
        assert sink.errors == []

    def test_file_order(self, make_reader, sink, append):
        append(*(message_line(content=f"m{i}") for i in range(5)))
        make_reader().trigger_read()
        assert sink.contents == ["m0", "m1", "m2", "m3", "m4"]

    def test_unchanged_file_delivers_nothing(self, make_reader, sink, append, offset_file):
        append(message_line(content="one"))
        reader = make_reader()
        reader.trigger_read()
        saved = offset_file.read_text()

        assert reader.trigger_read() == 0
        assert sink.contents == ["one"]
        assert offset_file.read_text() == saved

    def test_incremental_reads(self, make_reader, sink, append):
        reader = make_reader()
        append(message_line(content="one"))
        reader.trigger_read()
        append(message_line(content="two"), message_line(content="three"))
        assert reader.trigger_read() == 2
        assert sink.contents == ["one", "two", "three"]

    def test_multibyte_offsets(self, make_reader, sink, append, log_file):
        reader = make_reader()
        append(message_line(content="héllo wörld ✓"))
        reader.trigger_read()
        append(message_line(content="next"))
        reader.trigger_read()
        assert sink.contents == ["héllo wörld ✓", "next"]
        assert reader.offset == log_file.stat().st_size

    def test_crlf_line_endings(self, make_reader, sink, log_file):
        log_file.write_bytes(message_line(content="a").rstrip("\n").encode() + b"\r\n")
        reader = make_reader()
        reader.trigger_read()
        assert sink.contents == ["a"]
        assert reader.offset == log_file.stat().st_size

    def test_malformed_lines_ignored(self, make_reader, sink, append):
        append(
            "not json\n",
            message_line(content="one"),
            '{"type":"other"}\n',
            message_line(content="blocked", allowed=False),
            "\n",
            message_line(sender="self", content="mine"),
            message_line(content="two"),
        )
        make_reader().trigger_read()
        assert sink.contents == ["one", "two"]
        assert sink.errors == []

    def test_partial_line_waits_for_newline(self, make_reader, sink, append):
        line = message_line(content="split")
        append(line[:20])
        reader = make_reader()
        assert reader.trigger_read() == 0
        assert reader.offset == 0

        append(line[20:])
        assert reader.trigger_read() == 1
        assert sink.contents == ["split"]

    def test_complete_lines_before_partial_tail(self, make_reader, sink, append):
        done = message_line(content="done")
        append(done, message_line(content="pending")[:10])
        reader = make_reader()
        reader.trigger_read()
        assert sink.contents == ["done"]
        assert reader.offset == len(done.encode())


class TestDuplicates:
    def test_duplicates_within_pass(self, make_reader, sink, append):
        append(message_line(), message_line(), message_line())
        assert make_reader().trigger_read() == 1

    def test_duplicates_across_passes(self, make_reader, sink, append):
        reader = make_reader()
        append(message_line())
        reader.trigger_read()
        append(message_line())
        assert reader.trigger_read() == 0
        assert len(sink.messages) == 1

    def test_repeat_after_window_is_new(self, make_reader, sink, append):
        fake_time = [0.0]
        dedup = DedupFilter(window_seconds=30, max_size=1, time_func=lambda: fake_time[0])
        reader = make_reader(dedup=dedup)
        append(message_line(content="hi"), message_line(content="filler"))
        reader.trigger_read()

        fake_time[0] = 60.0
        append(message_line(content="hi"))
        assert reader.trigger_read() == 1
        assert sink.contents == ["hi", "filler", "hi"]


class TestRestart:
    def test_restart_resumes_from_saved_offset(self, make_reader, sink, append):
        append(message_line(content="one"), message_line(content="two"))
        make_reader().trigger_read()

        fresh = make_reader(dedup=DedupFilter())
        assert fresh.trigger_read() == 0
        append(message_line(content="three"))
        assert fresh.trigger_read() == 1
        assert sink.contents == ["one", "two", "three"]

    def test_corrupt_offset_file_rereads_from_start(self, make_reader, sink, append,
                                                    offset_file):
        append(message_line(content="one"))
        offset_file.write_text("garbage")
        assert make_reader().trigger_read() == 1


class TestTruncation:
    def test_shrunk_file_resets_offset(self, make_reader, sink, append, log_file,
                                       offset_file):
        append(message_line(content="one"), message_line(content="two"))
        reader = make_reader()
        reader.trigger_read()

        log_file.write_text(message_line(content="new"))
        assert reader.trigger_read() == 0
        assert reader.offset == 0
        assert offset_file.read_text() == "0"
        assert sink.errors == []

        assert reader.trigger_read() == 1
        assert sink.contents == ["one", "two", "new"]

    def test_emptied_file(self, make_reader, sink, append, log_file):
        append(message_line())
        reader = make_reader()
        reader.trigger_read()
        log_file.write_text("")
        reader.trigger_read()
        assert reader.offset == 0
        assert sink.errors == []

    def test_rotation_reads_new_file(self, make_reader, sink, append, log_file, tmp_path):
        append(message_line(content="old"))
        reader = make_reader()
        reader.trigger_read()

        log_file.rename(tmp_path / "daemon.jsonl.1")
        # Larger than the old cursor, so only the inode reveals the swap.
        log_file.write_text(message_line(content="rotated-1") + message_line(content="rotated-2"))
        assert reader.trigger_read() == 2
        assert sink.contents == ["old", "rotated-1", "rotated-2"]
        assert reader.metrics.get("rotations") == 1


class TestErrors:
    @pytest.mark.parametrize("bad", [
        '{"type":"message","n":' + "1" * 5000 + "}",
        "[" * 200000,
    ], ids=["huge-int", "deep-nesting"])
    def test_unparseable_line_does_not_abort_pass(self, make_reader, sink, append,
                                                  log_file, bad):
        append(bad + "\n", message_line(content="after"))
        reader = make_reader()
        assert reader.trigger_read() == 1
        assert sink.contents == ["after"]
        assert sink.errors == []
        assert reader.offset == log_file.stat().st_size

    def test_handler_error_does_not_stop_pass(self, make_reader, sink, append):
        def flaky(msg):
            if msg.content == "boom":
                raise RuntimeError("handler failed")
            sink.messages.append(msg)

        append(message_line(content="boom"), message_line(content="after"))
        reader = make_reader(on_message=flaky)
        assert reader.trigger_read() == 1
        assert sink.contents == ["after"]
        assert len(sink.errors) == 1
        assert isinstance(sink.errors[0], RuntimeError)

        append(message_line(content="later"))
        assert reader.trigger_read() == 1

    def test_io_error_reported(self, make_reader, sink, append, log_file, monkeypatch):
        append(message_line())
        real_open = builtins.open

        def failing_open(path, *args, **kwargs):
            if str(path) == str(log_file):
                raise PermissionError("denied")
            return real_open(path, *args, **kwargs)

        monkeypatch.setattr(builtins, "open", failing_open)
        reader = make_reader()
        assert reader.trigger_read() == 0
        assert reader.offset == 0
        assert len(sink.errors) == 1
        assert isinstance(sink.errors[0], PermissionError)

        monkeypatch.setattr(builtins, "open", real_open)
        assert reader.trigger_read() == 1

    def test_failing_error_callback_is_contained(self, log_file, offset_file, append):
        def bad_handler(msg):
            raise ValueError("handler")

        def bad_on_error(err):
            raise RuntimeError("on_error")

        append(message_line())
        reader = TailReader(str(log_file), OffsetStore(str(offset_file)),
                            LineDecoder("self"), DedupFilter(), bad_handler,
                            on_error=bad_on_error)
        assert reader.trigger_read() == 0
        assert reader.offset == log_file.stat().st_size

    def test_offset_save_failure_does_not_abort(self, log_file, tmp_path, append, sink):
        blocker = tmp_path / "blocker"
        blocker.write_text("x")
        append(message_line())
        reader = TailReader(str(log_file), OffsetStore(str(blocker / "offset.txt")),
                            LineDecoder("self"), DedupFilter(), sink.on_message,
                            on_error=sink.on_error)
        assert reader.trigger_read() == 1
        assert reader.offset == log_file.stat().st_size
        assert sink.errors == []


class TestConcurrency:
    def test_reentrant_trigger_is_collapsed(self, make_reader, sink, append):
        nested = []
        reader = None

        def handler(msg):
            sink.messages.append(msg)
            if msg.content == "first":
                append(message_line(content="second"))
                nested.append(reader.trigger_read())

        append(message_line(content="first"))
        reader = make_reader(on_message=handler)
        assert reader.trigger_read() == 2
        assert nested == [0]
        assert sink.contents == ["first", "second"]
        assert reader.metrics.get("passes") == 2

    def test_trigger_from_other_thread_while_reading(self, make_reader, sink, append):
        entered = threading.Event()
        release = threading.Event()

        def slow(msg):
            entered.set()
            release.wait(5)
            sink.messages.append(msg)

        append(message_line())
        reader = make_reader(on_message=slow)
        t = threading.Thread(target=reader.trigger_read)
        t.start()
        assert entered.wait(5)

        assert reader.trigger_read() == 0
        release.set()
        t.join(5)
        assert len(sink.messages) == 1

    def test_closed_reader_ignores_triggers(self, make_reader, sink, append):
        append(message_line())
        reader = make_reader()
        reader.close()
        assert reader.trigger_read() == 0
        assert sink.messages == []

    def test_trigger_just_before_release_is_not_lost(self, make_reader, sink, append):
        class LateTriggerLock:
            """Lock that lets another trigger arrive right as the pass releases it."""

            def __init__(self, hook):
                self._lock = threading.Lock()
                self._hook = hook

            def acquire(self, blocking=True):
                return self._lock.acquire(blocking)

            def release(self):
                hook, self._hook = self._hook, None
                if hook is not None:
                    hook()
                self._lock.release()

        def late_trigger():
            append(message_line(content="late"))
            assert reader.trigger_read() == 0

        append(message_line(content="first"))
        reader = make_reader()
        reader._in_flight = LateTriggerLock(late_trigger)
        assert reader.trigger_read() == 2
        assert sink.contents == ["first", "late"]
        assert reader.metrics.get("passes") == 2
