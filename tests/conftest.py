"""Shared fixtures for the mlsbus test suite."""

import json
import time

import pytest


def message_line(sender: str = "A", group: str = "G", content: str = "hi",
                 **overrides) -> str:
    """Return one relay log line (with trailing newline) for a chat message."""
    record = {
        "type": "message",
        "timestamp": "2025-01-01T00:00:00Z",
        "allowed": True,
        "senderPubkey": sender,
        "groupId": group,
        "content": content,
    }
    record.update(overrides)
    return json.dumps(record) + "\n"


def wait_for(predicate, timeout: float = 5.0, interval: float = 0.02) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture()
def log_file(tmp_path):
    return tmp_path / "daemon.jsonl"


@pytest.fixture()
def offset_file(tmp_path):
    return tmp_path / "offset.txt"


@pytest.fixture()
def append(log_file):
    """Append raw text to the log file."""
    def _append(*chunks: str) -> None:
        with open(log_file, "a", encoding="utf-8") as f:
            for chunk in chunks:
                f.write(chunk)
    return _append
