"""Turns one relay log line into an InboundMessage, or rejects it.

Rejections are silent by contract: the tail of the log may hold a partial
write, and most event types are not chat messages at all.
"""

import json
import logging

from mlsbus.models import InboundMessage

logger = logging.getLogger(__name__)


class LineDecoder:
    def __init__(self, self_pubkey: str):
        self._self_pubkey = self_pubkey
        self.malformed = 0
        self.rejected = 0

    def decode(self, raw: str | bytes) -> InboundMessage | None:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        line = raw.strip()
        if not line:
            return None

        try:
            data = json.loads(line)
        except (ValueError, RecursionError) as e:
            # JSONDecodeError, oversized int literals, pathological nesting
            self.malformed += 1
            logger.debug("Skipping malformed line: %s", e)
            return None

        if not self._accepts(data):
            self.rejected += 1
            return None
        return InboundMessage.from_dict(data)

    def _accepts(self, data) -> bool:
        """Only allowed chat messages from someone other than us get through."""
        if not isinstance(data, dict):
            return False
        if data.get("type") != "message" or data.get("allowed") is not True:
            return False
        sender = data.get("senderPubkey")
        content = data.get("content")
        if not isinstance(sender, str) or not isinstance(data.get("groupId"), str):
            return False
        if not isinstance(content, str) or not content:
            return False
        return sender != self._self_pubkey
