"""Message models passed between the bus, the channel and the host dispatcher."""

from dataclasses import dataclass


@dataclass(frozen=True)
class InboundMessage:
    type: str             # always "message" once accepted
    timestamp: str | None
    group_id: str
    sender_pubkey: str
    content: str
    allowed: bool

    @classmethod
    def from_dict(cls, data: dict) -> "InboundMessage":
        return cls(
            type=data["type"],
            timestamp=data.get("timestamp"),
            group_id=data["groupId"],
            sender_pubkey=data["senderPubkey"],
            content=data["content"],
            allowed=data["allowed"],
        )


@dataclass(frozen=True)
class MessageContext:
    """Envelope handed to the host dispatcher for one inbound message."""

    body: str
    sender_id: str
    sender_name: str
    to: str
    session_key: str        # "mls:<group_id>"
    account_id: str
    group_id: str
    message_sid: str
    timestamp_ms: int
    chat_type: str = "group"
    provider: str = "mls"
