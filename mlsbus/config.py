"""Account configuration from an optional YAML file and env vars.

The YAML layout mirrors the host's config file: settings live under
``channels.mls``. Environment variables override individual keys.
"""

import logging
import os
from dataclasses import dataclass, field

import yaml

logger = logging.getLogger(__name__)

DEFAULT_ACCOUNT_ID = "default"
LOG_FILENAME = "daemon.jsonl"
OFFSET_FILENAME = "openclaw-offset.txt"

_ENV_OVERRIDES = {
    "MLS_SELF_PUBKEY": "selfPubkey",
    "MLS_BURROW_PATH": "burrowPath",
    "MLS_BURROW_DIR": "burrowDir",
    "MLS_DATA_DIR": "dataDir",
    "MLS_KEY_PATH": "keyPath",
    "MLS_POLL_INTERVAL": "pollInterval",
}


@dataclass(frozen=True)
class AccountConfig:
    account_id: str = DEFAULT_ACCOUNT_ID
    enabled: bool = True
    configured: bool = False
    self_pubkey: str = ""
    burrow_path: str = "burrow"
    burrow_dir: str = "."
    data_dir: str = "~/.burrow"
    key_path: str = "~/.clawstr/secret.key"
    dm_policy: str = "allowlist"   # pairing | allowlist | open | disabled
    allow_from: list[str] = field(default_factory=list)
    allow_groups: list[str] = field(default_factory=list)
    identities: dict[str, str] = field(default_factory=dict)
    reply_group_id: str | None = None
    dedup_window: float = 30.0
    dedup_max_size: int = 200
    poll_interval: float | None = None

    @property
    def log_path(self) -> str:
        return os.path.join(os.path.expanduser(self.data_dir), LOG_FILENAME)

    @property
    def offset_path(self) -> str:
        return os.path.join(os.path.expanduser(self.data_dir), OFFSET_FILENAME)


def load_yaml_config(path: str | None) -> dict:
    """Load the host config file. Returns an empty dict if there is none."""
    if not path:
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        logger.info("Loaded YAML config from %s", path)
        return data
    except FileNotFoundError:
        logger.warning("Config file %s not found, using defaults", path)
        return {}


def mls_section(data: dict) -> dict:
    channels = data.get("channels") or {}
    return dict(channels.get("mls") or {})


def _apply_env(section: dict) -> dict:
    for env_key, key in _ENV_OVERRIDES.items():
        value = os.environ.get(env_key)
        if value is not None:
            section[key] = value
    return section


def list_account_ids(data: dict) -> list[str]:
    if _apply_env(mls_section(data)).get("selfPubkey"):
        return [DEFAULT_ACCOUNT_ID]
    return []


def resolve_account(data: dict, account_id: str | None = None) -> AccountConfig:
    """Build the AccountConfig for *account_id* from parsed YAML data."""
    section = _apply_env(mls_section(data))
    self_pubkey = str(section.get("selfPubkey") or "")
    poll = section.get("pollInterval")

    return AccountConfig(
        account_id=account_id or DEFAULT_ACCOUNT_ID,
        enabled=section.get("enabled") is not False,
        configured=bool(self_pubkey.strip() and section.get("burrowPath")),
        self_pubkey=self_pubkey,
        burrow_path=section.get("burrowPath") or "burrow",
        burrow_dir=section.get("burrowDir") or ".",
        data_dir=section.get("dataDir") or "~/.burrow",
        key_path=section.get("keyPath") or "~/.clawstr/secret.key",
        dm_policy=section.get("dmPolicy") or "allowlist",
        allow_from=[str(e) for e in section.get("allowFrom") or []],
        allow_groups=[str(e) for e in section.get("allowGroups") or []],
        identities=dict(section.get("identities") or {}),
        reply_group_id=section.get("replyGroupId") or None,
        dedup_window=float(section.get("dedupWindow", 30.0)),
        dedup_max_size=int(section.get("dedupMaxSize", 200)),
        poll_interval=float(poll) if poll else None,
    )
