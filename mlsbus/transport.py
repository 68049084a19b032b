"""Outbound send: hands text to the relay binary as a subprocess."""

import logging
import os
import subprocess

from mlsbus.errors import SendError

logger = logging.getLogger(__name__)

SEND_TIMEOUT_SECONDS = 30.0


def send_message(burrow_path: str, burrow_dir: str, key_path: str,
                 group_id: str, text: str,
                 timeout: float = SEND_TIMEOUT_SECONDS) -> None:
    """Run ``burrow send <group> <text> --key-path <key>``.

    Raises SendError carrying the binary's stderr when it fails, times out
    or cannot be started.
    """
    home = os.path.expanduser("~")
    cmd = [burrow_path, "send", group_id, text,
           "--key-path", os.path.expanduser(key_path)]
    env = {**os.environ, "HOME": home}

    try:
        proc = subprocess.run(
            cmd,
            cwd=os.path.expanduser(burrow_dir),
            env=env,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        raise SendError(f"burrow send failed: timed out after {timeout:g}s")
    except OSError as e:
        raise SendError(f"burrow send failed: {e}") from e

    if proc.returncode != 0:
        detail = proc.stderr.strip() or f"exit status {proc.returncode}"
        raise SendError(f"burrow send failed: {detail}")
    logger.debug("Sent %d chars to group %s", len(text), group_id)
