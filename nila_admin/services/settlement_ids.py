"""Settlement identifiers. The id doubles as the idempotency key, so it must be collision resistant."""

import re
import secrets
import time

from nila_admin.core.config import get_settings

_SETTLEMENT_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_\-:.]{5,127}$")


def generate_settlement_id(prefix: str | None = None) -> str:
    """STL_<epoch ms>_<64 random bits as hex>; sorts by creation time."""
    prefix = prefix or get_settings().settlement_id_prefix
    return f"{prefix}_{int(time.time() * 1000)}_{secrets.token_hex(8)}".upper()


def is_valid_settlement_id(value: str) -> bool:
    """Caller-supplied keys: 6-128 chars of letters, digits and _-:. starting alphanumeric."""
    return bool(_SETTLEMENT_ID_RE.match(value))
