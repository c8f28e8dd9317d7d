from __future__ import annotations

import re
from typing import Any

from .errors import ValidationError

ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")


def is_address(value: Any) -> bool:
    return isinstance(value, str) and bool(ADDRESS_RE.match(value))


def canonical_address(value: Any, *, label: str = "address") -> str:
    """
    Validate an account address and return its lowercase form.

    The HTTP boundary checks the same pattern; this is the core's own check.
    """
    if not is_address(value):
        raise ValidationError(f"Invalid {label}: expected 0x followed by 40 hex characters", code="InvalidAddress")
    return str(value).lower()


def short_address(address: str) -> str:
    # 0x1234...abcd, as shown in activity descriptions
    return f"{address[:6]}...{address[-4:]}"
