from __future__ import annotations

from typing import Optional


def validate_honeypot(value: Optional[str]) -> bool:
    """True when the decoy field was left alone (absent or whitespace only)."""
    return value is None or value.strip() == ""
