"""Sequential account identifiers and their canonical normalization.

Identifiers look like ``BLIND001`` and ``Guardian001``. Input is matched
case-insensitively and always rewritten to the canonical spelling before it
reaches a query, so ``blind001``, `` Blind001 `` and ``BLIND001`` are the
same user everywhere. Digits are zero-padded to the allocated width, so
``blind1`` is ``BLIND001``.
"""

from __future__ import annotations

import re

from carelink.errors import ValidationError

BLIND_PREFIX = "BLIND"
GUARDIAN_PREFIX = "Guardian"

_WIDTH = 3


def _pattern(prefix: str) -> re.Pattern[str]:
    return re.compile(rf"^{prefix}(\d+)$", re.IGNORECASE)


_BLIND_RE = _pattern(BLIND_PREFIX)
_GUARDIAN_RE = _pattern(GUARDIAN_PREFIX)


def next_identifier(prefix: str, last_identifier: str | None) -> str:
    """Return the identifier following ``last_identifier``.

    >>> next_identifier("BLIND", None)
    'BLIND001'
    >>> next_identifier("Guardian", "Guardian009")
    'Guardian010'
    """
    last_number = 0
    if last_identifier:
        match = _pattern(prefix).match(last_identifier.strip())
        if match:
            last_number = int(match.group(1))
    return f"{prefix}{last_number + 1:0{_WIDTH}d}"


def _normalize(raw: str | None, regex: re.Pattern[str], prefix: str, label: str) -> str:
    if raw is None or not str(raw).strip():
        raise ValidationError(f"{label} is required", field=label)
    match = regex.match(str(raw).strip())
    if not match:
        raise ValidationError(f"Malformed {label}: {raw!r}", field=label, value=str(raw))
    return f"{prefix}{int(match.group(1)):0{_WIDTH}d}"


def normalize_blind_id(raw: str | None) -> str:
    """Canonical blind user id (``BLIND`` + digits)."""
    return _normalize(raw, _BLIND_RE, BLIND_PREFIX, "blind_id")


def normalize_guardian_id(raw: str | None) -> str:
    """Canonical guardian id (``Guardian`` + digits)."""
    return _normalize(raw, _GUARDIAN_RE, GUARDIAN_PREFIX, "guardian_id")
