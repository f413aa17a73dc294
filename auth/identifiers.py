"""
auth/identifiers.py -- Normalization of login identifiers.

Emails are compared lower-cased; phone numbers are reduced to an optional
leading "+" followed by digits, so "+55 (11) 99999-0000" and "+5511999990000"
are the same account. Every module that stores or compares identifiers goes
through these helpers.

Layer rule: stdlib only.
"""

from __future__ import annotations

import re

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def normalize_email(value: str | None) -> str | None:
    """Return the canonical form of an email, None for blank input.

    Raises ValueError for a non-blank value that is not an address.
    """
    raw = (value or "").strip().lower()
    if not raw:
        return None
    if not _EMAIL_RE.match(raw):
        raise ValueError(f"Invalid email address: {value!r}")
    return raw


def normalize_phone(value: str | None) -> str | None:
    """Return "+<digits>" or "<digits>", None for blank input.

    Raises ValueError when fewer than 8 digits remain after stripping
    punctuation.
    """
    raw = (value or "").strip()
    if not raw:
        return None
    digits = "".join(ch for ch in raw if ch.isdigit())
    if len(digits) < 8:
        raise ValueError(f"Invalid phone number: {value!r}")
    return ("+" if raw.startswith("+") else "") + digits


def email_domain(email: str) -> str | None:
    """Everything after the last "@", or None when there is no "@"."""
    if "@" not in email:
        return None
    return email.rsplit("@", 1)[1]


def looks_like_email(identifier: str) -> bool:
    return "@" in identifier
