from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BeforeValidator, StringConstraints


def _to_upper_str(v):
    if v is None:
        return v
    return str(v).strip().upper()


def _to_lower_str(v):
    if v is None:
        return v
    return str(v).strip().lower()


# Canonical codes mirror the CHECK constraints in `bilee/db/migrations/001_init.sql`.
SessionStatus = Annotated[
    Literal["ACTIVE", "PAID", "COMPLETED", "EXPIRED", "ARCHIVED"],
    BeforeValidator(_to_upper_str),
]
PaymentStatus = Annotated[Literal["PENDING", "PAID", "FAILED"], BeforeValidator(_to_upper_str)]
WebhookStatus = Annotated[Literal["SUCCESS", "FAILED"], BeforeValidator(_to_upper_str)]


# Keep a tight, safe character set so methods are stable identifiers.
PaymentMethod = Annotated[
    str,
    BeforeValidator(_to_lower_str),
    StringConstraints(min_length=1, max_length=32, pattern=r"^[a-z0-9][a-z0-9_-]*$"),
]
