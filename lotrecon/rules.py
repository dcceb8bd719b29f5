"""Reconciliation business rules.

The rules are plain Python functions. The SQL nodes call them
through DuckDB scalar UDFs registered by :func:`register_udfs`:

- ``recon_counts_as_payment(tran_type, description) -> BOOLEAN``
- ``recon_lot_final_date(final_dates DATE[]) -> DATE``
- ``recon_is_conversion(tran_type) -> BOOLEAN``
- ``recon_payment_status(total_billed, total_payment, epsilon) -> VARCHAR``

Legacy billing data labels payments inconsistently ("PAYMENT",
"PAYMENT - LOCKBOX", "ONLINE PAYMENT", ...), so a history record is a
payment when any of the type or description patterns match.
"""

from __future__ import annotations

import datetime
from decimal import Decimal
from typing import Iterable

import duckdb
from duckdb.sqltypes import BOOLEAN, DATE, VARCHAR

PAYMENT_LABEL = "PAYMENT"
REVERSAL_LABEL = "REVERSE"
CONVERSION_PREFIX = "CONVERT"

STATUS_PAID = "PAID"
STATUS_PARTIAL = "PARTIAL/UNPAID"
STATUS_OVERPAID = "OVERPAID"


def _normalize_label(value: str) -> str:
    # CHAR columns in the billing system are right-padded
    return value.rstrip().upper()


def _matches_payment_label(value: str | None) -> bool:
    if value is None:
        return False
    v = _normalize_label(value)
    return v == PAYMENT_LABEL or v.startswith(PAYMENT_LABEL) or v.endswith(PAYMENT_LABEL)


def is_payment(tran_type: str | None, description: str | None) -> bool:
    """True if the type or the description carries a payment label.

    Exact, prefix and suffix matches on either field all count.
    """
    return _matches_payment_label(tran_type) or _matches_payment_label(description)


def is_reversal(description: str | None) -> bool:
    """True only for a description that is exactly the reversal label.

    "REVERSAL" or "PAYMENT REVERSED" are not reversals here.
    """
    # TODO: confirm with billing whether REVERSAL/REVERSED descriptions should also be excluded
    return description is not None and _normalize_label(description) == REVERSAL_LABEL


def counts_as_payment(tran_type: str | None, description: str | None) -> bool:
    """Classify a history record as a countable (non-reversed) payment.

    A record without a description is never counted: it cannot be shown
    not to be a reversal.
    """
    if description is None:
        return False
    return is_payment(tran_type, description) and not is_reversal(description)


def is_conversion(tran_type: str | None) -> bool:
    return tran_type is not None and _normalize_label(tran_type).startswith(
        CONVERSION_PREFIX
    )


def lot_final_date(
    final_dates: Iterable[datetime.date | None],
) -> datetime.date | None:
    """Final date of a lot from the final dates of its accounts.

    A lot is closed only when every account on it is closed: any absent
    date makes the result absent. Otherwise the latest date wins.
    """
    latest: datetime.date | None = None
    for d in final_dates:
        if d is None:
            return None
        if latest is None or d > latest:
            latest = d
    return latest


def payment_status(
    total_billed: Decimal, total_payment: Decimal, epsilon: Decimal
) -> str:
    """STATUS of a lot/service row given its billed and paid totals."""
    difference = total_billed - total_payment
    if abs(difference) <= epsilon:
        return STATUS_PAID
    if difference > epsilon:
        return STATUS_PARTIAL
    return STATUS_OVERPAID


def _lot_final_date_udf(final_dates):
    if final_dates is None:
        return None
    return lot_final_date(final_dates)


def register_udfs(conn: duckdb.DuckDBPyConnection) -> None:
    """Register the rule functions on *conn*. Call once per connection."""
    amount = duckdb.decimal_type(38, 4)
    conn.create_function(
        "recon_counts_as_payment",
        counts_as_payment,
        [VARCHAR, VARCHAR],
        BOOLEAN,
        null_handling="special",
    )
    conn.create_function(
        "recon_is_conversion",
        is_conversion,
        [VARCHAR],
        BOOLEAN,
        null_handling="special",
    )
    conn.create_function(
        "recon_lot_final_date",
        _lot_final_date_udf,
        [duckdb.list_type(DATE)],
        DATE,
        null_handling="special",
    )
    conn.create_function(
        "recon_payment_status",
        payment_status,
        [amount, amount, amount],
        VARCHAR,
    )
