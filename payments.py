"""Payment collaborator contract and the ledger-backed manual gateway."""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

logger = logging.getLogger(__name__)

PAYMENT_EVENTS_SCHEMA = """
CREATE TABLE IF NOT EXISTS payment_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    reservation_id INTEGER NOT NULL,
    kind TEXT NOT NULL CHECK(kind IN ('authorize', 'release', 'capture', 'capture_failed', 'refund')),
    amount TEXT NOT NULL DEFAULT '0.00',
    detail TEXT DEFAULT '',
    created_at TEXT NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_payment_events_once
    ON payment_events(reservation_id, kind)
    WHERE kind IN ('authorize', 'release', 'capture', 'refund');
"""


@dataclass(frozen=True)
class CaptureResult:
    success: bool
    reason: str = ""
    reference: str = ""


class PaymentGateway:
    """Interface of the payment collaborator.

    Holds are reversible authorizations; capture is the irreversible charge.
    """

    def authorize_hold(self, reservation_id: int, amount: Decimal) -> None:
        raise NotImplementedError

    def release_hold(self, reservation_id: int) -> None:
        raise NotImplementedError

    def capture(self, reservation_id: int, amount: Decimal) -> CaptureResult:
        raise NotImplementedError

    def refund(self, reservation_id: int, amount: Decimal) -> None:
        raise NotImplementedError


class LedgerPaymentGateway(PaymentGateway):
    """Manual payment channel that records every operation in ``payment_events``.

    Operations other than failed captures are recorded at most once per
    reservation, so a repeated release is a no-op.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path

    def _record(self, reservation_id: int, kind: str, amount: Decimal = Decimal("0.00"), detail: str = "") -> bool:
        conn = sqlite3.connect(self.db_path, timeout=10, isolation_level="IMMEDIATE")
        try:
            cur = conn.execute(
                """
                INSERT OR IGNORE INTO payment_events (reservation_id, kind, amount, detail, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    reservation_id,
                    kind,
                    str(amount),
                    detail,
                    datetime.now(timezone.utc).replace(tzinfo=None).isoformat(),
                ),
            )
            conn.commit()
            recorded = cur.rowcount == 1
        finally:
            conn.close()
        if not recorded:
            logger.info("Payment %s for reservation %s already recorded", kind, reservation_id)
        return recorded

    def authorize_hold(self, reservation_id: int, amount: Decimal) -> None:
        logger.info("Authorizing hold of %s for reservation %s", amount, reservation_id)
        self._record(reservation_id, "authorize", amount)

    def release_hold(self, reservation_id: int) -> None:
        logger.info("Releasing hold for reservation %s", reservation_id)
        self._record(reservation_id, "release")

    def capture(self, reservation_id: int, amount: Decimal) -> CaptureResult:
        logger.info("Capturing %s for reservation %s", amount, reservation_id)
        self._record(reservation_id, "capture", amount, "manual-confirmation")
        return CaptureResult(success=True, reference=f"manual-{reservation_id}")

    def refund(self, reservation_id: int, amount: Decimal) -> None:
        logger.info("Requesting refund of %s for reservation %s", amount, reservation_id)
        self._record(reservation_id, "refund", amount)


def ensure_payment_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(PAYMENT_EVENTS_SCHEMA)


__all__ = [
    "CaptureResult",
    "PaymentGateway",
    "LedgerPaymentGateway",
    "ensure_payment_schema",
]
