from __future__ import annotations

import sqlite3
from dataclasses import replace
from typing import Optional, Protocol

from rsm.domain.errors import CapabilityUnavailableError, ConcurrencyError, NotFoundError
from rsm.domain.models import Product
from rsm.repositories.sqlite_repo import PRODUCT_COLUMNS, product_from_row


class StockWriter(Protocol):
    atomic: bool

    def write(self, cur: sqlite3.Cursor, product_id: int, new_stock: int, expected_stock: Optional[int]) -> Product: ...


class AtomicStockWriter:
    """Compare-and-set in a single statement.

    When ``expected_stock`` is given the row is only written if it still holds
    that value; otherwise ConcurrencyError is raised and nothing changes.
    """

    atomic = True

    def write(self, cur: sqlite3.Cursor, product_id: int, new_stock: int, expected_stock: Optional[int]) -> Product:
        sql = "UPDATE products SET stock=? WHERE id=? AND active=1"
        params: list = [int(new_stock), int(product_id)]
        if expected_stock is not None:
            sql += " AND stock=?"
            params.append(int(expected_stock))
        sql += f" RETURNING {PRODUCT_COLUMNS}"
        try:
            cur.execute(sql, params)
        except sqlite3.OperationalError as e:
            if "RETURNING" in str(e).upper():
                raise CapabilityUnavailableError(f"Atomic stock update unsupported: {e}") from e
            raise
        rows = cur.fetchall()
        if rows:
            return product_from_row(rows[0])

        cur.execute("SELECT stock FROM products WHERE id=? AND active=1", (int(product_id),))
        current = cur.fetchone()
        if not current:
            raise NotFoundError("Product not found.")
        raise ConcurrencyError(
            f"Stock for product {int(product_id)} changed concurrently. "
            f"Expected: {expected_stock}, found: {int(current[0])}"
        )


class ReadThenWriteStockWriter:
    """Non-atomic fallback: select, then unconditional update.

    ``expected_stock`` is ignored, so two concurrent writers can both succeed
    and the last one wins. Only used when the atomic statement is unavailable.
    """

    atomic = False

    def write(self, cur: sqlite3.Cursor, product_id: int, new_stock: int, expected_stock: Optional[int]) -> Product:
        cur.execute(f"SELECT {PRODUCT_COLUMNS} FROM products WHERE id=? AND active=1", (int(product_id),))
        row = cur.fetchone()
        if not row:
            raise NotFoundError("Product not found.")
        cur.execute("UPDATE products SET stock=? WHERE id=?", (int(new_stock), int(product_id)))
        return replace(product_from_row(row), stock=int(new_stock))
