from __future__ import annotations

import shutil
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Iterable, Iterator, Optional

from rsm.domain.models import (
    ExchangeRateSnapshot,
    Expense,
    LineItem,
    Order,
    OrderState,
    PaymentMethod,
    Product,
    Promotion,
    PromotionItem,
    Sale,
    SaleLine,
    make_line,
)

PRODUCT_COLUMNS = "id, name, stock, cost, price, promo_price, promo_active, unit_id, foreign_currency, active"
ORDER_COLUMNS = (
    "id, customer_name, customer_phone, customer_address, payment_method, notes, "
    "total, created_at, updated_at, state, sale_id"
)
SALE_COLUMNS = "id, date, paid, voided, fx_rate, created_at"


def product_from_row(r) -> Product:
    return Product(
        id=int(r[0]),
        name=str(r[1]),
        stock=int(r[2]),
        cost=float(r[3]),
        price=float(r[4]),
        promo_price=(float(r[5]) if r[5] is not None else None),
        promo_active=bool(r[6]),
        unit_id=(int(r[7]) if r[7] is not None else None),
        foreign_currency=bool(r[8]),
        active=bool(r[9]),
    )


def _line_from_row(kind: str, product_id, promotion_id, qty, unit_price) -> LineItem:
    ref_id = product_id if kind == "product" else promotion_id
    return make_line(kind, int(ref_id), int(qty), float(unit_price))


def _line_refs(line: LineItem) -> tuple[Optional[int], Optional[int]]:
    if line.kind == "product":
        return int(line.ref_id), None
    return None, int(line.ref_id)


@dataclass(frozen=True)
class StoreCapabilities:
    transactions: bool
    atomic_stock: bool


class SqliteRepository:
    """Catalog, order, ledger and rate storage on a single SQLite file.

    Read methods accept an optional cursor so they can observe the writes of an
    open unit of work; without one they use a short-lived connection.
    Write methods used inside units of work take the cursor explicitly.
    """

    def __init__(self, db_path: Path | str):
        self.db_path = str(db_path)

    def _conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.execute("PRAGMA foreign_keys = ON;")
        return conn

    def connect(self) -> sqlite3.Connection:
        """Connection with manual transaction control for units of work."""
        conn = sqlite3.connect(self.db_path, isolation_level=None)
        conn.execute("PRAGMA foreign_keys = ON;")
        return conn

    @contextmanager
    def _reader(self, cur: Optional[sqlite3.Cursor]) -> Iterator[sqlite3.Cursor]:
        if cur is not None:
            yield cur
            return
        conn = self._conn()
        try:
            yield conn.cursor()
        finally:
            conn.close()

    def init_db(self) -> None:
        self.run_migrations()

    def probe_capabilities(self) -> StoreCapabilities:
        conn = self.connect()
        try:
            try:
                conn.execute("BEGIN IMMEDIATE")
                conn.execute("ROLLBACK")
                transactions = True
            except sqlite3.OperationalError:
                transactions = False
        finally:
            conn.close()
        # UPDATE ... RETURNING landed in SQLite 3.35.
        atomic_stock = sqlite3.sqlite_version_info >= (3, 35, 0)
        return StoreCapabilities(transactions=transactions, atomic_stock=atomic_stock)

    def run_migrations(self) -> None:
        conn = self._conn()
        backup_path = self._create_pre_migration_backup()
        try:
            cur = conn.cursor()
            cur.execute("BEGIN")
            cur.execute("CREATE TABLE IF NOT EXISTS schema_migrations (version INTEGER PRIMARY KEY, applied_at TEXT NOT NULL)")
            cur.execute("SELECT COALESCE(MAX(version), 0) FROM schema_migrations")
            current_version = int(cur.fetchone()[0])

            migrations = [
                (1, self._migration_v1_base),
                (2, self._migration_v2_indexes),
            ]

            for version, migration in migrations:
                if version <= current_version:
                    continue
                migration(cur)
                cur.execute(
                    "INSERT INTO schema_migrations (version, applied_at) VALUES (?, datetime('now'))",
                    (version,),
                )
            conn.commit()
        except Exception as exc:
            conn.rollback()
            self._restore_pre_migration_backup(backup_path)
            raise RuntimeError(
                "Database migration failed. Original database restored from automatic backup."
            ) from exc
        finally:
            conn.close()

    def _create_pre_migration_backup(self) -> Path | None:
        db_file = Path(self.db_path)
        if not db_file.exists() or db_file.stat().st_size == 0:
            return None
        backup_file = db_file.with_name(f"{db_file.stem}.pre_migration_{datetime.now().strftime('%Y%m%d%H%M%S')}.bak")
        shutil.copy2(db_file, backup_file)
        return backup_file

    def _restore_pre_migration_backup(self, backup_path: Path | None) -> None:
        if backup_path is None or not backup_path.exists():
            return
        shutil.copy2(backup_path, self.db_path)

    def _migration_v1_base(self, cur: sqlite3.Cursor) -> None:
        cur.execute(
            """
        CREATE TABLE IF NOT EXISTS products (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            stock INTEGER NOT NULL DEFAULT 0 CHECK(stock >= 0),
            cost REAL NOT NULL CHECK(cost >= 0),
            price REAL NOT NULL CHECK(price >= 0),
            promo_price REAL CHECK(promo_price IS NULL OR promo_price >= 0),
            promo_active INTEGER NOT NULL DEFAULT 0 CHECK(promo_active IN (0,1)),
            unit_id INTEGER,
            foreign_currency INTEGER NOT NULL DEFAULT 0 CHECK(foreign_currency IN (0,1)),
            active INTEGER NOT NULL DEFAULT 1 CHECK(active IN (0,1))
        )
        """
        )

        cur.execute(
            """
        CREATE TABLE IF NOT EXISTS promotions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            price REAL CHECK(price IS NULL OR price >= 0),
            active INTEGER NOT NULL DEFAULT 1 CHECK(active IN (0,1))
        )
        """
        )

        cur.execute(
            """
        CREATE TABLE IF NOT EXISTS promotion_items (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            promotion_id INTEGER NOT NULL,
            product_id INTEGER NOT NULL,
            qty INTEGER NOT NULL CHECK(qty > 0),
            FOREIGN KEY(promotion_id) REFERENCES promotions(id) ON DELETE CASCADE,
            FOREIGN KEY(product_id) REFERENCES products(id),
            UNIQUE(promotion_id, product_id)
        )
        """
        )

        cur.execute(
            """
        CREATE TABLE IF NOT EXISTS fx_rates (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            rate REAL NOT NULL CHECK(rate > 0),
            recorded_at TEXT NOT NULL,
            notes TEXT
        )
        """
        )

        cur.execute(
            """
        CREATE TABLE IF NOT EXISTS sales (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            date TEXT NOT NULL,
            paid INTEGER NOT NULL DEFAULT 0 CHECK(paid IN (0,1)),
            voided INTEGER NOT NULL DEFAULT 0 CHECK(voided IN (0,1)),
            fx_rate REAL NOT NULL CHECK(fx_rate > 0),
            created_at TEXT NOT NULL
        )
        """
        )

        cur.execute(
            """
        CREATE TABLE IF NOT EXISTS sale_items (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            sale_id INTEGER NOT NULL,
            kind TEXT NOT NULL CHECK(kind IN ('product','promotion')),
            product_id INTEGER,
            promotion_id INTEGER,
            qty INTEGER NOT NULL CHECK(qty > 0),
            unit_price REAL NOT NULL CHECK(unit_price >= 0),
            unit_cost REAL NOT NULL DEFAULT 0 CHECK(unit_cost >= 0),
            foreign_currency INTEGER NOT NULL DEFAULT 0 CHECK(foreign_currency IN (0,1)),
            FOREIGN KEY(sale_id) REFERENCES sales(id),
            FOREIGN KEY(product_id) REFERENCES products(id),
            FOREIGN KEY(promotion_id) REFERENCES promotions(id),
            CHECK(
                (kind = 'product' AND product_id IS NOT NULL AND promotion_id IS NULL)
                OR (kind = 'promotion' AND promotion_id IS NOT NULL AND product_id IS NULL)
            )
        )
        """
        )

        cur.execute(
            """
        CREATE TABLE IF NOT EXISTS orders (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            customer_name TEXT NOT NULL,
            customer_phone TEXT NOT NULL,
            customer_address TEXT,
            payment_method TEXT CHECK(payment_method IS NULL OR payment_method IN ('cash','transfer','mercadopago')),
            notes TEXT,
            total REAL NOT NULL CHECK(total >= 0),
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            state TEXT NOT NULL CHECK(state IN ('RECEIVED','ACCEPTED','DELIVERED','CANCELED')),
            sale_id INTEGER,
            FOREIGN KEY(sale_id) REFERENCES sales(id)
        )
        """
        )

        cur.execute(
            """
        CREATE TABLE IF NOT EXISTS order_items (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            order_id INTEGER NOT NULL,
            kind TEXT NOT NULL CHECK(kind IN ('product','promotion')),
            product_id INTEGER,
            promotion_id INTEGER,
            qty INTEGER NOT NULL CHECK(qty > 0),
            unit_price REAL NOT NULL CHECK(unit_price >= 0),
            FOREIGN KEY(order_id) REFERENCES orders(id) ON DELETE CASCADE,
            FOREIGN KEY(product_id) REFERENCES products(id),
            FOREIGN KEY(promotion_id) REFERENCES promotions(id),
            CHECK(
                (kind = 'product' AND product_id IS NOT NULL AND promotion_id IS NULL)
                OR (kind = 'promotion' AND promotion_id IS NOT NULL AND product_id IS NULL)
            )
        )
        """
        )

        cur.execute(
            """
        CREATE TABLE IF NOT EXISTS expenses (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            cost REAL NOT NULL CHECK(cost >= 0),
            description TEXT,
            active INTEGER NOT NULL DEFAULT 1 CHECK(active IN (0,1))
        )
        """
        )

    def _migration_v2_indexes(self, cur: sqlite3.Cursor) -> None:
        cur.execute("CREATE INDEX IF NOT EXISTS idx_orders_state_created ON orders(state, created_at)")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_order_items_order ON order_items(order_id)")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_sale_items_sale ON sale_items(sale_id)")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_sales_date ON sales(date)")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_fx_rates_recorded ON fx_rates(recorded_at)")

    # ---------- Products ----------
    def add_product(
        self,
        name: str,
        cost: float,
        price: float,
        stock: int,
        promo_price: Optional[float] = None,
        promo_active: bool = False,
        unit_id: Optional[int] = None,
        foreign_currency: bool = False,
    ) -> int:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO products (name, cost, price, stock, promo_price, promo_active, unit_id, foreign_currency)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
            (name, cost, price, stock, promo_price, int(promo_active), unit_id, int(foreign_currency)),
        )
        pid = cur.lastrowid
        conn.commit()
        conn.close()
        return int(pid)

    def get_product(
        self, product_id: int, cur: Optional[sqlite3.Cursor] = None, include_inactive: bool = False
    ) -> Optional[Product]:
        sql = f"SELECT {PRODUCT_COLUMNS} FROM products WHERE id=?"
        if not include_inactive:
            sql += " AND active=1"
        with self._reader(cur) as c:
            c.execute(sql, (int(product_id),))
            r = c.fetchone()
        return product_from_row(r) if r else None

    def get_products(self, product_ids: Iterable[int], cur: Optional[sqlite3.Cursor] = None) -> dict[int, Product]:
        ids = sorted({int(pid) for pid in product_ids})
        if not ids:
            return {}
        marks = ",".join("?" for _ in ids)
        with self._reader(cur) as c:
            c.execute(f"SELECT {PRODUCT_COLUMNS} FROM products WHERE active=1 AND id IN ({marks})", ids)
            rows = c.fetchall()
        return {int(r[0]): product_from_row(r) for r in rows}

    def list_products(self, active_only: bool = True) -> list[Product]:
        sql = f"SELECT {PRODUCT_COLUMNS} FROM products"
        if active_only:
            sql += " WHERE active = 1"
        sql += " ORDER BY name"
        with self._reader(None) as c:
            c.execute(sql)
            rows = c.fetchall()
        return [product_from_row(r) for r in rows]

    def update_product_pricing(
        self,
        product_id: int,
        cost: float,
        price: float,
        promo_price: Optional[float],
        promo_active: bool,
        foreign_currency: bool,
    ) -> bool:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(
            """
            UPDATE products
            SET cost=?, price=?, promo_price=?, promo_active=?, foreign_currency=?
            WHERE id=?
            """,
            (float(cost), float(price), promo_price, int(promo_active), int(foreign_currency), int(product_id)),
        )
        changed = cur.rowcount > 0
        conn.commit()
        conn.close()
        return bool(changed)

    def set_product_active(self, product_id: int, active: bool) -> bool:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute("UPDATE products SET active=? WHERE id=?", (int(active), int(product_id)))
        changed = cur.rowcount > 0
        conn.commit()
        conn.close()
        return bool(changed)

    # ---------- Promotions ----------
    def insert_promotion(self, cur: sqlite3.Cursor, name: str, price: Optional[float], active: bool) -> int:
        cur.execute(
            "INSERT INTO promotions (name, price, active) VALUES (?, ?, ?)",
            (name, price, int(active)),
        )
        return int(cur.lastrowid)

    def update_promotion_header(
        self, cur: sqlite3.Cursor, promotion_id: int, name: str, price: Optional[float], active: bool
    ) -> bool:
        cur.execute(
            "UPDATE promotions SET name=?, price=?, active=? WHERE id=?",
            (name, price, int(active), int(promotion_id)),
        )
        return cur.rowcount > 0

    def set_promotion_active(self, promotion_id: int, active: bool) -> bool:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute("UPDATE promotions SET active=? WHERE id=?", (int(active), int(promotion_id)))
        changed = cur.rowcount > 0
        conn.commit()
        conn.close()
        return bool(changed)

    def get_promotion(self, promotion_id: int, cur: Optional[sqlite3.Cursor] = None) -> Optional[Promotion]:
        with self._reader(cur) as c:
            c.execute("SELECT id, name, price, active FROM promotions WHERE id=?", (int(promotion_id),))
            r = c.fetchone()
            if not r:
                return None
            items = self.promotion_items(int(r[0]), cur=c)
        return Promotion(
            id=int(r[0]),
            name=str(r[1]),
            price=(float(r[2]) if r[2] is not None else None),
            active=bool(r[3]),
            items=tuple(items),
        )

    def list_promotions(self, active_only: bool = False) -> list[Promotion]:
        sql = "SELECT id FROM promotions"
        if active_only:
            sql += " WHERE active=1"
        sql += " ORDER BY name"
        with self._reader(None) as c:
            c.execute(sql)
            ids = [int(r[0]) for r in c.fetchall()]
            promotions = [self.get_promotion(pid, cur=c) for pid in ids]
        return [p for p in promotions if p is not None]

    def promotion_items(self, promotion_id: int, cur: Optional[sqlite3.Cursor] = None) -> list[PromotionItem]:
        with self._reader(cur) as c:
            c.execute(
                "SELECT id, product_id, qty FROM promotion_items WHERE promotion_id=? ORDER BY id",
                (int(promotion_id),),
            )
            rows = c.fetchall()
        return [PromotionItem(product_id=int(r[1]), qty=int(r[2]), id=int(r[0])) for r in rows]

    def insert_promotion_item(self, cur: sqlite3.Cursor, promotion_id: int, product_id: int, qty: int) -> int:
        cur.execute(
            "INSERT INTO promotion_items (promotion_id, product_id, qty) VALUES (?, ?, ?)",
            (int(promotion_id), int(product_id), int(qty)),
        )
        return int(cur.lastrowid)

    def update_promotion_item_qty(self, cur: sqlite3.Cursor, item_id: int, qty: int) -> None:
        cur.execute("UPDATE promotion_items SET qty=? WHERE id=?", (int(qty), int(item_id)))

    def delete_promotion_items(self, cur: sqlite3.Cursor, item_ids: Iterable[int]) -> int:
        ids = [int(i) for i in item_ids]
        if not ids:
            return 0
        marks = ",".join("?" for _ in ids)
        cur.execute(f"DELETE FROM promotion_items WHERE id IN ({marks})", ids)
        return int(cur.rowcount)

    # ---------- FX ----------
    def add_fx_rate(self, rate: float, recorded_at: str, notes: Optional[str]) -> int:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(
            "INSERT INTO fx_rates (rate, recorded_at, notes) VALUES (?, ?, ?)",
            (float(rate), recorded_at, notes),
        )
        rid = int(cur.lastrowid)
        conn.commit()
        conn.close()
        return rid

    def get_latest_fx_rate(self) -> Optional[ExchangeRateSnapshot]:
        with self._reader(None) as c:
            c.execute("SELECT id, rate, recorded_at, notes FROM fx_rates ORDER BY recorded_at DESC, id DESC LIMIT 1")
            r = c.fetchone()
        return ExchangeRateSnapshot(int(r[0]), float(r[1]), str(r[2]), r[3]) if r else None

    def get_fx_rate_as_of(self, recorded_at: str) -> Optional[ExchangeRateSnapshot]:
        with self._reader(None) as c:
            c.execute(
                """
                SELECT id, rate, recorded_at, notes FROM fx_rates
                WHERE recorded_at <= ?
                ORDER BY recorded_at DESC, id DESC LIMIT 1
                """,
                (recorded_at,),
            )
            r = c.fetchone()
        return ExchangeRateSnapshot(int(r[0]), float(r[1]), str(r[2]), r[3]) if r else None

    def list_fx_rates(self, limit: Optional[int] = None) -> list[ExchangeRateSnapshot]:
        sql = "SELECT id, rate, recorded_at, notes FROM fx_rates ORDER BY recorded_at DESC, id DESC"
        params: tuple = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (int(limit),)
        with self._reader(None) as c:
            c.execute(sql, params)
            rows = c.fetchall()
        return [ExchangeRateSnapshot(int(r[0]), float(r[1]), str(r[2]), r[3]) for r in rows]

    # ---------- Sales ----------
    def insert_sale(
        self, cur: sqlite3.Cursor, date_iso: str, paid: bool, fx_rate: float, created_at: str
    ) -> int:
        cur.execute(
            "INSERT INTO sales (date, paid, voided, fx_rate, created_at) VALUES (?, ?, 0, ?, ?)",
            (date_iso, int(paid), float(fx_rate), created_at),
        )
        return int(cur.lastrowid)

    def insert_sale_line(self, cur: sqlite3.Cursor, sale_id: int, line: SaleLine) -> int:
        product_id, promotion_id = _line_refs(line.item)
        cur.execute(
            """
            INSERT INTO sale_items (sale_id, kind, product_id, promotion_id, qty, unit_price, unit_cost, foreign_currency)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                int(sale_id),
                line.item.kind,
                product_id,
                promotion_id,
                int(line.qty),
                float(line.unit_price),
                float(line.unit_cost),
                int(line.foreign_currency),
            ),
        )
        return int(cur.lastrowid)

    def _sales_from_rows(self, c: sqlite3.Cursor, rows: list) -> list[Sale]:
        if not rows:
            return []
        ids = [int(r[0]) for r in rows]
        marks = ",".join("?" for _ in ids)
        c.execute(
            f"""
            SELECT id, sale_id, kind, product_id, promotion_id, qty, unit_price, unit_cost, foreign_currency
            FROM sale_items WHERE sale_id IN ({marks}) ORDER BY id
            """,
            ids,
        )
        lines: dict[int, list[SaleLine]] = {sid: [] for sid in ids}
        for li in c.fetchall():
            lines[int(li[1])].append(
                SaleLine(
                    item=_line_from_row(str(li[2]), li[3], li[4], li[5], li[6]),
                    unit_cost=float(li[7]),
                    foreign_currency=bool(li[8]),
                    id=int(li[0]),
                )
            )
        return [
            Sale(
                id=int(r[0]),
                date=str(r[1]),
                paid=bool(r[2]),
                voided=bool(r[3]),
                exchange_rate=float(r[4]),
                created_at=str(r[5]),
                lines=tuple(lines[int(r[0])]),
            )
            for r in rows
        ]

    def get_sale(self, sale_id: int, cur: Optional[sqlite3.Cursor] = None) -> Optional[Sale]:
        with self._reader(cur) as c:
            c.execute(f"SELECT {SALE_COLUMNS} FROM sales WHERE id=?", (int(sale_id),))
            rows = c.fetchall()
            sales = self._sales_from_rows(c, rows)
        return sales[0] if sales else None

    def search_sales(
        self,
        date_from: Optional[str] = None,
        date_to_exclusive: Optional[str] = None,
        paid: Optional[bool] = None,
        voided: Optional[bool] = None,
    ) -> list[Sale]:
        clauses: list[str] = []
        params: list = []
        if date_from:
            clauses.append("date >= ?")
            params.append(date_from)
        if date_to_exclusive:
            clauses.append("date < ?")
            params.append(date_to_exclusive)
        if paid is not None:
            clauses.append("paid = ?")
            params.append(int(paid))
        if voided is not None:
            clauses.append("voided = ?")
            params.append(int(voided))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._reader(None) as c:
            c.execute(f"SELECT {SALE_COLUMNS} FROM sales {where} ORDER BY date DESC, id DESC", params)
            rows = c.fetchall()
            return self._sales_from_rows(c, rows)

    def set_sale_flag(self, field: str, value: bool, sale_id: int, cur: Optional[sqlite3.Cursor] = None) -> bool:
        if field not in ("paid", "voided"):
            raise ValueError(f"Unknown sale flag: {field}")
        if cur is not None:
            cur.execute(f"UPDATE sales SET {field}=? WHERE id=?", (int(value), int(sale_id)))
            return cur.rowcount > 0
        conn = self._conn()
        c = conn.cursor()
        c.execute(f"UPDATE sales SET {field}=? WHERE id=?", (int(value), int(sale_id)))
        changed = c.rowcount > 0
        conn.commit()
        conn.close()
        return bool(changed)

    # ---------- Orders ----------
    def insert_order(
        self,
        cur: sqlite3.Cursor,
        customer_name: str,
        customer_phone: str,
        customer_address: Optional[str],
        payment_method: Optional[str],
        notes: Optional[str],
        total: float,
        created_at: str,
    ) -> int:
        cur.execute(
            """
            INSERT INTO orders (
                customer_name, customer_phone, customer_address, payment_method, notes,
                total, created_at, updated_at, state
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'RECEIVED')
            """,
            (customer_name, customer_phone, customer_address, payment_method, notes, float(total), created_at, created_at),
        )
        return int(cur.lastrowid)

    def insert_order_line(self, cur: sqlite3.Cursor, order_id: int, line: LineItem) -> int:
        product_id, promotion_id = _line_refs(line)
        cur.execute(
            """
            INSERT INTO order_items (order_id, kind, product_id, promotion_id, qty, unit_price)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (int(order_id), line.kind, product_id, promotion_id, int(line.qty), float(line.unit_price)),
        )
        return int(cur.lastrowid)

    def _orders_from_rows(self, c: sqlite3.Cursor, rows: list) -> list[Order]:
        if not rows:
            return []
        ids = [int(r[0]) for r in rows]
        marks = ",".join("?" for _ in ids)
        c.execute(
            f"""
            SELECT order_id, kind, product_id, promotion_id, qty, unit_price
            FROM order_items WHERE order_id IN ({marks}) ORDER BY id
            """,
            ids,
        )
        items: dict[int, list[LineItem]] = {oid: [] for oid in ids}
        for li in c.fetchall():
            items[int(li[0])].append(_line_from_row(str(li[1]), li[2], li[3], li[4], li[5]))
        return [
            Order(
                id=int(r[0]),
                customer_name=str(r[1]),
                customer_phone=str(r[2]),
                customer_address=(r[3] if r[3] is not None else None),
                payment_method=(PaymentMethod(r[4]) if r[4] is not None else None),
                notes=(r[5] if r[5] is not None else None),
                total=float(r[6]),
                created_at=str(r[7]),
                updated_at=str(r[8]),
                state=OrderState(r[9]),
                sale_id=(int(r[10]) if r[10] is not None else None),
                items=tuple(items[int(r[0])]),
            )
            for r in rows
        ]

    def get_order(self, order_id: int, cur: Optional[sqlite3.Cursor] = None) -> Optional[Order]:
        with self._reader(cur) as c:
            c.execute(f"SELECT {ORDER_COLUMNS} FROM orders WHERE id=?", (int(order_id),))
            orders = self._orders_from_rows(c, c.fetchall())
        return orders[0] if orders else None

    def list_orders(self, state: Optional[OrderState] = None) -> list[Order]:
        sql = f"SELECT {ORDER_COLUMNS} FROM orders"
        params: tuple = ()
        if state is not None:
            sql += " WHERE state=?"
            params = (OrderState(state).value,)
        sql += " ORDER BY created_at DESC, id DESC"
        with self._reader(None) as c:
            c.execute(sql, params)
            return self._orders_from_rows(c, c.fetchall())

    def search_orders(self, query: str, limit: int = 50) -> list[Order]:
        q = (query or "").strip().lower()
        order_id = int(q) if q.isdigit() else 0
        escaped = q.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        pattern = f"%{escaped}%"
        with self._reader(None) as c:
            c.execute(
                f"""
                SELECT {ORDER_COLUMNS} FROM orders
                WHERE lower(customer_phone) LIKE ? ESCAPE '\\'
                   OR lower(customer_name) LIKE ? ESCAPE '\\'
                   OR id = ?
                ORDER BY created_at DESC, id DESC
                LIMIT ?
                """,
                (pattern, pattern, order_id, int(limit)),
            )
            return self._orders_from_rows(c, c.fetchall())

    def list_orders_created_between(self, start_iso: str, end_iso: str) -> list[Order]:
        with self._reader(None) as c:
            c.execute(
                f"""
                SELECT {ORDER_COLUMNS} FROM orders
                WHERE created_at >= ? AND created_at < ?
                ORDER BY created_at DESC, id DESC
                """,
                (start_iso, end_iso),
            )
            return self._orders_from_rows(c, c.fetchall())

    def list_order_ids_before(self, state: OrderState, created_before: str) -> list[int]:
        with self._reader(None) as c:
            c.execute(
                "SELECT id FROM orders WHERE state=? AND created_at < ? ORDER BY created_at, id",
                (OrderState(state).value, created_before),
            )
            return [int(r[0]) for r in c.fetchall()]

    def count_orders_in_states(self, states: Iterable[OrderState]) -> int:
        values = [OrderState(s).value for s in states]
        if not values:
            return 0
        marks = ",".join("?" for _ in values)
        with self._reader(None) as c:
            c.execute(f"SELECT COUNT(*) FROM orders WHERE state IN ({marks})", values)
            return int(c.fetchone()[0])

    def update_order_state(
        self,
        cur: sqlite3.Cursor,
        order_id: int,
        expected: OrderState,
        target: OrderState,
        updated_at: str,
        sale_id: Optional[int] = None,
    ) -> bool:
        """Conditional state write; False when the order left ``expected`` meanwhile."""
        if sale_id is None:
            cur.execute(
                "UPDATE orders SET state=?, updated_at=? WHERE id=? AND state=?",
                (OrderState(target).value, updated_at, int(order_id), OrderState(expected).value),
            )
        else:
            cur.execute(
                "UPDATE orders SET state=?, updated_at=?, sale_id=? WHERE id=? AND state=?",
                (OrderState(target).value, updated_at, int(sale_id), int(order_id), OrderState(expected).value),
            )
        return cur.rowcount > 0

    # ---------- Expenses ----------
    def add_expense(self, cost: float, description: Optional[str]) -> int:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute("INSERT INTO expenses (cost, description, active) VALUES (?, ?, 1)", (float(cost), description))
        eid = int(cur.lastrowid)
        conn.commit()
        conn.close()
        return eid

    def get_expense(self, expense_id: int) -> Optional[Expense]:
        with self._reader(None) as c:
            c.execute("SELECT id, cost, description, active FROM expenses WHERE id=?", (int(expense_id),))
            r = c.fetchone()
        return Expense(int(r[0]), float(r[1]), r[2], bool(r[3])) if r else None

    def update_expense(self, expense_id: int, cost: float, description: Optional[str]) -> bool:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(
            "UPDATE expenses SET cost=?, description=? WHERE id=?",
            (float(cost), description, int(expense_id)),
        )
        changed = cur.rowcount > 0
        conn.commit()
        conn.close()
        return bool(changed)

    def set_expense_active(self, expense_id: int, active: bool) -> bool:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute("UPDATE expenses SET active=? WHERE id=?", (int(active), int(expense_id)))
        changed = cur.rowcount > 0
        conn.commit()
        conn.close()
        return bool(changed)

    def list_expenses(self, active_only: bool = False) -> list[Expense]:
        sql = "SELECT id, cost, description, active FROM expenses"
        if active_only:
            sql += " WHERE active=1"
        sql += " ORDER BY id DESC"
        with self._reader(None) as c:
            c.execute(sql)
            rows = c.fetchall()
        return [Expense(int(r[0]), float(r[1]), r[2], bool(r[3])) for r in rows]
