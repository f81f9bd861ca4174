"""
Derived account balances.

A customer's balance is what they were sold (non-cancelled, non-deleted
orders) minus what they paid (completed payments). A supplier's balance is
what was ordered from them (non-cancelled purchase orders) minus completed
supplier payments. Both are computed on every read; the `customers.balance`
column is a manually maintained figure and never feeds these numbers.
"""
from .ledger import q_money

CUSTOMER_DEBITS_SQL = """
COALESCE((SELECT SUM(o.total) FROM orders o
          WHERE o.customer_id = {alias}.id AND o.status <> 'cancelled' AND o.deleted_at IS NULL), 0)
"""
CUSTOMER_CREDITS_SQL = """
COALESCE((SELECT SUM(p.amount) FROM payments p
          WHERE p.customer_id = {alias}.id AND p.status = 'completed'), 0)
"""
SUPPLIER_DEBITS_SQL = """
COALESCE((SELECT SUM(po.total_amount) FROM purchase_orders po
          WHERE po.supplier_id = {alias}.id AND po.status <> 'cancelled'), 0)
"""
SUPPLIER_CREDITS_SQL = """
COALESCE((SELECT SUM(sp.amount) FROM supplier_payments sp
          WHERE sp.supplier_id = {alias}.id AND sp.status = 'completed'), 0)
"""


def customer_balance_columns(alias: str = "c") -> str:
    debits = CUSTOMER_DEBITS_SQL.format(alias=alias).strip()
    credits = CUSTOMER_CREDITS_SQL.format(alias=alias).strip()
    return f"{debits} AS total_sales, {credits} AS total_paid, ({debits}) - ({credits}) AS balance"


def supplier_balance_columns(alias: str = "s") -> str:
    debits = SUPPLIER_DEBITS_SQL.format(alias=alias).strip()
    credits = SUPPLIER_CREDITS_SQL.format(alias=alias).strip()
    return f"{debits} AS total_purchases, {credits} AS total_paid, ({debits}) - ({credits}) AS balance"


def customer_balance(cur, customer_id) -> dict:
    cur.execute(
        """
        SELECT
          COALESCE((SELECT SUM(total) FROM orders
                    WHERE customer_id = %s AND status <> 'cancelled' AND deleted_at IS NULL), 0) AS total_sales,
          COALESCE((SELECT SUM(amount) FROM payments
                    WHERE customer_id = %s AND status = 'completed'), 0) AS total_paid
        """,
        (customer_id, customer_id),
    )
    row = cur.fetchone()
    sales = q_money(row["total_sales"])
    paid = q_money(row["total_paid"])
    return {"total_sales": sales, "total_paid": paid, "balance": sales - paid}


def supplier_balance(cur, supplier_id) -> dict:
    cur.execute(
        """
        SELECT
          COALESCE((SELECT SUM(total_amount) FROM purchase_orders
                    WHERE supplier_id = %s AND status <> 'cancelled'), 0) AS total_purchases,
          COALESCE((SELECT SUM(amount) FROM supplier_payments
                    WHERE supplier_id = %s AND status = 'completed'), 0) AS total_paid
        """,
        (supplier_id, supplier_id),
    )
    row = cur.fetchone()
    purchases = q_money(row["total_purchases"])
    paid = q_money(row["total_paid"])
    return {"total_purchases": purchases, "total_paid": paid, "balance": purchases - paid}
