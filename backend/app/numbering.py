"""
Human-readable document numbers (ORD-001, FAC-001, PO-001, PAY-001).

Numbers are reserved through the `next_document_no(kind)` SQL function, which
bumps a row of `document_sequences` with a single UPDATE ... RETURNING. Called
inside the caller's transaction the reservation is atomic with the insert that
uses it, and rolled back with it.
"""

PREFIXES = {
    "order": "ORD",
    "invoice": "FAC",
    "purchase_order": "PO",
    "payment": "PAY",
}


def format_document_no(prefix: str, n: int) -> str:
    return f"{prefix}-{int(n):03d}"


def next_document_no(cur, kind: str) -> str:
    prefix = PREFIXES[kind]
    cur.execute("SELECT next_document_no(%s, %s) AS doc_no", (kind, prefix))
    return cur.fetchone()["doc_no"]


def peek_document_no(cur, kind: str) -> str:
    """The number the next reservation would return. Not reserved."""
    prefix = PREFIXES[kind]
    cur.execute(
        """
        SELECT COALESCE(
          (SELECT last_value FROM document_sequences WHERE kind = %s), 0
        ) + 1 AS n
        """,
        (kind,),
    )
    return format_document_no(prefix, cur.fetchone()["n"])
