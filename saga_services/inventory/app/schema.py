"""
Inventory Service — テーブル定義
"""

INVENTORY_TABLES = [
    # 注文ごとの引き当て状態: RESERVED | FAILED | RELEASED
    """
    CREATE TABLE IF NOT EXISTS reservations (
        order_id VARCHAR(64) PRIMARY KEY,
        items TEXT NOT NULL,
        status VARCHAR(16) NOT NULL,
        reason TEXT,
        created_at VARCHAR(40) NOT NULL,
        updated_at VARCHAR(40) NOT NULL
    )
    """,
]
