"""
Payment Service — テーブル定義
"""

PAYMENT_TABLES = [
    # 注文ごとの支払い状態: PENDING | AUTHORIZED | FAILED | REFUNDED
    # inventory_reserved: 在庫が確保されていて、オーソリしてよい状態か
    """
    CREATE TABLE IF NOT EXISTS payments (
        order_id VARCHAR(64) PRIMARY KEY,
        amount DOUBLE PRECISION NOT NULL,
        status VARCHAR(16) NOT NULL,
        inventory_reserved INTEGER NOT NULL DEFAULT 0,
        auth_id VARCHAR(64),
        refund_id VARCHAR(64),
        reason TEXT,
        created_at VARCHAR(40) NOT NULL,
        updated_at VARCHAR(40) NOT NULL
    )
    """,
]
