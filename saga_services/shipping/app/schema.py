"""
Shipping Service — テーブル定義
"""

SHIPPING_TABLES = [
    # 注文ごとの出荷状態: SHIPPED | FAILED | CANCELLED
    """
    CREATE TABLE IF NOT EXISTS shipments (
        order_id VARCHAR(64) PRIMARY KEY,
        status VARCHAR(16) NOT NULL,
        carrier VARCHAR(64),
        tracking_id VARCHAR(64),
        reason TEXT,
        created_at VARCHAR(40) NOT NULL,
        updated_at VARCHAR(40) NOT NULL
    )
    """,
]
