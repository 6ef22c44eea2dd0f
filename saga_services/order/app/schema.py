"""
Order Service — テーブル定義
"""

ORDER_TABLES = [
    """
    CREATE TABLE IF NOT EXISTS orders (
        order_id VARCHAR(64) PRIMARY KEY,
        items TEXT NOT NULL,
        total DOUBLE PRECISION NOT NULL,
        status VARCHAR(32) NOT NULL,
        correlation_id VARCHAR(64) NOT NULL,
        created_at VARCHAR(40) NOT NULL,
        updated_at VARCHAR(40) NOT NULL
    )
    """,
    # 適用したイベントの追記専用履歴
    """
    CREATE TABLE IF NOT EXISTS order_history (
        order_id VARCHAR(64) NOT NULL,
        seq INTEGER NOT NULL,
        type VARCHAR(128) NOT NULL,
        at VARCHAR(40) NOT NULL,
        details TEXT,
        PRIMARY KEY (order_id, seq)
    )
    """,
]
