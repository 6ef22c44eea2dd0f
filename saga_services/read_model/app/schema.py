"""
Read Model Service — テーブル定義

サービスを横断して注文状態を読むための唯一の読み取り面。
"""

READ_MODEL_TABLES = [
    """
    CREATE TABLE IF NOT EXISTS order_projection (
        order_id VARCHAR(64) PRIMARY KEY,
        current_status VARCHAR(32) NOT NULL,
        created_at VARCHAR(40) NOT NULL,
        updated_at VARCHAR(40) NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_order_projection_status ON order_projection (current_status)",
    # 追記専用のタイムライン (seq はコミット順)
    """
    CREATE TABLE IF NOT EXISTS order_timeline (
        order_id VARCHAR(64) NOT NULL,
        seq INTEGER NOT NULL,
        type VARCHAR(128) NOT NULL,
        at VARCHAR(40) NOT NULL,
        details TEXT,
        PRIMARY KEY (order_id, seq)
    )
    """,
]
