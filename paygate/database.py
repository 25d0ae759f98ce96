"""
SQLite 数据库连接管理和初始化。
使用同步 sqlite3，提供 get_db() 获取连接。
"""

import os
import sqlite3
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

DB_PATH = os.getenv("DB_PATH", "data/paygate.db")


def get_db() -> sqlite3.Connection:
    """获取 SQLite 数据库连接，启用 WAL 模式和外键约束。"""
    conn = sqlite3.connect(DB_PATH)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


# ── 建表 SQL ──────────────────────────────────────────────

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS channels (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    plugin          VARCHAR(32)  NOT NULL,
    name            VARCHAR(64)  NOT NULL,
    config          TEXT         NOT NULL,
    active          INTEGER      DEFAULT 1,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS orders (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    trade_no        VARCHAR(32)  NOT NULL UNIQUE,
    channel_id      INTEGER      NOT NULL REFERENCES channels(id),
    type            VARCHAR(16)  DEFAULT 'alipay',
    name            VARCHAR(256) NOT NULL,
    money           DECIMAL(10,2) NOT NULL,
    notify_url      TEXT,
    return_url      TEXT,
    clientip        VARCHAR(64),
    openid          VARCHAR(128),
    status          INTEGER      DEFAULT 0,
    api_trade_no    VARCHAR(64),
    buyer           VARCHAR(128),
    refund_no       VARCHAR(64),
    refund_money    DECIMAL(10,2),
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    paid_at         DATETIME,
    refunded_at     DATETIME
);
"""

# ── 索引 SQL ──────────────────────────────────────────────

_CREATE_INDEXES = """
CREATE UNIQUE INDEX IF NOT EXISTS idx_orders_trade_no
    ON orders(trade_no);
CREATE INDEX IF NOT EXISTS idx_orders_status
    ON orders(status);
CREATE INDEX IF NOT EXISTS idx_channels_plugin
    ON channels(plugin);
"""


# ── 初始化 ────────────────────────────────────────────────

def init_db() -> None:
    """创建数据库目录、表和索引。"""
    db_dir = Path(DB_PATH).parent
    db_dir.mkdir(parents=True, exist_ok=True)

    conn = get_db()
    try:
        conn.executescript(_CREATE_TABLES)
        conn.executescript(_CREATE_INDEXES)
        conn.commit()
    finally:
        conn.close()
