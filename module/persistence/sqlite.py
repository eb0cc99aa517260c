"""
persistence/sqlite.py
---------------------
SQLite document store for agents, signals, trades and per-agent performance.

This is the canonical record; the cache store only mirrors it.  Each row
keeps the indexed columns next to the full pydantic payload as JSON.
"""

from __future__ import annotations

import json
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd

from models.agent import AgentConfig
from models.signal import TradingSignal
from models.trade import OPEN_TRADE_STATUSES, TradeRecord

SCHEMA = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS agents (
    id          TEXT PRIMARY KEY,
    user_id     TEXT,
    symbol      TEXT,
    is_active   INTEGER,
    payload     TEXT,
    performance TEXT,           -- latest PerformanceMetrics JSON
    updated_at  REAL
);

CREATE TABLE IF NOT EXISTS signals (
    id         TEXT PRIMARY KEY,
    agent_id   TEXT,
    symbol     TEXT,
    status     TEXT,
    created_at REAL,
    payload    TEXT
);

CREATE TABLE IF NOT EXISTS trades (
    id              TEXT PRIMARY KEY,
    agent_id        TEXT,
    user_id         TEXT,
    order_id        TEXT,
    symbol          TEXT,
    status          TEXT,
    closes_trade_id TEXT,
    created_at      REAL,
    payload         TEXT
);
CREATE INDEX IF NOT EXISTS idx_trades_order ON trades(order_id);
CREATE INDEX IF NOT EXISTS idx_trades_agent ON trades(agent_id, status);

CREATE TABLE IF NOT EXISTS performance_trades (
    order_id TEXT PRIMARY KEY,  -- one result per venue order
    agent_id TEXT,
    symbol   TEXT,
    side     TEXT,
    quantity REAL,
    price    REAL,
    pnl      REAL,
    ts       REAL
);
CREATE INDEX IF NOT EXISTS idx_perf_agent ON performance_trades(agent_id, ts);
"""


class SQLitePersistence:
    def __init__(self, db_path: str = "pipeline.db"):
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.executescript(SCHEMA)
        self.conn.commit()
        self._lock = threading.Lock()

    def _write(self, sql: str, params: Dict[str, Any]) -> int:
        with self._lock:
            cur = self.conn.execute(sql, params)
            self.conn.commit()
            return cur.rowcount

    # ----------------------------- AGENTS -------------------------------- #
    def upsert_agent(self, agent: AgentConfig) -> None:
        self._write(
            """
            INSERT INTO agents (id, user_id, symbol, is_active, payload, updated_at)
            VALUES (:id, :user_id, :symbol, :is_active, :payload, :ts)
            ON CONFLICT(id) DO UPDATE SET
              user_id = excluded.user_id,
              symbol = excluded.symbol,
              is_active = excluded.is_active,
              payload = excluded.payload,
              updated_at = excluded.updated_at
            """,
            {
                "id": agent.id,
                "user_id": agent.user_id,
                "symbol": agent.symbol,
                "is_active": int(agent.is_active),
                "payload": agent.model_dump_json(),
                "ts": time.time(),
            },
        )

    def get_agent(self, agent_id: str) -> Optional[AgentConfig]:
        row = self.conn.execute("SELECT payload FROM agents WHERE id = ?", (agent_id,)).fetchone()
        return AgentConfig.model_validate_json(row["payload"]) if row else None

    def list_active_agents(self) -> List[AgentConfig]:
        rows = self.conn.execute("SELECT payload FROM agents WHERE is_active = 1 ORDER BY id").fetchall()
        return [AgentConfig.model_validate_json(r["payload"]) for r in rows]

    def update_agent_performance(self, agent_id: str, metrics: Dict[str, Any]) -> None:
        self._write(
            "UPDATE agents SET performance = :perf, updated_at = :ts WHERE id = :id",
            {"perf": json.dumps(metrics), "ts": time.time(), "id": agent_id},
        )

    def get_agent_performance(self, agent_id: str) -> Optional[Dict[str, Any]]:
        row = self.conn.execute("SELECT performance FROM agents WHERE id = ?", (agent_id,)).fetchone()
        return json.loads(row["performance"]) if row and row["performance"] else None

    # ----------------------------- SIGNALS ------------------------------- #
    def upsert_signal(self, signal: TradingSignal) -> None:
        self._write(
            """
            INSERT INTO signals (id, agent_id, symbol, status, created_at, payload)
            VALUES (:id, :agent_id, :symbol, :status, :created_at, :payload)
            ON CONFLICT(id) DO UPDATE SET
              status = excluded.status,
              payload = excluded.payload
            """,
            {
                "id": signal.id,
                "agent_id": signal.agent_id,
                "symbol": signal.symbol,
                "status": signal.status.value,
                "created_at": signal.created_at,
                "payload": signal.model_dump_json(),
            },
        )

    def get_signal(self, signal_id: str) -> Optional[TradingSignal]:
        row = self.conn.execute("SELECT payload FROM signals WHERE id = ?", (signal_id,)).fetchone()
        return TradingSignal.model_validate_json(row["payload"]) if row else None

    def delete_signals_before(self, cutoff: float) -> int:
        """Drop terminal signals created before ``cutoff``."""
        return self._write(
            """
            DELETE FROM signals
            WHERE created_at < :cutoff AND status IN ('executed', 'cancelled', 'failed')
            """,
            {"cutoff": cutoff},
        )

    # ----------------------------- TRADES -------------------------------- #
    def save_trade(self, trade: TradeRecord) -> None:
        self._write(
            """
            INSERT INTO trades (id, agent_id, user_id, order_id, symbol, status,
                                closes_trade_id, created_at, payload)
            VALUES (:id, :agent_id, :user_id, :order_id, :symbol, :status,
                    :closes_trade_id, :created_at, :payload)
            ON CONFLICT(id) DO UPDATE SET
              order_id = excluded.order_id,
              status = excluded.status,
              payload = excluded.payload
            """,
            {
                "id": trade.id,
                "agent_id": trade.agent_id,
                "user_id": trade.user_id,
                "order_id": trade.order_id,
                "symbol": trade.symbol,
                "status": trade.status.value,
                "closes_trade_id": trade.closes_trade_id,
                "created_at": trade.created_at,
                "payload": trade.model_dump_json(),
            },
        )

    def get_trade(self, trade_id: str) -> Optional[TradeRecord]:
        row = self.conn.execute("SELECT payload FROM trades WHERE id = ?", (trade_id,)).fetchone()
        return TradeRecord.model_validate_json(row["payload"]) if row else None

    def get_trade_by_order_id(self, order_id: str) -> Optional[TradeRecord]:
        row = self.conn.execute(
            "SELECT payload FROM trades WHERE order_id = ? ORDER BY created_at DESC LIMIT 1",
            (order_id,),
        ).fetchone()
        return TradeRecord.model_validate_json(row["payload"]) if row else None

    def list_open_trades(self, agent_id: str) -> List[TradeRecord]:
        """Opening trades still holding a position (closing orders excluded)."""
        statuses = [s.value for s in OPEN_TRADE_STATUSES]
        marks = ",".join("?" for _ in statuses)
        rows = self.conn.execute(
            f"""
            SELECT payload FROM trades
            WHERE agent_id = ? AND closes_trade_id IS NULL AND status IN ({marks})
            ORDER BY created_at
            """,
            (agent_id, *statuses),
        ).fetchall()
        return [TradeRecord.model_validate_json(r["payload"]) for r in rows]

    # --------------------------- PERFORMANCE ----------------------------- #
    def record_performance_trade(self, *, order_id: str, agent_id: str, symbol: str,
                                 side: str, quantity: float, price: float,
                                 pnl: float, ts: float) -> bool:
        """Insert one trade result; returns False when ``order_id`` was already recorded."""
        inserted = self._write(
            """
            INSERT OR IGNORE INTO performance_trades
              (order_id, agent_id, symbol, side, quantity, price, pnl, ts)
            VALUES (:order_id, :agent_id, :symbol, :side, :quantity, :price, :pnl, :ts)
            """,
            {
                "order_id": order_id, "agent_id": agent_id, "symbol": symbol,
                "side": side, "quantity": quantity, "price": price, "pnl": pnl, "ts": ts,
            },
        )
        return inserted == 1

    def performance_frame(self, agent_id: str) -> pd.DataFrame:
        return pd.read_sql_query(
            "SELECT * FROM performance_trades WHERE agent_id = ? ORDER BY ts",
            self.conn,
            params=(agent_id,),
        )

    def close(self) -> None:
        self.conn.close()
