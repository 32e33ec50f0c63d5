"""
Reservation Service — 設定

各サービスと同じく環境変数から読み込む。
"""

import os

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite+aiosqlite:///./reservation.db")
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")

# "redis" または "memory"（単一プロセスでの動作確認用）
CACHE_BACKEND = os.environ.get("CACHE_BACKEND", "redis")

# 仮押さえ (Hold) の有効期間
HOLD_TTL_SECONDS = int(os.environ.get("HOLD_TTL_SECONDS", "120"))

# 有効在庫キャッシュの寿命。短くして鮮度と負荷のバランスを取る
AVAILABLE_STOCK_CACHE_TTL = float(os.environ.get("AVAILABLE_STOCK_CACHE_TTL", "5"))

SWEEP_INTERVAL_SECONDS = float(os.environ.get("SWEEP_INTERVAL_SECONDS", "60"))
SWEEPER_ENABLED = os.environ.get("SWEEPER_ENABLED", "1") == "1"

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
