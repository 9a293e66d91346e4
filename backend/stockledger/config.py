# backend/stockledger/config.py
from __future__ import annotations
import os


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/stockledger.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///stockledger.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Used until a row exists in inventory_settings
    DEFAULT_COST_UPDATE_METHOD = os.environ.get("DEFAULT_COST_UPDATE_METHOD", "none")

    # Batches expiring within this many days report "expiring_soon"
    BATCH_EXPIRY_HORIZON_DAYS = int(os.environ.get("BATCH_EXPIRY_HORIZON_DAYS", "30"))

    # Attempts for store-level concurrency conflicts (deadlock, stale version)
    TRANSACTION_RETRY_ATTEMPTS = int(os.environ.get("TRANSACTION_RETRY_ATTEMPTS", "3"))
