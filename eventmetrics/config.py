from __future__ import annotations
import os
from pydantic import BaseModel

class Settings(BaseModel):
    storage_provider: str = os.getenv("EVM_STORAGE_PROVIDER", "DUCKDB")

    duckdb_path: str = os.getenv("DUCKDB_PATH", "warehouse/analytics.duckdb")
    dataset: str = os.getenv("EVM_DATASET", "s8_analytics")

    mongo_url: str = os.getenv("MONGO_URL", "mongodb://localhost:27017")
    mongo_database: str = os.getenv("MONGO_DATABASE", "s8")

    # 24h for late partitioning plus 1h of clock skew
    buffer_hours: int = int(os.getenv("EVM_BUFFER_HOURS", "25"))
    default_limit: int = int(os.getenv("EVM_DEFAULT_LIMIT", "10000"))

    log_level: str = os.getenv("LOG_LEVEL", "INFO")

settings = Settings()
