"""
Settings of the persistence engine.

Values come from the process environment (optionally seeded from a ``.env``
file) and are validated into a pydantic model:

    DOMPERSIST_DB_URL               SQLAlchemy database URL
    DOMPERSIST_POOL_SIZE            bound of the connection pool
    DOMPERSIST_POOL_TIMEOUT         seconds to wait for a pooled connection
    DOMPERSIST_QUERY_TIMEOUT        seconds a single statement may run
    DOMPERSIST_MAX_IN_CLAUSE        max number of values in one IN (...) list
    DOMPERSIST_DATA_HORIZON_PERIOD  visibility window of horizon-controlled classes
    DOMPERSIST_ECHO_SQL             log every statement through SQLAlchemy
"""
import os
import logging
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger("DomainSettings")


class DomainSettings(BaseModel):
    """Validated engine settings."""
    db_url: str = "sqlite:///dompersist.db"
    pool_size: int = Field(default=5, ge=1)
    pool_timeout: float = Field(default=30.0, gt=0)
    query_timeout: float = Field(default=30.0, gt=0)
    max_in_clause: int = Field(default=1000, ge=1)
    data_horizon_period: str = "1M"
    echo_sql: bool = False

    @field_validator("data_horizon_period")
    @classmethod
    def check_period(cls, value: str) -> str:
        # Imported here: horizon module depends on the schema layer
        from dompersist.sql.horizon import parse_period
        parse_period(value)
        return value

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None, **overrides) -> "DomainSettings":
        """Read settings from the environment, ``overrides`` win over it."""
        load_dotenv(dotenv_path)
        values = {
            "db_url": os.getenv("DOMPERSIST_DB_URL"),
            "pool_size": os.getenv("DOMPERSIST_POOL_SIZE"),
            "pool_timeout": os.getenv("DOMPERSIST_POOL_TIMEOUT"),
            "query_timeout": os.getenv("DOMPERSIST_QUERY_TIMEOUT"),
            "max_in_clause": os.getenv("DOMPERSIST_MAX_IN_CLAUSE"),
            "data_horizon_period": os.getenv("DOMPERSIST_DATA_HORIZON_PERIOD"),
            "echo_sql": os.getenv("DOMPERSIST_ECHO_SQL"),
        }
        values = {k: v for k, v in values.items() if v is not None}
        values.update(overrides)
        settings = cls(**values)
        logger.info(f"Loaded settings for {settings.db_url} (pool size {settings.pool_size})")
        return settings
