import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine

load_dotenv()

BASE_DIR = Path(__file__).resolve().parent
SCHEMA_FILE = "trust_schema.sql"


def get_engine(env_var: str, fallback: Optional[str] = None) -> Engine:
    url = os.getenv(env_var, fallback)
    if not url:
        raise RuntimeError(f"Database URL for {env_var} is not configured")
    return create_engine(url, echo=False, future=True)


def init_db(engine: Engine, schema_file: str = SCHEMA_FILE) -> None:
    """Apply a schema file statement by statement; statements must be idempotent."""
    path = BASE_DIR / schema_file
    sql = path.read_text()
    with engine.begin() as conn:
        for statement in sql.split(";"):
            stmt = statement.strip()
            if stmt:
                conn.execute(text(stmt))
