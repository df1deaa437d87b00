"""Environment-driven settings and the declarative retailer table."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parents[1]
RETAILERS_PATH = Path(__file__).resolve().parent / "extraction" / "retailers.yaml"


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if not value:
        return default
    return int(value)


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if not value:
        return default
    return float(value)


def get_db_connection_string() -> str:
    """Get database connection string from environment."""
    if conn_str := os.getenv("DATABASE_URL"):
        return conn_str
    if conn_str := os.getenv("PG_DSN"):
        return conn_str

    host = os.getenv("PG_HOST", "localhost")
    port = os.getenv("PG_PORT", "5432")
    user = os.getenv("PG_USER", "catalog")
    password = os.getenv("PG_PASS", "catalog")
    database = os.getenv("PG_DB", "catalog")

    return f"postgresql://{user}:{password}@{host}:{port}/{database}"


@dataclass(frozen=True)
class Settings:
    """Process-wide configuration resolved once at start-up."""

    database_url: str
    production: bool = False
    headless: bool = False
    asset_bucket: Optional[str] = None
    asset_prefix: str = "products"
    asset_public_base_url: Optional[str] = None
    asset_endpoint_url: Optional[str] = None
    asset_max_width: int = 800
    asset_quality: int = 80
    asset_timeout: float = 10.0
    feed_timeout: float = 30.0
    retailers_path: Path = RETAILERS_PATH

    @classmethod
    def from_env(cls, *, dotenv: bool = True) -> Settings:
        """Build settings from the environment, loading ``.env`` first."""
        if dotenv:
            load_dotenv(BASE_DIR / ".env")

        production = os.getenv("SCRAPER_ENV", "development").lower() == "production"
        retailers_path = os.getenv("RETAILERS_CONFIG")

        return cls(
            database_url=get_db_connection_string(),
            production=production,
            headless=_env_bool("SCRAPER_HEADLESS", production),
            asset_bucket=os.getenv("ASSET_BUCKET") or None,
            asset_prefix=os.getenv("ASSET_PREFIX", "products"),
            asset_public_base_url=os.getenv("ASSET_PUBLIC_BASE_URL") or None,
            asset_endpoint_url=os.getenv("AWS_ENDPOINT_URL") or None,
            asset_max_width=_env_int("ASSET_MAX_WIDTH", 800),
            asset_quality=_env_int("ASSET_QUALITY", 80),
            asset_timeout=_env_float("ASSET_TIMEOUT", 10.0),
            feed_timeout=_env_float("FEED_TIMEOUT", 30.0),
            retailers_path=Path(retailers_path) if retailers_path else RETAILERS_PATH,
        )


def load_retailer_table(path: str | Path = RETAILERS_PATH) -> Dict[str, Any]:
    """Read the YAML table of per-domain limits and extraction strategies."""
    data = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError("retailer table must be a dictionary")
    data.setdefault("defaults", {})
    data.setdefault("retailers", {})
    if not isinstance(data["retailers"], dict):
        raise ValueError("retailers section must map domain -> settings")
    return data
