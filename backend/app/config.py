import os
from decimal import Decimal, InvalidOperation
from typing import List


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except Exception:
        return default


def _env_decimal(name: str, default: str) -> Decimal:
    raw = (os.getenv(name) or "").strip()
    try:
        return Decimal(raw or default)
    except InvalidOperation:
        return Decimal(default)


class Settings:
    def _split_csv(self, raw: str, *, default: List[str]) -> List[str]:
        parts = [p.strip() for p in (raw or "").split(",")]
        return [p for p in parts if p] or default

    def __init__(self) -> None:
        self.env = os.getenv("APP_ENV", "local")
        self.db_url = (
            os.getenv("APP_DATABASE_URL")
            or os.getenv("DATABASE_URL")
            or "postgresql://localhost/freshfruit_erp"
        )
        self.db_pool_min = _env_int("DB_POOL_MIN_SIZE", 1)
        self.db_pool_max = _env_int("DB_POOL_MAX_SIZE", 10)
        # Comma-separated list of allowed CORS origins for the admin frontend.
        self.cors_origins = self._split_csv(
            os.getenv("CORS_ORIGINS", "").strip(),
            default=["http://localhost:3000", "http://127.0.0.1:3000"],
        )
        self.api_version = os.getenv("APP_VERSION", "0.1.0").strip() or "0.1.0"
        self.session_days = _env_int("SESSION_DAYS", 7)
        # Sales tax is applied on the post-discount subtotal. Disabled (0) by default.
        self.sales_tax_rate = _env_decimal("SALES_TAX_RATE", "0")
        self.default_page_size = _env_int("DEFAULT_PAGE_SIZE", 50)
        self.max_page_size = _env_int("MAX_PAGE_SIZE", 200)

    @property
    def debug_errors(self) -> bool:
        return self.env in {"local", "dev"}


settings = Settings()
