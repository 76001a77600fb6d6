import os
from decimal import Decimal
from typing import List


class Settings:
    def _split_csv(self, raw: str, *, default: List[str]) -> List[str]:
        parts = [p.strip() for p in (raw or "").split(",")]
        return [p for p in parts if p] or default

    def _int(self, name: str, default: int) -> int:
        raw = (os.getenv(name) or "").strip()
        if not raw:
            return default
        try:
            return int(raw)
        except ValueError:
            return default

    def __init__(self) -> None:
        self.env = os.getenv('APP_ENV', 'local')
        self.db_url = os.getenv('DATABASE_URL', 'postgresql://localhost/amanatpos')
        # Comma-separated list of allowed CORS origins for the admin/cashier web apps.
        self.cors_origins = self._split_csv(
            os.getenv("CORS_ORIGINS", "").strip(),
            default=["http://localhost:3000", "http://127.0.0.1:3000"],
        )
        self.api_version = os.getenv("APP_VERSION", "0.1.0").strip() or "0.1.0"
        self.session_days = self._int("SESSION_DAYS", 7)
        # Products without their own low_stock_at use this threshold on the dashboard.
        self.low_stock_threshold = Decimal(self._int("LOW_STOCK_THRESHOLD", 10))
        self.currency_label = os.getenv("CURRENCY_LABEL", "Rs.").strip() or "Rs."

    @property
    def is_dev(self) -> bool:
        return self.env in {"local", "dev"}


settings = Settings()
