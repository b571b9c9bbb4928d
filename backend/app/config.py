import os
from typing import List, Tuple


def _parse_hhmm(raw: str, default: Tuple[int, int]) -> Tuple[int, int]:
    try:
        hh, mm = (raw or "").strip().split(":", 1)
        hour, minute = int(hh), int(mm)
    except Exception:
        return default
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        return default
    return hour, minute


class Settings:
    def _split_csv(self, raw: str, *, default: List[str]) -> List[str]:
        parts = [p.strip() for p in (raw or "").split(",")]
        return [p for p in parts if p] or default

    def __init__(self) -> None:
        self.env = os.getenv('APP_ENV', 'local')
        self.db_url = os.getenv('DATABASE_URL', 'postgresql://localhost/fourcash')
        # "postgres" in every deployed env; "memory" keeps a local run self-contained.
        self.store_backend = (os.getenv("STORE_BACKEND") or "postgres").strip().lower()
        # Comma-separated list of allowed CORS origins for browser/mobile clients.
        self.cors_origins = self._split_csv(
            os.getenv("CORS_ORIGINS", "").strip(),
            default=["http://localhost:3000", "http://127.0.0.1:3000"],
        )
        self.api_version = os.getenv("APP_VERSION", "0.1.0").strip() or "0.1.0"

        # Stores operate in one civil timezone regardless of where the worker runs.
        self.store_timezone = os.getenv("STORE_TIMEZONE", "Asia/Ho_Chi_Minh").strip() or "Asia/Ho_Chi_Minh"
        # Payment methods whose label starts with this prefix count as cash.
        self.cash_method_prefix = os.getenv("CASH_METHOD_PREFIX", "Tiền mặt").strip() or "Tiền mặt"

        self.push_gateway_url = (os.getenv("PUSH_GATEWAY_URL") or "").strip()
        self.push_gateway_key = (os.getenv("PUSH_GATEWAY_KEY") or "").strip()

        try:
            self.session_days = max(1, int(os.getenv("SESSION_DAYS", "30")))
        except Exception:
            self.session_days = 30

        self.low_stock_scan_at = _parse_hhmm(os.getenv("LOW_STOCK_SCAN_AT", ""), (8, 0))
        self.subscription_scan_at = _parse_hhmm(os.getenv("SUBSCRIPTION_SCAN_AT", ""), (0, 5))

settings = Settings()
