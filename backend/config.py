from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
import os

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')


def _parse_origins(raw: str) -> list[str]:
    return [o.strip() for o in raw.split(",") if o.strip()]


@dataclass(frozen=True)
class Settings:
    environment: str = field(default_factory=lambda: os.getenv("ENVIRONMENT", "development"))

    # MongoDB
    mongo_url: str = field(default_factory=lambda: os.getenv("MONGO_URL", "mongodb://localhost:27017"))
    db_name: str = field(default_factory=lambda: os.getenv("DB_NAME", "wise_sales_billing"))

    # Mercado Pago
    mercadopago_access_token: str = field(default_factory=lambda: (os.getenv("MERCADOPAGO_ACCESS_TOKEN") or "").strip())
    mercadopago_public_key: str = field(default_factory=lambda: (os.getenv("MERCADOPAGO_PUBLIC_KEY") or "").strip())
    mercadopago_api_base: str = field(default_factory=lambda: os.getenv("MERCADOPAGO_API_BASE", "https://api.mercadopago.com"))
    mercadopago_timeout_seconds: float = field(default_factory=lambda: float(os.getenv("MERCADOPAGO_TIMEOUT_SECONDS", "10")))
    mercadopago_back_url: str = field(default_factory=lambda: os.getenv("MERCADOPAGO_BACK_URL", "http://localhost:5173/configuracoes/assinatura"))

    cors_origins: list[str] = field(default_factory=lambda: _parse_origins(os.getenv("CORS_ORIGINS", "*")))

    @property
    def mercadopago_mode(self) -> str:
        """Mercado Pago test credentials are prefixed with TEST-."""
        if not self.mercadopago_access_token:
            return "unknown"
        return "test" if self.mercadopago_access_token.startswith("TEST-") else "live"


@lru_cache
def get_settings() -> Settings:
    return Settings()
