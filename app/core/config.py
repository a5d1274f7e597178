import os

from dotenv import load_dotenv

# Carrega o .env da raiz do projeto
load_dotenv()

_TRUTHY = {"1", "true", "yes", "on"}


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in _TRUTHY


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./payments.db")
ENV = os.getenv("ENVIRONMENT", os.getenv("ENV", "dev"))
ENV_NORMALIZED = ENV.strip().lower()
IS_DEV = ENV_NORMALIZED in {"dev", "development", "local"}
IS_TEST = ENV_NORMALIZED == "test"
IS_PROD = ENV_NORMALIZED in {"prod", "production"}

# Mercado Pago (pagamentos de pedidos e assinaturas)
MERCADO_PAGO_API_BASE = os.getenv("MERCADO_PAGO_API_BASE", "https://api.mercadopago.com").rstrip("/")
MERCADO_PAGO_ACCESS_TOKEN = os.getenv("MERCADO_PAGO_ACCESS_TOKEN", "").strip()
MERCADO_PAGO_WEBHOOK_SECRET = os.getenv("MERCADO_PAGO_WEBHOOK_SECRET", "").strip()
WEBHOOK_SIGNATURE_REQUIRED = _flag("WEBHOOK_SIGNATURE_REQUIRED", "1" if IS_PROD else "0")

# PicPay
PICPAY_OAUTH_BASE = os.getenv("PICPAY_OAUTH_BASE", "https://checkout-api.picpay.com").rstrip("/")
PICPAY_PAYMENTLINK_BASE = os.getenv(
    "PICPAY_PAYMENTLINK_BASE", "https://api.picpay.com/v1/paymentlink"
).rstrip("/")
PICPAY_ECOMMERCE_BASE = os.getenv(
    "PICPAY_ECOMMERCE_BASE", "https://appws.picpay.com/ecommerce/public"
).rstrip("/")

# Chamadas externas
PROVIDER_TIMEOUT_SECONDS = float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "15"))
PROVIDER_MAX_RETRIES = int(os.getenv("PROVIDER_MAX_RETRIES", "3"))

# Reconciliação
PENDING_SCAN_LIMIT = int(os.getenv("PENDING_SCAN_LIMIT", "200"))
PROCESSING_STALE_SECONDS = int(os.getenv("PROCESSING_STALE_SECONDS", "300"))
MAX_CLAIM_ATTEMPTS = int(os.getenv("MAX_CLAIM_ATTEMPTS", "3"))
STATUS_HEURISTIC_ENABLED = _flag("STATUS_HEURISTIC_ENABLED", "1")
ORDER_ESTIMATED_DELIVERY_MINUTES = int(os.getenv("ORDER_ESTIMATED_DELIVERY_MINUTES", "45"))

# Assinaturas
SUBSCRIPTION_GRACE_DAYS = int(os.getenv("SUBSCRIPTION_GRACE_DAYS", "7"))
SUBSCRIPTION_PERIOD_DAYS = int(os.getenv("SUBSCRIPTION_PERIOD_DAYS", "30"))
SUBSCRIPTION_ALERT_URL = os.getenv("SUBSCRIPTION_ALERT_URL", "").strip()
SUBSCRIPTION_ALERT_TOKEN = os.getenv("SUBSCRIPTION_ALERT_TOKEN", "").strip()

INTERNAL_API_TOKEN = os.getenv("INTERNAL_API_TOKEN", "").strip()

# CORS
_cors_env = os.getenv("ORIGENS_CORS", os.getenv("CORS_ORIGINS", ""))
CORS_ORIGINS = [origin.strip() for origin in _cors_env.split(",") if origin.strip() and origin.strip() != "*"]

if not CORS_ORIGINS and IS_DEV:
    CORS_ORIGINS = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]
