"""Django settings for the checkout web app.

Every knob is read from the environment with a development default, so the
same module serves local runs, tests and the container image.
"""

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent


def _env_bool(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes", "on")


SECRET_KEY = os.getenv("SECRET_KEY", "dev-insecure-secret-key")
DEBUG = _env_bool("DEBUG", "1")
ALLOWED_HOSTS = [h for h in os.getenv("ALLOWED_HOSTS", "*").split(",") if h]

INSTALLED_APPS = [
    "django.contrib.contenttypes",
    "django.contrib.auth",
    "rest_framework",
    "apps.orders",
]

MIDDLEWARE = [
    "gateway.middleware.RequestIdMiddleware",
    "gateway.middleware.ApiSizeLimitMiddleware",
    "django.middleware.common.CommonMiddleware",
    "gateway.middleware.UserIdentityMiddleware",
]

ROOT_URLCONF = "config.urls"
WSGI_APPLICATION = "config.wsgi.application"

# ---- Database ----
if os.getenv("DB_HOST"):
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.postgresql",
            "NAME": os.getenv("DB_NAME", "orders"),
            "USER": os.getenv("DB_USER", "orders"),
            "PASSWORD": os.getenv("DB_PASSWORD", "orders"),
            "HOST": os.getenv("DB_HOST"),
            "PORT": os.getenv("DB_PORT", "5432"),
            "CONN_MAX_AGE": int(os.getenv("DB_CONN_MAX_AGE", "60")),
        }
    }
else:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": os.getenv("SQLITE_PATH", str(BASE_DIR / "db.sqlite3")),
        }
    }

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"
USE_TZ = True
TIME_ZONE = "UTC"

# ---- DRF ----
REST_FRAMEWORK = {
    "DEFAULT_RENDERER_CLASSES": ["rest_framework.renderers.JSONRenderer"],
    "DEFAULT_PARSER_CLASSES": ["rest_framework.parsers.JSONParser"],
    "DEFAULT_AUTHENTICATION_CLASSES": [],
    "DEFAULT_PERMISSION_CLASSES": ["rest_framework.permissions.AllowAny"],
    "UNAUTHENTICATED_USER": None,
    "DEFAULT_THROTTLE_RATES": {
        "orders_list": os.getenv("THROTTLE_ORDERS_LIST", "600/min"),
        "orders_create": os.getenv("THROTTLE_ORDERS_CREATE", "120/min"),
        "orders_detail": os.getenv("THROTTLE_ORDERS_DETAIL", "600/min"),
        "orders_confirm": os.getenv("THROTTLE_ORDERS_CONFIRM", "120/min"),
        "orders_admin": os.getenv("THROTTLE_ORDERS_ADMIN", "300/min"),
    },
}

CACHES = {
    "default": {
        "BACKEND": "django.core.cache.backends.locmem.LocMemCache",
    }
}

# ---- Downstream services ----
USE_HTTP_ADAPTERS = _env_bool("USE_HTTP_ADAPTERS", "0")
INVENTORY_BASE_URL = os.getenv("INVENTORY_BASE_URL", "http://localhost:9001")
PAYMENTS_BASE_URL = os.getenv("PAYMENTS_BASE_URL", "http://localhost:9002")
HTTP_TIMEOUT_SECS = float(os.getenv("HTTP_TIMEOUT_SECS", "2.0"))
HTTP_RETRY_MAX = int(os.getenv("HTTP_RETRY_MAX", "3"))
HTTP_RETRY_BACKOFF_BASE = float(os.getenv("HTTP_RETRY_BACKOFF_BASE", "0.15"))
HTTP_RETRY_MAX_SLEEP = float(os.getenv("HTTP_RETRY_MAX_SLEEP", "0.5"))
HTTP_CIRCUIT_FAIL_THRESHOLD = int(os.getenv("HTTP_CIRCUIT_FAIL_THRESHOLD", "5"))
HTTP_CIRCUIT_RESET_TIMEOUT = float(os.getenv("HTTP_CIRCUIT_RESET_TIMEOUT", "30"))

PAYMENT_GATEWAY_KEY_ID = os.getenv("PAYMENT_GATEWAY_KEY_ID", "rzp_test_key")
PAYMENT_GATEWAY_KEY_SECRET = os.getenv("PAYMENT_GATEWAY_KEY_SECRET", "dev-gateway-secret")

# ---- Store ----
STORE_CURRENCY = os.getenv("STORE_CURRENCY", "INR")
COD_DEPOSIT_CENTS = int(os.getenv("COD_DEPOSIT_CENTS", "20000"))
SHIPPING_FREE_THRESHOLD_CENTS = int(os.getenv("SHIPPING_FREE_THRESHOLD_CENTS", "100000"))
SHIPPING_FLAT_CENTS = int(os.getenv("SHIPPING_FLAT_CENTS", "10000"))
PENDING_ORDER_TTL_SECONDS = int(os.getenv("PENDING_ORDER_TTL_SECONDS", "1800"))

# In-process inventory used when USE_HTTP_ADAPTERS is off
INVENTORY_STUB_CATALOG = {
    "runner-01": {"name": "Trail Runner", "price_cents": 450000, "sizes": {7: 10, 8: 10, 9: 10, 10: 5}},
    "court-02": {"name": "Court Classic", "price_cents": 75000, "sizes": {8: 6, 9: 6, 10: 6}},
    "slide-03": {"name": "Pool Slide", "price_cents": 30000, "sizes": {9: 20, 10: 20}},
}

# ---- Logging ----
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "filters": {
        "request_id": {"()": "gateway.logging_filters.RequestIdFilter"},
    },
    "formatters": {
        "json": {
            "()": "pythonjsonlogger.json.JsonFormatter",
            "fmt": "%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s %(user_id)s",
            "rename_fields": {"levelname": "level", "asctime": "ts"},
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "json",
            "filters": ["request_id"],
        },
    },
    "root": {"handlers": ["console"], "level": LOG_LEVEL},
    "loggers": {
        "django": {"handlers": ["console"], "level": "WARNING", "propagate": False},
        "orders": {"handlers": ["console"], "level": LOG_LEVEL, "propagate": False},
    },
}
