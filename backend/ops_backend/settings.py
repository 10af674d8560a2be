"""
Django settings for the ops_backend project.

Every deploy-specific value comes from the environment; a local ``.env`` next
to ``manage.py`` is loaded first when present.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent

load_dotenv(BASE_DIR / ".env")


def _getenv(name: str, default: str = "") -> str:
    val = os.getenv(name)
    if val is None:
        return default
    return str(val)


def _getenv_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return str(raw).strip().lower() in {"1", "true", "yes", "y", "on"}


def _getenv_int(name: str, default: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or not str(raw).strip():
        return default
    try:
        return int(str(raw).strip())
    except ValueError:
        return default


def _getenv_float(name: str, default: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None or not str(raw).strip():
        return default
    try:
        return float(str(raw).strip())
    except ValueError:
        return default


# --------------------------------------------------------------------------------------
# Core
# --------------------------------------------------------------------------------------

SECRET_KEY = _getenv("SECRET_KEY", "django-insecure-change-me")

DEBUG = _getenv_bool("DEBUG", False)

ALLOWED_HOSTS = [h.strip() for h in _getenv("ALLOWED_HOSTS", "localhost,127.0.0.1").split(",") if h.strip()]

INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",

    # Third-party
    "rest_framework",
    "drf_spectacular",

    # Project apps
    "crm",
    "priorities",
    "billing",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
]

ROOT_URLCONF = "ops_backend.urls"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    },
]

WSGI_APPLICATION = "ops_backend.wsgi.application"

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": _getenv("DATABASE_PATH", str(BASE_DIR / "db.sqlite3")),
    }
}

AUTH_PASSWORD_VALIDATORS = [
    {"NAME": "django.contrib.auth.password_validation.UserAttributeSimilarityValidator"},
    {"NAME": "django.contrib.auth.password_validation.MinimumLengthValidator"},
    {"NAME": "django.contrib.auth.password_validation.CommonPasswordValidator"},
    {"NAME": "django.contrib.auth.password_validation.NumericPasswordValidator"},
]

LANGUAGE_CODE = "en-us"
TIME_ZONE = _getenv("TIME_ZONE", "UTC")
USE_I18N = True
USE_TZ = True

STATIC_URL = "static/"
DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"


# --------------------------------------------------------------------------------------
# API
# --------------------------------------------------------------------------------------

REST_FRAMEWORK = {
    "DEFAULT_AUTHENTICATION_CLASSES": [
        "rest_framework.authentication.SessionAuthentication",
        "rest_framework.authentication.BasicAuthentication",
    ],
    "DEFAULT_PERMISSION_CLASSES": [
        "rest_framework.permissions.IsAuthenticated",
    ],
    "DEFAULT_SCHEMA_CLASS": "drf_spectacular.openapi.AutoSchema",
    "DEFAULT_THROTTLE_RATES": {
        "user": "1000/hour",
    },
}

SPECTACULAR_SETTINGS = {
    "TITLE": "Operations Backend API",
    "DESCRIPTION": "Work prioritization and recurring billing for a small business.",
    "VERSION": "1.0.0",
    "SERVE_INCLUDE_SCHEMA": False,
}


# --------------------------------------------------------------------------------------
# Invoicing provider (Morning / Green Invoice)
# --------------------------------------------------------------------------------------

MORNING_ENABLED = _getenv_bool("ENABLE_MORNING_INTEGRATION", False)
MORNING_API_URL = _getenv("MORNING_API_URL", "https://api.greeninvoice.co.il/api/v1")
MORNING_API_KEY = _getenv("MORNING_API_KEY", "")
MORNING_API_SECRET = _getenv("MORNING_API_SECRET", "")
MORNING_TIMEOUT = _getenv_float("MORNING_TIMEOUT", 20.0)
MORNING_MAX_RETRIES = _getenv_int("MORNING_MAX_RETRIES", 2)
MORNING_CURRENCY = _getenv("MORNING_CURRENCY", "ILS")
MORNING_LANGUAGE = _getenv("MORNING_LANGUAGE", "he")


# --------------------------------------------------------------------------------------
# Prioritization
# --------------------------------------------------------------------------------------

# Thread pool size used by the recalculate_priorities command.
PRIORITY_RECALC_WORKERS = _getenv_int("PRIORITY_RECALC_WORKERS", 4)


# --------------------------------------------------------------------------------------
# Logging
# --------------------------------------------------------------------------------------

LOG_LEVEL = _getenv("LOG_LEVEL", "INFO").upper()

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "standard": {
            "format": "%(asctime)s %(levelname)s %(name)s %(message)s",
        }
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "standard"},
    },
    "root": {"handlers": ["console"], "level": "WARNING"},
    "loggers": {
        "django.request": {"handlers": ["console"], "level": "WARNING", "propagate": False},
        "billing": {"handlers": ["console"], "level": LOG_LEVEL, "propagate": False},
        "priorities": {"handlers": ["console"], "level": LOG_LEVEL, "propagate": False},
        "crm": {"handlers": ["console"], "level": LOG_LEVEL, "propagate": False},
    },
}
