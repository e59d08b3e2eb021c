import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent


def _env_bool(name, default=False):
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "django-insecure-microlearn-dev-key")
DEBUG = _env_bool("DJANGO_DEBUG", False)
ALLOWED_HOSTS = os.getenv("DJANGO_ALLOWED_HOSTS", "*").split(",")

INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "rest_framework",
    "courses",
    "whatsapp",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
]

ROOT_URLCONF = "microlearn.urls"
WSGI_APPLICATION = "microlearn.wsgi.application"

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

if os.getenv("DATABASE_ENGINE"):
    DATABASES = {
        "default": {
            "ENGINE": os.getenv("DATABASE_ENGINE"),
            "NAME": os.getenv("DATABASE_NAME"),
            "USER": os.getenv("DATABASE_USER", ""),
            "PASSWORD": os.getenv("DATABASE_PASSWORD", ""),
            "HOST": os.getenv("DATABASE_HOST", ""),
            "PORT": os.getenv("DATABASE_PORT", ""),
        }
    }
else:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": BASE_DIR / "db.sqlite3",
        }
    }

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

LANGUAGE_CODE = "en-us"
TIME_ZONE = os.getenv("TIME_ZONE", "Europe/Istanbul")
USE_I18N = True
USE_TZ = True

STATIC_URL = "static/"

REST_FRAMEWORK = {
    "DEFAULT_RENDERER_CLASSES": ["rest_framework.renderers.JSONRenderer"],
    "DEFAULT_PARSER_CLASSES": ["rest_framework.parsers.JSONParser"],
}

# WhatsApp Cloud API
WHATSAPP_API_URL = os.getenv("WHATSAPP_API_URL", "https://graph.facebook.com/v22.0")
WHATSAPP_PHONE_NUMBER_ID = os.getenv("WHATSAPP_PHONE_NUMBER_ID", "")
WHATSAPP_ACCESS_TOKEN = os.getenv("WHATSAPP_ACCESS_TOKEN", "")
WHATSAPP_VERIFY_TOKEN = os.getenv("WHATSAPP_VERIFY_TOKEN", "")
WHATSAPP_TEMPLATE_LANGUAGE = os.getenv("WHATSAPP_TEMPLATE_LANGUAGE", "tr")
WHATSAPP_TIMEOUT_SECONDS = float(os.getenv("WHATSAPP_TIMEOUT_SECONDS", "60"))

# Lesson delivery, job queue and maintenance tunables
DELIVERY = {
    "AUTOSTART": _env_bool("DELIVERY_AUTOSTART", False),
    "SEND_MAX_PER_SEC": int(os.getenv("SEND_MAX_PER_SEC", "10")),
    "SEND_CONCURRENCY": int(os.getenv("SEND_CONCURRENCY", "5")),
    "JOB_MAX_ATTEMPTS": int(os.getenv("JOB_MAX_ATTEMPTS", "3")),
    "JOB_BACKOFF_SECONDS": int(os.getenv("JOB_BACKOFF_SECONDS", "60")),
    "JOB_KEEP_COMPLETED": int(os.getenv("JOB_KEEP_COMPLETED", "1000")),
    "JOB_KEEP_FAILED": int(os.getenv("JOB_KEEP_FAILED", "5000")),
    "JOB_RETENTION_HOURS": int(os.getenv("JOB_RETENTION_HOURS", "24")),
    "JOB_POLL_SECONDS": float(os.getenv("JOB_POLL_SECONDS", "1")),
    "LESSON_MESSAGE_DELAY_SECONDS": float(
        os.getenv("LESSON_MESSAGE_DELAY_SECONDS", "5")
    ),
    "REPLY_CONTEXT_TTL_HOURS": int(os.getenv("REPLY_CONTEXT_TTL_HOURS", "184")),
    "MESSAGE_RETENTION_DAYS": int(os.getenv("MESSAGE_RETENTION_DAYS", "30")),
    "SCHEDULE_SYNC_SECONDS": int(os.getenv("SCHEDULE_SYNC_SECONDS", "60")),
    "FALLBACK_REPLY": os.getenv(
        "FALLBACK_REPLY",
        "Thanks for your message! Your next lesson will arrive on schedule.",
    ),
}

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "standard": {
            "format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "standard",
        },
    },
    "root": {
        "handlers": ["console"],
        "level": os.getenv("LOG_LEVEL", "INFO"),
    },
    "loggers": {
        "apscheduler": {"level": "WARNING"},
        "httpx": {"level": "WARNING"},
    },
}
