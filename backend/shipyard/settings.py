import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY", "dev-insecure-change-me")
DEBUG = os.environ.get("DJANGO_DEBUG", "false").lower() == "true"

ALLOWED_HOSTS = [host.strip() for host in os.environ.get("DJANGO_ALLOWED_HOSTS", "*").split(",") if host.strip()]

# Respect proxy headers from nginx.
SECURE_PROXY_SSL_HEADER = ("HTTP_X_FORWARDED_PROTO", "https")
USE_X_FORWARDED_HOST = True

INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "yard_orchestrator.apps.YardOrchestratorConfig",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "shipyard.middleware.ApiTokenAuthMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
]

ROOT_URLCONF = "shipyard.urls"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.debug",
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    }
]

WSGI_APPLICATION = "shipyard.wsgi.application"

if os.environ.get("POSTGRES_HOST"):
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.postgresql",
            "NAME": os.environ.get("POSTGRES_DB", "shipyard"),
            "USER": os.environ.get("POSTGRES_USER", "shipyard"),
            "PASSWORD": os.environ.get("POSTGRES_PASSWORD", "shipyard"),
            "HOST": os.environ["POSTGRES_HOST"],
            "PORT": os.environ.get("POSTGRES_PORT", "5432"),
        }
    }
else:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": os.environ.get("SHIPYARD_SQLITE_PATH", str(BASE_DIR / "db.sqlite3")),
        }
    }

LOGIN_REDIRECT_URL = "/admin/"
LOGOUT_REDIRECT_URL = "/"

LANGUAGE_CODE = "en-us"
TIME_ZONE = os.environ.get("DJANGO_TIME_ZONE", "UTC")
USE_I18N = True
USE_TZ = True

STATIC_URL = "/static/"
STATIC_ROOT = BASE_DIR / "staticfiles"

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "plain": {"format": "%(asctime)s %(levelname)s %(name)s %(message)s"},
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "plain"},
    },
    "root": {"handlers": ["console"], "level": os.environ.get("SHIPYARD_LOG_LEVEL", "INFO").upper()},
    "loggers": {
        "django": {"handlers": ["console"], "level": "WARNING", "propagate": False},
    },
}

# Orchestrator

# redis: rq queue, inprocess: thread pool, eager: run in the caller.
SHIPYARD_ASYNC_JOBS_MODE = os.environ.get("SHIPYARD_ASYNC_JOBS_MODE", "").strip().lower() or (
    "inprocess" if DEBUG else "redis"
)
SHIPYARD_JOBS_REDIS_URL = os.environ.get("SHIPYARD_JOBS_REDIS_URL", "redis://redis:6379/0")
SHIPYARD_JOBS_QUEUE = os.environ.get("SHIPYARD_JOBS_QUEUE", "default")
# memory | redis; backs the overlap locks and the per-host progress channel.
SHIPYARD_COORDINATION_BACKEND = os.environ.get("SHIPYARD_COORDINATION_BACKEND", "redis").strip().lower()

SHIPYARD_INSTALLER_TIMEOUT = int(os.environ.get("SHIPYARD_INSTALLER_TIMEOUT", "600"))
SHIPYARD_COMMAND_TIMEOUT = int(os.environ.get("SHIPYARD_COMMAND_TIMEOUT", "300"))
SHIPYARD_BOOTSTRAP_STEP_TIMEOUT = int(os.environ.get("SHIPYARD_BOOTSTRAP_STEP_TIMEOUT", "1800"))
SHIPYARD_DEPLOY_TIMEOUT = int(os.environ.get("SHIPYARD_DEPLOY_TIMEOUT", "900"))
SHIPYARD_DEPLOY_KEEP_RELEASES = int(os.environ.get("SHIPYARD_DEPLOY_KEEP_RELEASES", "5"))
SHIPYARD_SITE_COMMAND_TIMEOUT = int(os.environ.get("SHIPYARD_SITE_COMMAND_TIMEOUT", "120"))
SHIPYARD_SSH_CONNECT_TIMEOUT = int(os.environ.get("SHIPYARD_SSH_CONNECT_TIMEOUT", "10"))

SHIPYARD_APP_USER = os.environ.get("SHIPYARD_APP_USER", "shipyard")
SHIPYARD_DEFAULT_RUNTIME_VERSION = os.environ.get("SHIPYARD_DEFAULT_RUNTIME_VERSION", "8.3")

SHIPYARD_TASK_DEFAULT_TIMEOUT = int(os.environ.get("SHIPYARD_TASK_DEFAULT_TIMEOUT", "300"))
SHIPYARD_TASK_MAX_TIMEOUT = int(os.environ.get("SHIPYARD_TASK_MAX_TIMEOUT", "3600"))
SHIPYARD_MAX_TASKS_PER_HOST = int(os.environ.get("SHIPYARD_MAX_TASKS_PER_HOST", "50"))
SHIPYARD_TASK_RUN_RETENTION_DAYS = int(os.environ.get("SHIPYARD_TASK_RUN_RETENTION_DAYS", "90"))
