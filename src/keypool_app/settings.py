import logging
import os

from keypool_library.clock import DEFAULT_QUOTA_TIMEZONE


DEFAULT_ADMIN_API_KEY = "change-me-admin-key"
DEFAULT_UPSTREAM_TIMEOUT_SECONDS = 30.0


class SettingsValidationError(RuntimeError):
    pass


def parse_bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def get_app_env() -> str:
    value = (os.getenv("APP_ENV") or "dev").strip().lower()
    if value in {"prod", "production"}:
        return "prod"
    return "dev"


def is_prod() -> bool:
    return get_app_env() == "prod"


def allow_insecure_defaults() -> bool:
    default = not is_prod()
    return parse_bool_env("ALLOW_INSECURE_DEFAULTS", default)


def get_admin_api_key() -> str:
    return (os.getenv("ADMIN_API_KEY") or "").strip() or DEFAULT_ADMIN_API_KEY


def get_gateway_directive() -> str | None:
    return os.getenv("CF_GATEWAY")


def get_quota_timezone() -> str:
    return (os.getenv("QUOTA_TIMEZONE") or "").strip() or DEFAULT_QUOTA_TIMEZONE


def get_upstream_timeout_seconds() -> float:
    raw = os.getenv("UPSTREAM_TIMEOUT_SECONDS", str(DEFAULT_UPSTREAM_TIMEOUT_SECONDS))
    try:
        timeout = float(raw)
    except ValueError:
        timeout = DEFAULT_UPSTREAM_TIMEOUT_SECONDS
    return max(1.0, timeout)


def validate_settings() -> None:
    if allow_insecure_defaults():
        if get_admin_api_key() == DEFAULT_ADMIN_API_KEY:
            logging.warning(
                "SECURITY WARNING: ADMIN_API_KEY is using default value. "
                "Set ADMIN_API_KEY for non-local usage."
            )
        return

    if get_admin_api_key() == DEFAULT_ADMIN_API_KEY:
        raise SettingsValidationError(
            "Refusing startup due to insecure defaults: ADMIN_API_KEY is missing "
            "or default. Set ADMIN_API_KEY or ALLOW_INSECURE_DEFAULTS=true explicitly."
        )
