"""Settings loaded from an INI file with ``QR_*`` environment fallbacks."""

from __future__ import annotations

import configparser
import os
from pathlib import Path
from typing import Callable, NamedTuple


class _Reader(NamedTuple):
    get: Callable[..., str | None]
    get_int: Callable[..., int | None]
    get_bool: Callable[..., bool | None]
    get_float: Callable[..., float | None]


def _reader(config_path: str | os.PathLike | None = None) -> _Reader:
    path = Path(config_path or os.getenv("QR_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    parser.read(path)

    def get(section: str, option: str, fallback: str | None = None) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return fallback

    def get_int(section: str, option: str, fallback: str | None = None, default: int | None = None) -> int | None:
        value = get(section, option, fallback)
        if value is None or str(value).strip() == "":
            return default
        return int(value)

    def get_bool(section: str, option: str, fallback: str | None = None, default: bool | None = None) -> bool | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        normalized = str(value).strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
        return default

    def get_float(section: str, option: str, fallback: str | None = None, default: float | None = None) -> float | None:
        value = get(section, option, fallback)
        if value is None or str(value).strip() == "":
            return default
        return float(value)

    return _Reader(get, get_int, get_bool, get_float)


def _blank_to_none(value: str | None) -> str | None:
    if isinstance(value, str):
        return value.strip() or None
    return value


def load_settings(config_path: str | os.PathLike | None = None) -> dict[str, object]:
    """
    Load the relay configuration from an INI file (default: config.ini) with
    environment variables as fallbacks.

    Environment variables (all prefixed with QR_):
      QR_CONFIG - Path to config.ini file (default: config.ini)
      QR_DB_PATH - Database path (default: /data/db.sqlite)
      QR_DATA_DIR - Attachments and JSON configuration directory (default: /data)
      QR_HOST / QR_PORT - Control API bind address (default: 0.0.0.0:8000)
      QR_API_TOKEN - Control API token
      QR_SMTP_ENABLED / QR_SMTP_HOST / QR_SMTP_PORT - SMTP listener (default: on, 0.0.0.0:2525)
      QR_WEBHOOK_URL - Delivery target
      QR_WEBHOOK_TIMEOUT - Delivery timeout in seconds (default: 15)
      QR_POLL_INTERVAL - Dispatch interval in seconds (default: 1.5)
      QR_BATCH_SIZE - Jobs claimed per tick (default: 10)
      QR_BACKOFF_BASE / QR_BACKOFF_MAX - Retry delay bounds in seconds (default: 1 / 3600)
      QR_MAX_ATTEMPTS - Attempts before a job is parked in error (default: unbounded)
      QR_DELETE_ON_SUCCESS - Delete delivered jobs (default: True)
      QR_MAILBOX_ENABLED, QR_MAILBOX, QR_MAILBOX_FOLDER, QR_MAILBOX_FETCH_LIMIT - Mailbox poller
      QR_GRAPH_TENANT_ID, QR_GRAPH_CLIENT_ID, QR_GRAPH_CLIENT_SECRET - Microsoft Graph credentials
      QR_LOG_LEVEL - Logging level (default: INFO)
      QR_LOG_DIR - Directory for daily log files (default: disabled)
      QR_LOG_DELIVERY_ACTIVITY - Log every delivery attempt at INFO (default: False)
      QR_TEST_MODE - Disable the timer, ticks only run on demand (default: False)

    Config file sections/keys:
      [storage] db_path, data_dir
      [server] host, port, api_token
      [smtp] enabled, host, port
      [delivery] webhook_url, webhook_timeout_seconds, poll_interval_seconds, batch_size,
                 backoff_base_seconds, backoff_max_seconds, max_attempts, delete_on_success, test_mode
      [mailbox] enabled, mailbox, folder, fetch_limit
      [graph] tenant_id, client_id, client_secret
      [logging] level, log_dir, delivery_activity
    """
    r = _reader(config_path)

    settings = {
        "db_path": r.get("storage", "db_path", os.getenv("QR_DB_PATH", "/data/db.sqlite")),
        "data_dir": r.get("storage", "data_dir", os.getenv("QR_DATA_DIR", "/data")),
        "http_host": r.get("server", "host", os.getenv("QR_HOST", "0.0.0.0")),
        "http_port": r.get_int("server", "port", os.getenv("QR_PORT", "8000")),
        "api_token": r.get("server", "api_token", os.getenv("QR_API_TOKEN")),
        "smtp_enabled": r.get_bool("smtp", "enabled", os.getenv("QR_SMTP_ENABLED"), True),
        "smtp_host": r.get("smtp", "host", os.getenv("QR_SMTP_HOST", "0.0.0.0")),
        "smtp_port": r.get_int("smtp", "port", os.getenv("QR_SMTP_PORT", "2525")),
        "webhook_url": r.get(
            "delivery", "webhook_url", os.getenv("QR_WEBHOOK_URL", "http://webhook:3000/webhook/email")
        ),
        "webhook_timeout": r.get_float(
            "delivery", "webhook_timeout_seconds", os.getenv("QR_WEBHOOK_TIMEOUT"), default=15.0
        ),
        "poll_interval": r.get_float("delivery", "poll_interval_seconds", os.getenv("QR_POLL_INTERVAL"), default=1.5),
        "batch_size": r.get_int("delivery", "batch_size", os.getenv("QR_BATCH_SIZE"), default=10),
        "backoff_base": r.get_float("delivery", "backoff_base_seconds", os.getenv("QR_BACKOFF_BASE"), default=1.0),
        "backoff_max": r.get_float("delivery", "backoff_max_seconds", os.getenv("QR_BACKOFF_MAX"), default=3600.0),
        "max_attempts": r.get_int("delivery", "max_attempts", os.getenv("QR_MAX_ATTEMPTS")),
        "delete_on_success": r.get_bool(
            "delivery", "delete_on_success", os.getenv("QR_DELETE_ON_SUCCESS"), default=True
        ),
        "test_mode": r.get_bool("delivery", "test_mode", os.getenv("QR_TEST_MODE"), False),
        "mailbox_enabled": r.get_bool("mailbox", "enabled", os.getenv("QR_MAILBOX_ENABLED"), False),
        "mailbox": r.get("mailbox", "mailbox", os.getenv("QR_MAILBOX")),
        "mailbox_folder": r.get("mailbox", "folder", os.getenv("QR_MAILBOX_FOLDER", "Inbox")),
        "mailbox_fetch_limit": r.get_int("mailbox", "fetch_limit", os.getenv("QR_MAILBOX_FETCH_LIMIT"), default=10),
        "graph_tenant_id": r.get("graph", "tenant_id", os.getenv("QR_GRAPH_TENANT_ID")),
        "graph_client_id": r.get("graph", "client_id", os.getenv("QR_GRAPH_CLIENT_ID")),
        "graph_client_secret": r.get("graph", "client_secret", os.getenv("QR_GRAPH_CLIENT_SECRET")),
        "log_level": r.get("logging", "level", os.getenv("QR_LOG_LEVEL", "INFO")),
        "log_dir": r.get("logging", "log_dir", os.getenv("QR_LOG_DIR")),
        "log_delivery_activity": r.get_bool(
            "logging",
            "delivery_activity",
            os.getenv("QR_LOG_DELIVERY_ACTIVITY"),
            default=False,
        ),
    }

    for key in ("db_path", "data_dir", "log_dir"):
        value = settings[key]
        if isinstance(value, str):
            settings[key] = os.path.expanduser(value)
    for key in ("api_token", "mailbox", "graph_tenant_id", "graph_client_id", "graph_client_secret", "log_dir"):
        settings[key] = _blank_to_none(settings[key])
    return settings


def load_webhook_settings(config_path: str | os.PathLike | None = None) -> dict[str, object]:
    """
    Load the quote webhook configuration.

    Environment variables:
      QR_DATA_DIR - JSON configuration directory shared with the relay (default: /data)
      QR_WEBHOOK_HOST / QR_WEBHOOK_PORT - Bind address (default: 0.0.0.0:3000)
      QR_OPENAI_API_KEY / QR_OPENAI_MODEL - Extraction model (default: gpt-4o-mini)
      QR_PRINTIQ_BASE_URL, QR_PRINTIQ_USER, QR_PRINTIQ_PASSWORD,
      QR_PRINTIQ_APPNAME, QR_PRINTIQ_APPKEY - Pricing backend
      QR_REPLY_FROM - Mailbox used to send the reply
      QR_REPLY_TO_EMAIL - Fixed reply recipient (default: the original sender)
      QR_CUSTOMER_CODE - Customer code sent with every quote (default: C00014)
      QR_QUOTE_CONTACT_TITLE, QR_QUOTE_CONTACT_FIRST_NAME, QR_QUOTE_CONTACT_SURNAME,
      QR_QUOTE_CONTACT_EMAIL - Quote contact
      QR_REQUEST_TIMEOUT - Outbound request timeout in seconds (default: 10)
      QR_GRAPH_TENANT_ID, QR_GRAPH_CLIENT_ID, QR_GRAPH_CLIENT_SECRET - Microsoft Graph credentials

    Config file sections/keys:
      [storage] data_dir
      [webhook] host, port, reply_from, reply_to_email, customer_code, request_timeout_seconds
      [openai] api_key, model
      [printiq] base_url, user, password, app_name, app_key
      [quote_contact] title, first_name, surname, email
      [graph] tenant_id, client_id, client_secret
    """
    r = _reader(config_path)

    settings = {
        "data_dir": r.get("storage", "data_dir", os.getenv("QR_DATA_DIR", "/data")),
        "http_host": r.get("webhook", "host", os.getenv("QR_WEBHOOK_HOST", "0.0.0.0")),
        "http_port": r.get_int("webhook", "port", os.getenv("QR_WEBHOOK_PORT", "3000")),
        "openai_api_key": r.get("openai", "api_key", os.getenv("QR_OPENAI_API_KEY")),
        "openai_model": r.get("openai", "model", os.getenv("QR_OPENAI_MODEL", "gpt-4o-mini")),
        "printiq_base_url": r.get("printiq", "base_url", os.getenv("QR_PRINTIQ_BASE_URL")),
        "printiq_user": r.get("printiq", "user", os.getenv("QR_PRINTIQ_USER")),
        "printiq_password": r.get("printiq", "password", os.getenv("QR_PRINTIQ_PASSWORD")),
        "printiq_app_name": r.get("printiq", "app_name", os.getenv("QR_PRINTIQ_APPNAME")),
        "printiq_app_key": r.get("printiq", "app_key", os.getenv("QR_PRINTIQ_APPKEY")),
        "reply_from": r.get("webhook", "reply_from", os.getenv("QR_REPLY_FROM")),
        "reply_to_email": r.get("webhook", "reply_to_email", os.getenv("QR_REPLY_TO_EMAIL")),
        "customer_code": r.get("webhook", "customer_code", os.getenv("QR_CUSTOMER_CODE", "C00014")),
        "request_timeout": r.get_float(
            "webhook", "request_timeout_seconds", os.getenv("QR_REQUEST_TIMEOUT"), default=10.0
        ),
        "quote_contact": {
            "Title": r.get("quote_contact", "title", os.getenv("QR_QUOTE_CONTACT_TITLE")),
            "FirstName": r.get("quote_contact", "first_name", os.getenv("QR_QUOTE_CONTACT_FIRST_NAME")),
            "Surname": r.get("quote_contact", "surname", os.getenv("QR_QUOTE_CONTACT_SURNAME")),
            "Email": r.get("quote_contact", "email", os.getenv("QR_QUOTE_CONTACT_EMAIL")),
        },
        "graph_tenant_id": r.get("graph", "tenant_id", os.getenv("QR_GRAPH_TENANT_ID")),
        "graph_client_id": r.get("graph", "client_id", os.getenv("QR_GRAPH_CLIENT_ID")),
        "graph_client_secret": r.get("graph", "client_secret", os.getenv("QR_GRAPH_CLIENT_SECRET")),
    }

    if isinstance(settings["data_dir"], str):
        settings["data_dir"] = os.path.expanduser(settings["data_dir"])
    for key in ("openai_api_key", "reply_from", "reply_to_email", "graph_tenant_id", "graph_client_id", "graph_client_secret"):
        settings[key] = _blank_to_none(settings[key])
    return settings
