"""
Ledger Reconciliation - Sentry Integration

Error tracking for failed reconciliation runs, payable sweeps and API errors.

Events never carry ledger contents: transaction lists in request bodies are
reduced to their length, and gateway credentials and payer contact details
are redacted wherever they appear.
"""

import logging
from typing import Any, Dict, Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

logger = logging.getLogger(__name__)

SENSITIVE_KEYS = (
    "password", "token", "secret", "api_key", "authorization",
    "consumer_key", "payer_phone", "payer_email", "cookie",
)

# Request fields holding whole ledgers
LEDGER_FIELDS = ("app_transactions", "gateway_transactions")


def init_sentry(
    dsn: str,
    environment: str = "development",
    release: Optional[str] = None,
    traces_sample_rate: float = 0.1,
) -> bool:
    """
    Initialize Sentry error tracking.

    Returns:
        True if Sentry was initialized, False otherwise
    """
    if not dsn:
        logger.info("Sentry DSN not configured. Error tracking disabled.")
        return False

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            release=release,
            traces_sample_rate=traces_sample_rate,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                SqlalchemyIntegration(),
                LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
            ],
            send_default_pii=False,
            before_send=filter_sensitive_data,
            ignore_errors=[ConnectionResetError, BrokenPipeError],
        )
    except Exception as e:
        logger.error(f"Failed to initialize Sentry: {e}")
        return False

    logger.info(f"Sentry initialized for environment: {environment}")
    return True


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        redacted = {}
        for key, item in value.items():
            key_lower = str(key).lower()
            if any(s in key_lower for s in SENSITIVE_KEYS):
                redacted[key] = "[REDACTED]"
            elif key in LEDGER_FIELDS and isinstance(item, list):
                redacted[key] = f"[{len(item)} transactions]"
            else:
                redacted[key] = _redact(item)
        return redacted
    if isinstance(value, list):
        return [_redact(item) for item in value]
    return value


def filter_sensitive_data(event: Dict[str, Any], hint: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    before_send hook: strip credentials, payer details and ledger contents.
    """
    request = event.get("request")
    if isinstance(request, dict):
        for part in ("headers", "data"):
            if part in request:
                request[part] = _redact(request[part])

    if "extra" in event:
        event["extra"] = _redact(event["extra"])

    return event


def capture_exception(exception: Exception, **context) -> Optional[str]:
    """
    Capture an exception with extra context.

    Returns:
        Event ID if captured, None otherwise
    """
    try:
        with sentry_sdk.new_scope() as scope:
            for key, value in context.items():
                scope.set_extra(key, value)
            return sentry_sdk.capture_exception(exception)
    except Exception as e:
        logger.error(f"Failed to capture exception to Sentry: {e}")
        return None


def capture_run_failure(exception: Exception, run_id: str, scope: Optional[str] = None) -> Optional[str]:
    """
    Capture the error that failed a reconciliation run.

    The run id and scope become tags so that all failures of one run, or of
    one county, group together.
    """
    try:
        with sentry_sdk.new_scope() as sentry_scope:
            sentry_scope.set_tag("reconciliation.run_id", run_id)
            if scope:
                sentry_scope.set_tag("reconciliation.scope", scope)
            sentry_scope.set_extra("error_type", type(exception).__name__)
            return sentry_sdk.capture_exception(exception)
    except Exception as e:
        logger.error(f"Failed to capture run failure to Sentry: {e}")
        return None


def add_gateway_breadcrumb(method: str, path: str, status_code: Optional[int] = None, attempt: int = 1):
    """Record a payment gateway call on the current scope."""
    sentry_sdk.add_breadcrumb(
        category="gateway",
        message=f"{method} {path}",
        level="warning" if status_code is None or status_code >= 400 else "info",
        data={"status_code": status_code, "attempt": attempt},
    )
