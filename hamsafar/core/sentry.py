"""Sentry error tracking for the dispatcher.

Enabled only when SENTRY_DSN is set. Gemini authenticates with a `key`
query parameter, so every event is scrubbed of it before it is sent.
"""

import logging
import re

from hamsafar.core.config import Settings, settings

logger = logging.getLogger(__name__)

_KEY_PARAM = re.compile(r"((?:^|[?&])key=)[^&#\s]+")


def _redact(value):
    if isinstance(value, str):
        return _KEY_PARAM.sub(r"\1[Filtered]", value)
    return value


def scrub_api_key(event: dict, hint: dict | None = None) -> dict:
    """before_send hook: redact `key=` in request and breadcrumb URLs."""
    request = event.get("request")
    if request:
        for field in ("url", "query_string"):
            if field in request:
                request[field] = _redact(request[field])

    for crumb in (event.get("breadcrumbs") or {}).get("values", []):
        data = crumb.get("data") or {}
        for field in ("url", "http.query"):
            if field in data:
                data[field] = _redact(data[field])
    return event


def init_sentry(cfg: Settings | None = None) -> bool:
    """Initialize Sentry if SENTRY_DSN is configured. Returns True if enabled."""
    cfg = cfg or settings
    if not cfg.sentry_dsn:
        logger.debug("Sentry DSN not configured, skipping")
        return False

    import sentry_sdk
    from sentry_sdk.integrations.asyncio import AsyncioIntegration
    from sentry_sdk.integrations.httpx import HttpxIntegration

    sentry_sdk.init(
        dsn=cfg.sentry_dsn,
        environment=cfg.app_env,
        traces_sample_rate=0.1 if cfg.app_env == "production" else 1.0,
        send_default_pii=False,
        before_send=scrub_api_key,
        integrations=[AsyncioIntegration(), HttpxIntegration()],
    )
    sentry_sdk.set_tag("dispatch_policy", cfg.dispatch_policy.value)
    sentry_sdk.set_tag("gemini_model", cfg.gemini_model)
    logger.info("Sentry initialized (env=%s, policy=%s)", cfg.app_env, cfg.dispatch_policy.value)
    return True
