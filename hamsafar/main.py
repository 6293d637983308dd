"""Process startup: builds the shared dispatch core once and hands it out.

Chat handlers, health endpoints and other collaborators receive the
Dispatcher (and through it the ConversationStore) from here; nothing in
the core lives in a module-level global.
"""

import logging

from hamsafar.core.config import Settings, settings, validate_settings_for_production
from hamsafar.core.logging import setup_logging
from hamsafar.core.sentry import init_sentry
from hamsafar.gateway.conversation import ConversationStore
from hamsafar.gateway.dispatcher import Dispatcher
from hamsafar.gateway.rate_limiter import TokenBucket
from hamsafar.gateway.upstream import BaseUpstream, GeminiUpstream

logger = logging.getLogger(__name__)


def create_dispatcher(cfg: Settings | None = None, upstream: BaseUpstream | None = None) -> Dispatcher:
    """Configure logging and error tracking, then wire the dispatch core.

    Pass `upstream` to use a client other than Gemini; the API key check
    is skipped in that case.
    """
    cfg = cfg or settings
    setup_logging(cfg)
    init_sentry(cfg)

    if upstream is None:
        validate_settings_for_production(cfg)
        upstream = GeminiUpstream(
            api_key=cfg.gemini_api_key,
            model=cfg.gemini_model,
            api_base=cfg.gemini_api_base,
            timeout=cfg.upstream_timeout_seconds,
        )

    config = cfg.dispatch_config
    dispatcher = Dispatcher(
        upstream=upstream,
        bucket=TokenBucket(capacity=config.bucket_capacity, refill_rate=config.refill_rate),
        conversations=ConversationStore(history_limit=cfg.history_limit),
        config=config,
    )

    logger.info(
        "Dispatch core ready: policy=%s, bucket=%d @ %.2f/s, max_retries=%d, queue=%d",
        config.policy.value,
        config.bucket_capacity,
        config.refill_rate,
        config.max_retries,
        config.max_queue_depth,
    )
    return dispatcher
