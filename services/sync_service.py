# services/sync_service.py
"""
The per-process service object handed to every sync run.

Construct one ``SyncContext`` at startup and pass it by reference; it owns
the session factory and the rate limiter shared by all API clients, so
every concurrent run draws from a single request budget.
"""
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from sqlalchemy.orm import Session, sessionmaker

import models
from config import Settings, settings as default_settings
from shopify_service import RateLimiter, ShopifyService
from utils import get_logger

logger = get_logger("sync")


@dataclass
class SyncContext:
    session_factory: Callable[[], Session]
    settings: Settings = field(default_factory=lambda: default_settings)
    rate_limiter: Optional[RateLimiter] = None
    sleep: Callable[[float], None] = time.sleep
    # integration -> API client; overridable in tests
    client_factory: Optional[Callable[[models.ShopifyIntegration], ShopifyService]] = None

    def __post_init__(self):
        if self.rate_limiter is None:
            self.rate_limiter = RateLimiter(
                self.settings.rate_limit_per_second,
                self.settings.rate_limit_burst,
                sleep=self.sleep,
            )

    def client_for(self, integration: models.ShopifyIntegration):
        if self.client_factory is not None:
            return self.client_factory(integration)
        return ShopifyService(
            store_url=integration.shop_domain,
            token=integration.access_token,
            api_version=self.settings.shopify_api_version,
            organization_id=integration.organization_id,
            rate_limiter=self.rate_limiter,
            max_retries=self.settings.max_retries,
            timeout=self.settings.http_timeout,
            sleep=self.sleep,
        )


def build_context(session_factory: Optional[sessionmaker] = None, app_settings: Optional[Settings] = None) -> SyncContext:
    if session_factory is None:
        from database import SessionLocal
        session_factory = SessionLocal
    return SyncContext(session_factory=session_factory, settings=app_settings or default_settings)


def run_sync_in_background(target_function, ctx: SyncContext, **kwargs):
    """
    Wrapper for FastAPI ``BackgroundTasks``: failures are already recorded on
    the job record by the target, so here they are only logged.
    """
    try:
        target_function(ctx, **kwargs)
    except Exception as e:
        logger.error("Background sync %s failed: %s", getattr(target_function, "__name__", target_function), e)
