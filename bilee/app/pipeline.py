from dataclasses import dataclass

from .aggregates import AggregationEngine
from .config import Settings
from .lifecycle import SessionEventDispatcher, SessionLifecycleManager
from .receipts import ReceiptGenerator
from .retention import RetentionSweeper
from .security import build_signature_scheme
from .store import SessionStore
from .webhooks import WebhookVerifier


@dataclass
class Pipeline:
    store: SessionStore
    receipts: ReceiptGenerator
    aggregates: AggregationEngine
    lifecycle: SessionLifecycleManager
    dispatcher: SessionEventDispatcher
    sweeper: RetentionSweeper
    cfg: Settings

    def webhook_verifier(self) -> WebhookVerifier:
        # Built per call so a missing secret fails the request, not process startup.
        scheme = build_signature_scheme(self.cfg.webhook_signature_scheme, self.cfg.webhook_secret)
        return WebhookVerifier(self.store, scheme)


def build_pipeline(store: SessionStore, cfg: Settings) -> Pipeline:
    receipts = ReceiptGenerator(store)
    aggregates = AggregationEngine(store, default_timezone=cfg.merchant_timezone)
    lifecycle = SessionLifecycleManager(
        store,
        receipts,
        on_completed=aggregates.recompute_for_session if cfg.eager_aggregation else None,
    )
    dispatcher = SessionEventDispatcher([lifecycle.handle])
    sweeper = RetentionSweeper(
        store,
        retention_days=cfg.retention_days,
        batch_limit=cfg.sweep_batch_limit,
    )
    return Pipeline(
        store=store,
        receipts=receipts,
        aggregates=aggregates,
        lifecycle=lifecycle,
        dispatcher=dispatcher,
        sweeper=sweeper,
        cfg=cfg,
    )
