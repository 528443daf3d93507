from __future__ import annotations

import time
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta

import requests

from app.audit_log import LifecycleAuditLog
from app.clock import utcnow
from app.dispatch import DispatchService
from app.drift import DriftRecorder
from app.event_notifier import EventNotifier
from app.github_client import GithubClient, TtlCache
from app.github_metrics import GithubMetrics
from app.idempotency import CreateIdempotencyLedger
from app.intake import RequestIntake
from app.object_storage import ObjectStorageBackend, create_object_storage_from_env
from app.rate_limit_state import RateLimitMarkers
from app.reconcile import ReconcileService
from app.requests_store import RequestDocumentStore
from app.run_index import DeliveryLedger, PrIndex, RunIndex
from app.run_output import RunOutputService
from app.run_resolver import RunResolver
from app.settings import ReconcilerSettings
from app.webhooks import WebhookService


class Services:
    """Every stateful collaborator of the app, built once per process and injected.

    The rate-limit cache, metrics and event buffer live here instead of in
    module globals, so tests and multiple app instances never share them by
    accident.
    """

    def __init__(
        self,
        *,
        settings: ReconcilerSettings,
        storage: ObjectStorageBackend,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self.storage = storage
        self.session = session or requests.Session()
        self._sleep = sleep
        self.metrics = GithubMetrics(clock=clock)
        self.cache = TtlCache()
        self.notifier = EventNotifier(max_events=settings.event_buffer_size)
        self.create_ledger = CreateIdempotencyLedger()
        self.store = RequestDocumentStore(storage=storage, clock=clock)
        self.run_index = RunIndex(
            storage=storage,
            retention=timedelta(days=settings.run_index_retention_days),
            clock=clock,
        )
        self.pr_index = PrIndex(storage=storage, clock=clock)
        self.deliveries = DeliveryLedger(storage=storage, clock=clock)
        self.markers = RateLimitMarkers(storage=storage, clock=clock)
        self.audit = LifecycleAuditLog(storage=storage, clock=clock)
        self.intake = RequestIntake(
            store=self.store,
            settings=settings,
            audit=self.audit,
            notifier=self.notifier,
            clock=clock,
        )
        self.dispatcher = DispatchService(
            store=self.store,
            settings=settings,
            github_for=self.github_for,
            resolver_for=self.resolver_for,
            audit=self.audit,
            notifier=self.notifier,
            clock=clock,
        )
        self.webhooks = WebhookService(
            secret=settings.github_webhook_secret,
            store=self.store,
            run_index=self.run_index,
            pr_index=self.pr_index,
            deliveries=self.deliveries,
            dispatcher=self.dispatcher,
            audit=self.audit,
            notifier=self.notifier,
        )
        self.reconciler = ReconcileService(
            store=self.store,
            settings=settings,
            github_for=self.github_for,
            resolver_for=self.resolver_for,
            markers=self.markers,
            dispatcher=self.dispatcher,
            notifier=self.notifier,
            clock=clock,
        )
        self.drift = DriftRecorder(store=self.store, audit=self.audit, notifier=self.notifier, clock=clock)
        self.run_output = RunOutputService(store=self.store, settings=settings, github_for=self.github_for)

    def github_for(self, token: str | None = None) -> GithubClient:
        return GithubClient(
            token=token or self.settings.github_token,
            api_base=self.settings.github_api_base,
            session=self.session,
            cache=self.cache,
            metrics=self.metrics,
            max_wait_seconds=self.settings.rate_limit_max_wait_seconds,
            sleep=self._sleep,
        )

    def resolver_for(self, github: GithubClient) -> RunResolver:
        return RunResolver(github=github, run_index=self.run_index, sleep=self._sleep)


def create_services_from_env(environ: Mapping[str, str] | None = None) -> Services:
    return Services(
        settings=ReconcilerSettings.from_env(environ),
        storage=create_object_storage_from_env(dict(environ) if environ is not None else None),
    )
