"""
Billing Service Wiring
Owner: CC2
Workstream: W2P5

Builds every billing collaborator once at startup from BillingConfig.
"""

import sys
from dataclasses import dataclass

from .checkout import CheckoutWriter
from .config import BillingConfig
from .db import PostgresStore
from .enforce import EnforcementEvaluator
from .entitlements import EntitlementResolver
from .memory import MemoryStore
from .pricing import PriceCatalogue
from .providers import build_provider
from .reconciler import Reconciler


@dataclass
class BillingService:
    config: BillingConfig
    store: object
    provider: object
    checkout: CheckoutWriter
    reconciler: Reconciler
    resolver: EntitlementResolver
    evaluator: EnforcementEvaluator
    prices: PriceCatalogue


def build_store(config: BillingConfig):
    """PostgreSQL when DATABASE_URL is set, in-memory otherwise."""
    if config.database_url:
        print("[STARTUP] Billing store: PostgreSQL", file=sys.stderr)
        return PostgresStore(
            config.database_url,
            connect_timeout=config.db_connect_timeout,
            statement_timeout_ms=config.db_statement_timeout_ms,
        )
    print("[STARTUP] Billing store: in-memory (DATABASE_URL not set)", file=sys.stderr)
    return MemoryStore()


def build_service(config: BillingConfig, store=None, provider=None) -> BillingService:
    """
    Args:
        config: Loaded BillingConfig
        store: Optional store override (tests)
        provider: Optional provider override (tests)
    """
    store = store if store is not None else build_store(config)
    provider = provider if provider is not None else build_provider(config)
    resolver = EntitlementResolver(store)

    return BillingService(
        config=config,
        store=store,
        provider=provider,
        checkout=CheckoutWriter(store, provider),
        reconciler=Reconciler(store, provider, resolver),
        resolver=resolver,
        evaluator=EnforcementEvaluator(resolver, config.thresholds),
        prices=PriceCatalogue(config),
    )
