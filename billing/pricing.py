"""
Price Catalogue
Owner: CC2
Workstream: W2P1

Lists the provider prices behind each plan code for the Buy Now page.
Results are cached for a few minutes. The cache only ever holds prices;
subscription and entitlement state is always read from storage.
"""

import threading
from typing import Dict, Any

import stripe
from cachetools import TTLCache

from .config import BillingConfig, ProviderKind

CACHE_KEY = 'prices'


def _attr(obj, name, default=None):
    if obj is None:
        return default
    value = getattr(obj, name, default)
    return default if value is None else value


class PriceCatalogue:
    """
    Args:
        config: BillingConfig (provider, Stripe key, price map, cache TTL)
    """

    def __init__(self, config: BillingConfig):
        self.provider_kind = config.provider
        self.api_key = config.stripe_secret_key
        self.price_map = dict(config.stripe_price_map)
        self._cache = TTLCache(maxsize=1, ttl=config.price_cache_ttl_seconds)
        self._lock = threading.Lock()

    def list_prices(self, force_refresh: bool = False) -> Dict[str, Any]:
        """
        Get prices for every plan code in the price map.

        Args:
            force_refresh: Skip the cache

        Returns:
            {provider, prices[], warnings?}
        """
        with self._lock:
            if not force_refresh and CACHE_KEY in self._cache:
                return self._cache[CACHE_KEY]
            data = self._fetch()
            self._cache[CACHE_KEY] = data
            return data

    def _fetch(self) -> Dict[str, Any]:
        provider = 'stripe' if self.provider_kind == ProviderKind.STRIPE else 'fake'

        if provider != 'stripe' or not self.api_key or not self.price_map:
            print(f"[STRIPE] pricing_unavailable (stripe={bool(self.api_key)}, "
                  f"price_map={len(self.price_map)} entries)", flush=True)
            return {'provider': provider, 'prices': [], 'warnings': ['pricing_unavailable']}

        prices = []
        warnings = []
        for code, price_id in self.price_map.items():
            try:
                price = stripe.Price.retrieve(price_id, expand=['product'], api_key=self.api_key)
            except stripe.StripeError as e:
                print(f"[STRIPE] Failed to retrieve price for {code}: {e}", flush=True)
                warnings.append(f'price_fetch_failed:{code}')
                continue

            recurring = _attr(price, 'recurring')
            interval = _attr(recurring, 'interval')
            product = _attr(price, 'product')
            if isinstance(product, str):
                product = None  # not expanded

            prices.append({
                'code': code,
                'price_id': price_id,
                'currency': _attr(price, 'currency'),
                'unit_amount': _attr(price, 'unit_amount', 0),
                'interval': interval if interval in ('month', 'year') else None,
                'interval_count': _attr(recurring, 'interval_count'),
                'product_name': _attr(product, 'name'),
                'description': _attr(product, 'description'),
            })

        data = {'provider': provider, 'prices': prices}
        if warnings:
            data['warnings'] = warnings
        return data
