#   Copyright 2026 UCP Authors
#
#   Licensed under the Apache License, Version 2.0 (the "License");
#   you may not use this file except in compliance with the License.
#   You may obtain a copy of the License at
#
#       http://www.apache.org/licenses/LICENSE-2.0
#
#   Unless required by applicable law or agreed to in writing, software
#   distributed under the License is distributed on an "AS IS" BASIS,
#   WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
#   See the License for the specific language governing permissions and
#   limitations under the License.

"""Rate aggregator for calculating per-storefront shipping options.

Each storefront is quoted independently and concurrently, trying three tiers
in order:

1. realtime: the storefront's live cart rates.
2. static: the zone table configured in the marketplace dashboard, then the
   storefront platform's own shipping zones.
3. default: a flat marketplace rate, only for subtotals up to the ceiling.

A storefront that fails every tier gets an error entry; the other storefronts
are still quoted.
"""

import asyncio
import logging
import math
from typing import Any, Dict, List, Optional, Tuple
import unicodedata

from marketplace_settlement import db
from marketplace_settlement.config import Settings
from marketplace_settlement.enums import RateSource
from marketplace_settlement.exceptions import MarketplaceError
from marketplace_settlement.exceptions import RateUnavailableError
from marketplace_settlement.exceptions import ResourceNotFoundError
from marketplace_settlement.exceptions import StorefrontError
from marketplace_settlement.identifiers import group_by_store
from marketplace_settlement.models import CartLine
from marketplace_settlement.models import ShippingAddress
from marketplace_settlement.models import ShippingQuote
from marketplace_settlement.models import ShippingQuoteResponse
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

PROVINCE_TO_REGION = {
    "region metropolitana de santiago": "RM",
    "santiago metropolitan": "RM",
    "santiago": "RM",
    "metropolitana": "RM",
    "valparaiso": "V",
    "biobio": "VIII",
    "bio bio": "VIII",
    "maule": "VII",
    "o'higgins": "VI",
    "araucania": "IX",
    "la araucania": "IX",
    "los lagos": "X",
    "los rios": "XIV",
    "coquimbo": "IV",
    "antofagasta": "II",
    "atacama": "III",
    "tarapaca": "I",
    "arica y parinacota": "XV",
    "aysen": "XI",
    "magallanes": "XII",
    "nuble": "XVI",
}


def fold(text: Optional[str]) -> str:
  """Lower-cases and strips accents so "Ñuñoa" matches "nunoa"."""
  decomposed = unicodedata.normalize("NFD", (text or "").strip().lower())
  return "".join(c for c in decomposed if not unicodedata.combining(c))


def region_code_for(province: str) -> str:
  return PROVINCE_TO_REGION.get(fold(province), province)


def _amount(value: Any) -> Optional[float]:
  """Parses a storefront amount, None when it is not a finite number."""
  try:
    amount = float(value or 0)
  except (TypeError, ValueError):
    return None
  return amount if math.isfinite(amount) else None


def _price(value: Any) -> Optional[int]:
  amount = _amount(value)
  return None if amount is None else int(round(amount))


class RateAggregator:
  """Service for quoting shipping per storefront."""

  def __init__(self, session: AsyncSession, storefront, settings: Settings):
    self.session = session
    self.storefront = storefront
    self.settings = settings

  async def quote(
      self, cart_lines: List[CartLine], address: ShippingAddress
  ) -> ShippingQuoteResponse:
    """Quotes every storefront in the cart.

    Args:
      cart_lines: Cart lines from any number of storefronts.
      address: Delivery address.

    Returns:
      Quotes per storefront key, plus an error per storefront that could not
      be quoted.
    """
    grouped = group_by_store(cart_lines, lambda line: line.store_id)
    stores = await db.get_stores(self.session, grouped.keys())
    # Static tables are read up front: the session is not shared across the
    # concurrent per-storefront lookups.
    zones = {
        key: await db.get_shipping_zones(self.session, key) for key in stores
    }

    results = await asyncio.gather(*[
        self._quote_store(key, stores.get(key), lines, address, zones.get(key))
        for key, lines in grouped.items()
    ])

    response = ShippingQuoteResponse()
    for key, quotes, error in results:
      if error is not None:
        response.errors[key] = error
      else:
        response.quotes[key] = quotes
    return response

  async def _quote_store(
      self,
      key: str,
      store: Optional[db.Store],
      lines: List[CartLine],
      address: ShippingAddress,
      zones: Optional[List[db.StoreShippingZone]],
  ) -> Tuple[str, List[ShippingQuote], Optional[str]]:
    try:
      if store is None or not store.active:
        raise ResourceNotFoundError(f"Unknown storefront {key}")
      try:
        quotes = await asyncio.wait_for(
            self.quote_store(store, lines, address, zones or []),
            timeout=self.settings.rate_store_timeout,
        )
      except asyncio.TimeoutError:
        logger.warning("Shipping quote of %s timed out", key)
        quotes = self.default_quotes(store, lines)
      return key, quotes, None
    except MarketplaceError as e:
      logger.warning("No shipping quote for %s: %s", key, e.message)
      return key, [], e.message
    except Exception:  # pylint: disable=broad-exception-caught
      logger.exception("Shipping quote of %s failed", key)
      return key, [], f"Shipping quote of {key} failed"

  async def quote_store(
      self,
      store: db.Store,
      lines: List[CartLine],
      address: ShippingAddress,
      zones: List[db.StoreShippingZone],
  ) -> List[ShippingQuote]:
    """Runs the tiers for a single storefront.

    Raises:
      RateUnavailableError: If no tier produced a rate and the subtotal is
        above the default-rate ceiling.
    """
    subtotal = sum(line.line_total for line in lines)

    if (
        store.storefront_token
        and subtotal >= self.settings.realtime_min_subtotal
    ):
      quotes = await self._realtime_quotes(store, lines, address)
      if quotes:
        return quotes

    quotes = self._zone_quotes(zones, address, subtotal)
    if quotes:
      return quotes

    if store.admin_token:
      quotes = await self._platform_zone_quotes(store, subtotal)
      if quotes:
        return quotes

    return self.default_quotes(store, lines)

  def default_quotes(
      self, store: db.Store, lines: List[CartLine]
  ) -> List[ShippingQuote]:
    """Returns the flat marketplace rate when the subtotal allows it.

    Raises:
      RateUnavailableError: If the subtotal is above the default-rate
        ceiling.
    """
    subtotal = sum(line.line_total for line in lines)
    if subtotal <= self.settings.default_shipping_ceiling:
      logger.info(
          "Using default rate for %s (subtotal %d)", store.domain, subtotal
      )
      return [
          ShippingQuote(
              id="default-standard",
              title=self.settings.default_shipping_title,
              price=self.settings.default_shipping_price,
              code="STANDARD",
              source=RateSource.DEFAULT,
          )
      ]
    raise RateUnavailableError(
        f"No shipping rate available for {store.domain} and subtotal"
        f" {subtotal} exceeds the default rate ceiling"
    )

  async def _realtime_quotes(
      self,
      store: db.Store,
      lines: List[CartLine],
      address: ShippingAddress,
  ) -> List[ShippingQuote]:
    cart = [
        {
            "merchandiseId": line.variant_id or line.product_id,
            "quantity": line.quantity,
        }
        for line in lines
    ]
    delivery_address = {
        "address1": address.street,
        "city": address.city,
        "province": address.region,
        "zip": address.postal_code,
        "country": address.country_code,
    }
    try:
      options = await asyncio.wait_for(
          self.storefront.cart_delivery_options(
              store.domain,
              store.storefront_token,
              cart,
              delivery_address,
              attempts=self.settings.rate_poll_attempts,
              initial_delay=self.settings.rate_poll_initial_delay,
              interval=self.settings.rate_poll_interval,
          ),
          timeout=self.settings.rate_realtime_timeout,
      )
    except asyncio.TimeoutError:
      logger.warning("Real-time rates of %s timed out", store.domain)
      return []
    except StorefrontError as e:
      logger.warning(
          "Real-time rates of %s failed: %s", store.domain, e.message
      )
      return []

    quotes = []
    for option in options:
      price = _price((option.get("estimatedCost") or {}).get("amount"))
      if price is None:
        logger.warning(
            "Skipping real-time rate %s of %s with unreadable price",
            option.get("handle"),
            store.domain,
        )
        continue
      quotes.append(
          ShippingQuote(
              id=option.get("handle"),
              title=option.get("title") or option.get("handle") or "Shipping",
              price=price,
              code=option.get("handle") or "custom",
              source=RateSource.REALTIME,
          )
      )
    return quotes

  def _zone_quotes(
      self,
      zones: List[db.StoreShippingZone],
      address: ShippingAddress,
      subtotal: int,
  ) -> List[ShippingQuote]:
    """Quotes from the zone table configured in the marketplace dashboard."""
    if not zones:
      return []

    region_code = region_code_for(address.region)
    zone = next(
        (
            z
            for z in zones
            if z.region_code in (region_code, address.region)
        ),
        zones[0],
    )

    price = zone.base_price
    city = fold(address.city)
    if city and zone.commune_prices:
      for commune, commune_price in zone.commune_prices.items():
        name = fold(commune)
        if name and (city in name or name in city):
          price = commune_price
          break

    threshold = zone.free_shipping_threshold
    if threshold and subtotal >= threshold:
      return [
          ShippingQuote(
              id="zone-free",
              title="Free shipping",
              price=0,
              code="FREE",
              source=RateSource.STATIC,
          )
      ]

    title = zone.title or self.settings.default_shipping_title
    if zone.estimated_delivery:
      title = f"{title} ({zone.estimated_delivery})"
    return [
        ShippingQuote(
            id=f"zone-{zone.region_code}",
            title=title,
            price=price,
            code=zone.region_code,
            source=RateSource.STATIC,
        )
    ]

  async def _platform_zone_quotes(
      self, store: db.Store, subtotal: int
  ) -> List[ShippingQuote]:
    """Quotes from the storefront platform's own shipping zones."""
    try:
      zones = await self.storefront.shipping_zones(
          store.domain, store.admin_token
      )
    except StorefrontError as e:
      logger.warning("Shipping zones of %s failed: %s", store.domain, e.message)
      return []

    rates: Dict[Tuple[str, int], ShippingQuote] = {}
    for zone in zones:
      price_based = zone.get("price_based_shipping_rates") or []
      for rate in price_based:
        price = _price(rate.get("price"))
        minimum = _amount(rate.get("min_order_subtotal"))
        raw_maximum = rate.get("max_order_subtotal")
        maximum = None if raw_maximum is None else _amount(raw_maximum)
        if price is None or minimum is None or (
            raw_maximum is not None and maximum is None
        ):
          logger.warning(
              "Skipping unreadable rate %s of %s", rate.get("id"), store.domain
          )
          continue
        if subtotal < minimum:
          continue
        if maximum is not None and subtotal > maximum:
          continue
        rates.setdefault(
            (rate.get("name"), price),
            ShippingQuote(
                id=f"platform-{rate.get('id')}",
                title=rate.get("name") or "Shipping",
                price=price,
                code=str(rate.get("id")),
                source=RateSource.STATIC,
            ),
        )
      if price_based:
        continue
      for rate in zone.get("weight_based_shipping_rates") or []:
        price = _price(rate.get("price"))
        if price is None:
          logger.warning(
              "Skipping unreadable rate %s of %s", rate.get("id"), store.domain
          )
          continue
        rates.setdefault(
            (rate.get("name"), price),
            ShippingQuote(
                id=f"platform-weight-{rate.get('id')}",
                title=rate.get("name") or "Shipping",
                price=price,
                code=str(rate.get("id")),
                source=RateSource.STATIC,
            ),
        )
    return sorted(rates.values(), key=lambda quote: quote.price)
