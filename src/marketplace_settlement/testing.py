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

"""Shared helpers for the settlement server tests."""

import asyncio
import collections
import os
from typing import Any, Awaitable, Callable, Optional, TypeVar

from absl.testing import absltest
from marketplace_settlement import db
from marketplace_settlement.config import Settings
from marketplace_settlement.enums import RateSource
from marketplace_settlement.models import Buyer
from marketplace_settlement.models import CartLine
from marketplace_settlement.models import ShippingAddress
from marketplace_settlement.models import ShippingQuote
from marketplace_settlement.services.credential_manager import CredentialManager
from marketplace_settlement.services.credential_manager import KeyedLocks
from marketplace_settlement.services.fulfillment_handoff import FulfillmentHandoff
from marketplace_settlement.services.ledger import TransactionLedger
from marketplace_settlement.services.payment_splitter import PaymentSplitter
from marketplace_settlement.services.rate_aggregator import RateAggregator
from marketplace_settlement.services.settlement_processor import SettlementProcessor
from sqlalchemy.ext.asyncio import AsyncSession

T = TypeVar("T")

Services = collections.namedtuple(
    "Services",
    ["ledger", "credentials", "rates", "splitter", "handoff", "settlement"],
)


def make_settings(database_url: str, **overrides: Any) -> Settings:
  """Settings with no real waits and a platform token configured."""
  values = {
      "database_url": database_url,
      "processor_access_token": "platform-token",
      "processor_client_id": "marketplace-app",
      "processor_client_secret": "app-secret",
      "oauth_redirect_uri": "https://settlement.example/oauth/callback",
      "public_base_url": "https://settlement.example",
      "buyer_return_url": "https://marketplace.example/payment",
      "dashboard_url": "https://marketplace.example/dashboard",
      "rate_poll_initial_delay": 0.0,
      "rate_poll_interval": 0.0,
      "http_retry_backoff": 0.0,
  }
  values.update(overrides)
  return Settings(**values)


def build_services(
    session: AsyncSession,
    settings: Settings,
    processor,
    storefront,
    locks: Optional[KeyedLocks] = None,
) -> Services:
  """Wires the services the same way the request dependencies do."""
  ledger = TransactionLedger(session, settings.currency)
  credentials = CredentialManager(
      session, processor, settings, locks or KeyedLocks()
  )
  handoff = FulfillmentHandoff(
      session, storefront, claim_timeout=settings.handoff_claim_timeout
  )
  return Services(
      ledger=ledger,
      credentials=credentials,
      rates=RateAggregator(session, storefront, settings),
      splitter=PaymentSplitter(
          session, processor, credentials, ledger, settings
      ),
      handoff=handoff,
      settlement=SettlementProcessor(
          session, processor, credentials, ledger, handoff, settings
      ),
  )


async def seed_store(
    session: AsyncSession,
    domain: str,
    name: Optional[str] = None,
    storefront_token: Optional[str] = "storefront-token",
    admin_token: Optional[str] = "admin-token",
    collector_id: Optional[str] = None,
    commission_rate: float = 0.0,
    access_token: Optional[str] = None,
    expires_at: Optional[str] = None,
) -> db.Store:
  """Registers a storefront and, with an access token, its processor grant."""
  store = await db.save_store(
      session,
      domain,
      name or domain,
      storefront_token=storefront_token,
      admin_token=admin_token,
  )
  if access_token:
    await db.save_credential(
        session,
        domain,
        {
            "access_token": access_token,
            "refresh_token": f"refresh-{domain}",
            "collector_id": collector_id,
            "commission_rate": commission_rate,
            "expires_at": expires_at,
        },
    )
  await session.commit()
  return store


def cart_line(
    store_id: str,
    unit_price: int,
    quantity: int = 1,
    product_id: Optional[str] = None,
    title: Optional[str] = None,
    variant_id: str = "gid://shop/ProductVariant/4001",
) -> CartLine:
  product_id = product_id or f"prod-{store_id}-{unit_price}"
  return CartLine(
      product_id=product_id,
      variant_id=variant_id,
      title=title or f"Item from {store_id}",
      unit_price=unit_price,
      quantity=quantity,
      store_id=store_id,
  )


def buyer() -> Buyer:
  return Buyer(name="Ana Rojas", email="ana@example.com", phone="+56911112222")


def address(
    region: str = "Región Metropolitana de Santiago", city: str = "Providencia"
) -> ShippingAddress:
  return ShippingAddress(
      street="Av. Providencia 1234",
      city=city,
      region=region,
      postal_code="7500000",
  )


def quote(price: int, title: str = "Courier") -> ShippingQuote:
  return ShippingQuote(
      id="courier",
      title=title,
      price=price,
      code="COURIER",
      source=RateSource.STATIC,
  )


class DatabaseTestCase(absltest.TestCase):
  """Test case with a temporary ledger database and async helpers.

  Each scenario runs inside a single event loop that also owns the engine, so
  aiosqlite connections never cross loops.
  """

  def setUp(self) -> None:
    super().setUp()
    self.test_dir = self.create_tempdir().full_path
    self.database_url = (
        f"sqlite+aiosqlite:///{os.path.join(self.test_dir, 'ledger.db')}"
    )
    self.settings = make_settings(self.database_url)

  def run_manager(
      self, scenario: Callable[[db.DatabaseManager], Awaitable[T]]
  ) -> T:
    async def runner() -> T:
      manager = db.DatabaseManager()
      await manager.init_db(self.database_url)
      try:
        return await scenario(manager)
      finally:
        await manager.close()

    return asyncio.run(runner())

  def run_db(self, scenario: Callable[[AsyncSession], Awaitable[T]]) -> T:
    async def with_session(manager: db.DatabaseManager) -> T:
      async with manager.session_factory() as session:
        return await scenario(session)

    return self.run_manager(with_session)
