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

"""Database management and persistence layer for the settlement server.

This module provides the schema definitions, engine and session management,
and asynchronous data access helpers used by the services. It uses SQLAlchemy
with SQLite (via aiosqlite) by default.

Key features include:
- `DatabaseManager`: Handles asynchronous engine initialization and session
  factory setup.
- WAL Mode: Enabled for file databases so webhook deliveries and checkout
  requests can write concurrently.
- Declarative Models: Storefront registry and credentials, static shipping
  zones, the transaction ledger, per-storefront payments, fulfillment orders
  and the webhook audit log.
- Data Access Helpers: Asynchronous CRUD helpers, including the conditional
  updates that keep payment transitions and transaction counters atomic.
"""

import datetime
import logging
from typing import Any
from typing import Dict
from typing import Iterable
from typing import List
from typing import Optional

from marketplace_settlement.enums import ACTIVE_FULFILLMENT_STATUSES
from marketplace_settlement.enums import FAILED_PAYMENT_STATUSES
from marketplace_settlement.enums import FulfillmentStatus
from marketplace_settlement.enums import StorePaymentStatus
from marketplace_settlement.enums import TERMINAL_TRANSACTION_STATUSES
from marketplace_settlement.enums import TransactionStatus
from sqlalchemy import Boolean
from sqlalchemy import case
from sqlalchemy import Column
from sqlalchemy import Float
from sqlalchemy import ForeignKey
from sqlalchemy import func
from sqlalchemy import Index
from sqlalchemy import Integer
from sqlalchemy import JSON
from sqlalchemy import select
from sqlalchemy import String
from sqlalchemy import text
from sqlalchemy import UniqueConstraint
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import sessionmaker

logger = logging.getLogger(__name__)

Base = declarative_base()


def utcnow() -> str:
  return datetime.datetime.now(datetime.timezone.utc).isoformat()


class DatabaseManager:
  """Manages the database engine and sessions without using global variables."""

  def __init__(self) -> None:
    self.engine: Optional[AsyncEngine] = None
    self.session_factory: Optional[sessionmaker] = None

  async def init_db(self, database_url: str) -> None:
    """Initializes the database engine and creates tables."""
    self.engine = create_async_engine(database_url, echo=False)

    if database_url.startswith("sqlite") and ":memory:" not in database_url:
      async with self.engine.connect() as conn:
        await conn.execute(text("PRAGMA journal_mode=WAL"))

    self.session_factory = sessionmaker(
        self.engine, expire_on_commit=False, class_=AsyncSession
    )

    async with self.engine.begin() as conn:
      await conn.run_sync(Base.metadata.create_all)

  async def close(self) -> None:
    """Closes the database engine."""
    if self.engine:
      await self.engine.dispose()


class Store(Base):
  __tablename__ = "stores"

  domain = Column(String, primary_key=True)  # Canonical storefront key
  name = Column(String)
  storefront_token = Column(String, nullable=True)  # Real-time rate reads
  admin_token = Column(String, nullable=True)  # Order system access
  active = Column(Boolean, default=True)


class StoreCredential(Base):
  __tablename__ = "store_credentials"

  store_domain = Column(String, ForeignKey("stores.domain"), primary_key=True)
  access_token = Column(String)
  refresh_token = Column(String, nullable=True)
  public_key = Column(String, nullable=True)
  collector_id = Column(String, nullable=True)
  account_email = Column(String, nullable=True)
  expires_at = Column(String, nullable=True)
  commission_rate = Column(Float, default=0.0)
  connected_at = Column(String)
  revoked_at = Column(String, nullable=True)
  updated_at = Column(String)


class StoreShippingZone(Base):
  __tablename__ = "store_shipping_zones"

  id = Column(Integer, primary_key=True, autoincrement=True)
  store_domain = Column(String, ForeignKey("stores.domain"), index=True)
  region_code = Column(String)  # e.g., 'RM', 'V'
  region_name = Column(String)
  base_price = Column(Integer)
  commune_prices = Column(JSON, nullable=True)  # {commune name: price}
  free_shipping_threshold = Column(Integer, nullable=True)
  title = Column(String, nullable=True)
  estimated_delivery = Column(String, nullable=True)
  active = Column(Boolean, default=True)


class Transaction(Base):
  __tablename__ = "transactions"

  id = Column(Integer, primary_key=True, autoincrement=True)
  buyer_name = Column(String)
  buyer_email = Column(String, index=True)
  buyer_phone = Column(String, nullable=True)
  shipping_address = Column(JSON)
  cart_lines = Column(JSON)  # Immutable snapshot taken at checkout
  shipping_selection = Column(JSON)  # {store key: selected quote}
  subtotal_amount = Column(Integer)
  shipping_amount = Column(Integer)
  total_amount = Column(Integer)
  currency = Column(String)
  payment_mode = Column(String, nullable=True)
  status = Column(String, default=TransactionStatus.PENDING.value)
  total_payments = Column(Integer, default=0)
  completed_payments = Column(Integer, default=0)
  failed_payments = Column(Integer, default=0)
  created_at = Column(String)
  updated_at = Column(String)
  finalized_at = Column(String, nullable=True)


class StorePayment(Base):
  __tablename__ = "store_payments"
  __table_args__ = (UniqueConstraint("transaction_id", "store_key"),)

  id = Column(Integer, primary_key=True, autoincrement=True)
  transaction_id = Column(Integer, ForeignKey("transactions.id"), index=True)
  store_key = Column(String)
  store_name = Column(String, nullable=True)
  gross_amount = Column(Integer)
  application_fee = Column(Integer, default=0)
  net_amount = Column(Integer)
  collector_id = Column(String, nullable=True)
  external_reference = Column(String)
  intent_id = Column(String, nullable=True)
  checkout_url = Column(String, nullable=True)
  processor_payment_id = Column(String, nullable=True)
  payment_method = Column(String, nullable=True)
  processor_fee_amount = Column(Integer, nullable=True)
  status = Column(String, default=StorePaymentStatus.PENDING.value)
  last_error = Column(String, nullable=True)
  store_order_id = Column(String, nullable=True)
  store_order_number = Column(String, nullable=True)
  paid_at = Column(String, nullable=True)
  created_at = Column(String)
  updated_at = Column(String)


_ACTIVE_FULFILLMENT_SQL = "status IN ({})".format(
    ", ".join(f"'{s.value}'" for s in sorted(ACTIVE_FULFILLMENT_STATUSES))
)


class FulfillmentOrder(Base):
  __tablename__ = "fulfillment_orders"
  __table_args__ = (
      # At most one live order per (transaction, storefront); failed and
      # cancelled attempts stay behind as the replay trail.
      Index(
          "uq_fulfillment_orders_active",
          "transaction_id",
          "store_key",
          unique=True,
          sqlite_where=text(_ACTIVE_FULFILLMENT_SQL),
          postgresql_where=text(_ACTIVE_FULFILLMENT_SQL),
      ),
  )

  id = Column(Integer, primary_key=True, autoincrement=True)
  transaction_id = Column(Integer, ForeignKey("transactions.id"), index=True)
  store_key = Column(String)
  status = Column(String)
  store_order_id = Column(String, nullable=True)
  store_order_number = Column(String, nullable=True)
  draft_order_id = Column(String, nullable=True)
  order_amount = Column(Integer, default=0)
  order_lines = Column(JSON, nullable=True)
  error_message = Column(String, nullable=True)
  created_at = Column(String)
  updated_at = Column(String)


class WebhookEvent(Base):
  __tablename__ = "webhook_events"

  id = Column(Integer, primary_key=True, autoincrement=True)
  received_at = Column(String)
  event_type = Column(String, nullable=True)
  payment_id = Column(String, nullable=True)
  external_reference = Column(String, nullable=True)
  processor_status = Column(String, nullable=True)
  outcome = Column(String)


# --- Data Access Helpers ---


async def get_store(session: AsyncSession, domain: str) -> Optional[Store]:
  """Retrieves a storefront by canonical key."""
  return await session.get(Store, domain)


async def get_stores(
    session: AsyncSession, domains: Iterable[str]
) -> Dict[str, Store]:
  """Retrieves several storefronts in a single query.

  Args:
    session: The database session to use.
    domains: Canonical storefront keys to look up.

  Returns:
    A mapping of storefront key to Store for the keys that exist.
  """
  result = await session.execute(
      select(Store).where(Store.domain.in_(list(domains)))
  )
  return {store.domain: store for store in result.scalars().all()}


async def save_store(
    session: AsyncSession,
    domain: str,
    name: str,
    storefront_token: Optional[str] = None,
    admin_token: Optional[str] = None,
) -> Store:
  """Saves or updates a storefront."""
  store = await session.get(Store, domain)
  if store:
    store.name = name
    store.storefront_token = storefront_token
    store.admin_token = admin_token
  else:
    store = Store(
        domain=domain,
        name=name,
        storefront_token=storefront_token,
        admin_token=admin_token,
        active=True,
    )
    session.add(store)
  return store


async def get_shipping_zones(
    session: AsyncSession, store_domain: str
) -> List[StoreShippingZone]:
  """Retrieves the active static shipping zones configured for a storefront."""
  result = await session.execute(
      select(StoreShippingZone)
      .where(StoreShippingZone.store_domain == store_domain)
      .where(StoreShippingZone.active.is_(True))
      .order_by(StoreShippingZone.id)
  )
  return list(result.scalars().all())


async def get_credential(
    session: AsyncSession, store_domain: str
) -> Optional[StoreCredential]:
  """Retrieves the processor credential of a storefront."""
  return await session.get(
      StoreCredential, store_domain, populate_existing=True
  )


async def get_credentials_expiring_before(
    session: AsyncSession, cutoff: str
) -> List[StoreCredential]:
  """Retrieves unrevoked credentials whose token expires before `cutoff`."""
  result = await session.execute(
      select(StoreCredential)
      .where(StoreCredential.revoked_at.is_(None))
      .where(StoreCredential.refresh_token.is_not(None))
      .where(StoreCredential.expires_at < cutoff)
  )
  return list(result.scalars().all())


async def save_credential(
    session: AsyncSession, store_domain: str, values: Dict[str, Any]
) -> StoreCredential:
  """Saves or replaces the processor credential of a storefront."""
  now = utcnow()
  credential = await session.get(StoreCredential, store_domain)
  if credential:
    for name, value in values.items():
      setattr(credential, name, value)
    credential.revoked_at = None
    credential.updated_at = now
  else:
    credential = StoreCredential(
        store_domain=store_domain, connected_at=now, updated_at=now, **values
    )
    session.add(credential)
  return credential


async def replace_token_pair(
    session: AsyncSession,
    store_domain: str,
    access_token: str,
    refresh_token: Optional[str],
    expires_at: Optional[str],
    public_key: Optional[str] = None,
) -> bool:
  """Atomically swaps a storefront's token pair in a single statement."""
  values: Dict[str, Any] = {
      "access_token": access_token,
      "expires_at": expires_at,
      "updated_at": utcnow(),
  }
  # Processors may omit a rotated refresh token; keep the current one then.
  if refresh_token:
    values["refresh_token"] = refresh_token
  if public_key:
    values["public_key"] = public_key
  result = await session.execute(
      update(StoreCredential)
      .where(StoreCredential.store_domain == store_domain)
      .values(**values)
  )
  return result.rowcount > 0


async def mark_credential_revoked(
    session: AsyncSession, store_domain: str
) -> None:
  """Flags a storefront grant as revoked without discarding its tokens."""
  await session.execute(
      update(StoreCredential)
      .where(StoreCredential.store_domain == store_domain)
      .values(revoked_at=utcnow(), updated_at=utcnow())
  )


async def create_transaction(
    session: AsyncSession, values: Dict[str, Any]
) -> Transaction:
  """Inserts a new transaction and flushes to obtain its identifier."""
  now = utcnow()
  transaction = Transaction(
      status=TransactionStatus.PENDING.value,
      total_payments=0,
      completed_payments=0,
      failed_payments=0,
      created_at=now,
      updated_at=now,
      **values,
  )
  session.add(transaction)
  await session.flush()
  return transaction


async def get_transaction(
    session: AsyncSession, transaction_id: int
) -> Optional[Transaction]:
  """Retrieves a transaction by ID."""
  return await session.get(
      Transaction, transaction_id, populate_existing=True
  )


async def get_transactions(session: AsyncSession) -> List[Transaction]:
  """Retrieves every transaction, oldest first."""
  result = await session.execute(select(Transaction).order_by(Transaction.id))
  return list(result.scalars().all())


async def set_transaction_status(
    session: AsyncSession,
    transaction_id: int,
    expected: str,
    status: str,
) -> bool:
  """Moves a transaction from `expected` to `status` if nobody raced us."""
  values: Dict[str, Any] = {"status": status, "updated_at": utcnow()}
  if status in {s.value for s in TERMINAL_TRANSACTION_STATUSES}:
    values["finalized_at"] = utcnow()
  result = await session.execute(
      update(Transaction)
      .where(Transaction.id == transaction_id)
      .where(Transaction.status == expected)
      .values(**values)
  )
  return result.rowcount > 0


async def set_payment_plan(
    session: AsyncSession,
    transaction_id: int,
    payment_mode: str,
    total_payments: int,
) -> None:
  """Records how a transaction is paid and how many payments it expects."""
  await session.execute(
      update(Transaction)
      .where(Transaction.id == transaction_id)
      .values(
          payment_mode=payment_mode,
          total_payments=total_payments,
          updated_at=utcnow(),
      )
  )


async def recompute_transaction_outcome(
    session: AsyncSession, transaction_id: int
) -> bool:
  """Recomputes payment counters and status in one atomic statement.

  The counters are derived from the store payment rows inside the UPDATE
  itself, so two storefront approvals landing at the same time cannot
  double-count or finalize the transaction twice. Finalized transactions are
  left untouched.

  Args:
    session: The database session to use.
    transaction_id: The transaction to recompute.

  Returns:
    True if the transaction row was updated.
  """
  completed = (
      select(func.count(StorePayment.id))
      .where(StorePayment.transaction_id == transaction_id)
      .where(StorePayment.status == StorePaymentStatus.APPROVED.value)
      .scalar_subquery()
  )
  failed = (
      select(func.count(StorePayment.id))
      .where(StorePayment.transaction_id == transaction_id)
      .where(
          StorePayment.status.in_([s.value for s in FAILED_PAYMENT_STATUSES])
      )
      .scalar_subquery()
  )
  total = Transaction.total_payments
  new_status = case(
      (
          (total > 0) & (completed == total) & (failed == 0),
          TransactionStatus.APPROVED.value,
      ),
      ((total > 0) & (failed == total), TransactionStatus.REJECTED.value),
      (completed > 0, TransactionStatus.PARTIAL.value),
      else_=Transaction.status,
  )
  finalized_at = case(
      (
          new_status.in_([s.value for s in TERMINAL_TRANSACTION_STATUSES]),
          utcnow(),
      ),
      else_=Transaction.finalized_at,
  )
  result = await session.execute(
      update(Transaction)
      .where(Transaction.id == transaction_id)
      .where(
          Transaction.status.not_in(
              [s.value for s in TERMINAL_TRANSACTION_STATUSES]
          )
      )
      .values(
          completed_payments=completed,
          failed_payments=failed,
          status=new_status,
          finalized_at=finalized_at,
          updated_at=utcnow(),
      )
      .execution_options(synchronize_session=False)
  )
  return result.rowcount > 0


async def get_store_payments(
    session: AsyncSession, transaction_id: int
) -> List[StorePayment]:
  """Retrieves the per-storefront payments of a transaction."""
  result = await session.execute(
      select(StorePayment)
      .where(StorePayment.transaction_id == transaction_id)
      .order_by(StorePayment.id)
      .execution_options(populate_existing=True)
  )
  return list(result.scalars().all())


async def get_store_payment(
    session: AsyncSession, transaction_id: int, store_key: str
) -> Optional[StorePayment]:
  """Retrieves the payment of one storefront within a transaction."""
  result = await session.execute(
      select(StorePayment)
      .where(StorePayment.transaction_id == transaction_id)
      .where(StorePayment.store_key == store_key)
      .execution_options(populate_existing=True)
  )
  return result.scalar_one_or_none()


async def save_store_payment(
    session: AsyncSession,
    transaction_id: int,
    store_key: str,
    values: Dict[str, Any],
) -> StorePayment:
  """Saves or updates the payment row of one storefront."""
  now = utcnow()
  payment = await get_store_payment(session, transaction_id, store_key)
  if payment:
    for name, value in values.items():
      setattr(payment, name, value)
    payment.updated_at = now
  else:
    values = dict(values)
    values.setdefault("status", StorePaymentStatus.PENDING.value)
    payment = StorePayment(
        transaction_id=transaction_id,
        store_key=store_key,
        created_at=now,
        updated_at=now,
        **values,
    )
    session.add(payment)
  await session.flush()
  return payment


async def transition_store_payment(
    session: AsyncSession,
    transaction_id: int,
    store_key: str,
    status: str,
    values: Dict[str, Any],
) -> bool:
  """Applies a forward-only status change to a store payment.

  The guard lives in the WHERE clause: terminal payments never change again,
  and a payment already processing never falls back to pending.

  Args:
    session: The database session to use.
    transaction_id: The transaction the payment belongs to.
    store_key: Canonical storefront key.
    status: The new StorePaymentStatus value.
    values: Extra columns to write alongside the status.

  Returns:
    True if the row transitioned, False if it was unknown or already there.
  """
  if status == StorePaymentStatus.PENDING.value:
    return False
  if status == StorePaymentStatus.PROCESSING.value:
    allowed_from = [StorePaymentStatus.PENDING.value]
  else:
    allowed_from = [
        StorePaymentStatus.PENDING.value,
        StorePaymentStatus.PROCESSING.value,
    ]

  result = await session.execute(
      update(StorePayment)
      .where(StorePayment.transaction_id == transaction_id)
      .where(StorePayment.store_key == store_key)
      .where(StorePayment.status.in_(allowed_from))
      .values(status=status, updated_at=utcnow(), **values)
      .execution_options(synchronize_session=False)
  )
  return result.rowcount > 0


async def get_active_fulfillment(
    session: AsyncSession, transaction_id: int, store_key: str
) -> Optional[FulfillmentOrder]:
  """Retrieves the in-progress or created order of a storefront, if any."""
  result = await session.execute(
      select(FulfillmentOrder)
      .where(FulfillmentOrder.transaction_id == transaction_id)
      .where(FulfillmentOrder.store_key == store_key)
      .where(
          FulfillmentOrder.status.in_(
              [s.value for s in ACTIVE_FULFILLMENT_STATUSES]
          )
      )
      .execution_options(populate_existing=True)
  )
  return result.scalars().first()


async def get_fulfillment_orders(
    session: AsyncSession, transaction_id: int
) -> List[FulfillmentOrder]:
  """Retrieves every fulfillment attempt of a transaction."""
  result = await session.execute(
      select(FulfillmentOrder)
      .where(FulfillmentOrder.transaction_id == transaction_id)
      .order_by(FulfillmentOrder.id)
      .execution_options(populate_existing=True)
  )
  return list(result.scalars().all())


async def add_fulfillment_order(
    session: AsyncSession,
    transaction_id: int,
    store_key: str,
    status: FulfillmentStatus,
    values: Optional[Dict[str, Any]] = None,
) -> FulfillmentOrder:
  """Inserts a fulfillment attempt and flushes it."""
  now = utcnow()
  order = FulfillmentOrder(
      transaction_id=transaction_id,
      store_key=store_key,
      status=status.value,
      created_at=now,
      updated_at=now,
      **(values or {}),
  )
  session.add(order)
  await session.flush()
  return order


async def update_fulfillment_order(
    session: AsyncSession,
    order_id: int,
    status: FulfillmentStatus,
    values: Optional[Dict[str, Any]] = None,
) -> None:
  """Updates the status of a fulfillment attempt."""
  await session.execute(
      update(FulfillmentOrder)
      .where(FulfillmentOrder.id == order_id)
      .values(status=status.value, updated_at=utcnow(), **(values or {}))
      .execution_options(synchronize_session=False)
  )


async def link_store_order(
    session: AsyncSession,
    transaction_id: int,
    store_key: str,
    store_order_id: Optional[str],
    store_order_number: Optional[str],
) -> None:
  """Copies the storefront's order reference onto the store payment."""
  await session.execute(
      update(StorePayment)
      .where(StorePayment.transaction_id == transaction_id)
      .where(StorePayment.store_key == store_key)
      .values(
          store_order_id=store_order_id,
          store_order_number=store_order_number,
          updated_at=utcnow(),
      )
      .execution_options(synchronize_session=False)
  )


async def log_webhook_event(
    session: AsyncSession,
    outcome: str,
    event_type: Optional[str] = None,
    payment_id: Optional[str] = None,
    external_reference: Optional[str] = None,
    processor_status: Optional[str] = None,
) -> None:
  """Records an inbound processor notification in the audit log."""
  session.add(
      WebhookEvent(
          received_at=utcnow(),
          event_type=event_type,
          payment_id=payment_id,
          external_reference=external_reference,
          processor_status=processor_status,
          outcome=outcome,
      )
  )
