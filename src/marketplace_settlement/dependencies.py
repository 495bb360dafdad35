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

"""FastAPI dependencies for the settlement server.

This module contains dependency injection logic for FastAPI endpoints,
including:
- Database session management.
- The shared outbound clients and credential locks created at startup.
- Service instantiation (ledger, rate aggregator, payment splitter,
  settlement processor, fulfillment handoff, credential manager).
- Processor notification parsing and webhook signature verification.
"""

import hashlib
import hmac
import json
import logging
from typing import AsyncGenerator, Dict, Optional

from fastapi import Depends
from fastapi import Header
from fastapi import Request
from marketplace_settlement.config import Settings
from marketplace_settlement.exceptions import InvalidRequestError
from marketplace_settlement.exceptions import InvalidSignatureError
from marketplace_settlement.models import WebhookData
from marketplace_settlement.models import WebhookNotification
from marketplace_settlement.services.credential_manager import CredentialManager
from marketplace_settlement.services.credential_manager import KeyedLocks
from marketplace_settlement.services.fulfillment_handoff import FulfillmentHandoff
from marketplace_settlement.services.ledger import TransactionLedger
from marketplace_settlement.services.payment_splitter import PaymentSplitter
from marketplace_settlement.services.rate_aggregator import RateAggregator
from marketplace_settlement.services.settlement_processor import SettlementProcessor
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


def get_settings(request: Request) -> Settings:
  """Dependency provider for the runtime settings."""
  return request.app.state.settings


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
  """Dependency provider for a ledger DB session."""
  async with request.app.state.db.session_factory() as session:
    yield session


def get_processor_client(request: Request):
  return request.app.state.processor


def get_storefront_client(request: Request):
  return request.app.state.storefront


def get_credential_locks(request: Request) -> KeyedLocks:
  return request.app.state.credential_locks


def get_ledger(
    session: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> TransactionLedger:
  """Dependency provider for TransactionLedger."""
  return TransactionLedger(session, settings.currency)


def get_credential_manager(
    session: AsyncSession = Depends(get_db),
    processor=Depends(get_processor_client),
    settings: Settings = Depends(get_settings),
    locks: KeyedLocks = Depends(get_credential_locks),
) -> CredentialManager:
  """Dependency provider for CredentialManager."""
  return CredentialManager(session, processor, settings, locks)


def get_rate_aggregator(
    session: AsyncSession = Depends(get_db),
    storefront=Depends(get_storefront_client),
    settings: Settings = Depends(get_settings),
) -> RateAggregator:
  """Dependency provider for RateAggregator."""
  return RateAggregator(session, storefront, settings)


def get_fulfillment_handoff(
    session: AsyncSession = Depends(get_db),
    storefront=Depends(get_storefront_client),
    settings: Settings = Depends(get_settings),
) -> FulfillmentHandoff:
  """Dependency provider for FulfillmentHandoff."""
  return FulfillmentHandoff(
      session, storefront, claim_timeout=settings.handoff_claim_timeout
  )


def get_payment_splitter(
    session: AsyncSession = Depends(get_db),
    processor=Depends(get_processor_client),
    credentials: CredentialManager = Depends(get_credential_manager),
    ledger: TransactionLedger = Depends(get_ledger),
    settings: Settings = Depends(get_settings),
) -> PaymentSplitter:
  """Dependency provider for PaymentSplitter."""
  return PaymentSplitter(session, processor, credentials, ledger, settings)


def get_settlement_processor(
    session: AsyncSession = Depends(get_db),
    processor=Depends(get_processor_client),
    credentials: CredentialManager = Depends(get_credential_manager),
    ledger: TransactionLedger = Depends(get_ledger),
    handoff: FulfillmentHandoff = Depends(get_fulfillment_handoff),
    settings: Settings = Depends(get_settings),
) -> SettlementProcessor:
  """Dependency provider for SettlementProcessor."""
  return SettlementProcessor(
      session, processor, credentials, ledger, handoff, settings
  )


async def processor_notification(request: Request) -> WebhookNotification:
  """Reads a processor notification from its body or query string.

  Notifications arrive either as a JSON body (`{"type", "data": {"id"}}`) or
  as query parameters (`?type=payment&data.id=...`, or the older
  `?topic=payment&id=...`).
  """
  body = await request.body()
  notification = WebhookNotification()
  if body:
    try:
      notification = WebhookNotification.model_validate(json.loads(body))
    except (ValueError, ValidationError) as e:
      raise InvalidRequestError("Malformed processor notification") from e

  query = request.query_params
  if not notification.type:
    notification.type = query.get("type") or query.get("topic")
  if notification.data is None or not notification.data.id:
    payment_id = query.get("data.id") or query.get("id")
    if payment_id:
      notification.data = WebhookData(id=payment_id)
  return notification


def _parse_signature(header: str) -> Dict[str, str]:
  parts = {}
  for part in header.split(","):
    name, _, value = part.strip().partition("=")
    if value:
      parts[name.strip()] = value.strip()
  return parts


async def verify_webhook_signature(
    notification: WebhookNotification = Depends(processor_notification),
    x_signature: Optional[str] = Header(None),
    x_request_id: Optional[str] = Header(None),
    settings: Settings = Depends(get_settings),
) -> None:
  """Verifies the processor's HMAC-SHA256 notification signature.

  The signed manifest is `id:<data.id>;request-id:<x-request-id>;ts:<ts>;`.
  Verification is skipped when no webhook secret is configured.

  Raises:
    InvalidSignatureError: If the signature is missing or does not match.
  """
  if not settings.webhook_secret:
    return
  if not x_signature:
    raise InvalidSignatureError("Missing x-signature header")

  parts = _parse_signature(x_signature)
  ts = parts.get("ts")
  received = parts.get("v1")
  if not ts or not received:
    raise InvalidSignatureError("Malformed x-signature header")

  payment_id = (notification.data.id if notification.data else None) or ""
  manifest = ""
  if payment_id:
    manifest += f"id:{payment_id.lower()};"
  if x_request_id:
    manifest += f"request-id:{x_request_id};"
  manifest += f"ts:{ts};"

  expected = hmac.new(
      settings.webhook_secret.encode(), manifest.encode(), hashlib.sha256
  ).hexdigest()
  if not hmac.compare_digest(expected, received):
    logger.warning("Rejected notification %s: bad signature", payment_id)
    raise InvalidSignatureError("Invalid webhook signature")
