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

"""Settlement of processor payment notifications.

Notifications are delivered at least once, in any order, and only name a
payment id. The payment is fetched, matched to its store payment through the
external reference, and moved forward with a conditional update, so replays
and late deliveries never move a payment backwards or count it twice.
"""

import logging
from typing import List, Optional

from marketplace_settlement import db
from marketplace_settlement.config import Settings
from marketplace_settlement.enums import StorePaymentStatus
from marketplace_settlement.enums import TERMINAL_PAYMENT_STATUSES
from marketplace_settlement.exceptions import CredentialRefreshError
from marketplace_settlement.exceptions import CredentialRevokedError
from marketplace_settlement.exceptions import InvalidRequestError
from marketplace_settlement.exceptions import ProcessorError
from marketplace_settlement.identifiers import parse_external_reference
from marketplace_settlement.models import WebhookResult
from marketplace_settlement.services.credential_manager import CredentialManager
from marketplace_settlement.services.fulfillment_handoff import FulfillmentHandoff
from marketplace_settlement.services.ledger import TransactionLedger
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

PAYMENT_EVENT = "payment"

STATUS_MAP = {
    "approved": StorePaymentStatus.APPROVED,
    "rejected": StorePaymentStatus.REJECTED,
    "pending": StorePaymentStatus.PROCESSING,
    "in_process": StorePaymentStatus.PROCESSING,
    "authorized": StorePaymentStatus.PROCESSING,
    "cancelled": StorePaymentStatus.CANCELLED,
    "refunded": StorePaymentStatus.CANCELLED,
    "charged_back": StorePaymentStatus.CANCELLED,
}


class SettlementProcessor:
  """Service applying processor notifications to the ledger."""

  def __init__(
      self,
      session: AsyncSession,
      processor,
      credentials: CredentialManager,
      ledger: TransactionLedger,
      handoff: FulfillmentHandoff,
      settings: Settings,
  ):
    self.session = session
    self.processor = processor
    self.credentials = credentials
    self.ledger = ledger
    self.handoff = handoff
    self.settings = settings

  async def _access_token(self, store_hint: Optional[str]) -> str:
    if store_hint:
      try:
        token = await self.credentials.get_valid_token(store_hint)
      except (
          CredentialRefreshError,
          CredentialRevokedError,
          InvalidRequestError,
      ) as e:
        logger.warning(
            "Cannot use token of %s, falling back to platform token: %s",
            store_hint,
            e.message,
        )
        token = None
      if token:
        return token
    if not self.settings.processor_access_token:
      raise ProcessorError("No platform processor access token configured")
    return self.settings.processor_access_token

  async def _acknowledge(
      self,
      outcome: str,
      event_type: Optional[str],
      payment_id: Optional[str],
      reference: Optional[str] = None,
      processor_status: Optional[str] = None,
      transaction_id: Optional[int] = None,
  ) -> WebhookResult:
    await db.log_webhook_event(
        self.session,
        outcome,
        event_type=event_type,
        payment_id=payment_id,
        external_reference=reference,
        processor_status=processor_status,
    )
    await self.session.commit()
    return WebhookResult(status=outcome, transaction_id=transaction_id)

  async def handle_notification(
      self,
      event_type: Optional[str],
      payment_id: Optional[str],
      store_hint: Optional[str] = None,
  ) -> WebhookResult:
    """Applies one processor notification.

    Args:
      event_type: The notification topic; only payments are processed.
      payment_id: Processor id of the payment.
      store_hint: Storefront the notification URL was issued for. Only used
        to pick the token the payment is fetched with.

    Returns:
      What happened to the notification. Unknown or malformed references are
      acknowledged rather than raised so the processor stops redelivering.

    Raises:
      ProcessorUnavailableError: If the payment could not be fetched; the
        processor should redeliver.
    """
    if event_type != PAYMENT_EVENT or not payment_id:
      logger.info("Ignoring %s notification %s", event_type, payment_id)
      return await self._acknowledge("ignored", event_type, payment_id)

    token = await self._access_token(store_hint)
    payment = await self.processor.get_payment(payment_id, token)
    reference = payment.external_reference

    try:
      transaction_id, store_key = parse_external_reference(reference)
    except InvalidRequestError as e:
      logger.warning("Payment %s: %s", payment_id, e.message)
      return await self._acknowledge(
          "malformed_reference",
          event_type,
          payment_id,
          reference,
          payment.status,
      )

    new_status = STATUS_MAP.get(payment.status)
    if new_status is None:
      logger.warning(
          "Payment %s has unknown status %s", payment_id, payment.status
      )
      return await self._acknowledge(
          "unknown_status",
          event_type,
          payment_id,
          reference,
          payment.status,
          transaction_id,
      )

    if store_key is not None:
      target = await db.get_store_payment(
          self.session, transaction_id, store_key
      )
      targets = [target] if target is not None else []
    else:
      targets = [
          p
          for p in await db.get_store_payments(self.session, transaction_id)
          if p.external_reference == reference
      ]
    if not targets:
      logger.warning(
          "Payment %s references unknown store payment %s",
          payment_id,
          reference,
      )
      return await self._acknowledge(
          "unknown_reference",
          event_type,
          payment_id,
          reference,
          payment.status,
          transaction_id,
      )

    transitioned: List[str] = []
    for index, target in enumerate(targets):
      values = {
          "processor_payment_id": payment.id,
          "payment_method": payment.payment_method_id,
          # A shared single-mode payment carries its fee on one row only.
          "processor_fee_amount": payment.fee_amount if index == 0 else 0,
          "last_error": None,
      }
      if new_status == StorePaymentStatus.APPROVED:
        values["paid_at"] = db.utcnow()
      if await db.transition_store_payment(
          self.session,
          transaction_id,
          target.store_key,
          new_status.value,
          values,
      ):
        transitioned.append(target.store_key)
    await self.session.commit()

    if transitioned:
      logger.info(
          "Payment %s moved %s of transaction %s to %s",
          payment_id,
          ", ".join(transitioned),
          transaction_id,
          new_status.value,
      )
    else:
      logger.info(
          "Payment %s (%s) already applied to %s",
          payment_id,
          payment.status,
          reference,
      )

    if new_status in TERMINAL_PAYMENT_STATUSES:
      # Idempotent, so a redelivery repairs a recompute lost after the commit.
      await self.ledger.record_payment_outcome(transaction_id)

    if new_status == StorePaymentStatus.APPROVED:
      # Handoff is idempotent; redeliveries retry failed attempts.
      for target in targets:
        current = await db.get_store_payment(
            self.session, transaction_id, target.store_key
        )
        if current.status == StorePaymentStatus.APPROVED.value:
          await self.handoff.hand_off(transaction_id, target.store_key)

    outcome = "applied" if transitioned else "duplicate"
    await db.log_webhook_event(
        self.session,
        outcome,
        event_type=event_type,
        payment_id=payment_id,
        external_reference=reference,
        processor_status=payment.status,
    )
    await self.session.commit()
    return WebhookResult(
        status=outcome,
        transaction_id=transaction_id,
        store_keys=[t.store_key for t in targets],
    )
