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

"""Payment splitter for multi-storefront transactions.

In multi mode every storefront gets its own processor checkout so that it is
paid directly into its own account, minus the marketplace commission. In
single mode the whole cart is one platform checkout and storefronts are
settled outside the processor.

Store payment rows are written before the processor is called, and checkouts
that already exist are reused rather than requested again.
"""

import decimal
import logging
from typing import Any, Dict, List, Optional
import urllib.parse

from marketplace_settlement import db
from marketplace_settlement.config import Settings
from marketplace_settlement.enums import PaymentMode
from marketplace_settlement.enums import TERMINAL_TRANSACTION_STATUSES
from marketplace_settlement.exceptions import InvalidRequestError
from marketplace_settlement.exceptions import MarketplaceError
from marketplace_settlement.exceptions import ProcessorError
from marketplace_settlement.exceptions import TransactionNotPayableError
from marketplace_settlement.identifiers import build_external_reference
from marketplace_settlement.models import ChargeIntent
from marketplace_settlement.models import PaymentSplitResponse
from marketplace_settlement.models import StoreError
from marketplace_settlement.services.credential_manager import CredentialManager
from marketplace_settlement.services.ledger import TransactionLedger
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


def application_fee(gross: int, rate: Optional[float]) -> int:
  """Marketplace commission on `gross`, rounded half up to a whole unit."""
  if not rate:
    return 0
  fee = decimal.Decimal(gross) * decimal.Decimal(str(rate))
  return int(fee.quantize(decimal.Decimal(1), rounding=decimal.ROUND_HALF_UP))


class PaymentSplitter:
  """Service for turning a transaction into processor checkouts."""

  def __init__(
      self,
      session: AsyncSession,
      processor,
      credentials: CredentialManager,
      ledger: TransactionLedger,
      settings: Settings,
  ):
    self.session = session
    self.processor = processor
    self.credentials = credentials
    self.ledger = ledger
    self.settings = settings

  async def split(
      self, transaction_id: int, mode: PaymentMode = PaymentMode.MULTI
  ) -> PaymentSplitResponse:
    """Creates (or reuses) the charge intents of a transaction.

    Args:
      transaction_id: The pending transaction to pay.
      mode: One checkout per storefront, or a single platform checkout.

    Returns:
      The intents the buyer has to complete and the storefronts that failed.

    Raises:
      ResourceNotFoundError: If the transaction does not exist.
      TransactionNotPayableError: If the transaction is already finalized.
      InvalidRequestError: If it was already split in the other mode.
    """
    transaction = await self.ledger.get_transaction(transaction_id)
    if transaction.status in {s.value for s in TERMINAL_TRANSACTION_STATUSES}:
      raise TransactionNotPayableError(
          f"Transaction {transaction_id} is already {transaction.status}"
      )

    existing = await db.get_store_payments(self.session, transaction_id)
    if (
        transaction.payment_mode
        and transaction.payment_mode != mode.value
        and any(p.intent_id for p in existing)
    ):
      raise InvalidRequestError(
          f"Transaction {transaction_id} is already paid in"
          f" {transaction.payment_mode} mode"
      )

    grouped: Dict[str, List[Dict[str, Any]]] = {}
    for line in transaction.cart_lines:
      grouped.setdefault(line["store_key"], []).append(line)
    stores = await db.get_stores(self.session, grouped.keys())

    await self.ledger.begin_payments(transaction_id, mode, len(grouped))

    response = PaymentSplitResponse(
        transaction_id=transaction_id, mode=mode, total_payments=len(grouped)
    )
    if mode == PaymentMode.SINGLE:
      await self._split_single(transaction, grouped, stores, response)
    else:
      for key, lines in grouped.items():
        await self._split_store(
            transaction, key, lines, stores.get(key), response
        )

    logger.info(
        "Split transaction %s into %d intent(s), %d error(s)",
        transaction_id,
        len(response.intents),
        len(response.errors),
    )
    return response

  def _shipping_price(self, transaction: db.Transaction, key: str) -> int:
    selection = (transaction.shipping_selection or {}).get(key)
    return int(selection["price"]) if selection else 0

  def _items(
      self, transaction: db.Transaction, key: str, lines: List[Dict[str, Any]]
  ) -> List[Dict[str, Any]]:
    items = [
        {
            "id": line["product_id"],
            "title": line["title"],
            "quantity": line["quantity"],
            "unit_price": line["unit_price"],
            "currency_id": transaction.currency,
        }
        for line in lines
    ]
    shipping = self._shipping_price(transaction, key)
    if shipping > 0:
      items.append({
          "id": f"shipping-{key}",
          "title": f"Shipping - {key}",
          "quantity": 1,
          "unit_price": shipping,
          "currency_id": transaction.currency,
      })
    return items

  def _back_urls(
      self, transaction_id: int, key: Optional[str]
  ) -> Dict[str, str]:
    params = {"tx": transaction_id}
    if key:
      params["store"] = key
    query = urllib.parse.urlencode(params)
    base = self.settings.buyer_return_url.rstrip("/")
    return {
        outcome: f"{base}/{outcome}?{query}"
        for outcome in ("success", "failure", "pending")
    }

  def _intent_body(
      self,
      transaction: db.Transaction,
      key: Optional[str],
      reference: str,
      items: List[Dict[str, Any]],
      mode: PaymentMode,
  ) -> Dict[str, Any]:
    notification_url = self.settings.notification_url
    if key:
      notification_url += "?" + urllib.parse.urlencode({"store": key})
    payer: Dict[str, Any] = {
        "name": transaction.buyer_name,
        "email": transaction.buyer_email,
    }
    if transaction.buyer_phone:
      payer["phone"] = {"number": transaction.buyer_phone}
    return {
        "items": items,
        "payer": payer,
        "external_reference": reference,
        "back_urls": self._back_urls(transaction.id, key),
        "auto_return": "approved",
        "notification_url": notification_url,
        "statement_descriptor": self.settings.statement_descriptor,
        "metadata": {
            "transaction_id": transaction.id,
            "store_key": key,
            "payment_mode": mode.value,
        },
    }

  async def _split_store(
      self,
      transaction: db.Transaction,
      key: str,
      lines: List[Dict[str, Any]],
      store: Optional[db.Store],
      response: PaymentSplitResponse,
  ) -> None:
    reference = build_external_reference(transaction.id, key)
    payment = await db.get_store_payment(self.session, transaction.id, key)
    if payment is not None and payment.intent_id:
      logger.info("Reusing intent %s for %s", payment.intent_id, key)
      response.intents.append(
          ChargeIntent(
              store_keys=[key],
              intent_id=payment.intent_id,
              checkout_url=payment.checkout_url,
              amount=payment.gross_amount,
              application_fee=payment.application_fee,
          )
      )
      return

    credential = await self.credentials.get_credential(key)
    collector_id = credential.collector_id if credential else None
    gross = sum(line["unit_price"] * line["quantity"] for line in lines)
    gross += self._shipping_price(transaction, key)
    fee = (
        application_fee(gross, credential.commission_rate)
        if collector_id
        else 0
    )

    await db.save_store_payment(
        self.session,
        transaction.id,
        key,
        {
            "store_name": store.name if store else lines[0].get("store_name"),
            "gross_amount": gross,
            "application_fee": fee,
            "net_amount": gross - fee,
            "collector_id": collector_id,
            "external_reference": reference,
            "last_error": None,
        },
    )
    await self.session.commit()

    try:
      token = self.settings.processor_access_token
      if credential is not None:
        token = await self.credentials.get_valid_token(key)
      if not token:
        raise ProcessorError(f"No processor access token for {key}")

      body = self._intent_body(
          transaction,
          key,
          reference,
          self._items(transaction, key, lines),
          PaymentMode.MULTI,
      )
      if collector_id:
        body["collector_id"] = collector_id
        body["marketplace_fee"] = fee
      preference = await self.processor.create_intent(body, token, reference)
    except MarketplaceError as e:
      logger.error("Intent for %s in %s failed: %s", key, reference, e.message)
      await db.save_store_payment(
          self.session, transaction.id, key, {"last_error": e.message}
      )
      await self.session.commit()
      response.errors.append(StoreError(store=key, error=e.message))
      return

    await db.save_store_payment(
        self.session,
        transaction.id,
        key,
        {
            "intent_id": str(preference["id"]),
            "checkout_url": preference.get("init_point"),
        },
    )
    await self.session.commit()
    response.intents.append(
        ChargeIntent(
            store_keys=[key],
            intent_id=str(preference["id"]),
            checkout_url=preference.get("init_point"),
            amount=gross,
            application_fee=fee,
        )
    )

  async def _split_single(
      self,
      transaction: db.Transaction,
      grouped: Dict[str, List[Dict[str, Any]]],
      stores: Dict[str, db.Store],
      response: PaymentSplitResponse,
  ) -> None:
    reference = build_external_reference(transaction.id)
    keys = list(grouped)
    payments = await db.get_store_payments(self.session, transaction.id)
    reused = next((p for p in payments if p.intent_id), None)
    if reused is not None:
      response.intents.append(
          ChargeIntent(
              store_keys=keys,
              intent_id=reused.intent_id,
              checkout_url=reused.checkout_url,
              amount=transaction.total_amount,
          )
      )
      return

    for key, lines in grouped.items():
      gross = sum(line["unit_price"] * line["quantity"] for line in lines)
      gross += self._shipping_price(transaction, key)
      store = stores.get(key)
      await db.save_store_payment(
          self.session,
          transaction.id,
          key,
          {
              "store_name": store.name if store else lines[0].get("store_name"),
              "gross_amount": gross,
              "application_fee": 0,
              "net_amount": gross,
              "collector_id": None,
              "external_reference": reference,
              "last_error": None,
          },
      )
    await self.session.commit()

    items = []
    for key, lines in grouped.items():
      items.extend(self._items(transaction, key, lines))
    body = self._intent_body(
        transaction, None, reference, items, PaymentMode.SINGLE
    )
    try:
      token = self.settings.processor_access_token
      if not token:
        raise ProcessorError("No platform processor access token configured")
      preference = await self.processor.create_intent(body, token, reference)
    except MarketplaceError as e:
      logger.error("Intent for %s failed: %s", reference, e.message)
      for key in keys:
        await db.save_store_payment(
            self.session, transaction.id, key, {"last_error": e.message}
        )
        response.errors.append(StoreError(store=key, error=e.message))
      await self.session.commit()
      return

    for key in keys:
      await db.save_store_payment(
          self.session,
          transaction.id,
          key,
          {
              "intent_id": str(preference["id"]),
              "checkout_url": preference.get("init_point"),
          },
      )
    await self.session.commit()
    response.intents.append(
        ChargeIntent(
            store_keys=keys,
            intent_id=str(preference["id"]),
            checkout_url=preference.get("init_point"),
            amount=transaction.total_amount,
        )
    )
