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

"""Fulfillment handoff to each storefront's order system.

Once a storefront's payment is approved, its share of the cart becomes a paid
order in that storefront's own system. The handoff runs at most once per
(transaction, storefront): existing attempts and out-of-band orders are
detected first, and the attempt itself is claimed through a partial unique
index before anything is created remotely.
"""

import datetime
import logging
from typing import Any, Dict, List, Optional

from marketplace_settlement import db
from marketplace_settlement.enums import FulfillmentStatus
from marketplace_settlement.enums import StorePaymentStatus
from marketplace_settlement.exceptions import InvalidRequestError
from marketplace_settlement.exceptions import MarketplaceError
from marketplace_settlement.exceptions import ResourceNotFoundError
from marketplace_settlement.exceptions import StorefrontError
from marketplace_settlement.identifiers import fulfillment_tag
from marketplace_settlement.identifiers import normalize_store_key
from marketplace_settlement.models import HandoffResult
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


def _result(
    order: db.FulfillmentOrder, reused: bool = False
) -> HandoffResult:
  return HandoffResult(
      transaction_id=order.transaction_id,
      store_key=order.store_key,
      status=order.status,
      store_order_id=order.store_order_id,
      store_order_number=order.store_order_number,
      error_message=order.error_message,
      reused=reused,
  )


def _storefront_address(address: Dict[str, Any]) -> Dict[str, Any]:
  return {
      "address1": address.get("street"),
      "city": address.get("city"),
      "province": address.get("region"),
      "zip": address.get("postal_code"),
      "country": address.get("country") or "Chile",
      "country_code": address.get("country_code") or "CL",
  }


def _line_item(line: Dict[str, Any]) -> Dict[str, Any]:
  item = {
      "title": line["title"],
      "quantity": line["quantity"],
      "price": str(line["unit_price"]),
  }
  if line.get("variant_id"):
    # Catalog ids may be global ids ("gid://shop/ProductVariant/123").
    item["variant_id"] = str(line["variant_id"]).rsplit("/", 1)[-1]
  return item


class FulfillmentHandoff:
  """Service for creating storefront orders after settlement."""

  def __init__(
      self, session: AsyncSession, storefront, claim_timeout: int = 300
  ):
    self.session = session
    self.storefront = storefront
    self.claim_timeout = claim_timeout

  async def hand_off(self, transaction_id: int, store: str) -> HandoffResult:
    """Creates the storefront order for one paid storefront share.

    Args:
      transaction_id: The settled transaction.
      store: Storefront identifier.

    Returns:
      The created, reused or failed handoff. Storefront failures are
      recorded, not raised, so they can be replayed later.

    Raises:
      ResourceNotFoundError: If the transaction does not exist.
      Exception: Unexpected errors are recorded on the claim and re-raised.
    """
    key = normalize_store_key(store)
    existing = await db.get_active_fulfillment(
        self.session, transaction_id, key
    )
    if existing is not None:
      logger.info(
          "Order for transaction %s at %s already %s",
          transaction_id,
          key,
          existing.status,
      )
      return _result(existing, reused=True)

    transaction = await db.get_transaction(self.session, transaction_id)
    if transaction is None:
      raise ResourceNotFoundError(f"Transaction {transaction_id} not found")

    store_row = await db.get_store(self.session, key)
    if store_row is None or not store_row.admin_token:
      return await self._record_failure(
          transaction_id, key, f"Storefront {key} has no order system access"
      )

    tag = fulfillment_tag(transaction_id, key)
    try:
      found = await self.storefront.find_order_by_tag(
          key, store_row.admin_token, tag
      )
    except StorefrontError as e:
      logger.warning("Order lookup at %s failed: %s", key, e.message)
      found = None
    if found is not None:
      try:
        order = await db.add_fulfillment_order(
            self.session,
            transaction_id,
            key,
            FulfillmentStatus.CREATED,
            {
                "store_order_id": found["id"],
                "store_order_number": found.get("name"),
            },
        )
      except IntegrityError:
        return await self._winner(transaction_id, key)
      await db.link_store_order(
          self.session, transaction_id, key, found["id"], found.get("name")
      )
      await self.session.commit()
      logger.info(
          "Found existing order %s for transaction %s at %s",
          found.get("name"),
          transaction_id,
          key,
      )
      return _result(order, reused=True)

    lines = [
        line for line in transaction.cart_lines if line.get("store_key") == key
    ]
    amount = sum(line["unit_price"] * line["quantity"] for line in lines)
    try:
      claim = await db.add_fulfillment_order(
          self.session,
          transaction_id,
          key,
          FulfillmentStatus.IN_PROGRESS,
          {"order_amount": amount, "order_lines": lines},
      )
      await self.session.commit()
    except IntegrityError:
      return await self._winner(transaction_id, key)
    claim_id = claim.id

    try:
      created = await self._create_order(
          transaction, key, store_row.admin_token, lines, tag
      )
    except MarketplaceError as e:
      logger.error(
          "Order creation for transaction %s at %s failed: %s",
          transaction_id,
          key,
          e.message,
      )
      await db.update_fulfillment_order(
          self.session,
          claim_id,
          FulfillmentStatus.FAILED,
          {"error_message": e.message},
      )
      await self.session.commit()
      return HandoffResult(
          transaction_id=transaction_id,
          store_key=key,
          status=FulfillmentStatus.FAILED.value,
          error_message=e.message,
      )
    except Exception as e:
      logger.exception(
          "Order creation for transaction %s at %s failed unexpectedly",
          transaction_id,
          key,
      )
      await self.session.rollback()
      await db.update_fulfillment_order(
          self.session,
          claim_id,
          FulfillmentStatus.FAILED,
          {"error_message": str(e) or type(e).__name__},
      )
      await self.session.commit()
      raise

    await db.update_fulfillment_order(
        self.session, claim_id, FulfillmentStatus.CREATED, created
    )
    await db.link_store_order(
        self.session,
        transaction_id,
        key,
        created["store_order_id"],
        created["store_order_number"],
    )
    await self.session.commit()
    logger.info(
        "Created order %s for transaction %s at %s",
        created["store_order_number"],
        transaction_id,
        key,
    )
    return HandoffResult(
        transaction_id=transaction_id,
        store_key=key,
        status=FulfillmentStatus.CREATED.value,
        store_order_id=created["store_order_id"],
        store_order_number=created["store_order_number"],
    )

  async def replay(self, transaction_id: int, store: str) -> HandoffResult:
    """Re-runs the handoff of an approved storefront payment.

    Raises:
      ResourceNotFoundError: If the storefront has no payment in the
        transaction.
      InvalidRequestError: If the payment is not approved.
    """
    key = normalize_store_key(store)
    payment = await db.get_store_payment(self.session, transaction_id, key)
    if payment is None:
      raise ResourceNotFoundError(
          f"Storefront {key} has no payment in transaction {transaction_id}"
      )
    if payment.status != StorePaymentStatus.APPROVED.value:
      raise InvalidRequestError(
          f"Payment of {key} in transaction {transaction_id} is"
          f" {payment.status}, not approved"
      )
    await self._release_stale_claim(transaction_id, key)
    logger.info(
        "Replaying handoff of transaction %s at %s", transaction_id, key
    )
    return await self.hand_off(transaction_id, key)

  async def _release_stale_claim(self, transaction_id: int, key: str) -> None:
    """Fails an in-progress claim that has outlived the claim timeout."""
    claim = await db.get_active_fulfillment(self.session, transaction_id, key)
    if claim is None or claim.status != FulfillmentStatus.IN_PROGRESS.value:
      return
    age = datetime.datetime.now(
        datetime.timezone.utc
    ) - datetime.datetime.fromisoformat(claim.updated_at)
    if age < datetime.timedelta(seconds=self.claim_timeout):
      return
    logger.warning(
        "Releasing handoff claim %s of transaction %s at %s after %s",
        claim.id,
        transaction_id,
        key,
        age,
    )
    await db.update_fulfillment_order(
        self.session,
        claim.id,
        FulfillmentStatus.FAILED,
        {"error_message": "Handoff abandoned before completion"},
    )
    await self.session.commit()

  async def _winner(self, transaction_id: int, key: str) -> HandoffResult:
    await self.session.rollback()
    winner = await db.get_active_fulfillment(self.session, transaction_id, key)
    logger.info(
        "Handoff of transaction %s at %s claimed concurrently",
        transaction_id,
        key,
    )
    if winner is None:
      return HandoffResult(
          transaction_id=transaction_id,
          store_key=key,
          status=FulfillmentStatus.IN_PROGRESS.value,
          reused=True,
      )
    return _result(winner, reused=True)

  async def _record_failure(
      self, transaction_id: int, key: str, message: str
  ) -> HandoffResult:
    logger.error(
        "Handoff of transaction %s at %s failed: %s",
        transaction_id,
        key,
        message,
    )
    order = await db.add_fulfillment_order(
        self.session,
        transaction_id,
        key,
        FulfillmentStatus.FAILED,
        {"error_message": message},
    )
    await self.session.commit()
    return _result(order)

  async def _create_order(
      self,
      transaction: db.Transaction,
      key: str,
      admin_token: str,
      lines: List[Dict[str, Any]],
      tag: str,
  ) -> Dict[str, Optional[str]]:
    if not lines:
      raise InvalidRequestError(
          f"Transaction {transaction.id} has no items from {key}"
      )
    address = transaction.shipping_address or {}

    customer = await self.storefront.search_customer(
        key, admin_token, transaction.buyer_email
    )
    if customer is None:
      names = (transaction.buyer_name or "").split()
      customer = await self.storefront.create_customer(
          key,
          admin_token,
          {
              "email": transaction.buyer_email,
              "first_name": names[0] if names else "Customer",
              "last_name": " ".join(names[1:]),
              "phone": transaction.buyer_phone,
              "addresses": [_storefront_address(address)],
          },
      )

    draft_order: Dict[str, Any] = {
        "line_items": [_line_item(line) for line in lines],
        "email": transaction.buyer_email,
        "shipping_address": _storefront_address(address),
        "note": f"Marketplace order - transaction #{transaction.id}",
        "tags": f"marketplace, multi-payment, {tag}",
        "financial_status": "paid",
    }
    shipping = (transaction.shipping_selection or {}).get(key)
    if shipping:
      draft_order["shipping_line"] = {
          "title": shipping["title"],
          "price": str(shipping["price"]),
          "code": shipping.get("code") or "custom",
      }
    if customer and customer.get("id"):
      draft_order["customer"] = {"id": customer["id"]}

    draft = await self.storefront.create_draft_order(
        key, admin_token, draft_order
    )
    completed = await self.storefront.complete_draft_order(
        key, admin_token, str(draft["id"])
    )
    order = completed.get("order")
    if not order and completed.get("order_id"):
      order = await self.storefront.get_order(
          key, admin_token, str(completed["order_id"])
      )
    order = order or {}
    order_id = order.get("id") or completed.get("order_id")
    order_number = order.get("name")
    if not order_number and order.get("order_number"):
      order_number = f"#{order['order_number']}"
    return {
        "store_order_id": str(order_id) if order_id is not None else None,
        "store_order_number": order_number,
        "draft_order_id": str(draft["id"]),
    }
