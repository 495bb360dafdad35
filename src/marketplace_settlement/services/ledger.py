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

"""Transaction ledger.

The ledger is the durable record of a checkout attempt. It validates and
snapshots the cart when the transaction is created, and afterwards only moves
the transaction status forward: pending, then partial, then approved or
rejected. Counters are never incremented in Python; they are recomputed from
the store payment rows in a single statement.
"""

import logging
from typing import Dict, List, Optional

from marketplace_settlement import db
from marketplace_settlement.enums import PaymentMode
from marketplace_settlement.enums import TransactionStatus
from marketplace_settlement.exceptions import InvalidRequestError
from marketplace_settlement.exceptions import InvalidStatusTransitionError
from marketplace_settlement.exceptions import ResourceNotFoundError
from marketplace_settlement.identifiers import group_by_store
from marketplace_settlement.identifiers import normalize_store_key
from marketplace_settlement.models import Buyer
from marketplace_settlement.models import CartLine
from marketplace_settlement.models import FulfillmentOrderView
from marketplace_settlement.models import ShippingAddress
from marketplace_settlement.models import ShippingQuote
from marketplace_settlement.models import StorePaymentView
from marketplace_settlement.models import Totals
from marketplace_settlement.models import TransactionView
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

_ALLOWED_TRANSITIONS = {
    TransactionStatus.PENDING: {
        TransactionStatus.PARTIAL,
        TransactionStatus.APPROVED,
        TransactionStatus.REJECTED,
    },
    TransactionStatus.PARTIAL: {
        TransactionStatus.APPROVED,
        TransactionStatus.REJECTED,
    },
}


class TransactionLedger:
  """Service for recording and advancing checkout transactions."""

  def __init__(self, session: AsyncSession, currency: str = "CLP"):
    self.session = session
    self.currency = currency

  async def create(
      self,
      cart_lines: List[CartLine],
      buyer: Buyer,
      shipping_address: ShippingAddress,
      shipping_selection: Dict[str, ShippingQuote],
      totals: Optional[Totals] = None,
  ) -> db.Transaction:
    """Creates a pending transaction from a checkout.

    All validation happens here, before any processor or storefront is
    contacted.

    Args:
      cart_lines: The cart as seen by the buyer. Snapshotted as-is.
      buyer: Buyer contact details.
      shipping_address: Delivery address.
      shipping_selection: Selected quote per storefront id.
      totals: Totals the caller displayed, checked against the computed ones.

    Returns:
      The persisted transaction.

    Raises:
      InvalidRequestError: If the cart, buyer, selection or totals are
        malformed or inconsistent.
    """
    if not cart_lines:
      raise InvalidRequestError("Cart is empty")
    for line in cart_lines:
      if line.quantity < 1:
        raise InvalidRequestError(
            f"Invalid quantity {line.quantity} for product {line.product_id}"
        )
      if line.unit_price < 0:
        raise InvalidRequestError(
            f"Invalid price {line.unit_price} for product {line.product_id}"
        )
    grouped = group_by_store(cart_lines, lambda line: line.store_id)

    if not buyer.email or "@" not in buyer.email:
      raise InvalidRequestError("Buyer email is required")

    selection: Dict[str, ShippingQuote] = {}
    for raw_key, quote in shipping_selection.items():
      key = normalize_store_key(raw_key)
      if key not in grouped:
        raise InvalidRequestError(
            f"Shipping selected for storefront {key} which has no cart lines"
        )
      if quote.price < 0:
        raise InvalidRequestError(f"Invalid shipping price for {key}")
      selection[key] = quote

    computed = compute_totals(cart_lines, selection)
    if totals is not None and totals != computed:
      raise InvalidRequestError(
          f"Totals mismatch: expected {computed.model_dump()}, got"
          f" {totals.model_dump()}"
      )

    snapshot = []
    for line in cart_lines:
      item = line.model_dump(mode="json")
      item["store_key"] = normalize_store_key(line.store_id)
      snapshot.append(item)

    transaction = await db.create_transaction(
        self.session,
        {
            "buyer_name": buyer.name,
            "buyer_email": buyer.email,
            "buyer_phone": buyer.phone,
            "shipping_address": shipping_address.model_dump(mode="json"),
            "cart_lines": snapshot,
            "shipping_selection": {
                key: quote.model_dump(mode="json")
                for key, quote in selection.items()
            },
            "subtotal_amount": computed.subtotal,
            "shipping_amount": computed.shipping,
            "total_amount": computed.total,
            "currency": self.currency,
        },
    )
    await self.session.commit()
    logger.info(
        "Created transaction %s for %d storefront(s), total %d %s",
        transaction.id,
        len(grouped),
        computed.total,
        self.currency,
    )
    return transaction

  async def get_transaction(self, transaction_id: int) -> db.Transaction:
    transaction = await db.get_transaction(self.session, transaction_id)
    if not transaction:
      raise ResourceNotFoundError(f"Transaction {transaction_id} not found")
    return transaction

  async def get(self, transaction_id: int) -> TransactionView:
    """Returns a transaction with its store payments and fulfillment orders."""
    transaction = await self.get_transaction(transaction_id)
    payments = await db.get_store_payments(self.session, transaction_id)
    orders = await db.get_fulfillment_orders(self.session, transaction_id)
    view = TransactionView.model_validate(transaction)
    view.store_payments = [StorePaymentView.model_validate(p) for p in payments]
    view.fulfillment_orders = [
        FulfillmentOrderView.model_validate(o) for o in orders
    ]
    return view

  async def mark_status(
      self, transaction_id: int, status: TransactionStatus
  ) -> db.Transaction:
    """Moves a transaction forward to `status`.

    Raises:
      ResourceNotFoundError: If the transaction does not exist.
      InvalidStatusTransitionError: If the move is not forward.
    """
    transaction = await self.get_transaction(transaction_id)
    current = TransactionStatus(transaction.status)
    if current == status:
      return transaction
    if status not in _ALLOWED_TRANSITIONS.get(current, set()):
      raise InvalidStatusTransitionError(
          f"Transaction {transaction_id} cannot move from {current.value} to"
          f" {status.value}"
      )
    updated = await db.set_transaction_status(
        self.session, transaction_id, current.value, status.value
    )
    await self.session.commit()
    if not updated:
      raise InvalidStatusTransitionError(
          f"Transaction {transaction_id} changed concurrently"
      )
    logger.info(
        "Transaction %s moved from %s to %s",
        transaction_id,
        current.value,
        status.value,
    )
    return await self.get_transaction(transaction_id)

  async def begin_payments(
      self, transaction_id: int, mode: PaymentMode, total_payments: int
  ) -> None:
    await db.set_payment_plan(
        self.session, transaction_id, mode.value, total_payments
    )
    await self.session.commit()

  async def record_payment_outcome(self, transaction_id: int) -> db.Transaction:
    """Recomputes counters and status from the store payment rows."""
    await db.recompute_transaction_outcome(self.session, transaction_id)
    await self.session.commit()
    transaction = await self.get_transaction(transaction_id)
    logger.info(
        "Transaction %s is %s (%d/%d completed, %d failed)",
        transaction_id,
        transaction.status,
        transaction.completed_payments,
        transaction.total_payments,
        transaction.failed_payments,
    )
    return transaction


def compute_totals(
    cart_lines: List[CartLine], selection: Dict[str, ShippingQuote]
) -> Totals:
  subtotal = sum(line.line_total for line in cart_lines)
  shipping = sum(quote.price for quote in selection.values())
  return Totals(subtotal=subtotal, shipping=shipping, total=subtotal + shipping)
