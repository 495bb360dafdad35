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

"""Checkout routes: shipping quotes, transactions and payments."""

from typing import Optional

from fastapi import APIRouter
from fastapi import Body
from fastapi import Depends
from fastapi import Path
from marketplace_settlement import dependencies
from marketplace_settlement.models import HandoffResult
from marketplace_settlement.models import PaymentSplitRequest
from marketplace_settlement.models import PaymentSplitResponse
from marketplace_settlement.models import ShippingQuoteRequest
from marketplace_settlement.models import ShippingQuoteResponse
from marketplace_settlement.models import Totals
from marketplace_settlement.models import TransactionCreateRequest
from marketplace_settlement.models import TransactionCreateResponse
from marketplace_settlement.models import TransactionView
from marketplace_settlement.services.fulfillment_handoff import FulfillmentHandoff
from marketplace_settlement.services.ledger import TransactionLedger
from marketplace_settlement.services.payment_splitter import PaymentSplitter
from marketplace_settlement.services.rate_aggregator import RateAggregator

router = APIRouter()


@router.post(
    "/shipping/quotes",
    response_model=ShippingQuoteResponse,
    operation_id="quote_shipping",
)
async def quote_shipping(
    quote_request: ShippingQuoteRequest = Body(...),
    rate_aggregator: RateAggregator = Depends(
        dependencies.get_rate_aggregator
    ),
) -> ShippingQuoteResponse:
  """Quote shipping for every storefront in a cart."""
  return await rate_aggregator.quote(
      quote_request.cart_lines, quote_request.shipping_address
  )


@router.post(
    "/transactions",
    response_model=TransactionCreateResponse,
    status_code=201,
    operation_id="create_transaction",
)
async def create_transaction(
    create_request: TransactionCreateRequest = Body(...),
    ledger: TransactionLedger = Depends(dependencies.get_ledger),
) -> TransactionCreateResponse:
  """Record a checkout attempt."""
  transaction = await ledger.create(
      create_request.cart_lines,
      create_request.buyer,
      create_request.shipping_address,
      create_request.shipping_selection,
      create_request.totals,
  )
  return TransactionCreateResponse(
      id=transaction.id,
      status=transaction.status,
      totals=Totals(
          subtotal=transaction.subtotal_amount,
          shipping=transaction.shipping_amount,
          total=transaction.total_amount,
      ),
  )


@router.get(
    "/transactions/{id}",
    response_model=TransactionView,
    operation_id="get_transaction",
)
async def get_transaction(
    transaction_id: int = Path(..., alias="id"),
    ledger: TransactionLedger = Depends(dependencies.get_ledger),
) -> TransactionView:
  """Get a transaction with its store payments and orders."""
  return await ledger.get(transaction_id)


@router.post(
    "/transactions/{id}/payments",
    response_model=PaymentSplitResponse,
    operation_id="create_payments",
)
async def create_payments(
    transaction_id: int = Path(..., alias="id"),
    split_request: Optional[PaymentSplitRequest] = Body(None),
    payment_splitter: PaymentSplitter = Depends(
        dependencies.get_payment_splitter
    ),
) -> PaymentSplitResponse:
  """Create the processor checkouts of a transaction."""
  split_request = split_request or PaymentSplitRequest()
  return await payment_splitter.split(transaction_id, split_request.mode)


@router.post(
    "/transactions/{id}/stores/{store}/fulfillment",
    response_model=HandoffResult,
    operation_id="replay_fulfillment",
)
async def replay_fulfillment(
    transaction_id: int = Path(..., alias="id"),
    store: str = Path(...),
    handoff: FulfillmentHandoff = Depends(
        dependencies.get_fulfillment_handoff
    ),
) -> HandoffResult:
  """Re-run the order handoff of an approved storefront payment."""
  return await handoff.replay(transaction_id, store)
