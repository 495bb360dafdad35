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

"""Request, response and value models for the settlement server.

Amounts are integers in the smallest unit of the configured currency.
"""

from typing import Any, Dict, List, Optional

from marketplace_settlement.enums import PaymentMode
from marketplace_settlement.enums import RateSource
from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field


class CartLine(BaseModel):
  """A cart line as snapshotted at checkout time."""

  product_id: str
  variant_id: Optional[str] = None
  title: str
  unit_price: int
  quantity: int
  store_id: str
  store_name: Optional[str] = None

  @property
  def line_total(self) -> int:
    return self.unit_price * self.quantity


class Buyer(BaseModel):
  name: str = ""
  email: str
  phone: Optional[str] = None


class ShippingAddress(BaseModel):
  street: str = ""
  city: str = ""
  region: str = ""
  postal_code: Optional[str] = None
  country: str = "Chile"
  country_code: str = "CL"


class ShippingQuote(BaseModel):
  """A single shipping option offered for one storefront."""

  id: Optional[str] = None
  title: str
  price: int
  code: str
  source: RateSource


class Totals(BaseModel):
  subtotal: int
  shipping: int
  total: int


class ShippingQuoteRequest(BaseModel):
  cart_lines: List[CartLine]
  shipping_address: ShippingAddress


class ShippingQuoteResponse(BaseModel):
  quotes: Dict[str, List[ShippingQuote]] = Field(default_factory=dict)
  errors: Dict[str, str] = Field(default_factory=dict)


class TransactionCreateRequest(BaseModel):
  cart_lines: List[CartLine]
  buyer: Buyer
  shipping_address: ShippingAddress
  # Keyed by storefront id; keys are normalized by the ledger.
  shipping_selection: Dict[str, ShippingQuote] = Field(default_factory=dict)
  totals: Optional[Totals] = None


class TransactionCreateResponse(BaseModel):
  id: int
  status: str
  totals: Totals


class StorePaymentView(BaseModel):
  model_config = ConfigDict(from_attributes=True)

  store_key: str
  store_name: Optional[str] = None
  status: str
  gross_amount: int
  application_fee: int
  net_amount: int
  intent_id: Optional[str] = None
  checkout_url: Optional[str] = None
  processor_payment_id: Optional[str] = None
  last_error: Optional[str] = None
  store_order_id: Optional[str] = None
  store_order_number: Optional[str] = None
  paid_at: Optional[str] = None


class FulfillmentOrderView(BaseModel):
  model_config = ConfigDict(from_attributes=True)

  store_key: str
  status: str
  store_order_id: Optional[str] = None
  store_order_number: Optional[str] = None
  error_message: Optional[str] = None
  created_at: Optional[str] = None


class TransactionView(BaseModel):
  """Ledger state of a transaction as returned to callers."""

  model_config = ConfigDict(from_attributes=True)

  id: int
  status: str
  payment_mode: Optional[str] = None
  buyer_email: str
  currency: str
  subtotal_amount: int
  shipping_amount: int
  total_amount: int
  total_payments: int
  completed_payments: int
  failed_payments: int
  created_at: str
  updated_at: str
  finalized_at: Optional[str] = None
  store_payments: List[StorePaymentView] = Field(default_factory=list)
  fulfillment_orders: List[FulfillmentOrderView] = Field(default_factory=list)


class PaymentSplitRequest(BaseModel):
  mode: PaymentMode = PaymentMode.MULTI


class ChargeIntent(BaseModel):
  """A processor checkout the buyer has to complete."""

  store_keys: List[str]
  intent_id: str
  checkout_url: Optional[str] = None
  amount: int
  application_fee: int = 0


class StoreError(BaseModel):
  store: str
  error: str


class PaymentSplitResponse(BaseModel):
  transaction_id: int
  mode: PaymentMode
  total_payments: int
  intents: List[ChargeIntent] = Field(default_factory=list)
  errors: List[StoreError] = Field(default_factory=list)


class WebhookData(BaseModel):
  model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

  id: Optional[str] = None


class WebhookNotification(BaseModel):
  """Body of a processor notification: `{type, data: {id}}`."""

  model_config = ConfigDict(extra="allow")

  type: Optional[str] = None
  action: Optional[str] = None
  data: Optional[WebhookData] = None


class WebhookResult(BaseModel):
  status: str
  transaction_id: Optional[int] = None
  store_keys: List[str] = Field(default_factory=list)


class HandoffResult(BaseModel):
  """Outcome of handing one storefront's items to its order system."""

  transaction_id: int
  store_key: str
  status: str
  store_order_id: Optional[str] = None
  store_order_number: Optional[str] = None
  error_message: Optional[str] = None
  reused: bool = False


class TokenGrant(BaseModel):
  """OAuth token response from the payment processor."""

  model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

  access_token: str
  refresh_token: Optional[str] = None
  expires_in: Optional[int] = None
  user_id: Optional[str] = None
  public_key: Optional[str] = None


class RefreshResult(BaseModel):
  store: str
  expires_at: Optional[str] = None
  error: Optional[str] = None


class ProcessorPayment(BaseModel):
  """The subset of a processor payment the settlement flow reads."""

  model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

  id: str
  status: str
  external_reference: Optional[str] = None
  payment_method_id: Optional[str] = None
  fee_details: List[Dict[str, Any]] = Field(default_factory=list)

  @property
  def fee_amount(self) -> int:
    total = sum(float(f.get("amount") or 0) for f in self.fee_details)
    return int(round(total))
