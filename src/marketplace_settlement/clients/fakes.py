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

"""In-memory processor and storefront clients for development and tests.

Both fakes record every call in `calls` and can be configured at runtime to
fail, so flows can be exercised without reaching any external system.
"""

import itertools
from typing import Any, Dict, List, Optional, Set, Tuple

from marketplace_settlement.exceptions import ProcessorError
from marketplace_settlement.exceptions import ProcessorUnavailableError
from marketplace_settlement.exceptions import StorefrontError
from marketplace_settlement.models import ProcessorPayment
from marketplace_settlement.models import TokenGrant


class FakeProcessorClient:
  """Configurable fake payment processor."""

  def __init__(self) -> None:
    self.calls: List[Dict[str, Any]] = []
    self.intents: Dict[str, Dict[str, Any]] = {}
    self.payments: Dict[str, Dict[str, Any]] = {}
    self.accounts: Dict[str, Dict[str, Any]] = {}
    self.grants: Dict[str, TokenGrant] = {}
    self.failing_references: Set[str] = set()
    self.unavailable = False
    self.refresh_error: Optional[ProcessorError] = None
    self._ids = itertools.count(1)

  def add_payment(
      self,
      payment_id: str,
      status: str,
      external_reference: str,
      fee_amount: int = 0,
      payment_method_id: str = "visa",
  ) -> None:
    """Registers a payment that `get_payment` will return."""
    self.payments[payment_id] = {
        "id": payment_id,
        "status": status,
        "external_reference": external_reference,
        "payment_method_id": payment_method_id,
        "fee_details": (
            [{"type": "mercadopago_fee", "amount": fee_amount}]
            if fee_amount
            else []
        ),
    }

  def intents_for(self, reference: str) -> List[Dict[str, Any]]:
    return [
        call
        for call in self.calls
        if call["op"] == "create_intent"
        and call["body"].get("external_reference") == reference
    ]

  async def create_intent(
      self, body: Dict[str, Any], access_token: str, idempotency_key: str
  ) -> Dict[str, Any]:
    self.calls.append({
        "op": "create_intent",
        "body": body,
        "access_token": access_token,
        "idempotency_key": idempotency_key,
    })
    if body.get("external_reference") in self.failing_references:
      raise ProcessorError(
          "Payment processor rejected create-intent: 400",
          status=400,
          body={"message": "invalid collector"},
      )
    if idempotency_key not in self.intents:
      intent_id = f"pref-{next(self._ids)}"
      self.intents[idempotency_key] = {
          "id": intent_id,
          "init_point": f"https://processor.example/checkout/{intent_id}",
      }
    return self.intents[idempotency_key]

  async def get_payment(
      self, payment_id: str, access_token: str
  ) -> ProcessorPayment:
    self.calls.append({
        "op": "get_payment",
        "payment_id": payment_id,
        "access_token": access_token,
    })
    if self.unavailable:
      raise ProcessorUnavailableError(
          "Payment processor unavailable during get-payment"
      )
    if payment_id not in self.payments:
      raise ProcessorError(
          "Payment processor rejected get-payment: 404", status=404
      )
    return ProcessorPayment.model_validate(self.payments[payment_id])

  async def exchange_code(self, code: str, redirect_uri: str) -> TokenGrant:
    self.calls.append(
        {"op": "exchange_code", "code": code, "redirect_uri": redirect_uri}
    )
    if code not in self.grants:
      raise ProcessorError(
          "Payment processor rejected authorization-code grant: 400",
          status=400,
          body={"error": "invalid_grant"},
      )
    return self.grants[code]

  async def refresh_grant(self, refresh_token: str) -> TokenGrant:
    self.calls.append({"op": "refresh_grant", "refresh_token": refresh_token})
    if self.refresh_error is not None:
      raise self.refresh_error
    number = next(self._ids)
    return TokenGrant(
        access_token=f"access-{number}",
        refresh_token=f"refresh-{number}",
        expires_in=15552000,
    )

  async def get_account(self, access_token: str) -> Dict[str, Any]:
    self.calls.append({"op": "get_account", "access_token": access_token})
    if access_token not in self.accounts:
      raise ProcessorError(
          "Payment processor rejected get-account: 401", status=401
      )
    return self.accounts[access_token]


class FakeStorefrontClient:
  """Configurable fake storefront platform shared by every storefront."""

  def __init__(self) -> None:
    self.calls: List[Dict[str, Any]] = []
    self.delivery_options: Dict[str, List[Dict[str, Any]]] = {}
    self.zones: Dict[str, List[Dict[str, Any]]] = {}
    self.customers: Dict[Tuple[str, str], Dict[str, Any]] = {}
    self.orders_by_tag: Dict[Tuple[str, str], Dict[str, Any]] = {}
    self.orders: Dict[Tuple[str, str], Dict[str, Any]] = {}
    self.failing_domains: Set[str] = set()
    self.failing_draft_domains: Set[str] = set()
    self.draft_orders: List[Dict[str, Any]] = []
    self._ids = itertools.count(1001)

  def _check(self, domain: str, operation: str) -> None:
    if domain in self.failing_domains:
      raise StorefrontError(
          f"Storefront {domain} unavailable during {operation}"
      )

  def orders_for(self, domain: str) -> List[Dict[str, Any]]:
    return [
        call
        for call in self.calls
        if call["op"] == "complete_draft_order" and call["domain"] == domain
    ]

  async def cart_delivery_options(
      self,
      domain: str,
      storefront_token: str,
      lines: List[Dict[str, Any]],
      delivery_address: Dict[str, Any],
      attempts: int = 5,
      initial_delay: float = 0.5,
      interval: float = 0.8,
  ) -> List[Dict[str, Any]]:
    del storefront_token, attempts, initial_delay, interval  # Unused.
    self.calls.append({
        "op": "cart_delivery_options",
        "domain": domain,
        "lines": lines,
        "delivery_address": delivery_address,
    })
    self._check(domain, "cart-create")
    return list(self.delivery_options.get(domain, []))

  async def shipping_zones(
      self, domain: str, admin_token: str
  ) -> List[Dict[str, Any]]:
    del admin_token  # Unused.
    self.calls.append({"op": "shipping_zones", "domain": domain})
    self._check(domain, "shipping-zones")
    return list(self.zones.get(domain, []))

  async def search_customer(
      self, domain: str, admin_token: str, email: str
  ) -> Optional[Dict[str, Any]]:
    del admin_token  # Unused.
    self.calls.append(
        {"op": "search_customer", "domain": domain, "email": email}
    )
    self._check(domain, "customer-search")
    return self.customers.get((domain, email))

  async def create_customer(
      self, domain: str, admin_token: str, customer: Dict[str, Any]
  ) -> Dict[str, Any]:
    del admin_token  # Unused.
    self.calls.append(
        {"op": "create_customer", "domain": domain, "customer": customer}
    )
    self._check(domain, "customer-create")
    created = dict(customer, id=next(self._ids))
    self.customers[(domain, customer["email"])] = created
    return created

  async def create_draft_order(
      self, domain: str, admin_token: str, draft_order: Dict[str, Any]
  ) -> Dict[str, Any]:
    del admin_token  # Unused.
    self.calls.append({
        "op": "create_draft_order",
        "domain": domain,
        "draft_order": draft_order,
    })
    self._check(domain, "draft-order-create")
    if domain in self.failing_draft_domains:
      raise StorefrontError(
          f"Storefront {domain} rejected draft-order-create: 422",
          status=422,
          body={"errors": {"line_items": ["variant is unavailable"]}},
      )
    created = dict(draft_order, id=next(self._ids))
    self.draft_orders.append(dict(created, domain=domain))
    return created

  async def complete_draft_order(
      self, domain: str, admin_token: str, draft_order_id: str
  ) -> Dict[str, Any]:
    del admin_token  # Unused.
    self.calls.append({
        "op": "complete_draft_order",
        "domain": domain,
        "draft_order_id": draft_order_id,
    })
    self._check(domain, "draft-order-complete")
    order_id = next(self._ids)
    order = {"id": order_id, "name": f"#{order_id}", "order_number": order_id}
    self.orders[(domain, str(order_id))] = order
    for draft in self.draft_orders:
      if str(draft["id"]) == str(draft_order_id):
        for tag in (draft.get("tags") or "").split(","):
          if tag.strip():
            self.orders_by_tag[(domain, tag.strip())] = {
                "id": str(order_id),
                "name": order["name"],
            }
    return {
        "id": draft_order_id,
        "order_id": order_id,
        "name": f"#D{draft_order_id}",
        "status": "completed",
    }

  async def get_order(
      self, domain: str, admin_token: str, order_id: str
  ) -> Dict[str, Any]:
    del admin_token  # Unused.
    self.calls.append({"op": "get_order", "domain": domain, "id": order_id})
    self._check(domain, "order-get")
    if (domain, order_id) not in self.orders:
      raise StorefrontError(
          f"Storefront {domain} rejected order-get: 404", status=404
      )
    return self.orders[(domain, order_id)]

  async def find_order_by_tag(
      self, domain: str, admin_token: str, tag: str
  ) -> Optional[Dict[str, Any]]:
    del admin_token  # Unused.
    self.calls.append({"op": "find_order_by_tag", "domain": domain, "tag": tag})
    self._check(domain, "order-lookup")
    return self.orders_by_tag.get((domain, tag))
