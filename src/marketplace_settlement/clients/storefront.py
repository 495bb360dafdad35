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

"""Storefront platform client.

Each storefront is its own shop on a Shopify-style platform. The public
storefront API (read token) is used for real-time cart rates; the admin API
(admin token) for shipping zones, customers and draft orders.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import httpx
from marketplace_settlement.clients import http
from marketplace_settlement.exceptions import StorefrontError

logger = logging.getLogger(__name__)

CART_CREATE_MUTATION = """
mutation cartCreate($input: CartInput!) {
  cartCreate(input: $input) {
    cart {
      id
    }
    userErrors {
      field
      message
    }
  }
}
"""

CART_DELIVERY_QUERY = """
query getCart($cartId: ID!) {
  cart(id: $cartId) {
    deliveryGroups(first: 10) {
      edges {
        node {
          deliveryOptions {
            handle
            title
            estimatedCost {
              amount
              currencyCode
            }
          }
        }
      }
    }
  }
}
"""

ORDERS_BY_TAG_QUERY = """
query ordersByTag($query: String!) {
  orders(first: 5, query: $query) {
    edges {
      node {
        id
        legacyResourceId
        name
        cancelledAt
      }
    }
  }
}
"""


def _field(body: Any, name: str, domain: str, operation: str) -> Any:
  if not isinstance(body, dict) or name not in body:
    raise StorefrontError(
        f"Storefront {domain} sent an unexpected {operation} response",
        body=body,
    )
  return body[name]


class StorefrontClient:
  """Client for the storefront and admin APIs of every storefront."""

  def __init__(
      self,
      client: httpx.AsyncClient,
      api_version: str = "2024-10",
      retry_policy: Optional[http.RetryPolicy] = None,
      request_timeout: float = 5.0,
  ):
    self._client = client
    self._api_version = api_version
    self._retry_policy = retry_policy or http.RetryPolicy()
    self._request_timeout = request_timeout

  def _storefront_url(self, domain: str) -> str:
    return f"https://{domain}/api/{self._api_version}/graphql.json"

  def _admin_url(self, domain: str, path: str) -> str:
    return f"https://{domain}/admin/api/{self._api_version}/{path}"

  async def _request(
      self,
      domain: str,
      method: str,
      url: str,
      operation: str,
      retry: bool = True,
      **kwargs: Any,
  ) -> Any:
    policy = self._retry_policy if retry else http.RetryPolicy(attempts=1)
    try:
      response = await http.send(self._client, policy, method, url, **kwargs)
    except (http.TransientHTTPError, httpx.TransportError) as e:
      logger.warning(
          "Storefront %s unavailable during %s: %s", domain, operation, e
      )
      raise StorefrontError(
          f"Storefront {domain} unavailable during {operation}"
      ) from e

    body = http.response_body(response)
    if response.is_error:
      logger.warning(
          "Storefront %s rejected %s: %d %s",
          domain,
          operation,
          response.status_code,
          body,
      )
      raise StorefrontError(
          f"Storefront {domain} rejected {operation}: {response.status_code}",
          status=response.status_code,
          body=body,
      )
    return body

  async def _graphql(
      self,
      domain: str,
      url: str,
      headers: Dict[str, str],
      query: str,
      variables: Dict[str, Any],
      operation: str,
      retry: bool = True,
      timeout: Optional[float] = None,
  ) -> Dict[str, Any]:
    kwargs: Dict[str, Any] = {}
    if timeout is not None:
      kwargs["timeout"] = timeout
    body = await self._request(
        domain,
        "POST",
        url,
        operation,
        retry=retry,
        json={"query": query, "variables": variables},
        headers=headers,
        **kwargs,
    )
    if not isinstance(body, dict):
      raise StorefrontError(f"Storefront {domain} sent no data for {operation}")
    if body.get("errors"):
      message = body["errors"][0].get("message") or f"{operation} failed"
      raise StorefrontError(message, body=body)
    return body.get("data") or {}

  def _admin_headers(self, admin_token: str) -> Dict[str, str]:
    return {
        "X-Shopify-Access-Token": admin_token,
        "Content-Type": "application/json",
    }

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
    """Quotes real-time delivery options for a cart.

    Creates a cart carrying the buyer's delivery address, then polls its
    delivery groups until the platform has computed rates or the polling
    budget runs out.

    Args:
      domain: Storefront domain.
      storefront_token: Public storefront API token.
      lines: Cart lines as `{merchandiseId, quantity}`.
      delivery_address: Address in storefront API shape.
      attempts: Maximum number of polls.
      initial_delay: Seconds to wait before the first poll.
      interval: Seconds to wait between polls.

    Returns:
      The delivery options of the first delivery group, possibly empty.

    Raises:
      StorefrontError: If the cart could not be created or a poll failed.
    """
    url = self._storefront_url(domain)
    headers = {
        "X-Shopify-Storefront-Access-Token": storefront_token,
        "Content-Type": "application/json",
    }
    data = await self._graphql(
        domain,
        url,
        headers,
        CART_CREATE_MUTATION,
        {
            "input": {
                "lines": lines,
                "buyerIdentity": {
                    "deliveryAddressPreferences": [
                        {"deliveryAddress": delivery_address}
                    ]
                },
            }
        },
        "cart-create",
        retry=False,
        timeout=self._request_timeout,
    )
    cart_create = data.get("cartCreate") or {}
    user_errors = cart_create.get("userErrors") or []
    if user_errors:
      raise StorefrontError(user_errors[0].get("message") or "Cart error")
    cart_id = (cart_create.get("cart") or {}).get("id")
    if not cart_id:
      raise StorefrontError(f"Storefront {domain} returned no cart id")

    for attempt in range(1, attempts + 1):
      await asyncio.sleep(initial_delay if attempt == 1 else interval)
      data = await self._graphql(
          domain,
          url,
          headers,
          CART_DELIVERY_QUERY,
          {"cartId": cart_id},
          "cart-delivery-options",
          retry=False,
          timeout=self._request_timeout,
      )
      groups = ((data.get("cart") or {}).get("deliveryGroups") or {}).get(
          "edges"
      ) or []
      if groups:
        options = (groups[0].get("node") or {}).get("deliveryOptions") or []
        if options:
          logger.info(
              "Storefront %s rates ready after %d poll(s)", domain, attempt
          )
          return options
    logger.info(
        "Storefront %s rates not ready after %d polls", domain, attempts
    )
    return []

  async def shipping_zones(
      self, domain: str, admin_token: str
  ) -> List[Dict[str, Any]]:
    """Lists the storefront's own shipping zones with their rate tables."""
    body = await self._request(
        domain,
        "GET",
        self._admin_url(domain, "shipping_zones.json"),
        "shipping-zones",
        headers=self._admin_headers(admin_token),
        timeout=self._request_timeout,
    )
    return _field(body, "shipping_zones", domain, "shipping-zones") or []

  async def search_customer(
      self, domain: str, admin_token: str, email: str
  ) -> Optional[Dict[str, Any]]:
    body = await self._request(
        domain,
        "GET",
        self._admin_url(domain, "customers/search.json"),
        "customer-search",
        params={"query": f"email:{email}"},
        headers=self._admin_headers(admin_token),
    )
    customers = _field(body, "customers", domain, "customer-search") or []
    return customers[0] if customers else None

  async def create_customer(
      self, domain: str, admin_token: str, customer: Dict[str, Any]
  ) -> Dict[str, Any]:
    body = await self._request(
        domain,
        "POST",
        self._admin_url(domain, "customers.json"),
        "customer-create",
        json={"customer": customer},
        headers=self._admin_headers(admin_token),
    )
    return _field(body, "customer", domain, "customer-create")

  async def create_draft_order(
      self, domain: str, admin_token: str, draft_order: Dict[str, Any]
  ) -> Dict[str, Any]:
    body = await self._request(
        domain,
        "POST",
        self._admin_url(domain, "draft_orders.json"),
        "draft-order-create",
        json={"draft_order": draft_order},
        headers=self._admin_headers(admin_token),
    )
    return _field(body, "draft_order", domain, "draft-order-create")

  async def complete_draft_order(
      self, domain: str, admin_token: str, draft_order_id: str
  ) -> Dict[str, Any]:
    """Completes a draft order as paid, turning it into a real order."""
    body = await self._request(
        domain,
        "PUT",
        self._admin_url(domain, f"draft_orders/{draft_order_id}/complete.json"),
        "draft-order-complete",
        json={"payment_pending": False},
        headers=self._admin_headers(admin_token),
    )
    return _field(body, "draft_order", domain, "draft-order-complete")

  async def get_order(
      self, domain: str, admin_token: str, order_id: str
  ) -> Dict[str, Any]:
    body = await self._request(
        domain,
        "GET",
        self._admin_url(domain, f"orders/{order_id}.json"),
        "order-get",
        params={"fields": "id,name,order_number,cancelled_at"},
        headers=self._admin_headers(admin_token),
    )
    return _field(body, "order", domain, "order-get")

  async def find_order_by_tag(
      self, domain: str, admin_token: str, tag: str
  ) -> Optional[Dict[str, Any]]:
    """Finds a live order carrying `tag`, including ones created by hand.

    Returns:
      `{"id", "name"}` of the first order that is not cancelled, or None.
    """
    data = await self._graphql(
        domain,
        self._admin_url(domain, "graphql.json"),
        self._admin_headers(admin_token),
        ORDERS_BY_TAG_QUERY,
        {"query": f"tag:'{tag}'"},
        "order-lookup",
    )
    edges = (data.get("orders") or {}).get("edges") or []
    for edge in edges:
      node = edge.get("node") or {}
      if node.get("cancelledAt"):
        continue
      return {
          "id": str(node.get("legacyResourceId") or node.get("id")),
          "name": node.get("name"),
      }
    return None
