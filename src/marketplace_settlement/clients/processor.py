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

"""Payment processor client.

Talks to a MercadoPago-style REST API: checkout preferences act as charge
intents, payments are fetched by id after a notification, and storefronts
grant the marketplace access to their accounts through OAuth.
"""

import logging
from typing import Any, Dict, Optional

import httpx
from marketplace_settlement.clients import http
from marketplace_settlement.exceptions import ProcessorError
from marketplace_settlement.exceptions import ProcessorUnavailableError
from marketplace_settlement.models import ProcessorPayment
from marketplace_settlement.models import TokenGrant

logger = logging.getLogger(__name__)

INVALID_GRANT = "invalid_grant"


class ProcessorClient:
  """Client for the payment processor API."""

  def __init__(
      self,
      client: httpx.AsyncClient,
      client_id: Optional[str] = None,
      client_secret: Optional[str] = None,
      retry_policy: Optional[http.RetryPolicy] = None,
  ):
    self._client = client
    self._client_id = client_id
    self._client_secret = client_secret
    self._retry_policy = retry_policy or http.RetryPolicy()

  async def _request(
      self, method: str, path: str, operation: str, **kwargs: Any
  ) -> Any:
    try:
      response = await http.send(
          self._client, self._retry_policy, method, path, **kwargs
      )
    except (http.TransientHTTPError, httpx.TransportError) as e:
      logger.error("Payment processor unavailable during %s: %s", operation, e)
      raise ProcessorUnavailableError(
          f"Payment processor unavailable during {operation}"
      ) from e

    body = http.response_body(response)
    if response.is_error:
      logger.error(
          "Payment processor rejected %s: %d %s",
          operation,
          response.status_code,
          body,
      )
      raise ProcessorError(
          f"Payment processor rejected {operation}: {response.status_code}",
          status=response.status_code,
          body=body,
      )
    return body

  async def create_intent(
      self,
      body: Dict[str, Any],
      access_token: str,
      idempotency_key: str,
  ) -> Dict[str, Any]:
    """Creates a checkout preference.

    Args:
      body: The preference payload (items, payer, external reference, ...).
      access_token: Token of the account that will collect the payment.
      idempotency_key: Key that makes a repeated request return the same
        preference.

    Returns:
      The processor's preference, including `id` and `init_point`.
    """
    return await self._request(
        "POST",
        "/checkout/preferences",
        "create-intent",
        json=body,
        headers={
            "Authorization": f"Bearer {access_token}",
            "X-Idempotency-Key": idempotency_key,
        },
    )

  async def get_payment(
      self, payment_id: str, access_token: str
  ) -> ProcessorPayment:
    """Fetches the full detail of a payment named by a notification."""
    body = await self._request(
        "GET",
        f"/v1/payments/{payment_id}",
        "get-payment",
        headers={"Authorization": f"Bearer {access_token}"},
    )
    return ProcessorPayment.model_validate(body)

  async def exchange_code(self, code: str, redirect_uri: str) -> TokenGrant:
    """Runs the OAuth authorization-code grant."""
    body = await self._request(
        "POST",
        "/oauth/token",
        "authorization-code grant",
        data={
            "grant_type": "authorization_code",
            "client_id": self._client_id or "",
            "client_secret": self._client_secret or "",
            "code": code,
            "redirect_uri": redirect_uri,
        },
        headers={"Accept": "application/json"},
    )
    return TokenGrant.model_validate(body)

  async def refresh_grant(self, refresh_token: str) -> TokenGrant:
    """Runs the OAuth refresh-token grant."""
    body = await self._request(
        "POST",
        "/oauth/token",
        "refresh-token grant",
        data={
            "grant_type": "refresh_token",
            "client_id": self._client_id or "",
            "client_secret": self._client_secret or "",
            "refresh_token": refresh_token,
        },
        headers={"Accept": "application/json"},
    )
    return TokenGrant.model_validate(body)

  async def get_account(self, access_token: str) -> Dict[str, Any]:
    """Fetches the processor account a token belongs to."""
    return await self._request(
        "GET",
        "/users/me",
        "get-account",
        headers={"Authorization": f"Bearer {access_token}"},
    )


def is_revoked_grant(error: ProcessorError) -> bool:
  """Whether a failed token grant means the storefront revoked access."""
  body = error.body if isinstance(error.body, dict) else {}
  return error.status in (400, 401) and (
      body.get("error") == INVALID_GRANT or body.get("message") == INVALID_GRANT
  )
