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

"""Tests for the payment processor client."""

import asyncio
import json
import urllib.parse

from absl.testing import absltest
import httpx
from marketplace_settlement.clients.http import RetryPolicy
from marketplace_settlement.clients.processor import is_revoked_grant
from marketplace_settlement.clients.processor import ProcessorClient
from marketplace_settlement.exceptions import ProcessorError
from marketplace_settlement.exceptions import ProcessorUnavailableError


class ProcessorClientTest(absltest.TestCase):

  def setUp(self) -> None:
    super().setUp()
    self.requests = []
    self.responses = []

  def _handler(self, request: httpx.Request) -> httpx.Response:
    self.requests.append(request)
    response = self.responses.pop(0)
    if isinstance(response, Exception):
      raise response
    return response

  def _call(self, operation):
    async def runner():
      async with httpx.AsyncClient(
          base_url="https://processor.example",
          transport=httpx.MockTransport(self._handler),
      ) as client:
        processor = ProcessorClient(
            client,
            client_id="marketplace-app",
            client_secret="app-secret",
            retry_policy=RetryPolicy(attempts=3, backoff=0),
        )
        return await operation(processor)

    return asyncio.run(runner())

  def test_create_intent_sends_token_and_idempotency_key(self) -> None:
    self.responses.append(
        httpx.Response(
            201, json={"id": "pref-1", "init_point": "https://pay/pref-1"}
        )
    )

    preference = self._call(
        lambda p: p.create_intent(
            {"external_reference": "7|acme.example"}, "acme-token", "7|acme"
        )
    )

    self.assertEqual(preference["id"], "pref-1")
    request = self.requests[0]
    self.assertEqual(request.method, "POST")
    self.assertEqual(request.url.path, "/checkout/preferences")
    self.assertEqual(request.headers["Authorization"], "Bearer acme-token")
    self.assertEqual(request.headers["X-Idempotency-Key"], "7|acme")
    self.assertEqual(
        json.loads(request.content),
        {"external_reference": "7|acme.example"},
    )

  def test_transient_failures_are_retried(self) -> None:
    self.responses.extend([
        httpx.Response(503, json={"message": "try later"}),
        httpx.ConnectError("connection reset"),
        httpx.Response(
            200,
            json={
                "id": 123456,
                "status": "approved",
                "external_reference": "7|acme.example",
                "fee_details": [
                    {"type": "mercadopago_fee", "amount": 1190.4},
                    {"type": "application_fee", "amount": 6000},
                ],
            },
        ),
    ])

    payment = self._call(lambda p: p.get_payment("123456", "acme-token"))

    self.assertLen(self.requests, 3)
    self.assertEqual(payment.id, "123456")
    self.assertEqual(payment.fee_amount, 7190)

  def test_exhausted_retries_mean_unavailable(self) -> None:
    self.responses.extend(httpx.Response(502) for _ in range(3))

    with self.assertRaises(ProcessorUnavailableError):
      self._call(lambda p: p.get_payment("1", "token"))
    self.assertLen(self.requests, 3)

  def test_client_errors_are_not_retried(self) -> None:
    self.responses.append(
        httpx.Response(404, json={"message": "payment not found"})
    )

    with self.assertRaises(ProcessorError) as raised:
      self._call(lambda p: p.get_payment("1", "token"))

    self.assertLen(self.requests, 1)
    self.assertEqual(raised.exception.status, 404)
    self.assertEqual(raised.exception.body, {"message": "payment not found"})

  def test_refresh_grant_posts_form(self) -> None:
    self.responses.append(
        httpx.Response(
            200,
            json={
                "access_token": "new-access",
                "refresh_token": "new-refresh",
                "expires_in": 15552000,
                "user_id": 987654,
            },
        )
    )

    grant = self._call(lambda p: p.refresh_grant("old-refresh"))

    self.assertEqual(grant.access_token, "new-access")
    self.assertEqual(grant.user_id, "987654")
    form = urllib.parse.parse_qs(self.requests[0].content.decode())
    self.assertEqual(form["grant_type"], ["refresh_token"])
    self.assertEqual(form["refresh_token"], ["old-refresh"])
    self.assertEqual(form["client_id"], ["marketplace-app"])

  def test_revoked_grant_detection(self) -> None:
    self.responses.append(
        httpx.Response(
            400, json={"error": "invalid_grant", "message": "expired"}
        )
    )

    with self.assertRaises(ProcessorError) as raised:
      self._call(lambda p: p.refresh_grant("old-refresh"))

    self.assertTrue(is_revoked_grant(raised.exception))
    self.assertFalse(
        is_revoked_grant(ProcessorError("boom", status=400, body="oops"))
    )
    self.assertFalse(
        is_revoked_grant(
            ProcessorError("boom", status=500, body={"error": "invalid_grant"})
        )
    )


if __name__ == "__main__":
  absltest.main()
