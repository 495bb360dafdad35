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

"""Tests for storefront processor credentials."""

import asyncio
import datetime

from absl.testing import absltest
from marketplace_settlement import db
from marketplace_settlement import testing
from marketplace_settlement.clients.fakes import FakeProcessorClient
from marketplace_settlement.exceptions import CredentialRefreshError
from marketplace_settlement.exceptions import CredentialRevokedError
from marketplace_settlement.exceptions import ProcessorError
from marketplace_settlement.exceptions import ResourceNotFoundError
from marketplace_settlement.models import TokenGrant
from marketplace_settlement.services.credential_manager import CredentialManager
from marketplace_settlement.services.credential_manager import KeyedLocks

ACME = "acme.example"
BETA = "beta.example"


def _in(**delta) -> str:
  return (
      datetime.datetime.now(datetime.timezone.utc)
      + datetime.timedelta(**delta)
  ).isoformat()


class CredentialManagerTest(testing.DatabaseTestCase):

  def setUp(self) -> None:
    super().setUp()
    self.processor = FakeProcessorClient()
    self.locks = KeyedLocks()

  def _manager(self, session) -> CredentialManager:
    return CredentialManager(
        session, self.processor, self.settings, self.locks
    )

  def _refresh_calls(self):
    return [c for c in self.processor.calls if c["op"] == "refresh_grant"]

  def test_token_outside_window_is_used_as_is(self) -> None:
    async def scenario(session):
      await testing.seed_store(
          session, ACME, access_token="current", expires_at=_in(days=30)
      )
      return await self._manager(session).get_valid_token(ACME)

    self.assertEqual(self.run_db(scenario), "current")
    self.assertEqual(self._refresh_calls(), [])

  def test_unconnected_storefront_has_no_token(self) -> None:
    async def scenario(session):
      await testing.seed_store(session, ACME)
      return await self._manager(session).get_valid_token(ACME)

    self.assertIsNone(self.run_db(scenario))

  def test_token_inside_window_is_refreshed(self) -> None:
    async def scenario(session):
      await testing.seed_store(
          session, ACME, access_token="current", expires_at=_in(days=1)
      )
      token = await self._manager(session).get_valid_token("real-acme.example")
      return token, await db.get_credential(session, ACME)

    token, credential = self.run_db(scenario)

    self.assertEqual(token, credential.access_token)
    self.assertTrue(token.startswith("access-"))
    self.assertTrue(credential.refresh_token.startswith("refresh-"))
    self.assertGreater(credential.expires_at, _in(days=100))
    self.assertEqual(
        self._refresh_calls(),
        [{"op": "refresh_grant", "refresh_token": f"refresh-{ACME}"}],
    )

  def test_failed_refresh_keeps_unexpired_token(self) -> None:
    self.processor.refresh_error = ProcessorError(
        "Payment processor rejected refresh-token grant: 500", status=500
    )

    async def scenario(session):
      await testing.seed_store(
          session, ACME, access_token="current", expires_at=_in(hours=2)
      )
      return await self._manager(session).get_valid_token(ACME)

    self.assertEqual(self.run_db(scenario), "current")

  def test_failed_refresh_of_expired_token_raises(self) -> None:
    self.processor.refresh_error = ProcessorError(
        "Payment processor rejected refresh-token grant: 500", status=500
    )

    async def scenario(session):
      await testing.seed_store(
          session, ACME, access_token="current", expires_at=_in(hours=-1)
      )
      with self.assertRaises(CredentialRefreshError):
        await self._manager(session).get_valid_token(ACME)

    self.run_db(scenario)

  def test_invalid_grant_marks_credential_revoked(self) -> None:
    self.processor.refresh_error = ProcessorError(
        "Payment processor rejected refresh-token grant: 400",
        status=400,
        body={"error": "invalid_grant", "message": "invalid refresh_token"},
    )

    async def scenario(session):
      await testing.seed_store(
          session, ACME, access_token="current", expires_at=_in(hours=2)
      )
      manager = self._manager(session)
      with self.assertRaises(CredentialRevokedError):
        await manager.refresh(ACME)
      with self.assertRaises(CredentialRevokedError):
        await manager.get_valid_token(ACME)
      return await db.get_credential(session, ACME)

    credential = self.run_db(scenario)

    self.assertIsNotNone(credential.revoked_at)
    self.assertEqual(credential.access_token, "current")
    self.assertLen(self._refresh_calls(), 1)

  def test_refresh_unknown_storefront(self) -> None:
    async def scenario(session):
      with self.assertRaises(ResourceNotFoundError):
        await self._manager(session).refresh(ACME)

    self.run_db(scenario)

  def test_concurrent_requests_refresh_once(self) -> None:
    async def scenario(manager):
      async with manager.session_factory() as session:
        await testing.seed_store(
            session, ACME, access_token="current", expires_at=_in(hours=2)
        )

      async def get_token():
        async with manager.session_factory() as session:
          return await self._manager(session).get_valid_token(ACME)

      return await asyncio.gather(get_token(), get_token(), get_token())

    tokens = self.run_manager(scenario)

    self.assertLen(set(tokens), 1)
    self.assertLen(self._refresh_calls(), 1)

  def test_connect_stores_grant_and_account(self) -> None:
    self.processor.grants["auth-code"] = TokenGrant(
        access_token="acme-access",
        refresh_token="acme-refresh",
        expires_in=15552000,
        user_id=987654,
        public_key="APP_USR-pk",
    )
    self.processor.accounts["acme-access"] = {"email": "owner@acme.example"}

    async def scenario(session):
      await testing.seed_store(session, ACME)
      return await self._manager(session).connect(
          "real-acme.example", "auth-code"
      )

    credential = self.run_db(scenario)

    self.assertEqual(credential.store_domain, ACME)
    self.assertEqual(credential.access_token, "acme-access")
    self.assertEqual(credential.refresh_token, "acme-refresh")
    self.assertEqual(credential.collector_id, "987654")
    self.assertEqual(credential.account_email, "owner@acme.example")
    self.assertEqual(credential.commission_rate, 0.0)
    self.assertIsNone(credential.revoked_at)
    exchange = self.processor.calls[0]
    self.assertEqual(
        exchange["redirect_uri"], "https://settlement.example/oauth/callback"
    )

  def test_reconnect_keeps_commission_and_clears_revocation(self) -> None:
    self.processor.grants["auth-code"] = TokenGrant(
        access_token="new-access", refresh_token="new-refresh", user_id="1"
    )

    async def scenario(session):
      await testing.seed_store(
          session, ACME, access_token="old", commission_rate=0.15
      )
      await db.mark_credential_revoked(session, ACME)
      await session.commit()
      return await self._manager(session).connect(ACME, "auth-code")

    credential = self.run_db(scenario)

    self.assertEqual(credential.commission_rate, 0.15)
    self.assertIsNone(credential.revoked_at)
    self.assertIsNone(credential.account_email)

  def test_connect_errors(self) -> None:
    async def scenario(session):
      await testing.seed_store(session, ACME)
      manager = self._manager(session)
      with self.assertRaises(ResourceNotFoundError):
        await manager.connect("ghost.example", "auth-code")
      with self.assertRaises(ProcessorError):
        await manager.connect(ACME, "unknown-code")
      return await db.get_credential(session, ACME)

    self.assertIsNone(self.run_db(scenario))

  def test_refresh_expiring_isolates_failures(self) -> None:
    async def scenario(session):
      await testing.seed_store(
          session, ACME, access_token="acme", expires_at=_in(days=1)
      )
      await testing.seed_store(
          session, BETA, access_token="beta", expires_at=_in(days=2)
      )
      await testing.seed_store(
          session,
          "gamma.example",
          access_token="gamma",
          expires_at=_in(days=90),
      )
      # Beta has lost its refresh token.
      beta = await db.get_credential(session, BETA)
      beta.refresh_token = None
      await db.save_credential(
          session, ACME, {"refresh_token": "acme-refresh"}
      )
      await session.commit()
      return await self._manager(session).refresh_expiring()

    results = self.run_db(scenario)

    self.assertEqual([r.store for r in results], [ACME])
    self.assertIsNone(results[0].error)
    self.assertEqual(
        self._refresh_calls(),
        [{"op": "refresh_grant", "refresh_token": "acme-refresh"}],
    )

  def test_refresh_expiring_reports_errors(self) -> None:
    self.processor.refresh_error = ProcessorError(
        "Payment processor rejected refresh-token grant: 500", status=500
    )

    async def scenario(session):
      await testing.seed_store(
          session, ACME, access_token="acme", expires_at=_in(days=1)
      )
      await testing.seed_store(
          session, BETA, access_token="beta", expires_at=_in(days=2)
      )
      return await self._manager(session).refresh_expiring()

    results = self.run_db(scenario)

    self.assertEqual(sorted(r.store for r in results), [ACME, BETA])
    for result in results:
      self.assertIn("Failed to refresh", result.error)


if __name__ == "__main__":
  absltest.main()
