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

"""Tests for the payment splitter."""

from absl.testing import absltest
from absl.testing import parameterized
from marketplace_settlement import db
from marketplace_settlement import testing
from marketplace_settlement.clients.fakes import FakeProcessorClient
from marketplace_settlement.clients.fakes import FakeStorefrontClient
from marketplace_settlement.enums import PaymentMode
from marketplace_settlement.enums import TransactionStatus
from marketplace_settlement.exceptions import InvalidRequestError
from marketplace_settlement.exceptions import TransactionNotPayableError
from marketplace_settlement.services.payment_splitter import application_fee

ACME = "acme.example"
BETA = "beta.example"


class ApplicationFeeTest(parameterized.TestCase):

  @parameterized.parameters(
      (60000, 0.1, 6000),
      (30000, 0.1, 3000),
      (1005, 0.01, 10),
      (1050, 0.01, 11),  # 10.5 rounds half up.
      (999, 0.125, 125),  # 124.875
      (1000, 0.0, 0),
      (1000, None, 0),
  )
  def test_application_fee(self, gross, rate, expected) -> None:
    self.assertEqual(application_fee(gross, rate), expected)


class PaymentSplitterTest(testing.DatabaseTestCase):

  def setUp(self) -> None:
    super().setUp()
    self.processor = FakeProcessorClient()
    self.storefront = FakeStorefrontClient()

  async def _checkout(self, session, cart_lines=None, selection=None):
    """Seeds two connected storefronts and creates a transaction."""
    await testing.seed_store(
        session,
        ACME,
        "Acme",
        collector_id="111",
        commission_rate=0.1,
        access_token="acme-token",
    )
    await testing.seed_store(
        session,
        BETA,
        "Beta",
        collector_id="222",
        commission_rate=0.1,
        access_token="beta-token",
    )
    services = testing.build_services(
        session, self.settings, self.processor, self.storefront
    )
    transaction = await services.ledger.create(
        cart_lines
        or [
            testing.cart_line(ACME, 60000),
            testing.cart_line(BETA, 30000),
        ],
        testing.buyer(),
        testing.address(),
        selection if selection is not None else {},
    )
    return services, transaction

  def test_split_creates_one_intent_per_storefront(self) -> None:
    async def scenario(session):
      services, transaction = await self._checkout(session)
      response = await services.splitter.split(transaction.id)
      payments = await db.get_store_payments(session, transaction.id)
      reloaded = await services.ledger.get_transaction(transaction.id)
      return transaction, response, payments, reloaded

    transaction, response, payments, reloaded = self.run_db(scenario)

    self.assertEqual(response.total_payments, 2)
    self.assertEqual(response.errors, [])
    self.assertLen(response.intents, 2)
    self.assertEqual(reloaded.payment_mode, PaymentMode.MULTI.value)
    self.assertEqual(reloaded.total_payments, 2)

    by_store = {p.store_key: p for p in payments}
    self.assertEqual(by_store[ACME].gross_amount, 60000)
    self.assertEqual(by_store[ACME].application_fee, 6000)
    self.assertEqual(by_store[ACME].net_amount, 54000)
    self.assertEqual(by_store[BETA].gross_amount, 30000)
    self.assertEqual(by_store[BETA].application_fee, 3000)
    self.assertEqual(
        by_store[ACME].external_reference, f"{transaction.id}|{ACME}"
    )
    self.assertIsNotNone(by_store[ACME].checkout_url)

    acme_call = self.processor.intents_for(f"{transaction.id}|{ACME}")[0]
    self.assertEqual(acme_call["access_token"], "acme-token")
    self.assertEqual(
        acme_call["idempotency_key"], f"{transaction.id}|{ACME}"
    )
    body = acme_call["body"]
    self.assertEqual(body["collector_id"], "111")
    self.assertEqual(body["marketplace_fee"], 6000)
    self.assertEqual(
        body["notification_url"],
        f"https://settlement.example/webhooks/processor?store={ACME}",
    )
    self.assertEqual(
        body["back_urls"]["success"],
        "https://marketplace.example/payment/success"
        f"?tx={transaction.id}&store={ACME}",
    )
    self.assertEqual(body["payer"]["email"], "ana@example.com")
    self.assertEqual(
        [item["currency_id"] for item in body["items"]], ["CLP"]
    )

  def test_legacy_store_ids_share_one_payment(self) -> None:
    async def scenario(session):
      services, transaction = await self._checkout(
          session,
          cart_lines=[
              testing.cart_line("real-acme.example", 10000),
              testing.cart_line(ACME, 5000, quantity=2),
          ],
      )
      response = await services.splitter.split(transaction.id)
      return response, await db.get_store_payments(session, transaction.id)

    response, payments = self.run_db(scenario)

    self.assertEqual(response.total_payments, 1)
    self.assertEqual([p.store_key for p in payments], [ACME])
    self.assertEqual(payments[0].gross_amount, 20000)

  def test_shipping_is_charged_by_its_storefront(self) -> None:
    async def scenario(session):
      services, transaction = await self._checkout(
          session, selection={ACME: testing.quote(3990)}
      )
      await services.splitter.split(transaction.id)
      return transaction, await db.get_store_payments(session, transaction.id)

    transaction, payments = self.run_db(scenario)

    by_store = {p.store_key: p for p in payments}
    self.assertEqual(by_store[ACME].gross_amount, 63990)
    self.assertEqual(by_store[BETA].gross_amount, 30000)
    items = self.processor.intents_for(f"{transaction.id}|{ACME}")[0]["body"][
        "items"
    ]
    self.assertEqual(items[-1]["unit_price"], 3990)
    self.assertEqual(items[-1]["id"], f"shipping-{ACME}")

  def test_split_again_reuses_intents(self) -> None:
    async def scenario(session):
      services, transaction = await self._checkout(session)
      first = await services.splitter.split(transaction.id)
      second = await services.splitter.split(transaction.id)
      return first, second

    first, second = self.run_db(scenario)

    self.assertEqual(
        [i.intent_id for i in first.intents],
        [i.intent_id for i in second.intents],
    )
    create_calls = [
        c for c in self.processor.calls if c["op"] == "create_intent"
    ]
    self.assertLen(create_calls, 2)

  def test_failing_storefront_does_not_block_the_others(self) -> None:
    async def scenario(session):
      services, transaction = await self._checkout(session)
      self.processor.failing_references.add(f"{transaction.id}|{ACME}")
      failed = await services.splitter.split(transaction.id)
      payments = {
          p.store_key: (p.intent_id, p.last_error)
          for p in await db.get_store_payments(session, transaction.id)
      }

      self.processor.failing_references.clear()
      retried = await services.splitter.split(transaction.id)
      return failed, payments, retried

    failed, payments, retried = self.run_db(scenario)

    self.assertEqual([e.store for e in failed.errors], [ACME])
    self.assertEqual([i.store_keys for i in failed.intents], [[BETA]])
    self.assertIsNone(payments[ACME][0])
    self.assertIn("rejected", payments[ACME][1])
    self.assertIsNotNone(payments[BETA][0])
    self.assertIsNone(payments[BETA][1])

    self.assertEqual(retried.errors, [])
    self.assertLen(retried.intents, 2)

  def test_unconnected_storefront_uses_platform_account(self) -> None:
    async def scenario(session):
      await testing.seed_store(session, ACME, "Acme")
      services = testing.build_services(
          session, self.settings, self.processor, self.storefront
      )
      transaction = await services.ledger.create(
          [testing.cart_line(ACME, 60000)],
          testing.buyer(),
          testing.address(),
          {},
      )
      await services.splitter.split(transaction.id)
      return transaction, await db.get_store_payments(session, transaction.id)

    transaction, payments = self.run_db(scenario)

    self.assertEqual(payments[0].application_fee, 0)
    self.assertEqual(payments[0].net_amount, 60000)
    call = self.processor.intents_for(f"{transaction.id}|{ACME}")[0]
    self.assertEqual(call["access_token"], "platform-token")
    self.assertNotIn("collector_id", call["body"])
    self.assertNotIn("marketplace_fee", call["body"])

  def test_single_mode_creates_one_platform_intent(self) -> None:
    async def scenario(session):
      services, transaction = await self._checkout(
          session, selection={BETA: testing.quote(2990)}
      )
      response = await services.splitter.split(
          transaction.id, PaymentMode.SINGLE
      )
      payments = await db.get_store_payments(session, transaction.id)
      return transaction, response, payments

    transaction, response, payments = self.run_db(scenario)

    self.assertLen(response.intents, 1)
    self.assertEqual(response.intents[0].store_keys, [ACME, BETA])
    self.assertEqual(response.intents[0].amount, 92990)
    self.assertEqual(response.total_payments, 2)
    self.assertEqual(
        {p.external_reference for p in payments}, {str(transaction.id)}
    )
    self.assertLen({p.intent_id for p in payments}, 1)
    self.assertEqual([p.application_fee for p in payments], [0, 0])

    call = self.processor.intents_for(str(transaction.id))[0]
    self.assertEqual(call["access_token"], "platform-token")
    self.assertEqual(
        call["body"]["notification_url"],
        "https://settlement.example/webhooks/processor",
    )
    self.assertLen(call["body"]["items"], 3)

  def test_switching_mode_after_split_is_rejected(self) -> None:
    async def scenario(session):
      services, transaction = await self._checkout(session)
      await services.splitter.split(transaction.id, PaymentMode.MULTI)
      with self.assertRaises(InvalidRequestError):
        await services.splitter.split(transaction.id, PaymentMode.SINGLE)

    self.run_db(scenario)

  def test_finalized_transaction_is_not_payable(self) -> None:
    async def scenario(session):
      services, transaction = await self._checkout(session)
      await services.ledger.mark_status(
          transaction.id, TransactionStatus.REJECTED
      )
      with self.assertRaises(TransactionNotPayableError):
        await services.splitter.split(transaction.id)

    self.run_db(scenario)
    self.assertEqual(self.processor.calls, [])


if __name__ == "__main__":
  absltest.main()
