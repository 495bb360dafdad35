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

"""Tests for processor notification settlement."""

import asyncio

from absl.testing import absltest
from marketplace_settlement import db
from marketplace_settlement import testing
from marketplace_settlement.clients.fakes import FakeProcessorClient
from marketplace_settlement.clients.fakes import FakeStorefrontClient
from marketplace_settlement.enums import FulfillmentStatus
from marketplace_settlement.enums import PaymentMode
from marketplace_settlement.enums import StorePaymentStatus
from marketplace_settlement.enums import TransactionStatus
from marketplace_settlement.exceptions import ProcessorUnavailableError
from sqlalchemy import select

ACME = "acme.example"
BETA = "beta.example"


class SettlementProcessorTest(testing.DatabaseTestCase):

  def setUp(self) -> None:
    super().setUp()
    self.processor = FakeProcessorClient()
    self.storefront = FakeStorefrontClient()

  async def _paid_checkout(self, session, mode=PaymentMode.MULTI):
    """Creates a two-storefront transaction and its charge intents."""
    await testing.seed_store(
        session,
        ACME,
        "Acme",
        collector_id="111",
        commission_rate=0.1,
        access_token="acme-token",
    )
    await testing.seed_store(session, BETA, "Beta")
    services = testing.build_services(
        session, self.settings, self.processor, self.storefront
    )
    transaction = await services.ledger.create(
        [testing.cart_line(ACME, 60000), testing.cart_line(BETA, 30000)],
        testing.buyer(),
        testing.address(),
        {ACME: testing.quote(3990)},
    )
    await services.splitter.split(transaction.id, mode)
    return services, transaction.id

  async def _events(self, session):
    result = await session.execute(
        select(db.WebhookEvent).order_by(db.WebhookEvent.id)
    )
    return [event.outcome for event in result.scalars().all()]

  def test_approval_of_one_storefront_is_partial(self) -> None:
    async def scenario(session):
      services, tx = await self._paid_checkout(session)
      self.processor.add_payment(
          "pay-1", "approved", f"{tx}|{ACME}", fee_amount=1200
      )
      result = await services.settlement.handle_notification(
          "payment", "pay-1", ACME
      )
      return (
          result,
          await services.ledger.get_transaction(tx),
          await db.get_store_payment(session, tx, ACME),
          await db.get_store_payment(session, tx, BETA),
          await db.get_fulfillment_orders(session, tx),
      )

    result, transaction, acme, beta, orders = self.run_db(scenario)

    self.assertEqual(result.status, "applied")
    self.assertEqual(result.store_keys, [ACME])
    self.assertEqual(transaction.status, TransactionStatus.PARTIAL.value)
    self.assertEqual(transaction.completed_payments, 1)
    self.assertEqual(acme.status, StorePaymentStatus.APPROVED.value)
    self.assertEqual(acme.processor_payment_id, "pay-1")
    self.assertEqual(acme.processor_fee_amount, 1200)
    self.assertEqual(acme.payment_method, "visa")
    self.assertIsNotNone(acme.paid_at)
    self.assertIsNotNone(acme.store_order_id)
    self.assertEqual(beta.status, StorePaymentStatus.PENDING.value)
    self.assertEqual(
        [(o.store_key, o.status) for o in orders],
        [(ACME, FulfillmentStatus.CREATED.value)],
    )
    self.assertLen(self.storefront.orders_for(ACME), 1)
    self.assertEqual(self.storefront.orders_for(BETA), [])

  def test_redelivery_is_idempotent(self) -> None:
    async def scenario(session):
      services, tx = await self._paid_checkout(session)
      self.processor.add_payment("pay-1", "approved", f"{tx}|{ACME}")
      first = await services.settlement.handle_notification(
          "payment", "pay-1", ACME
      )
      second = await services.settlement.handle_notification(
          "payment", "pay-1", ACME
      )
      return (
          first,
          second,
          await services.ledger.get_transaction(tx),
          await db.get_fulfillment_orders(session, tx),
          await self._events(session),
      )

    first, second, transaction, orders, events = self.run_db(scenario)

    self.assertEqual(first.status, "applied")
    self.assertEqual(second.status, "duplicate")
    self.assertEqual(transaction.completed_payments, 1)
    self.assertLen(orders, 1)
    self.assertLen(self.storefront.orders_for(ACME), 1)
    self.assertEqual(events, ["applied", "duplicate"])

  def test_all_storefronts_approved(self) -> None:
    async def scenario(session):
      services, tx = await self._paid_checkout(session)
      self.processor.add_payment("pay-1", "approved", f"{tx}|{ACME}")
      self.processor.add_payment("pay-2", "approved", f"{tx}|{BETA}")
      # Deliveries may arrive in any order.
      await services.settlement.handle_notification("payment", "pay-2", BETA)
      await services.settlement.handle_notification("payment", "pay-1", ACME)
      return await services.ledger.get(tx)

    view = self.run_db(scenario)

    self.assertEqual(view.status, TransactionStatus.APPROVED.value)
    self.assertEqual(view.completed_payments, 2)
    self.assertIsNotNone(view.finalized_at)
    self.assertEqual(
        sorted(o.store_key for o in view.fulfillment_orders), [ACME, BETA]
    )

  def test_redelivery_repairs_a_lost_outcome_recompute(self) -> None:
    async def scenario(session):
      services, tx = await self._paid_checkout(session)
      self.processor.add_payment("pay-1", "approved", f"{tx}|{ACME}")
      self.processor.add_payment("pay-2", "approved", f"{tx}|{BETA}")
      await services.settlement.handle_notification("payment", "pay-1", ACME)

      recompute = services.ledger.record_payment_outcome

      async def fail_once(transaction_id):
        services.ledger.record_payment_outcome = recompute
        raise RuntimeError("connection lost")

      services.ledger.record_payment_outcome = fail_once
      with self.assertRaises(RuntimeError):
        await services.settlement.handle_notification(
            "payment", "pay-2", BETA
        )
      stale = (await db.get_transaction(session, tx)).status

      redelivered = await services.settlement.handle_notification(
          "payment", "pay-2", BETA
      )
      return stale, redelivered, await services.ledger.get_transaction(tx)

    stale, redelivered, transaction = self.run_db(scenario)

    self.assertEqual(stale, TransactionStatus.PARTIAL.value)
    self.assertEqual(redelivered.status, "duplicate")
    self.assertEqual(transaction.status, TransactionStatus.APPROVED.value)
    self.assertEqual(transaction.completed_payments, 2)
    self.assertLen(self.storefront.orders_for(BETA), 1)

  def test_concurrent_approvals_settle_the_transaction(self) -> None:
    async def scenario(manager):
      async with manager.session_factory() as session:
        _, tx = await self._paid_checkout(session)
      self.processor.add_payment("pay-1", "approved", f"{tx}|{ACME}")
      self.processor.add_payment("pay-2", "approved", f"{tx}|{BETA}")

      async def deliver(payment_id, store):
        async with manager.session_factory() as session:
          services = testing.build_services(
              session, self.settings, self.processor, self.storefront
          )
          return await services.settlement.handle_notification(
              "payment", payment_id, store
          )

      results = await asyncio.gather(
          deliver("pay-1", ACME), deliver("pay-2", BETA)
      )
      async with manager.session_factory() as session:
        transaction = await db.get_transaction(session, tx)
      return results, transaction

    results, transaction = self.run_manager(scenario)

    self.assertEqual([r.status for r in results], ["applied", "applied"])
    self.assertEqual(transaction.status, TransactionStatus.APPROVED.value)
    self.assertEqual(transaction.completed_payments, 2)
    self.assertEqual(transaction.failed_payments, 0)

  def test_terminal_payment_never_moves_again(self) -> None:
    async def scenario(session):
      services, tx = await self._paid_checkout(session)
      self.processor.add_payment("pay-1", "rejected", f"{tx}|{ACME}")
      await services.settlement.handle_notification("payment", "pay-1", ACME)
      # A late or forged approval of the same payment.
      self.processor.add_payment("pay-1", "approved", f"{tx}|{ACME}")
      late = await services.settlement.handle_notification(
          "payment", "pay-1", ACME
      )
      return (
          late,
          await services.ledger.get_transaction(tx),
          await db.get_store_payment(session, tx, ACME),
      )

    late, transaction, acme = self.run_db(scenario)

    self.assertEqual(late.status, "duplicate")
    self.assertEqual(acme.status, StorePaymentStatus.REJECTED.value)
    self.assertEqual(transaction.status, TransactionStatus.PENDING.value)
    self.assertEqual(transaction.failed_payments, 1)
    self.assertEqual(self.storefront.orders_for(ACME), [])

  def test_processing_then_approved(self) -> None:
    async def scenario(session):
      services, tx = await self._paid_checkout(session)
      self.processor.add_payment("pay-1", "in_process", f"{tx}|{ACME}")
      processing = await services.settlement.handle_notification(
          "payment", "pay-1", ACME
      )
      status_after_processing = (
          await db.get_store_payment(session, tx, ACME)
      ).status
      self.processor.add_payment("pay-1", "approved", f"{tx}|{ACME}")
      approved = await services.settlement.handle_notification(
          "payment", "pay-1", ACME
      )
      return processing, status_after_processing, approved

    processing, status_after_processing, approved = self.run_db(scenario)

    self.assertEqual(processing.status, "applied")
    self.assertEqual(
        status_after_processing, StorePaymentStatus.PROCESSING.value
    )
    self.assertEqual(approved.status, "applied")
    self.assertLen(self.storefront.orders_for(ACME), 1)

  def test_unknown_reference_is_acknowledged_without_changes(self) -> None:
    async def scenario(session):
      services, tx = await self._paid_checkout(session)
      self.processor.add_payment("pay-1", "approved", f"{tx}|other.example")
      self.processor.add_payment("pay-2", "approved", f"{tx + 100}|{ACME}")
      unknown_store = await services.settlement.handle_notification(
          "payment", "pay-1", "other.example"
      )
      unknown_tx = await services.settlement.handle_notification(
          "payment", "pay-2"
      )
      return (
          unknown_store,
          unknown_tx,
          await services.ledger.get(tx),
          await self._events(session),
      )

    unknown_store, unknown_tx, view, events = self.run_db(scenario)

    self.assertEqual(unknown_store.status, "unknown_reference")
    self.assertEqual(unknown_tx.status, "unknown_reference")
    self.assertEqual(view.status, TransactionStatus.PENDING.value)
    self.assertEqual(
        [p.status for p in view.store_payments],
        [StorePaymentStatus.PENDING.value] * 2,
    )
    self.assertEqual(view.fulfillment_orders, [])
    self.assertEqual(events, ["unknown_reference", "unknown_reference"])

  def test_malformed_reference_and_unknown_status(self) -> None:
    async def scenario(session):
      services, tx = await self._paid_checkout(session)
      self.processor.add_payment("pay-1", "approved", "not-a-reference")
      self.processor.add_payment("pay-2", "mystery", f"{tx}|{ACME}")
      malformed = await services.settlement.handle_notification(
          "payment", "pay-1"
      )
      unknown = await services.settlement.handle_notification(
          "payment", "pay-2"
      )
      return malformed, unknown, await db.get_store_payment(session, tx, ACME)

    malformed, unknown, acme = self.run_db(scenario)

    self.assertEqual(malformed.status, "malformed_reference")
    self.assertEqual(unknown.status, "unknown_status")
    self.assertEqual(acme.status, StorePaymentStatus.PENDING.value)

  def test_non_payment_events_are_ignored(self) -> None:
    async def scenario(session):
      services, _ = await self._paid_checkout(session)
      merchant_order = await services.settlement.handle_notification(
          "merchant_order", "mo-1"
      )
      missing_id = await services.settlement.handle_notification(
          "payment", None
      )
      return merchant_order, missing_id

    merchant_order, missing_id = self.run_db(scenario)

    self.assertEqual(merchant_order.status, "ignored")
    self.assertEqual(missing_id.status, "ignored")
    self.assertEqual(
        [c for c in self.processor.calls if c["op"] == "get_payment"], []
    )

  def test_unavailable_processor_is_raised_for_redelivery(self) -> None:
    async def scenario(session):
      services, tx = await self._paid_checkout(session)
      self.processor.add_payment("pay-1", "approved", f"{tx}|{ACME}")
      self.processor.unavailable = True
      with self.assertRaises(ProcessorUnavailableError):
        await services.settlement.handle_notification("payment", "pay-1", ACME)
      return await db.get_store_payment(session, tx, ACME)

    acme = self.run_db(scenario)

    self.assertEqual(acme.status, StorePaymentStatus.PENDING.value)

  def test_failed_handoff_is_retried_on_redelivery(self) -> None:
    async def scenario(session):
      services, tx = await self._paid_checkout(session)
      self.processor.add_payment("pay-1", "approved", f"{tx}|{ACME}")
      self.processor.add_payment("pay-2", "approved", f"{tx}|{BETA}")
      self.storefront.failing_draft_domains.add(ACME)
      await services.settlement.handle_notification("payment", "pay-1", ACME)
      await services.settlement.handle_notification("payment", "pay-2", BETA)
      after_failure = [
          (o.store_key, o.status)
          for o in await db.get_fulfillment_orders(session, tx)
      ]

      self.storefront.failing_draft_domains.clear()
      redelivered = await services.settlement.handle_notification(
          "payment", "pay-1", ACME
      )
      return (
          after_failure,
          redelivered,
          await services.ledger.get(tx),
      )

    after_failure, redelivered, view = self.run_db(scenario)

    self.assertEqual(
        after_failure,
        [
            (ACME, FulfillmentStatus.FAILED.value),
            (BETA, FulfillmentStatus.CREATED.value),
        ],
    )
    self.assertEqual(redelivered.status, "duplicate")
    self.assertEqual(view.status, TransactionStatus.APPROVED.value)
    self.assertEqual(
        [(o.store_key, o.status) for o in view.fulfillment_orders],
        [
            (ACME, FulfillmentStatus.FAILED.value),
            (BETA, FulfillmentStatus.CREATED.value),
            (ACME, FulfillmentStatus.CREATED.value),
        ],
    )

  def test_single_mode_payment_settles_every_storefront(self) -> None:
    async def scenario(session):
      services, tx = await self._paid_checkout(session, PaymentMode.SINGLE)
      self.processor.add_payment("pay-1", "approved", str(tx), fee_amount=900)
      result = await services.settlement.handle_notification("payment", "pay-1")
      return result, await services.ledger.get(tx)

    result, view = self.run_db(scenario)

    self.assertEqual(result.store_keys, [ACME, BETA])
    self.assertEqual(view.status, TransactionStatus.APPROVED.value)
    self.assertEqual(
        [p.status for p in view.store_payments],
        [StorePaymentStatus.APPROVED.value] * 2,
    )
    self.assertEqual(
        [p.processor_payment_id for p in view.store_payments],
        ["pay-1", "pay-1"],
    )
    self.assertLen(view.fulfillment_orders, 2)

  def test_payment_is_fetched_with_the_storefront_token(self) -> None:
    async def scenario(session):
      services, tx = await self._paid_checkout(session)
      self.processor.add_payment("pay-1", "pending", f"{tx}|{ACME}")
      self.processor.add_payment("pay-2", "pending", f"{tx}|{BETA}")
      await services.settlement.handle_notification("payment", "pay-1", ACME)
      await services.settlement.handle_notification("payment", "pay-2", BETA)
      await db.mark_credential_revoked(session, ACME)
      await session.commit()
      await services.settlement.handle_notification("payment", "pay-1", ACME)

    self.run_db(scenario)

    tokens = [
        c["access_token"] for c in self.processor.calls
        if c["op"] == "get_payment"
    ]
    self.assertEqual(tokens, ["acme-token", "platform-token", "platform-token"])


if __name__ == "__main__":
  absltest.main()
