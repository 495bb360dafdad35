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

"""Utility script to dump the settlement ledger.

This script reads the configured ledger database and prints every transaction
(or a single one) with its per-storefront payments and fulfillment orders. It
is useful for debugging stuck settlements and deciding which handoffs need a
replay.

Usage:
  uv run dump-transactions --database_url=sqlite+aiosqlite:///marketplace.db
  uv run dump-transactions --transaction_id=42
"""

import asyncio
from typing import List

from absl import app as absl_app
from absl import flags
from marketplace_settlement import config
from marketplace_settlement import db

FLAGS = flags.FLAGS

try:
  flags.DEFINE_integer(
      "transaction_id", None, "Only dump this transaction"
  )
except flags.DuplicateFlagError:
  pass


def format_transaction(
    transaction: db.Transaction,
    payments: List[db.StorePayment],
    orders: List[db.FulfillmentOrder],
) -> List[str]:
  """Renders one transaction as printable lines."""
  lines = [
      f"Transaction: {transaction.id} [{transaction.status}]"
      f" mode={transaction.payment_mode or '-'}",
      f"  Buyer: {transaction.buyer_name} <{transaction.buyer_email}>",
      f"  Total: {transaction.total_amount} {transaction.currency}"
      f" (items {transaction.subtotal_amount},"
      f" shipping {transaction.shipping_amount})",
      f"  Payments: {transaction.completed_payments}/"
      f"{transaction.total_payments} completed,"
      f" {transaction.failed_payments} failed",
  ]
  if not payments:
    lines.append("  (No store payments)")
  for payment in payments:
    lines.append(
        f"  - {payment.store_key} [{payment.status}] gross"
        f" {payment.gross_amount} fee {payment.application_fee} net"
        f" {payment.net_amount} intent {payment.intent_id or '-'}"
        f" order {payment.store_order_number or '-'}"
    )
    if payment.last_error:
      lines.append(f"      error: {payment.last_error}")
  for order in orders:
    lines.append(
        f"  * order {order.store_key} [{order.status}]"
        f" {order.store_order_number or ''}"
        f"{' ' + order.error_message if order.error_message else ''}"
    )
  return lines


async def dump_transactions():
  """Queries the database and prints the ledger."""
  manager = db.DatabaseManager()
  await manager.init_db(config.FLAGS.database_url)
  try:
    async with manager.session_factory() as session:
      if FLAGS.transaction_id is not None:
        transaction = await db.get_transaction(session, FLAGS.transaction_id)
        transactions = [transaction] if transaction else []
      else:
        transactions = await db.get_transactions(session)

      if not transactions:
        print("No transactions found.")
        return

      for transaction in transactions:
        payments = await db.get_store_payments(session, transaction.id)
        orders = await db.get_fulfillment_orders(session, transaction.id)
        for line in format_transaction(transaction, payments, orders):
          print(line)
        print("-" * 60)
  finally:
    await manager.close()


def main(argv):
  """Main entry point for the transaction dump script."""
  del argv
  asyncio.run(dump_transactions())


def run() -> None:
  absl_app.run(main)


if __name__ == "__main__":
  run()
