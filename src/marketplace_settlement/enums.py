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

"""Enumerations for the marketplace settlement server.

This module defines the lifecycle states of transactions, per-storefront
payments and fulfillment orders, plus the tiers a shipping quote can come from.
"""

import enum


class TransactionStatus(str, enum.Enum):
  PENDING = "pending"
  PARTIAL = "partial"
  APPROVED = "approved"
  REJECTED = "rejected"


TERMINAL_TRANSACTION_STATUSES = frozenset(
    [TransactionStatus.APPROVED, TransactionStatus.REJECTED]
)


class PaymentMode(str, enum.Enum):
  SINGLE = "single"
  MULTI = "multi"


class StorePaymentStatus(str, enum.Enum):
  PENDING = "pending"
  PROCESSING = "processing"
  APPROVED = "approved"
  REJECTED = "rejected"
  CANCELLED = "cancelled"


TERMINAL_PAYMENT_STATUSES = frozenset([
    StorePaymentStatus.APPROVED,
    StorePaymentStatus.REJECTED,
    StorePaymentStatus.CANCELLED,
])

FAILED_PAYMENT_STATUSES = frozenset(
    [StorePaymentStatus.REJECTED, StorePaymentStatus.CANCELLED]
)


class FulfillmentStatus(str, enum.Enum):
  IN_PROGRESS = "in_progress"
  CREATED = "created"
  FAILED = "failed"
  CANCELLED = "cancelled"


ACTIVE_FULFILLMENT_STATUSES = frozenset(
    [FulfillmentStatus.IN_PROGRESS, FulfillmentStatus.CREATED]
)


class RateSource(str, enum.Enum):
  REALTIME = "realtime"
  STATIC = "static"
  DEFAULT = "default"
