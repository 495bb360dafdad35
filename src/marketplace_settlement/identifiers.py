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

"""Storefront keys and processor external references.

Every place that groups, stores or compares a storefront identifier goes
through `normalize_store_key`, so that legacy catalog identifiers such as
"real-acme.example" and plain domains such as "acme.example" always resolve to
the same key.
"""

import re
from typing import Iterable, List, Optional, Tuple, TypeVar

from marketplace_settlement.exceptions import InvalidRequestError

_SCHEME_RE = re.compile(r"^[a-z][a-z0-9+.-]*://")
_PREFIX_RE = re.compile(r"^(?:real-)+")

REFERENCE_SEPARATOR = "|"

T = TypeVar("T")


def normalize_store_key(raw: Optional[str]) -> str:
  """Returns the canonical storefront key for a raw storefront identifier.

  Args:
    raw: A storefront id as found in a cart line, a URL or a stored record.

  Returns:
    The lower-cased bare domain without scheme, path or "real-" prefix.

  Raises:
    InvalidRequestError: If the identifier is empty.
  """
  key = (raw or "").strip().lower()
  key = _SCHEME_RE.sub("", key)
  key = key.split("/", 1)[0]
  key = _PREFIX_RE.sub("", key)
  if not key:
    raise InvalidRequestError(f"Invalid storefront identifier: {raw!r}")
  return key


def group_by_store(
    items: Iterable[T], key_of
) -> dict[str, List[T]]:
  """Groups items by normalized storefront key, keeping first-seen order."""
  grouped: dict[str, List[T]] = {}
  for item in items:
    grouped.setdefault(normalize_store_key(key_of(item)), []).append(item)
  return grouped


def build_external_reference(
    transaction_id: int, store_key: Optional[str] = None
) -> str:
  """Builds the processor external reference for a charge intent."""
  if store_key is None:
    return str(transaction_id)
  return (
      f"{transaction_id}{REFERENCE_SEPARATOR}{normalize_store_key(store_key)}"
  )


def parse_external_reference(
    reference: Optional[str],
) -> Tuple[int, Optional[str]]:
  """Parses an external reference back into its transaction and storefront.

  Args:
    reference: The value the processor echoes back on a payment.

  Returns:
    A (transaction_id, store_key) tuple. store_key is None for references
    created in single payment mode.

  Raises:
    InvalidRequestError: If the reference is missing or malformed.
  """
  if not reference:
    raise InvalidRequestError("Missing external reference")

  tx_part, sep, store_part = reference.strip().partition(REFERENCE_SEPARATOR)
  try:
    transaction_id = int(tx_part)
  except ValueError as e:
    raise InvalidRequestError(
        f"Invalid external reference: {reference!r}"
    ) from e
  if transaction_id <= 0:
    raise InvalidRequestError(f"Invalid external reference: {reference!r}")

  if not sep:
    return transaction_id, None
  return transaction_id, normalize_store_key(store_part)


def fulfillment_tag(transaction_id: int, store_key: str) -> str:
  """Returns the storefront order tag that marks a marketplace handoff."""
  return f"marketplace-{transaction_id}-{normalize_store_key(store_key)}"
