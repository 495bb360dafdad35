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

"""Shared configuration for the marketplace settlement server.

Command line flags are the only place tunables are read from. `Settings`
carries their values into the application so that services and tests never
touch `FLAGS` directly.
"""

import os
from typing import Optional

from absl import flags
from pydantic import BaseModel

FLAGS = flags.FLAGS

SERVER_VERSION = "1.0.0"


# Define flags only if they haven't been defined yet (to avoid duplicates
# during tests or re-imports)
try:
  flags.DEFINE_string(
      "database_url",
      "sqlite+aiosqlite:///marketplace.db",
      "SQLAlchemy URL of the ledger database",
  )
  flags.DEFINE_integer("port", None, "Port to run the server on")
  flags.DEFINE_string("currency", "CLP", "Currency of every amount")
  flags.DEFINE_string(
      "processor_base_url",
      "https://api.mercadopago.com",
      "Base URL of the payment processor API",
  )
  flags.DEFINE_string(
      "processor_access_token",
      os.environ.get("PROCESSOR_ACCESS_TOKEN"),
      "Platform account access token for the payment processor",
  )
  flags.DEFINE_string(
      "processor_client_id",
      os.environ.get("PROCESSOR_CLIENT_ID"),
      "OAuth client id of the marketplace application",
  )
  flags.DEFINE_string(
      "processor_client_secret",
      os.environ.get("PROCESSOR_CLIENT_SECRET"),
      "OAuth client secret of the marketplace application",
  )
  flags.DEFINE_string(
      "oauth_redirect_uri",
      os.environ.get("PROCESSOR_REDIRECT_URI"),
      "Redirect URI registered for the OAuth authorization-code grant",
  )
  flags.DEFINE_string(
      "webhook_secret",
      os.environ.get("PROCESSOR_WEBHOOK_SECRET"),
      "Secret used to verify processor webhook signatures",
  )
  flags.DEFINE_string(
      "public_base_url",
      "http://localhost:8000",
      "Externally reachable base URL of this server",
  )
  flags.DEFINE_string(
      "buyer_return_url",
      "https://marketplace.example/payment",
      "Where the processor sends the buyer back after checkout",
  )
  flags.DEFINE_string(
      "dashboard_url",
      "https://marketplace.example/dashboard",
      "Storefront dashboard the OAuth callback redirects to",
  )
  flags.DEFINE_string(
      "statement_descriptor", "MARKETPLACE", "Card statement descriptor"
  )
  flags.DEFINE_string(
      "storefront_api_version", "2024-10", "Storefront platform API version"
  )
  flags.DEFINE_string(
      "default_shipping_title", "Standard shipping", "Default rate title"
  )
  flags.DEFINE_integer(
      "default_shipping_price", 3990, "Default flat shipping price"
  )
  flags.DEFINE_integer(
      "default_shipping_ceiling",
      40000,
      "Largest storefront subtotal that may ship on the default rate",
  )
  flags.DEFINE_integer(
      "realtime_min_subtotal",
      0,
      "Subtotals below this skip the real-time rate API",
  )
  flags.DEFINE_integer(
      "rate_poll_attempts", 5, "Polls of the real-time rate API per storefront"
  )
  flags.DEFINE_float(
      "rate_poll_initial_delay", 0.5, "Seconds before the first rate poll"
  )
  flags.DEFINE_float("rate_poll_interval", 0.8, "Seconds between rate polls")
  flags.DEFINE_float(
      "rate_request_timeout", 5.0, "Timeout of a single rate API request"
  )
  flags.DEFINE_float(
      "rate_realtime_timeout",
      5.0,
      "Budget for the real-time tier of a single storefront",
  )
  flags.DEFINE_float(
      "rate_store_timeout",
      8.0,
      "Budget for quoting a single storefront across every tier",
  )
  flags.DEFINE_float("http_timeout", 10.0, "Default outbound HTTP timeout")
  flags.DEFINE_integer(
      "http_retry_attempts", 3, "Attempts for transient outbound failures"
  )
  flags.DEFINE_float(
      "http_retry_backoff", 0.5, "Base of the exponential retry backoff"
  )
  flags.DEFINE_integer(
      "token_refresh_window",
      3 * 24 * 3600,
      "Seconds before expiry at which processor grants are refreshed",
  )
  flags.DEFINE_float(
      "default_commission_rate",
      0.0,
      "Commission applied to newly connected storefronts",
  )
  flags.DEFINE_integer(
      "handoff_claim_timeout",
      300,
      "Seconds after which an unfinished order handoff may be replayed",
  )
except flags.DuplicateFlagError:
  pass


class Settings(BaseModel):
  """Runtime configuration of the server."""

  database_url: str = "sqlite+aiosqlite:///marketplace.db"
  currency: str = "CLP"

  processor_base_url: str = "https://api.mercadopago.com"
  processor_access_token: Optional[str] = None
  processor_client_id: Optional[str] = None
  processor_client_secret: Optional[str] = None
  oauth_redirect_uri: Optional[str] = None
  webhook_secret: Optional[str] = None

  public_base_url: str = "http://localhost:8000"
  buyer_return_url: str = "https://marketplace.example/payment"
  dashboard_url: str = "https://marketplace.example/dashboard"
  statement_descriptor: str = "MARKETPLACE"

  storefront_api_version: str = "2024-10"

  default_shipping_title: str = "Standard shipping"
  default_shipping_price: int = 3990
  default_shipping_ceiling: int = 40000
  realtime_min_subtotal: int = 0
  rate_poll_attempts: int = 5
  rate_poll_initial_delay: float = 0.5
  rate_poll_interval: float = 0.8
  rate_request_timeout: float = 5.0
  rate_realtime_timeout: float = 5.0
  rate_store_timeout: float = 8.0

  http_timeout: float = 10.0
  http_retry_attempts: int = 3
  http_retry_backoff: float = 0.5

  token_refresh_window: int = 3 * 24 * 3600
  default_commission_rate: float = 0.0
  handoff_claim_timeout: int = 300

  @property
  def notification_url(self) -> str:
    return f"{self.public_base_url.rstrip('/')}/webhooks/processor"


def settings_from_flags() -> Settings:
  """Builds `Settings` from parsed command line flags."""
  values = {
      name: FLAGS[name].value
      for name in Settings.model_fields
      if name in FLAGS and FLAGS[name].value is not None
  }
  return Settings(**values)
