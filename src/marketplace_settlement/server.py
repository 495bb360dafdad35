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

"""Marketplace Settlement Server (Python/FastAPI)."""

import contextlib
import logging
import sys
from typing import Optional, Sequence

from absl import app as absl_app
from fastapi import FastAPI
from fastapi import Request
from fastapi.responses import JSONResponse
import httpx
from marketplace_settlement import config
from marketplace_settlement import db
from marketplace_settlement.clients.http import RetryPolicy
from marketplace_settlement.clients.processor import ProcessorClient
from marketplace_settlement.clients.storefront import StorefrontClient
from marketplace_settlement.exceptions import MarketplaceError
from marketplace_settlement.routes.checkout import router as checkout_router
from marketplace_settlement.routes.credentials import router as credentials_router
from marketplace_settlement.routes.webhooks import router as webhooks_router
from marketplace_settlement.services.credential_manager import KeyedLocks
import uvicorn

logger = logging.getLogger(__name__)


def create_app(settings: Optional[config.Settings] = None) -> FastAPI:
  """Builds the FastAPI application for the given settings."""
  settings = settings or config.Settings()

  @contextlib.asynccontextmanager
  async def lifespan(app: FastAPI):
    """Opens the ledger database and the shared outbound clients."""
    manager = db.DatabaseManager()
    await manager.init_db(settings.database_url)
    retry_policy = RetryPolicy(
        attempts=settings.http_retry_attempts,
        backoff=settings.http_retry_backoff,
    )
    processor_http = httpx.AsyncClient(
        base_url=settings.processor_base_url, timeout=settings.http_timeout
    )
    storefront_http = httpx.AsyncClient(timeout=settings.http_timeout)

    app.state.settings = settings
    app.state.db = manager
    app.state.credential_locks = KeyedLocks()
    app.state.processor = ProcessorClient(
        processor_http,
        client_id=settings.processor_client_id,
        client_secret=settings.processor_client_secret,
        retry_policy=retry_policy,
    )
    app.state.storefront = StorefrontClient(
        storefront_http,
        api_version=settings.storefront_api_version,
        retry_policy=retry_policy,
        request_timeout=settings.rate_request_timeout,
    )
    logger.info("Settlement server ready (database %s)", settings.database_url)
    yield
    await storefront_http.aclose()
    await processor_http.aclose()
    await manager.close()

  app = FastAPI(
      title="Marketplace Settlement Service",
      version=config.SERVER_VERSION,
      description=(
          "Multi-storefront checkout: shipping quotes, split payments,"
          " settlement webhooks and storefront order handoff"
      ),
      lifespan=lifespan,
  )

  @app.exception_handler(MarketplaceError)
  async def marketplace_exception_handler(
      request: Request, exc: MarketplaceError
  ):
    """Converts marketplace exceptions to JSON responses."""
    del request  # Unused.
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
    )

  app.include_router(checkout_router)
  app.include_router(webhooks_router)
  app.include_router(credentials_router)
  return app


def main(argv: Sequence[str]) -> None:
  """Main entry point for the Marketplace Settlement Server."""
  del argv  # Unused.
  logging.basicConfig(level=logging.INFO)

  if config.FLAGS.port is None:
    logger.error("--port must be provided.")
    print("\nUsage:")
    print(config.FLAGS.main_module_help())
    sys.exit(1)

  settings = config.settings_from_flags()
  if not settings.processor_access_token:
    logger.warning(
        "No platform processor token; storefronts without a connected"
        " account cannot be paid"
    )
  uvicorn.run(create_app(settings), host="0.0.0.0", port=config.FLAGS.port)


def run() -> None:
  absl_app.run(main)


if __name__ == "__main__":
  run()
