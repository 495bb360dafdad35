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

"""Storefront processor account routes: OAuth callback and token refresh."""

import logging
from typing import List, Optional
import urllib.parse

from fastapi import APIRouter
from fastapi import Depends
from fastapi import Path
from fastapi import Query
from fastapi.responses import RedirectResponse
from marketplace_settlement import dependencies
from marketplace_settlement.config import Settings
from marketplace_settlement.exceptions import MarketplaceError
from marketplace_settlement.models import RefreshResult
from marketplace_settlement.services.credential_manager import CredentialManager

logger = logging.getLogger(__name__)

router = APIRouter()


def _dashboard_redirect(settings: Settings, **params: str) -> RedirectResponse:
  url = f"{settings.dashboard_url}?{urllib.parse.urlencode(params)}"
  return RedirectResponse(url, status_code=302)


@router.get("/oauth/callback", operation_id="oauth_callback")
async def oauth_callback(
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    credential_manager: CredentialManager = Depends(
        dependencies.get_credential_manager
    ),
    settings: Settings = Depends(dependencies.get_settings),
) -> RedirectResponse:
  """Finish connecting a storefront's processor account.

  The storefront key travels in `state`. The dashboard is told the outcome
  through query parameters.
  """
  if error:
    logger.warning("OAuth authorization for %s failed: %s", state, error)
    return _dashboard_redirect(settings, mp_error=error)
  if not code or not state:
    return _dashboard_redirect(settings, mp_error="missing_params")

  try:
    credential = await credential_manager.connect(state, code)
  except MarketplaceError as e:
    logger.error("Connecting processor account of %s failed: %s", state, e)
    return _dashboard_redirect(settings, mp_error=e.code.lower())
  return _dashboard_redirect(
      settings, store=credential.store_domain, mp_connected="true"
  )


@router.post(
    "/stores/{store}/credentials/refresh",
    response_model=RefreshResult,
    operation_id="refresh_credential",
)
async def refresh_credential(
    store: str = Path(...),
    credential_manager: CredentialManager = Depends(
        dependencies.get_credential_manager
    ),
) -> RefreshResult:
  """Refresh one storefront's processor grant now."""
  return await credential_manager.refresh(store)


@router.post(
    "/credentials/refresh-expiring",
    response_model=List[RefreshResult],
    operation_id="refresh_expiring_credentials",
)
async def refresh_expiring_credentials(
    credential_manager: CredentialManager = Depends(
        dependencies.get_credential_manager
    ),
) -> List[RefreshResult]:
  """Refresh every processor grant close to expiry."""
  return await credential_manager.refresh_expiring()
