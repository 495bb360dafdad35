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

"""Credential manager for storefront processor grants.

Storefronts connect their processor account to the marketplace through OAuth.
The resulting token pair is refreshed ahead of expiry; refreshes of one
storefront are serialized behind a per-storefront lock and never wait on
another storefront.
"""

import asyncio
import datetime
import logging
from typing import Dict, List, Optional

from marketplace_settlement import db
from marketplace_settlement.clients.processor import is_revoked_grant
from marketplace_settlement.config import Settings
from marketplace_settlement.exceptions import CredentialRefreshError
from marketplace_settlement.exceptions import CredentialRevokedError
from marketplace_settlement.exceptions import ProcessorError
from marketplace_settlement.exceptions import ProcessorUnavailableError
from marketplace_settlement.exceptions import ResourceNotFoundError
from marketplace_settlement.identifiers import normalize_store_key
from marketplace_settlement.models import RefreshResult
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


class KeyedLocks:
  """Lazily created `asyncio.Lock` per key."""

  def __init__(self) -> None:
    self._locks: Dict[str, asyncio.Lock] = {}

  def get(self, key: str) -> asyncio.Lock:
    return self._locks.setdefault(key, asyncio.Lock())


def _now() -> datetime.datetime:
  return datetime.datetime.now(datetime.timezone.utc)


def _parse(timestamp: Optional[str]) -> Optional[datetime.datetime]:
  if not timestamp:
    return None
  return datetime.datetime.fromisoformat(timestamp)


class CredentialManager:
  """Service owning the processor credentials of every storefront."""

  def __init__(
      self,
      session: AsyncSession,
      processor,
      settings: Settings,
      locks: KeyedLocks,
  ):
    self.session = session
    self.processor = processor
    self.settings = settings
    self.locks = locks

  async def get_credential(self, store: str) -> Optional[db.StoreCredential]:
    return await db.get_credential(self.session, normalize_store_key(store))

  def _expires_within_window(self, credential: db.StoreCredential) -> bool:
    expires_at = _parse(credential.expires_at)
    if expires_at is None:
      return False
    window = datetime.timedelta(seconds=self.settings.token_refresh_window)
    return expires_at - _now() <= window

  async def get_valid_token(self, store: str) -> Optional[str]:
    """Returns a usable access token for a storefront.

    Tokens inside the refresh window are refreshed first. A failed refresh
    falls back to the current token as long as it has not expired yet.

    Args:
      store: Storefront identifier.

    Returns:
      The access token, or None when the storefront never connected.

    Raises:
      CredentialRevokedError: If the storefront revoked the grant.
      CredentialRefreshError: If the token expired and could not be renewed.
    """
    key = normalize_store_key(store)
    credential = await db.get_credential(self.session, key)
    if credential is None:
      return None
    if credential.revoked_at:
      raise CredentialRevokedError(f"Processor grant of {key} was revoked")
    if not self._expires_within_window(credential):
      return credential.access_token

    async with self.locks.get(key):
      # Another request may have refreshed while we waited for the lock.
      credential = await db.get_credential(self.session, key)
      if credential.revoked_at:
        raise CredentialRevokedError(f"Processor grant of {key} was revoked")
      if not self._expires_within_window(credential):
        return credential.access_token
      try:
        await self._refresh(key)
      except CredentialRefreshError as e:
        expires_at = _parse(credential.expires_at)
        if expires_at is not None and expires_at > _now():
          logger.warning(
              "Using current token of %s until %s: %s",
              key,
              credential.expires_at,
              e.message,
          )
          return credential.access_token
        raise
      credential = await db.get_credential(self.session, key)
      return credential.access_token

  async def refresh(self, store: str) -> RefreshResult:
    """Runs the refresh-token grant for one storefront.

    Raises:
      ResourceNotFoundError: If the storefront has no credential.
      CredentialRevokedError: If the grant was revoked.
      CredentialRefreshError: If the processor could not refresh it.
    """
    key = normalize_store_key(store)
    async with self.locks.get(key):
      return await self._refresh(key)

  async def _refresh(self, key: str) -> RefreshResult:
    credential = await db.get_credential(self.session, key)
    if credential is None:
      raise ResourceNotFoundError(f"Storefront {key} has no processor grant")
    if credential.revoked_at:
      raise CredentialRevokedError(f"Processor grant of {key} was revoked")
    if not credential.refresh_token:
      raise CredentialRefreshError(f"Storefront {key} has no refresh token")

    try:
      grant = await self.processor.refresh_grant(credential.refresh_token)
    except ProcessorError as e:
      if is_revoked_grant(e):
        await db.mark_credential_revoked(self.session, key)
        await self.session.commit()
        logger.warning("Processor grant of %s was revoked", key)
        raise CredentialRevokedError(
            f"Processor grant of {key} was revoked"
        ) from e
      logger.error("Failed to refresh processor grant of %s: %s", key, e)
      raise CredentialRefreshError(
          f"Failed to refresh processor grant of {key}"
      ) from e
    except ProcessorUnavailableError as e:
      logger.error("Failed to refresh processor grant of %s: %s", key, e)
      raise CredentialRefreshError(
          f"Failed to refresh processor grant of {key}"
      ) from e

    expires_at = None
    if grant.expires_in:
      expires_at = (
          _now() + datetime.timedelta(seconds=grant.expires_in)
      ).isoformat()
    await db.replace_token_pair(
        self.session,
        key,
        grant.access_token,
        grant.refresh_token,
        expires_at,
        grant.public_key,
    )
    await self.session.commit()
    logger.info("Refreshed processor grant of %s, expires %s", key, expires_at)
    return RefreshResult(store=key, expires_at=expires_at)

  async def connect(self, store: str, code: str) -> db.StoreCredential:
    """Stores the grant a storefront approved on the processor's OAuth page.

    Args:
      store: Storefront identifier carried in the OAuth state.
      code: Authorization code from the callback.

    Returns:
      The saved credential.

    Raises:
      ResourceNotFoundError: If the storefront is not registered.
      ProcessorError: If the code exchange was rejected.
    """
    key = normalize_store_key(store)
    store_row = await db.get_store(self.session, key)
    if store_row is None:
      raise ResourceNotFoundError(f"Storefront {key} not found")

    grant = await self.processor.exchange_code(
        code, self.settings.oauth_redirect_uri or ""
    )

    account_email = None
    try:
      account = await self.processor.get_account(grant.access_token)
      account_email = account.get("email")
    except (ProcessorError, ProcessorUnavailableError) as e:
      logger.warning("Could not read processor account of %s: %s", key, e)

    existing = await db.get_credential(self.session, key)
    commission_rate = (
        existing.commission_rate
        if existing is not None and existing.commission_rate is not None
        else self.settings.default_commission_rate
    )
    expires_at = None
    if grant.expires_in:
      expires_at = (
          _now() + datetime.timedelta(seconds=grant.expires_in)
      ).isoformat()

    async with self.locks.get(key):
      credential = await db.save_credential(
          self.session,
          key,
          {
              "access_token": grant.access_token,
              "refresh_token": grant.refresh_token,
              "public_key": grant.public_key,
              "collector_id": grant.user_id,
              "account_email": account_email,
              "expires_at": expires_at,
              "commission_rate": commission_rate,
          },
      )
      await self.session.commit()
    logger.info(
        "Storefront %s connected processor account %s", key, grant.user_id
    )
    return credential

  async def refresh_expiring(self) -> List[RefreshResult]:
    """Refreshes every grant inside the refresh window.

    Failures are reported per storefront and never stop the others.
    """
    cutoff = (
        _now()
        + datetime.timedelta(seconds=self.settings.token_refresh_window)
    ).isoformat()
    credentials = await db.get_credentials_expiring_before(
        self.session, cutoff
    )
    keys = [credential.store_domain for credential in credentials]
    logger.info("Refreshing %d expiring processor grant(s)", len(keys))

    results = []
    for key in keys:
      try:
        results.append(await self.refresh(key))
      except (CredentialRefreshError, CredentialRevokedError) as e:
        results.append(RefreshResult(store=key, error=e.message))
    return results
