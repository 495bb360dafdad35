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

"""Custom exceptions for the marketplace settlement server."""

from typing import Any, Optional


class MarketplaceError(Exception):
  """Base class for all marketplace exceptions."""

  def __init__(
      self, message: str, code: str = "INTERNAL_ERROR", status_code: int = 500
  ):
    self.message = message
    self.code = code
    self.status_code = status_code
    super().__init__(self.message)


class ResourceNotFoundError(MarketplaceError):
  """Raised when a requested resource is not found."""

  def __init__(self, message: str):
    super().__init__(message, code="RESOURCE_NOT_FOUND", status_code=404)


class InvalidRequestError(MarketplaceError):
  """Raised when the request is invalid (e.g. missing fields)."""

  def __init__(self, message: str):
    super().__init__(message, code="INVALID_REQUEST", status_code=400)


class InvalidStatusTransitionError(MarketplaceError):
  """Raised when a transaction status would move backwards."""

  def __init__(self, message: str):
    super().__init__(
        message, code="INVALID_STATUS_TRANSITION", status_code=409
    )


class TransactionNotPayableError(MarketplaceError):
  """Raised when charge intents are requested for a finalized transaction."""

  def __init__(self, message: str):
    super().__init__(message, code="TRANSACTION_NOT_PAYABLE", status_code=409)


class RateUnavailableError(MarketplaceError):
  """Raised when no verified shipping rate exists and no default may apply."""

  def __init__(self, message: str):
    super().__init__(message, code="RATE_UNAVAILABLE", status_code=422)


class ProcessorError(MarketplaceError):
  """Raised when the payment processor rejects a request."""

  def __init__(
      self,
      message: str,
      status: Optional[int] = None,
      body: Optional[Any] = None,
  ):
    super().__init__(message, code="PROCESSOR_ERROR", status_code=502)
    self.status = status
    self.body = body


class ProcessorUnavailableError(MarketplaceError):
  """Raised when the payment processor stays unreachable after retries."""

  def __init__(self, message: str):
    super().__init__(message, code="PROCESSOR_UNAVAILABLE", status_code=503)


class StorefrontError(MarketplaceError):
  """Raised when a storefront's API fails or rejects a request."""

  def __init__(
      self,
      message: str,
      status: Optional[int] = None,
      body: Optional[Any] = None,
  ):
    super().__init__(message, code="STOREFRONT_ERROR", status_code=502)
    self.status = status
    self.body = body


class CredentialRefreshError(MarketplaceError):
  """Raised when a storefront's processor grant could not be refreshed."""

  def __init__(self, message: str):
    super().__init__(
        message, code="CREDENTIAL_REFRESH_FAILED", status_code=502
    )


class CredentialRevokedError(MarketplaceError):
  """Raised when a storefront's processor grant has been revoked."""

  def __init__(self, message: str):
    super().__init__(message, code="CREDENTIAL_REVOKED", status_code=409)


class InvalidSignatureError(MarketplaceError):
  """Raised when a webhook signature does not verify."""

  def __init__(self, message: str):
    super().__init__(message, code="INVALID_SIGNATURE", status_code=401)
