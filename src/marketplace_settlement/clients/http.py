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

"""Retrying HTTP calls shared by the outbound clients.

Transport errors, timeouts, 429 and 5xx answers are treated as transient and
retried with bounded exponential backoff. Anything else is returned to the
caller, which decides how a 4xx maps onto its own error type.
"""

import logging
from typing import Any

import httpx
from tenacity import AsyncRetrying
from tenacity import retry_if_exception
from tenacity import stop_after_attempt
from tenacity import wait_exponential

logger = logging.getLogger(__name__)


class TransientHTTPError(Exception):
  """A response that is worth retrying."""

  def __init__(self, response: httpx.Response):
    self.response = response
    super().__init__(
        f"{response.request.method} {response.request.url} answered"
        f" {response.status_code}"
    )


def is_transient(exc: BaseException) -> bool:
  return isinstance(exc, (TransientHTTPError, httpx.TransportError))


class RetryPolicy:
  """Bounded retry budget for one external system."""

  def __init__(
      self, attempts: int = 3, backoff: float = 0.5, max_wait: float = 5.0
  ):
    self.attempts = max(1, attempts)
    self.backoff = backoff
    self.max_wait = max_wait

  def retrying(self) -> AsyncRetrying:
    return AsyncRetrying(
        stop=stop_after_attempt(self.attempts),
        wait=wait_exponential(multiplier=self.backoff, max=self.max_wait),
        retry=retry_if_exception(is_transient),
        reraise=True,
    )


async def send(
    client: httpx.AsyncClient,
    policy: RetryPolicy,
    method: str,
    url: str,
    **kwargs: Any,
) -> httpx.Response:
  """Sends a request, retrying transient failures.

  Args:
    client: The shared client of the external system.
    policy: Retry budget to apply.
    method: HTTP method.
    url: Absolute URL or a path relative to the client's base URL.
    **kwargs: Passed through to `httpx.AsyncClient.request`.

  Returns:
    The final non-transient response.

  Raises:
    TransientHTTPError: If the last attempt still answered 429 or 5xx.
    httpx.TransportError: If the last attempt could not reach the server.
  """
  async for attempt in policy.retrying():
    with attempt:
      number = attempt.retry_state.attempt_number
      if number > 1:
        logger.info("Retrying %s %s (attempt %d)", method, url, number)
      response = await client.request(method, url, **kwargs)
      if response.status_code == 429 or response.status_code >= 500:
        raise TransientHTTPError(response)
  return response


def response_body(response: httpx.Response) -> Any:
  """Returns the decoded JSON body of a response, or its text."""
  try:
    return response.json()
  except ValueError:
    return response.text
