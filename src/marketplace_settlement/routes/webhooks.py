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

"""Payment processor notification route."""

from typing import Optional

from fastapi import APIRouter
from fastapi import Depends
from fastapi import Query
from marketplace_settlement import dependencies
from marketplace_settlement.models import WebhookNotification
from marketplace_settlement.models import WebhookResult
from marketplace_settlement.services.settlement_processor import SettlementProcessor

router = APIRouter()


@router.post(
    "/webhooks/processor",
    response_model=WebhookResult,
    operation_id="processor_webhook",
    dependencies=[Depends(dependencies.verify_webhook_signature)],
)
async def processor_webhook(
    store: Optional[str] = Query(None),
    notification: WebhookNotification = Depends(
        dependencies.processor_notification
    ),
    settlement_processor: SettlementProcessor = Depends(
        dependencies.get_settlement_processor
    ),
) -> WebhookResult:
  """Apply a payment notification.

  Answers 200 for everything that was applied, duplicated or cannot be
  matched; 503 when the processor could not be reached, so it redelivers.
  """
  payment_id = notification.data.id if notification.data else None
  return await settlement_processor.handle_notification(
      notification.type, payment_id, store_hint=store
  )
