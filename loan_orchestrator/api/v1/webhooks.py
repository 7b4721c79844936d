"""POST /v1/webhooks/signing - push path for signing request resolution"""

import logging
from fastapi import APIRouter, Depends

from loan_orchestrator.api.dependencies import get_loan_service, get_request_id
from loan_orchestrator.api.v1.schemas import SigningEvent, SigningEventResponse
from loan_orchestrator.services.loans import LoanService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/webhooks/signing", response_model=SigningEventResponse)
async def signing_webhook(
    event: SigningEvent,
    service: LoanService = Depends(get_loan_service),
    request_id: str = Depends(get_request_id),
):
    """
    Deliver a signing platform callback to the settlement watcher.

    Always answers 200 for well-formed events, including ones for requests
    no longer watched, so the platform does not keep redelivering them.
    """
    payload = event.payloadResponse
    delivered = await service.handle_signing_event(
        request_id=payload.payload_uuidv4,
        signed=payload.signed,
        signer_address=payload.account,
        tx_hash=payload.txid,
    )
    logger.info(
        "Signing webhook received",
        extra={"request_id": request_id, "signing_request_id": payload.payload_uuidv4, "delivered": delivered},
    )
    return SigningEventResponse(request_id=payload.payload_uuidv4, delivered=delivered)
