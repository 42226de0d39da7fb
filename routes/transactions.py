"""
Transaction Routes
FastAPI routes for creating transactions and driving them through settlement

The caller is identified by the ``X-User-Id`` header set by the API gateway.
"""

import logging
from decimal import Decimal
from typing import Any, Awaitable, Callable, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from services.quality_assessment_gate import QualityAssessmentRequest
from services.transaction_orchestrator import (
    TransactionCreationRequest, TransactionOrchestrator, get_transaction_orchestrator
)
from utils.exceptions import SettlementError
from utils.json_serialization import ensure_json_safe
from utils.serializers import serialize_transaction

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/transactions", tags=["transactions"])


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class CreateTransactionBody(_CamelModel):
    requirement_id: int = Field(alias="requirementId")
    quotation_id: int = Field(alias="quotationId")
    supplier_id: int = Field(alias="supplierId")
    payment_method: str = Field(alias="paymentMethod")


class QualityAssessmentBody(_CamelModel):
    # Loosely typed so range and length problems surface as 400 with our messages
    rating: Any = None
    notes: Any = None
    approval_status: Any = Field(default=None, alias="approvalStatus")
    issues: List[str] = Field(default_factory=list)
    photos: List[str] = Field(default_factory=list)


class PaymentBody(_CamelModel):
    payment_type: str = Field(default="full", alias="paymentType")
    amount: Optional[Decimal] = None
    payment_method: Optional[str] = Field(default=None, alias="paymentMethod")


class ShipmentBody(_CamelModel):
    tracking_number: str = Field(alias="trackingNumber")
    shipping_provider: str = Field(alias="shippingProvider")


class DeliveryBody(_CamelModel):
    location: Optional[str] = None


class ReleaseBody(_CamelModel):
    reason: str = "Manual release by admin"


class ReasonBody(_CamelModel):
    reason: Optional[str] = None


async def _call(operation: str, action: Callable[[], Awaitable[Any]]) -> Any:
    """Run a service call and translate settlement errors into HTTP errors"""
    try:
        return await action()
    except HTTPException:
        raise
    except SettlementError as e:
        logger.warning(f"🚫 API_{operation}: {e.error_code} {e.message}")
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())
    except Exception as e:
        logger.error(f"❌ API_{operation}: Unexpected error: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail={"error": "Internal server error", "code": "INTERNAL_ERROR"})


def _transaction_response(transaction) -> dict:
    return {"success": True, "transaction": serialize_transaction(transaction)}


@router.post("", status_code=201)
async def create_transaction(
    body: CreateTransactionBody,
    x_user_id: int = Header(...),
    orchestrator: TransactionOrchestrator = Depends(get_transaction_orchestrator),
):
    """Create a transaction and escrow from an accepted quotation"""
    response = await _call("CREATE", lambda: orchestrator.create(TransactionCreationRequest(
        requirement_id=body.requirement_id,
        quotation_id=body.quotation_id,
        supplier_id=body.supplier_id,
        buyer_id=x_user_id,
        payment_method=body.payment_method,
    )))
    return {"success": True, **response.to_dict()}


@router.post("/{transaction_id}/quality")
async def submit_quality_assessment(
    transaction_id: int,
    body: QualityAssessmentBody,
    x_user_id: int = Header(...),
    orchestrator: TransactionOrchestrator = Depends(get_transaction_orchestrator),
):
    """
    Buyer's quality decision.

    Approval releases escrow to the supplier; rejection opens a dispute.
    A failed release after approval is reported in ``releaseError`` while the
    approval itself stands.
    """
    result = await _call("QUALITY", lambda: orchestrator.assess_quality(QualityAssessmentRequest(
        transaction_id=transaction_id,
        caller_id=x_user_id,
        rating=body.rating,
        notes=body.notes,
        approval_status=body.approval_status,
        issues=body.issues,
        photos=body.photos,
    )))
    return ensure_json_safe({
        "success": True,
        "transaction": result.transaction,
        "approvalStatus": result.approval_status,
        "fundReleased": result.fund_released,
        "disputeCreated": result.dispute_created,
        "disputeId": result.dispute_id,
        "payoutAmount": result.payout_amount,
        "releaseError": result.release_error,
        "message": result.message,
    })


@router.get("/{transaction_id}/quality")
async def get_quality_assessment(
    transaction_id: int,
    x_user_id: int = Header(...),
    orchestrator: TransactionOrchestrator = Depends(get_transaction_orchestrator),
):
    state = await _call("QUALITY_READ", lambda: orchestrator.get_quality_state(transaction_id, x_user_id))
    return {"success": True, "qualityAssessment": state}


@router.post("/{transaction_id}/payment")
async def confirm_payment(
    transaction_id: int,
    body: PaymentBody,
    x_user_id: int = Header(...),
    orchestrator: TransactionOrchestrator = Depends(get_transaction_orchestrator),
):
    transaction = await _call("PAYMENT", lambda: orchestrator.confirm_payment(
        transaction_id, x_user_id, body.payment_type, body.amount, body.payment_method
    ))
    return _transaction_response(transaction)


@router.post("/{transaction_id}/payment-intent")
async def retry_payment_intent(
    transaction_id: int,
    x_user_id: int = Header(...),
    orchestrator: TransactionOrchestrator = Depends(get_transaction_orchestrator),
):
    intent = await _call("PAYMENT_INTENT", lambda: orchestrator.retry_payment_intent(transaction_id, x_user_id))
    if not intent.success:
        raise HTTPException(status_code=502, detail={"error": intent.error, "code": "PAYMENT_GATEWAY_ERROR"})
    return {"success": True, "paymentIntent": intent.to_dict()}


@router.post("/{transaction_id}/shipment")
async def mark_shipped(
    transaction_id: int,
    body: ShipmentBody,
    x_user_id: int = Header(...),
    orchestrator: TransactionOrchestrator = Depends(get_transaction_orchestrator),
):
    transaction = await _call("SHIPMENT", lambda: orchestrator.mark_shipped(
        transaction_id, x_user_id, body.tracking_number, body.shipping_provider
    ))
    return _transaction_response(transaction)


@router.post("/{transaction_id}/transit")
async def mark_in_transit(
    transaction_id: int,
    x_user_id: int = Header(...),
    orchestrator: TransactionOrchestrator = Depends(get_transaction_orchestrator),
):
    transaction = await _call("TRANSIT", lambda: orchestrator.mark_in_transit(transaction_id, x_user_id))
    return _transaction_response(transaction)


@router.post("/{transaction_id}/delivery")
async def confirm_delivery(
    transaction_id: int,
    body: DeliveryBody,
    x_user_id: int = Header(...),
    orchestrator: TransactionOrchestrator = Depends(get_transaction_orchestrator),
):
    transaction = await _call("DELIVERY", lambda: orchestrator.confirm_delivery(
        transaction_id, x_user_id, body.location
    ))
    return _transaction_response(transaction)


@router.post("/{transaction_id}/quality-check")
async def start_quality_check(
    transaction_id: int,
    x_user_id: int = Header(...),
    orchestrator: TransactionOrchestrator = Depends(get_transaction_orchestrator),
):
    transaction = await _call("QUALITY_CHECK", lambda: orchestrator.start_quality_check(transaction_id, x_user_id))
    return _transaction_response(transaction)


@router.post("/{transaction_id}/release-funds")
async def release_funds(
    transaction_id: int,
    body: ReleaseBody,
    x_user_id: int = Header(...),
    orchestrator: TransactionOrchestrator = Depends(get_transaction_orchestrator),
):
    """Admin-triggered release"""
    result = await _call("RELEASE", lambda: orchestrator.release_funds(transaction_id, x_user_id, body.reason))
    return ensure_json_safe({
        "success": True,
        "transactionId": result.transaction_id,
        "payoutAmount": result.payout_amount,
        "platformFee": result.platform_fee,
        "releaseTransactionId": result.release_transaction_id,
        "releasedAt": result.released_at,
    })


@router.get("/{transaction_id}/release-funds")
async def get_release_info(
    transaction_id: int,
    x_user_id: int = Header(...),
    orchestrator: TransactionOrchestrator = Depends(get_transaction_orchestrator),
):
    info = await _call("RELEASE_READ", lambda: orchestrator.fund_release.get_release_info(transaction_id, x_user_id))
    return {"success": True, "release": info}


@router.post("/{transaction_id}/dispute")
async def escalate_dispute(
    transaction_id: int,
    x_user_id: int = Header(...),
    orchestrator: TransactionOrchestrator = Depends(get_transaction_orchestrator),
):
    transaction = await _call("DISPUTE", lambda: orchestrator.escalate_dispute(transaction_id, x_user_id))
    return _transaction_response(transaction)


@router.post("/{transaction_id}/complete")
async def complete_transaction(
    transaction_id: int,
    x_user_id: int = Header(...),
    orchestrator: TransactionOrchestrator = Depends(get_transaction_orchestrator),
):
    transaction = await _call("COMPLETE", lambda: orchestrator.complete(transaction_id, x_user_id))
    return _transaction_response(transaction)


@router.post("/{transaction_id}/cancel")
async def cancel_transaction(
    transaction_id: int,
    body: ReasonBody,
    x_user_id: int = Header(...),
    orchestrator: TransactionOrchestrator = Depends(get_transaction_orchestrator),
):
    transaction = await _call("CANCEL", lambda: orchestrator.cancel(transaction_id, x_user_id, body.reason))
    return _transaction_response(transaction)


@router.post("/{transaction_id}/refund")
async def refund_transaction(
    transaction_id: int,
    body: ReasonBody,
    x_user_id: int = Header(...),
    orchestrator: TransactionOrchestrator = Depends(get_transaction_orchestrator),
):
    transaction = await _call("REFUND", lambda: orchestrator.refund(transaction_id, x_user_id, body.reason))
    return _transaction_response(transaction)


@router.get("/{transaction_id}/history")
async def get_transaction_history(
    transaction_id: int,
    x_user_id: int = Header(...),
    orchestrator: TransactionOrchestrator = Depends(get_transaction_orchestrator),
):
    history = await _call("HISTORY", lambda: orchestrator.get_history(transaction_id, x_user_id))
    return {"success": True, **history}
