"""API views of settlement models"""

from typing import Any, Dict

from models import Transaction
from utils.datetime_helpers import as_utc
from utils.json_serialization import money_str


def _iso(value):
    return as_utc(value).isoformat() if value is not None else None


def serialize_transaction(transaction: Transaction) -> Dict[str, Any]:
    return {
        "id": transaction.id,
        "buyerId": transaction.buyer_id,
        "supplierId": transaction.supplier_id,
        "requirementId": transaction.requirement_id,
        "quotationId": transaction.quotation_id,
        "status": transaction.status,
        "amount": money_str(transaction.amount),
        "currency": transaction.currency,
        "paymentMethod": transaction.payment_method,
        "advanceAmount": money_str(transaction.advance_amount),
        "balanceAmount": money_str(transaction.balance_amount),
        "paymentTerms": transaction.payment_terms,
        "paymentIntentId": transaction.payment_intent_id,
        "estimatedDelivery": _iso(transaction.estimated_delivery),
        "trackingNumber": transaction.tracking_number,
        "shippingProvider": transaction.shipping_provider,
        "deliveryConfirmedAt": _iso(transaction.delivery_confirmed_at),
        "qualityRating": transaction.quality_rating,
        "qualityNotes": transaction.quality_notes,
        "qualityIssues": transaction.quality_issues or [],
        "fundsReleasedAt": _iso(transaction.funds_released_at),
        "platformFee": money_str(transaction.platform_fee),
        "payoutAmount": money_str(transaction.payout_amount),
        "releaseTransactionId": transaction.release_transaction_id,
        "createdAt": _iso(transaction.created_at),
        "updatedAt": _iso(transaction.updated_at),
    }


def serialize_quality_state(transaction: Transaction) -> Dict[str, Any]:
    return {
        "assessedAt": _iso(transaction.quality_assessed_at),
        "assessedBy": transaction.quality_assessed_by_id,
        "rating": transaction.quality_rating,
        "notes": transaction.quality_notes,
        "issues": transaction.quality_issues or [],
        "photos": transaction.quality_photos or [],
        "acceptanceReason": transaction.acceptance_reason,
        "rejectionReason": transaction.rejection_reason,
        "status": transaction.status,
    }
