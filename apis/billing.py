from datetime import date, datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from tuitionbill.errors import BillingError, ConflictError, DependencyError, NotFound
from tuitionbill.billing_run_service import (
    billing_run_to_dict,
    execute_billing_run,
    get_billing_run,
    list_billing_runs,
    retry_billing_run,
)
from tuitionbill.credit_service import (
    available_credits,
    credit_to_dict,
    delete_credit,
    eligibility_details,
    issue_credit,
    issue_credit_for_cancellation,
    list_credits,
    redeem_credit,
)
from tuitionbill.installment_service import (
    create_custom_plan,
    create_plan,
    get_plan,
    plan_to_dict,
    remove_plan,
)
from tuitionbill.invoice_service import (
    invoice_to_dict,
    list_invoices,
    send_invoice,
    void_invoice,
)
from tuitionbill.org_service import get_org_settings
from tuitionbill.payer import PayerKey
from tuitionbill.payment_service import (
    confirm_refund,
    invoice_balance,
    issue_refund,
    payment_to_dict,
    record_payment,
    refund_to_dict,
)
from .base import error_response, get_db_session, success_response


router = APIRouter(prefix="/billing/orgs/{org_id}", tags=["Billing"])


def _http_error(e: BillingError) -> HTTPException:
    if isinstance(e, NotFound):
        status_code, code = status.HTTP_404_NOT_FOUND, 40401
    elif isinstance(e, ConflictError):
        status_code, code = status.HTTP_409_CONFLICT, 40901
    elif isinstance(e, DependencyError):
        status_code, code = status.HTTP_503_SERVICE_UNAVAILABLE, 50301
    else:
        status_code, code = status.HTTP_400_BAD_REQUEST, 40001
    return HTTPException(status_code=status_code, detail=error_response(code=code, message=e.message, data=e.to_dict()))


class RunBillingRequest(BaseModel):
    start_date: date
    end_date: date
    mode: Optional[str] = Field(default=None, max_length=16)
    fallback_rate_minor: Optional[int] = None
    created_by: Optional[str] = Field(default=None, max_length=64)


class RetryRunRequest(BaseModel):
    payers: Optional[List[str]] = None


class PlanRow(BaseModel):
    amount_minor: int
    due_date: date


class CreatePlanRequest(BaseModel):
    installment_count: int = 1
    frequency: str = Field(default="monthly", max_length=16)
    start_date: Optional[date] = None
    custom: Optional[List[PlanRow]] = None


class RecordPaymentRequest(BaseModel):
    amount_minor: int
    provider: str = Field(default="manual", max_length=32)
    installment_id: Optional[str] = Field(default=None, max_length=64)
    provider_reference: Optional[str] = Field(default=None, max_length=128)


class IssueRefundRequest(BaseModel):
    amount_minor: Optional[int] = None
    reason: str = Field(default="", max_length=1000)


class ConfirmRefundRequest(BaseModel):
    succeeded: bool
    failure_reason: str = Field(default="", max_length=1000)


class IssueCreditRequest(BaseModel):
    student_id: str = Field(max_length=64)
    credit_value_minor: int
    issued_for_lesson_id: Optional[str] = Field(default=None, max_length=64)
    expires_at: Optional[datetime] = None
    notes: str = Field(default="", max_length=1000)
    created_by: Optional[str] = Field(default=None, max_length=64)


class RedeemCreditRequest(BaseModel):
    lesson_id: str = Field(max_length=64)


class EligibilityRequest(BaseModel):
    lesson_start_at: datetime
    cancelled_at: datetime
    notice_hours: Optional[int] = None


class CancellationCreditRequest(BaseModel):
    student_id: str = Field(max_length=64)
    cancelled_at: datetime
    credit_value_minor: Optional[int] = None
    expires_in_days: Optional[int] = None


# ─── Billing runs ─────────────────────────────────────────────────────────────
@router.post("/runs", summary="Run billing for a date range")
async def run_billing_endpoint(org_id: str, payload: RunBillingRequest, session=Depends(get_db_session)):
    try:
        result = execute_billing_run(
            session,
            org_id,
            payload.start_date,
            payload.end_date,
            billing_mode=payload.mode,
            fallback_rate_minor=payload.fallback_rate_minor,
            created_by=payload.created_by,
        )
    except BillingError as e:
        raise _http_error(e)
    return success_response(
        {
            "run": billing_run_to_dict(result.run),
            "invoices": [invoice_to_dict(x) for x in result.invoices],
        },
        message="billing run finished",
    )


@router.get("/runs", summary="List billing runs")
async def list_runs_endpoint(org_id: str, limit: int = Query(50, ge=1, le=200), session=Depends(get_db_session)):
    return success_response([billing_run_to_dict(x) for x in list_billing_runs(session, org_id, limit=limit)])


@router.get("/runs/{run_id}", summary="Get a billing run")
async def get_run_endpoint(org_id: str, run_id: str, session=Depends(get_db_session)):
    try:
        return success_response(billing_run_to_dict(get_billing_run(session, org_id, run_id)))
    except BillingError as e:
        raise _http_error(e)


@router.post("/runs/{run_id}/retry", summary="Retry failed payers of a billing run")
async def retry_run_endpoint(org_id: str, run_id: str, payload: RetryRunRequest, session=Depends(get_db_session)):
    try:
        result = retry_billing_run(session, org_id, run_id, payer_keys=payload.payers)
    except BillingError as e:
        raise _http_error(e)
    return success_response(
        {
            "run": billing_run_to_dict(result.run),
            "invoices": [invoice_to_dict(x) for x in result.invoices],
        }
    )


# ─── Invoices ─────────────────────────────────────────────────────────────────
@router.get("/invoices", summary="List invoices")
async def list_invoices_endpoint(
    org_id: str,
    status: str = Query("", max_length=16),
    payer: str = Query("", max_length=80),
    run_id: str = Query("", max_length=64),
    limit: int = Query(100, ge=1, le=500),
    session=Depends(get_db_session),
):
    rows = list_invoices(
        session,
        org_id,
        status=status,
        payer=PayerKey.parse(payer) if payer else None,
        billing_run_id=run_id,
        limit=limit,
    )
    return success_response([invoice_to_dict(x) for x in rows])


@router.get("/invoices/{invoice_id}", summary="Get an invoice with its payments")
async def get_invoice_endpoint(org_id: str, invoice_id: str, session=Depends(get_db_session)):
    try:
        return success_response(invoice_balance(session, org_id, invoice_id))
    except BillingError as e:
        raise _http_error(e)


@router.post("/invoices/{invoice_id}/send", summary="Send a draft invoice")
async def send_invoice_endpoint(org_id: str, invoice_id: str, session=Depends(get_db_session)):
    try:
        return success_response(invoice_to_dict(send_invoice(session, org_id, invoice_id)), message="invoice sent")
    except BillingError as e:
        raise _http_error(e)


@router.post("/invoices/{invoice_id}/void", summary="Void an unpaid invoice")
async def void_invoice_endpoint(org_id: str, invoice_id: str, session=Depends(get_db_session)):
    try:
        return success_response(invoice_to_dict(void_invoice(session, org_id, invoice_id)), message="invoice voided")
    except BillingError as e:
        raise _http_error(e)


# ─── Installment plans ────────────────────────────────────────────────────────
@router.post("/invoices/{invoice_id}/plan", summary="Attach an installment plan")
async def create_plan_endpoint(org_id: str, invoice_id: str, payload: CreatePlanRequest, session=Depends(get_db_session)):
    try:
        if payload.custom:
            plan = create_custom_plan(session, org_id, invoice_id, [(x.amount_minor, x.due_date) for x in payload.custom])
        else:
            plan = create_plan(
                session,
                org_id,
                invoice_id,
                payload.installment_count,
                frequency=payload.frequency,
                start_date=payload.start_date,
            )
    except BillingError as e:
        raise _http_error(e)
    return success_response(plan_to_dict(plan), message="installment plan created")


@router.get("/invoices/{invoice_id}/plan", summary="Get an invoice's installment plan")
async def get_plan_endpoint(org_id: str, invoice_id: str, session=Depends(get_db_session)):
    try:
        return success_response(plan_to_dict(get_plan(session, org_id, invoice_id)))
    except BillingError as e:
        raise _http_error(e)


@router.delete("/invoices/{invoice_id}/plan", summary="Remove an installment plan")
async def remove_plan_endpoint(org_id: str, invoice_id: str, session=Depends(get_db_session)):
    try:
        remove_plan(session, org_id, invoice_id)
    except BillingError as e:
        raise _http_error(e)
    return success_response(message="installment plan removed")


# ─── Payments & refunds ───────────────────────────────────────────────────────
@router.post("/invoices/{invoice_id}/payments", summary="Record a payment")
async def record_payment_endpoint(org_id: str, invoice_id: str, payload: RecordPaymentRequest, session=Depends(get_db_session)):
    try:
        payment = record_payment(
            session,
            org_id,
            invoice_id,
            payload.amount_minor,
            payload.provider,
            installment_id=payload.installment_id,
            provider_reference=payload.provider_reference,
        )
    except BillingError as e:
        raise _http_error(e)
    return success_response(payment_to_dict(payment), message="payment recorded")


@router.post("/payments/{payment_id}/refunds", summary="Issue a refund")
async def issue_refund_endpoint(org_id: str, payment_id: str, payload: IssueRefundRequest, session=Depends(get_db_session)):
    try:
        refund = issue_refund(session, org_id, payment_id, amount_minor=payload.amount_minor, reason=payload.reason)
    except BillingError as e:
        raise _http_error(e)
    return success_response(refund_to_dict(refund), message="refund requested")


@router.post("/refunds/{refund_id}/confirm", summary="Gateway refund callback")
async def confirm_refund_endpoint(org_id: str, refund_id: str, payload: ConfirmRefundRequest, session=Depends(get_db_session)):
    try:
        refund = confirm_refund(session, org_id, refund_id, payload.succeeded, failure_reason=payload.failure_reason)
    except BillingError as e:
        raise _http_error(e)
    return success_response(refund_to_dict(refund))


# ─── Make-up credits ──────────────────────────────────────────────────────────
@router.post("/credits", summary="Issue a make-up credit")
async def issue_credit_endpoint(org_id: str, payload: IssueCreditRequest, session=Depends(get_db_session)):
    try:
        credit = issue_credit(
            session,
            org_id,
            payload.student_id,
            payload.issued_for_lesson_id,
            payload.credit_value_minor,
            expires_at=payload.expires_at,
            notes=payload.notes,
            created_by=payload.created_by,
        )
    except BillingError as e:
        raise _http_error(e)
    return success_response(credit_to_dict(credit), message="credit issued")


@router.get("/credits", summary="List make-up credits")
async def list_credits_endpoint(
    org_id: str,
    student_id: str = Query("", max_length=64),
    available_only: bool = Query(False),
    session=Depends(get_db_session),
):
    if available_only and student_id:
        rows = available_credits(session, org_id, student_id)
    else:
        rows = list_credits(session, org_id, student_id=student_id)
    return success_response([credit_to_dict(x) for x in rows])


@router.post("/credits/{credit_id}/redeem", summary="Redeem a make-up credit")
async def redeem_credit_endpoint(org_id: str, credit_id: str, payload: RedeemCreditRequest, session=Depends(get_db_session)):
    try:
        credit = redeem_credit(session, org_id, credit_id, payload.lesson_id)
    except BillingError as e:
        raise _http_error(e)
    return success_response(credit_to_dict(credit), message="credit redeemed")


@router.delete("/credits/{credit_id}", summary="Delete an unredeemed credit")
async def delete_credit_endpoint(org_id: str, credit_id: str, session=Depends(get_db_session)):
    try:
        delete_credit(session, org_id, credit_id)
    except BillingError as e:
        raise _http_error(e)
    return success_response(message="credit deleted")


@router.post("/credits/eligibility", summary="Check make-up credit eligibility")
async def eligibility_endpoint(org_id: str, payload: EligibilityRequest, session=Depends(get_db_session)):
    try:
        notice_hours = payload.notice_hours
        if notice_hours is None:
            notice_hours = get_org_settings(session, org_id).cancellation_notice_hours
    except BillingError as e:
        raise _http_error(e)
    return success_response(eligibility_details(payload.lesson_start_at, payload.cancelled_at, notice_hours))


@router.post("/lessons/{lesson_id}/cancellation-credit", summary="Issue a credit for a cancelled lesson")
async def cancellation_credit_endpoint(org_id: str, lesson_id: str, payload: CancellationCreditRequest,
                                       session=Depends(get_db_session)):
    try:
        credit = issue_credit_for_cancellation(
            session,
            org_id,
            lesson_id,
            payload.student_id,
            payload.cancelled_at,
            value_minor=payload.credit_value_minor,
            expires_in_days=payload.expires_in_days,
        )
    except BillingError as e:
        raise _http_error(e)
    if credit is None:
        return success_response({"issued": False, "credit": None}, message="cancellation notice too short")
    return success_response({"issued": True, "credit": credit_to_dict(credit)}, message="credit issued")
