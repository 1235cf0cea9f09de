from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from billing.auth import CurrentUser, get_services, verify_token
from billing.confirmation import ConfirmParams
from billing.entitlements import EntitlementResult
from billing.errors import NotFound
from billing.schemas import PaymentMethod

router = APIRouter(prefix="/payments")


class CheckoutRequest(BaseModel):
    payment_method: PaymentMethod
    plan_id: Optional[str] = None
    billing_cycle: Optional[str] = None
    credits: int = 0
    order_id: Optional[str] = None


class ConfirmRequest(BaseModel):
    session_id: Optional[str] = None
    token: Optional[str] = None
    out_trade_no: Optional[str] = None
    trade_no: Optional[str] = None
    wechat_out_trade_no: Optional[str] = None


class InAppConfirmRequest(BaseModel):
    transaction_id: str
    product_id: str
    plan_id: str
    billing_cycle: str


@router.post("")
def create_payment_api(request: CheckoutRequest, user: CurrentUser = Depends(verify_token), services=Depends(get_services)):
    return services.checkout.create(
        user,
        request.payment_method.value,
        plan_id=request.plan_id,
        billing_cycle=request.billing_cycle,
        credits=request.credits,
        order_id=request.order_id,
    )


@router.post("/confirm", response_model=EntitlementResult)
def confirm_payment(request: ConfirmRequest, user: CurrentUser = Depends(verify_token), services=Depends(get_services)):
    params = ConfirmParams(user_id=user.user_id, user_email=user.email, **request.model_dump())
    return services.resolver.confirm(params)


@router.get("/status")
def payment_status(order_id: str, user: CurrentUser = Depends(verify_token), services=Depends(get_services)):
    return services.resolver.poll(order_id, user.user_id, user.email)


@router.get("/history")
def payment_history(user: CurrentUser = Depends(verify_token), services=Depends(get_services)):
    return {"success": True, "payments": services.checkout.history(user)}


@router.post("/{order_id}/cancel")
def cancel_payment(order_id: str, user: CurrentUser = Depends(verify_token), services=Depends(get_services)):
    return services.checkout.cancel(user, order_id)


@router.post("/{order_id}/continue")
def continue_payment(order_id: str, user: CurrentUser = Depends(verify_token), services=Depends(get_services)):
    return services.checkout.resume(user, order_id)


@router.get("/wechat/query")
def wechat_query(out_trade_no: str, user: CurrentUser = Depends(verify_token), services=Depends(get_services)):
    payment = services.store.get_payment(out_trade_no)
    if payment is None:
        raise NotFound("Payment not found", order_id=out_trade_no)
    services.resolver.check_owner(payment, user.user_id, user.email)
    result = services.resolver.adapter(PaymentMethod.WECHAT.value).query(out_trade_no)
    return {
        "success": True,
        "trade_state": result.state,
        "transaction_id": result.provider_txn_id,
        "amount": result.amount,
        "currency": result.currency,
    }


@router.post("/iap/confirm", response_model=EntitlementResult)
def confirm_in_app(request: InAppConfirmRequest, user: CurrentUser = Depends(verify_token), services=Depends(get_services)):
    return services.resolver.confirm_in_app(
        user.user_id,
        request.transaction_id,
        request.product_id,
        request.plan_id,
        request.billing_cycle,
    )


@router.get("/iap/status")
def in_app_status(user: CurrentUser = Depends(verify_token), services=Depends(get_services)):
    return services.oracle.get_status(user.user_id)
