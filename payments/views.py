import json, logging
from django.conf import settings
from django.http import JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST

from . import signatures
from .integrations.razorpay import GatewayError, get_client
from .services import (
    AbortReason,
    UnknownPlan,
    VerificationOrchestrator,
    VerificationRequest,
    issue_order,
)

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("payments.security")

ERROR_STATUS = {
    AbortReason.BAD_REQUEST: 400,
    AbortReason.INVALID_SIGNATURE: 400,
    AbortReason.PAYMENT_NOT_SUCCESSFUL: 402,
    AbortReason.ORDER_USER_MISMATCH: 403,
    AbortReason.UNKNOWN_PLAN_AMOUNT: 422,
    AbortReason.ENTITLEMENT_WRITE_FAILED: 500,
    AbortReason.GATEWAY_UNREACHABLE: 503,
}

PAYMENT_EVENTS = {"payment.captured", "payment.authorized"}


def _json_body(request):
    try: body = json.loads(request.body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError): return None
    return body if isinstance(body, dict) else None


def _error(reason: AbortReason) -> JsonResponse:
    resp = JsonResponse({"error": reason.value}, status=ERROR_STATUS[reason])
    if reason == AbortReason.GATEWAY_UNREACHABLE:
        resp["Retry-After"] = "5"
    return resp


@csrf_exempt
@require_POST
def create_order_view(request):
    """POST {"plan": "pro"|"max"} -> {"order_id", "amount", "currency", "key_id"}"""
    if not request.user.is_authenticated:
        return JsonResponse({"error": "unauthorized"}, status=401)
    body = _json_body(request)
    if body is None:
        return _error(AbortReason.BAD_REQUEST)

    try:
        issued = issue_order(request.user, body.get("plan"), get_client())
    except UnknownPlan:
        return JsonResponse({"error": "invalid_plan"}, status=400)
    except GatewayError:
        logger.exception("Order creation failed for user_id=%s plan=%s", request.user.pk, body.get("plan"))
        return _error(AbortReason.GATEWAY_UNREACHABLE)

    return JsonResponse({
        "order_id": issued.order_id,
        "amount": issued.amount,
        "currency": issued.currency,
        "key_id": issued.key_id,
    })


@csrf_exempt
@require_POST
def verify_payment_view(request):
    """POST {"order_id", "payment_id", "signature", "user_id"} after checkout completes."""
    body = _json_body(request)
    if body is None:
        return _error(AbortReason.BAD_REQUEST)
    req = VerificationRequest.from_dict(body)

    # a signed-in user may only verify for themselves
    if request.user.is_authenticated and req.user_id and req.user_id != str(request.user.pk):
        security_logger.warning(
            "User %s tried to verify payment %s for user %s", request.user.pk, req.payment_id, req.user_id
        )
        return JsonResponse({"error": "forbidden"}, status=403)

    try:
        orchestrator = VerificationOrchestrator.from_settings(get_client())
    except GatewayError:
        logger.exception("Gateway client unavailable")
        return _error(AbortReason.GATEWAY_UNREACHABLE)

    result = orchestrator.verify(req)
    if not result.success:
        return _error(result.reason)
    return JsonResponse({"success": True, "plan": result.plan, "payment_id": result.payment_id})


@csrf_exempt
@require_POST
def webhook_view(request):
    """Gateway server-to-server notification; credits through the same path as verify."""
    if not settings.RAZORPAY_WEBHOOK_SECRET:
        logger.error("Webhook received but RAZORPAY_WEBHOOK_SECRET is not configured")
        return JsonResponse({"error": "webhook_not_configured"}, status=503)

    signature = request.headers.get("X-Razorpay-Signature", "")
    if not signatures.verify_webhook(request.body, signature, settings.RAZORPAY_WEBHOOK_SECRET):
        security_logger.warning("Invalid webhook signature from %s", request.META.get("REMOTE_ADDR"))
        return _error(AbortReason.INVALID_SIGNATURE)

    body = _json_body(request)
    if body is None:
        return _error(AbortReason.BAD_REQUEST)

    event = str(body.get("event") or "")
    if event not in PAYMENT_EVENTS:
        logger.info("Webhook event %s acknowledged without action", event or "<none>")
        return JsonResponse({"received": True})

    entity = body
    for key in ("payload", "payment", "entity"):
        entity = entity.get(key) if isinstance(entity, dict) else None
    payment_id = entity.get("id") if isinstance(entity, dict) else None
    payment_id = payment_id.strip() if isinstance(payment_id, str) else ""
    if not payment_id:
        return _error(AbortReason.BAD_REQUEST)

    try:
        orchestrator = VerificationOrchestrator.from_settings(get_client())
    except GatewayError:
        logger.exception("Gateway client unavailable")
        return _error(AbortReason.GATEWAY_UNREACHABLE)

    result = orchestrator.verify_with_gateway(payment_id)
    if result.success:
        return JsonResponse({"received": True})
    # non-2xx makes the gateway redeliver; only worth it for transient failures
    if result.reason in (AbortReason.GATEWAY_UNREACHABLE, AbortReason.ENTITLEMENT_WRITE_FAILED):
        return _error(result.reason)
    if result.reason == AbortReason.BAD_REQUEST:
        return JsonResponse({"received": True, "ignored": "unknown_order"}, status=202)
    return JsonResponse({"received": True, "ignored": result.reason.value})
