import stripe
import structlog
from fastapi import FastAPI, Request, Header, HTTPException
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from settlement import config, stripe_service
from settlement.audit import AuditLog
from settlement.database import Base, engine, SessionLocal
from settlement.errors import SettlementError
from settlement.logging_config import configure_logging
from settlement.reconciler import GatewayEvent, GatewayEventReconciler, ReconciliationOutcome
from settlement.routes import router

configure_logging()
logger = structlog.get_logger(__name__)

app = FastAPI(title="Payment Settlement Service")

app.include_router(router)

Base.metadata.create_all(bind=engine)


@app.exception_handler(SettlementError)
async def settlement_error_handler(request: Request, exc: SettlementError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.message, "can_retry": exc.can_retry},
    )


@app.post("/webhook")
async def stripe_webhook(request: Request, stripe_signature: str = Header(None)):
    payload = await request.body()

    if not stripe_signature:
        raise HTTPException(status_code=400, detail="Missing stripe-signature header")
    if not config.STRIPE_WEBHOOK_SECRET:
        logger.error("webhook_secret_missing")
        raise HTTPException(status_code=500, detail="Webhook secret not configured")

    try:
        event = stripe_service.construct_event(payload, stripe_signature)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")
    except stripe.SignatureVerificationError:
        logger.warning("webhook_signature_invalid")
        raise HTTPException(status_code=400, detail="Invalid signature")

    gateway_event = GatewayEvent.from_stripe(event)
    if gateway_event is None:
        logger.info("webhook_event_unhandled", event_type=event["type"])
        return {"ok": True}

    # Errors propagate as 500 so the gateway redelivers
    reconciler = GatewayEventReconciler(SessionLocal, AuditLog(SessionLocal))
    outcome = await run_in_threadpool(reconciler.handle, gateway_event)
    if outcome == ReconciliationOutcome.DEFERRED:
        return JSONResponse(status_code=409, content={"ok": False, "outcome": outcome.value})
    return {"ok": True, "outcome": outcome.value}
