"""Payment gateway sandbox built with FastAPI.

This service stands in for the hosted payment gateway during development
and integration tests. Merchants create a gateway order bound to an amount,
the shopper "pays" it through the sandbox capture endpoint, and the capture
returns the signed payment proof the merchant must verify. Persistence is
delegated to the SQLAlchemy-backed repository in ``repo.PaymentsRepo``.
"""

import logging
import time
import uuid
from typing import Annotated, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from pydantic import BaseModel, Field, constr
from pythonjsonlogger.json import JsonFormatter
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from .repo import IdempotencyConflict, PaymentsRepo, engine, init_db

app = FastAPI(title="Payments Sandbox")

Currency = constr(pattern=r"^[A-Z]{3}$")

logger = logging.getLogger("payments")
if not logger.handlers:
    h = logging.StreamHandler()
    h.setFormatter(JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s"))
    logger.addHandler(h)
    logger.setLevel(logging.INFO)


@app.on_event("startup")
def _startup_db():
    # brief active wait until the DB accepts connections
    deadline = time.time() + 30
    while True:
        try:
            with engine.connect() as conn:
                conn.execute(text("select 1"))
            break
        except OperationalError:
            if time.time() > deadline:
                raise
            time.sleep(1)
    init_db(engine)


def get_repo() -> PaymentsRepo:
    return PaymentsRepo()


class CreateOrderRequest(BaseModel):
    """Request body for gateway order creation.

    Attributes:
        amount_cents: Positive amount in minor currency units.
        currency: Three-letter ISO currency code (e.g., INR).
        receipt: Merchant reference for the order.
    """

    amount_cents: int = Field(gt=0)
    currency: Currency
    receipt: str = Field(min_length=1, max_length=64)


class GatewayOrderOut(BaseModel):
    id: str
    amount_cents: int
    currency: str
    receipt: str
    status: str
    payment_id: Optional[str] = None


class PaymentProof(BaseModel):
    gateway_order_id: str
    payment_id: str
    signature: str


@app.get("/health")
def health():
    return {"ok": True}


@app.post("/orders", response_model=GatewayOrderOut, status_code=201)
def create_order(
    req: CreateOrderRequest,
    idempotency_key: Annotated[Optional[str], Header(alias="Idempotency-Key")] = None,
    repo: PaymentsRepo = Depends(get_repo),
):
    """Create a gateway order for exactly ``amount_cents``.

    With an ``Idempotency-Key`` header, retries with the same payload return
    the same gateway order; reusing the key with a different payload
    responds 409 ``IDEMPOTENCY_CONFLICT``.
    """
    try:
        order = repo.create_order(req.amount_cents, req.currency, req.receipt, idempotency_key=idempotency_key)
    except IdempotencyConflict:
        raise HTTPException(status_code=409, detail="IDEMPOTENCY_CONFLICT")
    logger.info("gateway order created", extra={"gateway_order_id": order["id"], "receipt": req.receipt})
    return order


@app.get("/orders/{gateway_order_id}", response_model=GatewayOrderOut)
def get_order(gateway_order_id: str, repo: PaymentsRepo = Depends(get_repo)):
    order = repo.get_order(gateway_order_id)
    if order is None:
        raise HTTPException(status_code=404, detail="NOT_FOUND")
    return order


@app.post("/orders/{gateway_order_id}/capture", response_model=PaymentProof)
def capture(gateway_order_id: str, repo: PaymentsRepo = Depends(get_repo)):
    """Sandbox payment: mark the order paid and return the signed proof."""
    proof = repo.capture(gateway_order_id)
    if proof is None:
        raise HTTPException(status_code=404, detail="NOT_FOUND")
    logger.info("sandbox capture", extra={"gateway_order_id": gateway_order_id, "payment_id": proof["payment_id"]})
    return proof


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = rid
    try:
        response = await call_next(request)
    finally:
        logger.info("request handled", extra={"request_id": rid, "path": request.url.path, "method": request.method})
    response.headers["X-Request-ID"] = rid
    return response
