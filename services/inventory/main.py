"""Inventory service API built with FastAPI.

This module exposes the catalog read endpoints and the keyed reservation
endpoints used by checkout. Validation is performed with Pydantic models,
while persistence and the all-or-nothing reservation logic are delegated to
the SQLAlchemy-backed repository in ``repo.InventoryRepo``.
"""

import logging
import time
import uuid
from typing import Annotated, List

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, constr
from pythonjsonlogger.json import JsonFormatter
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from .repo import InventoryRepo, engine, init_db

app = FastAPI(title="Inventory Service")

ProductId = constr(pattern=r"^[A-Za-z0-9_-]{1,64}$")

logger = logging.getLogger("inventory")
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


def get_repo() -> InventoryRepo:
    return InventoryRepo()


class SizeStock(BaseModel):
    size: int
    stock: int


class ProductOut(BaseModel):
    id: str
    name: str
    price_cents: int
    sizes: List[SizeStock]


class Line(BaseModel):
    """One (product, size) line to reserve.

    Attributes:
        product_id: Catalog product id.
        size: Numeric size.
        quantity: Positive number of units.
    """

    product_id: ProductId
    size: int = Field(gt=0)
    quantity: int = Field(gt=0)


class ReserveRequest(BaseModel):
    """Request body for the reserve endpoint.

    Attributes:
        reservation_id: Caller's key; the order id on the checkout side.
        items: Lines to reserve together.
    """

    reservation_id: uuid.UUID
    items: List[Line] = Field(min_length=1)


class Shortage(BaseModel):
    product_id: str
    size: int
    requested: int
    available: int
    reason: str


class ReserveResponse(BaseModel):
    reserved: bool
    shortages: List[Shortage] = []


@app.get("/health")
def health():
    return {"ok": True}


@app.get("/products", response_model=List[ProductOut])
def list_products(
    ids: Annotated[List[str], Query()] = [],
    repo: InventoryRepo = Depends(get_repo),
):
    """Authoritative price and per-size stock for the requested ids.

    Unknown ids are omitted from the result rather than failing the call.
    """
    return repo.get_products(ids)


@app.get("/products/{product_id}", response_model=ProductOut)
def get_product(product_id: str, repo: InventoryRepo = Depends(get_repo)):
    product = repo.get_product(product_id)
    if product is None:
        raise HTTPException(status_code=404, detail="NOT_FOUND")
    return product


@app.post("/reserve", response_model=ReserveResponse)
def reserve(req: ReserveRequest, repo: InventoryRepo = Depends(get_repo)):
    """Reserve stock for every line, or for none.

    Returns:
        ReserveResponse: ``reserved=True`` on success, also when the same
        ``reservation_id`` is replayed after a success.

    Responses:
        422 with ``{reserved: false, detail: "INSUFFICIENT_STOCK", shortages}``
        when any line cannot be satisfied; no stock is changed.
    """
    items = [(it.product_id, it.size, it.quantity) for it in req.items]
    reserved, shortages = repo.reserve(str(req.reservation_id), items)
    if not reserved:
        logger.info(
            "reservation refused",
            extra={"reservation_id": str(req.reservation_id), "shortages": len(shortages)},
        )
        return JSONResponse(
            status_code=422,
            content={"reserved": False, "detail": "INSUFFICIENT_STOCK", "shortages": shortages},
        )
    logger.info("stock reserved", extra={"reservation_id": str(req.reservation_id), "lines": len(items)})
    return ReserveResponse(reserved=True)


@app.post("/reservations/{reservation_id}/release")
def release(reservation_id: uuid.UUID, repo: InventoryRepo = Depends(get_repo)):
    released = repo.release(str(reservation_id))
    logger.info("reservation release", extra={"reservation_id": str(reservation_id), "released": released})
    return {"released": released}


@app.post("/reservations/{reservation_id}/commit")
def commit(reservation_id: uuid.UUID, repo: InventoryRepo = Depends(get_repo)):
    return {"committed": repo.commit(str(reservation_id))}


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
