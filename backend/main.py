from fastapi import FastAPI, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import os
import logging
import sqlite3
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

import calculations
import store
from calculations import money_str, round_money
from errors import BillSplitError, NotFound


def load_dotenv_file() -> None:
    base_dir = os.path.dirname(__file__)
    env_path = os.path.join(base_dir, ".env")
    if not os.path.exists(env_path):
        return
    with open(env_path, "r", encoding="utf-8") as f:
        for raw in f:
            line = raw.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, val = line.split("=", 1)
            key = key.strip()
            val = val.strip().strip('"').strip("'")
            if key and key not in os.environ:
                os.environ[key] = val


load_dotenv_file()

APP_VERSION = "0.5.0"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
CORS_ALLOW_ORIGINS = [o.strip() for o in os.getenv("CORS_ALLOW_ORIGINS", "*").split(",") if o.strip()]
store.DB_PATH = os.getenv("BILL_DB_PATH", store.DEFAULT_DB_PATH)
MONEY_FIELDS = ("subtotal", "tax_share", "service_share", "tip_share", "total")

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI()

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(BillSplitError)
async def bill_split_error_handler(request: Request, exc: BillSplitError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.detail)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.exception_handler(sqlite3.Error)
async def storage_error_handler(request: Request, exc: sqlite3.Error):
    logger.error("Storage failure on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Storage failure"})


class ItemPayload(BaseModel):
    name: str = Field(min_length=1)
    quantity: int = Field(default=1, gt=0)
    unit_price: Decimal = Field(ge=0)
    total_price: Decimal = Field(ge=0)
    notes: Optional[str] = None


class CreateBillRequest(BaseModel):
    title: str = Field(min_length=1)
    currency: str = "USD"
    payer_display_name: str = Field(min_length=1)
    tax_percentage: Decimal = Field(default=Decimal("0"), ge=0, le=100)
    service_percentage: Decimal = Field(default=Decimal("0"), ge=0, le=100)
    tip_amount: Decimal = Field(default=Decimal("0"), ge=0)
    items: List[ItemPayload] = Field(default_factory=list)


class UpdateBillRequest(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1)
    tax_percentage: Optional[Decimal] = Field(default=None, ge=0, le=100)
    service_percentage: Optional[Decimal] = Field(default=None, ge=0, le=100)
    tip_amount: Optional[Decimal] = Field(default=None, ge=0)


class UpdateItemRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    quantity: Optional[int] = Field(default=None, gt=0)
    unit_price: Optional[Decimal] = Field(default=None, ge=0)
    total_price: Optional[Decimal] = Field(default=None, ge=0)
    notes: Optional[str] = None


class JoinBillRequest(BaseModel):
    display_name: str = Field(min_length=1)
    session_token: Optional[str] = None


class ClaimItemRequest(BaseModel):
    participant_id: str


def serialize_total(total: Any, compact: bool = False) -> Dict[str, Any]:
    data = total.model_dump()
    for key in MONEY_FIELDS:
        data[key] = money_str(round_money(data[key]) if compact else data[key])
    if data.get("created_at") is not None:
        data["created_at"] = data["created_at"].isoformat()
    return data


def serialize_item(item: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(item)
    for key in ("unit_price", "total_price"):
        out[key] = money_str(out[key])
    return out


def serialize_bill(state: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(state)
    for key in ("tax_percentage", "service_percentage", "tip_amount"):
        out[key] = money_str(out[key])
    out["items"] = [serialize_item(i) for i in state["items"]]
    out["final_totals"] = [
        {k: money_str(v) if k in MONEY_FIELDS else v for k, v in ft.items()} for ft in state["final_totals"]
    ]
    return out


@app.get("/")
async def home():
    return {"message": "Bill split API. See /docs for endpoints."}


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "time_utc": datetime.now(timezone.utc).isoformat(),
        "db_path": store.DB_PATH,
    }


@app.get("/version")
async def version():
    return {"app": "billsplit-backend", "version": APP_VERSION}


@app.post("/bills", status_code=201)
async def create_bill(req: CreateBillRequest):
    bill_id, token = store.create_bill(
        title=req.title,
        payer_display_name=req.payer_display_name,
        currency=req.currency,
        tax_percentage=req.tax_percentage,
        service_percentage=req.service_percentage,
        tip_amount=req.tip_amount,
        items=[item.model_dump() for item in req.items],
    )
    logger.info("Created bill %s with %d items", bill_id, len(req.items))
    return {"bill": serialize_bill(store.bill_state(bill_id)), "session_token": token}


@app.get("/bills")
async def find_bill(code: str = Query(..., min_length=1)):
    bill_id = store.fetch_bill_id_by_code(code)
    if not bill_id:
        raise NotFound("Bill not found")
    return {"bill": serialize_bill(store.bill_state(bill_id))}


@app.get("/bills/{bill_id}")
async def bill_detail(bill_id: str):
    return {"bill": serialize_bill(store.bill_state(bill_id))}


@app.patch("/bills/{bill_id}")
async def update_bill(bill_id: str, req: UpdateBillRequest, x_session_token: Optional[str] = Header(None)):
    store.update_bill_settings(bill_id, x_session_token, req.model_dump())
    return {"bill": serialize_bill(store.bill_state(bill_id))}


@app.post("/bills/{bill_id}/participants", status_code=201)
async def join_bill(bill_id: str, req: JoinBillRequest):
    participant, token = store.join_bill(bill_id, req.display_name, req.session_token)
    return {"participant": participant, "session_token": token}


@app.get("/bills/{bill_id}/participants")
async def list_participants(bill_id: str):
    with store.db_conn() as conn:
        store.require_bill(conn, bill_id)
        participants = store.fetch_participants(conn, bill_id)
    return {"participants": participants}


@app.post("/bills/{bill_id}/items", status_code=201)
async def add_item(bill_id: str, req: ItemPayload, x_session_token: Optional[str] = Header(None)):
    item = store.add_item(bill_id, x_session_token, req.model_dump())
    return {"item": serialize_item(item)}


@app.patch("/bills/{bill_id}/items/{item_id}")
async def update_item(
    bill_id: str, item_id: str, req: UpdateItemRequest, x_session_token: Optional[str] = Header(None)
):
    item = store.update_item(bill_id, item_id, x_session_token, req.model_dump())
    return {"item": serialize_item(item)}


@app.delete("/bills/{bill_id}/items/{item_id}")
async def delete_item(bill_id: str, item_id: str, x_session_token: Optional[str] = Header(None)):
    store.delete_item(bill_id, item_id, x_session_token)
    return {"ok": True}


@app.post("/bills/{bill_id}/items/{item_id}/claim", status_code=201)
async def claim_item(
    bill_id: str, item_id: str, req: ClaimItemRequest, x_session_token: Optional[str] = Header(None)
):
    created = store.claim_item(bill_id, item_id, req.participant_id, x_session_token)
    return {"ok": True, "item_id": item_id, "participant_id": req.participant_id, "created": created}


@app.post("/bills/{bill_id}/items/{item_id}/unclaim")
async def unclaim_item(
    bill_id: str, item_id: str, req: ClaimItemRequest, x_session_token: Optional[str] = Header(None)
):
    removed = store.unclaim_item(bill_id, item_id, req.participant_id, x_session_token)
    return {"ok": True, "item_id": item_id, "participant_id": req.participant_id, "removed": removed}


@app.get("/bills/{bill_id}/totals")
async def bill_totals(bill_id: str, format: str = Query("full")):
    result = calculations.bill_totals(bill_id)
    compact = format == "compact"
    return {
        "is_final": result["is_final"],
        "totals": [serialize_total(t, compact=compact) for t in result["totals"]],
    }


@app.post("/bills/{bill_id}/finalize")
async def finalize_bill(bill_id: str, x_session_token: Optional[str] = Header(None)):
    with store.db_conn() as conn:
        store.require_bill(conn, bill_id)
        store.require_payer(conn, bill_id, x_session_token)
    totals = calculations.finalize_bill(bill_id)
    return {
        "bill": serialize_bill(store.bill_state(bill_id)),
        "totals": [serialize_total(t) for t in totals],
    }


@app.get("/bills/{bill_id}/final-totals")
async def final_totals(bill_id: str):
    return {"totals": [serialize_total(t) for t in calculations.read_final_totals(bill_id)]}


store.init_db()
