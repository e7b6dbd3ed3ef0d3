import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from lending.circulation import CirculationService
from lending.config import configure_logging, settings
from lending.database import SQLiteRepository, get_db_connection
from lending.errors import (
    BorrowingRejected,
    ConflictError,
    InvalidTransitionError,
    InventoryError,
    LendingError,
    NotFoundError,
    OutOfStockError,
    StorageError,
    ValidationError,
)

logger = logging.getLogger(__name__)

_service: Optional[CirculationService] = None


def get_circulation() -> CirculationService:
    """Dependency returning the process-wide circulation service."""
    global _service
    if _service is None:
        _service = CirculationService(SQLiteRepository(settings.db_file), policy=settings.policy())
    return _service


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    logger.info("%s %s starting (db=%s)", settings.app_name, settings.app_version, settings.db_file)
    yield
    logger.info("%s shutting down", settings.app_name)


app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started) * 1000
    logger.info("%s %s -> %s (%.1f ms)", request.method, request.url.path, response.status_code, elapsed_ms)
    return response


# --- Security ---
api_key_header = APIKeyHeader(name="X-API-Key")


def get_api_key(api_key: str = Security(api_key_header)):
    """Dependency that checks the API key on write endpoints."""
    if api_key == settings.api_key:
        return api_key
    raise HTTPException(status_code=403, detail="Could not validate credentials")


# --- Error mapping ---
def _status_for(exc: LendingError) -> int:
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, (OutOfStockError, ConflictError)):
        return 409
    if isinstance(exc, ValidationError):
        return 422
    if isinstance(exc, (BorrowingRejected, InvalidTransitionError)):
        return 400
    if isinstance(exc, InventoryError):
        return 500
    return 400


def _error_body(request: Request, status_code: int, error: str, code: str, message: str,
                details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {
        "status_code": status_code,
        "error": error,
        "code": code,
        "message": message,
        "details": details or {},
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "path": request.url.path,
    }


@app.exception_handler(LendingError)
async def lending_error_handler(request: Request, exc: LendingError):
    status_code = _status_for(exc)
    if status_code >= 500:
        logger.error("Inventory invariant breached: %s", exc.message)
    body = _error_body(request, status_code, "BUSINESS_LOGIC_ERROR", exc.code, exc.message,
                       {**exc.details, "entity": exc.entity})
    return JSONResponse(status_code=status_code, content=body)


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError):
    logger.error("Storage failure on %s %s: %s", request.method, request.url.path, exc)
    body = _error_body(request, 503, "STORAGE_ERROR", exc.code, "Storage is temporarily unavailable")
    return JSONResponse(status_code=503, content=body)


# --- Models ---
class MemberCreateModel(BaseModel):
    name: str
    email: str
    active: bool = True


class MemberModel(BaseModel):
    id: str
    name: str
    email: str
    active: bool
    created_at: str | None = None


class ActiveUpdateModel(BaseModel):
    active: bool


class EditionCreateModel(BaseModel):
    book_title: str
    stock_quantity: int = Field(ge=0)
    price: float | None = Field(default=None, ge=0)
    format: str | None = None


class EditionModel(BaseModel):
    id: str
    book_title: str
    format: str | None = None
    price: float | None = None
    stock_quantity: int
    available_quantity: int


class BorrowingCreateModel(BaseModel):
    member_id: str
    edition_id: str
    due_date: str | None = Field(default=None, description="ISO-8601 due date; defaults to the loan period")
    notes: str | None = None


class BorrowingModel(BaseModel):
    id: str
    member_id: str
    edition_id: str
    borrowed_at: str
    due_date: str
    returned_at: str | None = None
    fine_amount: float | None = None
    status: str
    notes: str | None = None


class StatsModel(BaseModel):
    total_borrowings: int
    active_borrowings: int
    overdue_borrowings: int
    returned_borrowings: int
    lost_borrowings: int
    total_fines: float


# --- Health ---
@app.get("/health")
def health():
    """Lightweight health check with a quick database probe."""
    db_ok = True
    try:
        conn = get_db_connection(settings.db_file)
        conn.execute("SELECT 1")
        conn.close()
    except Exception as exc:
        logger.warning("Health check database probe failed: %s", exc)
        db_ok = False
    return {
        "status": "healthy" if db_ok else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "db": db_ok,
        "version": settings.app_version,
    }


# --- Members ---
@app.post("/members", response_model=MemberModel, status_code=201, dependencies=[Depends(get_api_key)])
def create_member(payload: MemberCreateModel, service: CirculationService = Depends(get_circulation)):
    member = service.register_member(payload.name, payload.email, active=payload.active)
    return MemberModel(**member.to_dict())


@app.get("/members", response_model=List[MemberModel])
def list_members(service: CirculationService = Depends(get_circulation)):
    return [MemberModel(**m.to_dict()) for m in service.list_members()]


@app.patch("/members/{member_id}/active", response_model=MemberModel, dependencies=[Depends(get_api_key)])
def set_member_active(member_id: str, payload: ActiveUpdateModel,
                      service: CirculationService = Depends(get_circulation)):
    member = service.set_member_active(member_id, payload.active)
    return MemberModel(**member.to_dict())


@app.get("/members/{member_id}/borrowings", response_model=List[BorrowingModel])
def member_borrowings(member_id: str, service: CirculationService = Depends(get_circulation)):
    return [BorrowingModel(**b.to_dict()) for b in service.member_history(member_id)]


# --- Editions ---
@app.post("/editions", response_model=EditionModel, status_code=201, dependencies=[Depends(get_api_key)])
def create_edition(payload: EditionCreateModel, service: CirculationService = Depends(get_circulation)):
    edition = service.add_edition(payload.book_title, payload.stock_quantity,
                                  price=payload.price, format=payload.format)
    return EditionModel(**edition.to_dict())


@app.get("/editions", response_model=List[EditionModel])
def list_editions(service: CirculationService = Depends(get_circulation)):
    return [EditionModel(**e.to_dict()) for e in service.list_editions()]


@app.get("/editions/{edition_id}", response_model=EditionModel)
def get_edition(edition_id: str, service: CirculationService = Depends(get_circulation)):
    return EditionModel(**service.get_edition(edition_id).to_dict())


# --- Borrowings ---
@app.post("/borrowings", response_model=BorrowingModel, status_code=201, dependencies=[Depends(get_api_key)])
def create_borrowing(payload: BorrowingCreateModel, service: CirculationService = Depends(get_circulation)):
    borrowing = service.borrow(payload.member_id, payload.edition_id,
                               due_date=payload.due_date, notes=payload.notes)
    return BorrowingModel(**borrowing.to_dict())


@app.get("/borrowings", response_model=List[BorrowingModel])
def list_borrowings(
    status: Optional[str] = Query(None, description="BORROWED | RETURNED | LOST"),
    service: CirculationService = Depends(get_circulation),
):
    return [BorrowingModel(**b.to_dict()) for b in service.list_borrowings(status)]


@app.get("/borrowings/overdue", response_model=List[BorrowingModel])
def list_overdue(service: CirculationService = Depends(get_circulation)):
    return [BorrowingModel(**b.to_dict()) for b in service.list_overdue()]


@app.get("/borrowings/stats", response_model=StatsModel)
def borrowing_stats(service: CirculationService = Depends(get_circulation)):
    return StatsModel(**service.stats())


@app.get("/borrowings/{borrowing_id}", response_model=BorrowingModel)
def get_borrowing(borrowing_id: str, service: CirculationService = Depends(get_circulation)):
    return BorrowingModel(**service.get_borrowing(borrowing_id).to_dict())


@app.post("/borrowings/{borrowing_id}/return", response_model=BorrowingModel,
          dependencies=[Depends(get_api_key)])
def return_borrowing(borrowing_id: str, service: CirculationService = Depends(get_circulation)):
    return BorrowingModel(**service.return_borrowing(borrowing_id).to_dict())


@app.post("/borrowings/{borrowing_id}/lost", response_model=BorrowingModel,
          dependencies=[Depends(get_api_key)])
def mark_lost(borrowing_id: str, service: CirculationService = Depends(get_circulation)):
    return BorrowingModel(**service.mark_lost(borrowing_id).to_dict())
