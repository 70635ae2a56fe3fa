"""
LIMS API Entrypoint - Thin API with Command Dispatch

Write endpoints build a command and hand it to the message bus; read
endpoints delegate to views. The acting user arrives in the X-Actor-Id
header set by the identity layer in front of this service.
"""
import logging
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

import config
from lims import views
from lims.adapters import orm
from lims.domain import commands
from lims.domain.order import OrderStatus
from lims.service_layer import messagebus
from lims.service_layer.unit_of_work import DEFAULT_SESSION_FACTORY, SqlAlchemyUnitOfWork
from shared.domain.exceptions import (
    AccessionNotFound,
    LimsError,
    OrderNotFound,
    ResultNotFound,
    SpecimenNotFound,
)

logging.basicConfig(
    level=getattr(logging, config.get_log_level(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="LIMS Lifecycle API",
    description="Order, specimen accession and result lifecycle engine",
    version="1.0.0",
)


# Initialize database and ORM mappers (Cosmic Python pattern)
@app.on_event("startup")
async def startup_event():
    orm.metadata.create_all(DEFAULT_SESSION_FACTORY.kw["bind"])
    orm.start_mappers()
    logger.info("LIMS database initialized")


@app.exception_handler(LimsError)
async def lims_error_handler(request: Request, exc: LimsError):
    if exc.http_status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code} {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} refused: {exc.code} {exc.message}")
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


def get_uow():
    return SqlAlchemyUnitOfWork()


def _dispatch(cmd, uow):
    return messagebus.handle(cmd, uow)[0]


# ---------- Request models ----------

class RequestedTestModel(BaseModel):
    test_id: str
    priority: Optional[str] = None
    notes: Optional[str] = None


class PhysicianModel(BaseModel):
    name: str
    license_number: Optional[str] = None
    phone: Optional[str] = None
    doctor_id: Optional[str] = None


class CreateOrderRequest(BaseModel):
    patient_id: str
    tests: List[RequestedTestModel]
    physician: PhysicianModel
    priority: str = "routine"
    medical_office_id: Optional[str] = None
    clinical_info: Optional[str] = None
    specimen_type: Optional[str] = None
    specimen_barcode: Optional[str] = None
    scheduled_date: Optional[datetime] = None
    collection_date: Optional[datetime] = None


class LineItemStatusRequest(BaseModel):
    status: str
    notes: Optional[str] = None


class CancelOrderRequest(BaseModel):
    reason: Optional[str] = None


class ReceiveRequest(BaseModel):
    location: Optional[str] = None
    notes: Optional[str] = None


class AccessionRequest(BaseModel):
    condition: str = "good"
    notes: Optional[str] = None
    location: Optional[str] = None


class RejectRequest(BaseModel):
    reason: str
    comments: Optional[str] = None


class HoldRequest(BaseModel):
    reason: str
    notes: Optional[str] = None


class ReleaseRequest(BaseModel):
    notes: Optional[str] = None


class CustodyRequest(BaseModel):
    action: str
    location: Optional[str] = None
    notes: Optional[str] = None


class StorageRequest(BaseModel):
    location: str
    temperature: str
    notes: Optional[str] = None


class AliquotRequest(BaseModel):
    volume: float
    unit: str = "mL"
    location: Optional[str] = None


class ConsumeRequest(BaseModel):
    notes: Optional[str] = None


class CreateResultRequest(BaseModel):
    test_id: str
    parameters: List[Dict[str, Any]] = Field(default_factory=list)
    target_results: List[Dict[str, Any]] = Field(default_factory=list)
    resistance_results: List[Dict[str, Any]] = Field(default_factory=list)
    susceptibility_results: List[Dict[str, Any]] = Field(default_factory=list)
    quality_control: Optional[Dict[str, Any]] = None
    treatment_suggestions: Optional[Dict[str, Any]] = None
    interpretation: Optional[str] = None
    recommendations: Optional[str] = None
    comments: Optional[str] = None
    overall_result: Optional[str] = None


class ReviewRequest(BaseModel):
    notes: Optional[str] = None


class AmendRequest(BaseModel):
    reason: str
    changes: Dict[str, Any]


class CancelResultRequest(BaseModel):
    reason: Optional[str] = None


# ---------- Endpoints ----------

@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "service": "lims-lifecycle-api",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.post("/api/v1/orders", status_code=201)
def create_order(body: CreateOrderRequest, x_actor_id: str = Header(...), uow=Depends(get_uow)):
    cmd = commands.CreateOrder(
        patient_id=body.patient_id,
        tests=[commands.RequestedTest(**t.model_dump()) for t in body.tests],
        physician=body.physician.model_dump(),
        actor_id=x_actor_id,
        priority=body.priority,
        medical_office_id=body.medical_office_id,
        clinical_info=body.clinical_info,
        specimen_type=body.specimen_type,
        specimen_barcode=body.specimen_barcode,
        scheduled_date=body.scheduled_date,
        collection_date=body.collection_date,
    )
    order_number = _dispatch(cmd, uow)
    return views.get_order(order_number, uow)


@app.get("/api/v1/orders")
def list_orders(status: Optional[OrderStatus] = None, patient_id: Optional[str] = None, uow=Depends(get_uow)):
    orders = views.list_orders(uow, status=status.value if status else None, patient_id=patient_id)
    return {"count": len(orders), "orders": orders}


@app.get("/api/v1/orders/awaiting-accession")
def awaiting_accession(uow=Depends(get_uow)):
    return views.orders_awaiting_accession(uow)


@app.get("/api/v1/orders/{order_number}")
def get_order(order_number: str, uow=Depends(get_uow)):
    order = views.get_order(order_number, uow)
    if order is None:
        raise OrderNotFound(order_number)
    return order


@app.delete("/api/v1/orders/{order_number}")
def cancel_order(
    order_number: str,
    body: Optional[CancelOrderRequest] = None,
    x_actor_id: str = Header(...),
    uow=Depends(get_uow),
):
    reason = body.reason if body else None
    _dispatch(commands.CancelOrder(order_number=order_number, actor_id=x_actor_id, reason=reason), uow)
    return views.get_order(order_number, uow)


@app.put("/api/v1/orders/{order_number}/tests/{test_id}/status")
def update_line_item_status(
    order_number: str,
    test_id: str,
    body: LineItemStatusRequest,
    x_actor_id: str = Header(...),
    uow=Depends(get_uow),
):
    cmd = commands.UpdateLineItemStatus(
        order_number=order_number,
        test_id=test_id,
        status=body.status,
        actor_id=x_actor_id,
        notes=body.notes,
    )
    _dispatch(cmd, uow)
    return views.get_order(order_number, uow)


@app.get("/api/v1/orders/{order_number}/specimen")
def get_specimen(order_number: str, uow=Depends(get_uow)):
    record = views.get_specimen(order_number, uow)
    if record is None:
        raise SpecimenNotFound(order_number)
    return record


@app.post("/api/v1/orders/{order_number}/specimen/receive")
def receive_specimen(order_number: str, body: ReceiveRequest, x_actor_id: str = Header(...), uow=Depends(get_uow)):
    _dispatch(commands.ReceiveSpecimen(order_number=order_number, actor_id=x_actor_id, **body.model_dump()), uow)
    return views.get_specimen(order_number, uow)


@app.post("/api/v1/orders/{order_number}/specimen/accession")
def accession_specimen(order_number: str, body: AccessionRequest, x_actor_id: str = Header(...), uow=Depends(get_uow)):
    accession_number = _dispatch(
        commands.AccessionSpecimen(order_number=order_number, actor_id=x_actor_id, **body.model_dump()),
        uow,
    )
    return {"accession_number": accession_number, "order": views.get_order(order_number, uow)}


@app.post("/api/v1/orders/{order_number}/specimen/reject")
def reject_specimen(order_number: str, body: RejectRequest, x_actor_id: str = Header(...), uow=Depends(get_uow)):
    _dispatch(commands.RejectSpecimen(order_number=order_number, actor_id=x_actor_id, **body.model_dump()), uow)
    return views.get_order(order_number, uow)


@app.post("/api/v1/orders/{order_number}/specimen/hold")
def hold_specimen(order_number: str, body: HoldRequest, x_actor_id: str = Header(...), uow=Depends(get_uow)):
    _dispatch(commands.HoldSpecimen(order_number=order_number, actor_id=x_actor_id, **body.model_dump()), uow)
    return views.get_order(order_number, uow)


@app.post("/api/v1/orders/{order_number}/specimen/release")
def release_specimen_hold(order_number: str, body: ReleaseRequest, x_actor_id: str = Header(...), uow=Depends(get_uow)):
    _dispatch(commands.ReleaseSpecimenHold(order_number=order_number, actor_id=x_actor_id, **body.model_dump()), uow)
    return views.get_order(order_number, uow)


@app.post("/api/v1/orders/{order_number}/specimen/custody")
def record_custody_event(order_number: str, body: CustodyRequest, x_actor_id: str = Header(...), uow=Depends(get_uow)):
    _dispatch(commands.RecordCustodyEvent(order_number=order_number, actor_id=x_actor_id, **body.model_dump()), uow)
    return views.get_specimen(order_number, uow)


@app.post("/api/v1/orders/{order_number}/specimen/storage")
def store_specimen(order_number: str, body: StorageRequest, x_actor_id: str = Header(...), uow=Depends(get_uow)):
    _dispatch(commands.StoreSpecimen(order_number=order_number, actor_id=x_actor_id, **body.model_dump()), uow)
    return views.get_specimen(order_number, uow)


@app.post("/api/v1/orders/{order_number}/specimen/aliquots", status_code=201)
def create_aliquot(order_number: str, body: AliquotRequest, x_actor_id: str = Header(...), uow=Depends(get_uow)):
    aliquot_id = _dispatch(
        commands.CreateAliquot(order_number=order_number, actor_id=x_actor_id, **body.model_dump()),
        uow,
    )
    return {"aliquot_id": aliquot_id}


@app.post("/api/v1/orders/{order_number}/specimen/consume")
def consume_specimen(order_number: str, body: ConsumeRequest, x_actor_id: str = Header(...), uow=Depends(get_uow)):
    _dispatch(commands.ConsumeSpecimen(order_number=order_number, actor_id=x_actor_id, **body.model_dump()), uow)
    return views.get_specimen(order_number, uow)


@app.get("/api/v1/accessions/{accession_number}")
def get_order_by_accession(accession_number: str, uow=Depends(get_uow)):
    order = views.get_order_by_accession(accession_number, uow)
    if order is None:
        raise AccessionNotFound(accession_number)
    return order


@app.get("/api/v1/specimens/search/{term}")
def search_specimen(term: str, uow=Depends(get_uow)):
    order = views.find_specimen(term, uow)
    if order is None:
        raise SpecimenNotFound(term)
    return order


@app.post("/api/v1/orders/{order_number}/results", status_code=201)
def create_result(order_number: str, body: CreateResultRequest, x_actor_id: str = Header(...), uow=Depends(get_uow)):
    cmd = commands.CreateResult(order_number=order_number, actor_id=x_actor_id, **body.model_dump())
    result_number = _dispatch(cmd, uow)
    return views.get_result(result_number, uow)


@app.get("/api/v1/orders/{order_number}/results")
def results_for_order(order_number: str, uow=Depends(get_uow)):
    return views.results_for_order(order_number, uow)


@app.get("/api/v1/patients/{patient_id}/results")
def results_for_patient(patient_id: str, uow=Depends(get_uow)):
    return views.results_for_patient(patient_id, uow)


@app.get("/api/v1/results/critical")
def critical_results(uow=Depends(get_uow)):
    return views.critical_results(uow)


@app.get("/api/v1/results/{result_number}")
def get_result(result_number: str, uow=Depends(get_uow)):
    result = views.get_result(result_number, uow)
    if result is None:
        raise ResultNotFound(result_number)
    return result


@app.put("/api/v1/results/{result_number}/review")
def review_result(result_number: str, body: ReviewRequest, x_actor_id: str = Header(...), uow=Depends(get_uow)):
    _dispatch(commands.ReviewResult(result_number=result_number, actor_id=x_actor_id, notes=body.notes), uow)
    return views.get_result(result_number, uow)


@app.put("/api/v1/results/{result_number}/approve")
def approve_result(result_number: str, x_actor_id: str = Header(...), uow=Depends(get_uow)):
    _dispatch(commands.ApproveResult(result_number=result_number, actor_id=x_actor_id), uow)
    return views.get_result(result_number, uow)


@app.put("/api/v1/results/{result_number}/finalize")
def finalize_result(result_number: str, x_actor_id: str = Header(...), uow=Depends(get_uow)):
    _dispatch(commands.FinalizeResult(result_number=result_number, actor_id=x_actor_id), uow)
    return views.get_result(result_number, uow)


@app.put("/api/v1/results/{result_number}/amend")
def amend_result(result_number: str, body: AmendRequest, x_actor_id: str = Header(...), uow=Depends(get_uow)):
    cmd = commands.AmendResult(
        result_number=result_number,
        reason=body.reason,
        changes=body.changes,
        actor_id=x_actor_id,
    )
    _dispatch(cmd, uow)
    return views.get_result(result_number, uow)


@app.put("/api/v1/results/{result_number}/cancel")
def cancel_result(result_number: str, body: CancelResultRequest, x_actor_id: str = Header(...), uow=Depends(get_uow)):
    _dispatch(commands.CancelResult(result_number=result_number, actor_id=x_actor_id, reason=body.reason), uow)
    return views.get_result(result_number, uow)


@app.post("/api/v1/identifiers/{kind}", status_code=201)
def next_identifier(kind: str, day: Optional[date] = None, uow=Depends(get_uow)):
    identifier = _dispatch(commands.NextIdentifier(kind=kind, day=day), uow)
    return {"kind": kind, "identifier": identifier}
