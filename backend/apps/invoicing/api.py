import threading
import uuid
from datetime import date
from decimal import Decimal
from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Response, status
from pydantic import BaseModel, Field
from sqlalchemy import create_engine

from agents.arca.constants import DOC_FINAL_CONSUMER
from agents.arca.dto import AuthorizedDocument, Buyer
from agents.arca.errors import (
    AlreadyInvoicedError,
    ArcaError,
    AuthenticationError,
    BusinessRejectionError,
    ConfigurationError,
    DocumentValidationError,
    DuplicateNumberError,
    InvalidCredentialFormatError,
    SalesPointNotFoundError,
    TransportError,
)
from agents.arca.vault import CredentialVault
from backend.core.config import settings
from backend.core.observability.logging import logger, set_trace_id
from backend.core.tenant.context import require_tenant

from .factory import InvoiceRequest, ProfileInput, TenantSessionFactory
from .repository import DocumentFilter, FiscalRepository, SalesPoint, TenantFiscalProfile

router = APIRouter(prefix="/api/v1/invoicing")

_factory: TenantSessionFactory | None = None
_factory_lock = threading.Lock()


def get_factory() -> TenantSessionFactory:
    """Process-wide factory; the vault key is validated on first construction."""
    global _factory
    with _factory_lock:
        if _factory is None:
            engine = create_engine(settings.database_url, future=True)
            _factory = TenantSessionFactory(FiscalRepository(engine), CredentialVault.from_settings())
    return _factory


async def _trace(trace_header: str | None = Header(None, alias="X-Trace-ID")) -> str:
    trace_id = trace_header or str(uuid.uuid4())
    set_trace_id(trace_id)
    return trace_id


class LineItemIn(BaseModel):
    description: str
    quantity: Decimal = Field(gt=0)
    unit_price: Decimal = Field(ge=0)


class BuyerIn(BaseModel):
    doc_type: int = DOC_FINAL_CONSUMER
    doc_number: str = "0"
    name: str | None = None
    fiscal_condition: str | int | None = None


class InvoiceIn(BaseModel):
    items: list[LineItemIn]
    total: Decimal
    buyer: BuyerIn | None = None
    document_type: int | None = None
    sales_point_id: str | None = None
    order_id: str | None = None
    booking_id: str | None = None


class CreditNoteIn(BaseModel):
    original_id: str
    total: Decimal
    reason: str
    items: list[LineItemIn] | None = None
    sales_point_id: str | None = None


class ProfileIn(BaseModel):
    tax_id: str
    legal_name: str
    fiscal_address: str
    regime: str
    activity_start: date | None = None
    certificate: str | None = None
    private_key: str | None = None


class ActiveIn(BaseModel):
    active: bool


class SalesPointIn(BaseModel):
    number: int
    description: str | None = None
    is_default: bool = False


class SalesPointUpdateIn(BaseModel):
    description: str | None = None
    is_default: bool | None = None
    is_active: bool | None = None


class DocumentOut(BaseModel):
    id: str
    document_type: int
    document_type_name: str
    sales_point_number: int
    number: int
    formatted_number: str
    authorization_code: str
    authorization_expiry: date
    issue_date: date
    net: str
    tax: str
    total: str
    buyer: dict[str, Any]
    status: str
    order_id: str | None = None
    booking_id: str | None = None
    original_document_id: str | None = None
    voided_by_id: str | None = None


class DocumentPage(BaseModel):
    items: list[DocumentOut]
    total: int
    limit: int
    offset: int


class CreditNoteOut(BaseModel):
    credit_note: DocumentOut
    original: DocumentOut
    original_voided: bool


def _document_out(document: AuthorizedDocument) -> DocumentOut:
    return DocumentOut(
        id=document.id,
        document_type=document.document_type,
        document_type_name=document.document_type_name,
        sales_point_number=document.sales_point_number,
        number=document.number,
        formatted_number=document.formatted_number,
        authorization_code=document.authorization_code,
        authorization_expiry=document.authorization_expiry,
        issue_date=document.issue_date,
        net=str(document.net),
        tax=str(document.tax),
        total=str(document.total),
        buyer=document.buyer.to_dict(),
        status=document.status,
        order_id=document.order_id,
        booking_id=document.booking_id,
        original_document_id=document.original_document_id,
        voided_by_id=document.voided_by_id,
    )


def _status_for(exc: ArcaError) -> int:
    if isinstance(exc, (AlreadyInvoicedError, DuplicateNumberError)):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, (InvalidCredentialFormatError, DocumentValidationError, BusinessRejectionError)):
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    if isinstance(exc, ConfigurationError):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, AuthenticationError):
        return status.HTTP_502_BAD_GATEWAY
    if isinstance(exc, TransportError):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def _fail(exc: ArcaError):
    code = _status_for(exc)
    log = logger.error if code >= 500 and code != status.HTTP_503_SERVICE_UNAVAILABLE else logger.info
    log("invoicing_request_failed", extra={"error": exc.code, "status": code})
    raise HTTPException(status_code=code, detail=exc.to_dict()) from exc


def _error(status_code: int, code: str, detail: str):
    raise HTTPException(status_code=status_code, detail={"error": code, "detail": detail})


def _profile_out(profile: TenantFiscalProfile) -> dict[str, Any]:
    return profile.public_view()


def _sales_point_out(point: SalesPoint) -> dict[str, Any]:
    return {
        "id": point.id,
        "number": point.number,
        "description": point.description,
        "is_default": point.is_default,
        "is_active": point.is_active,
    }


# -- documents ---------------------------------------------------------------


@router.post("/invoices", response_model=DocumentOut, status_code=status.HTTP_201_CREATED)
def emit_invoice(
    body: InvoiceIn,
    tenant_id: str = Depends(require_tenant),
    trace_id: str = Depends(_trace),
    factory: TenantSessionFactory = Depends(get_factory),
):
    buyer_in = body.buyer or BuyerIn()
    request = InvoiceRequest(
        items=[item.model_dump() for item in body.items],
        total=body.total,
        buyer=Buyer(doc_type=buyer_in.doc_type, doc_number=buyer_in.doc_number, name=buyer_in.name),
        buyer_fiscal_condition=buyer_in.fiscal_condition,
        document_type=body.document_type,
        order_id=body.order_id,
        booking_id=body.booking_id,
    )
    try:
        session = factory.for_tenant(tenant_id, body.sales_point_id)
        document = session.emit_invoice(request)
    except ArcaError as exc:
        _fail(exc)
    return _document_out(document)


@router.post("/credit-notes", response_model=CreditNoteOut, status_code=status.HTTP_201_CREATED)
def emit_credit_note(
    body: CreditNoteIn,
    tenant_id: str = Depends(require_tenant),
    trace_id: str = Depends(_trace),
    factory: TenantSessionFactory = Depends(get_factory),
):
    items = [item.model_dump() for item in body.items] if body.items else None
    try:
        session = factory.for_tenant(tenant_id, body.sales_point_id)
        outcome = session.emit_credit_note(body.original_id, body.total, body.reason, items)
    except ArcaError as exc:
        _fail(exc)
    return CreditNoteOut(
        credit_note=_document_out(outcome.credit_note),
        original=_document_out(outcome.original),
        original_voided=outcome.original_voided,
    )


@router.get("/documents", response_model=DocumentPage)
def list_documents(
    response: Response,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    document_type: int | None = Query(None),
    status_filter: str | None = Query(None, alias="status"),
    date_from: date | None = Query(None),
    date_to: date | None = Query(None),
    search: str | None = Query(None, max_length=100),
    order_id: str | None = Query(None),
    booking_id: str | None = Query(None),
    tenant_id: str = Depends(require_tenant),
    factory: TenantSessionFactory = Depends(get_factory),
):
    filters = DocumentFilter(
        document_type=document_type,
        status=status_filter,
        date_from=date_from,
        date_to=date_to,
        search=search,
        order_id=order_id,
        booking_id=booking_id,
    )
    documents = factory.repository.list_documents(tenant_id, filters, limit=limit, offset=offset)
    total = factory.repository.count_documents(tenant_id, filters)
    response.headers["X-Total-Count"] = str(total)
    return DocumentPage(
        items=[_document_out(d) for d in documents],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/documents/{document_id}", response_model=DocumentOut)
def get_document(
    document_id: str,
    tenant_id: str = Depends(require_tenant),
    factory: TenantSessionFactory = Depends(get_factory),
):
    document = factory.repository.get_document(tenant_id, document_id)
    if document is None:
        _error(status.HTTP_404_NOT_FOUND, "not_found", "document not found")
    return _document_out(document)


# -- configuration -----------------------------------------------------------


@router.get("/config")
def get_configuration(
    tenant_id: str = Depends(require_tenant),
    factory: TenantSessionFactory = Depends(get_factory),
):
    profile = factory.get_configuration(tenant_id)
    if profile is None:
        return {"configured": False, "config": None}
    config = _profile_out(profile)
    config["sales_points"] = [_sales_point_out(p) for p in factory.list_sales_points(tenant_id)]
    return {"configured": True, "config": config}


@router.put("/config")
def save_configuration(
    body: ProfileIn,
    tenant_id: str = Depends(require_tenant),
    factory: TenantSessionFactory = Depends(get_factory),
):
    try:
        profile = factory.save_configuration(tenant_id, ProfileInput(**body.model_dump()))
    except ArcaError as exc:
        _fail(exc)
    return _profile_out(profile)


@router.post("/config/test")
def test_connection(
    tenant_id: str = Depends(require_tenant),
    trace_id: str = Depends(_trace),
    factory: TenantSessionFactory = Depends(get_factory),
):
    return factory.test_connection(tenant_id).to_dict()


@router.put("/config/active")
def set_active(
    body: ActiveIn,
    tenant_id: str = Depends(require_tenant),
    factory: TenantSessionFactory = Depends(get_factory),
):
    try:
        profile = factory.set_active(tenant_id, body.active)
    except ArcaError as exc:
        _fail(exc)
    return _profile_out(profile)


@router.delete("/config", status_code=status.HTTP_204_NO_CONTENT)
def disconnect(
    tenant_id: str = Depends(require_tenant),
    factory: TenantSessionFactory = Depends(get_factory),
):
    try:
        factory.disconnect(tenant_id)
    except ArcaError as exc:
        _fail(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.delete("/config/cache")
def invalidate_cache(
    tenant_id: str = Depends(require_tenant),
    factory: TenantSessionFactory = Depends(get_factory),
):
    return {"removed": factory.invalidate_cache(tenant_id)}


# -- sales points and registry -----------------------------------------------


@router.get("/sales-points")
def list_sales_points(
    tenant_id: str = Depends(require_tenant),
    factory: TenantSessionFactory = Depends(get_factory),
):
    try:
        points = factory.list_sales_points(tenant_id)
    except ArcaError as exc:
        _fail(exc)
    return {"sales_points": [_sales_point_out(p) for p in points]}


@router.post("/sales-points", status_code=status.HTTP_201_CREATED)
def add_sales_point(
    body: SalesPointIn,
    tenant_id: str = Depends(require_tenant),
    factory: TenantSessionFactory = Depends(get_factory),
):
    try:
        point = factory.add_sales_point(tenant_id, body.number, body.description, body.is_default)
    except ArcaError as exc:
        _fail(exc)
    return _sales_point_out(point)


@router.put("/sales-points/{sales_point_id}")
def update_sales_point(
    sales_point_id: str,
    body: SalesPointUpdateIn,
    tenant_id: str = Depends(require_tenant),
    factory: TenantSessionFactory = Depends(get_factory),
):
    try:
        point = factory.update_sales_point(tenant_id, sales_point_id, **body.model_dump())
    except SalesPointNotFoundError:
        _error(status.HTTP_404_NOT_FOUND, "sales_point_not_found", "sales point not found")
    except ArcaError as exc:
        _fail(exc)
    return _sales_point_out(point)


@router.get("/sales-points/authority")
def authority_sales_points(
    tenant_id: str = Depends(require_tenant),
    trace_id: str = Depends(_trace),
    factory: TenantSessionFactory = Depends(get_factory),
):
    try:
        return {"sales_points": factory.authority_sales_points(tenant_id)}
    except ArcaError as exc:
        _fail(exc)


@router.get("/taxpayers/{tax_id}")
def lookup_taxpayer(
    tax_id: str,
    tenant_id: str = Depends(require_tenant),
    trace_id: str = Depends(_trace),
    factory: TenantSessionFactory = Depends(get_factory),
):
    try:
        info = factory.lookup_taxpayer(tenant_id, tax_id)
    except ArcaError as exc:
        _fail(exc)
    if info is None:
        _error(status.HTTP_404_NOT_FOUND, "taxpayer_not_found", "no registry knows this tax id")
    return info.to_dict()


@router.delete("/taxpayers/cache")
def clear_taxpayer_cache(
    tenant_id: str = Depends(require_tenant),
    factory: TenantSessionFactory = Depends(get_factory),
):
    factory.clear_taxpayer_cache()
    return {"cleared": "*"}


@router.delete("/taxpayers/cache/{tax_id}")
def clear_taxpayer_cache_entry(
    tax_id: str,
    tenant_id: str = Depends(require_tenant),
    factory: TenantSessionFactory = Depends(get_factory),
):
    try:
        factory.clear_taxpayer_cache(tax_id)
    except ArcaError as exc:
        _fail(exc)
    return {"cleared": tax_id}
