"""Invoice emission: type matrix, tax split and the authorization sequence."""

from __future__ import annotations

import uuid
from contextlib import nullcontext
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, ContextManager, Iterable, Mapping, Optional, Sequence, Tuple, Union

from backend.core.config import settings
from backend.core.observability.logging import get_logger
from backend.core.observability.metrics import increment_document_rejections, increment_documents_emitted

from .constants import (
    AUTHORITY_TZ,
    BUYER_DOC_TYPES,
    DOC_CUIT,
    DOC_FINAL_CONSUMER,
    FINAL_CONSUMER_NAME,
    INVOICE_A,
    INVOICE_B,
    INVOICE_C,
    INVOICE_TYPES,
    IVA_REGISTERED,
    REGIME_FULL,
    REGIME_SIMPLIFIED,
    SIMPLIFIED_TYPES,
    document_type_name,
    fiscal_condition_code,
)
from .dto import (
    AssociatedDocument,
    AuthorizedDocument,
    Buyer,
    IssuerContext,
    LineItem,
    TaxBreakdown,
    quantize_money,
    to_decimal,
)
from .errors import (
    ArcaError,
    AuthenticationError,
    BusinessRejectionError,
    ConfigurationError,
    DocumentValidationError,
    DuplicateNumberError,
    TransportError,
)
from .numbering import EmissionSerializer, EmissionSlot
from .wsfe import AuthorizationRequest, AuthorizationResult, WsfeClient

logger = get_logger(__name__)

ItemInput = Union[LineItem, Mapping[str, Any]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def select_document_type(regime: str, buyer_fiscal_condition: int) -> int:
    """Issuer regime x buyer condition -> invoice type."""

    if regime == REGIME_SIMPLIFIED:
        return INVOICE_C
    if regime == REGIME_FULL:
        return INVOICE_A if buyer_fiscal_condition == IVA_REGISTERED else INVOICE_B
    raise ConfigurationError(f"unknown fiscal regime {regime!r}", regime=regime)


def split_tax(total: Decimal, document_type: int, rate: Decimal) -> TaxBreakdown:
    """Net/tax split of a tax-inclusive total; simplified types carry no tax."""

    total = quantize_money(total)
    if document_type in SIMPLIFIED_TYPES:
        return TaxBreakdown(net=total, tax=Decimal("0.00"), total=total)
    net = quantize_money(total / (Decimal("1") + rate))
    return TaxBreakdown(net=net, tax=total - net, total=total)


def normalize_items(items: Optional[Iterable[ItemInput]]) -> Tuple[LineItem, ...]:
    if not items:
        raise DocumentValidationError("at least one line item is required", field="items")
    normalized = []
    for index, item in enumerate(items):
        try:
            line = item if isinstance(item, LineItem) else LineItem.from_dict(item)
        except (KeyError, TypeError, ValueError, InvalidOperation) as exc:
            raise DocumentValidationError(f"item {index} is malformed", field=f"items[{index}]") from exc
        if not line.description.strip():
            raise DocumentValidationError(f"item {index} needs a description", field=f"items[{index}].description")
        if not line.quantity.is_finite() or line.quantity <= 0:
            raise DocumentValidationError(f"item {index} needs a positive quantity", field=f"items[{index}].quantity")
        if not line.unit_price.is_finite() or line.unit_price < 0:
            raise DocumentValidationError(
                f"item {index} needs a non-negative unit price", field=f"items[{index}].unit_price"
            )
        normalized.append(line)
    if not normalized:
        raise DocumentValidationError("at least one line item is required", field="items")
    return tuple(normalized)


def normalize_total(total: Any) -> Decimal:
    try:
        value = to_decimal(total)
    except (TypeError, ValueError, InvalidOperation) as exc:
        raise DocumentValidationError("total is not a number", field="total") from exc
    if not value.is_finite() or quantize_money(value) <= 0:
        raise DocumentValidationError("total must be greater than zero", field="total")
    return quantize_money(value)


def normalize_buyer(buyer: Optional[Buyer], fiscal_condition: Any = None) -> Buyer:
    """Final consumers always carry document number 0."""

    buyer = buyer or Buyer()
    condition = buyer.fiscal_condition if fiscal_condition is None else fiscal_condition_code(fiscal_condition)
    if buyer.doc_type not in BUYER_DOC_TYPES:
        raise DocumentValidationError(f"unsupported buyer document type {buyer.doc_type}", field="buyer.doc_type")

    if buyer.doc_type == DOC_FINAL_CONSUMER:
        doc_number = "0"
    else:
        doc_number = "".join(ch for ch in str(buyer.doc_number) if ch not in "-. ")
        if not doc_number.isdigit() or int(doc_number) == 0:
            raise DocumentValidationError("buyer document number must be numeric", field="buyer.doc_number")
    return Buyer(
        doc_type=buyer.doc_type,
        doc_number=doc_number,
        name=buyer.name or (FINAL_CONSUMER_NAME if buyer.doc_type == DOC_FINAL_CONSUMER else None),
        fiscal_condition=condition,
    )


def rejection_kind(exc: ArcaError) -> str:
    if isinstance(exc, DocumentValidationError):
        return "validation"
    if isinstance(exc, DuplicateNumberError):
        return "duplicate_number"
    if isinstance(exc, BusinessRejectionError):
        return "rejected"
    if isinstance(exc, TransportError):
        return "transport"
    if isinstance(exc, AuthenticationError):
        return "authentication"
    return "configuration"


class _EmissionEngine:
    """Shared submission sequence for invoices and credit notes."""

    def __init__(
        self,
        issuer: IssuerContext,
        wsfe: WsfeClient,
        *,
        serializer: EmissionSerializer | None = None,
        clock: Callable[[], datetime] | None = None,
        vat_rate: Decimal | str | None = None,
    ) -> None:
        self.issuer = issuer
        self.wsfe = wsfe
        self._serializer = serializer
        self._clock = clock or _utcnow
        self.vat_rate = to_decimal(vat_rate if vat_rate is not None else settings.ARCA_VAT_RATE)

    def issue_date(self) -> date:
        return self._clock().astimezone(AUTHORITY_TZ).date()

    def _hold(self, document_type: int) -> ContextManager[Optional[EmissionSlot]]:
        if self._serializer is None:
            return nullcontext(None)
        return self._serializer.hold(self.issuer.tenant_id, self.issuer.sales_point_number, document_type)

    def _authorize(
        self,
        document_type: int,
        buyer: Buyer,
        amounts: TaxBreakdown,
        associated: Optional[AssociatedDocument] = None,
    ) -> Tuple[int, date, AuthorizationResult]:
        """Number lookup, then submission of ``last + 1``. Never retried here."""

        sales_point = self.issuer.sales_point_number
        with self._hold(document_type) as slot:
            number = self.wsfe.last_authorized(sales_point, document_type) + 1
            if slot is not None:
                slot.number = number
            issue_date = self.issue_date()
            request = AuthorizationRequest(
                document_type=document_type,
                number=number,
                issue_date=issue_date,
                buyer=buyer,
                amounts=amounts,
                associated=associated,
                issuer_tax_id=self.issuer.tax_id,
            )
            result = self.wsfe.request_authorization(sales_point, request)
        return number, issue_date, result

    def _record(
        self,
        *,
        document_type: int,
        number: int,
        issue_date: date,
        result: AuthorizationResult,
        buyer: Buyer,
        amounts: TaxBreakdown,
        items: Sequence[LineItem],
        **links: Any,
    ) -> AuthorizedDocument:
        expiry = result.authorization_expiry or issue_date + timedelta(days=settings.ARCA_AUTH_CODE_VALIDITY_DAYS)
        document = AuthorizedDocument(
            id=str(uuid.uuid4()),
            tenant_id=self.issuer.tenant_id,
            profile_id=self.issuer.profile_id,
            sales_point_id=self.issuer.sales_point_id,
            document_type=document_type,
            document_type_name=document_type_name(document_type),
            authorization_code=result.authorization_code,
            authorization_expiry=expiry,
            number=number,
            sales_point_number=self.issuer.sales_point_number,
            issue_date=issue_date,
            net=amounts.net,
            tax=amounts.tax,
            total=amounts.total,
            buyer=buyer,
            items=tuple(items),
            authority_response=result.raw,
            **links,
        )
        increment_documents_emitted(document_type)
        logger.info(
            "document_authorized",
            extra={
                "tenant": self.issuer.tenant_id,
                "type": document_type,
                "number": document.formatted_number,
                "authorization_code": document.authorization_code,
            },
        )
        return document


class InvoiceEmissionEngine(_EmissionEngine):
    def emit(
        self,
        items: Iterable[ItemInput],
        total: Any,
        buyer: Optional[Buyer] = None,
        buyer_fiscal_condition: Any = None,
        *,
        document_type: Optional[int] = None,
        order_id: Optional[str] = None,
        booking_id: Optional[str] = None,
    ) -> AuthorizedDocument:
        """Validate, authorize and return the immutable invoice record.

        ``document_type`` forces a type instead of the regime matrix; it must
        still be one the issuer's regime may emit.
        """

        try:
            lines = normalize_items(items)
            amount = normalize_total(total)
            normalized_buyer = normalize_buyer(buyer, buyer_fiscal_condition)
            resolved_type = self._resolve_type(normalized_buyer, document_type)
            amounts = split_tax(amount, resolved_type, self.vat_rate)

            number, issue_date, result = self._authorize(resolved_type, normalized_buyer, amounts)
        except ArcaError as exc:
            increment_document_rejections(rejection_kind(exc))
            logger.warning(
                "invoice_not_authorized",
                extra={"tenant": self.issuer.tenant_id, "error": exc.code, "detail": exc.message},
            )
            raise

        return self._record(
            document_type=resolved_type,
            number=number,
            issue_date=issue_date,
            result=result,
            buyer=normalized_buyer,
            amounts=amounts,
            items=lines,
            order_id=order_id,
            booking_id=booking_id,
        )

    def _resolve_type(self, buyer: Buyer, requested: Optional[int]) -> int:
        regime_type = select_document_type(self.issuer.regime, buyer.fiscal_condition)
        if requested is None:
            resolved = regime_type
        else:
            if requested not in INVOICE_TYPES:
                raise DocumentValidationError(f"{requested} is not an invoice type", field="document_type")
            allowed = (INVOICE_C,) if self.issuer.regime == REGIME_SIMPLIFIED else (INVOICE_A, INVOICE_B)
            if requested not in allowed:
                raise DocumentValidationError(
                    f"regime {self.issuer.regime} cannot issue {document_type_name(requested)}",
                    field="document_type",
                )
            resolved = requested

        if resolved == INVOICE_A and buyer.doc_type != DOC_CUIT:
            raise DocumentValidationError("Factura A requires the buyer's CUIT", field="buyer.doc_type")
        return resolved
