"""Credit notes bound to an authorized original document."""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Iterable, Optional

from backend.core.observability.logging import get_logger
from backend.core.observability.metrics import increment_document_rejections

from .constants import CREDIT_NOTE_FOR, format_document_number
from .dto import AssociatedDocument, AuthorizedDocument, LineItem
from .errors import ArcaError, DocumentValidationError
from .invoicing import ItemInput, _EmissionEngine, normalize_items, normalize_total, rejection_kind, split_tax

logger = get_logger(__name__)


def voids_original(original: AuthorizedDocument, credit_note: AuthorizedDocument) -> bool:
    """Only a note covering the original's full total voids it."""

    return credit_note.total == original.total


class CreditNoteEngine(_EmissionEngine):
    def emit(
        self,
        total: Any,
        reason: str,
        items: Optional[Iterable[ItemInput]],
        original: Optional[AuthorizedDocument],
    ) -> AuthorizedDocument:
        """Authorize a credit note against ``original``.

        The caller persists the result and, when ``voids_original`` holds,
        marks the original voided by it.
        """

        try:
            if original is None:
                raise DocumentValidationError("the original document is required", field="original")
            amount = self._validate(total, reason, original)
            document_type = CREDIT_NOTE_FOR[original.document_type]
            lines = normalize_items(items) if items else (self._default_item(original, amount),)
            amounts = split_tax(amount, document_type, self.vat_rate)
            associated = AssociatedDocument(
                document_type=original.document_type,
                sales_point_number=original.sales_point_number,
                number=original.number,
                issue_date=original.issue_date,
                authorization_code=original.authorization_code,
            )
            number, issue_date, result = self._authorize(document_type, original.buyer, amounts, associated)
        except ArcaError as exc:
            increment_document_rejections(rejection_kind(exc))
            logger.warning(
                "credit_note_not_authorized",
                extra={"tenant": self.issuer.tenant_id, "error": exc.code, "detail": exc.message},
            )
            raise

        return self._record(
            document_type=document_type,
            number=number,
            issue_date=issue_date,
            result=result,
            buyer=original.buyer,
            amounts=amounts,
            items=lines,
            original_document_id=original.id,
            associated=associated,
            reason=reason.strip(),
        )

    def _validate(self, total: Any, reason: str, original: AuthorizedDocument) -> Decimal:
        if original.tenant_id != self.issuer.tenant_id:
            raise DocumentValidationError("the original document belongs to another tenant", field="original")
        if not original.authorization_code:
            raise DocumentValidationError("the original document has no authorization code", field="original")
        if original.document_type not in CREDIT_NOTE_FOR:
            raise DocumentValidationError(
                f"document type {original.document_type} cannot be credited", field="original"
            )
        if original.is_voided:
            raise DocumentValidationError("the original document is already voided", field="original")

        amount = normalize_total(total)
        if amount > original.total:
            raise DocumentValidationError(
                "credit note total exceeds the original document's total",
                field="total",
                original_total=str(original.total),
            )
        if not reason or not reason.strip():
            raise DocumentValidationError("a reason is required", field="reason")
        return amount

    @staticmethod
    def _default_item(original: AuthorizedDocument, amount: Decimal) -> LineItem:
        label = format_document_number(original.sales_point_number, original.number)
        return LineItem(description=f"NC por Factura {label}", quantity=Decimal("1"), unit_price=amount)
