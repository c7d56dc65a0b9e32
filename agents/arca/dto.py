"""Data transfer objects for the ARCA engine.

Amounts are ``Decimal`` quantized to two places with ``ROUND_HALF_UP``.
Authorized documents are frozen: once the authority returns an
authorization code nothing about the record changes except the one-way
``issued -> voided`` transition, which produces a new instance.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Mapping, Optional, Tuple

from .constants import (
    DOC_FINAL_CONSUMER,
    IVA_FINAL_CONSUMER,
    STATUS_ISSUED,
    STATUS_VOIDED,
    format_document_number,
)


DecimalLike = Decimal | str | int | float


def to_decimal(value: DecimalLike) -> Decimal:
    """Convert input deterministically into ``Decimal``.

    Floats go through ``str`` first so binary artefacts never reach the
    authority.
    """

    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise TypeError("bool is not an amount")
    if isinstance(value, (int, str, float)):
        return Decimal(str(value))
    raise TypeError(f"Unsupported decimal input: {type(value)!r}")


def quantize_money(amount: DecimalLike) -> Decimal:
    return to_decimal(amount).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


@dataclass(frozen=True, slots=True)
class LineItem:
    description: str
    quantity: Decimal
    unit_price: Decimal

    def __post_init__(self) -> None:
        object.__setattr__(self, "quantity", to_decimal(self.quantity))
        object.__setattr__(self, "unit_price", to_decimal(self.unit_price))

    def subtotal(self) -> Decimal:
        return quantize_money(self.quantity * self.unit_price)

    def to_dict(self) -> Dict[str, str]:
        return {
            "description": self.description,
            "quantity": str(self.quantity),
            "unit_price": str(quantize_money(self.unit_price)),
            "subtotal": str(self.subtotal()),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "LineItem":
        return cls(
            description=str(data.get("description", "")),
            quantity=to_decimal(data["quantity"]),
            unit_price=to_decimal(data["unit_price"]),
        )


@dataclass(frozen=True, slots=True)
class Buyer:
    doc_type: int = DOC_FINAL_CONSUMER
    doc_number: str = "0"
    name: Optional[str] = None
    fiscal_condition: int = IVA_FINAL_CONSUMER

    def to_dict(self) -> Dict[str, Any]:
        return {
            "doc_type": self.doc_type,
            "doc_number": self.doc_number,
            "name": self.name,
            "fiscal_condition": self.fiscal_condition,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Buyer":
        return cls(
            doc_type=int(data.get("doc_type", DOC_FINAL_CONSUMER)),
            doc_number=str(data.get("doc_number", "0")),
            name=data.get("name"),
            fiscal_condition=int(data.get("fiscal_condition", IVA_FINAL_CONSUMER)),
        )


@dataclass(frozen=True, slots=True)
class TaxBreakdown:
    net: Decimal
    tax: Decimal
    total: Decimal

    @property
    def discriminated(self) -> bool:
        return self.tax > Decimal("0")


@dataclass(frozen=True, slots=True)
class SessionCredential:
    tenant_id: str
    service: str
    token: str
    sign: str
    expires_at: datetime

    def is_valid(self, now: datetime) -> bool:
        return now < self.expires_at

    def __repr__(self) -> str:
        return (
            f"SessionCredential(tenant_id={self.tenant_id!r}, service={self.service!r}, "
            f"expires_at={self.expires_at.isoformat()!r})"
        )


@dataclass(frozen=True, slots=True)
class IssuerContext:
    """Everything an engine needs to know about who issues and from where."""

    tenant_id: str
    tax_id: str
    regime: str
    sales_point_number: int
    profile_id: Optional[str] = None
    sales_point_id: Optional[str] = None


@dataclass(frozen=True, slots=True)
class AssociatedDocument:
    document_type: int
    sales_point_number: int
    number: int
    issue_date: date
    authorization_code: str


@dataclass(frozen=True, slots=True)
class AuthorizedDocument:
    id: str
    tenant_id: str
    profile_id: Optional[str]
    sales_point_id: Optional[str]
    document_type: int
    document_type_name: str
    authorization_code: str
    authorization_expiry: date
    number: int
    sales_point_number: int
    issue_date: date
    net: Decimal
    tax: Decimal
    total: Decimal
    buyer: Buyer
    items: Tuple[LineItem, ...]
    authority_response: Mapping[str, Any] = field(repr=False)
    order_id: Optional[str] = None
    booking_id: Optional[str] = None
    original_document_id: Optional[str] = None
    associated: Optional[AssociatedDocument] = None
    reason: Optional[str] = None
    status: str = STATUS_ISSUED
    voided_by_id: Optional[str] = None

    @property
    def formatted_number(self) -> str:
        return format_document_number(self.sales_point_number, self.number)

    @property
    def is_voided(self) -> bool:
        return self.status == STATUS_VOIDED

    def voided_by(self, credit_note_id: str) -> "AuthorizedDocument":
        if self.is_voided:
            raise ValueError(f"document {self.id} already voided by {self.voided_by_id}")
        return replace(self, status=STATUS_VOIDED, voided_by_id=credit_note_id)

    def linked_to(self, *, order_id: Optional[str] = None, booking_id: Optional[str] = None) -> "AuthorizedDocument":
        return replace(self, order_id=order_id, booking_id=booking_id)

    def summary(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "document_type": self.document_type_name,
            "number": self.formatted_number,
            "authorization_code": self.authorization_code,
            "total": str(self.total),
            "status": self.status,
        }


@dataclass(frozen=True, slots=True)
class ConnectionTestResult:
    success: bool
    message: str
    expires_at: Optional[datetime] = None
    tax_id: Optional[str] = None
    server_status: Optional[Dict[str, str]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "tax_id": self.tax_id,
            "server_status": self.server_status,
        }
