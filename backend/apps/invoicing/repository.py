from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
    insert,
    or_,
    select,
    update,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.sql import func

from agents.arca.constants import STATUS_ISSUED, STATUS_VOIDED
from agents.arca.dto import AssociatedDocument, AuthorizedDocument, Buyer, LineItem

metadata = MetaData()

tenant_fiscal_profiles = Table(
    "tenant_fiscal_profiles",
    metadata,
    Column("id", String, primary_key=True),
    Column("tenant_id", String, nullable=False, unique=True),
    # NULL once disconnected so the tax id can be registered again
    Column("tax_id", String(11), unique=True),
    Column("legal_name", String(255), nullable=False, default=""),
    Column("fiscal_address", String(500), nullable=False, default=""),
    Column("regime", String(50), nullable=False),
    Column("activity_start", Date),
    Column("encrypted_certificate", Text, nullable=False, default=""),
    Column("encrypted_private_key", Text, nullable=False, default=""),
    Column("certificate_expiry", Date),
    Column("is_active", Boolean, nullable=False, default=False),
    Column("is_verified", Boolean, nullable=False, default=False),
    Column("last_tested_at", DateTime(timezone=True)),
    Column("last_test_result", JSON),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), server_default=func.now(), onupdate=func.now()),
    CheckConstraint("regime IN ('monotributista', 'responsable_inscripto')", name="ck_profile_regime"),
)

sales_points = Table(
    "sales_points",
    metadata,
    Column("id", String, primary_key=True),
    Column("tenant_id", String, nullable=False),
    Column("profile_id", String, ForeignKey("tenant_fiscal_profiles.id"), nullable=False),
    Column("number", Integer, nullable=False),
    Column("description", String(100)),
    Column("is_default", Boolean, nullable=False, default=False),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    UniqueConstraint("profile_id", "number", name="uq_sales_point_profile_number"),
    CheckConstraint("number > 0 AND number <= 99999", name="ck_sales_point_number"),
)

authorized_documents = Table(
    "authorized_documents",
    metadata,
    Column("id", String, primary_key=True),
    Column("tenant_id", String, nullable=False, index=True),
    Column("profile_id", String, ForeignKey("tenant_fiscal_profiles.id"), nullable=False),
    Column("sales_point_id", String, ForeignKey("sales_points.id"), nullable=False),
    Column("document_type", Integer, nullable=False),
    Column("document_type_name", String(50), nullable=False),
    Column("authorization_code", String(14), nullable=False),
    Column("authorization_expiry", Date, nullable=False),
    Column("number", Integer, nullable=False),
    Column("sales_point_number", Integer, nullable=False),
    Column("issue_date", Date, nullable=False),
    Column("net", Numeric(12, 2), nullable=False),
    Column("tax", Numeric(12, 2), nullable=False),
    Column("total", Numeric(12, 2), nullable=False),
    Column("buyer_name", String(255)),
    Column("buyer_doc_type", Integer, nullable=False),
    Column("buyer_doc_number", String(20), nullable=False),
    Column("buyer_fiscal_condition", Integer),
    Column("items", JSON, nullable=False),
    Column("order_id", String, index=True),
    Column("booking_id", String, index=True),
    Column("original_document_id", String, ForeignKey("authorized_documents.id")),
    Column("associated", JSON),
    Column("reason", String(500)),
    Column("status", String(20), nullable=False, default=STATUS_ISSUED),
    Column("voided_by_id", String, ForeignKey("authorized_documents.id")),
    Column("authority_response", JSON),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    UniqueConstraint(
        "profile_id", "document_type", "sales_point_number", "number", name="uq_document_profile_type_pv_number"
    ),
    CheckConstraint("status IN ('issued', 'voided')", name="ck_document_status"),
)


class DocumentStateError(RuntimeError):
    """An issued/voided transition that is not allowed."""


@dataclass
class TenantFiscalProfile:
    id: str
    tenant_id: str
    tax_id: Optional[str]
    legal_name: str
    fiscal_address: str
    regime: str
    activity_start: Optional[date]
    encrypted_certificate: str = field(repr=False)
    encrypted_private_key: str = field(repr=False)
    certificate_expiry: Optional[date] = None
    is_active: bool = False
    is_verified: bool = False
    last_tested_at: Optional[datetime] = None
    last_test_result: Optional[Dict[str, Any]] = None

    @property
    def has_credentials(self) -> bool:
        return bool(self.encrypted_certificate and self.encrypted_private_key)

    def public_view(self) -> Dict[str, Any]:
        """Profile fields safe to return to API callers (no key material)."""
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "tax_id": self.tax_id,
            "legal_name": self.legal_name,
            "fiscal_address": self.fiscal_address,
            "regime": self.regime,
            "activity_start": self.activity_start.isoformat() if self.activity_start else None,
            "certificate_expiry": self.certificate_expiry.isoformat() if self.certificate_expiry else None,
            "has_credentials": self.has_credentials,
            "is_active": self.is_active,
            "is_verified": self.is_verified,
            "last_tested_at": self.last_tested_at.isoformat() if self.last_tested_at else None,
            "last_test_result": self.last_test_result,
        }


@dataclass
class SalesPoint:
    id: str
    tenant_id: str
    profile_id: str
    number: int
    description: Optional[str] = None
    is_default: bool = False
    is_active: bool = True


@dataclass(frozen=True)
class DocumentFilter:
    """Optional listing filters; ``None`` fields are ignored."""

    document_type: Optional[int] = None
    status: Optional[str] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    # Matches the number, buyer name, buyer document or authorization code
    search: Optional[str] = None
    order_id: Optional[str] = None
    booking_id: Optional[str] = None


def _filtered(query, tenant_id: str, filters: Optional[DocumentFilter]):
    docs = authorized_documents.c
    query = query.where(docs.tenant_id == tenant_id)
    if filters is None:
        return query
    if filters.document_type is not None:
        query = query.where(docs.document_type == filters.document_type)
    if filters.status:
        query = query.where(docs.status == filters.status)
    if filters.date_from:
        query = query.where(docs.issue_date >= filters.date_from)
    if filters.date_to:
        query = query.where(docs.issue_date <= filters.date_to)
    if filters.order_id:
        query = query.where(docs.order_id == filters.order_id)
    if filters.booking_id:
        query = query.where(docs.booking_id == filters.booking_id)
    term = (filters.search or "").strip()
    if term:
        pattern = f"%{term}%"
        matches = [
            docs.authorization_code.ilike(pattern),
            docs.buyer_name.ilike(pattern),
            docs.buyer_doc_number.ilike(pattern),
        ]
        if term.isdigit():
            matches.append(docs.number == int(term))
        query = query.where(or_(*matches))
    return query


_PROFILE_COLUMNS = (
    "id",
    "tenant_id",
    "tax_id",
    "legal_name",
    "fiscal_address",
    "regime",
    "activity_start",
    "encrypted_certificate",
    "encrypted_private_key",
    "certificate_expiry",
    "is_active",
    "is_verified",
    "last_tested_at",
    "last_test_result",
)


def _profile_from_row(row) -> TenantFiscalProfile:
    return TenantFiscalProfile(**{name: getattr(row, name) for name in _PROFILE_COLUMNS})


def _sales_point_from_row(row) -> SalesPoint:
    return SalesPoint(
        id=row.id,
        tenant_id=row.tenant_id,
        profile_id=row.profile_id,
        number=row.number,
        description=row.description,
        is_default=bool(row.is_default),
        is_active=bool(row.is_active),
    )


def _associated_to_json(associated: Optional[AssociatedDocument]) -> Optional[Dict[str, Any]]:
    if associated is None:
        return None
    return {
        "document_type": associated.document_type,
        "sales_point_number": associated.sales_point_number,
        "number": associated.number,
        "issue_date": associated.issue_date.isoformat(),
        "authorization_code": associated.authorization_code,
    }


def _associated_from_json(data: Optional[Dict[str, Any]]) -> Optional[AssociatedDocument]:
    if not data:
        return None
    return AssociatedDocument(
        document_type=int(data["document_type"]),
        sales_point_number=int(data["sales_point_number"]),
        number=int(data["number"]),
        issue_date=date.fromisoformat(data["issue_date"]),
        authorization_code=str(data["authorization_code"]),
    )


def _money(value: Any) -> Decimal:
    return Decimal(str(value)).quantize(Decimal("0.01"))


def _document_from_row(row) -> AuthorizedDocument:
    return AuthorizedDocument(
        id=row.id,
        tenant_id=row.tenant_id,
        profile_id=row.profile_id,
        sales_point_id=row.sales_point_id,
        document_type=row.document_type,
        document_type_name=row.document_type_name,
        authorization_code=row.authorization_code,
        authorization_expiry=row.authorization_expiry,
        number=row.number,
        sales_point_number=row.sales_point_number,
        issue_date=row.issue_date,
        net=_money(row.net),
        tax=_money(row.tax),
        total=_money(row.total),
        buyer=Buyer(
            doc_type=row.buyer_doc_type,
            doc_number=row.buyer_doc_number,
            name=row.buyer_name,
            fiscal_condition=row.buyer_fiscal_condition,
        ),
        items=tuple(LineItem.from_dict(item) for item in (row.items or [])),
        authority_response=row.authority_response or {},
        order_id=row.order_id,
        booking_id=row.booking_id,
        original_document_id=row.original_document_id,
        associated=_associated_from_json(row.associated),
        reason=row.reason,
        status=row.status,
        voided_by_id=row.voided_by_id,
    )


class FiscalRepository:
    """Persistence for fiscal profiles, sales points and authorized documents."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def create_schema(self) -> None:
        metadata.create_all(self.engine)

    # -- profiles ---------------------------------------------------------

    def get_profile(self, tenant_id: str) -> Optional[TenantFiscalProfile]:
        with self.engine.begin() as conn:
            row = conn.execute(
                select(tenant_fiscal_profiles).where(tenant_fiscal_profiles.c.tenant_id == tenant_id)
            ).fetchone()
        return _profile_from_row(row) if row else None

    def upsert_profile(self, profile: TenantFiscalProfile) -> TenantFiscalProfile:
        values = {name: getattr(profile, name) for name in _PROFILE_COLUMNS}
        with self.engine.begin() as conn:
            exists = conn.execute(
                select(tenant_fiscal_profiles.c.id).where(tenant_fiscal_profiles.c.tenant_id == profile.tenant_id)
            ).fetchone()
            if exists:
                values.pop("id")
                conn.execute(
                    update(tenant_fiscal_profiles)
                    .where(tenant_fiscal_profiles.c.tenant_id == profile.tenant_id)
                    .values(**values)
                )
                profile = replace(profile, id=exists.id)
            else:
                conn.execute(insert(tenant_fiscal_profiles).values(**values))
        return profile

    def record_test_result(
        self, tenant_id: str, *, success: bool, result: Dict[str, Any], tested_at: datetime
    ) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                update(tenant_fiscal_profiles)
                .where(tenant_fiscal_profiles.c.tenant_id == tenant_id)
                .values(last_tested_at=tested_at, last_test_result=result, is_verified=success)
            )

    def set_active(self, tenant_id: str, active: bool) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                update(tenant_fiscal_profiles)
                .where(tenant_fiscal_profiles.c.tenant_id == tenant_id)
                .values(is_active=active)
            )

    def soft_disconnect(self, tenant_id: str) -> None:
        """Clear identity and key material; keep the row for issued documents."""
        with self.engine.begin() as conn:
            conn.execute(
                update(tenant_fiscal_profiles)
                .where(tenant_fiscal_profiles.c.tenant_id == tenant_id)
                .values(
                    tax_id=None,
                    legal_name="",
                    fiscal_address="",
                    encrypted_certificate="",
                    encrypted_private_key="",
                    certificate_expiry=None,
                    is_active=False,
                    is_verified=False,
                    last_tested_at=None,
                    last_test_result=None,
                )
            )
            conn.execute(
                update(sales_points).where(sales_points.c.tenant_id == tenant_id).values(is_active=False, is_default=False)
            )

    # -- sales points -----------------------------------------------------

    def add_sales_point(self, point: SalesPoint) -> SalesPoint:
        with self.engine.begin() as conn:
            if point.is_default:
                self._clear_default(conn, point.profile_id)
            conn.execute(
                insert(sales_points).values(
                    id=point.id,
                    tenant_id=point.tenant_id,
                    profile_id=point.profile_id,
                    number=point.number,
                    description=point.description,
                    is_default=point.is_default,
                    is_active=point.is_active,
                )
            )
        return point

    def update_sales_point(self, point: SalesPoint) -> SalesPoint:
        """Write description and flags; a new default clears the others."""
        with self.engine.begin() as conn:
            if point.is_default:
                self._clear_default(conn, point.profile_id)
            conn.execute(
                update(sales_points)
                .where(sales_points.c.id == point.id)
                .where(sales_points.c.tenant_id == point.tenant_id)
                .values(description=point.description, is_default=point.is_default, is_active=point.is_active)
            )
        return point

    @staticmethod
    def _clear_default(conn: Connection, profile_id: str) -> None:
        conn.execute(update(sales_points).where(sales_points.c.profile_id == profile_id).values(is_default=False))

    def get_sales_point(
        self, tenant_id: str, profile_id: str, sales_point_id: str, *, include_inactive: bool = False
    ) -> Optional[SalesPoint]:
        query = (
            select(sales_points)
            .where(sales_points.c.id == sales_point_id)
            .where(sales_points.c.tenant_id == tenant_id)
            .where(sales_points.c.profile_id == profile_id)
        )
        if not include_inactive:
            query = query.where(sales_points.c.is_active.is_(True))
        with self.engine.begin() as conn:
            row = conn.execute(query).fetchone()
        return _sales_point_from_row(row) if row else None

    def find_sales_point_by_number(self, tenant_id: str, profile_id: str, number: int) -> Optional[SalesPoint]:
        """Active or not: the (profile, number) pair is unique."""
        with self.engine.begin() as conn:
            row = conn.execute(
                select(sales_points)
                .where(sales_points.c.tenant_id == tenant_id)
                .where(sales_points.c.profile_id == profile_id)
                .where(sales_points.c.number == number)
            ).fetchone()
        return _sales_point_from_row(row) if row else None

    def default_sales_point(self, tenant_id: str, profile_id: str) -> Optional[SalesPoint]:
        with self.engine.begin() as conn:
            row = conn.execute(
                select(sales_points)
                .where(sales_points.c.tenant_id == tenant_id)
                .where(sales_points.c.profile_id == profile_id)
                .where(sales_points.c.is_default.is_(True))
                .where(sales_points.c.is_active.is_(True))
            ).fetchone()
        return _sales_point_from_row(row) if row else None

    def any_active_sales_point(self, tenant_id: str, profile_id: str) -> Optional[SalesPoint]:
        points = self.list_sales_points(tenant_id, profile_id)
        return points[0] if points else None

    def list_sales_points(
        self, tenant_id: str, profile_id: str, *, include_inactive: bool = False
    ) -> List[SalesPoint]:
        query = (
            select(sales_points)
            .where(sales_points.c.tenant_id == tenant_id)
            .where(sales_points.c.profile_id == profile_id)
            .order_by(sales_points.c.number.asc())
        )
        if not include_inactive:
            query = query.where(sales_points.c.is_active.is_(True))
        with self.engine.begin() as conn:
            rows = conn.execute(query).fetchall()
        return [_sales_point_from_row(r) for r in rows]

    # -- documents --------------------------------------------------------

    def insert_document(self, document: AuthorizedDocument) -> AuthorizedDocument:
        with self.engine.begin() as conn:
            self._insert_document(conn, document)
        return document

    def insert_credit_note(self, credit_note: AuthorizedDocument, *, void_original: bool) -> bool:
        """Store an authorized note and optionally void its original.

        The note is always stored: the authority has already accepted it.
        Returns whether the original transitioned to voided.
        """
        with self.engine.begin() as conn:
            self._insert_document(conn, credit_note)
            if not void_original or credit_note.original_document_id is None:
                return False
            return self._void(conn, credit_note.tenant_id, credit_note.original_document_id, credit_note.id)

    @staticmethod
    def _insert_document(conn: Connection, document: AuthorizedDocument) -> None:
        conn.execute(
            insert(authorized_documents).values(
                id=document.id,
                tenant_id=document.tenant_id,
                profile_id=document.profile_id,
                sales_point_id=document.sales_point_id,
                document_type=document.document_type,
                document_type_name=document.document_type_name,
                authorization_code=document.authorization_code,
                authorization_expiry=document.authorization_expiry,
                number=document.number,
                sales_point_number=document.sales_point_number,
                issue_date=document.issue_date,
                net=document.net,
                tax=document.tax,
                total=document.total,
                buyer_name=document.buyer.name,
                buyer_doc_type=document.buyer.doc_type,
                buyer_doc_number=document.buyer.doc_number,
                buyer_fiscal_condition=document.buyer.fiscal_condition,
                items=[item.to_dict() for item in document.items],
                order_id=document.order_id,
                booking_id=document.booking_id,
                original_document_id=document.original_document_id,
                associated=_associated_to_json(document.associated),
                reason=document.reason,
                status=document.status,
                voided_by_id=document.voided_by_id,
                authority_response=dict(document.authority_response),
            )
        )

    def get_document(self, tenant_id: str, document_id: str) -> Optional[AuthorizedDocument]:
        with self.engine.begin() as conn:
            row = conn.execute(
                select(authorized_documents)
                .where(authorized_documents.c.id == document_id)
                .where(authorized_documents.c.tenant_id == tenant_id)
            ).fetchone()
        return _document_from_row(row) if row else None

    def find_issued_for_order(self, tenant_id: str, order_id: str) -> Optional[AuthorizedDocument]:
        return self._find_issued_by(tenant_id, authorized_documents.c.order_id, order_id)

    def find_issued_for_booking(self, tenant_id: str, booking_id: str) -> Optional[AuthorizedDocument]:
        return self._find_issued_by(tenant_id, authorized_documents.c.booking_id, booking_id)

    def _find_issued_by(self, tenant_id: str, column, value: str) -> Optional[AuthorizedDocument]:
        with self.engine.begin() as conn:
            row = conn.execute(
                select(authorized_documents)
                .where(authorized_documents.c.tenant_id == tenant_id)
                .where(column == value)
                .where(authorized_documents.c.status == STATUS_ISSUED)
                .where(authorized_documents.c.original_document_id.is_(None))
                .order_by(authorized_documents.c.created_at.desc())
            ).fetchone()
        return _document_from_row(row) if row else None

    def list_documents(
        self,
        tenant_id: str,
        filters: Optional[DocumentFilter] = None,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> List[AuthorizedDocument]:
        query = (
            _filtered(select(authorized_documents), tenant_id, filters)
            .order_by(authorized_documents.c.issue_date.desc(), authorized_documents.c.number.desc())
            .limit(limit)
            .offset(offset)
        )
        with self.engine.begin() as conn:
            rows = conn.execute(query).fetchall()
        return [_document_from_row(r) for r in rows]

    def count_documents(self, tenant_id: str, filters: Optional[DocumentFilter] = None) -> int:
        query = _filtered(select(func.count()).select_from(authorized_documents), tenant_id, filters)
        with self.engine.begin() as conn:
            return int(conn.execute(query).scalar_one())

    def mark_voided(self, tenant_id: str, original_id: str, credit_note_id: str) -> None:
        """One-way ``issued -> voided``; a second void raises."""
        with self.engine.begin() as conn:
            if not self._void(conn, tenant_id, original_id, credit_note_id):
                raise DocumentStateError(f"document {original_id} is not an issued document of this tenant")

    @staticmethod
    def _void(conn: Connection, tenant_id: str, original_id: str, credit_note_id: str) -> bool:
        result = conn.execute(
            update(authorized_documents)
            .where(authorized_documents.c.id == original_id)
            .where(authorized_documents.c.tenant_id == tenant_id)
            .where(authorized_documents.c.status == STATUS_ISSUED)
            .values(status=STATUS_VOIDED, voided_by_id=credit_note_id)
        )
        return result.rowcount == 1
