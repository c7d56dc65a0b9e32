"""Tenant Session Factory: the entry point into the ARCA engine.

Resolves a tenant's active, verified fiscal profile and sales point, wires
session manager, WSFE client and engines for it, and owns the profile
lifecycle (save, test, activate, disconnect, cache invalidation).
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy.exc import IntegrityError

from agents.arca.constants import REGIMES
from agents.arca.credit_notes import CreditNoteEngine, voids_original
from agents.arca.dto import AuthorizedDocument, Buyer, ConnectionTestResult, IssuerContext
from agents.arca.errors import (
    AlreadyInvoicedError,
    ArcaError,
    ConfigurationError,
    DocumentValidationError,
    InvalidCredentialFormatError,
    ProfileNotFoundError,
    ProfileNotVerifiedError,
    SalesPointNotFoundError,
)
from agents.arca.invoicing import InvoiceEmissionEngine, ItemInput
from agents.arca.numbering import EmissionSerializer
from agents.arca.padron import TaxpayerCache, TaxpayerInfo, TaxpayerRegistry, normalize_tax_id, strategies_for
from agents.arca.session_cache import SessionCache
from agents.arca.transport import SoapTransport
from agents.arca.vault import CredentialVault, certificate_expiry, looks_like_certificate, looks_like_private_key
from agents.arca.wsaa import AuthSessionManager
from agents.arca.wsfe import WsfeClient
from backend.core.config import settings
from backend.core.observability.logging import get_logger

from .repository import FiscalRepository, SalesPoint, TenantFiscalProfile

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ProfileInput:
    tax_id: str
    legal_name: str
    fiscal_address: str
    regime: str
    activity_start: Optional[date] = None
    certificate: Optional[str] = field(default=None, repr=False)
    private_key: Optional[str] = field(default=None, repr=False)


@dataclass
class InvoiceRequest:
    items: Sequence[ItemInput]
    total: Any
    buyer: Optional[Buyer] = None
    buyer_fiscal_condition: Any = None
    document_type: Optional[int] = None
    order_id: Optional[str] = None
    booking_id: Optional[str] = None


@dataclass(frozen=True)
class CreditNoteOutcome:
    credit_note: AuthorizedDocument
    original: AuthorizedDocument

    @property
    def original_voided(self) -> bool:
        return self.original.voided_by_id == self.credit_note.id


class TenantSession:
    """Engines bound to one tenant and one sales point."""

    def __init__(
        self,
        *,
        issuer: IssuerContext,
        profile: TenantFiscalProfile,
        sales_point: SalesPoint,
        invoices: InvoiceEmissionEngine,
        credit_notes: CreditNoteEngine,
        repository: FiscalRepository,
    ) -> None:
        self.issuer = issuer
        self.profile = profile
        self.sales_point = sales_point
        self.invoices = invoices
        self.credit_notes = credit_notes
        self._repository = repository

    @property
    def tenant_id(self) -> str:
        return self.issuer.tenant_id

    def emit_invoice(self, request: InvoiceRequest) -> AuthorizedDocument:
        self._ensure_not_invoiced(request)
        document = self.invoices.emit(
            request.items,
            request.total,
            request.buyer,
            request.buyer_fiscal_condition,
            document_type=request.document_type,
            order_id=request.order_id,
            booking_id=request.booking_id,
        )
        return self._repository.insert_document(document)

    def emit_credit_note(
        self,
        original_id: str,
        total: Any,
        reason: str,
        items: Optional[Sequence[ItemInput]] = None,
    ) -> CreditNoteOutcome:
        original = self._repository.get_document(self.tenant_id, original_id)
        if original is None:
            raise DocumentValidationError(f"document {original_id} not found", field="original_id")

        note = self.credit_notes.emit(total, reason, items, original)
        expects_void = voids_original(original, note)
        voided = self._repository.insert_credit_note(note, void_original=expects_void)
        if expects_void and not voided:
            # Another full note voided it between our read and our write
            logger.warning(
                "credit_note_original_already_voided",
                extra={"tenant": self.tenant_id, "original": original.id, "credit_note": note.id},
            )
        return CreditNoteOutcome(credit_note=note, original=original.voided_by(note.id) if voided else original)

    def _ensure_not_invoiced(self, request: InvoiceRequest) -> None:
        existing = None
        if request.order_id:
            existing = self._repository.find_issued_for_order(self.tenant_id, request.order_id)
        if existing is None and request.booking_id:
            existing = self._repository.find_issued_for_booking(self.tenant_id, request.booking_id)
        if existing is not None:
            raise AlreadyInvoicedError(
                f"already invoiced as {existing.document_type_name} {existing.formatted_number}",
                existing_document_id=existing.id,
            )


class TenantSessionFactory:
    def __init__(
        self,
        repository: FiscalRepository,
        vault: CredentialVault,
        *,
        cache: SessionCache | None = None,
        transport: SoapTransport | None = None,
        serializer: EmissionSerializer | None = None,
        taxpayer_cache: TaxpayerCache | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.repository = repository
        self.vault = vault
        self.clock = clock or _utcnow
        self.cache = cache or SessionCache(clock=self.clock)
        self.transport = transport or SoapTransport()
        if serializer is None and settings.ARCA_SERIALIZE_EMISSION:
            serializer = EmissionSerializer(clock=self.clock)
        self.serializer = serializer
        self.taxpayer_cache = taxpayer_cache or TaxpayerCache(clock=self.clock)

    # -- sessions ---------------------------------------------------------

    def for_tenant(self, tenant_id: str, sales_point_id: Optional[str] = None) -> TenantSession:
        profile = self._verified_profile(tenant_id)
        sales_point = self._resolve_sales_point(profile, sales_point_id)
        issuer = IssuerContext(
            tenant_id=tenant_id,
            tax_id=profile.tax_id or "",
            regime=profile.regime,
            sales_point_number=sales_point.number,
            profile_id=profile.id,
            sales_point_id=sales_point.id,
        )
        wsfe = WsfeClient(auth=self._auth_for(profile), transport=self.transport)
        options = {"serializer": self.serializer, "clock": self.clock}
        return TenantSession(
            issuer=issuer,
            profile=profile,
            sales_point=sales_point,
            invoices=InvoiceEmissionEngine(issuer, wsfe, **options),
            credit_notes=CreditNoteEngine(issuer, wsfe, **options),
            repository=self.repository,
        )

    def _verified_profile(self, tenant_id: str) -> TenantFiscalProfile:
        profile = self.repository.get_profile(tenant_id)
        if profile is None or not profile.is_active or not profile.has_credentials:
            raise ProfileNotFoundError("no active fiscal profile for this tenant", tenant=tenant_id)
        if not profile.is_verified:
            raise ProfileNotVerifiedError(
                "the fiscal profile has not been verified; run a connection test first", tenant=tenant_id
            )
        return profile

    def _resolve_sales_point(self, profile: TenantFiscalProfile, sales_point_id: Optional[str]) -> SalesPoint:
        tenant_id = profile.tenant_id
        if sales_point_id:
            point = self.repository.get_sales_point(tenant_id, profile.id, sales_point_id)
            if point is None:
                raise SalesPointNotFoundError("sales point not found or inactive", sales_point_id=sales_point_id)
            return point
        point = self.repository.default_sales_point(tenant_id, profile.id)
        if point is None:
            point = self.repository.any_active_sales_point(tenant_id, profile.id)
        if point is None:
            raise SalesPointNotFoundError("no active sales point configured for this tenant")
        return point

    def _auth_for(self, profile: TenantFiscalProfile) -> AuthSessionManager:
        return AuthSessionManager(
            tenant_id=profile.tenant_id,
            tax_id=profile.tax_id or "",
            encrypted_certificate=profile.encrypted_certificate,
            encrypted_private_key=profile.encrypted_private_key,
            vault=self.vault,
            cache=self.cache,
            transport=self.transport,
            clock=self.clock,
        )

    # -- configuration lifecycle ------------------------------------------

    def save_configuration(self, tenant_id: str, data: ProfileInput) -> TenantFiscalProfile:
        """Create or update the profile; any save requires a new connection test."""

        if data.certificate and not looks_like_certificate(data.certificate):
            raise InvalidCredentialFormatError("the certificate is not a PEM certificate", field="certificate")
        if data.private_key and not looks_like_private_key(data.private_key):
            raise InvalidCredentialFormatError("the private key is not a PEM private key", field="private_key")
        if data.regime not in REGIMES:
            raise DocumentValidationError(f"regime must be one of {', '.join(REGIMES)}", field="regime")
        tax_id = normalize_tax_id(data.tax_id)

        existing = self.repository.get_profile(tenant_id)
        if (existing is None or not existing.has_credentials) and not (data.certificate and data.private_key):
            raise InvalidCredentialFormatError("a certificate and a private key are required")

        profile = existing or TenantFiscalProfile(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            tax_id=tax_id,
            legal_name=data.legal_name,
            fiscal_address=data.fiscal_address,
            regime=data.regime,
            activity_start=data.activity_start,
            encrypted_certificate="",
            encrypted_private_key="",
            is_active=True,
        )
        profile.tax_id = tax_id
        profile.legal_name = data.legal_name
        profile.fiscal_address = data.fiscal_address
        profile.regime = data.regime
        profile.activity_start = data.activity_start
        profile.is_verified = False
        if existing is not None and not existing.is_active and not existing.has_credentials:
            # Reconnecting after a disconnect
            profile.is_active = True

        if data.certificate:
            profile.encrypted_certificate = self.vault.encrypt(data.certificate.strip())
            expiry = certificate_expiry(data.certificate)
            profile.certificate_expiry = expiry.date() if expiry else None
        if data.private_key:
            profile.encrypted_private_key = self.vault.encrypt(data.private_key.strip())

        try:
            profile = self.repository.upsert_profile(profile)
        except IntegrityError as exc:
            raise ConfigurationError("this tax id is already registered by another tenant", tax_id=tax_id) from exc
        self.cache.invalidate(tenant_id)
        logger.info(
            "fiscal_profile_saved",
            extra={
                "tenant": tenant_id,
                "profile_created": existing is None,
                "credentials_changed": bool(data.certificate or data.private_key),
            },
        )
        return profile

    def test_connection(self, tenant_id: str) -> ConnectionTestResult:
        """Authenticate once, record the outcome and flip the verification flag."""

        profile = self.repository.get_profile(tenant_id)
        if profile is None or not profile.has_credentials:
            return ConnectionTestResult(success=False, message="no fiscal profile configured for this tenant")

        auth = self._auth_for(profile)
        result = auth.test_connection()
        if result.success:
            try:
                status = WsfeClient(auth=auth, transport=self.transport).server_status()
            except ArcaError as exc:
                logger.warning("wsfe_status_unavailable", extra={"tenant": tenant_id, "error": exc.code})
                status = None
            result = ConnectionTestResult(
                success=True,
                message=result.message,
                expires_at=result.expires_at,
                tax_id=result.tax_id,
                server_status=status,
            )

        self.repository.record_test_result(
            tenant_id, success=result.success, result=result.to_dict(), tested_at=self.clock()
        )
        logger.info("fiscal_profile_tested", extra={"tenant": tenant_id, "success": result.success})
        return result

    def set_active(self, tenant_id: str, active: bool) -> TenantFiscalProfile:
        profile = self.repository.get_profile(tenant_id)
        if profile is None or not profile.has_credentials:
            raise ProfileNotFoundError("no fiscal profile for this tenant", tenant=tenant_id)
        if active and not profile.is_verified:
            raise ProfileNotVerifiedError("verify the connection before activating", tenant=tenant_id)
        self.repository.set_active(tenant_id, active)
        profile.is_active = active
        return profile

    def disconnect(self, tenant_id: str) -> None:
        """Soft-disconnect: clear identity and keys, keep history."""

        if self.repository.get_profile(tenant_id) is None:
            raise ProfileNotFoundError("no fiscal profile for this tenant", tenant=tenant_id)
        self.repository.soft_disconnect(tenant_id)
        self.cache.invalidate(tenant_id)
        logger.info("fiscal_profile_disconnected", extra={"tenant": tenant_id})

    def get_configuration(self, tenant_id: str) -> Optional[TenantFiscalProfile]:
        """The connected profile, or ``None`` when never configured or disconnected."""

        profile = self.repository.get_profile(tenant_id)
        if profile is None or not profile.has_credentials:
            return None
        return profile

    def invalidate_cache(self, tenant_id: str) -> int:
        return self.cache.invalidate(tenant_id)

    # -- sales points -----------------------------------------------------

    def _configured_profile(self, tenant_id: str) -> TenantFiscalProfile:
        profile = self.repository.get_profile(tenant_id)
        if profile is None or not profile.has_credentials:
            raise ProfileNotFoundError("no fiscal profile for this tenant", tenant=tenant_id)
        return profile

    def list_sales_points(self, tenant_id: str) -> List[SalesPoint]:
        profile = self._configured_profile(tenant_id)
        return self.repository.list_sales_points(tenant_id, profile.id)

    def add_sales_point(
        self, tenant_id: str, number: int, description: Optional[str] = None, is_default: bool = False
    ) -> SalesPoint:
        """Register a sales point, restoring it if a disconnect deactivated it."""

        profile = self._configured_profile(tenant_id)
        number = int(number)
        if not 1 <= number <= 99999:
            raise DocumentValidationError("sales point number must be between 1 and 99999", field="number")
        existing = self.repository.find_sales_point_by_number(tenant_id, profile.id, number)
        if existing is not None:
            if existing.is_active:
                raise DocumentValidationError(f"sales point {number} is already registered", field="number")
            existing.description = description or existing.description
            existing.is_default = is_default
            existing.is_active = True
            point = self.repository.update_sales_point(existing)
            logger.info("sales_point_reactivated", extra={"tenant": tenant_id, "sales_point": number})
            return point
        point = SalesPoint(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            profile_id=profile.id,
            number=number,
            description=description or f"Punto de Venta {number}",
            is_default=is_default,
        )
        try:
            return self.repository.add_sales_point(point)
        except IntegrityError as exc:
            raise DocumentValidationError(f"sales point {number} is already registered", field="number") from exc

    def update_sales_point(
        self,
        tenant_id: str,
        sales_point_id: str,
        *,
        description: Optional[str] = None,
        is_default: Optional[bool] = None,
        is_active: Optional[bool] = None,
    ) -> SalesPoint:
        """Change description, default or active flag; ``None`` keeps the current value."""

        profile = self._configured_profile(tenant_id)
        point = self.repository.get_sales_point(tenant_id, profile.id, sales_point_id, include_inactive=True)
        if point is None:
            raise SalesPointNotFoundError("sales point not found", sales_point_id=sales_point_id)
        if description is not None:
            point.description = description
        if is_default is not None:
            point.is_default = is_default
        if is_active is not None:
            point.is_active = is_active
        if not point.is_active:
            # An inactive point is never the default
            point.is_default = False
        return self.repository.update_sales_point(point)

    def authority_sales_points(self, tenant_id: str) -> List[Dict[str, Any]]:
        profile = self.repository.get_profile(tenant_id)
        if profile is None or not profile.is_active or not profile.has_credentials:
            raise ProfileNotFoundError("no active fiscal profile for this tenant", tenant=tenant_id)
        return WsfeClient(auth=self._auth_for(profile), transport=self.transport).authority_sales_points()

    # -- taxpayer registry ------------------------------------------------

    def lookup_taxpayer(self, tenant_id: str, tax_id: str) -> Optional[TaxpayerInfo]:
        """Best-effort buyer data; ``None`` when no source knows the tax id."""

        profile = self._verified_profile(tenant_id)
        registry = TaxpayerRegistry(
            strategies_for(self._auth_for(profile), self.transport), cache=self.taxpayer_cache
        )
        return registry.lookup(tax_id)

    def clear_taxpayer_cache(self, tax_id: Optional[str] = None) -> None:
        """Drop one cached registry answer, or all of them."""

        self.taxpayer_cache.clear(None if tax_id is None else normalize_tax_id(tax_id))
        logger.info("taxpayer_cache_cleared", extra={"tax_id": tax_id or "*"})
