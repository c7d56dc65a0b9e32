from __future__ import annotations

import json
import logging
from decimal import Decimal

import pytest

from agents.arca.dto import Buyer
from agents.arca.errors import (
    AlreadyInvoicedError,
    ConfigurationError,
    DocumentValidationError,
    InvalidCredentialFormatError,
    ProfileNotFoundError,
    ProfileNotVerifiedError,
    SalesPointNotFoundError,
)
from backend.apps.invoicing.factory import InvoiceRequest

TENANT = "6f1c2a9e-3b7d-4e58-9a0b-1c2d3e4f5a6b"
OTHER_TENANT = "0b9a8c7d-6e5f-4a3b-8c2d-1e0f9a8b7c6d"

ITEMS = [{"description": "Noche cabaña", "quantity": "1", "unit_price": "1210"}]


def test_save_stores_encrypted_credentials(factory, make_profile):
    # Act
    profile = factory.save_configuration(TENANT, make_profile(tax_id="20-12345678-6"))

    # Assert
    assert profile.tax_id == "20123456786"
    assert profile.is_active and not profile.is_verified
    assert set(json.loads(profile.encrypted_certificate)) == {"nonce", "authTag", "content"}
    assert "BEGIN" not in profile.encrypted_private_key
    assert profile.certificate_expiry.isoformat() == "2028-01-01"


def test_save_logs_at_info_level(factory, make_profile, caplog):
    # Arrange
    caplog.set_level(logging.INFO)

    # Act
    factory.save_configuration(TENANT, make_profile())
    factory.save_configuration(TENANT, make_profile(legal_name="Cabañas del Lago SA"))

    # Assert
    saved = [r for r in caplog.records if r.getMessage() == "fiscal_profile_saved"]
    assert [r.profile_created for r in saved] == [True, False]
    assert saved[0].tenant == TENANT


def test_save_rejects_non_pem(factory, make_profile):
    with pytest.raises(InvalidCredentialFormatError):
        factory.save_configuration(TENANT, make_profile(certificate="not a certificate"))


def test_first_save_requires_both_credentials(factory, make_profile):
    with pytest.raises(InvalidCredentialFormatError):
        factory.save_configuration(TENANT, make_profile(private_key=None))


def test_save_rejects_unknown_regime(factory, make_profile):
    with pytest.raises(DocumentValidationError) as excinfo:
        factory.save_configuration(TENANT, make_profile(regime="exento"))

    assert excinfo.value.field == "regime"


def test_tax_id_is_unique_across_tenants(factory, make_profile):
    factory.save_configuration(TENANT, make_profile())

    with pytest.raises(ConfigurationError):
        factory.save_configuration(OTHER_TENANT, make_profile())


def test_unverified_profile_cannot_emit(factory, make_profile):
    factory.save_configuration(TENANT, make_profile())

    with pytest.raises(ProfileNotVerifiedError):
        factory.for_tenant(TENANT)


def test_unknown_tenant_has_no_session(factory):
    with pytest.raises(ProfileNotFoundError):
        factory.for_tenant(TENANT)


def test_connection_test_marks_profile_verified(factory, make_profile, fake_arca):
    # Arrange
    factory.save_configuration(TENANT, make_profile())

    # Act
    result = factory.test_connection(TENANT)

    # Assert
    assert result.success
    assert result.server_status == {"app_server": "OK", "db_server": "OK", "auth_server": "OK"}
    profile = factory.repository.get_profile(TENANT)
    assert profile.is_verified
    assert profile.last_test_result["success"] is True
    assert fake_arca.calls[:2] == ["loginCms", "FEDummy"]


def test_failed_connection_test_leaves_profile_unverified(factory, make_profile, fake_arca):
    factory.save_configuration(TENANT, make_profile())
    fake_arca.login_fault = ("ns1:cms.cert.untrusted", "Certificado no emitido por AC de confianza")

    result = factory.test_connection(TENANT)

    assert not result.success
    assert "confianza" in result.message
    assert not factory.repository.get_profile(TENANT).is_verified


def test_saving_again_requires_new_test(factory, ready_tenant, make_profile):
    factory.save_configuration(TENANT, make_profile(legal_name="Otra SRL", certificate=None, private_key=None))

    with pytest.raises(ProfileNotVerifiedError):
        factory.for_tenant(TENANT)


def test_activation_requires_verification(factory, make_profile):
    factory.save_configuration(TENANT, make_profile())

    with pytest.raises(ProfileNotVerifiedError):
        factory.set_active(TENANT, True)


def test_inactive_profile_has_no_session(factory, ready_tenant):
    factory.set_active(TENANT, False)

    with pytest.raises(ProfileNotFoundError):
        factory.for_tenant(TENANT)


def test_session_without_sales_point(factory, make_profile):
    factory.save_configuration(TENANT, make_profile())
    factory.test_connection(TENANT)

    with pytest.raises(SalesPointNotFoundError):
        factory.for_tenant(TENANT)


def test_explicit_sales_point_wins_over_default(factory, ready_tenant):
    second = factory.add_sales_point(TENANT, 3, "Web")

    session = factory.for_tenant(TENANT, second.id)

    assert session.issuer.sales_point_number == 3
    assert factory.for_tenant(TENANT).issuer.sales_point_number == 1


def test_sales_point_number_is_validated(factory, ready_tenant):
    with pytest.raises(DocumentValidationError):
        factory.add_sales_point(TENANT, 0)
    with pytest.raises(DocumentValidationError):
        factory.add_sales_point(TENANT, 1)


def test_emit_invoice_persists_document(factory, ready_tenant, fake_arca):
    # Arrange
    session = factory.for_tenant(TENANT)

    # Act
    document = session.emit_invoice(InvoiceRequest(items=ITEMS, total="1210", order_id="order-1"))

    # Assert
    assert document.document_type == 6
    assert document.tax == Decimal("210.00")
    stored = factory.repository.get_document(TENANT, document.id)
    assert stored.authorization_code == document.authorization_code
    assert stored.order_id == "order-1"


def test_order_cannot_be_invoiced_twice(factory, ready_tenant, fake_arca):
    session = factory.for_tenant(TENANT)
    first = session.emit_invoice(InvoiceRequest(items=ITEMS, total="1210", order_id="order-1"))
    submissions = len(fake_arca.submissions)

    with pytest.raises(AlreadyInvoicedError) as excinfo:
        session.emit_invoice(InvoiceRequest(items=ITEMS, total="1210", order_id="order-1"))

    assert excinfo.value.details["existing_document_id"] == first.id
    assert len(fake_arca.submissions) == submissions


def test_registered_buyer_gets_type_a(factory, ready_tenant):
    session = factory.for_tenant(TENANT)

    document = session.emit_invoice(
        InvoiceRequest(
            items=ITEMS,
            total="1210",
            buyer=Buyer(doc_type=80, doc_number="30712345671", name="Turismo del Sur SA"),
            buyer_fiscal_condition="responsable_inscripto",
        )
    )

    assert document.document_type == 1
    assert document.buyer.fiscal_condition == 1


def test_full_credit_note_voids_original(factory, ready_tenant):
    # Arrange
    session = factory.for_tenant(TENANT)
    invoice = session.emit_invoice(InvoiceRequest(items=ITEMS, total="1210", order_id="order-1"))

    # Act
    outcome = session.emit_credit_note(invoice.id, "1210", "Cancelación de reserva")

    # Assert
    assert outcome.original_voided
    assert outcome.credit_note.document_type == 8
    stored = factory.repository.get_document(TENANT, invoice.id)
    assert stored.is_voided and stored.voided_by_id == outcome.credit_note.id
    # A voided invoice no longer blocks the order
    session.emit_invoice(InvoiceRequest(items=ITEMS, total="1210", order_id="order-1"))


def test_partial_credit_note_keeps_original_issued(factory, ready_tenant):
    session = factory.for_tenant(TENANT)
    invoice = session.emit_invoice(InvoiceRequest(items=ITEMS, total="1210"))

    outcome = session.emit_credit_note(invoice.id, "605", "Descuento por demora")

    assert not outcome.original_voided
    assert not factory.repository.get_document(TENANT, invoice.id).is_voided


def test_second_full_credit_note_is_refused(factory, ready_tenant):
    session = factory.for_tenant(TENANT)
    invoice = session.emit_invoice(InvoiceRequest(items=ITEMS, total="1210"))
    session.emit_credit_note(invoice.id, "1210", "Cancelación")

    with pytest.raises(DocumentValidationError):
        session.emit_credit_note(invoice.id, "1210", "Cancelación")


def test_credit_note_for_unknown_document(factory, ready_tenant):
    with pytest.raises(DocumentValidationError) as excinfo:
        factory.for_tenant(TENANT).emit_credit_note("missing", "10", "x")

    assert excinfo.value.field == "original_id"


def test_disconnect_clears_credentials_and_cache(factory, ready_tenant, fake_arca):
    # Arrange
    factory.for_tenant(TENANT).emit_invoice(InvoiceRequest(items=ITEMS, total="1210"))
    assert len(factory.cache) == 1

    # Act
    factory.disconnect(TENANT)

    # Assert
    assert len(factory.cache) == 0
    profile = factory.repository.get_profile(TENANT)
    assert profile.tax_id is None and not profile.has_credentials
    assert len(factory.repository.list_documents(TENANT)) == 1
    with pytest.raises(ProfileNotFoundError):
        factory.for_tenant(TENANT)


def test_reconnect_after_disconnect(factory, ready_tenant, make_profile):
    factory.disconnect(TENANT)

    profile = factory.save_configuration(TENANT, make_profile())

    assert profile.is_active and not profile.is_verified
    assert profile.tax_id == "20123456786"


def test_invalidate_cache_forces_new_login(factory, ready_tenant, fake_arca):
    logins = len(fake_arca.logins)

    assert factory.invalidate_cache(TENANT) == 1
    factory.for_tenant(TENANT).emit_invoice(InvoiceRequest(items=ITEMS, total="1210"))

    assert len(fake_arca.logins) == logins + 1


def test_authority_sales_points(factory, ready_tenant, fake_arca):
    fake_arca.sales_points = [{"number": 1}, {"number": 2, "blocked": True}]

    points = factory.authority_sales_points(TENANT)

    assert [p["number"] for p in points] == [1]


def test_authority_without_sales_points(factory, ready_tenant):
    assert factory.authority_sales_points(TENANT) == []


def test_lookup_taxpayer_uses_registry(factory, ready_tenant, fake_arca):
    fake_arca.personas["30712345671"] = (
        "<persona><tipoPersona>JURIDICA</tipoPersona><razonSocial>TURISMO DEL SUR SA</razonSocial>"
        "<impuesto><idImpuesto>30</idImpuesto><estado>ACTIVO</estado></impuesto></persona>"
    )

    info = factory.lookup_taxpayer(TENANT, "30-71234567-1")

    assert info.legal_name == "TURISMO DEL SUR SA"
    assert info.fiscal_condition == "responsable_inscripto"
    assert factory.lookup_taxpayer(TENANT, "20111111112") is None


def test_reconnected_tenant_restores_its_sales_point(factory, ready_tenant, make_profile, fake_arca):
    # Arrange
    factory.disconnect(TENANT)
    factory.save_configuration(TENANT, make_profile())
    assert factory.test_connection(TENANT).success

    # Act
    point = factory.add_sales_point(TENANT, 1, is_default=True)
    document = factory.for_tenant(TENANT).emit_invoice(InvoiceRequest(items=ITEMS, total="1210"))

    # Assert
    assert point.is_active and point.is_default
    assert point.description == "Recepción"
    assert document.sales_point_id == point.id
    assert [p.number for p in factory.list_sales_points(TENANT)] == [1]


def test_new_sales_point_gets_default_description(factory, ready_tenant):
    point = factory.add_sales_point(TENANT, 4)

    assert point.description == "Punto de Venta 4"
    assert not point.is_default


def test_update_sales_point(factory, ready_tenant):
    # Arrange
    web = factory.add_sales_point(TENANT, 3, "Web")

    # Act
    factory.update_sales_point(TENANT, web.id, is_default=True, description="Tienda web")

    # Assert
    session = factory.for_tenant(TENANT)
    assert session.issuer.sales_point_number == 3
    assert session.sales_point.description == "Tienda web"


def test_deactivated_sales_point_loses_default(factory, ready_tenant):
    default = factory.for_tenant(TENANT).sales_point

    point = factory.update_sales_point(TENANT, default.id, is_active=False)

    assert not point.is_active and not point.is_default
    with pytest.raises(SalesPointNotFoundError):
        factory.for_tenant(TENANT)


def test_inactive_sales_point_can_be_reactivated_by_update(factory, ready_tenant):
    default = factory.for_tenant(TENANT).sales_point
    factory.update_sales_point(TENANT, default.id, is_active=False)

    factory.update_sales_point(TENANT, default.id, is_active=True, is_default=True)

    assert factory.for_tenant(TENANT).sales_point.id == default.id


def test_unknown_sales_point_update(factory, ready_tenant):
    with pytest.raises(SalesPointNotFoundError):
        factory.update_sales_point(TENANT, "missing", is_active=False)


def test_configuration_view_hides_disconnected_profile(factory, ready_tenant):
    assert factory.get_configuration(TENANT).tax_id == "20123456786"

    factory.disconnect(TENANT)

    assert factory.get_configuration(TENANT) is None
    assert factory.get_configuration(OTHER_TENANT) is None


def test_clear_taxpayer_cache_normalizes_tax_id(factory, ready_tenant, fake_arca):
    # Arrange
    fake_arca.personas["30712345671"] = (
        "<persona><tipoPersona>JURIDICA</tipoPersona><razonSocial>TURISMO DEL SUR SA</razonSocial>"
        "<impuesto><idImpuesto>30</idImpuesto><estado>ACTIVO</estado></impuesto></persona>"
    )
    factory.lookup_taxpayer(TENANT, "30712345671")
    assert factory.taxpayer_cache.get("30712345671") is not None

    # Act
    factory.clear_taxpayer_cache("30-71234567-1")

    # Assert
    assert factory.taxpayer_cache.get("30712345671") is None
    with pytest.raises(DocumentValidationError):
        factory.clear_taxpayer_cache("123")
