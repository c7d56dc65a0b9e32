from __future__ import annotations

from datetime import date
from decimal import Decimal
from xml.etree import ElementTree as ET

import pytest

from agents.arca.dto import AssociatedDocument, Buyer, TaxBreakdown
from agents.arca.errors import BusinessRejectionError, DuplicateNumberError, SoapFault, TransportError
from agents.arca.transport import local_name
from agents.arca.wsfe import WSFE_NS, AuthorizationRequest, build_detail, parse_date


def _request(number=1, kind=11, amounts=None, associated=None) -> AuthorizationRequest:
    return AuthorizationRequest(
        document_type=kind,
        number=number,
        issue_date=date(2026, 10, 19),
        buyer=Buyer(),
        amounts=amounts or TaxBreakdown(net=Decimal("5000.00"), tax=Decimal("0.00"), total=Decimal("5000.00")),
        associated=associated,
        issuer_tax_id="20123456786",
    )


def _children(element: ET.Element) -> list[str]:
    return [local_name(c.tag) for c in element]


def test_detail_fields_follow_schema_order():
    parent = ET.Element("FeDetReq")

    detail = build_detail(parent, _request())

    assert _children(detail) == [
        "Concepto", "DocTipo", "DocNro", "CbteDesde", "CbteHasta", "CbteFch", "ImpTotal",
        "ImpTotConc", "ImpNeto", "ImpOpEx", "ImpTrib", "ImpIVA", "MonId", "MonCotiz",
        "CondicionIVAReceptorId",
    ]
    assert detail.findtext(f"{{{WSFE_NS}}}CbteFch") == "20261019"
    assert detail.findtext(f"{{{WSFE_NS}}}ImpTotal") == "5000.00"


def test_detail_with_tax_and_association():
    # Arrange
    amounts = TaxBreakdown(net=Decimal("1000.00"), tax=Decimal("210.00"), total=Decimal("1210.00"))
    associated = AssociatedDocument(
        document_type=6, sales_point_number=1, number=7, issue_date=date(2026, 10, 1), authorization_code="7" * 14
    )

    # Act
    detail = build_detail(ET.Element("FeDetReq"), _request(kind=8, amounts=amounts, associated=associated))

    # Assert
    assert _children(detail)[-2:] == ["CbtesAsoc", "Iva"]
    aliquot = detail.find(f"{{{WSFE_NS}}}Iva/{{{WSFE_NS}}}AlicIva")
    assert aliquot.findtext(f"{{{WSFE_NS}}}Id") == "5"
    assert aliquot.findtext(f"{{{WSFE_NS}}}BaseImp") == "1000.00"
    assert aliquot.findtext(f"{{{WSFE_NS}}}Importe") == "210.00"
    assoc = detail.find(f"{{{WSFE_NS}}}CbtesAsoc/{{{WSFE_NS}}}CbteAsoc")
    assert assoc.findtext(f"{{{WSFE_NS}}}Nro") == "7"
    assert assoc.findtext(f"{{{WSFE_NS}}}Cuit") == "20123456786"
    assert assoc.findtext(f"{{{WSFE_NS}}}CbteFch") == "20261001"


def test_last_authorized_defaults_to_zero(wsfe):
    assert wsfe.last_authorized(1, 11) == 0


def test_last_authorized_reads_number(wsfe, fake_arca):
    fake_arca.last[(3, 6)] = 41

    assert wsfe.last_authorized(3, 6) == 41


def test_authorization_parses_code_and_expiry(wsfe, fake_arca):
    # Act
    result = wsfe.request_authorization(1, _request())

    # Assert
    assert result.result == "A"
    assert len(result.authorization_code) == 14
    assert result.authorization_expiry == date(2026, 10, 29)
    assert result.raw["FeDetResp"]["FECAEDetResponse"]["CAE"] == result.authorization_code
    assert fake_arca.last[(1, 11)] == 1


def test_session_credentials_travel_in_auth_block(wsfe, fake_arca):
    wsfe.request_authorization(1, _request())

    assert fake_arca.calls == ["loginCms", "FECAESolicitar"]


def test_rejection_carries_observations_verbatim(wsfe, fake_arca):
    # Arrange
    fake_arca.reject_with = [("10015", "Factura B: DocNro invalido")]

    # Act / Assert
    with pytest.raises(BusinessRejectionError) as info:
        wsfe.request_authorization(1, _request())
    assert not isinstance(info.value, DuplicateNumberError)
    assert info.value.result == "R"
    assert [(o.code, o.message) for o in info.value.observations] == [("10015", "Factura B: DocNro invalido")]


def test_out_of_sequence_number_is_duplicate(wsfe, fake_arca):
    fake_arca.last[(1, 11)] = 5

    with pytest.raises(DuplicateNumberError) as info:
        wsfe.request_authorization(1, _request(number=5))
    assert info.value.retryable
    assert info.value.observations[0].code == "10016"


def test_errors_block_is_business_rejection(wsfe, fake_arca):
    fake_arca.errors_with = [("600", "ValidacionDeToken: No aparecio CUIT en lista de relaciones")]

    with pytest.raises(BusinessRejectionError) as info:
        wsfe.request_authorization(1, _request())
    assert info.value.observations[0].code == "600"


def test_server_status_needs_no_session(wsfe, fake_arca):
    status = wsfe.server_status()

    assert status == {"app_server": "OK", "db_server": "OK", "auth_server": "OK"}
    assert fake_arca.calls == ["FEDummy"]


def test_authority_sales_points_skips_blocked(wsfe, fake_arca):
    fake_arca.sales_points = [
        {"number": 1},
        {"number": 2, "blocked": True},
        {"number": 5, "emission_type": "CAEA - Ws"},
    ]

    points = wsfe.authority_sales_points()

    assert [p["number"] for p in points] == [1, 5]
    assert points[1]["emission_type"] == "CAEA - Ws"


def test_no_registered_sales_points_is_empty(wsfe):
    assert wsfe.authority_sales_points() == []


def test_parse_date_tolerates_blanks():
    assert parse_date("20261029") == date(2026, 10, 29)
    assert parse_date("") is None
    assert parse_date("NULL") is None


def test_server_fault_on_number_lookup_is_transport_error(wsfe, fake_arca):
    # Arrange
    fake_arca.faults["FECompUltimoAutorizado"] = ("soap:Server", "Error interno de aplicacion")

    # Act / Assert
    with pytest.raises(TransportError) as info:
        wsfe.last_authorized(1, 11)

    assert not isinstance(info.value, SoapFault)
    assert info.value.retryable


def test_client_fault_on_submission_is_business_rejection(wsfe, fake_arca):
    fake_arca.faults["FECAESolicitar"] = ("soap:Client", "Server was unable to read request")

    with pytest.raises(BusinessRejectionError) as info:
        wsfe.request_authorization(1, _request())

    assert info.value.observations[0].code == "soap:Client"
    assert "unable to read request" in info.value.message
