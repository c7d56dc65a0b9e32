from __future__ import annotations

import pytest

from agents.arca.constants import REGIME_FULL, REGIME_SIMPLIFIED
from agents.arca.credit_notes import CreditNoteEngine
from agents.arca.dto import IssuerContext
from agents.arca.invoicing import InvoiceEmissionEngine
from agents.arca.numbering import EmissionSerializer
from agents.arca.session_cache import SessionCache
from agents.arca.vault import CredentialVault
from agents.arca.wsaa import AuthSessionManager
from agents.arca.wsfe import WsfeClient

TENANT = "6f1c2a9e-3b7d-4e58-9a0b-1c2d3e4f5a6b"
OTHER_TENANT = "0b9a8c7d-6e5f-4a3b-8c2d-1e0f9a8b7c6d"
ISSUER_TAX_ID = "20123456786"


@pytest.fixture
def vault() -> CredentialVault:
    return CredentialVault("00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff")


@pytest.fixture
def session_cache(clock) -> SessionCache:
    return SessionCache(clock=clock)


@pytest.fixture
def auth(vault, session_cache, certificate_pair, fake_arca, clock) -> AuthSessionManager:
    cert_pem, key_pem = certificate_pair
    return AuthSessionManager(
        tenant_id=TENANT,
        tax_id=ISSUER_TAX_ID,
        encrypted_certificate=vault.encrypt(cert_pem),
        encrypted_private_key=vault.encrypt(key_pem),
        vault=vault,
        cache=session_cache,
        transport=fake_arca.transport(),
        clock=clock,
        url="https://wsaa.test/ws/services/LoginCms",
    )


@pytest.fixture
def wsfe(auth, fake_arca) -> WsfeClient:
    return WsfeClient(auth=auth, transport=fake_arca.transport(), url="https://wsfe.test/service.asmx")


def make_issuer(regime: str, tenant_id: str = TENANT, sales_point: int = 1) -> IssuerContext:
    return IssuerContext(
        tenant_id=tenant_id,
        tax_id=ISSUER_TAX_ID,
        regime=regime,
        sales_point_number=sales_point,
        profile_id="profile-1",
        sales_point_id="sp-1",
    )


@pytest.fixture
def serializer(clock) -> EmissionSerializer:
    return EmissionSerializer(clock=clock)


@pytest.fixture
def simplified_engine(wsfe, serializer, clock) -> InvoiceEmissionEngine:
    return InvoiceEmissionEngine(make_issuer(REGIME_SIMPLIFIED), wsfe, serializer=serializer, clock=clock)


@pytest.fixture
def full_engine(wsfe, serializer, clock) -> InvoiceEmissionEngine:
    return InvoiceEmissionEngine(make_issuer(REGIME_FULL), wsfe, serializer=serializer, clock=clock)


@pytest.fixture
def full_credit_engine(wsfe, serializer, clock) -> CreditNoteEngine:
    return CreditNoteEngine(make_issuer(REGIME_FULL), wsfe, serializer=serializer, clock=clock)


@pytest.fixture
def simplified_credit_engine(wsfe, serializer, clock) -> CreditNoteEngine:
    return CreditNoteEngine(make_issuer(REGIME_SIMPLIFIED), wsfe, serializer=serializer, clock=clock)
