from __future__ import annotations

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from agents.arca.numbering import EmissionSerializer
from agents.arca.padron import TaxpayerCache
from agents.arca.session_cache import SessionCache
from agents.arca.vault import CredentialVault
from backend.apps.invoicing.factory import ProfileInput, TenantSessionFactory
from backend.apps.invoicing.repository import FiscalRepository

TENANT = "6f1c2a9e-3b7d-4e58-9a0b-1c2d3e4f5a6b"
ISSUER_TAX_ID = "20123456786"


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        future=True,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    yield engine
    engine.dispose()


@pytest.fixture
def repository(engine) -> FiscalRepository:
    repo = FiscalRepository(engine)
    repo.create_schema()
    return repo


@pytest.fixture
def factory(repository, fake_arca, clock) -> TenantSessionFactory:
    return TenantSessionFactory(
        repository,
        CredentialVault("00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"),
        cache=SessionCache(clock=clock),
        transport=fake_arca.transport(),
        serializer=EmissionSerializer(clock=clock),
        taxpayer_cache=TaxpayerCache(3600, clock=clock),
        clock=clock,
    )


@pytest.fixture
def make_profile(certificate_pair):
    cert_pem, key_pem = certificate_pair

    def build(**overrides) -> ProfileInput:
        values = {
            "tax_id": ISSUER_TAX_ID,
            "legal_name": "Cabañas del Lago SRL",
            "fiscal_address": "Av. Costanera 1200, Bariloche",
            "regime": "responsable_inscripto",
            "certificate": cert_pem,
            "private_key": key_pem,
        }
        values.update(overrides)
        return ProfileInput(**values)

    return build


@pytest.fixture
def ready_tenant(factory, make_profile):
    """A saved, tested and active profile with sales point 1 as default."""
    factory.save_configuration(TENANT, make_profile())
    assert factory.test_connection(TENANT).success
    factory.add_sales_point(TENANT, 1, "Recepción", is_default=True)
    return TENANT
