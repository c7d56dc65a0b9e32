import inspect
import json
import os
import socket
from datetime import datetime, timedelta, timezone
from pathlib import Path
from xml.etree import ElementTree as ET
from xml.sax.saxutils import escape

import httpx
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from agents.arca.transport import SoapTransport, find_child, find_text, local_name
from backend.core.observability.metrics import reset_metrics

VIOLATIONS = []
ARTIFACTS_DIR = Path("artifacts")
ARTIFACTS_DIR.mkdir(parents=True, exist_ok=True)
REPORT = ARTIFACTS_DIR / "egress-violations.json"

TEST_KEY_HEX = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"
ISSUER_TAX_ID = "20123456786"
WSFE_NS = "http://ar.gov.afip.dif.FEV1/"
WSAA_NS = "http://wsaa.view.sua.dvadac.desein.afip.gov"


def _is_allowed_callstack(allowed_paths: list[str]) -> bool:
    for frame in inspect.stack():
        filename = (frame.filename or "").replace("\\", "/")
        for ap in allowed_paths:
            if ap in filename:
                return True
    return False


@pytest.fixture(autouse=True, scope="session")
def egress_guard():
    allowed_client_paths = [
        "/tests/",
        "/agents/arca/transport.py",
    ]

    # Allow DB host/port as exception
    db_url = os.environ.get("DATABASE_URL", "")
    db_host = None
    db_port = None
    if "@" in db_url:
        hostport = db_url.split("@", 1)[1].split("/", 1)[0]
        if ":" in hostport:
            db_host, port = hostport.split(":", 1)
            db_port = int(port) if port.isdigit() else None
        else:
            db_host, db_port = hostport, 5432

    real_getaddrinfo = socket.getaddrinfo
    real_create_connection = socket.create_connection
    real_httpx_init = httpx.Client.__init__

    def guard_getaddrinfo(host, *args, **kwargs):
        if db_host and isinstance(host, str) and host == db_host:
            return real_getaddrinfo(host, *args, **kwargs)
        VIOLATIONS.append({"fn": "getaddrinfo", "host": str(host)})
        raise RuntimeError("Egress blocked: getaddrinfo disallowed")

    def guard_create_connection(address, *args, **kwargs):
        host, port = (address[0], address[1]) if isinstance(address, tuple) else (None, None)
        if (db_host and host == db_host) or (db_port and port == db_port):
            return real_create_connection(address, *args, **kwargs)
        VIOLATIONS.append({"fn": "create_connection", "address": str(address)})
        raise RuntimeError("Egress blocked: create_connection disallowed")

    def guard_httpx_init(self, *args, **kwargs):
        if not _is_allowed_callstack(allowed_client_paths):
            VIOLATIONS.append({"fn": "httpx.Client.__init__"})
            raise RuntimeError("Egress blocked: httpx.Client not allowed from this callsite")
        return real_httpx_init(self, *args, **kwargs)

    socket.getaddrinfo = guard_getaddrinfo  # type: ignore[assignment]
    socket.create_connection = guard_create_connection  # type: ignore[assignment]
    httpx.Client.__init__ = guard_httpx_init  # type: ignore[assignment]

    yield

    # Restore
    socket.getaddrinfo = real_getaddrinfo  # type: ignore[assignment]
    socket.create_connection = real_create_connection  # type: ignore[assignment]
    httpx.Client.__init__ = real_httpx_init  # type: ignore[assignment]

    REPORT.write_text(json.dumps(VIOLATIONS, indent=2))


@pytest.fixture(autouse=True)
def clean_metrics():
    reset_metrics()
    yield
    reset_metrics()


class FixedClock:
    """Deterministic clock; tests advance it explicitly."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock() -> FixedClock:
    # 12:00 UTC is 09:00 at the authority
    return FixedClock(datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc))


@pytest.fixture(scope="session")
def certificate_pair() -> tuple[str, str]:
    """Self-signed certificate and PKCS#8 key, PEM encoded."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name(
        [
            x509.NameAttribute(NameOID.COMMON_NAME, "tenant-test"),
            x509.NameAttribute(NameOID.SERIAL_NUMBER, f"CUIT {ISSUER_TAX_ID}"),
        ]
    )
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(datetime(2026, 1, 1, tzinfo=timezone.utc))
        .not_valid_after(datetime(2028, 1, 1, tzinfo=timezone.utc))
        .sign(key, hashes.SHA256())
    )
    cert_pem = cert.public_bytes(serialization.Encoding.PEM).decode("ascii")
    key_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode("ascii")
    return cert_pem, key_pem


def soap_envelope(inner: str) -> str:
    return (
        '<?xml version="1.0" encoding="utf-8"?>'
        '<soap:Envelope xmlns:soap="http://schemas.xmlsoap.org/soap/envelope/">'
        f"<soap:Body>{inner}</soap:Body></soap:Envelope>"
    )


def soap_fault(code: str, message: str) -> str:
    return soap_envelope(f"<soap:Fault><faultcode>{code}</faultcode><faultstring>{message}</faultstring></soap:Fault>")


class FakeArca:
    """In-memory stand-in for WSAA, WSFEv1 and the registry services.

    Numbering follows the authority: a submission is accepted only for
    ``last + 1`` and otherwise observed with 10016.
    """

    def __init__(self, clock: FixedClock):
        self.clock = clock
        self.last: dict[tuple[int, int], int] = {}
        self.logins: list[str] = []
        self.calls: list[str] = []
        self.submissions: list[ET.Element] = []
        self.login_fault: tuple[str, str] | None = None
        self.reject_with: list[tuple[str, str]] = []
        self.errors_with: list[tuple[str, str]] = []
        self.sales_points: list[dict] = []
        self.personas: dict[str, str] = {}
        self.constancias: dict[str, str] = {}
        self.before_submit = None
        # operation name -> (faultcode, faultstring) answered once
        self.faults: dict[str, tuple[str, str]] = {}

    # -- plumbing ---------------------------------------------------------

    def transport(self) -> SoapTransport:
        client = httpx.Client(transport=httpx.MockTransport(self.handle))
        return SoapTransport(client=client)

    def handle(self, request: httpx.Request) -> httpx.Response:
        root = ET.fromstring(request.content)
        operation = next(iter(find_child(root, "Body")))
        name = local_name(operation.tag)
        self.calls.append(name)
        if name in self.faults:
            return httpx.Response(
                500, content=soap_fault(*self.faults.pop(name)).encode("utf-8"), headers={"Content-Type": "text/xml"}
            )
        handler = getattr(self, f"_on_{name}")
        status, body = handler(operation)
        return httpx.Response(status, content=body.encode("utf-8"), headers={"Content-Type": "text/xml"})

    # -- WSAA -------------------------------------------------------------

    def _on_loginCms(self, operation):
        if self.login_fault is not None:
            return 500, soap_fault(*self.login_fault)
        cms = find_text(operation, "in0")
        self.logins.append(cms)
        n = len(self.logins)
        now = self.clock().astimezone(timezone(timedelta(hours=-3)))
        ticket = (
            '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'
            '<loginTicketResponse version="1.0"><header>'
            f"<uniqueId>{n}</uniqueId>"
            f"<generationTime>{now.isoformat(timespec='milliseconds')}</generationTime>"
            f"<expirationTime>{(now + timedelta(hours=12)).isoformat(timespec='milliseconds')}</expirationTime>"
            "</header><credentials>"
            f"<token>TOKEN-{n}</token><sign>SIGN-{n}</sign>"
            "</credentials></loginTicketResponse>"
        )
        return 200, soap_envelope(
            f'<loginCmsResponse xmlns="{WSAA_NS}"><loginCmsReturn>{escape(ticket)}</loginCmsReturn></loginCmsResponse>'
        )

    # -- WSFE -------------------------------------------------------------

    def _wsfe(self, operation: str, inner: str) -> tuple[int, str]:
        return 200, soap_envelope(
            f'<{operation}Response xmlns="{WSFE_NS}"><{operation}Result>{inner}</{operation}Result></{operation}Response>'
        )

    @staticmethod
    def _errors(errors: list[tuple[str, str]]) -> str:
        if not errors:
            return ""
        items = "".join(f"<Err><Code>{c}</Code><Msg>{m}</Msg></Err>" for c, m in errors)
        return f"<Errors>{items}</Errors>"

    def _on_FECompUltimoAutorizado(self, operation):
        pv = int(find_text(operation, "PtoVta"))
        kind = int(find_text(operation, "CbteTipo"))
        number = self.last.get((pv, kind), 0)
        return self._wsfe(
            "FECompUltimoAutorizado",
            f"<PtoVta>{pv}</PtoVta><CbteTipo>{kind}</CbteTipo><CbteNro>{number}</CbteNro>",
        )

    def _on_FECAESolicitar(self, operation):
        if self.before_submit is not None:
            self.before_submit()
        header = find_child(operation, "FeCAEReq", "FeCabReq")
        detail = find_child(operation, "FeCAEReq", "FeDetReq", "FECAEDetRequest")
        self.submissions.append(detail)
        pv = int(find_text(header, "PtoVta"))
        kind = int(find_text(header, "CbteTipo"))
        number = int(find_text(detail, "CbteDesde"))

        if self.errors_with:
            errors, self.errors_with = self.errors_with, []
            return self._wsfe("FECAESolicitar", self._errors(errors))

        observations = list(self.reject_with)
        self.reject_with = []
        if not observations and number != self.last.get((pv, kind), 0) + 1:
            observations = [("10016", "El numero o fecha del comprobante no se corresponde con el proximo a autorizar.")]

        cab = (
            f"<FeCabResp><Cuit>{ISSUER_TAX_ID}</Cuit><PtoVta>{pv}</PtoVta><CbteTipo>{kind}</CbteTipo>"
            f"<FchProceso>20261019090000</FchProceso><CantReg>1</CantReg>"
            f"<Resultado>{'R' if observations else 'A'}</Resultado><Reproceso>N</Reproceso></FeCabResp>"
        )
        if observations:
            obs = "".join(f"<Obs><Code>{c}</Code><Msg>{m}</Msg></Obs>" for c, m in observations)
            det = (
                f"<FECAEDetResponse><CbteDesde>{number}</CbteDesde><CbteHasta>{number}</CbteHasta>"
                f"<Resultado>R</Resultado><Observaciones>{obs}</Observaciones><CAE></CAE><CAEFchVto></CAEFchVto>"
                "</FECAEDetResponse>"
            )
        else:
            self.last[(pv, kind)] = number
            det = (
                f"<FECAEDetResponse><CbteDesde>{number}</CbteDesde><CbteHasta>{number}</CbteHasta>"
                f"<Resultado>A</Resultado><CAE>{7 * 10**13 + kind * 10**8 + number}</CAE>"
                "<CAEFchVto>20261029</CAEFchVto></FECAEDetResponse>"
            )
        return self._wsfe("FECAESolicitar", f"{cab}<FeDetResp>{det}</FeDetResp>")

    def _on_FEDummy(self, operation):
        return self._wsfe("FEDummy", "<AppServer>OK</AppServer><DbServer>OK</DbServer><AuthServer>OK</AuthServer>")

    def _on_FEParamGetPtosVenta(self, operation):
        if not self.sales_points:
            return self._wsfe("FEParamGetPtosVenta", self._errors([("602", "Sin Resultados")]))
        points = "".join(
            "<PtoVenta>"
            f"<Nro>{p['number']}</Nro><EmisionTipo>{p.get('emission_type', 'CAE - Ws')}</EmisionTipo>"
            f"<Bloqueado>{'S' if p.get('blocked') else 'N'}</Bloqueado><FchBaja>{p.get('removal_date', 'NULL')}</FchBaja>"
            "</PtoVenta>"
            for p in self.sales_points
        )
        return self._wsfe("FEParamGetPtosVenta", f"<ResultGet>{points}</ResultGet>")

    # -- registry ---------------------------------------------------------

    def _registry(self, operation, store: dict[str, str], response: str):
        tax_id = find_text(operation, "idPersona")
        if tax_id not in store:
            return 500, soap_fault("soap:Server", "No existe persona con ese Id")
        namespace = operation.tag[1:].split("}", 1)[0]
        return 200, soap_envelope(
            f'<ns2:{response} xmlns:ns2="{namespace}"><personaReturn>{store[tax_id]}</personaReturn></ns2:{response}>'
        )

    def _on_getPersona(self, operation):
        return self._registry(operation, self.personas, "getPersonaResponse")

    def _on_getPersona_v2(self, operation):
        return self._registry(operation, self.constancias, "getPersona_v2Response")


@pytest.fixture
def fake_arca(clock) -> FakeArca:
    return FakeArca(clock)
