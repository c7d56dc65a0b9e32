"""Authentication against WSAA (loginCms).

A tenant's signing certificate and key sign a short-lived access request;
the authority answers with a token/sign pair valid for several hours. The
pair is cached per (tenant, service) in the injected ``SessionCache`` and
reused until the safety margin before its expiry.
"""

from __future__ import annotations

import base64
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Tuple
from xml.etree import ElementTree as ET

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.serialization import pkcs7

from backend.core.config import settings
from backend.core.observability.logging import get_logger
from backend.core.observability.metrics import increment_auth_exchange

from .constants import SERVICE_WSFE
from .dto import ConnectionTestResult, SessionCredential
from .errors import ArcaError, AuthenticationError, SoapFault, TransportError, VaultError
from .session_cache import SessionCache, credential_ttl
from .transport import SoapTransport, find_text, sub
from .vault import CredentialVault

logger = get_logger(__name__)

WSAA_NS = "http://wsaa.view.sua.dvadac.desein.afip.gov"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def build_access_request(service: str, now: datetime, window: timedelta) -> str:
    """Return the loginTicketRequest XML for ``service``."""

    root = ET.Element("loginTicketRequest", {"version": "1.0"})
    header = ET.SubElement(root, "header")
    sub(header, "uniqueId", int(now.timestamp()))
    sub(header, "generationTime", (now - window).isoformat(timespec="seconds"))
    sub(header, "expirationTime", (now + window).isoformat(timespec="seconds"))
    sub(root, "service", service)
    return ET.tostring(root, encoding="unicode")


def sign_access_request(access_request: str, certificate_pem: str, private_key_pem: str) -> str:
    """Sign the request as CMS SignedData (SHA-256, content attached), base64 DER."""

    try:
        certificate = x509.load_pem_x509_certificate(certificate_pem.strip().encode("utf-8"))
        private_key = serialization.load_pem_private_key(private_key_pem.strip().encode("utf-8"), password=None)
        der = (
            pkcs7.PKCS7SignatureBuilder()
            .set_data(access_request.encode("utf-8"))
            .add_signer(certificate, private_key, hashes.SHA256())
            .sign(serialization.Encoding.DER, [pkcs7.PKCS7Options.Binary])
        )
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise AuthenticationError(f"could not sign access request: {exc}") from exc
    return base64.b64encode(der).decode("ascii")


def parse_login_ticket_response(
    document: str, now: datetime, default_validity: timedelta
) -> Tuple[str, str, datetime]:
    """Extract (token, sign, expires_at) from a loginTicketResponse."""

    try:
        root = ET.fromstring(document.strip().encode("utf-8"))
    except ET.ParseError as exc:
        raise AuthenticationError("login ticket response is not valid XML") from exc

    token = find_text(root, "credentials", "token")
    sign = find_text(root, "credentials", "sign")
    if not token or not sign:
        raise AuthenticationError("login ticket response carries no token/sign")

    expires_at = now + default_validity
    raw_expiry = find_text(root, "header", "expirationTime")
    if raw_expiry:
        try:
            expires_at = datetime.fromisoformat(raw_expiry)
        except ValueError:
            logger.warning("login_ticket_expiry_unparseable", extra={"value": raw_expiry})
        else:
            if expires_at.tzinfo is None:
                expires_at = expires_at.replace(tzinfo=timezone.utc)
    return token, sign, expires_at


class AuthSessionManager:
    """Produces (token, sign) pairs for one tenant, reusing the shared cache."""

    def __init__(
        self,
        *,
        tenant_id: str,
        tax_id: str,
        encrypted_certificate: str,
        encrypted_private_key: str,
        vault: CredentialVault,
        cache: SessionCache,
        transport: SoapTransport | None = None,
        clock: Callable[[], datetime] | None = None,
        url: str | None = None,
    ) -> None:
        self.tenant_id = tenant_id
        self.tax_id = tax_id
        self._encrypted_certificate = encrypted_certificate
        self._encrypted_private_key = encrypted_private_key
        self._vault = vault
        self._cache = cache
        self._transport = transport or SoapTransport()
        self._clock = clock or _utcnow
        self._url = url or settings.ARCA_WSAA_URL
        self._window = timedelta(seconds=settings.ARCA_ACCESS_REQUEST_WINDOW_S)
        self._margin = timedelta(seconds=settings.ARCA_TOKEN_SAFETY_MARGIN_S)
        self._default_validity = timedelta(seconds=settings.ARCA_TOKEN_DEFAULT_VALIDITY_S)

    def get_credentials(self, service: str = SERVICE_WSFE) -> SessionCredential:
        cached = self._cache.get(self.tenant_id, service)
        if cached is not None:
            return cached

        # One exchange per (tenant, service) at a time; the authority refuses a
        # second ticket while the first is still valid.
        with self._cache.exchange_lock(self.tenant_id, service):
            cached = self._cache.get(self.tenant_id, service)
            if cached is not None:
                return cached
            credential = self._exchange(service)
            self._store(credential)
            return credential

    def test_connection(self, service: str = SERVICE_WSFE) -> ConnectionTestResult:
        """Run a fresh exchange and report the outcome instead of raising."""

        with self._cache.exchange_lock(self.tenant_id, service):
            try:
                credential = self._exchange(service)
            except ArcaError as exc:
                return ConnectionTestResult(success=False, message=exc.message, tax_id=self.tax_id)
            self._store(credential)
        return ConnectionTestResult(
            success=True,
            message="authentication succeeded",
            expires_at=credential.expires_at,
            tax_id=self.tax_id,
        )

    def invalidate(self, service: Optional[str] = None) -> int:
        return self._cache.invalidate(self.tenant_id, service)

    def _store(self, credential: SessionCredential) -> None:
        ttl = credential_ttl(credential.expires_at, self._clock(), self._margin)
        self._cache.put(self.tenant_id, credential.service, credential, ttl)

    def _exchange(self, service: str) -> SessionCredential:
        log_extra = {"tenant": self.tenant_id, "service": service}
        try:
            certificate_pem = self._vault.decrypt(self._encrypted_certificate)
            private_key_pem = self._vault.decrypt(self._encrypted_private_key)
        except VaultError as exc:
            increment_auth_exchange("decrypt_failed")
            logger.warning("wsaa_decrypt_failed", extra=log_extra)
            raise AuthenticationError(f"stored credentials unusable: {exc.message}", service=service) from exc

        now = self._clock()
        access_request = build_access_request(service, now, self._window)
        try:
            cms = sign_access_request(access_request, certificate_pem, private_key_pem)
        except AuthenticationError as exc:
            increment_auth_exchange("sign_failed")
            logger.warning("wsaa_sign_failed", extra=log_extra)
            exc.service = service
            raise

        payload = ET.Element(f"{{{WSAA_NS}}}loginCms")
        sub(payload, "in0", cms, ns=WSAA_NS)
        try:
            response = self._transport.call(self._url, "", payload, operation="loginCms")
        except SoapFault as exc:
            increment_auth_exchange("rejected")
            logger.warning("wsaa_rejected", extra={**log_extra, "faultcode": exc.faultcode})
            raise AuthenticationError(exc.faultstring, service=service, faultcode=exc.faultcode) from exc
        except TransportError:
            increment_auth_exchange("transport_failed")
            raise

        ticket = find_text(response, "loginCmsReturn")
        if not ticket:
            increment_auth_exchange("malformed")
            raise AuthenticationError("loginCms response has no loginCmsReturn", service=service)
        try:
            token, sign, expires_at = parse_login_ticket_response(ticket, now, self._default_validity)
        except AuthenticationError as exc:
            increment_auth_exchange("malformed")
            exc.service = service
            raise

        increment_auth_exchange("success")
        logger.info("wsaa_authenticated", extra={**log_extra, "expires_at": expires_at.isoformat()})
        return SessionCredential(
            tenant_id=self.tenant_id,
            service=service,
            token=token,
            sign=sign,
            expires_at=expires_at,
        )
