"""WSFEv1 client: number lookup, authorization requests and parameters.

The client neither computes amounts nor decides document types; it turns
an ``AuthorizationRequest`` into the FECAESolicitar envelope and classifies
the answer. Amounts are sent exactly as given.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Tuple
from xml.etree import ElementTree as ET

from backend.core.config import settings
from backend.core.observability.logging import get_logger

from .constants import (
    CONCEPT_PRODUCTS,
    CURRENCY_PESOS,
    OBS_NUMBER_NOT_NEXT,
    RESULT_APPROVED,
    SERVICE_WSFE,
    VAT_21_ID,
)
from .dto import AssociatedDocument, Buyer, TaxBreakdown
from .errors import (
    BusinessRejectionError,
    DuplicateNumberError,
    Observation,
    SoapFault,
    TransportError,
    format_observations,
)
from .transport import SoapTransport, find_all, find_child, find_text, local_name, sub
from .wsaa import AuthSessionManager

logger = get_logger(__name__)

WSFE_NS = "http://ar.gov.afip.dif.FEV1/"
ET.register_namespace("ar", WSFE_NS)

# FEParamGetPtosVenta answers "Sin Resultados" when nothing is registered
ERR_NO_RESULTS = "602"


def format_date(value: date) -> str:
    return value.strftime("%Y%m%d")


def parse_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        return datetime.strptime(value.strip(), "%Y%m%d").date()
    except ValueError:
        return None


def element_to_dict(element: ET.Element) -> Any:
    """Flatten a response element for audit storage; repeated tags become lists."""

    children = list(element)
    if not children:
        return (element.text or "").strip()
    result: Dict[str, Any] = {}
    for child in children:
        name = local_name(child.tag)
        value = element_to_dict(child)
        if name in result:
            if not isinstance(result[name], list):
                result[name] = [result[name]]
            result[name].append(value)
        else:
            result[name] = value
    return result


def _observations(container: Optional[ET.Element], wrapper: str, item: str) -> List[Observation]:
    block = find_child(container, wrapper)
    return [
        Observation(code=find_text(node, "Code", default="") or "", message=find_text(node, "Msg", default="") or "")
        for node in find_all(block, item)
    ]


@dataclass(frozen=True, slots=True)
class AuthorizationRequest:
    document_type: int
    number: int
    issue_date: date
    buyer: Buyer
    amounts: TaxBreakdown
    associated: Optional[AssociatedDocument] = None
    issuer_tax_id: Optional[str] = None


@dataclass(frozen=True, slots=True)
class AuthorizationResult:
    result: str
    authorization_code: str
    authorization_expiry: Optional[date]
    observations: Tuple[Observation, ...] = ()
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)


def build_detail(parent: ET.Element, request: AuthorizationRequest) -> ET.Element:
    """Append a FECAEDetRequest in the order the service schema expects."""

    amounts = request.amounts
    detail = sub(parent, "FECAEDetRequest", ns=WSFE_NS)
    sub(detail, "Concepto", CONCEPT_PRODUCTS, ns=WSFE_NS)
    sub(detail, "DocTipo", request.buyer.doc_type, ns=WSFE_NS)
    sub(detail, "DocNro", request.buyer.doc_number, ns=WSFE_NS)
    sub(detail, "CbteDesde", request.number, ns=WSFE_NS)
    sub(detail, "CbteHasta", request.number, ns=WSFE_NS)
    sub(detail, "CbteFch", format_date(request.issue_date), ns=WSFE_NS)
    sub(detail, "ImpTotal", amounts.total, ns=WSFE_NS)
    sub(detail, "ImpTotConc", 0, ns=WSFE_NS)
    sub(detail, "ImpNeto", amounts.net, ns=WSFE_NS)
    sub(detail, "ImpOpEx", 0, ns=WSFE_NS)
    sub(detail, "ImpTrib", 0, ns=WSFE_NS)
    sub(detail, "ImpIVA", amounts.tax, ns=WSFE_NS)
    sub(detail, "MonId", CURRENCY_PESOS, ns=WSFE_NS)
    sub(detail, "MonCotiz", 1, ns=WSFE_NS)
    sub(detail, "CondicionIVAReceptorId", request.buyer.fiscal_condition, ns=WSFE_NS)

    if request.associated is not None:
        assoc = request.associated
        block = sub(sub(detail, "CbtesAsoc", ns=WSFE_NS), "CbteAsoc", ns=WSFE_NS)
        sub(block, "Tipo", assoc.document_type, ns=WSFE_NS)
        sub(block, "PtoVta", assoc.sales_point_number, ns=WSFE_NS)
        sub(block, "Nro", assoc.number, ns=WSFE_NS)
        sub(block, "Cuit", request.issuer_tax_id, ns=WSFE_NS)
        sub(block, "CbteFch", format_date(assoc.issue_date), ns=WSFE_NS)

    if amounts.discriminated:
        aliquot = sub(sub(detail, "Iva", ns=WSFE_NS), "AlicIva", ns=WSFE_NS)
        sub(aliquot, "Id", VAT_21_ID, ns=WSFE_NS)
        sub(aliquot, "BaseImp", amounts.net, ns=WSFE_NS)
        sub(aliquot, "Importe", amounts.tax, ns=WSFE_NS)
    return detail


def classify_rejection(message: str, observations: List[Observation], result: Optional[str]) -> BusinessRejectionError:
    if any(o.code == OBS_NUMBER_NOT_NEXT for o in observations):
        return DuplicateNumberError(message, observations=observations, result=result)
    return BusinessRejectionError(message, observations=observations, result=result)


class WsfeClient:
    """Tenant-bound WSFEv1 client."""

    def __init__(
        self,
        *,
        auth: AuthSessionManager,
        transport: SoapTransport | None = None,
        url: str | None = None,
    ) -> None:
        self.auth = auth
        self._transport = transport or SoapTransport()
        self._url = url or settings.ARCA_WSFE_URL

    @property
    def tax_id(self) -> str:
        return self.auth.tax_id

    def _payload(self, operation: str, *, authenticated: bool = True) -> ET.Element:
        payload = ET.Element(f"{{{WSFE_NS}}}{operation}")
        if authenticated:
            credential = self.auth.get_credentials(SERVICE_WSFE)
            auth = sub(payload, "Auth", ns=WSFE_NS)
            sub(auth, "Token", credential.token, ns=WSFE_NS)
            sub(auth, "Sign", credential.sign, ns=WSFE_NS)
            sub(auth, "Cuit", self.tax_id, ns=WSFE_NS)
        return payload

    def _call(self, operation: str, payload: ET.Element) -> ET.Element:
        try:
            response = self._transport.call(self._url, WSFE_NS + operation, payload, operation=operation)
        except SoapFault as exc:
            logger.warning(
                "wsfe_soap_fault",
                extra={"tenant": self.auth.tenant_id, "operation": operation, "faultcode": exc.faultcode},
            )
            # Server faults are the authority failing, not the document
            if exc.faultcode.rsplit(":", 1)[-1].lower() == "server":
                raise TransportError(f"{operation}: {exc.faultstring}", faultcode=exc.faultcode) from exc
            raise BusinessRejectionError(
                f"{operation} refused: {exc.faultstring}",
                observations=[Observation(exc.faultcode or "fault", exc.faultstring)],
            ) from exc
        result = find_child(response, f"{operation}Result")
        if result is None:
            raise BusinessRejectionError(f"{operation}: response carries no {operation}Result")
        return result

    def last_authorized(self, sales_point: int, document_type: int) -> int:
        """Last number the authority authorized for (sales point, type); 0 if none."""

        payload = self._payload("FECompUltimoAutorizado")
        sub(payload, "PtoVta", sales_point, ns=WSFE_NS)
        sub(payload, "CbteTipo", document_type, ns=WSFE_NS)
        result = self._call("FECompUltimoAutorizado", payload)

        errors = _observations(result, "Errors", "Err")
        if errors:
            raise BusinessRejectionError(
                f"last number lookup refused: {format_observations(errors)}", observations=errors
            )
        raw = find_text(result, "CbteNro")
        number = int(raw) if raw else 0
        logger.info(
            "wsfe_last_authorized",
            extra={"tenant": self.auth.tenant_id, "sales_point": sales_point, "type": document_type, "number": number},
        )
        return number

    def request_authorization(self, sales_point: int, request: AuthorizationRequest) -> AuthorizationResult:
        payload = self._payload("FECAESolicitar")
        fe_request = sub(payload, "FeCAEReq", ns=WSFE_NS)
        header = sub(fe_request, "FeCabReq", ns=WSFE_NS)
        sub(header, "CantReg", 1, ns=WSFE_NS)
        sub(header, "PtoVta", sales_point, ns=WSFE_NS)
        sub(header, "CbteTipo", request.document_type, ns=WSFE_NS)
        build_detail(sub(fe_request, "FeDetReq", ns=WSFE_NS), request)

        result = self._call("FECAESolicitar", payload)
        errors = _observations(result, "Errors", "Err")
        detail = find_child(result, "FeDetResp", "FECAEDetResponse")
        observations = _observations(detail, "Observaciones", "Obs")
        outcome = find_text(detail, "Resultado")

        if errors:
            combined = errors + observations
            raise classify_rejection(f"authority error: {format_observations(combined)}", combined, outcome)
        if detail is None:
            raise BusinessRejectionError("authorization response carries no detail")
        if outcome != RESULT_APPROVED:
            message = (
                format_observations(observations)
                if observations
                else f"document rejected by the authority (result {outcome})"
            )
            raise classify_rejection(message, observations, outcome)

        code = find_text(detail, "CAE")
        if not code:
            raise BusinessRejectionError("approved response carries no authorization code", result=outcome)

        header_resp = find_child(result, "FeCabResp")
        raw = {
            "FeCabResp": element_to_dict(header_resp) if header_resp is not None else {},
            "FeDetResp": element_to_dict(detail),
        }
        return AuthorizationResult(
            result=outcome,
            authorization_code=code,
            authorization_expiry=parse_date(find_text(detail, "CAEFchVto")),
            observations=tuple(observations),
            raw=raw,
        )

    def server_status(self) -> Dict[str, Optional[str]]:
        result = self._call("FEDummy", self._payload("FEDummy", authenticated=False))
        return {
            "app_server": find_text(result, "AppServer"),
            "db_server": find_text(result, "DbServer"),
            "auth_server": find_text(result, "AuthServer"),
        }

    def authority_sales_points(self) -> List[Dict[str, Any]]:
        """Sales points registered with the authority that are not blocked."""

        result = self._call("FEParamGetPtosVenta", self._payload("FEParamGetPtosVenta"))
        errors = _observations(result, "Errors", "Err")
        if errors:
            if all(e.code == ERR_NO_RESULTS for e in errors):
                return []
            raise BusinessRejectionError(
                f"sales point lookup refused: {format_observations(errors)}", observations=errors
            )
        points = []
        for node in find_all(find_child(result, "ResultGet"), "PtoVenta"):
            if find_text(node, "Bloqueado") != "N":
                continue
            points.append(
                {
                    "number": int(find_text(node, "Nro", default="0") or 0),
                    "emission_type": find_text(node, "EmisionTipo"),
                    "blocked": False,
                    "removal_date": find_text(node, "FchBaja"),
                }
            )
        return points
