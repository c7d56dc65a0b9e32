"""Taxpayer registry lookups used to pre-fill buyer data.

Best effort only: strategies are tried in order, failures are logged and
skipped, and a lookup that finds nothing returns ``None``. Emission never
waits on this module.
"""

from __future__ import annotations

import re
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Tuple
from xml.etree import ElementTree as ET

from backend.core.config import settings
from backend.core.observability.logging import get_logger
from backend.core.observability.metrics import increment_padron_lookup

from .constants import SERVICE_PADRON_A5, SERVICE_PADRON_A13, fiscal_condition_code
from .errors import ArcaError, DocumentValidationError, SoapFault
from .transport import SoapTransport, find_all, find_child, find_text, sub
from .wsaa import AuthSessionManager

logger = get_logger(__name__)

A13_NS = "http://a13.soap.ws.server.puc.sr/"
A5_NS = "http://a5.soap.ws.server.puc.sr/"

# Tax ids in the registry's impuesto list
TAX_MONOTRIBUTO = "20"
TAX_IVA = "30"
TAX_IVA_EXEMPT = "32"

CONDITION_REGISTERED = "responsable_inscripto"
CONDITION_SIMPLIFIED = "monotributista"
CONDITION_EXEMPT = "exento"
CONDITION_FINAL_CONSUMER = "consumidor_final"

_TAX_ID_RE = re.compile(r"^\d{11}$")


def normalize_tax_id(value: Any) -> str:
    normalized = re.sub(r"[-\s]", "", str(value or ""))
    if not _TAX_ID_RE.match(normalized):
        raise DocumentValidationError("tax id must have 11 digits", field="tax_id")
    return normalized


@dataclass(frozen=True, slots=True)
class TaxpayerInfo:
    tax_id: str
    legal_name: str
    person_type: str
    fiscal_condition: str
    fiscal_address: Optional[str] = None
    status: str = "ACTIVO"
    main_activity: Optional[Dict[str, Optional[str]]] = None
    source: str = ""

    @property
    def fiscal_condition_code(self) -> int:
        return fiscal_condition_code(self.fiscal_condition)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tax_id": self.tax_id,
            "legal_name": self.legal_name,
            "person_type": self.person_type,
            "fiscal_condition": self.fiscal_condition,
            "fiscal_condition_code": self.fiscal_condition_code,
            "fiscal_address": self.fiscal_address,
            "status": self.status,
            "main_activity": self.main_activity,
            "source": self.source,
        }


class LookupStrategy(Protocol):
    name: str

    def lookup(self, tax_id: str) -> Optional[TaxpayerInfo]:
        ...


def _legal_name(node: Optional[ET.Element]) -> str:
    name = find_text(node, "razonSocial")
    if name:
        return name
    surname = find_text(node, "apellido") or ""
    given = find_text(node, "nombre") or ""
    if surname and given:
        return f"{surname}, {given}"
    return surname or given or "Sin datos"


def _address(nodes: Sequence[ET.Element]) -> Optional[str]:
    if not nodes:
        return None
    chosen = nodes[0]
    for kind in ("LEGAL/REAL", "FISCAL"):
        match = next((n for n in nodes if find_text(n, "tipoDomicilio") == kind), None)
        if match is not None:
            chosen = match
    postal = find_text(chosen, "codigoPostal") or find_text(chosen, "codPostal")
    parts = [
        find_text(chosen, "direccion"),
        find_text(chosen, "descripcionProvincia"),
        f"CP {postal}" if postal else None,
    ]
    joined = ", ".join(p for p in parts if p)
    return joined or None


def _active_taxes(nodes: Sequence[ET.Element]) -> set:
    return {
        find_text(n, "idImpuesto")
        for n in nodes
        if (find_text(n, "estado") or "ACTIVO") == "ACTIVO"
    }


def infer_fiscal_condition(taxes: set, person_type: str, activity_id: Optional[str]) -> str:
    """Registry taxes first; person type plus activity when the list is empty."""

    if TAX_MONOTRIBUTO in taxes:
        return CONDITION_SIMPLIFIED
    if TAX_IVA in taxes:
        return CONDITION_REGISTERED
    if TAX_IVA_EXEMPT in taxes:
        return CONDITION_EXEMPT
    if person_type == "JURIDICA" and activity_id:
        return CONDITION_REGISTERED
    if person_type == "FISICA" and activity_id:
        return CONDITION_SIMPLIFIED
    return CONDITION_FINAL_CONSUMER


class _RegistryStrategy:
    namespace = ""
    operation = ""
    service = ""
    name = ""

    def __init__(
        self,
        auth: AuthSessionManager,
        *,
        transport: SoapTransport | None = None,
        url: str | None = None,
    ) -> None:
        self.auth = auth
        self._transport = transport or SoapTransport()
        self._url = url

    def _request(self, tax_id: str) -> Optional[ET.Element]:
        credential = self.auth.get_credentials(self.service)
        payload = ET.Element(f"{{{self.namespace}}}{self.operation}")
        sub(payload, "token", credential.token)
        sub(payload, "sign", credential.sign)
        sub(payload, "cuitRepresentada", self.auth.tax_id)
        sub(payload, "idPersona", tax_id)
        try:
            response = self._transport.call(self._url, "", payload, operation=self.operation)
        except SoapFault as exc:
            # The registry answers unknown ids with a fault
            if "no existe" in exc.faultstring.lower():
                return None
            raise
        return find_child(response, "personaReturn")


class PadronA13Strategy(_RegistryStrategy):
    namespace = A13_NS
    operation = "getPersona"
    service = SERVICE_PADRON_A13
    name = "padron_a13"

    def __init__(self, auth: AuthSessionManager, *, transport: SoapTransport | None = None, url: str | None = None):
        super().__init__(auth, transport=transport, url=url or settings.ARCA_PADRON_A13_URL)

    def lookup(self, tax_id: str) -> Optional[TaxpayerInfo]:
        persona = find_child(self._request(tax_id), "persona")
        if persona is None:
            return None
        person_type = find_text(persona, "tipoPersona") or "FISICA"
        activity_id = find_text(persona, "idActividadPrincipal")
        activity_description = find_text(persona, "descripcionActividadPrincipal")
        return TaxpayerInfo(
            tax_id=tax_id,
            legal_name=_legal_name(persona),
            person_type=person_type,
            fiscal_condition=infer_fiscal_condition(
                _active_taxes(find_all(persona, "impuesto")), person_type, activity_id
            ),
            fiscal_address=_address(find_all(persona, "domicilio")),
            status=find_text(persona, "estadoClave") or find_text(persona, "estadoCuit") or "ACTIVO",
            main_activity={"code": activity_id, "description": activity_description} if activity_description else None,
            source=self.name,
        )


class ConstanciaInscripcionStrategy(_RegistryStrategy):
    namespace = A5_NS
    operation = "getPersona_v2"
    service = SERVICE_PADRON_A5
    name = "constancia_inscripcion"

    def __init__(self, auth: AuthSessionManager, *, transport: SoapTransport | None = None, url: str | None = None):
        super().__init__(auth, transport=transport, url=url or settings.ARCA_PADRON_A5_URL)

    def lookup(self, tax_id: str) -> Optional[TaxpayerInfo]:
        persona = self._request(tax_id)
        general = find_child(persona, "datosGenerales")
        if general is None:
            return None

        simplified = find_child(persona, "datosMonotributo")
        full = find_child(persona, "datosRegimenGeneral")
        person_type = find_text(general, "tipoPersona") or "FISICA"
        activities = find_all(full, "actividad") or find_all(simplified, "actividadMonotributista")
        activity = activities[0] if activities else None

        if simplified is not None:
            condition = CONDITION_SIMPLIFIED
        else:
            condition = infer_fiscal_condition(_active_taxes(find_all(full, "impuesto")), person_type, None)

        return TaxpayerInfo(
            tax_id=tax_id,
            legal_name=_legal_name(general),
            person_type=person_type,
            fiscal_condition=condition,
            fiscal_address=_address(find_all(general, "domicilioFiscal")),
            status=find_text(general, "estadoClave") or "ACTIVO",
            main_activity=(
                {
                    "code": find_text(activity, "idActividad"),
                    "description": find_text(activity, "descripcionActividad"),
                }
                if activity is not None
                else None
            ),
            source=self.name,
        )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TaxpayerCache:
    """Lock-protected TTL cache keyed by tax id, shareable across registries."""

    def __init__(self, ttl_s: int | None = None, *, clock: Callable[[], datetime] | None = None) -> None:
        self.ttl = timedelta(seconds=settings.ARCA_PADRON_CACHE_TTL_S if ttl_s is None else ttl_s)
        self._clock = clock or _utcnow
        self._lock = threading.Lock()
        self._entries: Dict[str, Tuple[TaxpayerInfo, datetime]] = {}

    def get(self, tax_id: str) -> Optional[TaxpayerInfo]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(tax_id)
            if entry is None:
                return None
            if now >= entry[1]:
                del self._entries[tax_id]
                return None
            return entry[0]

    def put(self, info: TaxpayerInfo) -> None:
        with self._lock:
            self._entries[info.tax_id] = (info, self._clock() + self.ttl)

    def clear(self, tax_id: Optional[str] = None) -> None:
        with self._lock:
            if tax_id is None:
                self._entries.clear()
            else:
                self._entries.pop(tax_id, None)


class TaxpayerRegistry:
    def __init__(
        self,
        strategies: Sequence[LookupStrategy],
        ttl_s: int | None = None,
        clock: Callable[[], datetime] | None = None,
        *,
        cache: TaxpayerCache | None = None,
    ) -> None:
        self.strategies = list(strategies)
        self.cache = cache or TaxpayerCache(ttl_s, clock=clock)

    def lookup(self, tax_id: Any) -> Optional[TaxpayerInfo]:
        normalized = normalize_tax_id(tax_id)
        cached = self.cache.get(normalized)
        if cached is not None:
            increment_padron_lookup("cache_hit")
            return cached

        for strategy in self.strategies:
            try:
                info = strategy.lookup(normalized)
            except ArcaError as exc:
                increment_padron_lookup("error")
                logger.warning(
                    "padron_strategy_failed",
                    extra={"strategy": strategy.name, "error": exc.code, "detail": exc.message},
                )
                continue
            if info is None:
                continue
            self.cache.put(info)
            increment_padron_lookup("found")
            return info

        increment_padron_lookup("not_found")
        return None

    def clear(self, tax_id: Any = None) -> None:
        self.cache.clear(None if tax_id is None else re.sub(r"[-\s]", "", str(tax_id)))


def strategies_for(auth: AuthSessionManager, transport: SoapTransport | None = None) -> List[LookupStrategy]:
    return [PadronA13Strategy(auth, transport=transport), ConstanciaInscripcionStrategy(auth, transport=transport)]
