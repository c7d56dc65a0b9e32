"""SOAP 1.1 over httpx for the authority's web services."""

from __future__ import annotations

import time
from typing import Iterable, List, Optional
from xml.etree import ElementTree as ET

import httpx

from backend.core.config import settings
from backend.core.observability.logging import get_logger
from backend.core.observability.metrics import record_remote_call

from .errors import RemoteTimeoutError, SoapFault, TransportError

logger = get_logger(__name__)

SOAP_ENV_NS = "http://schemas.xmlsoap.org/soap/envelope/"
ET.register_namespace("soapenv", SOAP_ENV_NS)


def local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def find_child(element: Optional[ET.Element], *path: str) -> Optional[ET.Element]:
    """Walk direct children by local name, ignoring namespaces."""
    current = element
    for name in path:
        if current is None:
            return None
        current = next((c for c in current if local_name(c.tag) == name), None)
    return current


def find_text(element: Optional[ET.Element], *path: str, default: Optional[str] = None) -> Optional[str]:
    node = find_child(element, *path)
    if node is None or node.text is None:
        return default
    return node.text.strip()


def find_all(element: Optional[ET.Element], name: str) -> List[ET.Element]:
    if element is None:
        return []
    return [c for c in element if local_name(c.tag) == name]


def sub(parent: ET.Element, name: str, value: object = None, *, ns: Optional[str] = None) -> ET.Element:
    tag = f"{{{ns}}}{name}" if ns else name
    node = ET.SubElement(parent, tag)
    if value is not None:
        node.text = str(value)
    return node


def build_timeout() -> httpx.Timeout:
    return httpx.Timeout(
        settings.ARCA_TIMEOUT_READ_MS / 1000.0,
        connect=settings.ARCA_TIMEOUT_CONNECT_MS / 1000.0,
    )


class SoapTransport:
    """Posts SOAP envelopes and returns the first element inside ``Body``."""

    def __init__(self, *, client: httpx.Client | None = None, timeout: httpx.Timeout | None = None) -> None:
        self.timeout = timeout or build_timeout()
        self.client = client or httpx.Client(timeout=self.timeout, verify=True, follow_redirects=False)

    def close(self) -> None:
        self.client.close()

    def call(self, url: str, action: str, payload: ET.Element, *, operation: str) -> ET.Element:
        envelope = ET.Element(f"{{{SOAP_ENV_NS}}}Envelope")
        ET.SubElement(envelope, f"{{{SOAP_ENV_NS}}}Header")
        body = ET.SubElement(envelope, f"{{{SOAP_ENV_NS}}}Body")
        body.append(payload)
        data = ET.tostring(envelope, encoding="utf-8", xml_declaration=True)
        headers = {
            "Content-Type": "text/xml; charset=utf-8",
            "SOAPAction": f'"{action}"',
        }

        start = time.time()
        try:
            resp = self.client.post(url, content=data, headers=headers, timeout=self.timeout)
        except httpx.TimeoutException as exc:
            logger.warning("soap_timeout", extra={"operation": operation})
            raise RemoteTimeoutError(f"{operation}: authority did not answer in time") from exc
        except httpx.HTTPError as exc:
            logger.warning("soap_transport_error", extra={"operation": operation, "error": type(exc).__name__})
            raise TransportError(f"{operation}: {exc}") from exc
        finally:
            record_remote_call(operation, (time.time() - start) * 1000)

        return self._parse(resp, operation)

    def _parse(self, resp: httpx.Response, operation: str) -> ET.Element:
        try:
            root = ET.fromstring(resp.content)
        except ET.ParseError as exc:
            raise TransportError(
                f"{operation}: http_{resp.status_code} with non-XML body", status_code=resp.status_code
            ) from exc

        body = find_child(root, "Body")
        if body is None:
            raise TransportError(f"{operation}: response has no SOAP body", status_code=resp.status_code)

        fault = find_child(body, "Fault")
        if fault is not None:
            raise SoapFault(
                find_text(fault, "faultcode", default="") or "",
                find_text(fault, "faultstring", default="unknown fault") or "unknown fault",
            )
        if resp.status_code >= 400:
            raise TransportError(f"{operation}: http_{resp.status_code}", status_code=resp.status_code)

        children: Iterable[ET.Element] = list(body)
        for child in children:
            return child
        raise TransportError(f"{operation}: empty SOAP body", status_code=resp.status_code)
