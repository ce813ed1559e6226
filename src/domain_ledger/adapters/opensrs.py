"""
OpenSRS registry adapter — XCP over HTTPS via httpx, XML via lxml.

Adapter layer — implements the RegistryClient port.

Wire protocol (XCP 0.9):
  - request body: an OPS_envelope whose data_block holds a dt_assoc with
    protocol / object / action / attributes items
  - headers: X-Username and X-Signature = md5(md5(xml + key) + key), hex
  - response body: the same envelope; is_success / response_code /
    response_text / attributes at the top level of the data_block

GET_DOMAINS_BY_EXPIREDATE is paged (page 0, 1, …) until the registry
reports `remainder == 0`; the whole batch is collected before it is
returned, so reconciliation never starts on a partial fetch.

Retry/backoff via tenacity on transient errors (network, timeout).
All transport failures are captured into RegistryUnavailable failures,
answers with is_success=0 into RegistryRejected failures — no exceptions
leak to the engine.
"""

from __future__ import annotations

import hashlib
from collections.abc import Callable
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

import httpx
import structlog
from dateutil import parser as date_parser
from lxml import etree
from railway.result import Result
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from domain_ledger.domain.errors import LedgerError, RegistryRejected, RegistryUnavailable
from domain_ledger.domain.models import RegistryFact
from domain_ledger.domain.ports import RegistryReceipt, RegistryRequest

log = structlog.get_logger()

_DOCTYPE = "<!DOCTYPE OPS_envelope SYSTEM 'ops.dtd'>"
_PROTOCOL_VERSION = "0.9"

type XcpValue = str | int | dict[str, XcpValue] | list[XcpValue]


class RegistryEnvironment(StrEnum):
    TEST = "test"
    PRODUCTION = "production"

    @property
    def endpoint(self) -> str:
        if self is RegistryEnvironment.PRODUCTION:
            return "https://rr-n1-tor.opensrs.net:55443"
        return "https://horizon.opensrs.net:55443"


# ─────────────────────── XCP codec ───────────────────────


def sign(xml: bytes, key: str) -> str:
    """OpenSRS request signature: md5(md5(xml + key) + key), lowercase hex."""
    first = hashlib.md5(xml + key.encode("utf-8")).hexdigest()
    return hashlib.md5((first + key).encode("utf-8")).hexdigest()


def _encode_value(parent: etree._Element, value: XcpValue) -> None:
    if isinstance(value, dict):
        assoc = etree.SubElement(parent, "dt_assoc")
        for key, item in value.items():
            node = etree.SubElement(assoc, "item", key=key)
            _encode_value(node, item)
    elif isinstance(value, list):
        array = etree.SubElement(parent, "dt_array")
        for index, item in enumerate(value):
            node = etree.SubElement(array, "item", key=str(index))
            _encode_value(node, item)
    else:
        parent.text = str(value)


def encode_envelope(action: str, attributes: dict[str, XcpValue], object_: str = "DOMAIN") -> bytes:
    """Serialize one XCP request to the exact bytes that get signed and sent."""
    envelope = etree.Element("OPS_envelope")
    header = etree.SubElement(envelope, "header")
    etree.SubElement(header, "version").text = _PROTOCOL_VERSION
    data_block = etree.SubElement(etree.SubElement(envelope, "body"), "data_block")
    _encode_value(
        data_block,
        {"protocol": "XCP", "object": object_, "action": action, "attributes": attributes},
    )
    return etree.tostring(
        envelope, xml_declaration=True, encoding="UTF-8", doctype=_DOCTYPE, standalone=False
    )


def _decode_value(node: etree._Element) -> XcpValue:
    for child in node:
        if child.tag == "dt_assoc":
            return {item.get("key"): _decode_value(item) for item in child.iterchildren("item")}
        if child.tag == "dt_array":
            return [_decode_value(item) for item in child.iterchildren("item")]
    return (node.text or "").strip()


def decode_envelope(body: bytes) -> dict[str, Any]:
    """Parse an XCP response envelope into nested dicts / lists / strings."""
    parser = etree.XMLParser(resolve_entities=False, no_network=True, load_dtd=False)
    root = etree.fromstring(body, parser=parser)
    data_block = root.find("body/data_block")
    if data_block is None:
        raise ValueError("XCP response has no data_block")
    decoded = _decode_value(data_block)
    if not isinstance(decoded, dict):
        raise ValueError("XCP data_block is not an association")
    return decoded


def _is_success(response: dict[str, Any]) -> bool:
    return str(response.get("is_success", "0")).strip().lower() in ("1", "true")


def _parse_expiry(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = date_parser.parse(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _flag(value: str | None) -> bool | None:
    if value is None or value == "":
        return None
    return value.strip().upper() in ("Y", "1", "TRUE")


def fact_from_expiring(entry: dict[str, Any], observed_at: datetime) -> RegistryFact:
    """One exp_domains entry of GET_DOMAINS_BY_EXPIREDATE → RegistryFact."""
    return RegistryFact(
        name=str(entry["name"]).strip().lower(),
        observed_at=observed_at,
        expires_at=_parse_expiry(entry.get("expiredate")),
        auto_renew=_flag(entry.get("f_auto_renew")),
    )


# ─────────────────────── Client ───────────────────────


class RegistryTransportError(Exception):
    """Non-retryable HTTP failure talking to the registry."""


class OpenSrsRegistryClient:
    """
    OpenSRS XCP client.

    Implements the RegistryClient port. Uses tenacity retry on transient
    network errors only; each page is one signed POST.
    """

    def __init__(
        self,
        username: str,
        credential: str,
        environment: RegistryEnvironment = RegistryEnvironment.TEST,
        page_size: int = 40,
        timeout: int = 60,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._username = username
        self._credential = credential
        self._endpoint = environment.endpoint
        self._page_size = page_size
        self._timeout = timeout
        self._clock = clock

    def fetch_facts(self, exp_from: datetime, exp_to: datetime) -> Result[list[RegistryFact]]:
        """
        Fetch every domain expiring in [exp_from, exp_to], all pages.

        Returns Result[list[RegistryFact]] on success, or a
        RegistryUnavailable / RegistryRejected failure if any page fails.
        """
        return self._guarded(
            "GET_DOMAINS_BY_EXPIREDATE", lambda: self._fetch_all(exp_from, exp_to)
        )

    def submit(self, request: RegistryRequest) -> Result[RegistryReceipt]:
        """Send one registry action (SW_REGISTER, RENEW, …) for `request.domain`."""
        return self._guarded(request.action, lambda: self._submit(request))

    def _guarded[T](self, action: str, call: Callable[[], T]) -> Result[T]:
        try:
            return Result.success(call())
        except LedgerError as e:
            log.error("registry.request_failed", action=action, error=e.describe())
            return Result.failure(e.code, e.describe(), e)

    def _fetch_all(self, exp_from: datetime, exp_to: datetime) -> list[RegistryFact]:
        facts: list[RegistryFact] = []
        page = 0
        while True:
            response = self._call(
                "GET_DOMAINS_BY_EXPIREDATE",
                {
                    "exp_from": exp_from.strftime("%Y-%m-%d"),
                    "exp_to": exp_to.strftime("%Y-%m-%d"),
                    "limit": self._page_size,
                    "page": page,
                },
            )
            attributes = response.get("attributes") or {}
            observed_at = self._clock()
            facts.extend(
                fact_from_expiring(entry, observed_at) for entry in attributes.get("exp_domains") or []
            )
            remainder = int(attributes.get("remainder") or 0)
            log.debug("registry.page_fetched", page=page, facts=len(facts), remainder=remainder)
            if remainder == 0:
                break
            page += 1
        log.info("registry.facts_fetched", facts=len(facts), pages=page + 1)
        return facts

    def _submit(self, request: RegistryRequest) -> RegistryReceipt:
        response = self._call(request.action, {"domain": request.domain, **request.attributes})
        attributes = response.get("attributes") or {}
        expiry = attributes.get("registration expiration date") or attributes.get("expiredate")
        registry_id = attributes.get("id")
        return RegistryReceipt(
            action=request.action,
            domain=request.domain,
            registry_id=str(registry_id) if registry_id else None,
            expires_at=_parse_expiry(expiry),
            response_text=str(response.get("response_text", "")),
        )

    def _call(self, action: str, attributes: dict[str, XcpValue]) -> dict[str, Any]:
        body = encode_envelope(action, attributes)
        try:
            raw = self._post(body)
        except (httpx.HTTPError, RegistryTransportError) as e:
            raise RegistryUnavailable(f"{action} failed: {e}") from e
        try:
            response = decode_envelope(raw)
        except (etree.XMLSyntaxError, ValueError) as e:
            raise RegistryUnavailable(f"{action} returned an unreadable response: {e}") from e
        if not _is_success(response):
            raise RegistryRejected(
                f"{action} refused with code {response.get('response_code', '?')}: "
                f"{response.get('response_text', '')}"
            )
        return response

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=0.1, max=30),
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.NetworkError)),
        reraise=True,
    )
    def _post(self, body: bytes) -> bytes:
        """HTTP call with retry — exceptions mapped by _call."""
        with httpx.Client(timeout=self._timeout) as client:
            response = client.post(
                self._endpoint,
                content=body,
                headers={
                    "Content-Type": "text/xml",
                    "X-Username": self._username,
                    "X-Signature": sign(body, self._credential),
                },
            )
            if response.status_code >= 400:
                raise RegistryTransportError(f"HTTP {response.status_code}")
            return response.content
