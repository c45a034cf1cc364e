"""WS-Discovery probe for ONVIF devices on the local network.

A single Probe is multicast and every ProbeMatch received during the
listening window is parsed into a :class:`DiscoveryResult`.  Responses that
cannot be parsed are dropped; a noisy network must not abort the scan.
"""

import asyncio
import logging
import socket
import uuid
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple
from urllib.parse import unquote

from ip_utils import InvalidAddressError, to_long
from param import (
    PROBE_WINDOW_SECONDS,
    SCOPE_HARDWARE_PREFIX,
    SCOPE_NAME_PREFIX,
    WS_DISCOVERY_IPV4_GROUP,
    WS_DISCOVERY_IPV6_GROUP,
    WS_DISCOVERY_PORT,
)

IPV4 = "IPv4"
IPV6 = "IPv6"

PROBE_TEMPLATE = (
    '<?xml version="1.0" encoding="utf-8"?>'
    '<soap:Envelope xmlns:soap="http://www.w3.org/2003/05/soap-envelope"'
    ' xmlns:wsa="http://schemas.xmlsoap.org/ws/2004/08/addressing"'
    ' xmlns:wsd="http://schemas.xmlsoap.org/ws/2005/04/discovery"'
    ' xmlns:dn="http://www.onvif.org/ver10/network/wsdl">'
    "<soap:Header>"
    "<wsa:Action>http://schemas.xmlsoap.org/ws/2005/04/discovery/Probe</wsa:Action>"
    "<wsa:MessageID>uuid:{message_id}</wsa:MessageID>"
    "<wsa:To>urn:schemas-xmlsoap-org:ws:2005:04:discovery</wsa:To>"
    "</soap:Header>"
    "<soap:Body>"
    "<wsd:Probe>"
    "<wsd:Types>dn:NetworkVideoTransmitter</wsd:Types>"
    "</wsd:Probe>"
    "</soap:Body>"
    "</soap:Envelope>"
)


@dataclass(frozen=True)
class DiscoveryResult:
    address: str
    family: str
    name: str
    hardware: str
    xaddrs: str
    urn: str
    scopes: Tuple[str, ...] = ()


def build_probe(message_id: Optional[str] = None) -> bytes:
    return PROBE_TEMPLATE.format(message_id=message_id or uuid.uuid4()).encode("utf-8")


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1].split(":")[-1]


def _find(element, *path):
    for name in path:
        if element is None:
            return None
        element = next((child for child in element if _local_name(child.tag) == name), None)
    return element


def parse_scopes(scopes):
    """Return ``(name, hardware)`` decoded from a list of scope URNs."""
    name = ""
    hardware = ""
    for scope in scopes:
        if scope.startswith(SCOPE_NAME_PREFIX):
            name = unquote(scope[len(SCOPE_NAME_PREFIX):])
        elif scope.startswith(SCOPE_HARDWARE_PREFIX):
            hardware = unquote(scope[len(SCOPE_HARDWARE_PREFIX):])
    return name, hardware


def parse_probe_match(payload, address: str, family: str = IPV4) -> Optional[DiscoveryResult]:
    """Parse one ProbeMatch response, or return ``None`` if it is unusable."""
    try:
        root = ET.fromstring(payload)
    except ET.ParseError:
        logging.debug("Dropping unparsable discovery response from %s", address)
        return None

    body = next((el for el in root.iter() if _local_name(el.tag) == "ProbeMatch"), None)
    urn = _find(body, "EndpointReference", "Address")
    xaddrs = _find(body, "XAddrs")
    scopes = _find(body, "Scopes")
    if urn is None or xaddrs is None or scopes is None:
        logging.debug("Dropping partial discovery response from %s", address)
        return None

    # Some vendors pad these fields with trailing whitespace
    scope_list = tuple((scopes.text or "").split())
    name, hardware = parse_scopes(scope_list)
    return DiscoveryResult(
        address=address,
        family=family,
        name=name,
        hardware=hardware,
        xaddrs=(xaddrs.text or "").strip(),
        urn=(urn.text or "").strip(),
        scopes=scope_list,
    )


def sort_key(result: DiscoveryResult):
    if result.family == IPV4:
        try:
            return (0, to_long(result.address))
        except InvalidAddressError:
            return (0, -1)
    return (1, result.address)


def sort_results(results) -> List[DiscoveryResult]:
    """IPv4 before IPv6; IPv4 numerically, IPv6 by string."""
    return sorted(results, key=sort_key)


def format_result(result: DiscoveryResult) -> str:
    return (
        f"{result.address} ({result.name}) ({result.hardware}) "
        f"({result.xaddrs}) ({result.urn})"
    )


class ProbeListener(asyncio.DatagramProtocol):
    def __init__(self, family: str, results: list, on_result: Optional[Callable] = None):
        self.family = family
        self.results = results
        self.on_result = on_result

    def datagram_received(self, data, addr):
        try:
            result = parse_probe_match(data, addr[0], self.family)
        except Exception:
            logging.debug("Discovery response from %s raised", addr[0], exc_info=True)
            return
        if result is None:
            return
        self.results.append(result)
        if self.on_result is not None:
            self.on_result(result)

    def error_received(self, exc):
        logging.debug("Discovery socket error: %s", exc)


async def _open_probe(loop, family, group, results, on_result, message):
    sock_family = socket.AF_INET if family == IPV4 else socket.AF_INET6
    local = ("0.0.0.0", 0) if family == IPV4 else ("::", 0)
    transport, _ = await loop.create_datagram_endpoint(
        lambda: ProbeListener(family, results, on_result),
        local_addr=local,
        family=sock_family,
    )
    transport.sendto(message, (group, WS_DISCOVERY_PORT))
    return transport


async def probe(
    duration: float = PROBE_WINDOW_SECONDS,
    on_result: Optional[Callable[[DiscoveryResult], None]] = None,
    include_ipv6: bool = True,
) -> List[DiscoveryResult]:
    """Multicast a Probe, listen for ``duration`` seconds and return sorted matches."""
    loop = asyncio.get_running_loop()
    results: List[DiscoveryResult] = []
    message = build_probe()
    transports = []

    targets = [(IPV4, WS_DISCOVERY_IPV4_GROUP)]
    if include_ipv6:
        targets.append((IPV6, WS_DISCOVERY_IPV6_GROUP))

    for family, group in targets:
        try:
            transports.append(
                await _open_probe(loop, family, group, results, on_result, message)
            )
        except OSError as err:
            if family == IPV4:
                raise
            logging.debug("IPv6 discovery unavailable: %s", err)

    try:
        await asyncio.sleep(duration)
    finally:
        for transport in transports:
            transport.close()

    logging.info("Discovery window closed with %d responses", len(results))
    return sort_results(results)
