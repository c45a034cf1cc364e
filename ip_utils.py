import ipaddress
import logging
from typing import List

from param import MAX_RANGE_SIZE


class InvalidAddressError(ValueError):
    """Raised for strings that are not a dotted-quad IPv4 address."""


class MalformedRangeError(ValueError):
    """Raised when a dash token does not split into exactly two addresses."""


class RangeTooLargeError(MalformedRangeError):
    pass


def to_long(ip: str) -> int:
    """Fold a dotted-quad IPv4 address into an unsigned 32-bit integer."""
    octets = (ip or "").strip().split(".")
    if len(octets) != 4:
        raise InvalidAddressError(f"Invalid IPv4 address: {ip!r}")
    value = 0
    for octet in octets:
        if not (octet.isascii() and octet.isdigit()):
            raise InvalidAddressError(f"Invalid IPv4 address: {ip!r}")
        number = int(octet)
        if number > 255:
            raise InvalidAddressError(f"Invalid IPv4 address: {ip!r}")
        value = (value << 8) + number
    return value


def from_long(value: int) -> str:
    if value < 0 or value > 0xFFFFFFFF:
        raise InvalidAddressError(f"Value out of IPv4 range: {value}")
    return ".".join(str((value >> shift) & 0xFF) for shift in (24, 16, 8, 0))


def generate_range(start_ip: str, end_ip: str, max_size: int = MAX_RANGE_SIZE) -> List[str]:
    """Return every address between two endpoints inclusive, in ascending order.

    The endpoints may be given in either order.
    """
    start = to_long(start_ip)
    end = to_long(end_ip)
    if start > end:
        start, end = end, start
    size = end - start + 1
    if max_size and size > max_size:
        raise RangeTooLargeError(
            f"Range {start_ip}-{end_ip} spans {size} addresses (limit {max_size})"
        )
    return [from_long(value) for value in range(start, end + 1)]


def expand_address_spec(spec: str, max_size: int = MAX_RANGE_SIZE) -> List[str]:
    """Expand a single address, a dash range, a comma list or a mixture.

    ``"1.1.1.1,10.0.0.1-10.0.0.3"`` expands to
    ``["1.1.1.1", "10.0.0.1", "10.0.0.2", "10.0.0.3"]``.  Plain tokens are
    passed through untouched; only range endpoints are validated here.
    """
    addresses: List[str] = []
    for token in (spec or "").split(","):
        token = token.strip()
        if not token:
            continue
        if "-" in token:
            parts = token.split("-")
            if len(parts) != 2:
                raise MalformedRangeError(
                    f"IP address format incorrect ({token!r}). Should be x.x.x.x-y.y.y.y"
                )
            addresses.extend(generate_range(parts[0].strip(), parts[1].strip(), max_size))
        else:
            addresses.append(token)
    logging.debug("Expanded %r into %d addresses", spec, len(addresses))
    return addresses


def validate_address(address):
    """Validate a CLI supplied IPv4 or IPv6 literal."""
    try:
        ipaddress.ip_address(address)
        return True, None
    except ValueError:
        return False, f"Invalid address: {address}"
