"""
Address space expansion.

Turns a range expression or a datacenter's registered subnets into a lazy,
restartable sequence of IPv4 addresses. Iterating an AddressSpace twice yields
the same addresses in the same order; duplicates across ranges and scopes are
dropped on first sight.
"""

import ipaddress
import logging
from typing import Iterator, List, Optional, Tuple

from idrac_discovery.config import MAX_ADDRESSES_PER_RUN
from idrac_discovery.errors import InvalidAddressSpaceError
from idrac_discovery.models import AddressRange, AddressSpaceSpec, IpScope

logger = logging.getLogger(__name__)

# (first, last) inclusive, as 32-bit integers
_Block = Tuple[int, int]


def _parse_ipv4(value: str) -> ipaddress.IPv4Address:
    value = (value or "").strip()
    try:
        address = ipaddress.ip_address(value)
    except ValueError:
        raise InvalidAddressSpaceError(f"Invalid IPv4 address: {value!r}")
    if address.version != 4:
        raise InvalidAddressSpaceError(f"Only IPv4 is supported: {value!r}")
    return address


def parse_range_expression(expression: str) -> AddressRange:
    """
    Parse a range expression into an AddressRange.

    Accepted forms:
        10.0.0.5              single address
        10.0.0.1-50           short form, last octet only
        10.0.0.1-10.0.0.50    full form

    Both ends must share the first three octets; expand() enforces it.
    """
    expression = (expression or "").strip()
    if not expression:
        raise InvalidAddressSpaceError("Empty IP range expression")

    if '-' not in expression:
        _parse_ipv4(expression)
        return AddressRange(start=expression, end=expression)

    start_text, end_text = [part.strip() for part in expression.split('-', 1)]
    _parse_ipv4(start_text)

    if '.' not in end_text:
        # Short form: "10.0.0.1-50"
        if not end_text.isdigit() or not 0 <= int(end_text) <= 255:
            raise InvalidAddressSpaceError(f"Invalid last octet in range: {expression!r}")
        end_text = f"{start_text.rsplit('.', 1)[0]}.{int(end_text)}"
    else:
        _parse_ipv4(end_text)

    return AddressRange(start=start_text, end=end_text)


def _range_block(address_range: AddressRange) -> _Block:
    start = int(_parse_ipv4(address_range.start))
    end = int(_parse_ipv4(address_range.end))
    if start > end:
        raise InvalidAddressSpaceError(
            f"Range start {address_range.start} is after range end {address_range.end}"
        )
    if start >> 8 != end >> 8:
        raise InvalidAddressSpaceError(
            f"Range {address_range.start}-{address_range.end} crosses a /24; only the last octet may differ"
        )
    return start, end


def _scope_block(scope: IpScope) -> _Block:
    """Usable host addresses of a subnet; a /24 yields .1 through .254."""
    try:
        network = ipaddress.ip_network(scope.subnet.strip(), strict=False)
    except ValueError:
        raise InvalidAddressSpaceError(f"Invalid subnet: {scope.subnet!r}")
    if network.version != 4:
        raise InvalidAddressSpaceError(f"Only IPv4 subnets are supported: {scope.subnet!r}")

    first = int(network.network_address)
    last = int(network.broadcast_address)
    if network.prefixlen < 31:
        # Skip network and broadcast addresses
        first += 1
        last -= 1
    return first, last


class AddressSpace:
    """
    Lazy, restartable, finite iterable of IPv4 address strings.

    Only the block boundaries are held; de-duplication state is a set of
    32-bit integers built per iteration.
    """

    def __init__(self, blocks: List[_Block]):
        self._blocks = list(blocks)
        self._length: Optional[int] = None

    def __iter__(self) -> Iterator[str]:
        seen = set()
        for first, last in self._blocks:
            for value in range(first, last + 1):
                if value in seen:
                    continue
                seen.add(value)
                yield str(ipaddress.IPv4Address(value))

    def __len__(self) -> int:
        if self._length is None:
            self._length = _union_size(self._blocks)
        return self._length

    def __bool__(self) -> bool:
        return len(self) > 0

    def __repr__(self) -> str:
        return f"AddressSpace(blocks={len(self._blocks)}, addresses={len(self)})"


def _union_size(blocks: List[_Block]) -> int:
    total = 0
    current_first = current_last = None
    for first, last in sorted(blocks):
        if current_last is None or first > current_last + 1:
            if current_last is not None:
                total += current_last - current_first + 1
            current_first, current_last = first, last
        else:
            current_last = max(current_last, last)
    if current_last is not None:
        total += current_last - current_first + 1
    return total


def expand(spec: AddressSpaceSpec, max_addresses: int = MAX_ADDRESSES_PER_RUN) -> AddressSpace:
    """
    Expand an AddressSpaceSpec into an AddressSpace.

    Raises:
        InvalidAddressSpaceError: malformed range/subnet, start after end,
            an empty spec, or more than max_addresses distinct addresses.
    """
    if not spec.ranges and not spec.scopes:
        raise InvalidAddressSpaceError("Address space has no ranges or scopes")

    blocks: List[_Block] = [_range_block(r) for r in spec.ranges]
    blocks.extend(_scope_block(s) for s in spec.scopes)

    space = AddressSpace(blocks)
    if len(space) > max_addresses:
        raise InvalidAddressSpaceError(
            f"Address space has {len(space)} addresses, limit is {max_addresses}"
        )
    logger.debug(f"Expanded address space: {space!r}")
    return space


def spec_from_expression(expression: str) -> AddressSpaceSpec:
    """Build a spec from a range expression, e.g. '10.0.0.1-10.0.0.3'."""
    return AddressSpaceSpec(ranges=[parse_range_expression(expression)])


def spec_from_list(addresses: List[str]) -> AddressSpaceSpec:
    """Build a spec from an explicit list of addresses or range expressions."""
    return AddressSpaceSpec(ranges=[parse_range_expression(a) for a in addresses if a and a.strip()])
