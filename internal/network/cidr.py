"""Free address allocation inside a subnet CIDR block."""

import ipaddress
import random


class Cidr:
    """An address range whose host addresses are enumerated by index."""

    def __init__(self, block: str):
        self.network = ipaddress.ip_network(block, strict=False)

    @property
    def size(self) -> int:
        return self.network.num_addresses

    def address(self, index: int) -> str:
        if not 0 <= index < self.size:
            raise IndexError(f"Index {index} outside {self.network} (size {self.size})")
        return str(self.network[index])

    def reserved(self) -> set[str]:
        """Addresses a VPC subnet never assigns: network, the next three, and broadcast."""
        indices = {0, 1, 2, 3, self.size - 1}
        return {self.address(i) for i in indices if i < self.size}

    def __contains__(self, address: str) -> bool:
        return ipaddress.ip_address(address) in self.network

    def __repr__(self) -> str:
        return f"Cidr({self.network})"


_rng = random.Random()


def find_unused_addresses(cidr: Cidr, used, count: int, rng=None) -> list[str]:
    """Pick random addresses of ``cidr`` that are not in ``used``.

    Returns up to ``count + 1`` addresses, one more than asked for so the
    caller can drop a reserved one.  Sampling stops after ``cidr.size``
    draws, so a crowded range may yield fewer; callers check the length.
    """
    rng = rng or _rng
    used = set(used)
    picked = []
    seen = set()
    for _ in range(cidr.size):
        address = cidr.address(rng.randrange(cidr.size))
        if address in used or address in seen:
            continue
        picked.append(address)
        seen.add(address)
        if len(picked) > count:
            break
    return picked
