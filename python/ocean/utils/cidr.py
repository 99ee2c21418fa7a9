"""
ocean/utils/cidr.py

Address helpers: /24 subnet allocation inside a VPC and IP ranges for
bare-metal discovery.
"""

import ipaddress
from typing import Iterable, List


def generate_subnet(vpc_cidr: str, existing_cidrs: Iterable[str], prefix: int = 24) -> str:
    """
    Return the first /`prefix` block of `vpc_cidr` that overlaps none of
    `existing_cidrs`.

    The search is deterministic (lowest block first), so repeated runs seeded
    with the same known CIDRs request the same block.

    Raises:
        ValueError: If the VPC is smaller than the subnet size, or every block
            is taken.
    """
    vpc = ipaddress.ip_network(vpc_cidr, strict=False)
    if vpc.prefixlen > prefix:
        raise ValueError(f"vpc cidr {vpc_cidr} is smaller than a /{prefix} subnet")

    taken = [ipaddress.ip_network(cidr, strict=False) for cidr in existing_cidrs if cidr]
    for candidate in vpc.subnets(new_prefix=prefix):
        if not any(candidate.overlaps(other) for other in taken):
            return str(candidate)
    raise ValueError(f"no free /{prefix} subnet left in {vpc_cidr}")


def range_ips(start_ip: str, end_ip: str) -> List[str]:
    """
    All IPv4 addresses from `start_ip` to `end_ip`, inclusive.

    Returns an empty list when either bound is empty or start > end.
    """
    if not start_ip or not end_ip:
        return []
    start = int(ipaddress.IPv4Address(start_ip))
    end = int(ipaddress.IPv4Address(end_ip))
    return [str(ipaddress.IPv4Address(value)) for value in range(start, end + 1)]
