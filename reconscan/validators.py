"""
Scan preflight: the one systemic check made before any probe is dispatched.

A target whose hostname does not resolve, or resolves only to internal
addresses, fails the whole scan instead of producing one network error per
probe.
"""
import ipaddress
import logging
from typing import List, Optional
from urllib.parse import urlparse

import dns.asyncresolver
import dns.exception
import dns.resolver

from .errors import SystemicFailure
from .security import is_public_ip

logger = logging.getLogger(__name__)

RECORD_TYPES = ("A", "AAAA")


async def resolve_addresses(hostname: str, resolver: Optional[dns.asyncresolver.Resolver] = None,
                            lifetime: float = 5.0) -> List[str]:
    """Resolve A and AAAA records; raises SystemicFailure when neither exists."""
    if resolver is None:
        resolver = dns.asyncresolver.Resolver()
        resolver.timeout = lifetime
        resolver.lifetime = lifetime

    addresses: List[str] = []
    for record_type in RECORD_TYPES:
        try:
            answer = await resolver.resolve(hostname, record_type)
        except dns.resolver.NXDOMAIN:
            raise SystemicFailure(f"Domain {hostname} does not exist")
        except dns.resolver.NoAnswer:
            continue
        except dns.exception.Timeout:
            raise SystemicFailure(f"DNS query for {hostname} timed out")
        except dns.exception.DNSException as e:
            raise SystemicFailure(f"DNS resolution of {hostname} failed: {type(e).__name__}")
        addresses.extend(rdata.to_text() for rdata in answer)

    if not addresses:
        raise SystemicFailure(f"No A/AAAA records found for {hostname}")
    return addresses


async def check_target_reachable(target: str, allow_private: bool = False,
                                 resolver: Optional[dns.asyncresolver.Resolver] = None) -> None:
    """
    Raise SystemicFailure if the target cannot possibly be scanned.

    IP literals were already vetted by security.validate_target and are not
    resolved again.
    """
    hostname = urlparse(target).hostname
    if not hostname:
        raise SystemicFailure(f"Target {target} has no hostname")
    try:
        ipaddress.ip_address(hostname)
        return
    except ValueError:
        pass

    addresses = await resolve_addresses(hostname, resolver=resolver)
    logger.info("Resolved %s to %s", hostname, ", ".join(addresses))
    if allow_private:
        return
    public = [a for a in addresses if is_public_ip(ipaddress.ip_address(a))]
    if not public:
        raise SystemicFailure(f"SSRF protection: {hostname} resolves only to internal addresses")
