"""
Security Utilities Module for reconscan

Provides centralized security functions for:
- Target URL validation with SSRF protection
- Scan id validation
- Audit logging
"""
import ipaddress
import json
import logging
import uuid as uuid_module
from typing import Optional, Union
from urllib.parse import urlparse

from .errors import InvalidTarget
from .models import utcnow

logger = logging.getLogger(__name__)

ALLOWED_SCHEMES = ("http", "https")
LOCALHOST_NAMES = {"localhost", "ip6-localhost", "ip6-loopback"}
INTERNAL_SUFFIXES = (".localhost", ".local", ".internal")

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


# ============================================================================
# INPUT VALIDATION
# ============================================================================

def validate_uuid(value: str, field_name: str = "ID") -> str:
    """
    Validate UUID format to prevent injection attempts.

    Raises:
        ValueError: If the value is not a valid UUID
    """
    try:
        uuid_module.UUID(value)
        return value
    except (ValueError, AttributeError, TypeError):
        raise ValueError(f"Invalid {field_name} format. Must be a valid UUID.")


def is_public_ip(ip: IPAddress) -> bool:
    """Returns True if IP is public, False if private/reserved/loopback."""
    return not (
        ip.is_private
        or ip.is_loopback
        or ip.is_reserved
        or ip.is_link_local
        or ip.is_multicast
        or ip.is_unspecified
    )


def validate_target(target: str, allow_private: bool = False) -> str:
    """
    Validate a scan target and return it normalized.

    Security Features:
    - Only absolute http(s) URLs with a hostname are accepted
    - Whitespace and control characters are rejected
    - Literal private, loopback and link-local addresses are rejected (SSRF)
    - localhost and internal-only names are rejected (SSRF)

    Hostnames are not resolved here; see validators.check_target_reachable.

    Raises:
        InvalidTarget: If the target is malformed or points at internal resources
    """
    if not isinstance(target, str) or not target.strip():
        raise InvalidTarget(str(target), "target must be a non-empty URL")
    target = target.strip()
    if any(ch.isspace() or ord(ch) < 32 for ch in target):
        raise InvalidTarget(target, "whitespace or control characters in URL")

    parsed = urlparse(target)
    if parsed.scheme.lower() not in ALLOWED_SCHEMES:
        raise InvalidTarget(target, "URL must be absolute and use http or https")
    try:
        hostname = parsed.hostname
        parsed.port
    except ValueError as e:
        raise InvalidTarget(target, f"malformed URL: {e}") from None
    if not hostname:
        raise InvalidTarget(target, "URL is missing a hostname")

    if allow_private:
        return target

    try:
        ip = ipaddress.ip_address(hostname)
    except ValueError:
        ip = None
    if ip is not None and not is_public_ip(ip):
        raise InvalidTarget(target, f"SSRF protection: {ip} is not a public address")

    name = hostname.lower().rstrip(".")
    if name in LOCALHOST_NAMES or name.endswith(INTERNAL_SUFFIXES):
        raise InvalidTarget(target, "SSRF protection: cannot scan localhost or internal names")

    return target


# ============================================================================
# AUDIT LOGGING
# ============================================================================

class AuditLogger:
    """
    Centralized audit logging for security-relevant events.

    Events are written as one JSON object per line on the `reconscan.audit`
    logger, and to `log_file` as well when one is given.
    """

    def __init__(self, log_file: Optional[str] = None):
        self.logger = logging.getLogger("reconscan.audit")
        if log_file and not any(isinstance(h, logging.FileHandler) for h in self.logger.handlers):
            handler = logging.FileHandler(log_file)
            handler.setFormatter(logging.Formatter("%(message)s"))
            self.logger.addHandler(handler)
            self.logger.setLevel(logging.INFO)

    def log_event(
        self,
        event_type: str,
        ip_address: Optional[str] = None,
        resource: Optional[str] = None,
        action: Optional[str] = None,
        status: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        log_entry = {
            "timestamp": utcnow().isoformat(),
            "event_type": event_type,
            "ip_address": ip_address,
            "resource": resource,
            "action": action,
            "status": status,
            "details": details or {},
        }
        # Filter out None values for cleaner logs
        log_entry = {k: v for k, v in log_entry.items() if v is not None}
        self.logger.info(json.dumps(log_entry))
        return log_entry

    def log_scan_started(self, scan_id: str, target: str, ip_address: Optional[str] = None):
        return self.log_event(
            event_type="SCAN_STARTED",
            ip_address=ip_address,
            resource=f"/scans/{scan_id}",
            action="START",
            status="SUCCESS",
            details={"target": target},
        )

    def log_scan_rejected(self, target: str, reason: str, ip_address: Optional[str] = None):
        return self.log_event(
            event_type="SCAN_REJECTED",
            ip_address=ip_address,
            resource="/scans",
            action="START",
            status="DENIED",
            details={"target": target, "reason": reason},
        )

    def log_scan_cancelled(self, scan_id: str, ip_address: Optional[str] = None):
        return self.log_event(
            event_type="SCAN_CANCELLED",
            ip_address=ip_address,
            resource=f"/scans/{scan_id}",
            action="CANCEL",
            status="SUCCESS",
        )

    def log_scan_deleted(self, scan_id: str, ip_address: Optional[str] = None):
        return self.log_event(
            event_type="SCAN_DELETED",
            ip_address=ip_address,
            resource=f"/scans/{scan_id}",
            action="DELETE",
            status="SUCCESS",
        )
