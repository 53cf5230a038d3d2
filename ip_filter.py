"""
ip_filter.py: Allow-list matching for share links.

Rules are one of:
  exact     203.0.113.7, 2001:db8::1
  CIDR      192.168.1.0/24, 2001:db8::/32
  wildcard  192.168.*.*   (IPv4 only, '*' stands for one whole octet)
"""
import enum
import ipaddress
import logging
import re
from typing import Iterable, List, Optional

logger = logging.getLogger(__name__)

MAX_IP_RULES = 100

_OCTET = re.compile(r"^\d{1,3}$")


class IpCheck(str, enum.Enum):
    ALLOWED = "allowed"
    DENIED = "denied"
    # Evaluation blew up and the request was let through. Intentional: an
    # allow-list failure must never be the reason a recipient gets locked out.
    ALLOWED_ON_ERROR = "allowed_on_error"

    @property
    def allowed(self) -> bool:
        return self is not IpCheck.DENIED


# ─── MATCHING ─────────────────────────────────────

def ip_in_cidr(ip: str, cidr: str) -> bool:
    try:
        network = ipaddress.ip_network(cidr.strip(), strict=False)
        address = ipaddress.ip_address(ip.strip())
    except ValueError:
        return False
    if address.version != network.version:
        return False
    return address in network


def _wildcard_regex(pattern: str) -> Optional[re.Pattern]:
    parts = pattern.split(".")
    if len(parts) != 4:
        return None
    pieces = []
    for part in parts:
        if part == "*":
            pieces.append(r"\d{1,3}")
        elif _OCTET.match(part):
            pieces.append(re.escape(part))
        else:
            return None
    return re.compile("^" + r"\.".join(pieces) + "$")


def ip_matches_wildcard(ip: str, pattern: str) -> bool:
    regex = _wildcard_regex(pattern)
    return bool(regex and regex.match(ip))


def rule_matches(ip: str, rule) -> bool:
    """Exact match, then CIDR, then wildcard. A rule that can't be evaluated never matches."""
    try:
        if not isinstance(rule, str):
            return False
        if rule == ip:
            return True
        if "/" in rule:
            return ip_in_cidr(ip, rule)
        if "*" in rule:
            return ip_matches_wildcard(ip, rule)
    except Exception as e:
        logger.warning(f"Skipping IP rule that could not be evaluated: {e}")
    return False


def is_allowed(ip: str, rules: Optional[Iterable[str]], enabled: bool = True) -> bool:
    """Disabled restriction or empty rule set lets everyone through."""
    if not enabled:
        return True
    rules = list(rules or [])
    if not rules:
        return True
    return any(rule_matches(ip, rule) for rule in rules)


def check_ip(ip: str, restriction) -> IpCheck:
    """Evaluate a stored IpRestriction row (or None) for one requester."""
    try:
        if restriction is None:
            return IpCheck.ALLOWED
        if is_allowed(ip, restriction.allowed_ips, bool(restriction.enabled)):
            return IpCheck.ALLOWED
        return IpCheck.DENIED
    except Exception as e:
        # Fail-open on purpose; see IpCheck.ALLOWED_ON_ERROR
        logger.error(f"IP restriction check failed, allowing request: {e}")
        return IpCheck.ALLOWED_ON_ERROR


# ─── VALIDATION ─────────────────────────────────────

def is_valid_address(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
        return True
    except ValueError:
        return False


def canonical_address(value: str) -> str:
    """Compressed lowercase form of an IP address; anything unparseable comes back as given."""
    try:
        return str(ipaddress.ip_address(value))
    except ValueError:
        return value


def normalize_rule(rule) -> Optional[str]:
    """Return the cleaned rule, or None when it should be dropped."""
    if not isinstance(rule, str):
        return None
    rule = rule.strip()
    if not rule:
        return None

    if "/" in rule:
        address, _, prefix = rule.partition("/")
        if not prefix.isdigit() or not is_valid_address(address):
            return None
        max_prefix = ipaddress.ip_address(address).max_prefixlen
        if not 0 <= int(prefix) <= max_prefix:
            return None
        return f"{address}/{int(prefix)}"

    if "*" in rule:
        parts = rule.split(".")
        if len(parts) != 4:
            return None
        for part in parts:
            if part != "*" and not (_OCTET.match(part) and int(part) <= 255):
                return None
        return rule

    return rule if is_valid_address(rule) else None


def normalize_rules(rules: Iterable, limit: int = MAX_IP_RULES) -> List[str]:
    """Validate, dedupe (first occurrence wins) and cap a rule list."""
    normalized: List[str] = []
    seen = set()
    dropped = 0
    for rule in rules or []:
        clean = normalize_rule(rule)
        if clean is None:
            dropped += 1
            continue
        if clean in seen:
            continue
        seen.add(clean)
        normalized.append(clean)

    if dropped:
        logger.warning(f"Dropped {dropped} malformed IP rule(s)")
    if len(normalized) > limit:
        logger.warning(f"IP rule list truncated from {len(normalized)} to {limit}")
        normalized = normalized[:limit]
    return normalized
