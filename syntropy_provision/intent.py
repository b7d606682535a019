"""
Provisioning intent: what the operator asked for, and its validation.

Validation is pure (no filesystem or network access) and reports every
violation at once so the operator can fix them in one go.
"""

import re
from dataclasses import dataclass, replace
from typing import List, Optional, Tuple

from .errors import InvalidIntent


AUTO_DEVICE = 'auto'

NODE_NAME_PATTERN = re.compile(r'^[A-Za-z0-9_-]+$')
LABEL_PATTERN = re.compile(r'^[A-Za-z0-9_-]{1,11}$')
HOST_LABEL_PATTERN = re.compile(r'^(?!-)[A-Za-z0-9-]{1,63}(?<!-)$')
LINUX_DEVICE_PATTERN = re.compile(r'^/dev/[A-Za-z0-9/_.-]+$')
WINDOWS_DEVICE_PATTERN = re.compile(r'^(\\\\\.\\)?PHYSICALDRIVE\d+$', re.IGNORECASE)

Violation = Tuple[str, str]


@dataclass(frozen=True)
class ProvisionIntent:
    """A request to provision one node onto one device"""

    node_name: str
    description: str = ''
    coordinates: str = ''
    label: str = 'SYNTROPY'
    discovery_endpoint: str = 'syntropy-discovery.local'
    iso_path: Optional[str] = None
    device_selector: str = AUTO_DEVICE
    created_by: str = 'unknown'
    owner_key_ref: Optional[str] = None
    work_dir: Optional[str] = None
    cache_dir: Optional[str] = None
    force: bool = False

    @property
    def auto_detect(self) -> bool:
        return self.device_selector == AUTO_DEVICE


def check_node_name(name: str) -> Optional[str]:
    """Validate node name format; returns the reason on failure"""
    if not name:
        return 'is required'
    if len(name) < 3 or len(name) > 50:
        return 'must be between 3 and 50 characters'
    if not NODE_NAME_PATTERN.match(name):
        return 'may only contain letters, digits, "-" and "_"'
    return None


def check_host_name(host: str) -> bool:
    """Validate a DNS host name"""
    if not host or len(host) > 253:
        return False
    return all(HOST_LABEL_PATTERN.match(part) for part in host.rstrip('.').split('.'))


def check_device_selector(selector: str) -> bool:
    if selector == AUTO_DEVICE:
        return True
    return bool(LINUX_DEVICE_PATTERN.match(selector) or WINDOWS_DEVICE_PATTERN.match(selector))


def _single_line(value: str) -> bool:
    return '\n' not in value and '\r' not in value


def validate_intent(intent: ProvisionIntent) -> List[Violation]:
    """Return every violation in the intent (empty when valid)"""
    violations = []

    reason = check_node_name(intent.node_name)
    if reason:
        violations.append(('node_name', reason))

    if len(intent.description) > 500 or not _single_line(intent.description):
        violations.append(('description', 'must be a single line of at most 500 characters'))

    if len(intent.coordinates) > 100 or not _single_line(intent.coordinates):
        violations.append(('coordinates', 'must be a single line of at most 100 characters'))

    if not LABEL_PATTERN.match(intent.label or ''):
        violations.append(('label', 'must be 1-11 characters of letters, digits, "-" and "_"'))

    if not check_host_name(intent.discovery_endpoint):
        violations.append(('discovery_endpoint', 'must be a valid DNS host name'))

    if intent.iso_path is not None and not intent.iso_path.strip():
        violations.append(('iso_path', 'must not be empty when given'))

    if not check_device_selector(intent.device_selector):
        violations.append(('device_selector', 'must be "auto", a /dev path or PHYSICALDRIVE<n>'))

    if not intent.created_by or len(intent.created_by) > 64 or not _single_line(intent.created_by):
        violations.append(('created_by', 'must be 1-64 characters on a single line'))

    if intent.owner_key_ref is not None and not intent.owner_key_ref.strip():
        violations.append(('owner_key_ref', 'must not be empty when given'))

    for name in ('work_dir', 'cache_dir'):
        value = getattr(intent, name)
        if value is not None and not value.strip():
            violations.append((name, 'must not be empty when given'))

    return violations


def ensure_valid(intent: ProvisionIntent) -> ProvisionIntent:
    """Validate and normalize the intent, raising InvalidIntent on failure"""
    violations = validate_intent(intent)
    if violations:
        raise InvalidIntent(violations)
    return replace(intent, label=intent.label.upper())
