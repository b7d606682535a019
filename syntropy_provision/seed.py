"""
Cloud-init NoCloud seed rendering.

The three seed documents are fixed string.Template texts with a closed set of
declared variables. Every value is converted by its declared kind before
substitution so that rendered documents are always valid YAML:

    scalar  JSON-quoted string, a valid YAML double-quoted scalar
    number  bare integer
    block   PEM text indented to sit inside a literal block (6 spaces)
    list    JSON flow list of strings

Shell dollar signs inside templates must be written as $$.
"""

import json
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from string import Template
from typing import Callable, Dict, List, Optional

import yaml

from .errors import RenderFailure
from .keystore import write_atomic

logger = logging.getLogger(__name__)

SCALAR = 'scalar'
NUMBER = 'number'
BLOCK = 'block'
LIST = 'list'

BLOCK_INDENT = ' ' * 6
SEED_FILE_MODE = 0o644

SEED_VARIABLES = {
    'node_name': SCALAR,
    'node_description': SCALAR,
    'coordinates': SCALAR,
    'discovery_endpoint': SCALAR,
    'created_by': SCALAR,
    'created_at': SCALAR,
    'instance_id': SCALAR,
    'locale': SCALAR,
    'timezone': SCALAR,
    'ssh_authorized_key': SCALAR,
    'ca_cert_pem': BLOCK,
    'node_cert_pem': BLOCK,
    'node_key_pem': BLOCK,
    'owner_fingerprint': SCALAR,
    'community_fingerprint': SCALAR,
    'node_fingerprint': SCALAR,
    'key_algorithm': SCALAR,
    'media_label': SCALAR,
    'primary_interface': SCALAR,
    'gateway': SCALAR,
    'node_ip_suffix': NUMBER,
    'mesh_gateway': SCALAR,
    'mgmt_gateway': SCALAR,
    'dns_servers': LIST,
}

USER_DATA_TEMPLATE = Template("""#cloud-config
# Syntropy Cooperative Grid node

locale: ${locale}
timezone: ${timezone}
hostname: ${node_name}
preserve_hostname: false

users:
  - name: syntropy
    groups: [adm, sudo, docker]
    shell: /bin/bash
    sudo: 'ALL=(ALL) NOPASSWD:ALL'
    lock_passwd: true
    ssh_authorized_keys:
      - ${ssh_authorized_key}

ssh_pwauth: false
disable_root: true

package_update: true
packages:
  - curl
  - wget
  - git
  - htop
  - vim
  - jq
  - rsync
  - net-tools
  - dnsutils
  - openssl
  - ca-certificates
  - gnupg
  - lsb-release
  - fail2ban
  - ufw
  - docker.io
  - containerd
  - wireguard
  - prometheus-node-exporter

write_files:
  - path: /opt/syntropy/certs/ca.crt
    owner: root:root
    permissions: '0644'
    content: |
      ${ca_cert_pem}
  - path: /opt/syntropy/certs/node.crt
    owner: root:root
    permissions: '0644'
    content: |
      ${node_cert_pem}
  - path: /opt/syntropy/certs/node.key
    owner: root:root
    permissions: '0600'
    content: |
      ${node_key_pem}
  - path: /opt/syntropy/config/agent.yaml
    owner: root:root
    permissions: '0644'
    content: |
      node:
        name: ${node_name}
        description: ${node_description}
        coordinates: ${coordinates}
        created_by: ${created_by}
        created_at: ${created_at}
      identity:
        owner_fingerprint: ${owner_fingerprint}
        community_fingerprint: ${community_fingerprint}
        node_fingerprint: ${node_fingerprint}
        key_algorithm: ${key_algorithm}
      network:
        discovery_endpoints:
          - ${discovery_endpoint}
        mesh_port: 51820
        api_port: 8080
      security:
        tls:
          enabled: true
          cert_file: /opt/syntropy/certs/node.crt
          key_file: /opt/syntropy/certs/node.key
          ca_file: /opt/syntropy/certs/ca.crt
      logging:
        level: info
        file: /opt/syntropy/logs/agent.log
      metrics:
        enabled: true
        port: 9090
        path: /metrics
  - path: /etc/systemd/system/syntropy-agent.service
    owner: root:root
    permissions: '0644'
    content: |
      [Unit]
      Description=Syntropy Cooperative Grid Agent
      After=network-online.target docker.service
      Wants=network-online.target docker.service

      [Service]
      Type=simple
      User=syntropy
      Group=syntropy
      WorkingDirectory=/opt/syntropy
      ExecStart=/opt/syntropy/bin/syntropy-agent --config=/opt/syntropy/config/agent.yaml
      Restart=always
      RestartSec=5

      [Install]
      WantedBy=multi-user.target
  - path: /etc/logrotate.d/syntropy
    owner: root:root
    permissions: '0644'
    content: |
      /opt/syntropy/logs/*.log {
          daily
          rotate 30
          compress
          delaycompress
          missingok
          notifempty
          create 644 syntropy syntropy
      }

runcmd:
  - [mkdir, -p, /opt/syntropy/bin, /opt/syntropy/logs, /opt/syntropy/data]
  - [chown, -R, 'syntropy:syntropy', /opt/syntropy]
  - [chown, 'syntropy:syntropy', /opt/syntropy/certs/node.key]
  - [systemctl, enable, --now, docker]
  - [usermod, -aG, docker, syntropy]
  - [ufw, default, deny, incoming]
  - [ufw, default, allow, outgoing]
  - [ufw, allow, ssh]
  - [ufw, allow, 51820/udp]
  - [ufw, allow, 8080/tcp]
  - [ufw, allow, 9090/tcp]
  - [ufw, allow, 9100/tcp]
  - [ufw, --force, enable]
  - [systemctl, enable, --now, fail2ban]
  - [systemctl, daemon-reload]
  - [systemctl, enable, --now, syntropy-agent]

final_message: "Syntropy node provisioned after $$UPTIME seconds"
""")

META_DATA_TEMPLATE = Template("""instance-id: ${instance_id}
local-hostname: ${node_name}
syntropy:
  node:
    name: ${node_name}
    description: ${node_description}
    coordinates: ${coordinates}
    created_at: ${created_at}
    created_by: ${created_by}
  media_label: ${media_label}
  discovery_endpoint: ${discovery_endpoint}
  key_algorithm: ${key_algorithm}
  fingerprints:
    owner: ${owner_fingerprint}
    community: ${community_fingerprint}
    node: ${node_fingerprint}
""")

NETWORK_CONFIG_TEMPLATE = Template("""version: 2
ethernets:
  lan-en:
    match:
      name: 'en*'
    dhcp4: true
    dhcp6: false
    dhcp4-overrides:
      hostname: ${node_name}
      route-metric: 100
    nameservers:
      addresses: ${dns_servers}
    routes:
      - to: default
        via: ${gateway}
        metric: 100
  lan-eth:
    match:
      name: 'eth*'
    dhcp4: true
    dhcp6: false
    dhcp4-overrides:
      hostname: ${node_name}
      route-metric: 100
    nameservers:
      addresses: ${dns_servers}
    routes:
      - to: default
        via: ${gateway}
        metric: 100
  lan-enp:
    match:
      name: 'enp*'
    dhcp4: true
    dhcp6: false
    dhcp4-overrides:
      hostname: ${node_name}
      route-metric: 100
    nameservers:
      addresses: ${dns_servers}
    routes:
      - to: default
        via: ${gateway}
        metric: 100
bridges:
  br0:
    interfaces: []
    dhcp4: false
    dhcp6: false
    addresses:
      - 172.20.0.${node_ip_suffix}/24
    nameservers:
      addresses: ${dns_servers}
    routes:
      - to: 172.20.0.0/12
        via: ${mesh_gateway}
        metric: 50
        table: 100
    routing-policy:
      - from: 172.20.0.0/12
        table: 100
    parameters:
      stp: false
      forward-delay: 0
vlans:
  vlan100:
    id: 100
    link: ${primary_interface}
    dhcp4: false
    dhcp6: false
    addresses:
      - 192.168.100.${node_ip_suffix}/24
    nameservers:
      addresses: ${dns_servers}
    routes:
      - to: 192.168.100.0/24
        via: ${mgmt_gateway}
        metric: 75
        table: 100
    routing-policy:
      - from: 192.168.100.0/24
        table: 100
""")

SEED_TEMPLATES = {
    'user-data': USER_DATA_TEMPLATE,
    'meta-data': META_DATA_TEMPLATE,
    'network-config': NETWORK_CONFIG_TEMPLATE,
}


def _convert(name: str, kind: str, value) -> str:
    if kind == SCALAR:
        if not isinstance(value, str):
            raise RenderFailure(f"seed variable '{name}' must be a string")
        return json.dumps(value)
    if kind == NUMBER:
        if not isinstance(value, int) or isinstance(value, bool):
            raise RenderFailure(f"seed variable '{name}' must be an integer")
        return str(value)
    if kind == BLOCK:
        if not isinstance(value, str) or not value.strip():
            raise RenderFailure(f"seed variable '{name}' must be non-empty PEM text")
        lines = value.strip('\n').splitlines()
        return ('\n' + BLOCK_INDENT).join(lines)
    if kind == LIST:
        if not isinstance(value, (list, tuple)) or not value or not all(isinstance(v, str) for v in value):
            raise RenderFailure(f"seed variable '{name}' must be a non-empty list of strings")
        return json.dumps(list(value))
    raise RenderFailure(f"seed variable '{name}' has unknown kind '{kind}'")


def prepare_values(context: Dict[str, object]) -> Dict[str, str]:
    """Check the context covers every declared variable and convert the values"""
    undeclared = sorted(set(context) - set(SEED_VARIABLES))
    if undeclared:
        raise RenderFailure(f"undeclared seed variables: {', '.join(undeclared)}")
    unset = sorted(name for name in SEED_VARIABLES if context.get(name) is None)
    if unset:
        raise RenderFailure(f"unset seed variables: {', '.join(unset)}")
    return {name: _convert(name, kind, context[name]) for name, kind in SEED_VARIABLES.items()}


def render_template(name: str, template: Template, values: Dict[str, str]) -> str:
    if not template.is_valid():
        raise RenderFailure(f"{name}: template contains an invalid placeholder")
    unknown = sorted(set(template.get_identifiers()) - set(SEED_VARIABLES))
    if unknown:
        raise RenderFailure(f"{name}: unknown placeholders {', '.join(unknown)}")

    try:
        rendered = template.substitute(values)
    except (KeyError, ValueError) as e:
        raise RenderFailure(f"{name}: substitution failed: {e}")

    try:
        document = yaml.safe_load(rendered)
    except yaml.YAMLError as e:
        raise RenderFailure(f"{name}: rendered document is not valid YAML: {e}")
    if not isinstance(document, dict):
        raise RenderFailure(f"{name}: rendered document is not a YAML mapping")
    return rendered


def render_seed(context: Dict[str, object], templates: Optional[Dict[str, Template]] = None) -> Dict[str, str]:
    """Render user-data, meta-data and network-config from the context"""
    values = prepare_values(context)
    templates = SEED_TEMPLATES if templates is None else templates
    bundle = {name: render_template(name, template, values) for name, template in templates.items()}
    logger.info(f"Rendered cloud-init seed for {context['node_name']}")
    return bundle


def build_seed_context(intent, identity, settings, clock: Callable[[], int] = time.time_ns) -> Dict[str, object]:
    """Derive every declared seed variable from the intent, identity and settings"""
    now_ns = clock()
    now = datetime.fromtimestamp(now_ns / 1e9, tz=timezone.utc)

    return {
        'node_name': intent.node_name,
        'node_description': intent.description,
        'coordinates': intent.coordinates,
        'discovery_endpoint': intent.discovery_endpoint,
        'created_by': intent.created_by,
        'created_at': now.strftime('%Y-%m-%dT%H:%M:%SZ'),
        'instance_id': f"{intent.node_name}-{now_ns}",
        'locale': settings.locale,
        'timezone': settings.timezone,
        'ssh_authorized_key': identity.node.public_authorized_keys_line,
        'ca_cert_pem': identity.tls.ca_cert,
        'node_cert_pem': identity.tls.node_cert,
        'node_key_pem': identity.tls.node_key,
        'owner_fingerprint': identity.owner.fingerprint_sha256,
        'community_fingerprint': identity.community.fingerprint_sha256,
        'node_fingerprint': identity.node.fingerprint_sha256,
        'key_algorithm': identity.node.algorithm,
        'media_label': intent.label,
        'primary_interface': settings.primary_interface,
        'gateway': settings.gateway,
        'node_ip_suffix': (now_ns // 1_000_000_000) % 254 + 2,
        'mesh_gateway': settings.mesh_gateway,
        'mgmt_gateway': settings.mgmt_gateway,
        'dns_servers': list(settings.dns_servers),
    }


def write_seed(bundle: Dict[str, str], seed_dir: Path) -> List[Path]:
    """Write the rendered seed files into a session directory"""
    seed_dir.mkdir(parents=True, exist_ok=True)
    paths = []
    for name, content in bundle.items():
        path = seed_dir / name
        write_atomic(path, content, SEED_FILE_MODE)
        paths.append(path)
    logger.debug(f"Seed files written to {seed_dir}: {[p.name for p in paths]}")
    return paths
