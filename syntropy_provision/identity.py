"""
Per-node cryptographic identity.

Each node gets three SSH keypairs (owner, community, node), Ed25519 by
default with RSA-2048 as a fallback when the Ed25519 generator is unavailable,
plus a short-lived TLS CA and node certificate that are embedded in the seed
and never kept in the operator's key store.
"""

import base64
import hashlib
import ipaddress
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, Optional, Tuple

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ed25519, rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from .errors import CorruptKey, IdentityFailure
from .keystore import COMMUNITY, KEY_PURPOSES, NODE, OWNER, Keypair, KeyStore, write_atomic
from .locks import file_lock, lock_name

logger = logging.getLogger(__name__)

ORGANIZATION = 'Syntropy Cooperative Grid'
RSA_FALLBACK_BITS = 2048
CA_VALIDITY_YEARS = 10
NODE_VALIDITY_YEARS = 1


@dataclass(frozen=True)
class TLSBundle:
    ca_cert: str
    ca_key: str
    node_cert: str
    node_key: str


@dataclass(frozen=True)
class Identity:
    """The full set of key material for one node, passed by value"""

    node_name: str
    owner: Keypair
    community: Keypair
    node: Keypair
    tls: TLSBundle
    reused: bool = False

    def fingerprints(self) -> Dict[str, str]:
        return {
            OWNER: self.owner.fingerprint_sha256,
            COMMUNITY: self.community.fingerprint_sha256,
            NODE: self.node.fingerprint_sha256,
        }


def fingerprint_of(public_line: str) -> str:
    """OpenSSH style SHA-256 fingerprint of an authorized_keys line"""
    parts = public_line.strip().split()
    if len(parts) < 2:
        raise ValueError('not an authorized_keys line')
    blob = base64.b64decode(parts[1].encode('ascii'), validate=True)
    digest = hashlib.sha256(blob).digest()
    return 'SHA256:' + base64.b64encode(digest).decode('ascii').rstrip('=')


def _algorithm_of(private_key) -> str:
    if isinstance(private_key, ed25519.Ed25519PrivateKey):
        return 'ed25519'
    if isinstance(private_key, rsa.RSAPrivateKey):
        return f"rsa-{private_key.key_size}"
    raise IdentityFailure(f"unsupported key type: {type(private_key).__name__}")


def _public_line(private_key, comment: str) -> str:
    public = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.OpenSSH,
        format=serialization.PublicFormat.OpenSSH,
    ).decode('ascii')
    return f"{public} {comment}"


def _private_pem(private_key) -> str:
    if isinstance(private_key, rsa.RSAPrivateKey):
        fmt = serialization.PrivateFormat.TraditionalOpenSSL
    else:
        fmt = serialization.PrivateFormat.PKCS8
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=fmt,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode('ascii')


def _load_private_key(private_pem: str):
    data = private_pem.encode('utf-8')
    if b'OPENSSH PRIVATE KEY' in data:
        return serialization.load_ssh_private_key(data, password=None)
    return serialization.load_pem_private_key(data, password=None)


def _add_years(moment: datetime, years: int) -> datetime:
    try:
        return moment.replace(year=moment.year + years)
    except ValueError:
        # Feb 29 in a non-leap target year
        return moment.replace(year=moment.year + years, day=28)


def generate_private_key():
    """Generate an Ed25519 key, falling back to RSA-2048 if the generator fails"""
    try:
        return ed25519.Ed25519PrivateKey.generate()
    except (UnsupportedAlgorithm, ValueError, OSError) as e:
        logger.warning(f"Ed25519 generation failed ({e}), falling back to RSA-{RSA_FALLBACK_BITS}")
        return rsa.generate_private_key(public_exponent=65537, key_size=RSA_FALLBACK_BITS)


def build_keypair(node_name: str, purpose: str, private_key) -> Keypair:
    public_line = _public_line(private_key, f"syntropy-{node_name}-{purpose}")
    return Keypair(
        id=f"{node_name}-{purpose}",
        purpose=purpose,
        algorithm=_algorithm_of(private_key),
        private_pem=_private_pem(private_key),
        public_authorized_keys_line=public_line,
        fingerprint_sha256=fingerprint_of(public_line),
        created_at=datetime.now(timezone.utc),
    )


def verify_integrity(keypair: Keypair) -> None:
    """Re-derive the public key and fingerprint from the private material"""
    try:
        private_key = _load_private_key(keypair.private_pem)
        derived = _public_line(private_key, '').split()
        stored = keypair.public_authorized_keys_line.split()
        stored_fingerprint = fingerprint_of(keypair.public_authorized_keys_line)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise CorruptKey(f"keypair {keypair.id} cannot be parsed: {e}")

    if derived[:2] != stored[:2]:
        raise CorruptKey(f"keypair {keypair.id}: public key does not match the private key")
    if stored_fingerprint != keypair.fingerprint_sha256:
        raise CorruptKey(f"keypair {keypair.id}: stored fingerprint does not match the public key")


def generate_tls_bundle(node_name: str, ca_key_bits: int = 4096, node_key_bits: int = 2048) -> TLSBundle:
    """Self-signed CA (10 years) signing a node certificate (1 year)"""
    now = datetime.now(timezone.utc)
    not_before = now - timedelta(minutes=5)

    ca_key = rsa.generate_private_key(public_exponent=65537, key_size=ca_key_bits)
    ca_name = x509.Name([
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, ORGANIZATION),
        x509.NameAttribute(NameOID.COMMON_NAME, f"{node_name} CA"),
    ])
    ca_cert = (
        x509.CertificateBuilder()
        .subject_name(ca_name)
        .issuer_name(ca_name)
        .public_key(ca_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(_add_years(now, CA_VALIDITY_YEARS))
        .add_extension(x509.BasicConstraints(ca=True, path_length=0), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True, content_commitment=False, key_encipherment=False,
                data_encipherment=False, key_agreement=False, key_cert_sign=True,
                crl_sign=True, encipher_only=False, decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(ca_key.public_key()), critical=False)
        .sign(ca_key, hashes.SHA256())
    )

    node_key = rsa.generate_private_key(public_exponent=65537, key_size=node_key_bits)
    node_subject = x509.Name([
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, ORGANIZATION),
        x509.NameAttribute(NameOID.COMMON_NAME, node_name),
    ])
    node_cert = (
        x509.CertificateBuilder()
        .subject_name(node_subject)
        .issuer_name(ca_name)
        .public_key(node_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(_add_years(now, NODE_VALIDITY_YEARS))
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True, content_commitment=False, key_encipherment=True,
                data_encipherment=False, key_agreement=False, key_cert_sign=False,
                crl_sign=False, encipher_only=False, decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(
            x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH, ExtendedKeyUsageOID.CLIENT_AUTH]),
            critical=False,
        )
        .add_extension(
            x509.SubjectAlternativeName([
                x509.DNSName(node_name),
                x509.DNSName('localhost'),
                x509.IPAddress(ipaddress.IPv4Address('127.0.0.1')),
            ]),
            critical=False,
        )
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(ca_key.public_key()),
            critical=False,
        )
        .sign(ca_key, hashes.SHA256())
    )

    return TLSBundle(
        ca_cert=ca_cert.public_bytes(serialization.Encoding.PEM).decode('ascii'),
        ca_key=_private_pem(ca_key),
        node_cert=node_cert.public_bytes(serialization.Encoding.PEM).decode('ascii'),
        node_key=_private_pem(node_key),
    )


def write_tls_bundle(bundle: TLSBundle, certs_dir: Path) -> Dict[str, Path]:
    """Write the bundle into a session work directory (keys 0600, certs 0644)"""
    certs_dir.mkdir(parents=True, exist_ok=True)
    os.chmod(certs_dir, 0o700)
    files = {
        'ca_cert': (certs_dir / 'ca.crt', bundle.ca_cert, 0o644),
        'ca_key': (certs_dir / 'ca.key', bundle.ca_key, 0o600),
        'node_cert': (certs_dir / 'node.crt', bundle.node_cert, 0o644),
        'node_key': (certs_dir / 'node.key', bundle.node_key, 0o600),
    }
    for path, content, mode in files.values():
        write_atomic(path, content, mode)
    return {name: path for name, (path, _, _) in files.items()}


def load_external_keypair(key_path: Path, node_name: str, purpose: str = OWNER) -> Keypair:
    """Load an operator-supplied private key (with its .pub beside it, if any)"""
    try:
        private_pem = key_path.read_text(encoding='utf-8')
        private_key = _load_private_key(private_pem)
    except OSError as e:
        raise IdentityFailure(f"cannot read key {key_path}: {e}")
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise CorruptKey(f"cannot parse key {key_path}: {e}")

    pub_path = Path(f"{key_path}.pub")
    if pub_path.exists():
        public_line = pub_path.read_text(encoding='utf-8').strip()
    else:
        public_line = _public_line(private_key, f"syntropy-{node_name}-{purpose}")

    try:
        fingerprint = fingerprint_of(public_line)
    except ValueError as e:
        raise CorruptKey(f"cannot parse public key {pub_path}: {e}")

    keypair = Keypair(
        id=f"{node_name}-{purpose}",
        purpose=purpose,
        algorithm=_algorithm_of(private_key),
        private_pem=_private_pem(private_key),
        public_authorized_keys_line=public_line,
        fingerprint_sha256=fingerprint,
        created_at=datetime.fromtimestamp(key_path.stat().st_mtime, tz=timezone.utc),
    )
    verify_integrity(keypair)
    return keypair


class IdentityManager:
    """Owns the operator's identity store"""

    def __init__(self, store: KeyStore, locks_dir: Path, ca_key_bits: int = 4096, node_key_bits: int = 2048):
        self.store = store
        self.locks_dir = Path(locks_dir)
        self.ca_key_bits = ca_key_bits
        self.node_key_bits = node_key_bits

    def _generate(self, node_name: str, purpose: str) -> Keypair:
        try:
            keypair = build_keypair(node_name, purpose, generate_private_key())
            self.store.save(node_name, keypair)
        except OSError as e:
            raise IdentityFailure(f"cannot persist {node_name}-{purpose} keypair: {e}")
        if keypair.algorithm != 'ed25519':
            logger.warning(f"{keypair.id} uses {keypair.algorithm} (Ed25519 unavailable)")
        return keypair

    def load_keypair(self, node_name: str, purpose: str) -> Optional[Keypair]:
        """Load and integrity-check a stored keypair; None when absent"""
        try:
            keypair = self.store.load(node_name, purpose)
        except OSError as e:
            raise IdentityFailure(f"cannot read {node_name}-{purpose} keypair: {e}")
        if keypair is not None:
            verify_integrity(keypair)
        return keypair

    def ensure_keypair_with_status(self, node_name: str, purpose: str) -> Tuple[Keypair, bool]:
        """Return (keypair, loaded) reusing a healthy stored key when possible"""
        try:
            keypair = self.load_keypair(node_name, purpose)
        except CorruptKey as e:
            if purpose == OWNER:
                raise
            logger.warning(f"{e}; generating a replacement")
            keypair = None
        else:
            if keypair is None and self.store.any_exists(node_name, purpose):
                if purpose == OWNER:
                    raise CorruptKey(f"owner key files for {node_name} are incomplete")
                logger.warning(f"Incomplete {node_name}-{purpose} key files; generating a replacement")

        if keypair is not None:
            return keypair, True
        return self._generate(node_name, purpose), False

    def ensure_keypair(self, node_name: str, purpose: str) -> Keypair:
        return self.ensure_keypair_with_status(node_name, purpose)[0]

    def _resolve_owner(self, node_name: str, owner_key_ref: Optional[str]) -> Tuple[Keypair, bool]:
        if not owner_key_ref:
            return self.ensure_keypair_with_status(node_name, OWNER)

        external = load_external_keypair(Path(owner_key_ref).expanduser(), node_name, OWNER)
        stored = self.load_keypair(node_name, OWNER)
        if stored is None:
            try:
                self.store.save(node_name, external)
            except OSError as e:
                raise IdentityFailure(f"cannot import owner key {owner_key_ref}: {e}")
            logger.info(f"Imported owner key {owner_key_ref} for {node_name}")
            return external, False
        if stored.fingerprint_sha256 != external.fingerprint_sha256:
            raise IdentityFailure(
                f"{node_name} already has a different owner key ({stored.fingerprint_sha256})",
                suggestion=f'Run "syntropy keys rotate-owner {node_name}" to replace it explicitly.',
            )
        return stored, True

    def ensure_identity(self, node_name: str, owner_key_ref: Optional[str] = None) -> Identity:
        """Ensure all keypairs for a node under a per-node lock, plus a fresh TLS bundle"""
        lock_path = self.locks_dir / f"identity-{lock_name(node_name)}.lock"
        with file_lock(lock_path):
            owner, owner_loaded = self._resolve_owner(node_name, owner_key_ref)
            community, community_loaded = self.ensure_keypair_with_status(node_name, COMMUNITY)
            node, node_loaded = self.ensure_keypair_with_status(node_name, NODE)

        reused = owner_loaded and community_loaded and node_loaded
        if reused:
            logger.info(f"existing identity loaded for {node_name}")
        else:
            logger.info(f"identity for {node_name} created or completed")

        try:
            tls = generate_tls_bundle(node_name, self.ca_key_bits, self.node_key_bits)
        except (ValueError, TypeError) as e:
            raise IdentityFailure(f"TLS bundle generation failed: {e}")

        return Identity(
            node_name=node_name,
            owner=owner,
            community=community,
            node=node,
            tls=tls,
            reused=reused,
        )

    def rotate_owner_key(self, node_name: str) -> Keypair:
        """Explicitly replace the owner key of a node"""
        lock_path = self.locks_dir / f"identity-{lock_name(node_name)}.lock"
        with file_lock(lock_path):
            self.store.delete(node_name, OWNER)
            keypair = self._generate(node_name, OWNER)
        logger.warning(f"Rotated owner key for {node_name}: {keypair.fingerprint_sha256}")
        return keypair

    def existing_identity_fingerprints(self, node_name: str) -> Dict[str, str]:
        """Fingerprints of every stored, healthy keypair of a node"""
        fingerprints = {}
        for purpose in KEY_PURPOSES:
            keypair = self.load_keypair(node_name, purpose)
            if keypair is None:
                raise IdentityFailure(f"no {purpose} key stored for {node_name}")
            fingerprints[purpose] = keypair.fingerprint_sha256
        return fingerprints
