import logging

import pytest
from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from syntropy_provision.errors import CorruptKey, IdentityFailure
from syntropy_provision.identity import (
    build_keypair,
    fingerprint_of,
    generate_private_key,
    generate_tls_bundle,
    load_external_keypair,
    verify_integrity,
    write_tls_bundle,
)
from syntropy_provision.keystore import COMMUNITY, NODE, OWNER


def test_new_identity_uses_ed25519(identity):
    for keypair in (identity.owner, identity.community, identity.node):
        assert keypair.algorithm == 'ed25519'
        assert keypair.public_authorized_keys_line.startswith('ssh-ed25519 ')
        assert keypair.public_authorized_keys_line.endswith(f"syntropy-node-01-{keypair.purpose}")
    assert not identity.reused


def test_fingerprints_stable_across_runs(manager, caplog):
    first = manager.ensure_identity('node-01')
    with caplog.at_level(logging.INFO, logger='syntropy_provision.identity'):
        second = manager.ensure_identity('node-01')

    assert second.fingerprints() == first.fingerprints()
    assert second.reused
    assert 'existing identity loaded' in caplog.text


def test_fingerprint_matches_public_key(identity):
    for keypair in (identity.owner, identity.community, identity.node):
        assert keypair.fingerprint_sha256.startswith('SHA256:')
        assert fingerprint_of(keypair.public_authorized_keys_line) == keypair.fingerprint_sha256
        verify_integrity(keypair)


def test_fingerprint_of_rejects_garbage():
    with pytest.raises(ValueError):
        fingerprint_of('ssh-ed25519')


def test_rsa_fallback_when_ed25519_unavailable(monkeypatch, manager):
    def unavailable():
        raise UnsupportedAlgorithm('ed25519 is not supported')

    monkeypatch.setattr(ed25519.Ed25519PrivateKey, 'generate', staticmethod(unavailable))
    identity = manager.ensure_identity('node-rsa')

    assert identity.node.algorithm == 'rsa-2048'
    assert identity.node.public_authorized_keys_line.startswith('ssh-rsa ')
    assert fingerprint_of(identity.node.public_authorized_keys_line) == identity.node.fingerprint_sha256


def test_partial_identity_is_completed(manager):
    owner = manager.ensure_keypair('node-01', OWNER)
    identity = manager.ensure_identity('node-01')

    assert identity.owner.fingerprint_sha256 == owner.fingerprint_sha256
    assert not identity.reused
    assert manager.store.exists('node-01', COMMUNITY)
    assert manager.store.exists('node-01', NODE)


def test_corrupt_node_key_is_regenerated(manager, identity, caplog):
    manager.store.paths('node-01', NODE).private.write_text('not a key')

    with caplog.at_level(logging.WARNING):
        again = manager.ensure_identity('node-01')

    assert again.node.fingerprint_sha256 != identity.node.fingerprint_sha256
    assert again.owner.fingerprint_sha256 == identity.owner.fingerprint_sha256
    assert 'generating a replacement' in caplog.text


def test_corrupt_owner_key_is_fatal(manager, identity):
    manager.store.paths('node-01', OWNER).fingerprint.write_text('SHA256:bogus ed25519 node-01-owner.key\n')

    with pytest.raises(CorruptKey) as excinfo:
        manager.ensure_identity('node-01')
    assert excinfo.value.exit_code == 6


def test_import_external_owner_key(manager, tmp_path):
    key = ed25519.Ed25519PrivateKey.generate()
    key_path = tmp_path / 'id_ed25519'
    key_path.write_bytes(key.private_bytes(
        serialization.Encoding.PEM, serialization.PrivateFormat.OpenSSH, serialization.NoEncryption(),
    ))

    imported = load_external_keypair(key_path, 'node-01')
    identity = manager.ensure_identity('node-01', owner_key_ref=str(key_path))

    assert identity.owner.fingerprint_sha256 == imported.fingerprint_sha256
    assert manager.store.exists('node-01', OWNER)

    # same key again is accepted
    again = manager.ensure_identity('node-01', owner_key_ref=str(key_path))
    assert again.owner.fingerprint_sha256 == imported.fingerprint_sha256


def test_different_owner_key_is_refused(manager, identity, tmp_path):
    key_path = tmp_path / 'other.key'
    key_path.write_text(build_keypair('x', OWNER, generate_private_key()).private_pem)

    with pytest.raises(IdentityFailure, match='different owner key'):
        manager.ensure_identity('node-01', owner_key_ref=str(key_path))


def test_missing_external_key(manager, tmp_path):
    with pytest.raises(IdentityFailure):
        manager.ensure_identity('node-01', owner_key_ref=str(tmp_path / 'absent'))


def test_rotate_owner_key(manager, identity):
    rotated = manager.rotate_owner_key('node-01')

    assert rotated.fingerprint_sha256 != identity.owner.fingerprint_sha256
    assert manager.existing_identity_fingerprints('node-01')[OWNER] == rotated.fingerprint_sha256


def test_existing_fingerprints_require_all_purposes(manager):
    manager.ensure_keypair('node-01', OWNER)
    with pytest.raises(IdentityFailure):
        manager.existing_identity_fingerprints('node-01')


def test_tls_bundle_certificates():
    bundle = generate_tls_bundle('node-01', ca_key_bits=1024, node_key_bits=1024)
    ca = x509.load_pem_x509_certificate(bundle.ca_cert.encode())
    node = x509.load_pem_x509_certificate(bundle.node_cert.encode())

    assert ca.subject.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value == 'node-01 CA'
    assert ca.extensions.get_extension_for_class(x509.BasicConstraints).value.ca
    assert node.issuer == ca.subject
    assert node.subject.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value == 'node-01'
    assert not node.extensions.get_extension_for_class(x509.BasicConstraints).value.ca

    usages = node.extensions.get_extension_for_class(x509.ExtendedKeyUsage).value
    assert ExtendedKeyUsageOID.SERVER_AUTH in usages
    assert ExtendedKeyUsageOID.CLIENT_AUTH in usages

    names = node.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    assert set(names.get_values_for_type(x509.DNSName)) == {'node-01', 'localhost'}

    ca_days = (ca.not_valid_after_utc - ca.not_valid_before_utc).days
    node_days = (node.not_valid_after_utc - node.not_valid_before_utc).days
    assert 3650 <= ca_days <= 3655
    assert 365 <= node_days <= 367

    node.verify_directly_issued_by(ca)


def test_tls_bundle_not_persisted_to_key_store(manager, identity):
    assert all(name.endswith('.key') for name in manager.store.list_private_keys())
    assert len(manager.store.list_private_keys()) == 3


def test_write_tls_bundle_modes(tmp_path):
    bundle = generate_tls_bundle('node-01', ca_key_bits=1024, node_key_bits=1024)
    paths = write_tls_bundle(bundle, tmp_path / 'certs')

    assert paths['ca_key'].stat().st_mode & 0o777 == 0o600
    assert paths['node_cert'].stat().st_mode & 0o777 == 0o644
    assert paths['node_key'].read_text() == bundle.node_key
