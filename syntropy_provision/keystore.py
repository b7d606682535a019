"""
On-disk identity store.

Layout under the keys directory (0700):

    <node>-<purpose>.key          PEM private key, 0600
    <node>-<purpose>.key.pub      OpenSSH authorized_keys line, 0644
    <node>-<purpose>.fingerprint  "<sha256> <algorithm> <key filename>", 0644
"""

import logging
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List, NamedTuple, Optional

logger = logging.getLogger(__name__)

OWNER = 'owner'
COMMUNITY = 'community'
NODE = 'node'
KEY_PURPOSES = (OWNER, COMMUNITY, NODE)

PRIVATE_MODE = 0o600
PUBLIC_MODE = 0o644
DIR_MODE = 0o700


@dataclass(frozen=True)
class Keypair:
    """An SSH keypair for one purpose of one node"""

    id: str
    purpose: str
    algorithm: str
    private_pem: str
    public_authorized_keys_line: str
    fingerprint_sha256: str
    created_at: datetime


class KeyPaths(NamedTuple):
    private: Path
    public: Path
    fingerprint: Path


def write_atomic(path: Path, content: str, mode: int) -> None:
    """Write content to path through a temp file and rename, with mode set"""
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp, mode)
        os.replace(tmp, path)
        tmp = None
    finally:
        if tmp and os.path.exists(tmp):
            os.unlink(tmp)


class KeyStore:
    """Deterministic key file layout with strict modes"""

    def __init__(self, keys_dir: Path):
        self.keys_dir = Path(keys_dir)

    def ensure_dir(self) -> None:
        self.keys_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(self.keys_dir, DIR_MODE)

    def paths(self, node_name: str, purpose: str) -> KeyPaths:
        if not node_name or node_name in ('.', '..') or '/' in node_name or '\\' in node_name:
            raise ValueError(f"node name {node_name!r} cannot be used as a key file name")
        stem = f"{node_name}-{purpose}"
        return KeyPaths(
            private=self.keys_dir / f"{stem}.key",
            public=self.keys_dir / f"{stem}.key.pub",
            fingerprint=self.keys_dir / f"{stem}.fingerprint",
        )

    def exists(self, node_name: str, purpose: str) -> bool:
        paths = self.paths(node_name, purpose)
        return paths.private.exists() and paths.public.exists() and paths.fingerprint.exists()

    def any_exists(self, node_name: str, purpose: str) -> bool:
        return any(path.exists() for path in self.paths(node_name, purpose))

    def save(self, node_name: str, keypair: Keypair) -> KeyPaths:
        """Persist a keypair; private 0600, public and fingerprint 0644"""
        self.ensure_dir()
        paths = self.paths(node_name, keypair.purpose)
        public_line = keypair.public_authorized_keys_line.strip() + '\n'
        fingerprint_line = f"{keypair.fingerprint_sha256} {keypair.algorithm} {paths.private.name}\n"

        write_atomic(paths.private, keypair.private_pem, PRIVATE_MODE)
        write_atomic(paths.public, public_line, PUBLIC_MODE)
        write_atomic(paths.fingerprint, fingerprint_line, PUBLIC_MODE)
        logger.info(f"Saved {keypair.algorithm} keypair {keypair.id} to {self.keys_dir}")
        return paths

    def load(self, node_name: str, purpose: str) -> Optional[Keypair]:
        """Read a stored keypair as-is (no integrity check); None when absent"""
        if not self.exists(node_name, purpose):
            return None
        paths = self.paths(node_name, purpose)

        private_pem = paths.private.read_text(encoding='utf-8')
        public_line = paths.public.read_text(encoding='utf-8').strip()
        fields = paths.fingerprint.read_text(encoding='utf-8').split()
        fingerprint = fields[0] if fields else ''
        algorithm = fields[1] if len(fields) > 1 else 'unknown'
        created_at = datetime.fromtimestamp(paths.private.stat().st_mtime, tz=timezone.utc)

        return Keypair(
            id=f"{node_name}-{purpose}",
            purpose=purpose,
            algorithm=algorithm,
            private_pem=private_pem,
            public_authorized_keys_line=public_line,
            fingerprint_sha256=fingerprint,
            created_at=created_at,
        )

    def list_private_keys(self) -> List[str]:
        """Filenames of all stored private keys"""
        if not self.keys_dir.exists():
            return []
        return sorted(
            entry.name for entry in self.keys_dir.iterdir()
            if entry.is_file() and entry.name.endswith('.key')
        )

    def delete(self, node_name: str, purpose: str) -> List[Path]:
        """Remove the three files of one purpose; not recoverable"""
        removed = []
        for path in self.paths(node_name, purpose):
            try:
                path.unlink()
                removed.append(path)
            except FileNotFoundError:
                continue
        if removed:
            logger.warning(f"Deleted {node_name}-{purpose} key files: {[p.name for p in removed]}")
        return removed

    def delete_node(self, node_name: str) -> List[Path]:
        removed = []
        for purpose in KEY_PURPOSES:
            removed.extend(self.delete(node_name, purpose))
        return removed
