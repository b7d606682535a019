"""Fleet node records (one JSON descriptor per node)"""

import json
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from .errors import RecordConflict
from .keystore import write_atomic
from .locks import file_lock

logger = logging.getLogger(__name__)

RECORD_MODE = 0o644


@dataclass
class NodeRecord:
    name: str
    description: str
    created_at: str
    created_by: str
    fingerprints: Dict[str, str] = field(default_factory=dict)
    paths: Dict[str, str] = field(default_factory=dict)
    status: str = 'provisioned'

    def to_json(self) -> str:
        return json.dumps(asdict(self), indent=2, sort_keys=True) + '\n'

    @classmethod
    def from_dict(cls, data: Dict[str, object]) -> 'NodeRecord':
        return cls(
            name=data['name'],
            description=data.get('description', ''),
            created_at=data.get('created_at', ''),
            created_by=data.get('created_by', ''),
            fingerprints=dict(data.get('fingerprints') or {}),
            paths=dict(data.get('paths') or {}),
            status=data.get('status', 'provisioned'),
        )


class NodeRecordWriter:
    """Writes records under the nodes directory, one lock per name"""

    def __init__(self, nodes_dir: Path, locks_dir: Optional[Path] = None):
        self.nodes_dir = Path(nodes_dir)
        self.locks_dir = Path(locks_dir) if locks_dir else self.nodes_dir / '.locks'

    def path_for(self, name: str) -> Path:
        return self.nodes_dir / f"{name}.json"

    def write(self, record: NodeRecord, overwrite: bool = False) -> Path:
        self.nodes_dir.mkdir(parents=True, exist_ok=True)
        path = self.path_for(record.name)
        with file_lock(self.locks_dir / f"record-{record.name}.lock"):
            if path.exists() and not overwrite:
                raise RecordConflict(f"a node record for {record.name} already exists at {path}")
            write_atomic(path, record.to_json(), RECORD_MODE)
        logger.info(f"Node record written to {path}")
        return path

    def read(self, name: str) -> Optional[NodeRecord]:
        path = self.path_for(name)
        if not path.exists():
            return None
        with open(path, 'r', encoding='utf-8') as f:
            return NodeRecord.from_dict(json.load(f))

    def list_records(self) -> List[NodeRecord]:
        """All readable records, sorted by name; unreadable files are skipped"""
        if not self.nodes_dir.exists():
            return []
        records = []
        for path in sorted(self.nodes_dir.glob('*.json')):
            try:
                with open(path, 'r', encoding='utf-8') as f:
                    records.append(NodeRecord.from_dict(json.load(f)))
            except (OSError, ValueError, KeyError) as e:
                logger.warning(f"Skipping unreadable node record {path}: {e}")
        return records
