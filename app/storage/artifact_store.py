"""
Document store for statement files.
Phase 1: local filesystem (volume mount). Keys are paths relative to
ARTIFACT_ROOT; an S3-compatible store can replace this behind the same calls.
Uploads land in the root through the volume; this service only reads them.
"""

from pathlib import Path
from typing import Optional

from app.config import settings
from app.storage.paths import resolve_key


class ArtifactStore:
    """
    Resolve statement documents by key.
    All keys are relative to ARTIFACT_ROOT and may not escape it.
    """

    def __init__(self, root: Optional[str] = None):
        self.root = Path(root or settings.ARTIFACT_ROOT)
        self.root.mkdir(parents=True, exist_ok=True)

    def exists(self, document_key: str) -> bool:
        try:
            return resolve_key(self.root, document_key).is_file()
        except ValueError:
            return False

    def full_path(self, document_key: str) -> Path:
        """Absolute filesystem path for a key."""
        return resolve_key(self.root, document_key)
