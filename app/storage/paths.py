"""
Key-to-path helpers for the document store.
Keys are relative to the store root.
"""

from pathlib import Path


def resolve_key(root: Path, document_key: str) -> Path:
    """Resolve a key under root. Raises ValueError if it escapes the root."""
    root = Path(root).resolve()
    full_path = (root / document_key).resolve()
    if root != full_path and root not in full_path.parents:
        raise ValueError(f"Key escapes the document root: {document_key}")
    return full_path
