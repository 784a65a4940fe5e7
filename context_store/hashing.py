"""Content digests for replicated store files."""

import hashlib
from pathlib import Path

HASH_BLOCK_SIZE = 8192


def compute_file_hash(path: Path) -> str:
    """SHA-256 hex digest of a file, read in fixed-size blocks."""
    hasher = hashlib.sha256()
    with open(path, "rb") as f:
        while True:
            block = f.read(HASH_BLOCK_SIZE)
            if not block:
                break
            hasher.update(block)
    return hasher.hexdigest()
