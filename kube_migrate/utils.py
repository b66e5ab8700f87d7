"""Utility functions shared across kube-migrate."""

import hashlib
from pathlib import Path

CHECKSUM_CHUNK_SIZE = 1024 * 1024


def format_size(size_bytes: int) -> str:
    """Format bytes into human-readable string.

    Examples:
        >>> format_size(0)
        '0 B'
        >>> format_size(1024)
        '1.0 KB'
        >>> format_size(1536870912)
        '1.4 GB'
    """
    if size_bytes == 0:
        return "0 B"

    size = float(size_bytes)
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size < 1024.0:
            if unit == "B":
                return f"{int(size)} {unit}"
            return f"{size:.1f} {unit}"
        size /= 1024.0
    return f"{size:.1f} PB"


def file_checksum(path: Path) -> str:
    """sha256 hex digest of a local file, read in chunks."""
    digest = hashlib.sha256()
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(CHECKSUM_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def selector_from_labels(labels: dict[str, str]) -> str:
    """Render matchLabels as a kubectl label selector."""
    return ",".join(f"{key}={value}" for key, value in sorted(labels.items()))
