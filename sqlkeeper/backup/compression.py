"""
Compression handlers for backup artifacts.

Supports:
- gzip: single file gzip at maximum compression
- zip: single entry zip archive
- none: artifact is left as is

The uncompressed dump is only deleted after the compressed file has been
written successfully.
"""

import gzip
import os
import shutil
import zipfile
from datetime import datetime
from typing import Optional

from .errors import CompressionFailed
from .profiles import normalize_format


EXTENSIONS = {
    'gzip': '.gz',
    'zip': '.zip',
    'none': '',
}


def compress(path: str, compression_format: str) -> str:
    """
    Compress a dump file in place.

    Args:
        path: Path to the raw dump
        compression_format: 'gzip', 'zip' or 'none' (aliases such as 'gz' accepted)

    Returns:
        Path to the compressed file (``path`` itself for 'none')

    Raises:
        CompressionFailed: If the compressed file cannot be written
        ValueError: If compression_format is invalid
    """
    compression_format = normalize_format(compression_format)

    if compression_format == 'none':
        return path

    if not os.path.isfile(path):
        raise CompressionFailed(f"Backup file not found: {path}")

    compressed_path = path + EXTENSIONS[compression_format]

    try:
        if compression_format == 'gzip':
            _compress_gzip(path, compressed_path)
        else:
            _compress_zip(path, compressed_path)
    except Exception as e:
        # Clean up partial archive, keep the original dump
        if os.path.exists(compressed_path):
            try:
                os.remove(compressed_path)
            except OSError:
                pass
        raise CompressionFailed(f"Failed to compress {os.path.basename(path)}: {e}")

    try:
        os.remove(path)
    except OSError as e:
        raise CompressionFailed(f"Compressed to {compressed_path} but could not remove {path}: {e}")

    return compressed_path


def _compress_gzip(source_path: str, compressed_path: str):
    """
    Write a gzip copy of the source file.

    The whole file is read into memory, which is fine for typical dumps but
    not for very large databases.
    """
    with open(source_path, 'rb') as f:
        content = f.read()

    with open(compressed_path, 'wb') as f:
        f.write(gzip.compress(content, compresslevel=9))


def _compress_zip(source_path: str, compressed_path: str):
    with zipfile.ZipFile(compressed_path, 'w', zipfile.ZIP_DEFLATED, compresslevel=9) as zipf:
        zipf.write(source_path, os.path.basename(source_path))


def decompress(path: str, dest_path: str) -> str:
    """
    Extract a compressed artifact.

    Args:
        path: Path to a .gz or .zip artifact
        dest_path: File to write the extracted dump to

    Returns:
        dest_path

    Raises:
        CompressionFailed: If the archive cannot be read
    """
    try:
        if path.endswith('.gz'):
            with gzip.open(path, 'rb') as src, open(dest_path, 'wb') as dst:
                shutil.copyfileobj(src, dst)
        elif path.endswith('.zip'):
            with zipfile.ZipFile(path, 'r') as zipf:
                names = zipf.namelist()
                if len(names) != 1:
                    raise CompressionFailed(f"Expected a single entry in {path}, found {len(names)}")
                with zipf.open(names[0]) as src, open(dest_path, 'wb') as dst:
                    shutil.copyfileobj(src, dst)
        else:
            shutil.copy2(path, dest_path)
    except CompressionFailed:
        raise
    except Exception as e:
        raise CompressionFailed(f"Failed to extract {path}: {e}")

    return dest_path


def generate_backup_filename(database: str, custom: Optional[str] = None,
                             now: Optional[datetime] = None) -> str:
    """
    Generate the backup filename.

    Format: {database}_{YYYY-MM-DD_HH-mm-ss}.sql

    Args:
        database: Database name (for SQLite, the file's base name is used)
        custom: Custom filename, returned unchanged if given
        now: Timestamp to use (defaults to the current time)

    Returns:
        Filename (without path)
    """
    if custom:
        return os.path.basename(custom)

    timestamp = (now or datetime.now()).strftime('%Y-%m-%d_%H-%M-%S')

    name = os.path.splitext(os.path.basename(database))[0] or 'database'
    safe_name = "".join(
        c if c.isalnum() or c in ('-', '_') else '_'
        for c in name
    )

    return f"{safe_name}_{timestamp}.sql"


def get_artifact_size(path: str) -> int:
    """
    Get the size of a backup file in bytes.

    Raises:
        CompressionFailed: If file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(path)
    except OSError as e:
        raise CompressionFailed(f"Failed to get size of {path}: {e}")
