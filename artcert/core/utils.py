import re
import os
import uuid
import hashlib
from datetime import datetime, timezone


def new_certification_id() -> str:
    """Generate a new globally unique certification ID."""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def calculate_content_hash(data: bytes, algorithm: str = "sha256") -> str:
    """Hash raw upload bytes; used to key stored files."""
    hash_obj = hashlib.new(algorithm)
    hash_obj.update(data)
    return hash_obj.hexdigest()


def format_file_size(size_bytes: int) -> str:
    """Format file size in human-readable format."""
    if size_bytes == 0:
        return "0 B"

    size_names = ["B", "KB", "MB", "GB", "TB"]
    i = 0
    while size_bytes >= 1024 and i < len(size_names) - 1:
        size_bytes /= 1024.0
        i += 1

    return f"{size_bytes:.1f} {size_names[i]}"


def sanitize_filename(filename: str) -> str:
    """Sanitize filename for safe storage."""
    if not filename:
        return "unnamed_file"

    # Keep only alphanumeric, dots, dashes, underscores
    sanitized = re.sub(r'[^\w\-_\.]', '_', filename)
    sanitized = re.sub(r'_{2,}', '_', sanitized)

    # No hidden files
    if sanitized.startswith('.'):
        sanitized = 'file_' + sanitized

    if len(sanitized) > 255:
        name, ext = os.path.splitext(sanitized)
        sanitized = name[:255 - len(ext)] + ext

    return sanitized


def create_artwork_storage_path(content_hash: str, filename: str) -> str:
    """Content-addressed storage path: artwork/<hash[:2]>/<hash>_<filename>."""
    return f"artwork/{content_hash[:2]}/{content_hash}_{sanitize_filename(filename)}"
