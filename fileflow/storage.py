import logging
import os
from pathlib import Path
from typing import BinaryIO, Iterable, NamedTuple, Tuple, Union

from .filenames import candidate_names, decode_display_name

logger = logging.getLogger("fileflow.storage")


def _resolve_env_path(env_key: str, default: Path) -> Path:
    """Resolve an environment-provided path or fall back to *default*."""

    value = os.environ.get(env_key)
    if value:
        return Path(value).expanduser().resolve()
    return default.resolve()


def _safe_int_env(key: str, default: int, min_value: int = 1) -> int:
    """Safely parse integer environment variable with error handling."""
    try:
        return max(min_value, int(os.environ.get(key, str(default))))
    except (TypeError, ValueError):
        logging.getLogger("fileflow.config").warning(
            "Invalid value for %s: %s. Using default: %d",
            key, os.environ.get(key), default
        )
        return default


STORAGE_ROOT = _resolve_env_path("FILEFLOW_STORAGE_ROOT", Path.cwd())
UPLOADS_DIR = _resolve_env_path("FILEFLOW_UPLOADS_DIR", STORAGE_ROOT / "uploads")
LOGS_DIR = _resolve_env_path("FILEFLOW_LOGS_DIR", STORAGE_ROOT / "logs")

CHUNK_SIZE_BYTES = 1024 * 1024  # 1 MB chunks for streaming
BYTES_PER_MB = 1024 * 1024
DEFAULT_MAX_FILE_SIZE_MB = 100
MAX_FILE_SIZE_BYTES = _safe_int_env("FILEFLOW_MAX_FILE_SIZE_MB", DEFAULT_MAX_FILE_SIZE_MB) * BYTES_PER_MB


class UploadTooLargeError(Exception):
    """Raised when a single uploaded file exceeds the per-file size limit."""

    def __init__(self, filename: str, limit_bytes: int) -> None:
        super().__init__(f"{filename} exceeds {limit_bytes} bytes")
        self.filename = filename
        self.limit_bytes = limit_bytes


class InvalidFilenameError(ValueError):
    """Raised when a filename cannot exist on any filesystem (embedded NUL)."""

    def __init__(self, filename: str) -> None:
        super().__init__(f"invalid filename {filename!r}")
        self.filename = filename


class StoredUpload(NamedTuple):
    display_name: str
    stored_name: str
    size: int


def ensure_directories() -> None:
    UPLOADS_DIR.mkdir(parents=True, exist_ok=True)
    LOGS_DIR.mkdir(parents=True, exist_ok=True)


def get_storage_path(stored_name: str) -> Path:
    return UPLOADS_DIR / stored_name


def claim_stored_name(directory: Path, name: str) -> Tuple[str, BinaryIO]:
    """Create the first free candidate for *name* and return it opened for writing.

    Creation uses ``O_EXCL`` so two concurrent uploads of the same name can
    never both claim it.
    """

    for candidate in candidate_names(name):
        try:
            fd = os.open(directory / candidate, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
        except FileExistsError:
            continue
        return candidate, os.fdopen(fd, "wb")
    raise FileExistsError(name)  # pragma: no cover - candidate_names never ends


def store_upload(
    raw_name: Union[str, bytes],
    stream: BinaryIO,
    max_bytes: int = MAX_FILE_SIZE_BYTES,
) -> StoredUpload:
    """Write an uploaded stream into the uploads directory under a free name."""

    display_name = decode_display_name(raw_name)
    if "\x00" in display_name:
        raise InvalidFilenameError(display_name)
    UPLOADS_DIR.mkdir(parents=True, exist_ok=True)
    stored_name, destination = claim_stored_name(UPLOADS_DIR, display_name)
    path = get_storage_path(stored_name)

    written = 0
    try:
        with destination:
            while True:
                chunk = stream.read(CHUNK_SIZE_BYTES)
                if not chunk:
                    break
                if max_bytes and written + len(chunk) > max_bytes:
                    raise UploadTooLargeError(display_name, max_bytes)
                destination.write(chunk)
                written += len(chunk)
    except Exception:
        path.unlink(missing_ok=True)
        raise

    logger.info(
        "file_stored original=%s stored_name=%s size=%d",
        display_name,
        stored_name,
        written,
    )
    return StoredUpload(display_name, stored_name, written)


def remove_stored_file(stored_name: str) -> bool:
    """Unlink a stored file, logging rather than raising on failure."""

    file_path = get_storage_path(stored_name)
    try:
        file_path.unlink()
    except FileNotFoundError:
        logger.info("file_delete_missing stored_name=%s", stored_name)
        return True
    except OSError as error:
        logger.warning(
            "file_delete_disk_failed stored_name=%s path=%s error=%s",
            stored_name,
            file_path,
            error,
        )
        return False
    return True


def discard_uploads(uploads: Iterable[StoredUpload]) -> None:
    """Remove files written earlier in a request that is being abandoned."""

    for upload in uploads:
        if remove_stored_file(upload.stored_name):
            logger.info("upload_rolled_back stored_name=%s", upload.stored_name)
