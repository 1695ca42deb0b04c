import logging
import secrets
import string
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, localcontext
from typing import Dict, List, Optional
from urllib.parse import quote

from .storage import remove_stored_file

logger = logging.getLogger("fileflow.registry")

SIZE_UNITS = ("Bytes", "KB", "MB", "GB")
_ID_ALPHABET = string.digits + string.ascii_lowercase
# Characters encodeURIComponent leaves alone in addition to quote()'s defaults.
_DOWNLOAD_PATH_SAFE = "!*'()"


def format_file_size(num_bytes: int) -> str:
    """Render a byte count as ``"1.5 KB"`` style text."""

    if num_bytes == 0:
        return "0 Bytes"
    index = 0
    while index < len(SIZE_UNITS) - 1 and num_bytes >= 1024 ** (index + 1):
        index += 1
    # Quotients are dyadic, so with enough precision ties are exact and round up.
    with localcontext() as ctx:
        ctx.prec = 60
        quotient = Decimal(num_bytes) / Decimal(1024) ** index
        rounded = quotient.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    value = f"{rounded:f}".rstrip("0").rstrip(".")
    return f"{value} {SIZE_UNITS[index]}"


def generate_file_id() -> str:
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"{int(time.time() * 1000)}-{suffix}"


def download_path(stored_name: str) -> str:
    return f"/downloads/{quote(stored_name, safe=_DOWNLOAD_PATH_SAFE)}"


@dataclass(frozen=True)
class FileRecord:
    """Metadata for one uploaded file, frozen at upload time."""

    id: str
    display_name: str
    stored_name: str
    size_label: str
    upload_time_label: str
    download_path: str

    @classmethod
    def create(
        cls,
        display_name: str,
        stored_name: str,
        size: int,
        uploaded_at: Optional[datetime] = None,
    ) -> "FileRecord":
        uploaded_at = uploaded_at or datetime.now()
        return cls(
            id=generate_file_id(),
            display_name=display_name,
            stored_name=stored_name,
            size_label=format_file_size(size),
            upload_time_label=uploaded_at.strftime("%x %X"),
            download_path=download_path(stored_name),
        )

    def to_dict(self) -> Dict[str, str]:
        return {
            "id": self.id,
            "name": self.display_name,
            "size": self.size_label,
            "uploadTime": self.upload_time_label,
            "filename": self.stored_name,
            "path": self.download_path,
        }


class FileRegistry:
    """In-memory, upload-ordered list of file records.

    The registry lives as long as the process. Mutations are serialised with a
    lock because requests may be served on parallel threads.
    """

    def __init__(self) -> None:
        self._records: List[FileRecord] = []
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def append(self, record: FileRecord) -> None:
        with self._lock:
            self._records.append(record)

    def list(self) -> List[FileRecord]:
        with self._lock:
            return list(self._records)

    def remove_by_id(self, file_id: str) -> bool:
        """Remove the first record with *file_id* and unlink its stored file.

        Returns False when no record matches. A failed unlink is logged by the
        storage layer and still counts as a successful removal.
        """

        with self._lock:
            for index, record in enumerate(self._records):
                if record.id == file_id:
                    del self._records[index]
                    break
            else:
                return False

        remove_stored_file(record.stored_name)
        logger.info(
            "file_unregistered file_id=%s stored_name=%s",
            record.id,
            record.stored_name,
        )
        return True

    def to_payload(self) -> List[Dict[str, str]]:
        return [record.to_dict() for record in self.list()]
