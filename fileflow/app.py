import logging
import os
import re
import socket
import uuid
from contextlib import contextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Iterator, List

from flask import (
    Flask,
    Response,
    current_app,
    g,
    has_request_context,
    jsonify,
    request,
    send_from_directory,
)
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.datastructures import FileStorage
from werkzeug.exceptions import HTTPException

from .registry import FileRecord, FileRegistry
from .storage import (
    LOGS_DIR,
    MAX_FILE_SIZE_BYTES,
    UPLOADS_DIR,
    InvalidFilenameError,
    StoredUpload,
    UploadTooLargeError,
    _safe_int_env,
    discard_uploads,
    ensure_directories,
    store_upload,
)

LOG_FILE_MAX_BYTES = 5 * 1024 * 1024  # 5 MB max log file size
LOG_FILE_BACKUP_COUNT = 3  # Number of log file backups to keep
REGISTRY_EXTENSION = "fileflow.registry"

DEFAULT_PORT = 3000
HOST = os.environ.get("FILEFLOW_HOST", "0.0.0.0")
PORT = _safe_int_env("FILEFLOW_PORT", DEFAULT_PORT)
UPLOAD_RATE_LIMIT_PER_MINUTE = _safe_int_env("FILEFLOW_RATE_LIMIT_UPLOADS_PER_MINUTE", 120)
DELETE_RATE_LIMIT_PER_MINUTE = _safe_int_env("FILEFLOW_RATE_LIMIT_DELETES_PER_MINUTE", 300)

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
numeric_level = getattr(logging, LOG_LEVEL, logging.INFO)
logging.basicConfig(
    level=numeric_level,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

_CONTROL_CHAR_PATTERN = re.compile(r"[\x00-\x1f\x7f-\x9f\n\r]")


def sanitize_log_value(value: Any) -> Any:
    """Remove control characters from log values to prevent log injection."""

    if isinstance(value, str):
        return _CONTROL_CHAR_PATTERN.sub("", value)
    return value


class RequestAwareLogger:
    """Logger wrapper that injects request IDs into log messages."""

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger

    def _with_request(self, message: str) -> str:
        if has_request_context():
            request_id = getattr(g, "request_id", None)
            if request_id:
                return f"request_id={request_id} {message}"
        return message

    def debug(self, msg: str, *args, **kwargs) -> None:
        self._logger.debug(self._with_request(msg), *args, **kwargs)

    def info(self, msg: str, *args, **kwargs) -> None:
        self._logger.info(self._with_request(msg), *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs) -> None:
        self._logger.warning(self._with_request(msg), *args, **kwargs)

    def error(self, msg: str, *args, **kwargs) -> None:
        self._logger.error(self._with_request(msg), *args, **kwargs)

    def exception(self, msg: str, *args, **kwargs) -> None:
        self._logger.exception(self._with_request(msg), *args, **kwargs)

    def __getattr__(self, name: str):  # pragma: no cover - passthrough
        return getattr(self._logger, name)


def _configure_file_logging() -> Path:
    """Attach a rotating file handler for application and lifecycle logs."""

    ensure_directories()
    log_path = LOGS_DIR / "application.log"
    root_logger = logging.getLogger()
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")

    for handler in root_logger.handlers:
        if isinstance(handler, RotatingFileHandler) and getattr(handler, "baseFilename", "") == str(log_path):
            handler.setLevel(numeric_level)
            handler.setFormatter(formatter)
            return log_path

    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=LOG_FILE_MAX_BYTES,
        backupCount=LOG_FILE_BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setLevel(numeric_level)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)
    return log_path


APP_LOG_PATH = _configure_file_logging()

app = Flask(__name__)
# Size is enforced per file while streaming, not per request.
app.config["MAX_CONTENT_LENGTH"] = None
app.config["MAX_FILE_SIZE_BYTES"] = MAX_FILE_SIZE_BYTES
app.json.ensure_ascii = False
app.extensions[REGISTRY_EXTENSION] = FileRegistry()
app.logger.setLevel(numeric_level)

limiter = Limiter(
    app=app,
    key_func=get_remote_address,
    storage_uri=os.environ.get("FILEFLOW_RATE_LIMIT_STORAGE", "memory://"),
)

_base_lifecycle_logger = logging.getLogger("fileflow.lifecycle")
_base_lifecycle_logger.setLevel(numeric_level)
lifecycle_logger = RequestAwareLogger(_base_lifecycle_logger)


def get_registry() -> FileRegistry:
    return current_app.extensions[REGISTRY_EXTENSION]


def upload_rate_limit_string() -> str:
    return f"{UPLOAD_RATE_LIMIT_PER_MINUTE} per minute"


def delete_rate_limit_string() -> str:
    return f"{DELETE_RATE_LIMIT_PER_MINUTE} per minute"


def _close_stream_safely(stream: Any, context: str) -> None:
    """Close an upload/input stream while logging failures."""

    if stream is None or not hasattr(stream, "close"):
        return

    try:
        stream.close()
    except OSError as error:
        lifecycle_logger.warning(
            "stream_close_failed context=%s error=%s",
            context,
            sanitize_log_value(str(error)),
        )


@contextmanager
def upload_stream_handler(file_storage: FileStorage) -> Iterator[FileStorage]:
    """Ensure uploaded file streams are always closed."""

    try:
        yield file_storage
    finally:
        _close_stream_safely(
            getattr(file_storage, "stream", None),
            f"upload_stream_handler filename={sanitize_log_value(file_storage.filename or '')}",
        )


@app.before_request
def add_request_id() -> None:
    """Assign a request identifier for downstream logging."""

    g.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)


@app.after_request
def log_request_completion(response: Response):
    lifecycle_logger.info(
        "request_completed method=%s path=%s status=%d",
        request.method,
        sanitize_log_value(request.path),
        response.status_code,
    )
    return response


@app.after_request
def add_security_headers(response: Response):
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Content-Security-Policy"] = (
        "default-src 'self'; "
        "script-src 'self' 'unsafe-inline'; "
        "style-src 'self' 'unsafe-inline'; "
        "img-src 'self' data:; "
        "connect-src 'self';"
    )
    if hasattr(g, "request_id"):
        response.headers["X-Request-ID"] = g.request_id
    return response


@app.errorhandler(404)
def not_found(error):
    return jsonify({"error": "Not found"}), 404


@app.errorhandler(405)
def method_not_allowed(error):
    return jsonify({"error": "Method not allowed"}), 405


@app.errorhandler(413)
def handle_file_too_large(error):
    return jsonify({"error": "File too large"}), 413


@app.errorhandler(429)
def handle_rate_limit(error):
    description = getattr(error, "description", "Too many requests")
    return jsonify({"error": "Rate limit exceeded", "message": str(description)}), 429


@app.errorhandler(Exception)
def handle_unexpected_error(error):
    if isinstance(error, HTTPException):
        return jsonify({"error": error.description}), error.code
    lifecycle_logger.exception(
        "request_failed method=%s path=%s",
        request.method,
        sanitize_log_value(request.path),
    )
    return jsonify({"error": "Internal server error"}), 500


@app.route("/")
def index():
    return app.send_static_file("index.html")


@app.route("/health")
def health_check():
    writable = UPLOADS_DIR.is_dir() and os.access(UPLOADS_DIR, os.W_OK)
    payload = {
        "status": "healthy" if writable else "degraded",
        "files": len(get_registry()),
        "storage_writable": writable,
    }
    return jsonify(payload), 200 if writable else 503


@app.route("/api/files")
def list_files():
    return jsonify(get_registry().to_payload())


@app.route("/api/upload", methods=["POST"])
@limiter.limit(lambda: upload_rate_limit_string())
def upload_files():
    uploads = [
        upload
        for upload in request.files.getlist("files")
        if isinstance(upload, FileStorage) and upload.filename
    ]
    if not uploads:
        app.logger.warning("upload_failed reason=no_files")
        return jsonify({"error": "No files were uploaded"}), 400

    max_bytes = app.config.get("MAX_FILE_SIZE_BYTES") or 0
    stored: List[StoredUpload] = []
    for upload_storage in uploads:
        with upload_stream_handler(upload_storage) as upload:
            try:
                stored.append(store_upload(upload.filename, upload.stream, max_bytes))
            except UploadTooLargeError as error:
                discard_uploads(stored)
                lifecycle_logger.warning(
                    "upload_rejected reason=too_large filename=%s limit=%d",
                    sanitize_log_value(error.filename),
                    error.limit_bytes,
                )
                return jsonify(
                    {
                        "error": "File too large",
                        "filename": error.filename,
                        "limit_bytes": error.limit_bytes,
                    }
                ), 413
            except InvalidFilenameError as error:
                discard_uploads(stored)
                lifecycle_logger.warning(
                    "upload_rejected reason=invalid_filename filename=%s",
                    sanitize_log_value(error.filename),
                )
                return jsonify({"error": "Invalid filename"}), 400
            except (OSError, ValueError):
                discard_uploads(stored)
                lifecycle_logger.exception(
                    "file_upload_failed filename=%s",
                    sanitize_log_value(upload.filename),
                )
                return jsonify({"error": "Failed to store uploaded files"}), 500

    registry = get_registry()
    for item in stored:
        record = FileRecord.create(item.display_name, item.stored_name, item.size)
        registry.append(record)
        lifecycle_logger.info(
            "file_uploaded file_id=%s name=%s stored_name=%s size=%d",
            record.id,
            sanitize_log_value(record.display_name),
            sanitize_log_value(record.stored_name),
            item.size,
        )

    return jsonify(
        {
            "message": f"Successfully uploaded {len(stored)} file(s)",
            "files": registry.to_payload(),
        }
    )


@app.route("/api/file/<file_id>", methods=["DELETE"])
@limiter.limit(lambda: delete_rate_limit_string())
def delete_file(file_id: str):
    if not get_registry().remove_by_id(file_id):
        lifecycle_logger.warning(
            "file_delete_missing file_id=%s ip=%s",
            sanitize_log_value(file_id),
            request.remote_addr or "unknown",
        )
        return jsonify({"error": "File not found"}), 404

    lifecycle_logger.info(
        "file_deleted file_id=%s ip=%s",
        sanitize_log_value(file_id),
        request.remote_addr or "unknown",
    )
    return jsonify({"message": "File deleted"})


@app.route("/downloads/<path:filename>")
def download(filename: str):
    return send_from_directory(UPLOADS_DIR, filename)


def _lan_address() -> str:
    try:
        return socket.gethostbyname(socket.gethostname())
    except OSError:
        return "127.0.0.1"


def main() -> None:
    ensure_directories()
    startup_logger = logging.getLogger("fileflow.startup")
    startup_logger.info("FileFlow transfer server starting")
    startup_logger.info("Local access: http://localhost:%d", PORT)
    startup_logger.info("LAN access: http://%s:%d", _lan_address(), PORT)
    startup_logger.info("Storage directory: %s", UPLOADS_DIR)
    app.run(host=HOST, port=PORT, debug=False, threaded=True)


if __name__ == "__main__":
    main()
