"""Upload error taxonomy.

Every failure raised by the assembler is one of these kinds so callers can
tell user-correctable input errors apart from infrastructure errors.
"""
from typing import Optional


class UploadError(Exception):
    kind = "UploadError"
    status_code = 400
    # Terminal errors reject the session and delete its staging artifact
    terminal = False

    def __init__(self, message: str, session_id: Optional[str] = None):
        self.message = message
        self.session_id = session_id
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"status": "error", "kind": self.kind, "message": self.message}


class UnknownSession(UploadError):
    kind = "UnknownSession"
    status_code = 404


class InvalidIndex(UploadError):
    kind = "InvalidIndex"
    status_code = 400


class ChunkConflict(UploadError):
    kind = "ChunkConflict"
    status_code = 409


class SessionClosed(UploadError):
    kind = "SessionClosed"
    status_code = 409


class IncompleteUpload(UploadError):
    kind = "IncompleteUpload"
    status_code = 409


class SizeExceeded(UploadError):
    kind = "SizeExceeded"
    status_code = 413
    terminal = True


class DisallowedExtension(UploadError):
    kind = "DisallowedExtension"
    status_code = 415
    terminal = True


class DisallowedMimeType(UploadError):
    kind = "DisallowedMimeType"
    status_code = 415
    terminal = True


class MalformedImage(UploadError):
    kind = "MalformedImage"
    status_code = 422
    terminal = True


class StorageFailure(UploadError):
    kind = "StorageFailure"
    status_code = 503
