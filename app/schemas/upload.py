from pydantic import BaseModel
from typing import List, Optional

class ChunkUploadResponseData(BaseModel):
    upload_session_id: str
    chunk_index: int
    duplicate: bool
    received_chunks: int
    expected_chunks: int
    total_bytes_written: int

class ChunkUploadResponse(BaseModel):
    status: str = "success"
    message: str = "Chunk uploaded successfully."
    data: ChunkUploadResponseData

class CompleteSessionResponseData(BaseModel):
    upload_session_id: str
    file_name: str
    location: Optional[str] = None
    mime_type: Optional[str] = None

class CompleteSessionResponse(BaseModel):
    status: str = "success"
    message: str = "File upload completed."
    data: CompleteSessionResponseData

class SessionStatusData(BaseModel):
    upload_session_id: str
    state: str
    declared_name: str
    total_size: int
    expected_chunks: int
    received_chunks: List[int]
    missing_chunks: List[int]
    total_bytes_written: int
    file_name: Optional[str] = None
    error_kind: Optional[str] = None

class SessionStatusResponse(BaseModel):
    status: str = "success"
    message: str = "Upload session status."
    data: SessionStatusData

class AbortSessionResponse(BaseModel):
    status: str = "success"
    message: str = "Upload session aborted and staged chunks deleted."
