import logging
from typing import Any, Dict, Optional
from fastapi import APIRouter, Depends, UploadFile, File, Form, HTTPException, status
from app.api.deps import get_assembler, get_client_address
from app.core.security import (
    get_current_user_id, get_jwt_payload, verify_csrf_token, check_upload_access
)
from app.schemas.upload import (
    ChunkUploadResponse, ChunkUploadResponseData, CompleteSessionResponse,
    CompleteSessionResponseData, SessionStatusData, SessionStatusResponse, AbortSessionResponse
)
from app.services.assembler import UploadAssembler

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(verify_csrf_token)])


def authorize_session(
    upload_session_id: str,
    assembler: UploadAssembler,
    payload: Dict[str, Any],
    user_id: str,
) -> None:
    """
    Sessions of another user, or outside the token's upload_id claim, look like missing ones
    """
    owner = assembler.owner_of(upload_session_id)
    if not check_upload_access(payload, upload_session_id) or (owner is not None and owner != user_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Upload session not found or access denied.")


@router.put("/{upload_session_id}/chunks/{chunk_index}", response_model=ChunkUploadResponse)
async def upload_chunk(
    upload_session_id: str,
    chunk_index: int,
    chunk: UploadFile = File(...),
    file_name: str = Form(...),
    total_size: int = Form(...),
    total_chunks: int = Form(...),
    payload: Dict[str, Any] = Depends(get_jwt_payload),
    user_id: str = Depends(get_current_user_id),
    client_address: Optional[str] = Depends(get_client_address),
    assembler: UploadAssembler = Depends(get_assembler),
):
    """
    PUT /uploads/{upload_session_id}/chunks/{chunk_index} - Stage one chunk; index 0 opens the session
    """
    authorize_session(upload_session_id, assembler, payload, user_id)
    chunk_data = await chunk.read()
    result = await assembler.append_chunk(
        upload_session_id,
        chunk_index,
        chunk_data,
        declared_name=file_name,
        total_size=total_size,
        total_chunks=total_chunks,
        owner=user_id,
        client_address=client_address,
    )
    return ChunkUploadResponse(
        message="Duplicate chunk ignored." if result.duplicate else "Chunk uploaded successfully.",
        data=ChunkUploadResponseData(
            upload_session_id=result.session_id,
            chunk_index=result.chunk_index,
            duplicate=result.duplicate,
            received_chunks=result.received_chunks,
            expected_chunks=result.expected_chunks,
            total_bytes_written=result.total_bytes_written,
        ),
    )


@router.post("/{upload_session_id}/finalize", response_model=CompleteSessionResponse)
async def finalize_upload(
    upload_session_id: str,
    payload: Dict[str, Any] = Depends(get_jwt_payload),
    user_id: str = Depends(get_current_user_id),
    client_address: Optional[str] = Depends(get_client_address),
    assembler: UploadAssembler = Depends(get_assembler),
):
    """
    POST /uploads/{upload_session_id}/finalize - Validate the assembled file and store it
    """
    authorize_session(upload_session_id, assembler, payload, user_id)
    file_name = await assembler.finalize(upload_session_id, client_address=client_address, owner=user_id)
    snapshot = assembler.status(upload_session_id)
    return CompleteSessionResponse(
        data=CompleteSessionResponseData(
            upload_session_id=upload_session_id,
            file_name=file_name,
            location=snapshot.location,
            mime_type=snapshot.mime_type,
        )
    )


@router.get("/{upload_session_id}", response_model=SessionStatusResponse)
async def get_upload_status(
    upload_session_id: str,
    payload: Dict[str, Any] = Depends(get_jwt_payload),
    user_id: str = Depends(get_current_user_id),
    assembler: UploadAssembler = Depends(get_assembler),
):
    """
    GET /uploads/{upload_session_id} - Progress of an upload session
    """
    authorize_session(upload_session_id, assembler, payload, user_id)
    snapshot = assembler.status(upload_session_id)
    return SessionStatusResponse(
        data=SessionStatusData(
            upload_session_id=snapshot.session_id,
            state=snapshot.status.value,
            declared_name=snapshot.declared_name,
            total_size=snapshot.total_size,
            expected_chunks=snapshot.expected_chunks,
            received_chunks=list(snapshot.received_indices),
            missing_chunks=list(snapshot.missing_indices),
            total_bytes_written=snapshot.total_bytes_written,
            file_name=snapshot.permanent_name,
            error_kind=snapshot.error_kind,
        )
    )


@router.delete("/{upload_session_id}", response_model=AbortSessionResponse)
async def abort_upload(
    upload_session_id: str,
    payload: Dict[str, Any] = Depends(get_jwt_payload),
    user_id: str = Depends(get_current_user_id),
    client_address: Optional[str] = Depends(get_client_address),
    assembler: UploadAssembler = Depends(get_assembler),
):
    """
    DELETE /uploads/{upload_session_id} - Abort an open upload session
    """
    authorize_session(upload_session_id, assembler, payload, user_id)
    await assembler.abort(upload_session_id, client_address=client_address, owner=user_id)
    return AbortSessionResponse()
