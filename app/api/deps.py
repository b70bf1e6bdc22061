from fastapi import Request
from app.core.config import Settings
from app.services.assembler import UploadAssembler


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_assembler(request: Request) -> UploadAssembler:
    return request.app.state.assembler


def get_client_address(request: Request):
    return request.client.host if request.client else None
