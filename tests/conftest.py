"""Shared fixtures for the upload assembler tests."""

import pytest

from app.services.assembler import UploadAssembler
from app.services.audit import MemoryAuditSink
from app.services.policy import UploadPolicy
from app.services.staging import StagingArea
from app.services.storage.internal import InternalStorage

from helpers import IDLE_TIMEOUT, PDF_BYTES, FakeClock, make_image


@pytest.fixture
def png_bytes():
    return make_image("PNG")


@pytest.fixture
def pdf_bytes():
    return PDF_BYTES


@pytest.fixture
def policy():
    return UploadPolicy(
        max_size=1024,
        allowed_extensions=frozenset({"png"}),
        allowed_mime_types=frozenset({"image/png"}),
    )


@pytest.fixture
def staging_root(tmp_path):
    return tmp_path / "staging"


@pytest.fixture
def store_root(tmp_path):
    return tmp_path / "store"


@pytest.fixture
def audit():
    return MemoryAuditSink()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def assembler(staging_root, store_root, policy, audit, clock):
    return UploadAssembler(
        staging=StagingArea(str(staging_root)),
        storage=InternalStorage(str(store_root)),
        policy=policy,
        audit=audit,
        idle_timeout=IDLE_TIMEOUT,
        clock=clock,
    )
