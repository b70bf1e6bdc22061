import os
import shutil
import logging

logger = logging.getLogger(__name__)

ASSEMBLED_NAME = "assembled"


class StagingArea:
    """
    Per-session chunk storage under a root that is never served.

    Each session owns one directory holding a file per received chunk; the
    chunks are concatenated in index order into a single artifact at finalize.
    All methods here are blocking and meant to run in a worker thread.
    """

    def __init__(self, root: str):
        self.root = root

    def session_dir(self, upload_session_id: str) -> str:
        return os.path.join(self.root, upload_session_id)

    def chunk_path(self, upload_session_id: str, chunk_index: int) -> str:
        return os.path.join(self.session_dir(upload_session_id), f"chunk_{chunk_index}")

    def assembled_path(self, upload_session_id: str) -> str:
        return os.path.join(self.session_dir(upload_session_id), ASSEMBLED_NAME)

    def save_chunk(self, upload_session_id: str, chunk_index: int, chunk_data: bytes) -> str:
        """Write a chunk atomically: either the whole chunk lands or nothing does."""
        base_path = self.session_dir(upload_session_id)

        # the session path must be a directory
        if os.path.exists(base_path) and os.path.isfile(base_path):
            os.remove(base_path)

        os.makedirs(base_path, exist_ok=True)
        chunk_path = self.chunk_path(upload_session_id, chunk_index)
        tmp_path = f"{chunk_path}.part"

        try:
            with open(tmp_path, "wb") as f:
                f.write(chunk_data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, chunk_path)
        except OSError:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

        logger.debug(f"Chunk saved successfully: {chunk_path} ({len(chunk_data)} bytes)")
        return chunk_path

    def merge_chunks(self, upload_session_id: str, total_chunks: int) -> dict:
        """Concatenate chunks 0..total_chunks-1 into the session's assembled artifact."""
        merged_file_path = self.assembled_path(upload_session_id)
        logger.info(f"Starting merge of {total_chunks} chunks into {merged_file_path}")
        total_size = 0

        try:
            with open(merged_file_path, "wb") as merged:
                for i in range(total_chunks):
                    with open(self.chunk_path(upload_session_id, i), "rb") as chunk_file:
                        shutil.copyfileobj(chunk_file, merged)
                        total_size += chunk_file.tell()
        except OSError:
            # remove incomplete output
            if os.path.exists(merged_file_path):
                os.remove(merged_file_path)
                logger.info(f"Removed incomplete output file: {merged_file_path}")
            raise

        logger.info(
            f"Merge completed: {total_chunks} chunks, "
            f"{total_size/1024/1024:.2f}MB -> {merged_file_path}"
        )
        return {"path": merged_file_path, "total_size": total_size}

    def cleanup_session(self, upload_session_id: str) -> dict:
        base_path = self.session_dir(upload_session_id)
        if not os.path.exists(base_path):
            return {"files_removed": 0, "total_size": 0}

        files = os.listdir(base_path)
        total_size = sum(os.path.getsize(os.path.join(base_path, f)) for f in files)
        shutil.rmtree(base_path)
        logger.info(
            f"Cleaned up staging directory {base_path}: "
            f"{len(files)} files, {total_size/1024/1024:.2f}MB"
        )
        return {"files_removed": len(files), "total_size": total_size}
