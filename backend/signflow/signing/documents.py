import asyncio
import uuid
from abc import ABC, abstractmethod
from io import BytesIO
from typing import Optional

from minio import Minio

from signflow.config import settings


def signature_artifact_key(request_id: uuid.UUID, signer_id: uuid.UUID, sha256: str) -> str:
    # Keyed by content so a losing concurrent attempt never replaces the winner's artifact.
    return f"signing/{request_id}/artifacts/{signer_id}-{sha256[:16]}.json"


def final_document_key(request_id: uuid.UUID) -> str:
    return f"signing/{request_id}/final/signed-package.json"


class DocumentStore(ABC):
    """Blob storage for source documents, signer artifacts and final documents.

    References are opaque strings; ``put`` on an existing key overwrites it.
    """

    @abstractmethod
    async def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        ...

    @abstractmethod
    async def get(self, ref: str) -> bytes:
        ...


class MinioDocumentStore(DocumentStore):
    def __init__(self, client: Minio, bucket: str):
        self.client = client
        self.bucket = bucket

    def _put(self, key: str, data: bytes, content_type: str) -> None:
        self.client.put_object(self.bucket, key, BytesIO(data), length=len(data), content_type=content_type)

    def _get(self, ref: str) -> bytes:
        response = self.client.get_object(self.bucket, ref)
        try:
            return response.read()
        finally:
            response.close()
            response.release_conn()

    async def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        await asyncio.to_thread(self._put, key, data, content_type)
        return key

    async def get(self, ref: str) -> bytes:
        return await asyncio.to_thread(self._get, ref)


_minio_client = None
_document_store: Optional[DocumentStore] = None


def get_minio_client() -> Minio:
    global _minio_client
    if _minio_client is None:
        _minio_client = Minio(
            settings.minio_endpoint,
            access_key=settings.minio_root_user,
            secret_key=settings.minio_root_password,
            secure=settings.minio_use_ssl,
        )
        if not _minio_client.bucket_exists(settings.minio_bucket):
            _minio_client.make_bucket(settings.minio_bucket)
    return _minio_client


def get_document_store() -> DocumentStore:
    global _document_store
    if _document_store is None:
        _document_store = MinioDocumentStore(get_minio_client(), settings.minio_bucket)
    return _document_store
