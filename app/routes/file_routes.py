import mimetypes
from typing import AsyncIterator, Optional
from urllib.parse import quote, urlencode

import aiofiles
from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile, status
from fastapi.responses import StreamingResponse

from app.models.files import FileEntryOut, FileListOut, MessageOut, PathIn, TokenOut, UploadOut
from app.services.storage_service import ResolvedFile, StorageService
from logger_config import setup_logger

logger = setup_logger()

router = APIRouter()

CHUNK_SIZE = 8192  # 8KB chunks


def get_storage_service(request: Request) -> StorageService:
    return request.app.state.storage_service


def build_url(request: Request, action: str, canonical_path: str, token: str) -> str:
    base_url = request.app.state.storage_service.config.public_base_url
    return f"{base_url}/{action}/{quote(canonical_path)}?{urlencode({'token': token})}"


async def iter_upload(file: UploadFile) -> AsyncIterator[bytes]:
    while chunk := await file.read(CHUNK_SIZE):
        yield chunk


def stream_file(resolved: ResolvedFile, headers: Optional[dict] = None) -> StreamingResponse:
    media_type, _ = mimetypes.guess_type(resolved.display_name)

    async def file_iterator():
        async with aiofiles.open(resolved.absolute_path, 'rb') as file:
            while chunk := await file.read(CHUNK_SIZE):
                yield chunk

    return StreamingResponse(
        file_iterator(),
        media_type=media_type or "application/octet-stream",
        headers=headers,
    )


def attachment_header(display_name: str) -> str:
    fallback = display_name.encode("ascii", "replace").decode("ascii").replace('"', "_")
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(display_name)}"


@router.post("/upload", status_code=status.HTTP_201_CREATED, response_model=UploadOut)
async def upload_file(
    request: Request,
    file: Optional[UploadFile] = File(None),
    filePath: Optional[str] = Form(None),
    service: StorageService = Depends(get_storage_service),
):
    """Store an uploaded file under the directory named by the filePath header."""
    if file is None or not file.filename:
        raise HTTPException(status_code=400, detail="No file uploaded.")

    directory = request.headers.get("filepath")
    if directory is None:
        directory = filePath

    result = await service.upload(directory, iter_upload(file), file.filename, file.content_type)
    return UploadOut(
        message="File uploaded successfully.",
        token=result.token,
        filePath=result.canonical_path,
        url=build_url(request, "storage", result.canonical_path, result.token),
    )


@router.get("/storage/{file_path:path}")
async def view_file(
    file_path: str,
    token: Optional[str] = None,
    service: StorageService = Depends(get_storage_service),
):
    resolved = await service.resolve(file_path, token)
    logger.info(f"Serving {resolved.canonical_path}")
    return stream_file(resolved)


@router.post("/download/{file_path:path}")
async def download_file(
    file_path: str,
    token: Optional[str] = None,
    service: StorageService = Depends(get_storage_service),
):
    resolved = await service.resolve(file_path, token)
    logger.info(f"Downloading {resolved.canonical_path}")
    return stream_file(
        resolved,
        headers={"content-disposition": attachment_header(resolved.display_name)},
    )


async def _list(service: StorageService, directory: Optional[str]) -> FileListOut:
    entries = await service.list(directory)
    if not entries:
        raise HTTPException(status_code=404, detail="No file exists.")
    return FileListOut(
        message="Files listed successfully.",
        files=[
            FileEntryOut(
                name=entry.display_name,
                kind=entry.kind,
                path=entry.relative_path,
                missingMetadata=entry.missing_metadata,
            )
            for entry in entries
        ],
    )


@router.post("/listFiles", status_code=status.HTTP_201_CREATED, response_model=FileListOut)
async def list_root(service: StorageService = Depends(get_storage_service)):
    return await _list(service, None)


@router.post("/listFiles/{directory:path}", status_code=status.HTTP_201_CREATED, response_model=FileListOut)
async def list_directory(directory: str, service: StorageService = Depends(get_storage_service)):
    return await _list(service, directory)


@router.post("/getToken", status_code=status.HTTP_201_CREATED, response_model=TokenOut)
async def get_token(
    body: PathIn,
    request: Request,
    service: StorageService = Depends(get_storage_service),
):
    if not body.path:
        raise HTTPException(status_code=403, detail="File path is required.")

    record = await service.issue_token(body.path)
    return TokenOut(
        message="Token fetched successfully.",
        token=record.token,
        url=build_url(request, "storage", record.canonical_path, record.token),
        downloadURL=build_url(request, "download", record.canonical_path, record.token),
    )


@router.post("/delete", status_code=status.HTTP_201_CREATED, response_model=MessageOut)
async def delete_path(body: PathIn, service: StorageService = Depends(get_storage_service)):
    if not body.path:
        raise HTTPException(status_code=403, detail="Path is missing.")

    await service.delete(body.path)
    return MessageOut(message="File deleted successfully.")
