from fastapi import APIRouter, Depends, File, UploadFile

from api.dependencies import get_db, get_services, get_session_id
from db.chat_repository import ChatRepository
from db.document_repository import DocumentRepository
from db.models import Document, utcnow
from rag_agent.exception.custom_exception import UploadValidationError
from rag_agent.logger import GLOBAL_LOGGER as log
from rag_agent.src.document_ingestion.pipeline import IngestionJob
from rag_agent.utils.file_io import safe_filename, validate_upload
from rag_agent.utils.identifiers import blob_key_for, generate_document_id

router = APIRouter()


@router.post("/upload")
async def upload_document(
    file: UploadFile | None = File(None),
    session_id: str = Depends(get_session_id),
    services=Depends(get_services),
    db=Depends(get_db),
):
    """
    Upload endpoint:
      - Validates type and size before anything is stored
      - Writes the raw file to blob storage
      - Registers the document as pending
      - Starts the ingestion pipeline in the background
    """
    if file is None:
        raise UploadValidationError("No file provided")

    # read one byte past the limit so oversize files are detected without buffering them whole
    data = await file.read(services.max_upload_bytes + 1)
    validate_upload(
        file.filename,
        file.content_type,
        len(data),
        allowed_content_types=services.allowed_content_types,
        max_bytes=services.max_upload_bytes,
    )

    await services.lifecycle.open(session_id)

    document_id = generate_document_id()
    storage_key = blob_key_for(session_id, document_id, safe_filename(file.filename))
    await services.blob_store.put(storage_key, data)

    doc = await DocumentRepository().create_document(
        db,
        Document(
            id=document_id,
            session_id=session_id,
            filename=file.filename,
            storage_key=storage_key,
            uploaded_at=utcnow(),
            status="pending",
            total_chunks=0,
            file_size=len(data),
            content_type=file.content_type,
            details={"step": "uploading", "progress": 0, "message": "Queued for processing"},
        ),
    )
    await ChatRepository().adjust_document_count(db, session_id, 1)

    services.runner.schedule(IngestionJob.from_document(doc))

    log.info(
        "Upload accepted | session_id=%s | document_id=%s | filename=%s | size=%d",
        session_id,
        document_id,
        file.filename,
        len(data),
    )
    return {
        "success": True,
        "documentId": document_id,
        "filename": file.filename,
        "message": "Document uploaded successfully. Processing started.",
    }
