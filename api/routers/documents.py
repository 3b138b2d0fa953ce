from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from api.dependencies import get_db, get_services, get_session_id
from db.document_repository import DocumentRepository
from db.models import Document

router = APIRouter()


def _not_found() -> JSONResponse:
    return JSONResponse(status_code=404, content={"success": False, "error": "Document not found"})


def _serialize(doc: Document) -> dict:
    details = doc.details or {}
    out = {
        "id": doc.id,
        "filename": doc.filename,
        "status": doc.status,
        "totalChunks": doc.total_chunks,
        "progress": details.get("progress", 0),
    }
    if details.get("message"):
        out["message"] = details["message"]
    if doc.status == "error":
        out["error"] = details.get("error")
    return out


@router.get("/documents")
async def list_documents(session_id: str = Depends(get_session_id), db=Depends(get_db)):
    docs = await DocumentRepository().list_documents(db, session_id)
    return {"success": True, "documents": [_serialize(d) for d in docs]}


@router.get("/documents/{document_id}")
async def get_document(
    document_id: str, session_id: str = Depends(get_session_id), db=Depends(get_db)
):
    doc = await DocumentRepository().get_document(db, session_id, document_id)
    if doc is None:
        return _not_found()
    return {"success": True, "document": _serialize(doc)}


@router.delete("/documents/{document_id}")
async def delete_document(
    document_id: str,
    session_id: str = Depends(get_session_id),
    services=Depends(get_services),
):
    deleted = await services.consistency.delete_document(document_id, session_id)
    if deleted is None:
        return _not_found()
    return {"success": True, "documentId": document_id, "filename": deleted.filename}
