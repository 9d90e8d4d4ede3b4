"""
Curator/admin collaboration side-channel: sticky notes on storefront pages
and curator image uploads awaiting review.

Every mutation goes through roles.require() before touching the store.
"""
import logging
import math
import os
import uuid
from pathlib import Path
from typing import NamedTuple, Optional

from pymongo import ReturnDocument

from database import create_document, ensure_object_id, get_documents, to_str_id, utcnow
from errors import InvalidTransition, NotFoundError, ValidationError
from roles import Role, has_access, require
from schemas import Identity, Note, Upload, UploadStatus

logger = logging.getLogger(__name__)

NOTE_COLORS = ("yellow", "blue", "green", "pink", "orange")
MAX_NOTE_LENGTH = 500

MAX_FILE_SIZE = 10 * 1024 * 1024
ALLOWED_TYPES = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
}

UPLOAD_DIR = os.getenv("UPLOAD_DIR", os.path.join(os.getcwd(), "public", "uploads"))


def clamp_percent(value) -> float:
    try:
        value = float(value)
    except (TypeError, ValueError):
        raise ValidationError("Position must be a number")
    if math.isnan(value):
        raise ValidationError("Position must be a number")
    return max(0.0, min(100.0, value))


class NoteLedger:
    def __init__(self, db):
        self.notes = db["note"]
        self.db = db

    def _get(self, note_id: str) -> dict:
        doc = self.notes.find_one({"_id": ensure_object_id(note_id, "Note")})
        if not doc:
            raise NotFoundError("Note not found")
        return doc

    def create_note(self, content, page, position_x, position_y, color="yellow",
                    author_role=None, author_id: Optional[str] = None) -> Note:
        require(author_role, Role.curator, "creating notes")
        if not content or not str(content).strip():
            raise ValidationError("Note content is required")
        if len(content) > MAX_NOTE_LENGTH:
            raise ValidationError(f"Note content must be at most {MAX_NOTE_LENGTH} characters")
        if not page:
            raise ValidationError("Page is required")
        color = color or "yellow"
        if color not in NOTE_COLORS:
            raise ValidationError(f"Color must be one of {', '.join(NOTE_COLORS)}")

        note = Note(
            content=content,
            author=author_id,
            author_role=str(getattr(author_role, "value", author_role)),
            page=page,
            position_x=clamp_percent(position_x),
            position_y=clamp_percent(position_y),
            color=color,
            resolved=False,
        )
        note_id = create_document(self.db, "note", note)
        logger.info("Note %s created on %s by %s", note_id, page, author_id)
        return Note(**to_str_id(self._get(note_id)))

    def resolve_note(self, note_id: str, resolved: bool, by_role, by_id: Optional[str] = None) -> Note:
        require(by_role, Role.curator, "resolving notes")
        if resolved:
            update = {"resolved": True, "resolved_by": by_id, "resolved_at": utcnow()}
        else:
            # reopening clears both stamps together
            update = {"resolved": False, "resolved_by": None, "resolved_at": None}
        update["updated_at"] = utcnow()
        doc = self.notes.find_one_and_update(
            {"_id": ensure_object_id(note_id, "Note")},
            {"$set": update},
            return_document=ReturnDocument.AFTER,
        )
        if not doc:
            raise NotFoundError("Note not found")
        return Note(**to_str_id(doc))

    def delete_note(self, note_id: str, by_role):
        require(by_role, Role.admin, "deleting notes")
        result = self.notes.delete_one({"_id": ensure_object_id(note_id, "Note")})
        if result.deleted_count == 0:
            raise NotFoundError("Note not found")
        logger.info("Note %s deleted", note_id)

    def list_notes(self, by_role, page: Optional[str] = None, resolved: Optional[bool] = None, limit: int = 100):
        require(by_role, Role.curator, "viewing notes")
        query = {}
        if page:
            query["page"] = page
        if resolved is not None:
            query["resolved"] = resolved
        docs = get_documents(self.db, "note", query, limit=limit, sort=[("created_at", -1)])
        return [Note(**to_str_id(d)) for d in docs]


class IncomingFile(NamedTuple):
    filename: str
    content_type: str
    content: bytes


class LocalImageStore:
    """Writes accepted images under upload_dir; served from /uploads/."""

    def __init__(self, upload_dir: str = UPLOAD_DIR, url_prefix: str = "/uploads"):
        self.upload_dir = Path(upload_dir)
        self.url_prefix = url_prefix

    def save(self, stored_filename: str, content: bytes) -> str:
        self.upload_dir.mkdir(parents=True, exist_ok=True)
        (self.upload_dir / stored_filename).write_bytes(content)
        return f"{self.url_prefix}/{stored_filename}"


class UploadLedger:
    def __init__(self, db, image_store: Optional[LocalImageStore] = None):
        self.db = db
        self.uploads = db["upload"]
        self.image_store = image_store or LocalImageStore()

    def create_upload(self, file: IncomingFile, product_id: str, submitted_by_role,
                      submitted_by: Optional[str] = None) -> Upload:
        require(submitted_by_role, Role.curator, "uploading images")
        if file is None or not product_id:
            raise ValidationError("File and productId are required")
        if file.content_type not in ALLOWED_TYPES:
            raise ValidationError("Only JPEG, PNG, and WebP images are allowed")
        size = len(file.content or b"")
        if size > MAX_FILE_SIZE:
            raise ValidationError("File size must be under 10MB")

        # the client's filename never reaches the filesystem
        stored_filename = uuid.uuid4().hex + ALLOWED_TYPES[file.content_type]
        image_path = self.image_store.save(stored_filename, file.content)

        upload = Upload(
            product_id=product_id,
            original_filename=file.filename or "",
            stored_filename=stored_filename,
            image_path=image_path,
            mime_type=file.content_type,
            file_size=size,
            submitted_by=submitted_by,
            submitted_by_role=str(getattr(submitted_by_role, "value", submitted_by_role)),
            status=UploadStatus.pending,
        )
        upload_id = create_document(self.db, "upload", upload)
        logger.info("Upload %s submitted for product %s by %s", upload_id, product_id, submitted_by)
        return Upload(**to_str_id(self.uploads.find_one({"_id": ensure_object_id(upload_id)})))

    def review_upload(self, upload_id: str, status, review_note: Optional[str], by_role,
                      by_id: Optional[str] = None) -> Upload:
        require(by_role, Role.admin, "reviewing uploads")
        status = getattr(status, "value", status)
        if status not in (UploadStatus.approved.value, UploadStatus.rejected.value):
            raise ValidationError("Status must be approved or rejected")
        _id = ensure_object_id(upload_id, "Upload")
        doc = self.uploads.find_one_and_update(
            {"_id": _id, "status": UploadStatus.pending.value},
            {"$set": {
                "status": status,
                "reviewed_by": by_id,
                "review_note": review_note,
                "updated_at": utcnow(),
            }},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            if self.uploads.find_one({"_id": _id}) is None:
                raise NotFoundError("Upload not found")
            raise InvalidTransition("Upload has already been reviewed")
        logger.info("Upload %s %s by %s", upload_id, status, by_id)
        return Upload(**to_str_id(doc))

    def list_uploads(self, caller: Identity, status: Optional[str] = None, limit: int = 50):
        require(caller.role, Role.curator, "viewing uploads")
        query = {}
        if status:
            query["status"] = status
        # curators only ever see their own submissions
        if not has_access(caller.role, Role.admin):
            query["submitted_by"] = caller.user_id
        docs = get_documents(self.db, "upload", query, limit=limit, sort=[("created_at", -1)])
        return [Upload(**to_str_id(d)) for d in docs]
