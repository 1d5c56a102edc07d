from __future__ import annotations

import hashlib
import json
import logging
import mimetypes
from datetime import datetime
from typing import Any

from sqlalchemy import event, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value
from werkzeug.utils import secure_filename

from app.compliance.audit import record_event
from app.compliance.errors import ConflictError, ContentTooLarge, ContentUnsafe, NotFound, ValidationError
from app.compliance.models import User
from app.compliance.modules.document_control.models import (
    AV_SCAN_STATUSES,
    CLASSIFICATIONS,
    DOC_TYPES,
    Document,
    DocumentVersion,
)
from app.compliance.storage import Storage
from app.compliance.utils import clean_str, parse_int, parse_tags

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = (".pdf", ".doc", ".docx", ".odt", ".txt", ".html", ".xlsx")
PENDING_SCAN_POLICIES = ("allow", "block")
# Statuses that block deletion: the document is under review or in force.
UNDELETABLE_STATUSES = ("in_review", "approved")


def file_digest_and_bytes(file_bytes: bytes) -> tuple[str, int]:
    h = hashlib.sha256()
    h.update(file_bytes)
    return (h.hexdigest(), len(file_bytes))


def sanitize_upload_filename(filename: str) -> str:
    fn = secure_filename(filename or "")
    return fn or "document.bin"


def guess_content_type(filename: str, declared: str | None = None) -> str:
    declared = (declared or "").strip()
    if declared and declared != "application/octet-stream":
        return declared
    guessed, _ = mimetypes.guess_type(filename)
    return guessed or "application/octet-stream"


def version_storage_key(doc_id: int, version_number: int, filename: str) -> str:
    return f"documents/{doc_id}/v{version_number}/{filename}"


def document_tags(doc: Document) -> list[str]:
    try:
        tags = json.loads(doc.tags_json or "[]")
    except json.JSONDecodeError:
        return []
    return tags if isinstance(tags, list) else []


def get_document(s: Session, doc_id: int, *, tenant_id: str) -> Document:
    doc = s.get(Document, doc_id)
    if not doc or doc.tenant_id != tenant_id:
        raise NotFound(f"Document {doc_id} not found.")
    return doc


def list_documents(
    s: Session,
    *,
    tenant_id: str,
    status: str | None = None,
    doc_type: str | None = None,
    q: str | None = None,
    asset_id: int | None = None,
) -> list[Document]:
    stmt = select(Document).where(Document.tenant_id == tenant_id)
    if asset_id is not None:
        stmt = stmt.where(Document.asset_id == asset_id)
    if status:
        stmt = stmt.where(Document.status == status)
    if doc_type:
        stmt = stmt.where(Document.doc_type == doc_type)
    if q:
        like = f"%{q}%"
        stmt = stmt.where((Document.title.ilike(like)) | (Document.code.ilike(like)))
    return list(s.scalars(stmt.order_by(Document.updated_at.desc(), Document.id.desc())).all())


def _validate_owner(s: Session, owner_id: int | None, *, tenant_id: str) -> int | None:
    if owner_id is None:
        return None
    owner = s.get(User, owner_id)
    if not owner or owner.tenant_id != tenant_id or not owner.is_active:
        raise ValidationError("owner_user_id must reference an active user.", details={"field": "owner_user_id"})
    return owner.id


def _validate_choice(value: str | None, choices: tuple[str, ...], *, field: str) -> str | None:
    if value is None:
        return None
    if value not in choices:
        raise ValidationError(
            f"{field} must be one of: {', '.join(choices)}.",
            details={"field": field, "allowed": list(choices)},
        )
    return value


def create_document(s: Session, payload: dict[str, Any], *, user: User) -> Document:
    """
    Create a draft document with no versions. The first upload (if any) is a
    separate create_version call so both paths share the same numbering.
    """
    title = clean_str(payload.get("title"), field="title", max_len=255, required=True)
    doc_type = _validate_choice(
        clean_str(payload.get("doc_type") or payload.get("type"), field="doc_type", required=True),
        DOC_TYPES,
        field="doc_type",
    )
    classification = _validate_choice(
        clean_str(payload.get("classification"), field="classification") or "Internal",
        CLASSIFICATIONS,
        field="classification",
    )
    owner_id = _validate_owner(
        s, parse_int(payload.get("owner_user_id"), field="owner_user_id"), tenant_id=user.tenant_id
    )

    doc = Document(
        tenant_id=user.tenant_id,
        title=title,
        code=clean_str(payload.get("code"), field="code", max_len=64),
        description=clean_str(payload.get("description"), field="description"),
        doc_type=doc_type,
        classification=classification,
        tags_json=json.dumps(parse_tags(payload.get("tags"))),
        status="draft",
        current_version=0,
        owner_user_id=owner_id or user.id,
        created_by_user_id=user.id,
    )
    s.add(doc)
    s.flush()

    record_event(
        s,
        actor=user,
        action="doc.create",
        entity_type="Document",
        entity_id=str(doc.id),
        metadata={"title": doc.title, "doc_type": doc.doc_type, "classification": doc.classification},
    )
    return doc


_UPDATABLE_FIELDS = ("title", "code", "description", "doc_type", "classification", "tags", "owner_user_id")


def update_document(s: Session, doc: Document, payload: dict[str, Any], *, user: User) -> dict[str, Any]:
    """Edit metadata of a draft. Returns {field: {"old", "new"}} for what changed."""
    if doc.status != "draft":
        raise ConflictError(f"Only draft documents can be edited (status is {doc.status}).")

    changes: dict[str, Any] = {}
    for field in _UPDATABLE_FIELDS:
        if field not in payload:
            continue
        raw = payload[field]
        if field == "title":
            new = clean_str(raw, field="title", max_len=255, required=True)
            old = doc.title
        elif field == "code":
            new = clean_str(raw, field="code", max_len=64)
            old = doc.code
        elif field == "description":
            new = clean_str(raw, field="description")
            old = doc.description
        elif field == "doc_type":
            new = _validate_choice(clean_str(raw, field="doc_type", required=True), DOC_TYPES, field="doc_type")
            old = doc.doc_type
        elif field == "classification":
            new = _validate_choice(
                clean_str(raw, field="classification", required=True), CLASSIFICATIONS, field="classification"
            )
            old = doc.classification
        elif field == "tags":
            new = parse_tags(raw)
            old = document_tags(doc)
        else:
            new = _validate_owner(s, parse_int(raw, field="owner_user_id"), tenant_id=doc.tenant_id)
            if new is None:
                raise ValidationError("owner_user_id cannot be cleared.", details={"field": "owner_user_id"})
            old = doc.owner_user_id

        if new != old:
            changes[field] = {"old": old, "new": new}
            if field == "tags":
                doc.tags_json = json.dumps(new)
            elif field == "owner_user_id":
                doc.owner_user_id = new
            else:
                setattr(doc, field, new)

    if changes:
        doc.updated_at = datetime.utcnow()
        record_event(
            s,
            actor=user,
            action="doc.update",
            entity_type="Document",
            entity_id=str(doc.id),
            metadata={"changes": changes},
        )
    return changes


def delete_document(s: Session, doc: Document, *, user: User) -> list[str]:
    """
    Delete a document with its versions and workflows. Returns the storage keys
    of the removed versions so the caller can drop the blobs after commit.
    """
    if doc.status in UNDELETABLE_STATUSES:
        raise ConflictError(f"Cannot delete a document that is {doc.status}.")
    keys = [v.storage_key for v in doc.versions]
    record_event(
        s,
        actor=user,
        action="doc.delete",
        entity_type="Document",
        entity_id=str(doc.id),
        metadata={"title": doc.title, "status": doc.status, "versions": len(keys)},
    )
    s.delete(doc)
    return keys


_NEW_BLOBS = "compliance.new_blobs"


def track_new_blob(s: Session, storage: Storage, key: str) -> None:
    """Remember a blob written in this transaction; it is deleted if the transaction rolls back."""
    s.info.setdefault(_NEW_BLOBS, []).append((storage, key))


@event.listens_for(Session, "after_commit")
def _forget_new_blobs(session: Session) -> None:
    session.info.pop(_NEW_BLOBS, None)


@event.listens_for(Session, "after_rollback")
def _drop_new_blobs(session: Session) -> None:
    for storage, key in session.info.pop(_NEW_BLOBS, None) or ():
        if not storage.delete_many([key]):
            logger.info("Removed blob %s of a rolled back version", key)


def _reserve_version_number(s: Session, doc: Document) -> int:
    # Single-statement increment: concurrent uploads each get a distinct number.
    stmt = (
        update(Document)
        .where(Document.id == doc.id)
        .values(current_version=Document.current_version + 1)
        .returning(Document.current_version)
        .execution_options(synchronize_session=False)
    )
    number = s.execute(stmt).scalar_one_or_none()
    if number is None:
        raise NotFound(f"Document {doc.id} not found.")
    set_committed_value(doc, "current_version", number)
    return number


def create_version(
    s: Session,
    doc: Document,
    *,
    data: bytes,
    filename: str,
    content_type: str | None,
    change_summary: str | None,
    user: User,
    storage: Storage,
    max_bytes: int,
) -> DocumentVersion:
    if not data:
        raise ValidationError("Uploaded file is empty.", details={"field": "file"})
    if len(data) > max_bytes:
        raise ContentTooLarge(
            f"File exceeds the maximum version size of {max_bytes} bytes.",
            details={"size_bytes": len(data), "max_bytes": max_bytes},
        )
    safe_name = sanitize_upload_filename(filename)
    if not safe_name.lower().endswith(ALLOWED_EXTENSIONS):
        raise ValidationError(
            "Unsupported file type.",
            details={"field": "file", "allowed": list(ALLOWED_EXTENSIONS)},
        )
    summary = clean_str(change_summary, field="change_summary", max_len=512) or ""
    ctype = guess_content_type(safe_name, content_type)
    sha256, size_bytes = file_digest_and_bytes(data)

    number = _reserve_version_number(s, doc)
    storage_key = version_storage_key(doc.id, number, safe_name)
    storage.put_bytes(storage_key, data, content_type=ctype)

    version = DocumentVersion(
        document_id=doc.id,
        version_number=number,
        storage_key=storage_key,
        filename=safe_name,
        content_type=ctype,
        sha256=sha256,
        size_bytes=size_bytes,
        change_summary=summary,
        av_scan_status="pending",
        created_by_user_id=user.id,
    )
    s.add(version)
    try:
        s.flush()
    except IntegrityError as e:
        storage.delete_many([storage_key])
        raise ConflictError(f"Version {number} already exists for document {doc.id}.") from e
    track_new_blob(s, storage, storage_key)
    if version not in doc.versions:
        doc.versions.append(version)
    doc.updated_at = datetime.utcnow()

    record_event(
        s,
        actor=user,
        action="doc.version.create",
        entity_type="DocumentVersion",
        entity_id=str(version.id),
        metadata={
            "doc_id": doc.id,
            "version_number": number,
            "filename": safe_name,
            "sha256": sha256,
            "size_bytes": size_bytes,
        },
    )
    logger.info("Stored version %s of document %s (%s bytes)", number, doc.id, size_bytes)
    return version


def get_version(s: Session, doc: Document, version_id: int) -> DocumentVersion:
    v = s.get(DocumentVersion, version_id)
    if not v or v.document_id != doc.id:
        raise NotFound(f"Version {version_id} not found for document {doc.id}.")
    return v


def list_versions(doc: Document) -> list[DocumentVersion]:
    return sorted(doc.versions, key=lambda v: v.version_number)


def latest_version(doc: Document) -> DocumentVersion | None:
    return max(doc.versions, key=lambda v: v.version_number, default=None)


def check_servable(version: DocumentVersion, *, pending_policy: str) -> bool:
    """
    Decide whether version content may be served. Returns True when the
    content passed scanning, False when it is served unverified.
    """
    if version.av_scan_status == "infected":
        raise ContentUnsafe(
            "This version failed antivirus scanning and cannot be downloaded.",
            details={"version_id": version.id, "av_scan_status": version.av_scan_status},
        )
    if version.av_scan_status == "clean":
        return True
    if pending_policy == "block":
        raise ContentUnsafe(
            "This version has not passed antivirus scanning yet.",
            details={"version_id": version.id, "av_scan_status": version.av_scan_status},
        )
    return False


def open_version(
    s: Session,
    version: DocumentVersion,
    *,
    user: User,
    storage: Storage,
    pending_policy: str,
) -> tuple[bytes, bool]:
    verified = check_servable(version, pending_policy=pending_policy)
    data = storage.get_bytes(version.storage_key)
    record_event(
        s,
        actor=user,
        action="doc.download",
        entity_type="DocumentVersion",
        entity_id=str(version.id),
        metadata={
            "doc_id": version.document_id,
            "version_number": version.version_number,
            "av_scan_status": version.av_scan_status,
        },
    )
    return data, verified


def record_scan_result(
    s: Session,
    version: DocumentVersion,
    *,
    status: str,
    result: str | None,
    user: User,
) -> DocumentVersion:
    """Scanner callback. A version is scanned once; only pending versions accept a result."""
    if status not in AV_SCAN_STATUSES or status == "pending":
        raise ValidationError(
            "status must be one of: clean, infected, error.",
            details={"field": "status"},
        )
    if version.av_scan_status != "pending":
        raise ConflictError(f"Version {version.id} was already scanned ({version.av_scan_status}).")
    version.av_scan_status = status
    version.av_scan_result = clean_str(result, field="result")
    version.scanned_at = datetime.utcnow()

    record_event(
        s,
        actor=user,
        action="doc.version.scan",
        entity_type="DocumentVersion",
        entity_id=str(version.id),
        metadata={"doc_id": version.document_id, "status": status, "result": version.av_scan_result},
    )
    if status == "infected":
        logger.warning("Version %s of document %s flagged infected", version.version_number, version.document_id)
    return version
