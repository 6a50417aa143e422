# Overview: Service-layer operations for document numbering; atomic, gap-tolerant sequences.

from __future__ import annotations

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..exceptions import ValidationError
from ..extensions import db
from ..models import DocumentSequence


DOC_TYPE_OFFER = "OFFER"
DOC_TYPE_INVOICE = "INVOICE"


def next_number(document_type: str) -> int:
    """
    Atomically allocate the next number for a document type.

    Runs inside the caller's transaction. The increment is a single UPDATE so
    concurrent allocators serialize on the sequence row. The first allocation
    inserts the row inside a savepoint; losing that insert race falls back to
    the increment.
    """
    if not document_type:
        raise ValidationError("document_type is required")

    stmt = (
        update(DocumentSequence)
        .where(DocumentSequence.document_type == document_type)
        .values(next_number=DocumentSequence.next_number + 1)
        .execution_options(synchronize_session=False)
    )

    result = db.session.execute(stmt)
    if result.rowcount:
        return _current(document_type) - 1

    try:
        with db.session.begin_nested():
            db.session.add(DocumentSequence(document_type=document_type, next_number=2))
        return 1
    except IntegrityError:
        result = db.session.execute(stmt)
        if not result.rowcount:
            raise
        return _current(document_type) - 1


def format_document_number(prefix: str, year: int, number: int, pad: int = 6) -> str:
    return f"{prefix}-{year}-{number:0{pad}d}"


def _current(document_type: str) -> int:
    return (
        db.session.query(DocumentSequence.next_number)
        .filter_by(document_type=document_type)
        .scalar()
    )
