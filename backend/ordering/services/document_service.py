from __future__ import annotations

from datetime import datetime

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Branch, DocumentSequence
from ..time_utils import to_local, utcnow


class DocumentSequenceError(Exception):
    """Raised when document sequence operations fail."""
    pass


def _allocate(branch_id: int, sequence_key: str) -> int:
    """
    Atomically take the next number of (branch, key).

    The increment is a single UPDATE; the first allocation inserts the row
    inside a savepoint and falls back to the UPDATE if another writer won.
    """
    stmt = (
        update(DocumentSequence)
        .where(
            DocumentSequence.branch_id == branch_id,
            DocumentSequence.sequence_key == sequence_key,
        )
        .values(next_number=DocumentSequence.next_number + 1)
        .execution_options(synchronize_session=False)
    )

    def _current() -> int:
        return (
            db.session.query(DocumentSequence.next_number)
            .filter_by(branch_id=branch_id, sequence_key=sequence_key)
            .scalar()
        ) - 1

    if db.session.execute(stmt).rowcount:
        return _current()

    try:
        with db.session.begin_nested():
            db.session.add(DocumentSequence(branch_id=branch_id, sequence_key=sequence_key, next_number=2))
        return 1
    except IntegrityError:
        if not db.session.execute(stmt).rowcount:
            raise
        return _current()


def next_order_number(branch_id: int, at: datetime | None = None, *, pad: int = 4) -> str:
    """
    Branch-scoped order number: <BRANCHCODE>-<YYMMDD>-<NNNN>.

    The date is the branch's local date and the counter restarts daily.
    Runs inside the caller's transaction.
    """
    if not branch_id:
        raise DocumentSequenceError("branch_id is required")
    branch = db.session.get(Branch, branch_id)
    if not branch:
        raise DocumentSequenceError(f"Branch {branch_id} not found")

    local = to_local(at or utcnow(), branch.timezone)
    day = local.strftime("%y%m%d")
    number = _allocate(branch.id, f"ORDER-{day}")
    return f"{branch.code.upper()}-{day}-{number:0{pad}d}"
