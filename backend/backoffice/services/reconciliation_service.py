# Overview: Reconciliation job; recomputes each open promissory note's outstanding balance and status from its receipts.

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from flask import current_app

from ..extensions import db
from ..errors import BackofficeError, ValidationError
from ..models import PromissoryNote
from ..time_utils import utcnow, normalize_datetime
from .concurrency import begin_write_transaction, run_atomic
from .payment_service import OPEN_NOTE_STATUSES, active_receipts_total, derive_note_status
"""
Reconciliation semantics:
- outstanding = face - SUM(active receipts linked to the note)
- status: RECONCILED when outstanding == 0;
          OVERDUE when past due and outstanding > 0;
          PARTIALLY_RECONCILED when 0 < outstanding < face;
          OUTSTANDING otherwise.
- Receipts above the face amount are an error for that note; the note is left untouched.
- Every note commits on its own. One failing note never stops the run.
- Receipts recorded while the job runs are picked up on the next pass
  (last write wins on outstanding_amount_cents).
"""


@dataclass
class ReconciliationResult:
    reconciled_count: int = 0
    errors: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"reconciled_count": self.reconciled_count, "errors": list(self.errors)}


def reconcile_note(note_id: int, as_of: datetime | None = None) -> PromissoryNote | None:
    """Recompute one open note. Returns None when the note is gone or no longer open."""
    as_of = as_of or utcnow()

    def _op():
        begin_write_transaction()
        note = db.session.query(PromissoryNote).filter_by(id=note_id).populate_existing().first()
        if note is None or note.status not in OPEN_NOTE_STATUSES:
            return None

        received = active_receipts_total(promissory_note_id=note.id)
        outstanding = note.face_amount_cents - received
        if outstanding < 0:
            raise ValidationError(
                "receipts exceed promissory note face amount",
                details={
                    "face_amount_cents": note.face_amount_cents,
                    "received_cents": received,
                },
            )

        note.outstanding_amount_cents = outstanding
        note.status = derive_note_status(note.face_amount_cents, outstanding, note.due_date, as_of)
        note.last_reconciled_at = utcnow()
        db.session.flush()
        return note

    return run_atomic(_op)


def reconcile(as_of=None) -> ReconciliationResult:
    """
    One reconciliation pass over every open promissory note.

    Partial-success batch: failures are logged and collected per note.
    """
    as_of = normalize_datetime(as_of) or utcnow()
    result = ReconciliationResult()

    note_ids = [
        note_id
        for (note_id,) in db.session.query(PromissoryNote.id)
        .filter(PromissoryNote.status.in_(OPEN_NOTE_STATUSES))
        .order_by(PromissoryNote.id.asc())
        .all()
    ]
    db.session.commit()

    for note_id in note_ids:
        try:
            if reconcile_note(note_id, as_of) is not None:
                result.reconciled_count += 1
        except BackofficeError as e:
            current_app.logger.warning("Reconciliation failed for promissory note %s: %s", note_id, e)
            result.errors.append({"promissory_note_id": note_id, "error": str(e), "type": type(e).__name__})
        except Exception as e:
            current_app.logger.exception("Reconciliation crashed for promissory note %s", note_id)
            result.errors.append({"promissory_note_id": note_id, "error": str(e), "type": type(e).__name__})

    current_app.logger.info(
        "Reconciliation as of %s: %d note(s) reconciled, %d error(s)",
        as_of.isoformat(), result.reconciled_count, len(result.errors),
    )
    return result
