# backend/slotkeeper/services/placement.py
from __future__ import annotations

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from ..models import Slot


def project_order(db: Session) -> list[str]:
    """
    Projects by ascending number of assigned slots, ties by project id.

    Handing out the next slot from the least loaded project is round-robin in
    steady state. This only decides which candidates get looked at first;
    correctness lives in the allocator's verify + conditional commit.
    """
    assigned = func.sum(case((Slot.is_assigned.is_(True), 1), else_=0))
    rows = db.execute(
        select(Slot.project_id, assigned.label("assigned"))
        .group_by(Slot.project_id)
        .order_by(assigned.asc(), Slot.project_id.asc())
    ).all()
    return [str(pid) for pid, _ in rows]
