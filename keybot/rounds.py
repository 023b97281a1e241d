"""Giveaway round lifecycle: active -> completed, one active round at a time."""
from __future__ import annotations

import logging
from datetime import timedelta
from typing import List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .db import now_local, store_operation
from .errors import AlreadyCompleted, NoActiveRound, NotFound, RoundConflict
from .models import ROUND_ACTIVE, ROUND_COMPLETED, GiveawayRound, Key
from .settings import Settings

log = logging.getLogger(__name__)


def _active(db: Session) -> Optional[GiveawayRound]:
    return (
        db.execute(select(GiveawayRound).where(GiveawayRound.status == ROUND_ACTIVE))
        .scalars()
        .first()
    )


def complete_if_expired(db: Session, rnd: GiveawayRound) -> bool:
    """Return True if expired and completed."""
    if rnd.is_active and rnd.ends_at and rnd.ends_at <= now_local():
        rnd.status = ROUND_COMPLETED
        rnd.ended_at = rnd.ends_at
        db.commit()
        log.info("Round %s expired at %s", rnd.round_id, rnd.ends_at)
        return True
    return False


@store_operation
def start_round(db: Session, settings: Settings, duration: Optional[int] = None) -> GiveawayRound:
    seconds = settings.giveaway_duration if duration is None else duration
    if seconds <= 0:
        raise ValueError("round duration must be positive")

    current = _active(db)
    if current is not None and not complete_if_expired(db, current):
        raise RoundConflict(f"round {current.round_id} is still active")

    now = now_local()
    rnd = GiveawayRound(
        status=ROUND_ACTIVE,
        started_at=now,
        ends_at=now + timedelta(seconds=seconds),
    )
    db.add(rnd)
    try:
        db.commit()
    except IntegrityError:
        # another process started a round between our check and insert
        db.rollback()
        raise RoundConflict("another round was started concurrently") from None

    log.info("Round %s started, ends at %s", rnd.round_id, rnd.ends_at)
    return rnd


@store_operation
def end_round(db: Session, round_id: int) -> GiveawayRound:
    rnd = db.get(GiveawayRound, round_id)
    if rnd is None:
        raise NotFound(f"round {round_id} does not exist")
    if rnd.status == ROUND_COMPLETED:
        raise AlreadyCompleted(f"round {round_id} is already completed")

    rnd.status = ROUND_COMPLETED
    rnd.ended_at = now_local()
    db.commit()
    log.info("Round %s completed", round_id)
    return rnd


@store_operation
def current_round(db: Session) -> GiveawayRound:
    rnd = _active(db)
    if rnd is None or complete_if_expired(db, rnd):
        raise NoActiveRound("no giveaway round is active")
    return rnd


@store_operation
def list_rounds(db: Session, limit: int = 20) -> List[Tuple[GiveawayRound, int]]:
    """Newest rounds first, each paired with the number of keys claimed in it."""
    claimed = (
        select(Key.claim_round, func.count(Key.id).label("n"))
        .where(Key.claim_round.is_not(None))
        .group_by(Key.claim_round)
        .subquery()
    )
    rows = db.execute(
        select(GiveawayRound, func.coalesce(claimed.c.n, 0))
        .outerjoin(claimed, claimed.c.claim_round == GiveawayRound.round_id)
        .order_by(GiveawayRound.round_id.desc())
        .limit(limit)
    ).all()
    return [(rnd, int(n)) for rnd, n in rows]
