"""Key claims: hand one unclaimed key to an eligible user, exactly once per round."""
from __future__ import annotations

import logging

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .db import now_local, store_operation
from .errors import AgeRequirementNotMet, AlreadyClaimedThisRound, NoKeysAvailable
from .models import Key, User
from .rounds import current_round
from .settings import Settings

log = logging.getLogger(__name__)


def get_or_create_user(db: Session, username: str) -> User:
    """Return the user row for ``username``, inserting it in the caller's transaction if needed."""
    user = db.execute(select(User).where(User.username == username)).scalars().first()
    if user is not None:
        return user
    try:
        with db.begin_nested():
            user = User(username=username)
            db.add(user)
    except IntegrityError:
        # lost the insert race; the row exists now
        user = db.execute(select(User).where(User.username == username)).scalars().one()
    return user


def assign_key(db: Session, user_id: int, round_id: int | None) -> str:
    """Mark one unclaimed key as claimed by ``user_id`` and commit.

    The update is guarded on ``claimed = false`` so a key taken by a concurrent
    transaction is skipped rather than claimed twice.
    """
    while True:
        key = (
            db.execute(
                select(Key)
                .where(Key.claimed.is_(False))
                .limit(1)
                .with_for_update(skip_locked=True)
            )
            .scalars()
            .first()
        )
        if key is None:
            raise NoKeysAvailable("no unclaimed keys remain")

        code = key.key_val
        claimed_at = max(now_local(), key.added_at)
        result = db.execute(
            update(Key)
            .where(Key.id == key.id, Key.claimed.is_(False))
            .values(claimed=True, user_claim=user_id, claimed_at=claimed_at, claim_round=round_id)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            db.commit()
            return code
        db.expire(key)


@store_operation
def claim_key(db: Session, settings: Settings, username: str, account_age_days: int) -> str:
    if account_age_days < settings.age_bound:
        log.info("Claim refused for %s: account age %s < %s", username, account_age_days, settings.age_bound)
        raise AgeRequirementNotMet(account_age_days, settings.age_bound)

    round_id = current_round(db).round_id
    user_id = get_or_create_user(db, username).id

    held = db.execute(
        select(Key.id).where(Key.user_claim == user_id, Key.claim_round == round_id).limit(1)
    ).first()
    if held is not None:
        log.info("Claim refused for %s: already claimed in round %s", username, round_id)
        raise AlreadyClaimedThisRound(f"{username} already claimed a key in round {round_id}")

    try:
        code = assign_key(db, user_id, round_id)
    except IntegrityError:
        # same user racing themselves; uq_one_key_per_round caught it
        db.rollback()
        raise AlreadyClaimedThisRound(f"{username} already claimed a key in round {round_id}") from None

    log.info("Key %s claimed by %s in round %s", key_hint(code), username, round_id)
    return code


def key_hint(code: str) -> str:
    """Masked form of a key for logs."""
    return code[:4] + "…" if len(code) > 4 else "…"
