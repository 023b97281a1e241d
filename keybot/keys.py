"""Key pool maintenance: bulk loading, statistics and manual grants."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Union

from sqlalchemy import func, select
from sqlalchemy.orm import Session, joinedload

from .claims import assign_key, get_or_create_user
from .db import store_operation
from .models import Key

log = logging.getLogger(__name__)

# keep in sync with Key.key_val
MAX_KEY_LENGTH = 255


@dataclass(frozen=True)
class KeyStats:
    total: int
    claimed: int

    @property
    def unclaimed(self) -> int:
        return self.total - self.claimed


def clean_codes(codes: Iterable[str]) -> List[str]:
    """Strip, drop blanks and repeats, keep first-seen order."""
    seen = set()
    out = []
    for raw in codes:
        code = (raw or "").strip()
        if not code or code in seen:
            continue
        if len(code) > MAX_KEY_LENGTH:
            log.warning("Skipping key longer than %s characters", MAX_KEY_LENGTH)
            continue
        seen.add(code)
        out.append(code)
    return out


@store_operation
def add_keys(db: Session, codes: Iterable[str]) -> int:
    """Insert codes that are not stored yet; return how many were added."""
    fresh = clean_codes(codes)
    if not fresh:
        return 0

    existing = set()
    # stay under the bind-parameter limit of older SQLite builds
    for i in range(0, len(fresh), 500):
        chunk = fresh[i:i + 500]
        existing.update(db.execute(select(Key.key_val).where(Key.key_val.in_(chunk))).scalars())

    new = [code for code in fresh if code not in existing]
    db.add_all(Key(key_val=code) for code in new)
    db.commit()
    if new:
        log.info("Added %s new keys", len(new))
    return len(new)


def load_keys_file(db: Session, path: Union[str, Path]) -> int:
    """Load one key per line from ``path``; a missing file loads nothing."""
    p = Path(path)
    if not p.exists():
        log.debug("Keys file %s not found", p)
        return 0
    lines = p.read_text(encoding="utf-8").splitlines()
    return add_keys(db, lines)


@store_operation
def key_stats(db: Session) -> KeyStats:
    total = db.execute(select(func.count(Key.id))).scalar_one()
    claimed = db.execute(select(func.count(Key.id)).where(Key.claimed.is_(True))).scalar_one()
    return KeyStats(total=int(total), claimed=int(claimed))


@store_operation
def recent_claims(db: Session, limit: int = 20) -> List[Key]:
    return list(
        db.execute(
            select(Key)
            .options(joinedload(Key.user))
            .where(Key.claimed.is_(True))
            .order_by(Key.claimed_at.desc(), Key.id.desc())
            .limit(limit)
        ).scalars()
    )


@store_operation
def grant_key(db: Session, username: str) -> str:
    """Give ``username`` a key outside any round, skipping eligibility checks."""
    user_id = get_or_create_user(db, username).id
    code = assign_key(db, user_id, None)
    log.info("Key granted manually to %s", username)
    return code
