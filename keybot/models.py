from sqlalchemy import (
    String, Integer, DateTime, Boolean, ForeignKey, UniqueConstraint, CheckConstraint, Index, text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from datetime import datetime
from .db import Base, now_local

ROUND_ACTIVE = "active"
ROUND_COMPLETED = "completed"

class User(Base):
    __tablename__ = "users"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    username: Mapped[str] = mapped_column(String(255), unique=True)

class GiveawayRound(Base):
    __tablename__ = "giveaway_rounds"
    round_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    status: Mapped[str] = mapped_column(String(32), default=ROUND_ACTIVE)  # active | completed
    started_at: Mapped[datetime] = mapped_column(DateTime, default=now_local)
    ends_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # at most one active round
    __table_args__ = (
        Index(
            "uq_single_active_round", "status", unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
    )

    @property
    def is_active(self) -> bool:
        return self.status == ROUND_ACTIVE

class Key(Base):
    __tablename__ = "keys"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    key_val: Mapped[str] = mapped_column(String(255), unique=True)
    claimed: Mapped[bool] = mapped_column(Boolean, default=False)
    user_claim: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    added_at: Mapped[datetime] = mapped_column(DateTime, default=now_local)
    claim_round: Mapped[int | None] = mapped_column(ForeignKey("giveaway_rounds.round_id"), nullable=True)

    user: Mapped[User | None] = relationship()

    __table_args__ = (
        UniqueConstraint("user_claim", "claim_round", name="uq_one_key_per_round"),
        CheckConstraint(
            "(NOT claimed AND user_claim IS NULL AND claimed_at IS NULL)"
            " OR (claimed AND user_claim IS NOT NULL AND claimed_at IS NOT NULL)",
            name="ck_claim_consistent",
        ),
    )

class ConfigEntry(Base):
    __tablename__ = "config"
    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    value: Mapped[str] = mapped_column(String(255))
