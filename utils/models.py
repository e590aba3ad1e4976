"""SQLAlchemy models (Postgres source-of-truth).

users            one row per Discord user, created on first contact
user_characters  one row per owned character, globally unique on character_id
rolls_history    append-only roll log
"""
from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import BigInteger, Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    __tablename__ = "users"

    # Discord user ID (stable external identity).
    user_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    username: Mapped[str] = mapped_column(String(100), default="")
    total_points: Mapped[int] = mapped_column(Integer, default=0)
    rolls_count: Mapped[int] = mapped_column(Integer, default=0)
    last_roll: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rolls_in_period: Mapped[int] = mapped_column(Integer, default=0)
    period_start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now_utc)
    lucky_roll_count: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now_utc)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now_utc)

    __table_args__ = (Index("ix_users_total_points", "total_points"),)


class UserCharacter(Base):
    __tablename__ = "user_characters"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.user_id"), index=True)
    # Global uniqueness: at most one owner per catalog character.
    character_id: Mapped[int] = mapped_column(Integer, nullable=False)
    character_name: Mapped[str] = mapped_column(String(255), default="")
    character_image_url: Mapped[str] = mapped_column(Text, default="")
    anime_title: Mapped[str] = mapped_column(String(255), default="")
    character_role: Mapped[str] = mapped_column(String(50), default="")
    character_favorites: Mapped[int] = mapped_column(Integer, default=0)
    claimed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now_utc)

    __table_args__ = (
        Index("ix_user_characters_character_unique", "character_id", unique=True),
    )


class RollHistory(Base):
    __tablename__ = "rolls_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.user_id"), index=True)
    character_id: Mapped[int] = mapped_column(Integer, nullable=False)
    character_name: Mapped[str] = mapped_column(String(255), default="")
    character_favorites: Mapped[int] = mapped_column(Integer, default=0)
    points_earned: Mapped[int] = mapped_column(Integer, nullable=False)
    is_duplicate: Mapped[bool] = mapped_column(Boolean, default=False)
    rolled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now_utc)
