from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base


def _uuid() -> str:
    return str(uuid.uuid4())


class CombatSession(Base):
    __tablename__ = "combat_sessions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(200), nullable=False, index=True)

    # turn order в плоском JSON (см. state_codec.entry_to_dict)
    order_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    round: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    seq: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # кастомный каталог эффектов; NULL = ещё не создавался (берём встроенные)
    library_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    subjects: Mapped[list["Subject"]] = relationship(
        back_populates="session", cascade="all, delete-orphan"
    )


class Subject(Base):
    __tablename__ = "subjects"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    session_id: Mapped[str] = mapped_column(
        ForeignKey("combat_sessions.id"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)

    # есть персонаж -> эффекты в combat_data, нет -> в скрытом блоке gm_notes
    character_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    initiative_bonus: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    controlled_by: Mapped[str] = mapped_column(Text, nullable=False, default="")

    markers: Mapped[str] = mapped_column(Text, nullable=False, default="")
    combat_data: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    gm_notes: Mapped[str] = mapped_column(Text, nullable=False, default="")

    session: Mapped[CombatSession] = relationship(back_populates="subjects")
