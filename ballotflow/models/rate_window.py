"""RateWindow ORM model - per-model, per-minute usage counters."""

import uuid
from datetime import datetime

from sqlalchemy import BigInteger, Integer, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from ballotflow.db import Base


class RateWindow(Base):
    __tablename__ = "rate_windows"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    model: Mapped[str] = mapped_column(Text, nullable=False)
    window_start: Mapped[datetime] = mapped_column(nullable=False, index=True)
    request_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    request_tokens: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    response_tokens: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    batch_tokens: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    # Bumped on every admission; a stale version means another worker won the race.
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (UniqueConstraint("model", "window_start", name="uq_rate_windows_model_window"),)
