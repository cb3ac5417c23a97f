from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class GeminiKey(Base):
    __tablename__ = "gemini_keys"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    api_key: Mapped[str] = mapped_column(Text, unique=True)
    name: Mapped[str] = mapped_column(String(128), default="")
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    daily_quota: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_status: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class KeyUsage(Base):
    __tablename__ = "key_usage"
    __table_args__ = (UniqueConstraint("key_id", "bucket", "day"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    key_id: Mapped[str] = mapped_column(
        ForeignKey("gemini_keys.id", ondelete="CASCADE"), index=True
    )
    bucket: Mapped[str] = mapped_column(String(256))
    day: Mapped[str] = mapped_column(String(10), index=True)
    count: Mapped[int] = mapped_column(Integer, default=0)


class CategoryUsage(Base):
    __tablename__ = "category_usage"
    __table_args__ = (UniqueConstraint("bucket", "day"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    bucket: Mapped[str] = mapped_column(String(256))
    day: Mapped[str] = mapped_column(String(10), index=True)
    count: Mapped[int] = mapped_column(Integer, default=0)


class ModelConfigRow(Base):
    __tablename__ = "model_configs"

    model_id: Mapped[str] = mapped_column(String(256), primary_key=True)
    category: Mapped[str] = mapped_column(String(16))
    individual_quota: Mapped[int | None] = mapped_column(Integer, nullable=True)
    daily_quota: Mapped[int | None] = mapped_column(Integer, nullable=True)


class CategoryQuotaRow(Base):
    __tablename__ = "category_quotas"

    category: Mapped[str] = mapped_column(String(16), primary_key=True)
    daily_quota: Mapped[int | None] = mapped_column(Integer, nullable=True)


class RotationState(Base):
    __tablename__ = "rotation_state"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    cursor: Mapped[int] = mapped_column(Integer, default=-1)
    seq: Mapped[int] = mapped_column(Integer, default=0)
