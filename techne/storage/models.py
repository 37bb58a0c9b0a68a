"""SQLAlchemy ORM models for the shared fingerprint store (techne schema)."""

from sqlalchemy import BigInteger, Float, Index, Sequence, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Single declarative base for the techne schema."""

    pass


# Global version counter: a recreated key never reuses an old version (no ABA on CAS)
kv_version_seq = Sequence("kv_version_seq", schema="techne")


class KvEntry(Base):
    __tablename__ = "kv_entries"
    __table_args__ = {"schema": "techne"}

    key: Mapped[str] = mapped_column(String(1024), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    version: Mapped[int] = mapped_column(BigInteger, nullable=False)
    expires_at: Mapped[float | None] = mapped_column(Float)  # epoch seconds


class FileChange(Base):
    __tablename__ = "file_changes"
    __table_args__ = (
        Index("ix_file_changes_workspace_changed", "workspace_id", "changed_at"),
        {"schema": "techne"},
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    workspace_id: Mapped[str] = mapped_column(String(200), nullable=False)
    path: Mapped[str] = mapped_column(Text, nullable=False)
    old_hash: Mapped[str | None] = mapped_column(String(64))
    new_hash: Mapped[str | None] = mapped_column(String(64))  # None = deleted
    changed_at: Mapped[float] = mapped_column(Float, nullable=False)
    expires_at: Mapped[float | None] = mapped_column(Float)
