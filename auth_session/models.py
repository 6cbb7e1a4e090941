"""
SQLAlchemy models for the credential store. One row per (service, account) secret.
"""
from datetime import datetime, timezone

from sqlalchemy import DateTime, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class Credential(Base):
    __tablename__ = "credentials"
    __table_args__ = (UniqueConstraint("service_id", "account", name="uq_credentials_service_account"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    service_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    account: Mapped[str] = mapped_column(String(255), nullable=False)
    # Serialized session list (JSON); refresh tokens only, never access tokens
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now, onupdate=_utc_now)
