import uuid
from datetime import datetime

from sqlalchemy import Column, DateTime, Index, String, UniqueConstraint

from .db import Base


def generate_id() -> str:
    return str(uuid.uuid4())


DOWNLOAD_KINDS = ("full", "demo")


class Purchase(Base):
    __tablename__ = "purchases"
    __table_args__ = (Index("ix_purchases_user_game", "user_id", "game_slug"),)

    id = Column(String(36), primary_key=True, default=generate_id)
    user_id = Column(String(36), nullable=False)
    game_slug = Column(String(120), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class DemoClaim(Base):
    __tablename__ = "demo_claims"
    # One demo per user per game. Concurrent first claims rely on this
    # constraint: the losing insert fails with an IntegrityError.
    __table_args__ = (UniqueConstraint("user_id", "game_slug", name="uq_demo_claim_user_game"),)

    id = Column(String(36), primary_key=True, default=generate_id)
    user_id = Column(String(36), nullable=False)
    game_slug = Column(String(120), nullable=False)
    claimed_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class GameDownload(Base):
    __tablename__ = "game_downloads"
    __table_args__ = (
        Index("ix_game_downloads_target", "game_slug", "kind", "device", "created_at"),
    )

    id = Column(String(36), primary_key=True, default=generate_id)
    game_slug = Column(String(120), nullable=False)
    kind = Column(String(10), nullable=False)
    device = Column(String(40), nullable=False)
    storage_path = Column(String(500), nullable=False)
    file_name = Column(String(255), nullable=True)
    mime_type = Column(String(120), nullable=True)
    created_by = Column(String(36), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
