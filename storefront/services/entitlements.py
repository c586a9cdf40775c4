from __future__ import annotations

from enum import Enum
from typing import Callable, Optional
import logging

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..models import DemoClaim, GameDownload, Purchase

logger = logging.getLogger(__name__)

_UNIQUE_VIOLATION_SQLSTATE = "23505"


class StoreError(Exception):
    """A database fault. Never to be read as "record not found"."""


class ClaimOutcome(str, Enum):
    CREATED = "created"
    CONFLICT = "conflict"
    FAILED = "failed"


def _is_unique_violation(exc: IntegrityError) -> bool:
    orig = getattr(exc, "orig", None)
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if code:
        return str(code) == _UNIQUE_VIOLATION_SQLSTATE
    message = str(orig or exc).lower()
    return "unique constraint" in message or "duplicate key" in message


class EntitlementStore:
    """Purchases, demo claims and download registrations.

    Each call runs in its own short-lived session so one request never sees
    another request's uncommitted state.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def find_purchase(self, user_id: str, game_slug: str) -> Optional[Purchase]:
        try:
            with self.session_factory() as db:
                return (
                    db.query(Purchase)
                    .filter(Purchase.user_id == user_id, Purchase.game_slug == game_slug)
                    .limit(1)
                    .first()
                )
        except SQLAlchemyError as exc:
            raise StoreError(f"purchase lookup failed: {exc}") from exc

    def find_demo_claim(self, user_id: str, game_slug: str) -> Optional[DemoClaim]:
        try:
            with self.session_factory() as db:
                return (
                    db.query(DemoClaim)
                    .filter(DemoClaim.user_id == user_id, DemoClaim.game_slug == game_slug)
                    .limit(1)
                    .first()
                )
        except SQLAlchemyError as exc:
            raise StoreError(f"demo claim lookup failed: {exc}") from exc

    def insert_demo_claim_if_absent(self, user_id: str, game_slug: str) -> ClaimOutcome:
        with self.session_factory() as db:
            try:
                db.add(DemoClaim(user_id=user_id, game_slug=game_slug))
                db.commit()
            except IntegrityError as exc:
                db.rollback()
                if _is_unique_violation(exc):
                    return ClaimOutcome.CONFLICT
                logger.error("Demo claim insert rejected user=%s slug=%s: %s", user_id, game_slug, exc)
                return ClaimOutcome.FAILED
            except SQLAlchemyError as exc:
                db.rollback()
                logger.error("Demo claim insert failed user=%s slug=%s: %s", user_id, game_slug, exc)
                return ClaimOutcome.FAILED
        return ClaimOutcome.CREATED

    def find_latest_download_target(
        self, game_slug: str, kind: str, device: str
    ) -> Optional[GameDownload]:
        try:
            with self.session_factory() as db:
                return (
                    db.query(GameDownload)
                    .filter(
                        GameDownload.game_slug == game_slug,
                        GameDownload.kind == kind,
                        GameDownload.device == device,
                    )
                    .order_by(GameDownload.created_at.desc())
                    .limit(1)
                    .first()
                )
        except SQLAlchemyError as exc:
            raise StoreError(f"download lookup failed: {exc}") from exc

    def list_download_targets(self, game_slug: str, kind: str) -> list[GameDownload]:
        """Latest registration per device, sorted by device label."""
        try:
            with self.session_factory() as db:
                rows = (
                    db.query(GameDownload)
                    .filter(GameDownload.game_slug == game_slug, GameDownload.kind == kind)
                    .order_by(GameDownload.created_at.desc())
                    .all()
                )
        except SQLAlchemyError as exc:
            raise StoreError(f"download listing failed: {exc}") from exc

        latest: dict[str, GameDownload] = {}
        for row in rows:
            latest.setdefault(row.device, row)
        # A blank latest registration disables the device, same as issuance.
        return [
            latest[device]
            for device in sorted(latest)
            if str(latest[device].storage_path or "").strip()
        ]
