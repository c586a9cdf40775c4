from __future__ import annotations

import argparse
import mimetypes
import sys
from pathlib import Path

from storefront.db import Base, SessionLocal, engine
from storefront.migrations import ensure_schema
from storefront.models import DOWNLOAD_KINDS, GameDownload, Purchase


def _normalize_storage_path(value: str) -> str:
    return str(value or "").replace("\\", "/").strip().strip("/")


def grant_purchase(args: argparse.Namespace) -> int:
    with SessionLocal() as db:
        purchase = Purchase(user_id=args.user_id.strip(), game_slug=args.game_slug.strip())
        db.add(purchase)
        db.commit()
        print(f"purchase {purchase.id} user={purchase.user_id} slug={purchase.game_slug}")
    return 0


def register_download(args: argparse.Namespace) -> int:
    storage_path = _normalize_storage_path(args.storage_path)
    if not storage_path:
        print("storage path is empty", file=sys.stderr)
        return 2
    file_name = args.file_name or Path(storage_path).name
    mime_type = args.mime_type or mimetypes.guess_type(file_name)[0]
    with SessionLocal() as db:
        row = GameDownload(
            game_slug=args.game_slug.strip(),
            kind=args.kind,
            device=args.device.strip(),
            storage_path=storage_path,
            file_name=file_name,
            mime_type=mime_type,
            created_by=args.created_by,
        )
        db.add(row)
        db.commit()
        print(
            f"download {row.id} slug={row.game_slug} kind={row.kind} "
            f"device={row.device} path={row.storage_path}"
        )
    return 0


def list_downloads(args: argparse.Namespace) -> int:
    with SessionLocal() as db:
        query = db.query(GameDownload).filter(GameDownload.game_slug == args.game_slug.strip())
        if args.kind:
            query = query.filter(GameDownload.kind == args.kind)
        rows = query.order_by(GameDownload.created_at.desc()).all()
    for row in rows:
        print(f"{row.created_at.isoformat()}  {row.kind:<4}  {row.device:<10}  {row.storage_path}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Seed purchases and register game builds.")
    sub = parser.add_subparsers(dest="command", required=True)

    purchase = sub.add_parser("grant-purchase", help="Record that a user owns a game")
    purchase.add_argument("user_id")
    purchase.add_argument("game_slug")
    purchase.set_defaults(func=grant_purchase)

    register = sub.add_parser("register-download", help="Point a game/kind/device at a stored build")
    register.add_argument("game_slug")
    register.add_argument("kind", choices=DOWNLOAD_KINDS)
    register.add_argument("device")
    register.add_argument("storage_path", help="Object path inside the private bucket")
    register.add_argument("--file-name", default=None)
    register.add_argument("--mime-type", default=None)
    register.add_argument("--created-by", default=None)
    register.set_defaults(func=register_download)

    listing = sub.add_parser("list-downloads", help="Show registrations, newest first")
    listing.add_argument("game_slug")
    listing.add_argument("--kind", choices=DOWNLOAD_KINDS, default=None)
    listing.set_defaults(func=list_downloads)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    Base.metadata.create_all(bind=engine)
    ensure_schema()
    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())
