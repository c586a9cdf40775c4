import os
from pathlib import Path
from typing import Optional


def _parse_env_line(line: str) -> Optional[tuple[str, str]]:
    """Parse one `KEY=value` line of a .env file.

    Accepts an `export ` prefix and matching surrounding quotes. Unquoted
    values end at the first ` #`.
    """
    text = line.strip()
    if text.startswith("export "):
        text = text[len("export "):].lstrip()
    if not text or text.startswith("#"):
        return None
    key, sep, value = text.partition("=")
    key = key.strip()
    if not sep or not key:
        return None
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("\"", "'"):
        return key, value[1:-1]
    return key, value.split(" #", 1)[0].rstrip()


def read_env_file(path: Path) -> dict[str, str]:
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError:
        return {}
    pairs = (_parse_env_line(line) for line in lines)
    return dict(pair for pair in pairs if pair is not None)


def _load_env() -> None:
    project_root = Path(__file__).resolve().parents[2]
    seen: set[Path] = set()
    for candidate in (project_root / ".env", Path.cwd() / ".env"):
        candidate = candidate.resolve()
        if candidate in seen:
            continue
        seen.add(candidate)
        # Real environment variables win over .env values.
        for key, value in read_env_file(candidate).items():
            os.environ.setdefault(key, value)


_load_env()


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _env_choice(name: str, default: str, allowed: set[str]) -> str:
    value = os.getenv(name, default).strip().lower() or default
    return value if value in allowed else default


def _default_database_url() -> str:
    explicit_path = os.getenv("STOREFRONT_DB_PATH", "").strip()
    if explicit_path:
        return f"sqlite:///{Path(explicit_path).as_posix()}"
    project_root = Path(__file__).resolve().parents[2]
    dev_db = (project_root / "storefront.db").resolve()
    return f"sqlite:///{dev_db.as_posix()}"


DATABASE_URL = os.getenv("DATABASE_URL", _default_database_url())
DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "10"))
DB_MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "20"))
DB_POOL_RECYCLE = int(os.getenv("DB_POOL_RECYCLE", "3600"))
DB_STATEMENT_TIMEOUT_MS = int(os.getenv("DB_STATEMENT_TIMEOUT_MS", "5000"))
DB_CONNECT_TIMEOUT_SECONDS = int(os.getenv("DB_CONNECT_TIMEOUT_SECONDS", "5"))

# Hosted backend (auth + private object storage). The service role key is a
# privileged credential and must only ever live server side.
SUPABASE_URL = os.getenv("SUPABASE_URL", "").strip().rstrip("/")
SUPABASE_SERVICE_ROLE_KEY = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "").strip()
SUPABASE_JWT_SECRET = os.getenv("SUPABASE_JWT_SECRET", "").strip()
ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_AUDIENCE = os.getenv("JWT_AUDIENCE", "authenticated").strip()

IDENTITY_PROVIDER = _env_choice("IDENTITY_PROVIDER", "supabase", {"supabase", "jwt"})
IDENTITY_TIMEOUT_SECONDS = float(os.getenv("IDENTITY_TIMEOUT_SECONDS", "5"))

ARTIFACT_SIGNER = _env_choice("ARTIFACT_SIGNER", "supabase", {"supabase", "hmac"})
ARTIFACT_BUCKET = os.getenv("ARTIFACT_BUCKET", "game-binaries").strip() or "game-binaries"
ARTIFACT_BASE_URL = os.getenv("ARTIFACT_BASE_URL", "").strip().rstrip("/")
ARTIFACT_SIGNING_SECRET = os.getenv("ARTIFACT_SIGNING_SECRET", "")
STORAGE_SIGN_TIMEOUT_SECONDS = float(os.getenv("STORAGE_SIGN_TIMEOUT_SECONDS", "5"))
SIGNED_URL_TTL_SECONDS = int(os.getenv("SIGNED_URL_TTL_SECONDS", str(60 * 15)))

DEMO_CLAIM_FAIL_CLOSED = _env_flag("DEMO_CLAIM_FAIL_CLOSED")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO"


def _normalize_cors(origins: str) -> list[str]:
    items: list[str] = []
    for raw in origins.split(","):
        value = raw.strip()
        if value and value not in items:
            items.append(value)
    return items


CORS_ORIGINS = _normalize_cors(os.getenv("CORS_ORIGINS", "*"))

# Sent on every /issue-download response, independent of CORS_ORIGINS.
DOWNLOAD_CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
}
