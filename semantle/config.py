import os


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./semantle.db")

# secret for signing guest tokens; override with SESSION_SECRET env var in production
SESSION_SECRET = os.getenv("SESSION_SECRET", "dev-secret-change-me")
COOKIE_SECURE = os.getenv("COOKIE_SECURE", "0") in ("1", "true", "True")

# External word-embedding services
SIMILARITY_API_URL = os.getenv("SIMILARITY_API_URL", "https://hebrew-w2v.onrender.com/similarity")
RANKING_API_URL = os.getenv("RANKING_API_URL", "https://hebrew-w2v.onrender.com")
RANKING_ADMIN_PASSWORD = os.getenv("RANKING_ADMIN_PASSWORD", "")
SIMILARITY_TIMEOUT_SECONDS = _env_float("SIMILARITY_TIMEOUT_SECONDS", 10.0)
REFERENCE_RANKS = (1, 990, 999)

# Room policy
INACTIVITY_TIMEOUT_SECONDS = _env_float("INACTIVITY_TIMEOUT_SECONDS", 25 * 60)
CORRECT_SIMILARITY_THRESHOLD = _env_float("CORRECT_SIMILARITY_THRESHOLD", 0.99)
DEFAULT_MAX_PLAYERS = _env_int("DEFAULT_MAX_PLAYERS", 10)
NICKNAME_MAX_LENGTH = _env_int("NICKNAME_MAX_LENGTH", 20)
ROOM_CODE_LENGTH = _env_int("ROOM_CODE_LENGTH", 6)

# passlib pbkdf2_sha256 hash of the admin password; admin routes are disabled when empty
ADMIN_USERNAME = os.getenv("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD_HASH = os.getenv("ADMIN_PASSWORD_HASH", "")

CORS_ORIGINS = [
    o.strip()
    for o in os.getenv(
        "CORS_ORIGINS",
        "http://localhost:5173,http://127.0.0.1:5173,http://localhost:8000,http://127.0.0.1:8000",
    ).split(",")
    if o.strip()
]
