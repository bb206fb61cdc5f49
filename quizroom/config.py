import os


class Config:
    MONGO_URL = os.getenv("MONGO_URL", "mongodb://localhost:27017")
    DB_NAME = os.getenv("DB_NAME", "quizroom")
    REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    MAX_PARTICIPANTS = 1000
    WS_HEARTBEAT_SEC = 15
    WS_TIMEOUT_SEC = 25

    # Result memoization (seconds)
    RESULTS_CACHE_TTL_SEC = 30
    COMPETITOR_RESULT_CACHE_TTL_SEC = 300
    QUIZ_CACHE_TTL_SEC = 300

    # Every store round-trip is bounded; no retries besides the join-code loop
    STORE_TIMEOUT_SEC = float(os.getenv("STORE_TIMEOUT_SEC", "5"))
    MAX_CODE_ATTEMPTS = int(os.getenv("MAX_CODE_ATTEMPTS", "50"))

    ALLOWED_ORIGINS = [
        "http://localhost:3000",
        "http://localhost:3001",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5500",
    ]
    JWT_SECRET = os.getenv("JWT_SECRET", "quizroom-secret-key-change-in-production")
    JWT_ALGORITHM = "HS256"
    JWT_EXPIRATION_HOURS = 24


def cors_origins(config: Config) -> list:
    """Resolve CORS origins: env var CORS_ORIGINS takes priority over Config defaults"""
    cors_env = os.getenv("CORS_ORIGINS", "")
    if cors_env == "*":
        return ["*"]
    if cors_env:
        return [o.strip() for o in cors_env.split(",") if o.strip()]
    return config.ALLOWED_ORIGINS
