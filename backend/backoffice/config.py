# backend/backoffice/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/backoffice.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///backoffice.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Exits larger than on-hand: "warn" posts and flags, "block" rejects
    NEGATIVE_STOCK_POLICY = os.environ.get("NEGATIVE_STOCK_POLICY", "warn")

    # Categorization results below this confidence are applied but not reconciled
    CATEGORIZATION_MIN_CONFIDENCE = int(os.environ.get("CATEGORIZATION_MIN_CONFIDENCE", "60"))
    CATEGORIZATION_CACHE_TTL = int(os.environ.get("CATEGORIZATION_CACHE_TTL", "300"))

    # SequenceMatcher ratio required for description-based SKU matches
    SKU_MATCH_MIN_SIMILARITY = float(os.environ.get("SKU_MATCH_MIN_SIMILARITY", "0.85"))
    SKU_MAPPING_CACHE_TTL = int(os.environ.get("SKU_MAPPING_CACHE_TTL", "300"))

    SYNC_CHUNK_SIZE = int(os.environ.get("SYNC_CHUNK_SIZE", "100"))
    HASH_PROGRESS_EVERY = int(os.environ.get("HASH_PROGRESS_EVERY", "500"))
    LOW_STOCK_THRESHOLD = int(os.environ.get("LOW_STOCK_THRESHOLD", "5"))

    # Browser origins allowed to call the API, comma separated (none by default)
    CORS_ALLOWED_ORIGINS = [
        origin.strip()
        for origin in os.environ.get("CORS_ALLOWED_ORIGINS", "").split(",")
        if origin.strip()
    ]
