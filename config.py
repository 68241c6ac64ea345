import os
from dataclasses import dataclass
from typing import Mapping, Optional

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

DEFAULT_VECTOR_DIMENSION = 512
VECTOR_DIMENSION_VARIABLES = ("QDRANT_VECTOR_DIMENSION", "EMBEDDING_VECTOR_DIMENSION")


def _positive_int(value: Optional[str]) -> Optional[int]:
    if value is None or not value.strip():
        return None
    try:
        number = int(value.strip())
    except ValueError:
        return None
    return number if number > 0 else None


def parse_vector_dimension(environ: Mapping[str, str]) -> Optional[int]:
    """Return the first non-empty positive dimension override, or None."""
    for name in VECTOR_DIMENSION_VARIABLES:
        dimension = _positive_int(environ.get(name))
        if dimension:
            return dimension
    return None


@dataclass(frozen=True)
class QdrantSettings:
    collection_name: str = "products"
    url: str = "http://localhost:6333"
    api_key: Optional[str] = None
    timeout: float = 30.0
    vector_dimension: Optional[int] = None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "QdrantSettings":
        env = os.environ if environ is None else environ
        return cls(
            collection_name=env.get("QDRANT_COLLECTION_NAME") or "products",
            url=env.get("QDRANT_URL") or "http://localhost:6333",
            api_key=env.get("QDRANT_API_KEY") or None,
            timeout=float(env.get("QDRANT_TIMEOUT") or 30.0),
            vector_dimension=parse_vector_dimension(env),
        )


@dataclass(frozen=True)
class EmbeddingSettings:
    base_url: str = "http://localhost:8000"
    timeout: float = 10.0

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "EmbeddingSettings":
        env = os.environ if environ is None else environ
        return cls(
            base_url=env.get("EMBEDDING_API_URL") or "http://localhost:8000",
            timeout=float(env.get("EMBEDDING_TIMEOUT") or 10.0),
        )


class Config:
    # App settings
    SECRET_KEY = os.getenv('SECRET_KEY', 'dev-key-change-in-production')
    DEBUG = os.getenv('FLASK_DEBUG', 'False') == 'True'
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')

    # Upload settings
    ALLOWED_EXTENSIONS = {'png', 'jpg', 'jpeg', 'gif', 'webp'}
    MAX_CONTENT_LENGTH = 16 * 1024 * 1024  # 16MB max request size

    # Search settings
    DEFAULT_SEARCH_LIMIT = 20
    IMAGE_MATCH_THRESHOLD = float(os.getenv('IMAGE_MATCH_THRESHOLD', '0.8'))

    @classmethod
    def init_app(cls, app):
        # Update app config
        for key in dir(cls):
            if key.isupper() and not key.startswith('_'):
                app.config[key] = getattr(cls, key)
