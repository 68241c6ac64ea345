import base64
import logging
import numbers
from io import BytesIO
from typing import Any, List, Optional, Sequence
from urllib.parse import urljoin

import requests
from PIL import Image, UnidentifiedImageError

from config import EmbeddingSettings

# Set up logging
logger = logging.getLogger(__name__)

MAX_IMAGE_SIZE = 1024


class EmbeddingError(Exception):
    """The embedding service failed or returned an unusable response."""


def _as_float_vector(vector: Any) -> List[float]:
    if not isinstance(vector, list) or not vector:
        raise EmbeddingError("Invalid vector format in embedding response")
    if any(isinstance(value, bool) or not isinstance(value, numbers.Real) for value in vector):
        raise EmbeddingError("Invalid vector format in embedding response")
    return [float(value) for value in vector]


def _vector_from_data(data: Any) -> Optional[Any]:
    if isinstance(data, list):
        for item in data:
            if isinstance(item, dict):
                vector = item.get("vector") or item.get("embedding")
                if vector:
                    return vector
        return None
    if isinstance(data, dict):
        return data.get("vector") or data.get("embedding")
    return None


class EmbeddingClient:
    """Client for the text/image embedding microservice."""

    def __init__(self, settings: Optional[EmbeddingSettings] = None, session: Optional[requests.Session] = None):
        self.settings = settings or EmbeddingSettings()
        self.session = session or requests.Session()

    def _url(self, path: str) -> str:
        return urljoin(self.settings.base_url.rstrip("/") + "/", path.lstrip("/"))

    def _post(self, path: str, payload: dict) -> Any:
        url = self._url(path)
        try:
            response = self.session.post(url, json=payload, timeout=self.settings.timeout)
        except requests.RequestException as e:
            raise EmbeddingError(f"Embedding API request failed: {str(e)}") from e

        if not response.ok:
            raise EmbeddingError(f"Embedding API request failed with status {response.status_code}")

        try:
            return response.json()
        except ValueError as e:
            raise EmbeddingError(f"Failed to parse embedding response: {str(e)}") from e

    def embed(self, text: str) -> List[float]:
        """Embed a piece of text into the shared image/text space."""
        if text is None or not str(text).strip():
            raise ValueError("text must be provided")

        response = self._post("/embed", {"text": text})
        vector = None
        if isinstance(response, dict):
            vector = (
                response.get("vector")
                or response.get("embedding")
                or _vector_from_data(response.get("data"))
                or _vector_from_data(response.get("result"))
            )
        if not vector:
            raise EmbeddingError("Vector not found in embedding response")
        return _as_float_vector(vector)

    def embed_images(self, images_b64: Sequence[str]) -> List[List[float]]:
        """Embed base64 encoded images, one vector per image."""
        images = [image for image in (images_b64 or []) if image]
        if not images:
            raise ValueError("images_b64 must contain at least one image")

        logger.info(f"Embedding {len(images)} image(s)")
        response = self._post("/embed_images_b64", {"images_b64": images})
        vectors = response.get("embeddings") if isinstance(response, dict) else None
        if not vectors:
            raise EmbeddingError("Vectors not found in embedding response")
        return [_as_float_vector(vector) for vector in vectors]


def strip_data_uri(value: str) -> Optional[str]:
    """Return the base64 part of a data URI, or the string itself."""
    text = (value or "").strip()
    if not text:
        return None
    if text.startswith("data:"):
        _, _, encoded = text.partition(",")
        return encoded.strip() or None
    return text


def image_to_base64(image_data: bytes, max_size: int = MAX_IMAGE_SIZE) -> str:
    """Convert uploaded image bytes to a base64 JPEG, downsizing large images."""
    try:
        img = Image.open(BytesIO(image_data)).convert('RGB')
    except (UnidentifiedImageError, OSError) as e:
        raise ValueError(f"Could not read image: {str(e)}") from e

    # Resize image if it's too large
    if max(img.size) > max_size:
        ratio = max_size / max(img.size)
        new_size = (int(img.size[0] * ratio), int(img.size[1] * ratio))
        img = img.resize(new_size, Image.Resampling.LANCZOS)

    buffered = BytesIO()
    img.save(buffered, format="JPEG", quality=85)
    return base64.b64encode(buffered.getvalue()).decode('utf-8')


def fetch_image_base64(url: str, session: Optional[requests.Session] = None, timeout: float = 10) -> Optional[str]:
    """Download an image and return it base64 encoded, or None if unreachable."""
    http = session or requests
    try:
        response = http.get(url, timeout=timeout, allow_redirects=True)
        response.raise_for_status()
    except requests.RequestException as e:
        logger.warning(f"Failed to download image from {url}: {str(e)}")
        return None

    if not response.content:
        return None
    logger.info(f"Downloaded image from {url}")
    return base64.b64encode(response.content).decode('utf-8')
