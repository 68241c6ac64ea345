import json
import logging
import re
import uuid
from contextlib import contextmanager
from typing import Any, Dict, List, Optional, Tuple, Union

from qdrant_client import QdrantClient
from qdrant_client.http import models
from qdrant_client.http.exceptions import ResponseHandlingException, UnexpectedResponse

from config import QdrantSettings
from errors import ConfigurationInvalidError, DimensionMismatchError, NotFoundError, ValidationError
from products import (
    ACCOUNT_FIELD,
    PRODUCT_ID_FIELD,
    ProductPayload,
    ProductPoint,
    normalize_account_id,
    normalize_id,
    point_id_for,
)
from vectors import (
    DEFAULT_VECTOR_NAME,
    VECTOR_NAMES,
    DimensionResolution,
    MultiVector,
    NamedVector,
    Vector,
    parse_vector,
    vector_size,
)

logger = logging.getLogger(__name__)

VECTOR_DISTANCE = models.Distance.COSINE
DIMENSION_ERROR_PATTERN = re.compile(r"expected dim:\s*(\d+),\s*got:?\s*(\d+)", re.IGNORECASE)


def create_client(settings: QdrantSettings) -> QdrantClient:
    """Build a REST client for the configured Qdrant server.

    REST is used rather than gRPC so that rejected requests carry a JSON
    body the error translator can read.
    """
    logger.info(f"Connecting to Qdrant at {settings.url}")
    return QdrantClient(
        url=settings.url,
        api_key=settings.api_key,
        prefer_grpc=False,
        timeout=settings.timeout,
    )


def extract_error_message(error: Exception) -> str:
    """Pull a human readable message out of a Qdrant error response."""
    content = getattr(error, "content", None)
    if not content:
        return str(error)
    if isinstance(content, bytes):
        content = content.decode("utf-8", errors="replace")
    try:
        parsed = json.loads(content)
    except ValueError:
        parsed = content

    if isinstance(parsed, dict):
        status = parsed.get("status")
        if isinstance(status, dict) and status.get("error"):
            return str(status["error"])
        for key in ("message", "error"):
            if parsed.get(key):
                return str(parsed[key])
        return str(error)
    if parsed:
        return str(parsed)
    return str(error)


def translate_backend_error(error: Exception) -> Exception:
    """Map a rejected request to DimensionMismatchError when possible."""
    if not isinstance(error, UnexpectedResponse) or error.status_code != 400:
        return error
    match = DIMENSION_ERROR_PATTERN.search(extract_error_message(error))
    if not match:
        return error
    return DimensionMismatchError(expected=int(match.group(1)), actual=int(match.group(2)))


@contextmanager
def qdrant_errors():
    try:
        yield
    except UnexpectedResponse as e:
        translated = translate_backend_error(e)
        if translated is e:
            raise
        raise translated from e


def build_filter(filter_conditions: Any) -> Optional[models.Filter]:
    """Convert a caller supplied filter into a Qdrant filter.

    Accepts a ``models.Filter``, a Qdrant shaped dict (``must``/``should``/
    ``must_not``) or a plain mapping of field to value:

    - ``{"field": {"range": {"gte": 10, "lte": 100}}}`` -> range condition
    - ``{"field": ["a", "b"]}`` -> match any
    - ``{"field": value}`` -> exact match
    """
    if filter_conditions is None:
        return None
    if isinstance(filter_conditions, models.Filter):
        return filter_conditions
    if not isinstance(filter_conditions, dict):
        raise ValidationError("Filter must be an object")
    if not filter_conditions:
        return None

    if any(key in filter_conditions for key in ("must", "should", "must_not", "min_should")):
        try:
            return models.Filter(**filter_conditions)
        except ValueError as e:
            raise ValidationError(f"Invalid filter: {e}") from e

    must_conditions = []
    for field_name, value in filter_conditions.items():
        if value is None:
            continue
        if isinstance(value, dict) and "range" not in value:
            raise ValidationError(f"Unsupported filter condition for field '{field_name}'")
        # pydantic rejects values Qdrant cannot match on, e.g. floats for exact match
        try:
            must_conditions.append(_field_condition(field_name, value))
        except ValueError as e:
            raise ValidationError(f"Invalid filter for field '{field_name}': {e}") from e

    return models.Filter(must=must_conditions) if must_conditions else None


def _field_condition(field_name: str, value: Any) -> models.FieldCondition:
    if isinstance(value, dict):
        bounds = value["range"] or {}
        if not isinstance(bounds, dict):
            raise ValueError("range must be an object")
        return models.FieldCondition(
            key=field_name,
            range=models.Range(
                gt=bounds.get("gt"),
                gte=bounds.get("gte"),
                lt=bounds.get("lt"),
                lte=bounds.get("lte"),
            ),
        )
    if isinstance(value, list):
        return models.FieldCondition(key=field_name, match=models.MatchAny(any=value))
    return models.FieldCondition(key=field_name, match=models.MatchValue(value=value))


class ProductsVectorStore:
    """Account-scoped access to the shared product collection.

    Every point of every account lives in one collection with two named
    vectors (``image`` and ``text``). Isolation comes from the ``account_id``
    payload field: it is stamped on every write and required by every read.

    Instances are cheap and meant to be created per account (and per request
    in the web app). The collection check and the resolved vector dimension
    are cached on the instance.
    """

    def __init__(self, account_id: Any, client: QdrantClient, settings: Optional[QdrantSettings] = None):
        self.settings = settings or QdrantSettings()
        self.account_id = normalize_account_id(account_id)
        self.client = client
        self._collection_checked = False
        self._dimension = DimensionResolution.initial(self.settings.vector_dimension)

    @property
    def collection_name(self) -> str:
        return self.settings.collection_name

    @property
    def dimension_resolution(self) -> DimensionResolution:
        return self._dimension

    @property
    def vector_dimension(self) -> int:
        if not self._dimension.is_settled and not self._collection_checked:
            try:
                exists = self.client.collection_exists(collection_name=self.collection_name)
            except (UnexpectedResponse, ResponseHandlingException) as e:
                logger.warning(f"Could not look up collection '{self.collection_name}': {str(e)}")
                exists = False
            if exists:
                existing = self._fetch_collection_dimension()
                if existing:
                    self._dimension = self._dimension.observe(existing)
        return self._dimension.value

    # ------------------------------------------------------------------
    # Collection management
    # ------------------------------------------------------------------

    def ensure_collection(self, vector_size_hint: Optional[int] = None) -> None:
        """Make sure the collection exists with the expected named vectors.

        Runs once per instance; later calls return immediately. A failed
        check leaves the instance unchecked, so the next operation fails the
        same way.
        """
        if self._collection_checked:
            return

        self._dimension = self._dimension.infer(vector_size_hint)

        collections = [c.name for c in self.client.get_collections().collections]
        if self.collection_name not in collections:
            self._create_collection(vector_size_hint)
        else:
            self._reconcile_existing(vector_size_hint)

        self._collection_checked = True

    def _vectors_config(self) -> Dict[str, models.VectorParams]:
        return {
            name: models.VectorParams(size=self._dimension.value, distance=VECTOR_DISTANCE)
            for name in VECTOR_NAMES
        }

    def _create_collection(self, vector_size_hint: Optional[int]) -> None:
        try:
            self.client.create_collection(
                collection_name=self.collection_name,
                vectors_config=self._vectors_config(),
            )
        except UnexpectedResponse as e:
            if e.status_code != 409 and "already exists" not in extract_error_message(e).lower():
                raise
            logger.warning(
                f"Collection '{self.collection_name}' was created concurrently, using the existing one"
            )
            self._reconcile_existing(vector_size_hint)
            return

        logger.info(
            f"Created collection '{self.collection_name}' with vectors "
            f"{', '.join(VECTOR_NAMES)} of dimension {self._dimension.value}"
        )
        self._create_payload_indexes()

    def _create_payload_indexes(self) -> None:
        for field_name in (ACCOUNT_FIELD, PRODUCT_ID_FIELD):
            try:
                self.client.create_payload_index(
                    collection_name=self.collection_name,
                    field_name=field_name,
                    field_schema=models.PayloadSchemaType.KEYWORD,
                )
            except (UnexpectedResponse, ResponseHandlingException) as e:
                logger.warning(f"Could not create index for '{field_name}': {str(e)}")

    def _reconcile_existing(self, vector_size_hint: Optional[int]) -> None:
        existing = self._fetch_collection_dimension()
        if not existing:
            return
        self._dimension = self._dimension.observe(existing)
        if vector_size_hint and vector_size_hint > 0 and vector_size_hint != existing:
            raise DimensionMismatchError(
                expected=existing,
                actual=vector_size_hint,
                message=(
                    f"Qdrant collection '{self.collection_name}' is configured for vectors of "
                    f"dimension {existing}, but received vector size {vector_size_hint}. "
                    f"Please recreate the collection or update QDRANT_VECTOR_DIMENSION to match."
                ),
            )

    def _fetch_collection_dimension(self) -> Optional[int]:
        try:
            info = self.client.get_collection(collection_name=self.collection_name)
        except (UnexpectedResponse, ResponseHandlingException) as e:
            logger.warning(
                f"Could not read configuration of collection '{self.collection_name}': {str(e)}"
            )
            return None

        vectors = info.config.params.vectors
        self._ensure_required_vector_config(vectors)
        if not vectors:
            return None
        return int(self._slot_size(vectors[VECTOR_NAMES[0]]))

    @staticmethod
    def _slot_size(entry: Any) -> Optional[int]:
        if isinstance(entry, dict):
            size = entry.get("size")
        else:
            size = getattr(entry, "size", None)
        try:
            return int(size) if size is not None else None
        except (TypeError, ValueError):
            return None

    def _ensure_required_vector_config(self, vectors: Any) -> None:
        if vectors is None:
            return

        names = ", ".join(VECTOR_NAMES)
        if isinstance(vectors, models.VectorParams):
            raise ConfigurationInvalidError(
                self.collection_name,
                f"Qdrant collection '{self.collection_name}' must be recreated with named vectors "
                f"({names}) to store both representations.",
            )
        if not isinstance(vectors, dict):
            raise ConfigurationInvalidError(
                self.collection_name,
                f"Qdrant collection '{self.collection_name}' returned an unexpected vectors "
                f"configuration. Please recreate the collection with vectors: {names}.",
            )

        missing = []
        for name in VECTOR_NAMES:
            size = self._slot_size(vectors.get(name)) if name in vectors else None
            if not size or size <= 0:
                missing.append(name)
        if missing:
            raise ConfigurationInvalidError(
                self.collection_name,
                f"Qdrant collection '{self.collection_name}' is missing vector(s): "
                f"{', '.join(missing)}. Please recreate the collection with vectors: {names}.",
                missing=missing,
            )

        sizes = {self._slot_size(vectors[name]) for name in VECTOR_NAMES}
        if len(sizes) > 1:
            raise ConfigurationInvalidError(
                self.collection_name,
                f"Qdrant collection '{self.collection_name}' has vectors of different dimensions "
                f"({', '.join(f'{name}={self._slot_size(vectors[name])}' for name in VECTOR_NAMES)}). "
                f"Please recreate the collection with vectors: {names}.",
            )

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_vector(self, vector: Any) -> Vector:
        """Check a vector against the resolved dimension and return its tagged form."""
        parsed = parse_vector(vector)
        if isinstance(parsed, MultiVector):
            for name in VECTOR_NAMES:
                if name not in parsed.slots:
                    raise ValidationError(f"Vector '{name}' must be provided")
                self._check_values(parsed.slots[name])
        else:
            self._check_values(parsed.values)
        return parsed

    def _check_values(self, values: List[float]) -> None:
        self._dimension = self._dimension.infer(len(values))
        expected = self._dimension.value
        if len(values) != expected:
            raise DimensionMismatchError(
                expected=expected,
                actual=len(values),
                message=(
                    f"Vector must have {expected} dimensions (got {len(values)}) "
                    f"for collection '{self.collection_name}'"
                ),
            )

    # ------------------------------------------------------------------
    # Tenant scoping
    # ------------------------------------------------------------------

    def _account_condition(self) -> models.FieldCondition:
        return models.FieldCondition(
            key=ACCOUNT_FIELD,
            match=models.MatchValue(value=self.account_id),
        )

    def combine_filters(self, filter: Any = None) -> models.Filter:
        """AND the account condition with the caller's filter."""
        conditions = [self._account_condition()]
        caller_filter = build_filter(filter)
        if caller_filter is not None:
            conditions.append(caller_filter)
        return models.Filter(must=conditions)

    def stamp_payload(self, payload: Optional[Dict[str, Any]], product_id: Optional[str] = None) -> Dict[str, Any]:
        """Copy the payload with the owning account forced to this store's account."""
        data = ProductPayload.build(self.account_id, payload).to_dict()
        if product_id is not None:
            data[PRODUCT_ID_FIELD] = product_id
        return data

    def _owns(self, payload: Optional[Dict[str, Any]]) -> bool:
        return str((payload or {}).get(ACCOUNT_FIELD)) == self.account_id

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    @staticmethod
    def _check_limit(limit: Any) -> int:
        if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
            raise ValidationError("limit must be a positive integer")
        return limit

    @staticmethod
    def _check_offset(offset: Any) -> Union[str, int, None]:
        """Scroll offsets are point ids: a UUID string or a non-negative integer."""
        if offset is None or (isinstance(offset, str) and not offset.strip()):
            return None
        if isinstance(offset, int) and not isinstance(offset, bool) and offset >= 0:
            return offset
        if isinstance(offset, str):
            text = offset.strip()
            if text.isdigit():
                return int(text)
            try:
                return str(uuid.UUID(text))
            except ValueError:
                pass
        raise ValidationError("offset must be a point id returned as next_offset")

    def search(self, vector: Any, limit: int = 10, filter: Any = None) -> List[ProductPoint]:
        """Nearest products to a single query vector, scored.

        ``vector`` is either a flat list (searched against the ``text`` slot)
        or ``{"name": "image" | "text", "vector": [...]}``.
        """
        limit = self._check_limit(limit)
        parsed = parse_vector(vector)
        self.ensure_collection(vector_size_hint=vector_size(parsed))
        parsed = self.validate_vector(parsed)
        if isinstance(parsed, MultiVector):
            raise ValidationError(
                "Search takes a single vector; use {'name': 'image' | 'text', 'vector': [...]}"
            )
        using = parsed.name if isinstance(parsed, NamedVector) else DEFAULT_VECTOR_NAME
        query_filter = self.combine_filters(filter)

        with qdrant_errors():
            response = self.client.query_points(
                collection_name=self.collection_name,
                query=parsed.values,
                using=using,
                query_filter=query_filter,
                limit=limit,
                with_payload=True,
                with_vectors=True,
            )

        results = [ProductPoint.from_record(point) for point in response.points]
        logger.info(f"Found {len(results)} products in '{self.collection_name}' using {using} vector")
        return results

    def scroll(self, limit: int = 20, offset: Any = None, filter: Any = None) -> Tuple[List[ProductPoint], Optional[str]]:
        """Page through this account's products; returns (products, next_offset)."""
        limit = self._check_limit(limit)
        offset = self._check_offset(offset)
        self.ensure_collection()
        scroll_filter = self.combine_filters(filter)

        with qdrant_errors():
            records, next_offset = self.client.scroll(
                collection_name=self.collection_name,
                scroll_filter=scroll_filter,
                limit=limit,
                offset=offset,
                with_payload=True,
                with_vectors=True,
            )

        points = [ProductPoint.from_record(record) for record in records]
        return points, (str(next_offset) if next_offset is not None else None)

    def upsert(self, id: Any, payload: Optional[Dict[str, Any]], vector: Any) -> ProductPoint:
        """Store or fully replace a product with both named vectors."""
        parsed = parse_vector(vector)
        self.ensure_collection(vector_size_hint=vector_size(parsed))
        parsed = self.validate_vector(parsed)
        if not isinstance(parsed, MultiVector):
            raise ValidationError(f"Products must be stored with vectors: {', '.join(VECTOR_NAMES)}")
        product_id = normalize_id(id)
        stamped = self.stamp_payload(payload, product_id)
        vectors = {name: parsed.slots[name] for name in VECTOR_NAMES}

        with qdrant_errors():
            self.client.upsert(
                collection_name=self.collection_name,
                points=[
                    models.PointStruct(
                        id=point_id_for(self.account_id, product_id),
                        vector=vectors,
                        payload=stamped,
                    )
                ],
                wait=True,
            )

        logger.info(f"Upserted product '{product_id}' for account '{self.account_id}'")
        return ProductPoint(id=product_id, payload=stamped, vector=vectors)

    def delete(self, id: Any) -> None:
        # Point ids are derived from this account, so only its own product can match
        self.ensure_collection()
        product_id = normalize_id(id)

        with qdrant_errors():
            self.client.delete(
                collection_name=self.collection_name,
                points_selector=models.PointIdsList(points=[point_id_for(self.account_id, product_id)]),
                wait=True,
            )

        logger.info(f"Deleted product '{product_id}' for account '{self.account_id}'")

    def find(self, id: Any) -> Optional[ProductPoint]:
        self.ensure_collection()
        product_id = normalize_id(id)

        with qdrant_errors():
            records = self.client.retrieve(
                collection_name=self.collection_name,
                ids=[point_id_for(self.account_id, product_id)],
                with_payload=True,
                with_vectors=True,
            )

        for record in records:
            point = ProductPoint.from_record(record)
            if point.id == product_id and self._owns(point.payload):
                return point
        return None

    def find_or_raise(self, id: Any) -> ProductPoint:
        product_id = normalize_id(id)
        point = self.find(product_id)
        if point is None:
            raise NotFoundError("Product not found")
        return point
