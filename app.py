import logging
import uuid

from flask import Blueprint, Flask, current_app, g, jsonify, request
from flask_cors import CORS
from qdrant_client.http.exceptions import ResponseHandlingException, UnexpectedResponse
from werkzeug.datastructures import FileStorage
from werkzeug.exceptions import HTTPException

from assistant import ProductAssistant
from auth import require_account_id
from config import Config, EmbeddingSettings, QdrantSettings
from embeddings import EmbeddingClient, EmbeddingError, fetch_image_base64, image_to_base64, strip_data_uri
from errors import ConfigurationInvalidError, DimensionMismatchError, NotFoundError, ValidationError
from products import format_product
from vectors import VECTOR_NAMES, average_vectors
from vectorstore import ProductsVectorStore, create_client

logger = logging.getLogger(__name__)

PRODUCT_FIELDS = ("name", "price", "stock", "details", "images")
REQUIRED_CREATE_FIELDS = ("name", "price", "stock", "details", "images")

products_bp = Blueprint("products", __name__)


def configure_logging(level='INFO'):
    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
        root.addHandler(handler)
    root.setLevel(level)


# ---------------------------
# Shared services
# ---------------------------
def get_qdrant_client():
    client = current_app.extensions.get("qdrant_client")
    if client is None:
        client = create_client(current_app.extensions["qdrant_settings"])
        current_app.extensions["qdrant_client"] = client
    return client


def get_vector_store(account_id):
    return ProductsVectorStore(
        account_id,
        client=get_qdrant_client(),
        settings=current_app.extensions["qdrant_settings"],
    )


def vector_store():
    """Store for the current request's account, created once per request."""
    if "vector_store" not in g:
        g.vector_store = get_vector_store(g.account_id)
    return g.vector_store


def embedder():
    return current_app.extensions["embedder"]


# ---------------------------
# Request parsing
# ---------------------------
def request_data():
    if request.is_json:
        data = request.get_json(silent=True)
        return data if isinstance(data, dict) else {}

    data = {}
    for key in request.form:
        values = request.form.getlist(key)
        name = key[:-2] if key.endswith("[]") else key
        data[name] = values if key.endswith("[]") or name == "images" or len(values) > 1 else values[0]
    return data


def product_params(data):
    product = data.get("product")
    return product if isinstance(product, dict) else data


def parse_limit(value, default):
    try:
        limit = int(value if value is not None else default)
    except (TypeError, ValueError):
        return default
    return limit if limit > 0 else default


def require_param(data, name):
    value = data.get(name)
    if value is None or not str(value).strip():
        raise ValidationError(f"param is missing or the value is empty: {name}")
    return str(value)


def flatten_images(value):
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        images = []
        for item in value:
            images.extend(flatten_images(item))
        return images
    if isinstance(value, str):
        encoded = strip_data_uri(value)
        return [encoded] if encoded else []
    raise ValidationError("images must be a list of strings")


def sanitize_attributes(data, require_all=False):
    attributes = {key: data[key] for key in PRODUCT_FIELDS if key in data}

    if require_all:
        missing = [field for field in REQUIRED_CREATE_FIELDS if field not in attributes]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    if attributes.get("price") is not None:
        try:
            attributes["price"] = float(attributes["price"])
        except (TypeError, ValueError):
            raise ValidationError("price must be a number")
    if attributes.get("stock") is not None:
        try:
            attributes["stock"] = int(attributes["stock"])
        except (TypeError, ValueError):
            raise ValidationError("stock must be an integer")
    if "images" in attributes:
        attributes["images"] = flatten_images(attributes["images"])

    return attributes


def normalize_image_value(value):
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        sources = []
        for item in value:
            sources.extend(normalize_image_value(item))
        return sources
    if isinstance(value, FileStorage):
        data = value.read()
        if not data:
            return []
        try:
            return [image_to_base64(data)]
        except ValueError as e:
            raise ValidationError(f"Invalid image upload '{value.filename}': {str(e)}")
    if isinstance(value, dict):
        encoded = value.get("image_base64") or value.get("base64") or value.get("data")
        return normalize_image_value(encoded)
    if isinstance(value, str):
        text = value.strip()
        if text.startswith(("http://", "https://")):
            encoded = fetch_image_base64(text)
            return [encoded] if encoded else []
        encoded = strip_data_uri(text)
        return [encoded] if encoded else []
    return []


def collect_image_sources(*inputs):
    sources = []
    for value in inputs:
        sources.extend(normalize_image_value(value))
    return sources


# ---------------------------
# Embeddings
# ---------------------------
def embed_image_vector(image_sources):
    if not image_sources:
        return None
    try:
        vectors = embedder().embed_images(image_sources)
    except EmbeddingError as e:
        raise ValidationError(f"Image embedding failed: {str(e)}") from e

    if len(vectors) == 1:
        return vectors[0]
    averaged = average_vectors(vectors)
    if not averaged:
        raise ValidationError("Image embedding failed: empty response")
    return averaged


def build_text_embedding_input(attributes):
    parts = [str(attributes.get(key) or "").strip() for key in ("name", "details")]
    parts = [part for part in parts if part]
    return "\n\n".join(parts) if parts else None


def embed_text(text, label):
    if not text:
        return None
    try:
        return embedder().embed(text)
    except EmbeddingError as e:
        raise ValidationError(f"{label} embedding failed: {str(e)}") from e


def vector_from_attributes(attributes, image_sources):
    vectors = {
        "image": embed_image_vector(image_sources),
        "text": embed_text(build_text_embedding_input(attributes), "Text"),
    }
    if not vectors["image"] and not vectors["text"]:
        raise ValidationError("Unable to generate vectors from provided images or text")

    vectors["image"] = vectors["image"] or vectors["text"]
    vectors["text"] = vectors["text"] or vectors["image"]

    missing = [name for name in VECTOR_NAMES if not vectors.get(name)]
    if missing:
        raise ValidationError(f"Unable to generate vectors: {', '.join(missing)}")
    return vectors


def product_response(point):
    return {"id": point.id, "product": format_product(point)}


# ---------------------------
# Routes
# ---------------------------
@products_bp.route("/up")
def health():
    return jsonify({"status": "ok"})


def _search_products(query, images, limit, offset=None, filter=None):
    store = vector_store()
    vector = None

    image_sources = collect_image_sources(images)
    if image_sources:
        vector = {"name": "image", "vector": embed_image_vector(image_sources)}

    if vector is None and query and str(query).strip():
        vector = {"name": "text", "vector": embed_text(str(query), "Query")}

    if vector is None:
        points, next_offset = store.scroll(limit=limit, offset=offset, filter=filter)
        return jsonify({
            "products": [format_product(point) for point in points],
            "count": len(points),
            "next_offset": next_offset,
        })

    results = store.search(vector, limit=limit, filter=filter)
    return jsonify({
        "products": [format_product(point) for point in results],
        "count": len(results),
    })


@products_bp.route("/<account_id>/products", methods=["GET"])
@require_account_id
def index(account_id):
    limit = parse_limit(request.args.get("limit"), current_app.config["DEFAULT_SEARCH_LIMIT"])
    images = request.args.getlist("images") + request.files.getlist("images")
    return _search_products(
        query=request.args.get("query"),
        images=images,
        limit=limit,
        offset=request.args.get("offset"),
    )


@products_bp.route("/<account_id>/products/search", methods=["POST"])
@require_account_id
def search(account_id):
    data = request_data()
    limit = parse_limit(data.get("limit"), current_app.config["DEFAULT_SEARCH_LIMIT"])
    return _search_products(
        query=data.get("query"),
        images=[data.get("images"), request.files.getlist("images")],
        limit=limit,
        offset=data.get("offset"),
        filter=data.get("filter"),
    )


@products_bp.route("/<account_id>/products", methods=["POST"])
@require_account_id
def create(account_id):
    data = request_data()
    params = dict(product_params(data))
    uploads = request.files.getlist("images")
    if uploads and "images" not in params:
        # multipart uploads satisfy the images requirement
        params["images"] = []

    attributes = sanitize_attributes(params, require_all=True)
    product_id = str(data.get("id") or params.get("id") or uuid.uuid4())

    image_sources = collect_image_sources(attributes.get("images"), uploads)
    vector = vector_from_attributes(attributes, image_sources)

    point = vector_store().upsert(product_id, attributes, vector)
    logger.info(f"Created product '{point.id}' for account '{account_id}'")
    return jsonify(product_response(point)), 201


@products_bp.route("/<account_id>/products/<product_id>", methods=["GET"])
@require_account_id
def show(account_id, product_id):
    point = vector_store().find_or_raise(product_id)
    return jsonify(product_response(point))


@products_bp.route("/<account_id>/products/<product_id>", methods=["PUT", "PATCH"])
@require_account_id
def update(account_id, product_id):
    store = vector_store()
    point = store.find_or_raise(product_id)

    params = product_params(request_data())
    merged = dict(point.payload)
    merged.update(sanitize_attributes(params))

    image_sources = collect_image_sources(merged.get("images"), request.files.getlist("images"))
    vector = vector_from_attributes(merged, image_sources)

    point = store.upsert(product_id, merged, vector)
    return jsonify(product_response(point))


@products_bp.route("/<account_id>/products/<product_id>", methods=["DELETE"])
@require_account_id
def destroy(account_id, product_id):
    store = vector_store()
    store.find_or_raise(product_id)
    store.delete(product_id)
    return "", 204


@products_bp.route("/<account_id>/main", methods=["POST"])
@require_account_id
def main(account_id):
    data = request_data()
    message = require_param(data, "message")
    session_id = require_param(data, "session_id")

    result = current_app.extensions["assistant"].run(account_id, session_id, message)
    return jsonify({"result": result})


# ---------------------------
# Error handlers
# ---------------------------
def register_error_handlers(app):
    @app.errorhandler(NotFoundError)
    def handle_not_found(e):
        return jsonify({"error": str(e)}), 404

    @app.errorhandler(DimensionMismatchError)
    def handle_dimension_mismatch(e):
        collection_name = app.extensions["qdrant_settings"].collection_name
        logger.warning(f"Dimension mismatch on '{collection_name}': {str(e)}")
        return jsonify({
            "error": "Vector dimension mismatch",
            "detail": (
                f"Qdrant collection '{collection_name}' expects {e.expected} dimensions "
                f"but received {e.actual}. Recreate the collection with the correct vector "
                f"size or set QDRANT_VECTOR_DIMENSION / EMBEDDING_VECTOR_DIMENSION accordingly."
            ),
            "expected": e.expected,
            "actual": e.actual,
        }), 422

    @app.errorhandler(ValidationError)
    def handle_validation_error(e):
        return jsonify({"error": str(e)}), 422

    @app.errorhandler(EmbeddingError)
    def handle_embedding_error(e):
        return jsonify({"error": f"Embedding failed: {str(e)}"}), 422

    @app.errorhandler(ConfigurationInvalidError)
    def handle_configuration_invalid(e):
        logger.error(f"Collection misconfigured: {str(e)}")
        return jsonify({
            "error": "Qdrant collection misconfigured",
            "detail": str(e),
            "missing": list(e.missing),
        }), 500

    @app.errorhandler(UnexpectedResponse)
    @app.errorhandler(ResponseHandlingException)
    def handle_qdrant_error(e):
        logger.error(f"Qdrant request failed: {str(e)}", exc_info=True)
        return jsonify({"error": "Qdrant request failed", "detail": str(e)}), 502

    @app.errorhandler(HTTPException)
    def handle_http_exception(e):
        return jsonify({"error": e.description, "status": e.code}), e.code

    @app.errorhandler(Exception)
    def handle_exception(e):
        logger.error(f"Unhandled exception: {str(e)}", exc_info=True)
        return jsonify({"error": "Unexpected error", "detail": str(e)}), 500


# ---------------------------
# App factory
# ---------------------------
def create_app(qdrant_settings=None, qdrant_client=None, embedding_client=None, assistant=None):
    app = Flask(__name__)
    Config.init_app(app)
    configure_logging(app.config["LOG_LEVEL"])
    CORS(app)

    app.extensions["qdrant_settings"] = qdrant_settings or QdrantSettings.from_env()
    app.extensions["qdrant_client"] = qdrant_client
    app.extensions["embedder"] = embedding_client or EmbeddingClient(EmbeddingSettings.from_env())
    app.extensions["assistant"] = assistant or ProductAssistant(
        store_factory=get_vector_store,
        embedder=app.extensions["embedder"],
        image_match_threshold=app.config["IMAGE_MATCH_THRESHOLD"],
    )

    app.register_blueprint(products_bp)
    register_error_handlers(app)
    return app


app = create_app()


# ---------------------------
# Run server
# ---------------------------
if __name__ == "__main__":
    app.run(host='0.0.0.0', port=5000, debug=app.config["DEBUG"], threaded=True)
