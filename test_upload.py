from io import BytesIO
from unittest.mock import MagicMock

import pytest
from PIL import Image
from qdrant_client.http import models
from qdrant_client.http.exceptions import ResponseHandlingException

from app import create_app
from config import QdrantSettings
from conftest import COLLECTION, FakeEmbedder
from embeddings import EmbeddingError

RED_SHOE = {
    "name": "Red Shoe",
    "price": "59.90",
    "stock": "3",
    "details": "Lightweight running shoe",
    "images": ["data:image/jpeg;base64,cmVkLXNob2U="],
}


def create_product(client, account_id="shop-1", **overrides):
    return client.post(f"/{account_id}/products", json={**RED_SHOE, **overrides})


def test_health(client):
    response = client.get("/up")
    assert response.status_code == 200
    assert response.get_json() == {"status": "ok"}


class TestCreate:
    def test_creates_product(self, client, embedder):
        response = create_product(client, id="sku-1")

        assert response.status_code == 201
        assert response.get_json() == {
            "id": "sku-1",
            "product": {
                "id": "sku-1",
                "name": "Red Shoe",
                "price": 59.9,
                "stock": 3,
                "details": "Lightweight running shoe",
            },
        }
        assert embedder.texts == ["Red Shoe\n\nLightweight running shoe"]
        assert embedder.images == [["cmVkLXNob2U="]]

    def test_generates_id(self, client):
        data = create_product(client).get_json()
        assert data["id"]
        assert client.get(f"/shop-1/products/{data['id']}").status_code == 200

    def test_nested_product_params(self, client):
        response = client.post("/shop-1/products", json={"id": "sku-1", "product": RED_SHOE})
        assert response.status_code == 201
        assert response.get_json()["product"]["name"] == "Red Shoe"

    def test_missing_fields(self, client):
        response = client.post("/shop-1/products", json={"name": "Red Shoe", "price": 10})

        assert response.status_code == 422
        assert response.get_json() == {"error": "Missing required fields: stock, details, images"}

    def test_invalid_price(self, client):
        response = create_product(client, price="cheap")

        assert response.status_code == 422
        assert response.get_json()["error"] == "price must be a number"

    def test_multipart_upload(self, client, embedder):
        buffer = BytesIO()
        Image.new('RGB', (32, 32), color=(255, 0, 0)).save(buffer, format="PNG")
        buffer.seek(0)

        response = client.post(
            "/shop-1/products",
            data={
                "id": "sku-7",
                "name": "Red Shoe",
                "price": "59.90",
                "stock": "3",
                "details": "Lightweight running shoe",
                "images": (buffer, "shoe.png"),
            },
            content_type="multipart/form-data",
        )

        assert response.status_code == 201
        assert response.get_json()["product"]["stock"] == 3
        assert len(embedder.images) == 1

    def test_text_only_product_fills_image_vector(self, client, qdrant):
        response = create_product(client, id="sku-1", images=[])

        assert response.status_code == 201
        record = qdrant.scroll(collection_name=COLLECTION, with_vectors=True)[0][0]
        assert record.vector["image"] == pytest.approx(record.vector["text"])

    def test_invalid_account_id(self, client):
        response = client.post("/%20/products", json=RED_SHOE)

        assert response.status_code == 422
        assert response.get_json()["error"] == "account_id cannot be blank"


class TestIndex:
    def test_text_search(self, client):
        create_product(client, id="sku-1")
        create_product(client, id="sku-2", name="Blue Hat", details="Wool hat")

        response = client.get("/shop-1/products", query_string={"query": "Blue Hat\n\nWool hat"})

        data = response.get_json()
        assert response.status_code == 200
        assert data["count"] == 2
        assert data["products"][0]["id"] == "sku-2"
        assert data["products"][0]["score"] == pytest.approx(1.0)

    def test_image_search(self, client):
        create_product(client, id="sku-1")
        create_product(client, id="sku-2", name="Blue Hat", images=["Ymx1ZS1oYXQ="])

        response = client.get("/shop-1/products", query_string={"images": "Ymx1ZS1oYXQ=", "limit": 1})

        assert [product["id"] for product in response.get_json()["products"]] == ["sku-2"]

    def test_search_is_account_scoped(self, client):
        create_product(client, account_id="shop-2", id="sku-1")

        response = client.get("/shop-1/products", query_string={"query": "Red Shoe"})

        assert response.get_json() == {"products": [], "count": 0}

    def test_lists_without_query(self, client):
        for index in range(3):
            create_product(client, id=f"sku-{index}")

        data = client.get("/shop-1/products", query_string={"limit": 2}).get_json()
        assert data["count"] == 2
        assert data["next_offset"]

        rest = client.get(
            "/shop-1/products", query_string={"limit": 2, "offset": data["next_offset"]}
        ).get_json()
        assert rest["count"] == 1
        assert rest["next_offset"] is None

    def test_search_with_filter(self, client):
        create_product(client, id="sku-1")
        create_product(client, id="sku-2", name="Blue Hat", price="15")

        response = client.post(
            "/shop-1/products/search",
            json={"query": "Red Shoe", "filter": {"price": {"range": {"lte": 20}}}},
        )

        assert [product["id"] for product in response.get_json()["products"]] == ["sku-2"]

    def test_exact_float_filter_is_rejected(self, client):
        create_product(client, id="sku-1")

        response = client.post(
            "/shop-1/products/search", json={"query": "Red Shoe", "filter": {"price": 59.9}}
        )

        assert response.status_code == 422
        assert response.get_json()["error"].startswith("Invalid filter for field 'price'")

    def test_malformed_offset(self, client):
        create_product(client, id="sku-1")

        response = client.get("/shop-1/products", query_string={"offset": "not-a-point"})

        assert response.status_code == 422
        assert "offset" in response.get_json()["error"]


class TestShowUpdateDestroy:
    def test_show_other_account(self, client):
        create_product(client, id="sku-1")

        response = client.get("/shop-2/products/sku-1")

        assert response.status_code == 404
        assert response.get_json() == {"error": "Product not found"}

    def test_update_merges_attributes(self, client, embedder):
        create_product(client, id="sku-1")

        response = client.patch("/shop-1/products/sku-1", json={"price": 49, "details": "On sale"})

        assert response.status_code == 200
        product = response.get_json()["product"]
        assert (product["name"], product["price"], product["details"]) == ("Red Shoe", 49.0, "On sale")
        assert embedder.texts[-1] == "Red Shoe\n\nOn sale"

    def test_update_missing_product(self, client):
        assert client.put("/shop-1/products/nope", json={"price": 1}).status_code == 404

    def test_destroy(self, client):
        create_product(client, id="sku-1")
        create_product(client, account_id="shop-2", id="sku-1")

        assert client.delete("/shop-1/products/sku-1").status_code == 204
        assert client.get("/shop-1/products/sku-1").status_code == 404
        assert client.get("/shop-2/products/sku-1").status_code == 200

    def test_destroy_missing_product(self, client):
        assert client.delete("/shop-1/products/nope").status_code == 404


class TestMain:
    def test_requires_message(self, client):
        response = client.post("/shop-1/main", json={"session_id": "s1"})

        assert response.status_code == 422
        assert response.get_json()["error"] == "param is missing or the value is empty: message"

    def test_text_message(self, client):
        create_product(client, id="sku-1")

        response = client.post("/shop-1/main", json={"message": "Red Shoe", "session_id": "s1"})

        result = response.get_json()["result"]
        assert result["intent"] == "search_products_by_text"
        assert result["products"][0]["id"] == "sku-1"

    def test_returns_session_history(self, client):
        client.post("/shop-1/main", json={"message": "hello", "session_id": "s1"})

        result = client.post("/shop-1/main", json={"message": "thanks", "session_id": "s1"}).get_json()["result"]

        assert [entry["content"] for entry in result["history"] if entry["role"] == "user"] == ["hello", "thanks"]

    def test_form_message(self, client):
        response = client.post("/shop-1/main", data={"message": "hello", "session_id": "s1"})
        assert response.get_json()["result"]["intent"] == "other"


class TestErrorMapping:
    def test_dimension_mismatch(self, qdrant):
        settings = QdrantSettings(collection_name=COLLECTION, vector_dimension=4)
        client = create_app(qdrant_settings=settings, qdrant_client=qdrant, embedding_client=FakeEmbedder()).test_client()

        response = create_product(client)

        data = response.get_json()
        assert response.status_code == 422
        assert (data["error"], data["expected"], data["actual"]) == ("Vector dimension mismatch", 4, 8)
        assert f"'{COLLECTION}'" in data["detail"]
        assert "QDRANT_VECTOR_DIMENSION" in data["detail"]

    def test_embedding_failure(self, qdrant, settings):
        embedder = MagicMock()
        embedder.embed_images.side_effect = EmbeddingError("Embedding API request failed with status 503")
        client = create_app(qdrant_settings=settings, qdrant_client=qdrant, embedding_client=embedder).test_client()

        response = create_product(client)

        assert response.status_code == 422
        assert response.get_json()["error"].startswith("Image embedding failed")

    def test_misconfigured_collection(self, client, qdrant):
        qdrant.create_collection(
            collection_name=COLLECTION,
            vectors_config=models.VectorParams(size=8, distance=models.Distance.COSINE),
        )

        response = client.get("/shop-1/products")

        assert response.status_code == 500
        assert response.get_json()["error"] == "Qdrant collection misconfigured"

    def test_backend_unreachable(self, settings, embedder):
        qdrant = MagicMock()
        qdrant.get_collections.side_effect = ResponseHandlingException(ConnectionError("connection refused"))
        client = create_app(qdrant_settings=settings, qdrant_client=qdrant, embedding_client=embedder).test_client()

        response = client.get("/shop-1/products")

        assert response.status_code == 502
        assert response.get_json()["error"] == "Qdrant request failed"

    def test_unknown_route(self, client):
        response = client.get("/shop-1/unknown/path")

        assert response.status_code == 404
        assert response.get_json()["status"] == 404
