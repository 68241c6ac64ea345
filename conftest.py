import hashlib
import logging

import pytest
from qdrant_client import QdrantClient

from app import create_app
from config import QdrantSettings
from vectorstore import ProductsVectorStore

logging.basicConfig(level=logging.INFO)

DIMENSION = 8
COLLECTION = "test_products"


def one_hot(index, dimension=DIMENSION):
    vector = [0.0] * dimension
    vector[index] = 1.0
    return vector


def product_vectors(index, dimension=DIMENSION):
    return {"image": one_hot(index, dimension), "text": one_hot(index, dimension)}


class FakeEmbedder:
    """Deterministic stand-in for the embedding service.

    Equal inputs give equal vectors, so a query identical to the stored text
    scores highest.
    """

    def __init__(self, dimension=DIMENSION):
        self.dimension = dimension
        self.texts = []
        self.images = []

    def vector_for(self, seed):
        digest = hashlib.sha256(seed.encode('utf-8')).digest()
        return [digest[i] / 255.0 + 0.05 for i in range(self.dimension)]

    def embed(self, text):
        self.texts.append(text)
        return self.vector_for(text)

    def embed_images(self, images_b64):
        self.images.append(list(images_b64))
        return [self.vector_for(image) for image in images_b64]


@pytest.fixture
def qdrant():
    client = QdrantClient(":memory:")
    yield client
    client.close()


@pytest.fixture
def settings():
    return QdrantSettings(collection_name=COLLECTION)


@pytest.fixture
def store_factory(qdrant, settings):
    def factory(account_id, settings=settings, client=qdrant):
        return ProductsVectorStore(account_id, client=client, settings=settings)
    return factory


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def app(qdrant, settings, embedder):
    app = create_app(qdrant_settings=settings, qdrant_client=qdrant, embedding_client=embedder)
    app.config['TESTING'] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()
