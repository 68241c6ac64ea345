import pytest
from qdrant_client.http.exceptions import ResponseHandlingException, UnexpectedResponse

from errors import DimensionMismatchError, ValidationError
from vectorstore import extract_error_message, qdrant_errors, translate_backend_error

DIMENSION_ERROR = b'{"status":{"error":"Wrong input: Vector dimension error: expected dim: 512, got 256"}}'


def unexpected(status_code, content):
    return UnexpectedResponse(status_code, "Bad Request", content, {})


class TestExtractErrorMessage:
    def test_status_error(self):
        assert extract_error_message(unexpected(400, DIMENSION_ERROR)) == (
            "Wrong input: Vector dimension error: expected dim: 512, got 256"
        )

    def test_message_key(self):
        assert extract_error_message(unexpected(400, b'{"message": "bad filter"}')) == "bad filter"

    def test_error_key(self):
        assert extract_error_message(unexpected(400, b'{"error": "bad id"}')) == "bad id"

    def test_plain_text_body(self):
        assert extract_error_message(unexpected(400, b"expected dim: 3, got 4")) == "expected dim: 3, got 4"

    def test_falls_back_to_exception_text(self):
        error = unexpected(400, b"")
        assert extract_error_message(error) == str(error)


class TestTranslateBackendError:
    def test_dimension_error(self):
        translated = translate_backend_error(unexpected(400, DIMENSION_ERROR))
        assert isinstance(translated, DimensionMismatchError)
        assert isinstance(translated, ValidationError)
        assert (translated.expected, translated.actual) == (512, 256)

    def test_dimension_error_without_colon(self):
        translated = translate_backend_error(unexpected(400, b'{"message": "Expected dim: 4, got 8"}'))
        assert (translated.expected, translated.actual) == (4, 8)

    def test_other_bad_request_unchanged(self):
        error = unexpected(400, b'{"status":{"error":"Wrong input: missing field"}}')
        assert translate_backend_error(error) is error

    def test_other_status_unchanged(self):
        error = unexpected(500, DIMENSION_ERROR)
        assert translate_backend_error(error) is error

    def test_transport_error_unchanged(self):
        error = ResponseHandlingException(ConnectionError("connection refused"))
        assert translate_backend_error(error) is error


class TestQdrantErrors:
    def test_translates_dimension_error(self):
        original = unexpected(400, DIMENSION_ERROR)
        with pytest.raises(DimensionMismatchError) as excinfo:
            with qdrant_errors():
                raise original
        assert excinfo.value.__cause__ is original

    def test_reraises_other_errors_unchanged(self):
        original = unexpected(404, b'{"status":{"error":"Not found: Collection"}}')
        with pytest.raises(UnexpectedResponse) as excinfo:
            with qdrant_errors():
                raise original
        assert excinfo.value is original

    def test_transport_errors_propagate(self):
        with pytest.raises(ResponseHandlingException):
            with qdrant_errors():
                raise ResponseHandlingException(ConnectionError("timed out"))
