import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Union

from errors import ValidationError

PayloadValue = Union[str, int, float, bool, None, List[str]]

ACCOUNT_FIELD = "account_id"
PRODUCT_ID_FIELD = "product_id"

# Namespace for deriving Qdrant point ids from (account, product id)
PRODUCT_ID_NAMESPACE = uuid.UUID("6f1c2a54-8d0e-5b7a-9c3e-2f4d6b8a0c1e")

_ACCOUNT_ID_INVALID_CHARS = re.compile(r"[^A-Za-z0-9_-]")


def normalize_account_id(value: Any) -> str:
    text = "" if value is None else str(value).strip()
    if not text:
        raise ValidationError("account_id cannot be blank")
    return _ACCOUNT_ID_INVALID_CHARS.sub("_", text)


def normalize_id(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        value = value[0] if value else None
    text = "" if value is None else str(value)
    if not text.strip():
        raise ValidationError("ID cannot be blank")
    return text


def point_id_for(account_id: str, product_id: str) -> str:
    """Qdrant only accepts UUIDs or integers, so external ids are mapped."""
    return str(uuid.uuid5(PRODUCT_ID_NAMESPACE, f"{account_id}/{product_id}"))


def _check_value(key: str, value: Any) -> PayloadValue:
    if value is None or isinstance(value, (str, bool, int, float)):
        return value
    if isinstance(value, (list, tuple)) and all(isinstance(item, str) for item in value):
        return list(value)
    raise ValidationError(
        f"Unsupported value for payload field '{key}': {type(value).__name__}"
    )


@dataclass
class ProductPayload:
    """Product attributes plus the owning account."""

    account_id: str
    attributes: Dict[str, PayloadValue] = field(default_factory=dict)

    @classmethod
    def build(cls, account_id: str, data: Optional[Mapping[str, Any]]) -> "ProductPayload":
        attributes = {}
        for key, value in (data or {}).items():
            key = str(key)
            if key == ACCOUNT_FIELD:
                continue
            attributes[key] = _check_value(key, value)
        return cls(account_id=account_id, attributes=attributes)

    @classmethod
    def from_record(cls, data: Optional[Mapping[str, Any]]) -> "ProductPayload":
        data = dict(data or {})
        account_id = data.pop(ACCOUNT_FIELD, None)
        return cls(account_id="" if account_id is None else str(account_id), attributes=data)

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.attributes)
        data[ACCOUNT_FIELD] = self.account_id
        return data


@dataclass
class ProductPoint:
    id: str
    payload: Dict[str, Any]
    vector: Optional[Dict[str, List[float]]] = None
    score: Optional[float] = None

    @classmethod
    def from_record(cls, record) -> "ProductPoint":
        """Build from a qdrant Record or ScoredPoint."""
        payload = dict(getattr(record, "payload", None) or {})
        product_id = payload.get(PRODUCT_ID_FIELD)
        vector = getattr(record, "vector", None)
        if not isinstance(vector, dict):
            vector = None
        score = getattr(record, "score", None)
        return cls(
            id=str(product_id) if product_id is not None else str(record.id),
            payload=payload,
            vector=vector,
            score=float(score) if score is not None else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {"id": self.id, "payload": self.payload}
        if self.vector is not None:
            data["vector"] = self.vector
        if self.score is not None:
            data["score"] = self.score
        return data


def format_product(point: ProductPoint) -> Dict[str, Any]:
    """Public view of a product: id, name, price, stock, details (+ score)."""
    payload = point.payload or {}
    data = {
        "id": point.id,
        "name": payload.get("name"),
        "price": payload.get("price"),
        "stock": payload.get("stock"),
        "details": payload.get("details"),
        "score": point.score,
    }
    return {key: value for key, value in data.items() if value is not None}
