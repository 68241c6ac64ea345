"""Conversational product search.

Messages are classified into one of three intents with keyword and pattern
rules, then routed to image search (image URLs or data URIs in the message)
or text search against the account's products.
"""
import logging
import re
import threading
from collections import OrderedDict, deque
from typing import Callable, Dict, List, Optional

from embeddings import fetch_image_base64, strip_data_uri
from products import ProductPoint, format_product
from vectors import average_vectors

logger = logging.getLogger(__name__)

INTENT_IMAGES = "search_products_by_images"
INTENT_TEXT = "search_products_by_text"
INTENT_OTHER = "other"
INTENT_UNKNOWN = "unknown"

URL_PATTERN = re.compile(r"https?://[^\s'\"<>]+", re.IGNORECASE)
IMAGE_URL_PATTERN = re.compile(
    r"https?://[^\s'\"<>]+?\.(?:jpe?g|png|gif|webp|bmp)(?:\?[^\s'\"<>]*)?(?=[\s'\"<>]|$)",
    re.IGNORECASE,
)
DATA_URI_PATTERN = re.compile(r"data:image/[a-z0-9.+-]+;base64,[A-Za-z0-9+/=]+", re.IGNORECASE)

IMAGE_WORDS = ['รูป', 'ภาพ']
IMAGE_WORD_PATTERN = re.compile(r"\b(?:image|images|photo|photos|picture|pictures|pic|pics)\b")

OTHER_PATTERNS = [
    r'^(?:hi|hello|hey|thanks|thank you|ok|okay|bye)\b[\s!.]*$',
    r'^(?:สวัสดี|ขอบคุณ)\S*[\s!.]*$',
    r'\b(?:refund|return policy|shipping|delivery|tracking|contact|admin|complain\w*)\b',
]
THAI_OTHER_WORDS = ['คืนเงิน', 'จัดส่ง', 'ติดต่อ', 'แอดมิน']

REPLY_OTHER = "Please contact the shop admin for help with this request."
REPLY_UNKNOWN = "Please tell us which product you are looking for."
REPLY_NOT_FOUND = (
    "We could not find any products close to what you are looking for. "
    "Please contact the shop admin."
)
REPLY_FOUND = "We have these similar products:"


def has_image_signal(message: str) -> bool:
    text = message.lower()
    if IMAGE_URL_PATTERN.search(message) or DATA_URI_PATTERN.search(message):
        return True
    return any(word in message for word in IMAGE_WORDS) or bool(IMAGE_WORD_PATTERN.search(text))


def classify_intent(message: Optional[str]) -> str:
    """Classify a customer message.

    Image signals win over everything else. Greetings and service questions
    (refunds, shipping, asking for an admin) are ``other``. Anything else is
    read as a description of the product the customer wants.
    """
    text = (message or "").strip()
    if not text:
        return INTENT_UNKNOWN

    if has_image_signal(text):
        return INTENT_IMAGES

    lowered = text.lower()
    if any(re.search(pattern, lowered) for pattern in OTHER_PATTERNS) or any(
        word in text for word in THAI_OTHER_WORDS
    ):
        return INTENT_OTHER

    return INTENT_TEXT


def extract_image_sources(message: str) -> Dict[str, List[str]]:
    """Split a message's images into URLs to download and inline base64 data."""
    inline = [strip_data_uri(uri) for uri in DATA_URI_PATTERN.findall(message)]
    without_inline = DATA_URI_PATTERN.sub(" ", message)
    urls = IMAGE_URL_PATTERN.findall(without_inline)
    if not urls:
        # no extension to go by, take any link the customer sent
        urls = URL_PATTERN.findall(without_inline)
    return {"urls": urls, "inline": [data for data in inline if data]}


def search_text(message: str) -> str:
    return DATA_URI_PATTERN.sub(" ", URL_PATTERN.sub(" ", message)).strip()


class ConversationHistory:
    """In-process message history per (account, session).

    Keeps the most recent ``max_messages`` per session and the
    ``max_sessions`` most recently used sessions.
    """

    def __init__(self, max_messages: int = 50, max_sessions: int = 1000):
        self.max_messages = max_messages
        self.max_sessions = max_sessions
        self._messages = OrderedDict()
        self._lock = threading.Lock()

    def append(self, account_id: str, session_id: str, role: str, content: str) -> None:
        key = (account_id, session_id)
        with self._lock:
            if key not in self._messages:
                self._messages[key] = deque(maxlen=self.max_messages)
            self._messages.move_to_end(key)
            self._messages[key].append({"role": role, "content": content})
            while len(self._messages) > self.max_sessions:
                evicted, _ = self._messages.popitem(last=False)
                logger.info(f"Dropped conversation history for session '{evicted[1]}'")

    def __len__(self) -> int:
        with self._lock:
            return len(self._messages)

    def get(self, account_id: str, session_id: str) -> List[Dict[str, str]]:
        with self._lock:
            return list(self._messages.get((account_id, session_id), ()))


def summarize(intent: str, products: List[ProductPoint]) -> str:
    if intent == INTENT_UNKNOWN:
        return REPLY_UNKNOWN
    if intent == INTENT_OTHER:
        return REPLY_OTHER
    if not products:
        return REPLY_NOT_FOUND

    lines = [REPLY_FOUND]
    for product in products:
        summary = format_product(product)
        line = f" - {summary.get('name', summary['id'])}"
        if summary.get('price') is not None:
            line += f", price {summary['price']}"
        if summary.get('details'):
            line += f": {summary['details']}"
        lines.append(line)
    return "\n".join(lines)


class ProductAssistant:
    def __init__(
        self,
        store_factory: Callable,
        embedder,
        history: Optional[ConversationHistory] = None,
        image_fetcher: Callable[[str], Optional[str]] = fetch_image_base64,
        image_match_threshold: float = 0.8,
        text_limit: int = 5,
    ):
        self.store_factory = store_factory
        self.embedder = embedder
        self.history = history or ConversationHistory()
        self.image_fetcher = image_fetcher
        self.image_match_threshold = image_match_threshold
        self.text_limit = text_limit

    def run(self, account_id: str, session_id: str, message: str) -> Dict:
        intent = classify_intent(message)
        logger.info(f"Message for account '{account_id}' session '{session_id}' classified as {intent}")
        self.history.append(account_id, session_id, "user", message)

        products = []
        if intent == INTENT_IMAGES:
            products = self.search_by_images(account_id, message)
        elif intent == INTENT_TEXT:
            products = self.search_by_text(account_id, message)

        reply = summarize(intent, products)
        self.history.append(account_id, session_id, "assistant", reply)
        return {
            "intent": intent,
            "reply": reply,
            "products": [format_product(product) for product in products],
            "history": self.history.get(account_id, session_id),
        }

    def search_by_images(self, account_id: str, message: str) -> List[ProductPoint]:
        sources = extract_image_sources(message)
        images = list(sources["inline"])
        for url in sources["urls"]:
            encoded = self.image_fetcher(url)
            if encoded:
                images.append(encoded)
        if not images:
            logger.info("No usable images found in message")
            return []

        vectors = self.embedder.embed_images(images)
        vector = vectors[0] if len(vectors) == 1 else average_vectors(vectors)
        if not vector:
            return []

        store = self.store_factory(account_id)
        hits = store.search({"name": "image", "vector": vector}, limit=1)
        # only a close visual match counts as the same product
        return [hit for hit in hits if hit.score is not None and hit.score > self.image_match_threshold]

    def search_by_text(self, account_id: str, message: str) -> List[ProductPoint]:
        query = search_text(message)
        if not query:
            return []
        vector = self.embedder.embed(query)
        store = self.store_factory(account_id)
        return store.search({"name": "text", "vector": vector}, limit=self.text_limit)
