"""
Translation and embedding providers.

Provides an OpenAI compatible HTTP client for both concerns plus offline
providers for development and tests that need no API credentials.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

import httpx
from sklearn.feature_extraction.text import HashingVectorizer
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from newsdigest.core.errors import ApiError
from newsdigest.core.logging import get_logger
from newsdigest.core.settings import Settings

logger = get_logger(__name__)

RETRYABLE_STATUS = (429, 500, 502, 503, 504)

LANGUAGE_NAMES = {
    "en": "English",
    "sv": "Swedish",
    "da": "Danish",
    "no": "Norwegian",
    "fi": "Finnish",
    "de": "German",
    "es": "Spanish",
    "fr": "French",
}

TRANSLATION_PROMPT = (
    "You are a highly skilled and concise professional translator. "
    "When you receive a sentence in {source}, translate it into {target}. "
    "VERY IMPORTANT: Do not output any notes, explanations, alternatives or "
    "comments after or before the translation."
)


class Translator(ABC):
    """Abstract base class for translation providers."""

    @abstractmethod
    async def translate(self, text: str, source_lang: str, target_lang: str) -> str:
        """
        Translate text between two languages.

        Raises:
            ApiError: once the provider's retry ceiling is reached
        """
        pass

    @property
    @abstractmethod
    def provider_name(self) -> str:
        pass


class Embedder(ABC):
    """Abstract base class for embedding providers."""

    @abstractmethod
    async def embed(self, text: str) -> List[float]:
        """
        Compute a fixed length vector for a text.

        Raises:
            ApiError: once the provider's retry ceiling is reached
        """
        pass

    @property
    @abstractmethod
    def provider_name(self) -> str:
        pass


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ApiError) and exc.retryable


def _error_message(body: Dict[str, Any]) -> str:
    """Message of an error payload, either {"error": {"message": ...}} or {"error": "..."}."""
    error = body.get("error")
    if isinstance(error, dict):
        return str(error.get("message") or "unknown error")
    if error:
        return str(error)
    return "unknown error"


class OpenAIProvider(Translator, Embedder):
    """Chat completion translations and embeddings over an OpenAI compatible API."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.openai.com",
        translation_model: str = "gpt-3.5-turbo",
        embedding_model: str = "text-embedding-3-large",
        timeout: float = 30.0,
        max_retries: int = 5,
        backoff: float = 0.5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.translation_model = translation_model
        self.embedding_model = embedding_model
        self.max_retries = max_retries
        self.backoff = backoff
        self.client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout),
            headers={"Authorization": f"Bearer {api_key}"},
            transport=transport,
        )

    @property
    def provider_name(self) -> str:
        return "openai"

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _post_once(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = await self.client.post(path, json=payload)
        except (httpx.TimeoutException, httpx.NetworkError) as e:
            raise ApiError(f"{path}: {type(e).__name__}: {e}", retryable=True) from e

        if response.status_code in RETRYABLE_STATUS:
            logger.warning(f"Transient API response {response.status_code} from {path}")
            raise ApiError(
                f"{path}: HTTP {response.status_code}",
                status_code=response.status_code,
                retryable=True,
            )

        try:
            body = response.json()
        except ValueError as e:
            raise ApiError(f"{path}: invalid JSON response", status_code=response.status_code) from e

        if not isinstance(body, dict):
            raise ApiError(
                f"{path}: expected a JSON object, got {type(body).__name__}",
                status_code=response.status_code,
            )

        if response.status_code >= 400 or "error" in body:
            raise ApiError(f"{path}: {_error_message(body)}", status_code=response.status_code)

        return body

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """POST with exponential backoff on transient failures."""
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_retries),
            wait=wait_exponential(multiplier=self.backoff, min=self.backoff, max=20.0),
            retry=retry_if_exception(_is_retryable),
            reraise=True,
        ):
            with attempt:
                return await self._post_once(path, payload)

    async def translate(self, text: str, source_lang: str, target_lang: str) -> str:
        prompt = TRANSLATION_PROMPT.format(
            source=LANGUAGE_NAMES.get(source_lang, source_lang),
            target=LANGUAGE_NAMES.get(target_lang, target_lang),
        )
        body = await self._post(
            "/v1/chat/completions",
            {
                "model": self.translation_model,
                "temperature": 0,
                "messages": [
                    {"role": "system", "content": prompt},
                    {"role": "user", "content": text},
                ],
            },
        )
        try:
            content = body["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise ApiError("chat completion response has no content") from e
        if not content or not content.strip():
            raise ApiError("chat completion returned an empty translation")
        return content.strip()

    async def embed(self, text: str) -> List[float]:
        body = await self._post(
            "/v1/embeddings",
            {"model": self.embedding_model, "input": text},
        )
        try:
            vector = body["data"][0]["embedding"]
        except (KeyError, IndexError, TypeError) as e:
            raise ApiError("embedding response has no vector") from e
        return [float(x) for x in vector]


class EchoTranslator(Translator):
    """Returns the text unchanged. For development without API credentials."""

    @property
    def provider_name(self) -> str:
        return "echo"

    async def translate(self, text: str, source_lang: str, target_lang: str) -> str:
        return text


class HashingEmbedder(Embedder):
    """
    Deterministic bag-of-words embeddings via feature hashing.

    No vocabulary and no network; identical texts always map to the same
    L2 normalized vector, and texts sharing words land close together.
    """

    def __init__(self, n_features: int = 256):
        self.n_features = n_features
        self.vectorizer = HashingVectorizer(
            n_features=n_features,
            alternate_sign=False,
            norm="l2",
        )

    @property
    def provider_name(self) -> str:
        return "hashing"

    async def embed(self, text: str) -> List[float]:
        matrix = self.vectorizer.transform([text or ""])
        return matrix.toarray()[0].astype(float).tolist()


def build_providers(settings: Settings) -> Tuple[Translator, Embedder]:
    """
    Pick providers for the configured environment.

    The OpenAI provider serves both concerns when an API key is set;
    otherwise the offline providers are used.
    """
    if settings.openai_api_key:
        provider = OpenAIProvider(
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
            translation_model=settings.translation_model,
            embedding_model=settings.embedding_model,
            timeout=settings.api_timeout,
            max_retries=settings.api_max_retries,
            backoff=settings.api_backoff_seconds,
        )
        return provider, provider

    logger.warning("No API key configured, using offline translation and embedding providers")
    return EchoTranslator(), HashingEmbedder()
