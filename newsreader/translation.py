import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional, Sequence, Tuple

import httpx

from newsreader.config import DEEPL_PLACEHOLDER_KEY, settings
from newsreader.dictionary import DictionaryTranslator
from newsreader.schemas import TranslationResult, TranslationStatus

logger = logging.getLogger(__name__)

# Only this much of the text takes part in the memo key
MEMO_KEY_PREFIX = 100

GERMAN_STOP_WORDS = ["der", "die", "das", "und", "ist", "zu", "ein", "eine", "nicht", "sich"]


class TranslationError(Exception):
    """A provider could not produce a usable translation."""


# ---------------------------------------------------------------------------
# Providers: tried in order, any exception moves on to the next one
# ---------------------------------------------------------------------------

class TranslationProvider(ABC):
    """
    Remote translation API.
    Subclasses set name/confidence and implement _request(), raising on any bad response.
    """
    name: str
    confidence: float

    def __init__(self, client: httpx.AsyncClient):
        self._client = client
        self.call_count = 0

    async def translate(self, text: str, source_lang: str, target_lang: str) -> str:
        self.call_count += 1
        try:
            return await self._request(text, source_lang, target_lang)
        except (httpx.HTTPError, ValueError, KeyError, TypeError, AttributeError) as e:
            # ValueError covers undecodable JSON, the rest unexpected response shapes
            raise TranslationError(f"{self.name}: {e}") from e

    @abstractmethod
    async def _request(self, text: str, source_lang: str, target_lang: str) -> str:
        pass


class DeepLProvider(TranslationProvider):
    name = "DeepL"
    confidence = 0.95

    def __init__(self, client: httpx.AsyncClient, api_key: str, api_url: str = settings.DEEPL_API_URL):
        super().__init__(client)
        self.api_key = api_key
        self.api_url = api_url

    async def _request(self, text: str, source_lang: str, target_lang: str) -> str:
        response = await self._client.post(
            self.api_url,
            headers={"Authorization": f"DeepL-Auth-Key {self.api_key}"},
            data={"text": text, "source_lang": source_lang.upper(), "target_lang": target_lang.upper()},
        )
        response.raise_for_status()

        translations = response.json().get("translations") or []
        if not translations or not translations[0].get("text"):
            raise TranslationError("Invalid DeepL response")
        return translations[0]["text"]


class MyMemoryProvider(TranslationProvider):
    """Free community API, no key needed."""
    name = "MyMemory"
    confidence = 0.85

    def __init__(self, client: httpx.AsyncClient, api_url: str = settings.MYMEMORY_API_URL):
        super().__init__(client)
        self.api_url = api_url

    async def _request(self, text: str, source_lang: str, target_lang: str) -> str:
        response = await self._client.get(
            self.api_url,
            params={"q": text, "langpair": f"{source_lang.lower()}|{target_lang.lower()}"},
        )
        response.raise_for_status()

        data = response.json()
        translated = (data.get("responseData") or {}).get("translatedText")
        if str(data.get("responseStatus")) != "200" or not translated:
            raise TranslationError(f"MyMemory translation failed (status {data.get('responseStatus')})")
        return translated


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------

class TranslationGateway:
    """
    Resolves a translation through memo cache → remote providers → local dictionary.

    Remote providers are only called when a DeepL key is configured. The
    dictionary tier always answers, so translate() never raises. The memo cache
    lives for the process only and only holds provider results.
    """

    def __init__(
        self,
        providers: Sequence[TranslationProvider],
        api_key: Optional[str] = settings.DEEPL_API_KEY,
        dictionary: Optional[DictionaryTranslator] = None,
    ):
        self.providers = list(providers)
        self._api_key = api_key
        self.dictionary = dictionary or DictionaryTranslator()
        self._memo: Dict[Tuple[str, str, str], str] = {}
        self.request_count = 0

        if not self.is_configured():
            logger.warning("Translation API key not configured. Using dictionary translations.")

    @classmethod
    def from_settings(cls, client: httpx.AsyncClient) -> "TranslationGateway":
        return cls(
            providers=[DeepLProvider(client, settings.DEEPL_API_KEY), MyMemoryProvider(client)],
            api_key=settings.DEEPL_API_KEY,
        )

    def is_configured(self) -> bool:
        return bool(self._api_key) and self._api_key != DEEPL_PLACEHOLDER_KEY

    async def translate(self, text: str, source_lang: str = "DE", target_lang: str = "EN") -> TranslationResult:
        self.request_count += 1
        key = (source_lang.upper(), target_lang.upper(), text[:MEMO_KEY_PREFIX])

        cached = self._memo.get(key)
        if cached is not None:
            logger.debug("Using cached translation")
            return TranslationResult(translated_text=cached, detected_language=source_lang.lower(), confidence=1.0)

        if self.is_configured():
            for provider in self.providers:
                try:
                    translated = await provider.translate(text, source_lang, target_lang)
                except Exception as e:
                    logger.warning(f"{provider.name} failed, trying next tier: {e}")
                    continue

                self._memo[key] = translated
                logger.info(f"{provider.name} translation successful")
                return TranslationResult(
                    translated_text=translated,
                    detected_language=source_lang.lower(),
                    confidence=provider.confidence,
                )

        return self.dictionary.translate(text)

    def detect_language(self, text: str) -> Tuple[str, float]:
        """Rough German/English guess from stop-word hits."""
        words = set(text.lower().split())
        hits = sum(1 for word in GERMAN_STOP_WORDS if word in words)
        language = "de" if hits > 2 else "en"
        return language, min(0.95, 0.5 + hits * 0.1)

    async def test_connection(self) -> bool:
        if not self.is_configured():
            return False
        result = await self.translate("Hallo Welt")
        return "hello" in result.translated_text.lower()

    def get_status(self) -> TranslationStatus:
        return TranslationStatus(
            service="DeepL API" if self.is_configured() else "Dictionary",
            configured=self.is_configured(),
            request_count=self.request_count,
            cached_translations=len(self._memo),
        )
