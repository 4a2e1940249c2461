import os

from dotenv import load_dotenv

load_dotenv()

# Placeholder shipped in example .env files; treated the same as a missing key
DEEPL_PLACEHOLDER_KEY = "your_deepl_api_key_here"


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Settings:
    DATABASE_URL = os.getenv("NEWSREADER_DATABASE_URL", "sqlite:///./news_cache.db")

    # RSS2JSON proxy: without a key the feeds are fetched and parsed directly
    RSS2JSON_API_KEY = os.getenv("RSS2JSON_API_KEY", "")
    RSS2JSON_BASE_URL = os.getenv("RSS2JSON_BASE_URL", "https://api.rss2json.com/v1/api.json")
    RSS2JSON_ITEM_COUNT = int(os.getenv("RSS2JSON_ITEM_COUNT", "15"))

    DEEPL_API_KEY = os.getenv("DEEPL_API_KEY", "")
    DEEPL_API_URL = os.getenv("DEEPL_API_URL", "https://api-free.deepl.com/v2/translate")
    MYMEMORY_API_URL = os.getenv("MYMEMORY_API_URL", "https://api.mymemory.translated.net/get")

    # Run the initial batch through the dictionary tier when no DeepL key is set
    ENABLE_FALLBACK_TRANSLATIONS = _env_flag("ENABLE_FALLBACK_TRANSLATIONS", "true")

    HTTP_TIMEOUT = float(os.getenv("HTTP_TIMEOUT", "10"))
    USER_AGENT = os.getenv("USER_AGENT", "GermanNewsReader/1.0 (+https://github.com/)")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()
