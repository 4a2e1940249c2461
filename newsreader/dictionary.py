import logging
import re
from typing import Dict, List, Tuple

from newsreader.schemas import TranslationResult

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Word table: used when no translation API is reachable
# ---------------------------------------------------------------------------

GERMAN_ENGLISH: Dict[str, str] = {
    # Politics & government
    "Bundestag": "Federal Parliament",
    "Bundesregierung": "Federal Government",
    "Regierung": "Government",
    "Deutschland": "Germany",
    "Politik": "Politics",
    "Politiker": "Politician",
    "Kanzler": "Chancellor",
    "Minister": "Minister",
    "Parlament": "Parliament",
    "Wahl": "Election",
    "Demokratie": "Democracy",
    "Maßnahmen": "measures",

    # Economy & business
    "Wirtschaft": "Economy",
    "Unternehmen": "Company",
    "Markt": "Market",
    "Handel": "Trade",
    "Arbeitsplatz": "Workplace",
    "Arbeitslosigkeit": "Unemployment",
    "Inflation": "Inflation",
    "Wachstum": "Growth",

    # Technology & science
    "künstliche Intelligenz": "artificial intelligence",
    "Technologie": "Technology",
    "Wissenschaft": "Science",
    "Forschung": "Research",
    "Innovation": "Innovation",
    "Digitalisierung": "Digitalization",
    "KI": "AI",

    # Health & environment
    "Gesundheit": "Health",
    "Umwelt": "Environment",
    "Klimaschutz": "Climate Protection",
    "Klimawandel": "Climate Change",
    "Pandemie": "Pandemic",
    "Impfstoff": "Vaccine",
    "Energie": "Energy",
    "Nachhaltigkeit": "Sustainability",

    # Common verbs and adjectives
    "beschließt": "decides",
    "beschlossen": "decided",
    "zeigt": "shows",
    "entwickelt": "develops",
    "Entwicklung": "development",
    "steigt": "rises",
    "fällt": "falls",
    "wächst": "grows",
    "sinkt": "sinks",
    "erreicht": "reaches",
    "plant": "plans",
    "will": "wants to",
    "soll": "should",
    "muss": "must",
    "kann": "can",
    "neue": "new",
    "neuer": "new",
    "neues": "new",
    "große": "large",
    "großer": "large",
    "großes": "large",
    "erste": "first",
    "erster": "first",
    "erstes": "first",

    # Time expressions
    "heute": "today",
    "gestern": "yesterday",
    "morgen": "tomorrow",
    "jetzt": "now",
    "bald": "soon",
    "Jahr": "year",
    "Jahre": "years",
    "Monat": "month",
    "Monate": "months",
    "Tag": "day",
    "Tage": "days",
}

# Auxiliary verbs and contracted prepositions, applied after the word table
GRAMMAR_RULES: List[Tuple[str, str]] = [
    (r"(\w+) hat (\w+)", r"\1 has \2"),
    (r"(\w+) ist (\w+)", r"\1 is \2"),
    (r"(\w+) wird (\w+)", r"\1 will be \2"),
    (r"(\w+) wurde (\w+)", r"\1 was \2"),
    (r"\bim (\w+)", r"in the \1"),
    (r"\bam (\w+)", r"on the \1"),
    (r"\bzur (\w+)", r"to the \1"),
    (r"\bvom (\w+)", r"from the \1"),
]

UMLAUTS: List[Tuple[str, str]] = [
    ("ä", "ae"), ("Ä", "Ae"),
    ("ö", "oe"), ("Ö", "Oe"),
    ("ü", "ue"), ("Ü", "Ue"),
    ("ß", "ss"),
]

# Below this share of changed words the output is flagged as degraded
LOW_QUALITY_RATIO = 0.3
LOW_QUALITY_MIN_LENGTH = 30
PARTIAL_TRANSLATION_MARKER = "[German text partially translated]"

_WORD_PATTERNS = [
    (re.compile(rf"\b{re.escape(german)}\b", re.IGNORECASE), english)
    for german, english in GERMAN_ENGLISH.items()
]
_GRAMMAR_PATTERNS = [(re.compile(pattern, re.IGNORECASE), repl) for pattern, repl in GRAMMAR_RULES]


def translate_words(text: str) -> str:
    """Word-table substitution, grammar rewrites, then umlaut transliteration."""
    translated = text
    for pattern, english in _WORD_PATTERNS:
        translated = pattern.sub(english, translated)

    for pattern, repl in _GRAMMAR_PATTERNS:
        translated = pattern.sub(repl, translated)

    for umlaut, replacement in UMLAUTS:
        translated = translated.replace(umlaut, replacement)

    return translated


def translation_ratio(original: str, translated: str) -> float:
    """Share of whitespace-delimited words that differ position by position."""
    if original == translated:
        return 0.0

    original_words = original.lower().split()
    translated_words = translated.lower().split()
    if not original_words:
        return 0.0

    changed = sum(1 for before, after in zip(original_words, translated_words) if before != after)
    return changed / len(original_words)


class DictionaryTranslator:
    """Last tier of the translation chain. Deterministic and never raises."""

    name = "dictionary"

    def translate(self, text: str) -> TranslationResult:
        translated = translate_words(text)
        ratio = translation_ratio(text, translated)

        if ratio < LOW_QUALITY_RATIO and len(text) > LOW_QUALITY_MIN_LENGTH:
            translated = f"{translated} {PARTIAL_TRANSLATION_MARKER}"

        logger.info(f"Dictionary translation: '{text[:30]}' -> '{translated[:30]}' (ratio={ratio:.2f})")
        return TranslationResult(translated_text=translated, detected_language="de", confidence=ratio)
