from __future__ import annotations

import re
import unicodedata
from typing import Iterable

from ..utils import normalize_persian_text

MIN_KEYWORD_LENGTH = 3

_TOKEN_SPLIT = re.compile(r"[^\w\u200c]+")
_ARABIC_MARKS = re.compile(r"[\u064b-\u065f\u0670\u0640]")
_ZWNJ = "\u200c"

_PERSIAN_STOP_WORDS = {
    "و", "در", "به", "از", "که", "این", "را", "با", "است", "برای", "آن",
    "یک", "تا", "بر", "خود", "دیگر", "پس", "هم", "شد", "اگر", "همه", "نه",
    "من", "تو", "او", "ما", "شما", "ایشان", "بود", "کرد", "گفت", "اما",
    "ولی", "چون", "زیرا", "باید", "شاید", "هر", "هیچ", "پیش", "روی", "زیر",
    "بسیار", "کم", "بیش", "حتی", "یا", "گزارش", "خبر", "افزود", "ادامه",
    "داد", "عنوان", "اشاره", "اظهار", "داشت", "تصریح", "مطرح", "خاطرنشان",
    "می", "های", "هایی", "شده", "شود", "کند", "کنند", "نیز", "وی", "آنها",
    "بین", "پیرامون", "درباره", "همچنین",
}

_ENGLISH_STOP_WORDS = {
    "the", "and", "for", "are", "but", "not", "you", "all", "any", "can",
    "had", "her", "was", "one", "our", "out", "has", "his", "how", "its",
    "may", "new", "now", "who", "did", "get", "him", "she", "too", "use",
    "that", "with", "have", "this", "will", "your", "from", "they", "been",
    "were", "said", "each", "which", "their", "there", "about", "would",
    "these", "other", "into", "more", "than", "them", "then", "some",
    "what", "when", "also", "after", "over", "says",
}


def normalize_token(token: str) -> str:
    """Fold a token to the form keywords are compared in.

    NFKC, Arabic letter variants mapped to Persian, tashkeel and tatweel
    removed, Latin accents dropped, case-folded.
    """
    token = unicodedata.normalize("NFKC", token)
    token = normalize_persian_text(token)
    token = _ARABIC_MARKS.sub("", token)
    token = _strip_latin_diacritics(token)
    return token.casefold().strip(_ZWNJ)


def _strip_latin_diacritics(text: str) -> str:
    decomposed = unicodedata.normalize("NFD", text)
    kept: list[str] = []
    for char in decomposed:
        # Persian letters like alef madda decompose too; only Latin bases lose marks
        if unicodedata.category(char) == "Mn" and kept and ord(kept[-1]) < 0x0250:
            continue
        kept.append(char)
    return unicodedata.normalize("NFC", "".join(kept))


def _build_stop_words(words: Iterable[str]) -> frozenset[str]:
    return frozenset(normalize_token(word) for word in words)


STOP_WORDS = {
    "fa": _build_stop_words(_PERSIAN_STOP_WORDS),
    "en": _build_stop_words(_ENGLISH_STOP_WORDS),
}


def stop_words_for(languages: Iterable[str]) -> frozenset[str]:
    combined: set[str] = set()
    for language in languages:
        combined.update(STOP_WORDS.get(language, frozenset()))
    return frozenset(combined)


def extract_keywords(
    text: str | None,
    languages: Iterable[str] = ("fa", "en"),
    stop_words: frozenset[str] | None = None,
) -> list[str]:
    """Split text into normalized keywords, repeats kept in order."""
    if not text:
        return []
    if stop_words is None:
        stop_words = stop_words_for(languages)
    folded = _ARABIC_MARKS.sub("", normalize_persian_text(unicodedata.normalize("NFKC", text)))
    keywords: list[str] = []
    for raw in _TOKEN_SPLIT.split(folded):
        if not raw:
            continue
        token = normalize_token(raw)
        if len(token) < MIN_KEYWORD_LENGTH or token in stop_words:
            continue
        if token.replace("_", "") == "":
            continue
        keywords.append(token)
    return keywords
