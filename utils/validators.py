import re
from typing import Iterable, Optional

GENRE_PICTURE_BOOK = "繪本"
GENRE_BRIDGE_BOOK = "橋梁書"
GENRE_TEXT_BOOK = "文字書"
GENRE_UNKNOWN = "未知"

GENRE_BY_PREFIX = {
    "A": GENRE_PICTURE_BOOK,
    "B": GENRE_BRIDGE_BOOK,
    "C": GENRE_TEXT_BOOK,
}
# Listing order used when grouping books by genre
GENRE_ORDER = [GENRE_PICTURE_BOOK, GENRE_BRIDGE_BOOK, GENRE_TEXT_BOOK]

_CODE_RE = re.compile(r"^([ABC])(\d+)$")


class BookCodeValidator:
    """Book codes: one of A/B/C followed by digits. The letter encodes the genre."""

    @staticmethod
    def normalize(raw: Optional[str]) -> str:
        if raw is None:
            return ""
        return str(raw).strip().upper()

    @staticmethod
    def validate(code: Optional[str]) -> bool:
        return bool(_CODE_RE.match(BookCodeValidator.normalize(code)))

    @staticmethod
    def genre_of(code: Optional[str]) -> str:
        first = BookCodeValidator.normalize(code)[:1]
        return GENRE_BY_PREFIX.get(first, GENRE_UNKNOWN)

    @staticmethod
    def prefix_for_genre(genre: Optional[str]) -> str:
        for prefix, name in GENRE_BY_PREFIX.items():
            if name == genre:
                return prefix
        return "C"

    @staticmethod
    def next_available(prefix: str, existing_codes: Iterable[str]) -> str:
        """Return ``prefix`` + (highest used number + 1), zero-padded to 4 digits.

        Deterministic given the set of existing codes.
        """
        prefix = BookCodeValidator.normalize(prefix)
        if prefix not in GENRE_BY_PREFIX:
            raise ValueError(f"Unknown code prefix: {prefix!r}")

        used = {BookCodeValidator.normalize(c) for c in existing_codes if c}
        max_num = 0
        for code in used:
            m = _CODE_RE.match(code)
            if m and m.group(1) == prefix:
                max_num = max(max_num, int(m.group(2)))

        next_num = max_num + 1
        while True:
            candidate = f"{prefix}{next_num:04d}"
            if candidate not in used:
                return candidate
            next_num += 1


class TextValidator:
    """Basic text checks for titles."""

    @staticmethod
    def validate_title(title: Optional[str]) -> bool:
        if title is None:
            return False
        return bool(str(title).strip())


_BRACKETS_RE = re.compile(r"[（(].*?[）)]")
_TRAILING_NUMBER_RE = re.compile(r"\d+.*$")
_VOLUME_RE = re.compile(r"第.*?[卷冊部集]")
_PART_RE = re.compile(r"[上下中].*$")
_COMPLETE_RE = re.compile(r"全.*$")
_CJK_NUMERALS_RE = re.compile(r"[一二三四五六七八九十百千萬]+")
_ROMAN_RE = re.compile(r"[IVXLC]+")


def clean_title(title: str) -> str:
    """Strip series markers (brackets, volume numbers, numerals) from a title.

    Books of the same series share a cleaned title, which lets listings keep
    them next to each other.
    """
    cleaned = _BRACKETS_RE.sub("", title or "")
    cleaned = _TRAILING_NUMBER_RE.sub("", cleaned)
    cleaned = _VOLUME_RE.sub("", cleaned)
    cleaned = _PART_RE.sub("", cleaned)
    cleaned = _COMPLETE_RE.sub("", cleaned)
    cleaned = _CJK_NUMERALS_RE.sub("", cleaned)
    cleaned = _ROMAN_RE.sub("", cleaned)
    return cleaned.strip()
