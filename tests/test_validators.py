import pytest

from utils.validators import (
    GENRE_BRIDGE_BOOK,
    GENRE_PICTURE_BOOK,
    GENRE_TEXT_BOOK,
    GENRE_UNKNOWN,
    BookCodeValidator,
    TextValidator,
    clean_title,
)


@pytest.mark.parametrize("code", ["A0001", "B12", "C9999", " a0003 ", "c1"])
def test_valid_codes(code):
    assert BookCodeValidator.validate(code)


@pytest.mark.parametrize("code", ["", None, "A", "D0001", "AB001", "0001", "A-001", "A 001"])
def test_invalid_codes(code):
    assert not BookCodeValidator.validate(code)


def test_normalize_trims_and_uppercases():
    assert BookCodeValidator.normalize("  b0042 ") == "B0042"
    assert BookCodeValidator.normalize(None) == ""


def test_genre_follows_prefix():
    assert BookCodeValidator.genre_of("A0001") == GENRE_PICTURE_BOOK
    assert BookCodeValidator.genre_of("b0001") == GENRE_BRIDGE_BOOK
    assert BookCodeValidator.genre_of("C0001") == GENRE_TEXT_BOOK
    assert BookCodeValidator.genre_of("Z0001") == GENRE_UNKNOWN


def test_prefix_for_genre_defaults_to_text_books():
    assert BookCodeValidator.prefix_for_genre(GENRE_PICTURE_BOOK) == "A"
    assert BookCodeValidator.prefix_for_genre(GENRE_BRIDGE_BOOK) == "B"
    assert BookCodeValidator.prefix_for_genre(None) == "C"
    assert BookCodeValidator.prefix_for_genre("poetry") == "C"


def test_next_available_uses_highest_number_of_prefix():
    existing = {"A0001", "A0007", "B0003", "C0100"}
    assert BookCodeValidator.next_available("A", existing) == "A0008"
    assert BookCodeValidator.next_available("B", existing) == "B0004"


def test_next_available_starts_at_one_and_pads():
    assert BookCodeValidator.next_available("C", []) == "C0001"
    assert BookCodeValidator.next_available("c", ["C12345"]) == "C12346"


def test_next_available_is_deterministic():
    codes = ["A0002", "A0010", "A0003"]
    assert BookCodeValidator.next_available("A", codes) == BookCodeValidator.next_available("A", reversed(codes))


def test_next_available_rejects_unknown_prefix():
    with pytest.raises(ValueError):
        BookCodeValidator.next_available("D", [])


def test_validate_title():
    assert TextValidator.validate_title("Cat")
    assert not TextValidator.validate_title("   ")
    assert not TextValidator.validate_title(None)


def test_clean_title_strips_series_markers():
    assert clean_title("魔法校車(二)") == "魔法校車"
    assert clean_title("屁屁偵探 上") == "屁屁偵探"
    assert clean_title("神奇樹屋12") == "神奇樹屋"
    assert clean_title("") == ""
