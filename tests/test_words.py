from semantle.words import is_correct, is_valid_date, normalize_word, to_ranking_date, today_str


def test_normalize_word_trims_and_folds():
    assert normalize_word("  שלום ") == "שלום"
    assert normalize_word("Hello") == normalize_word("hELLO ")
    assert normalize_word(None) == ""


def test_is_correct_exact_match_or_threshold():
    assert is_correct("שלום", "שלום", 0.1, 0.99)
    assert is_correct(" שלום", "שלום", 0.0, 0.99)
    assert is_correct("בית", "שלום", 0.995, 0.99)
    assert not is_correct("בית", "שלום", 0.42, 0.99)
    assert not is_correct("בית", None, 0.5, 0.99)


def test_dates():
    assert is_valid_date(today_str())
    assert is_valid_date("2024-02-29")
    assert not is_valid_date("2023-02-29")
    assert not is_valid_date("2024/01/01")
    assert not is_valid_date("")
    assert to_ranking_date("2024-03-07") == "07/03/2024"
