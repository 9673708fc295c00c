from utils.search import autocomplete_search, fuzzy_search, suggest_name


def test_exact_match_ranks_first():
    results = fuzzy_search("rock", ["rock classics", "Rock", "punk rock"])
    assert results[0][0] == "Rock"


def test_suggest_name_threshold():
    assert suggest_name("chil", ["chill", "metal"]) == "chill"
    assert suggest_name("zzzz", ["chill", "metal"]) is None


def test_autocomplete_empty_query_lists_sorted():
    assert autocomplete_search("", ["b", "a", "c"]) == ["a", "b", "c"]


def test_autocomplete_filters_weak_matches():
    names = ["gym", "study beats", "road trip"]
    assert autocomplete_search("study", names) == ["study beats"]
