import pytest

from core.errors import NotFound, StateConflict
from core.playlists import PlaylistBook
from tests.conftest import make_track


def test_save_trims_name_and_load_returns_copy():
    book = PlaylistBook()
    tracks = [make_track("a"), make_track("b")]
    assert book.save("  chill  ", tracks) == "chill"

    loaded = book.load("chill")
    assert loaded == tracks
    loaded.clear()
    assert len(book.load("chill")) == 2


def test_rejects_bad_names_and_empty_tracks():
    book = PlaylistBook(max_name_length=5)
    with pytest.raises(StateConflict):
        book.save("   ", [make_track("a")])
    with pytest.raises(StateConflict):
        book.save("toolong", [make_track("a")])
    with pytest.raises(StateConflict):
        book.save("ok", [])


def test_cap_counts_distinct_names_only():
    book = PlaylistBook(max_playlists=2)
    book.save("one", [make_track("a")])
    book.save("two", [make_track("b")])
    with pytest.raises(StateConflict):
        book.save("three", [make_track("c")])

    book.save("two", [make_track("c"), make_track("d")])
    assert len(book) == 2
    assert book.list() == [("one", 1), ("two", 2)]


def test_load_unknown_suggests_close_name():
    book = PlaylistBook()
    book.save("workout mix", [make_track("a")])
    with pytest.raises(NotFound) as excinfo:
        book.load("workot mix")
    assert "did you mean 'workout mix'" in excinfo.value.message

    with pytest.raises(NotFound) as excinfo:
        book.load("jazz")
    assert "did you mean" not in excinfo.value.message


def test_delete():
    book = PlaylistBook()
    book.save("x", [make_track("a")])
    assert "x" in book
    assert book.delete(" x ")
    assert not book.delete("x")
    assert book.names() == []
