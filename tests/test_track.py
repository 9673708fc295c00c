from core.track import format_duration
from tests.conftest import make_track


def test_format_duration():
    assert format_duration(None) == "?:??"
    assert format_duration(5) == "0:05"
    assert format_duration(75) == "1:15"
    assert format_duration(3725) == "1:02:05"


def test_display_duration_uses_track_length():
    assert make_track("a").display_duration == "1:30"
