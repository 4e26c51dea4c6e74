from peaberry.utils import clean_text, haversine_km, sanitize_input


def test_sanitize_removes_script_tags():
    s = "<script>alert(1)</script>Bob"
    out = sanitize_input(s)
    assert "script" not in out.lower()
    assert "bob" in out.lower()


def test_sanitize_strips_sql_meta():
    s = "Alice; DROP TABLE users; --"
    out = sanitize_input(s)
    # separators removed, core words may remain but punctuation should be gone
    assert ";" not in out
    assert "--" not in out
    assert "drop" in out.lower()


def test_sanitize_handles_none():
    assert sanitize_input(None) == ""


def test_clean_text_keeps_punctuation():
    assert clean_text("<b>Great</b> beans; would return -- 10/10") == "Great beans; would return -- 10/10"
    assert clean_text(None) is None


def test_haversine_distance():
    assert haversine_km(40.7128, -74.0060, 40.7128, -74.0060) == 0
    # Manhattan to Brooklyn Heights, roughly 2 km
    assert 1.5 < haversine_km(40.7128, -74.0060, 40.6960, -73.9950) < 2.5
