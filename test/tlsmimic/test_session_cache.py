import pytest

from tlsmimic.session_cache import NoSessionCache
from tlsmimic.session_cache import SimpleCache


def test_no_session_cache():
    c = NoSessionCache()
    c.put("example.com", object())
    assert c.get("example.com") is None
    assert len(c) == 0
    c.remove("example.com")
    c.clear()


def test_simple_cache():
    c = SimpleCache(2)
    a, b, d = object(), object(), object()
    c.put("a", a)
    c.put("b", b)
    assert len(c) == 2
    assert c.get("a") is a
    # "b" is now the least recently used entry
    c.put("d", d)
    assert "b" not in c
    assert "a" in c
    assert c.get("d") is d
    assert c.get("b") is None

    c.put("a", d)
    assert c.get("a") is d
    assert len(c) == 2

    c.remove("a")
    c.remove("a")
    assert "a" not in c
    c.clear()
    assert len(c) == 0


def test_simple_cache_size():
    with pytest.raises(ValueError):
        SimpleCache(0)
