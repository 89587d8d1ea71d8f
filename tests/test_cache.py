"""
Tests for the bundle file cache.
"""

import pytest

from configur.common.exceptions import CacheMiss
from configur.services.sync.cache import LocalCache

from conftest import make_bundle_json


def test_save_then_load(tmp_path):
    cache = LocalCache(tmp_path)
    raw = make_bundle_json([{"key": "A", "value": "1"}], etag="v3")

    cache.save("demo", raw)
    bundle = cache.load("demo")

    assert bundle.etag == "v3"
    assert bundle.raw == raw
    assert cache.path_for("demo").read_text(encoding="utf-8") == raw


def test_save_replaces_previous_bundle(tmp_path):
    cache = LocalCache(tmp_path)

    cache.save("demo", make_bundle_json(etag="old"))
    cache.save("demo", make_bundle_json(etag="new"))

    assert cache.load("demo").etag == "new"
    # No temp files left behind
    assert [p.name for p in tmp_path.iterdir()] == [cache.path_for("demo").name]


def test_file_name_per_app(tmp_path):
    cache = LocalCache(tmp_path)

    assert cache.path_for("demo").name == "configur_appsettings_demo.json"
    assert cache.path_for("../etc/passwd").parent == tmp_path


def test_missing_file(tmp_path):
    with pytest.raises(CacheMiss) as exc_info:
        LocalCache(tmp_path).load("demo")

    assert exc_info.value.app_id == "demo"


def test_corrupt_file(tmp_path):
    cache = LocalCache(tmp_path)
    cache.path_for("demo").write_text("{truncated", encoding="utf-8")

    with pytest.raises(CacheMiss) as exc_info:
        cache.load("demo")

    assert "corrupt" in exc_info.value.reason


def test_disabled_cache_does_nothing(tmp_path):
    cache = LocalCache(tmp_path, enabled=False)

    cache.save("demo", make_bundle_json())

    assert list(tmp_path.iterdir()) == []
    with pytest.raises(CacheMiss):
        cache.load("demo")


def test_save_failure_is_not_raised(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("")
    cache = LocalCache(blocker / "cache")

    cache.save("demo", make_bundle_json())

    with pytest.raises(CacheMiss):
        cache.load("demo")
