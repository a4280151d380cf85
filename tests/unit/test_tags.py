"""
Unit tests for tag derivation.
"""
from dockgraph.UTILS.repo_info import RepoInfo
from dockgraph.UTILS.tags import default_tags, is_latest, parse_version, sanitize_tag, split_tags


def test_sanitize_tag():
    assert sanitize_tag("feature/foo bar") == "feature-foo-bar"
    assert sanitize_tag("release-1.2_rc") == "release-1.2_rc"


def test_sanitize_tag_is_idempotent():
    for value in ["feature/foo bar", "a:b@c", "ok", "üñí"]:
        once = sanitize_tag(value)
        assert sanitize_tag(once) == once


def test_parse_version():
    assert parse_version("2.3.1") == (2, 3, 1)
    assert parse_version("2.3.1-beta") is None
    assert parse_version("v2.3.1") is None
    assert parse_version("2.3") is None


def test_release_on_highest_version():
    tags = default_tags(["2.3.1"], ["1.0.0", "2.3.0", "2.3.1"], "main")
    assert tags == ["2.3.1", "2.3", "2", "latest"]


def test_release_below_highest_version():
    tags = default_tags(["1.4.2"], ["1.4.2", "2.0.0"], "support/1.x")
    assert tags == ["1.4.2", "1.4", "1"]


def test_prerelease_uses_branch():
    assert default_tags(["2.3.1-beta"], ["2.3.1-beta"], "feature/foo bar") == ["feature-foo-bar"]


def test_no_tags_uses_branch():
    assert default_tags([], [], "main") == ["main"]


def test_is_latest_ignores_prereleases():
    assert is_latest("1.0.0", ["1.0.0", "2.0.0-rc1"])
    assert not is_latest("1.0.0", ["1.0.0", "1.0.1"])
    assert not is_latest("1.0.0-rc1", [])


def test_split_tags():
    assert split_tags("a, b/c,,a") == ["a", "b-c"]


def test_repo_info_default_tags():
    info = RepoInfo(commit="abc", branch="feature/x", commit_tags=[], all_tags=["1.0.0"])
    assert info.sanitized_branch == "feature-x"
    assert info.default_tags() == ["feature-x"]
