"""Tests for dlc.py module."""

import json

import pytest

from depot_mirror.core.cache import MemoryCache, NullCache
from depot_mirror.core.dlc import DlcAnalyzer, classify_dlc, dedicated_depots, placeholder_name
from depot_mirror.core.errors import UpstreamUnavailableError
from depot_mirror.core.types import DlcType


@pytest.fixture
def analyzer(resolver, repository):
    """Analyzer without caching."""
    return DlcAnalyzer(resolver, repository)


def publish(upstream, dlc_names, title_id="480"):
    """Publish a title whose DLC have the given store names."""
    upstream.set_title(title_id, {"481": "111"}, dlc=list(dlc_names))
    for dlc_id, name in dlc_names.items():
        upstream.set_store_name(dlc_id, name)


def script_with(*dlc_ids):
    lines = ["-- Name: Example", "addappid(480)"] + [f"addappid({d})" for d in dlc_ids]
    return ("\n".join(lines) + "\n").encode()


class TestClassification:
    """Test DLC classification by name."""

    @pytest.mark.parametrize("name", [
        "Original Soundtrack",
        "Game OST",
        "Digital Artbook",
        "The Art of Example",
        "Knight Costume Pack",
        "Pre-Order Bonus",
        "Supporter Pack",
        "Digital Deluxe Upgrade",
        "Desktop Wallpapers",
        "Making Of Documentary",
    ])
    def test_extras(self, name):
        """Test cosmetic and media DLC are extras."""
        assert classify_dlc(name) == DlcType.EXTRA

    @pytest.mark.parametrize("name", [
        "Chapter 2: The Reckoning",
        "Expansion Pass",
        "New Campaign",
        "DLC 901",
    ])
    def test_content(self, name):
        """Test gameplay DLC are content."""
        assert classify_dlc(name) == DlcType.CONTENT

    @pytest.mark.parametrize("name", [
        "The Lost Legacy",
        "Ghost Mode",
        "Frostbite Expedition",
        "Outpost Defense",
        "Skinwalker Hunt",
    ])
    def test_keywords_match_whole_words(self, name):
        """Test keywords inside longer words do not make an extra."""
        assert classify_dlc(name) == DlcType.CONTENT

    def test_plural_keywords(self):
        """Test plural keyword forms are extras."""
        assert classify_dlc("Weapon Skins") == DlcType.EXTRA
        assert classify_dlc("Bonus Wallpapers") == DlcType.EXTRA

    def test_placeholder(self):
        """Test placeholder names."""
        assert placeholder_name(901) == "DLC 901"


class TestDedicatedDepots:
    """Test DLC depot ownership from metadata."""

    def test_depot_keys_and_dlcappid(self):
        """Test depot keys and declared DLC owners both count."""
        document = {"depot": {"481": {}, "482": {"dlcappid": "902"}, "branches": {}}}
        assert dedicated_depots(document) == {481, 482, 902}

    def test_missing_document(self):
        """Test no metadata means no dedicated depots."""
        assert dedicated_depots(None) == set()
        assert dedicated_depots({"depot": []}) == set()


class TestAnalyze:
    """Test completeness analysis."""

    def test_no_dlc_is_complete(self, analyzer, upstream, git_host):
        """Test a title without DLC is fully complete."""
        publish(upstream, {})
        git_host.seed_branch("480", {"480.lua": script_with()})

        analysis = analyzer.analyze("480")

        assert analysis.total_dlc == 0
        assert analysis.completion_percent == 100.0
        assert analysis.dlc_list == []

    def test_none_tracked(self, analyzer, upstream, git_host):
        """Test no tracked content DLC is zero percent."""
        publish(upstream, {901: "Chapter 1", 902: "Chapter 2"})
        git_host.seed_branch("480", {"480.lua": script_with()})

        analysis = analyzer.analyze("480")

        assert analysis.completion_percent == 0.0
        assert analysis.missing_dlc == 2

    def test_three_of_four(self, analyzer, upstream, git_host):
        """Test three tracked content DLC out of four is 75 percent."""
        publish(upstream, {901: "Chapter 1", 902: "Chapter 2", 903: "Chapter 3", 904: "Chapter 4"})
        git_host.seed_branch("480", {"480.lua": script_with(901, 902, 903)})

        analysis = analyzer.analyze("480")

        assert analysis.total_dlc == 4
        assert analysis.content_dlc_count == 4
        assert analysis.tracked_dlc == 3
        assert analysis.tracked_content_dlc == 3
        assert analysis.missing_dlc == 1
        assert analysis.completion_percent == 75.0
        assert [d.app_id for d in analysis.dlc_list if not d.is_tracked] == [904]

    def test_all_tracked(self, analyzer, upstream, git_host):
        """Test every content DLC tracked is 100 percent."""
        publish(upstream, {901: "Chapter 1", 902: "Chapter 2"})
        git_host.seed_branch("480", {"480.lua": script_with(901, 902)})

        assert analyzer.analyze("480").completion_percent == 100.0

    def test_extras_do_not_count(self, analyzer, upstream, git_host):
        """Test untracked extras leave content completion at 100 percent."""
        publish(upstream, {901: "Chapter 1", 902: "Original Soundtrack"})
        git_host.seed_branch("480", {"480.lua": script_with(901)})

        analysis = analyzer.analyze("480")

        assert analysis.content_dlc_count == 1
        assert analysis.extra_dlc_count == 1
        assert analysis.missing_dlc == 1
        assert analysis.completion_percent == 100.0

    def test_own_branch_counts_as_tracked(self, analyzer, upstream, git_host):
        """Test a DLC with a branch of its own is tracked."""
        publish(upstream, {901: "Chapter 1"})
        git_host.seed_branch("480", {"480.lua": script_with()})
        git_host.seed_branch("901", {"901.lua": b"addappid(901)\n"})

        assert analyzer.analyze("480").dlc_list[0].is_tracked is True

    def test_own_depot_from_metadata(self, analyzer, upstream, git_host):
        """Test depot ownership is read from the metadata document."""
        publish(upstream, {901: "Chapter 1", 902: "Chapter 2"})
        metadata = {"depot": {"481": {}, "490": {"dlcappid": "902"}}}
        git_host.seed_branch("480", {
            "480.lua": script_with(901, 902),
            "480.json": json.dumps(metadata).encode(),
        })

        dlc = {d.app_id: d for d in analyzer.analyze("480").dlc_list}
        assert dlc[901].has_own_depot is False
        assert dlc[902].has_own_depot is True

    def test_missing_script(self, analyzer, upstream):
        """Test a title without a branch has nothing tracked."""
        publish(upstream, {901: "Chapter 1"})
        analysis = analyzer.analyze("480")
        assert analysis.tracked_dlc == 0
        assert analysis.completion_percent == 0.0

    def test_duplicate_ids(self, analyzer, upstream, git_host):
        """Test repeated upstream identifiers are counted once."""
        publish(upstream, {901: "Chapter 1"})
        upstream.store["480"]["dlc"] = [901, 901]
        git_host.seed_branch("480", {"480.lua": script_with(901)})

        assert analyzer.analyze("480").total_dlc == 1

    def test_lookup_cap(self, resolver, repository, upstream, git_host):
        """Test DLC beyond the cap get placeholders and no branch check."""
        analyzer = DlcAnalyzer(resolver, repository, max_lookups=2)
        publish(upstream, {901: "Chapter 1", 902: "Chapter 2", 903: "Chapter 3", 904: "Chapter 4"})
        git_host.seed_branch("480", {"480.lua": script_with(904)})
        git_host.seed_branch("903", {})

        dlc = {d.app_id: d for d in analyzer.analyze("480").dlc_list}

        assert dlc[901].name == "Chapter 1"
        assert dlc[903].name == "DLC 903"
        assert dlc[903].is_tracked is False
        assert dlc[904].name == "DLC 904"
        assert dlc[904].is_tracked is True

    def test_upstream_unavailable(self, analyzer, upstream):
        """Test an unreachable store propagates."""
        upstream.store_status = 503
        with pytest.raises(UpstreamUnavailableError):
            analyzer.analyze("480")


class TestCaching:
    """Test name and analysis caching."""

    def test_empty_cache_is_kept(self, resolver, repository):
        """Test an injected cache is used even while it is empty."""
        cache = MemoryCache()
        analyzer = DlcAnalyzer(resolver, repository, cache)
        assert analyzer.cache is cache

    def test_default_cache(self, resolver, repository):
        """Test no cache means a null cache."""
        assert isinstance(DlcAnalyzer(resolver, repository).cache, NullCache)

    def test_analysis_cached(self, resolver, repository, upstream, git_host, fake_clock):
        """Test a recent analysis is served from cache until refreshed."""
        analyzer = DlcAnalyzer(resolver, repository, MemoryCache(clock=fake_clock), analysis_ttl=300)
        publish(upstream, {901: "Chapter 1"})
        git_host.seed_branch("480", {"480.lua": script_with()})

        first = analyzer.analyze("480")
        requests = len(upstream.requests)

        git_host.seed_branch("480", {"480.lua": script_with(901)})
        assert analyzer.analyze("480") == first
        assert len(upstream.requests) == requests

        assert analyzer.analyze("480", use_cache=False).completion_percent == 100.0

        fake_clock.now += 301
        assert analyzer.analyze("480").completion_percent == 100.0

    def test_names_cached(self, resolver, repository, upstream, fake_clock):
        """Test store names are fetched once."""
        analyzer = DlcAnalyzer(resolver, repository, MemoryCache(clock=fake_clock))
        upstream.set_store_name(901, "Chapter 1")

        assert analyzer.dlc_name(901) == "Chapter 1"
        requests = len(upstream.requests)
        assert analyzer.dlc_name(901) == "Chapter 1"
        assert len(upstream.requests) == requests

    def test_placeholder_not_cached(self, resolver, repository, upstream, fake_clock):
        """Test a missing name is retried on the next lookup."""
        analyzer = DlcAnalyzer(resolver, repository, MemoryCache(clock=fake_clock))

        assert analyzer.dlc_name(901) == "DLC 901"
        upstream.set_store_name(901, "Chapter 1")
        assert analyzer.dlc_name(901) == "Chapter 1"

    def test_store_failure_gives_placeholder(self, analyzer, upstream):
        """Test name lookups degrade to a placeholder."""
        upstream.store_status = 500
        assert analyzer.dlc_name(901) == "DLC 901"
