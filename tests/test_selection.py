"""Tests for mirror/profile resolution and the manual override."""

from __future__ import annotations

import threading
from datetime import datetime, timezone

import pytest

from chrootmanager.errors import FetchTimeout, NoProfiles, NoUsableMirror, Unreachable
from chrootmanager.models import MirrorRecord, OperatorLocation, ProfileRecord, Selection
from chrootmanager.selection import Override, find_mirror, manual_mirror, resolve
from chrootmanager.selection_store import SelectionStore

NOW = datetime(2024, 10, 13, 12, 0, tzinfo=timezone.utc)

EU1 = MirrorRecord(
    identifier="eu1",
    base_url="https://eu1.example",
    region="DE",
    continent="Europe",
    protocols=("https", "http"),
    uris={"https": "https://eu1.example", "http": "http://eu1.example", "rsync": "rsync://eu1.example"},
)
US1 = MirrorRecord(identifier="us1", base_url="https://us1.example", region="US", protocols=("https",))
JP1 = MirrorRecord(identifier="jp1", base_url="https://jp1.example", region="JP", protocols=("https",))


class FakeDiscovery:
    """identifier -> list of profile paths, or an exception to raise."""

    def __init__(self, offers):
        self.offers = offers
        self.calls = []
        self._lock = threading.Lock()

    def __call__(self, mirror):
        with self._lock:
            self.calls.append(mirror.identifier)
        offer = self.offers.get(mirror.identifier, NoProfiles(f"nothing on {mirror.identifier}"))
        if isinstance(offer, Exception):
            raise offer
        return [ProfileRecord(path=p, mirror=mirror, stage3_reference=ref) for p, ref in offer]


class TestResolve:
    def test_falls_through_to_the_only_usable_mirror(self):
        discover = FakeDiscovery({"us1": [("amd64/minimal", "amd64-minimal-2024.tar")]})

        selection = resolve([EU1, US1], OperatorLocation.parse("DE"), discover=discover, now=NOW)

        assert discover.calls == ["eu1", "us1"]
        assert selection == Selection(
            mirror_identifier="us1",
            mirror_base_url="https://us1.example",
            profile_path="amd64/minimal",
            stage3_reference="amd64-minimal-2024.tar",
            resolved_at=NOW,
        )

    def test_last_ranked_mirror_is_not_skipped(self):
        discover = FakeDiscovery(
            {
                "eu1": Unreachable("down"),
                "jp1": FetchTimeout("slow"),
                "us1": [("amd64/openrc", "releases/amd64/autobuilds/x.tar.xz")],
            }
        )

        selection = resolve([US1, JP1, EU1], OperatorLocation(country="DE"), discover=discover, now=NOW)

        assert selection.mirror_identifier == "us1"
        assert discover.calls == ["eu1", "jp1", "us1"]

    def test_stops_at_first_usable_mirror(self):
        discover = FakeDiscovery(
            {
                "eu1": [("amd64/openrc", "a")],
                "us1": [("amd64/openrc", "b")],
            }
        )

        selection = resolve([US1, EU1], OperatorLocation(country="DE"), discover=discover, now=NOW)

        assert selection.mirror_identifier == "eu1"
        assert discover.calls == ["eu1"]

    def test_requested_profile_missing_moves_to_next_mirror(self):
        discover = FakeDiscovery(
            {
                "eu1": [("amd64/openrc", "a")],
                "us1": [("amd64/openrc", "b"), ("amd64/systemd", "c")],
            }
        )

        selection = resolve(
            [EU1, US1],
            OperatorLocation(country="DE"),
            Override(profile="amd64/systemd"),
            discover=discover,
            now=NOW,
        )

        assert (selection.mirror_identifier, selection.profile_path) == ("us1", "amd64/systemd")

    def test_every_failure_is_reported(self):
        discover = FakeDiscovery({"eu1": Unreachable("down")})

        with pytest.raises(NoUsableMirror) as exc:
            resolve([EU1, US1], OperatorLocation(), discover=discover)

        assert [ident for ident, _ in exc.value.attempts] == ["eu1", "us1"]
        assert "Unreachable" in exc.value.attempts[0][1]
        assert "NoProfiles" in exc.value.attempts[1][1]

    def test_empty_catalog_leaves_existing_selection_untouched(self, tmp_path):
        path = tmp_path / "selection.json"
        store = SelectionStore.at(path)
        store.save(
            Selection(
                mirror_identifier="old",
                mirror_base_url="https://old.example",
                profile_path="amd64/openrc",
                stage3_reference="r",
                resolved_at=NOW,
            )
        )
        before = path.read_bytes()

        with pytest.raises(NoUsableMirror, match="catalog is empty"):
            resolve([], OperatorLocation(country="DE"), discover=FakeDiscovery({}), store=store)

        assert path.read_bytes() == before

    def test_success_is_persisted(self, tmp_path):
        store = SelectionStore.at(tmp_path / "selection.json")
        discover = FakeDiscovery({"eu1": [("amd64/openrc", "a")]})

        selection = resolve([EU1], None, discover=discover, store=store, now=NOW)

        assert store.load() == selection

    def test_unexpected_errors_propagate(self):
        discover = FakeDiscovery({"eu1": RuntimeError("bug")})

        with pytest.raises(RuntimeError):
            resolve([EU1, US1], OperatorLocation(country="DE"), discover=discover)

    @pytest.mark.parametrize("workers", [2, 8])
    def test_higher_ranked_mirror_wins_even_when_it_answers_last(self, workers):
        us1_returned = threading.Event()
        finished = []
        inner = FakeDiscovery({"eu1": [("amd64/openrc", "eu")], "us1": [("amd64/openrc", "us")]})

        def discover(mirror):
            if mirror.identifier == "eu1":
                assert us1_returned.wait(timeout=5)
            records = inner(mirror)
            finished.append(mirror.identifier)
            if mirror.identifier == "us1":
                us1_returned.set()
            return records

        selection = resolve([EU1, US1], OperatorLocation(country="DE"), discover=discover, now=NOW, workers=workers)

        assert finished == ["us1", "eu1"]
        assert selection.mirror_identifier == "eu1"

    @pytest.mark.parametrize("workers", [2, 8])
    def test_concurrent_discovery_keeps_rank_order(self, workers):
        offers = {
            "eu1": Unreachable("down"),
            "us1": [("amd64/openrc", "us")],
            "jp1": [("amd64/openrc", "jp")],
        }
        loc = OperatorLocation(country="DE")

        sequential = resolve([EU1, US1, JP1], loc, discover=FakeDiscovery(offers), now=NOW)
        concurrent = resolve([EU1, US1, JP1], loc, discover=FakeDiscovery(offers), now=NOW, workers=workers)

        assert concurrent == sequential
        assert concurrent.mirror_identifier == "jp1"


class TestManualOverride:
    def test_manual_mirror_is_probed_alone(self):
        discover = FakeDiscovery({"us1": [("amd64/openrc", "a")]})

        with pytest.raises(NoUsableMirror) as exc:
            resolve([EU1, US1], OperatorLocation(country="DE"), Override(mirror="eu1"), discover=discover)

        assert discover.calls == ["eu1"]
        assert [ident for ident, _ in exc.value.attempts] == ["eu1"]

    def test_manual_mirror_by_url(self):
        assert find_mirror([EU1, US1], "https://us1.example/") is US1
        assert find_mirror([EU1, US1], "http://eu1.example") is EU1
        assert find_mirror([EU1, US1], "nope") is None

    def test_url_outside_catalog_becomes_ad_hoc_mirror(self):
        discover = FakeDiscovery({"https://local.example/gentoo": [("amd64/openrc", "a")]})

        selection = resolve(
            [EU1],
            None,
            Override(mirror="https://local.example/gentoo"),
            discover=discover,
            now=NOW,
        )

        assert selection.mirror_base_url == "https://local.example/gentoo"

    def test_unknown_name_is_rejected(self):
        with pytest.raises(NoUsableMirror):
            manual_mirror([EU1], Override(mirror="not-a-mirror"))

    def test_protocol_choice_switches_base_url(self):
        mirror = manual_mirror([EU1], Override(mirror="eu1", protocol="HTTP"))
        assert mirror.base_url == "http://eu1.example"
        assert mirror.identifier == "eu1"

    @pytest.mark.parametrize("protocol", ["rsync", "ftp"])
    def test_unfetchable_protocol_is_rejected(self, protocol):
        with pytest.raises(NoUsableMirror):
            manual_mirror([EU1], Override(mirror="eu1", protocol=protocol))


class TestProtocolChoice:
    def test_ranked_mirrors_switch_to_the_requested_scheme(self):
        discover = FakeDiscovery({"eu1": [("amd64/openrc", "a")]})

        selection = resolve([EU1, US1], OperatorLocation(country="DE"), Override(protocol="http"), discover=discover)

        assert selection.mirror_identifier == "eu1"
        assert selection.mirror_base_url == "http://eu1.example"

    def test_mirrors_without_the_scheme_are_not_probed(self):
        discover = FakeDiscovery({"us1": [("amd64/openrc", "a")]})

        with pytest.raises(NoUsableMirror) as exc:
            resolve([US1, JP1], OperatorLocation(country="US"), Override(protocol="http"), discover=discover)

        assert discover.calls == []
        assert exc.value.attempts == [("us1", "no usable http URI"), ("jp1", "no usable http URI")]

    def test_skipped_mirrors_are_reported_with_fetch_failures(self):
        discover = FakeDiscovery({"eu1": Unreachable("down")})

        with pytest.raises(NoUsableMirror) as exc:
            resolve([EU1, US1], OperatorLocation(country="DE"), Override(protocol="http"), discover=discover)

        assert discover.calls == ["eu1"]
        assert [ident for ident, _ in exc.value.attempts] == ["us1", "eu1"]
