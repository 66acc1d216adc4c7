"""Tests for the on-disk library: manifest snapshots and artifact sync."""

import json
import threading
from datetime import datetime, timezone
from unittest.mock import patch

import pytest

from conftest import FakeWeb, make_entry, make_manifest
from librarian.inventory import Inventory
from librarian.library import METADATA_FILE, Library
from librarian.web import sha1_hex


def _inventory(*entries, release=None):
    return Inventory.from_manifest(make_manifest(entries, release=release))


@pytest.fixture
def library(tmp_path, fake_web):
    return Library(tmp_path / "lib", fake_web, artifact_types=["client", "server"])


class TestManifestSnapshots:
    def test_root_and_manifest_folder_are_created(self, tmp_path, fake_web):
        lib = Library(tmp_path / "deep" / "lib", fake_web)
        assert lib.manifests_dir.is_dir()

    def test_store_and_reload(self, library):
        inventory = _inventory(make_entry("1.0"), release="1.0")
        path = library.store_manifest(inventory, when=datetime(2021, 5, 6, 7, 8, 9, tzinfo=timezone.utc))

        assert path.name == "2021-05-06_07-08-09_UTC.json"
        assert library.latest_manifest() == inventory

    def test_no_stored_manifest(self, library):
        assert library.latest_manifest() is None

    def test_newest_parseable_manifest_wins(self, library):
        older = _inventory(make_entry("1.0"))
        newer = _inventory(make_entry("1.0"), make_entry("1.1"))
        library.store_manifest(older, when=datetime(2021, 1, 1, tzinfo=timezone.utc))
        library.store_manifest(newer, when=datetime(2021, 2, 1, tzinfo=timezone.utc))
        (library.manifests_dir / "2021-03-01_00-00-00_UTC.json").write_text("{broken")

        assert library.latest_manifest() == newer


class TestSync:
    def test_downloads_into_version_folder(self, library, fake_web):
        entry = fake_web.publish(make_entry("1.0", release_time="2020-01-02T03:04:05+00:00"))
        inventory = _inventory(entry)

        report = library.sync(inventory)

        folder = library.root / "Release" / "1.0_2020-01-02_03-04-05"
        assert (folder / METADATA_FILE).is_file()
        assert (folder / "client.jar").read_bytes() == b"client of 1.0"
        assert (folder / "server.jar").read_bytes() == b"server of 1.0"
        assert report.downloads == 3
        assert report.failures == 0
        assert library.is_present(inventory.version("1.0"))
        assert library.stats.total_downloaded == 3

    def test_second_pass_downloads_nothing(self, library, fake_web):
        inventory = _inventory(fake_web.publish(make_entry("1.0")), fake_web.publish(make_entry("1.1")))
        library.sync(inventory)
        fake_web.requests.clear()

        report = library.sync(inventory)

        assert report.downloads == 0
        assert report.versions_missing == 0
        assert fake_web.requests == []

    def test_integrity_failure_is_retried_next_pass(self, library, fake_web):
        entry = fake_web.publish(make_entry("1.0"), corrupt=("client",))
        inventory = _inventory(entry)

        report = library.sync(inventory)

        folder = library.version_dir(inventory.version("1.0"))
        assert report.failures == 1
        assert not (folder / "client.jar").exists()
        assert (folder / "server.jar").exists()
        assert not library.is_present(inventory.version("1.0"))

        # The stored meta.json is reused, so correcting it is enough
        metadata = json.loads((folder / METADATA_FILE).read_text())
        data = fake_web.files[metadata["downloads"]["client"]["url"]]
        metadata["downloads"]["client"]["sha1"] = sha1_hex(data)
        (folder / METADATA_FILE).write_text(json.dumps(metadata))
        fake_web.requests.clear()

        report = library.sync(inventory)

        assert report.downloads == 1
        assert report.failures == 0
        assert fake_web.requests == [metadata["downloads"]["client"]["url"]]
        assert library.is_present(inventory.version("1.0"))

    def test_unreachable_metadata_fails_the_version_only(self, library, fake_web):
        broken = fake_web.publish(make_entry("1.0"))
        fine = fake_web.publish(make_entry("1.1"))
        fake_web.fail.add(broken["url"])

        report = library.sync(_inventory(broken, fine))

        assert report.failures == 1
        assert report.versions_missing == 2
        assert library.stats.total_failed == 1
        assert (library.root / _inventory(fine).version("1.1").library_sub_path / "client.jar").exists()

    def test_artifact_type_filter(self, tmp_path, fake_web):
        lib = Library(tmp_path / "lib", fake_web, artifact_types=["server"])
        inventory = _inventory(fake_web.publish(make_entry("1.0")))

        lib.sync(inventory)

        folder = lib.version_dir(inventory.version("1.0"))
        assert (folder / "server.jar").exists()
        assert not (folder / "client.jar").exists()
        assert lib.is_present(inventory.version("1.0"))

    def test_skip_artifacts_stores_metadata_only(self, tmp_path, fake_web):
        lib = Library(tmp_path / "lib", fake_web, skip_artifacts=True)
        inventory = _inventory(fake_web.publish(make_entry("1.0")))

        report = lib.sync(inventory)

        folder = lib.version_dir(inventory.version("1.0"))
        assert report.downloads == 1
        assert (folder / METADATA_FILE).exists()
        assert not (folder / "client.jar").exists()

    def test_tampered_file_is_downloaded_again(self, library, fake_web):
        inventory = _inventory(fake_web.publish(make_entry("1.0")))
        library.sync(inventory)
        target = library.version_dir(inventory.version("1.0")) / "client.jar"
        target.write_bytes(b"tampered")

        assert not library.is_present(inventory.version("1.0"))
        report = library.sync(inventory)

        assert report.downloads == 1
        assert target.read_bytes() == b"client of 1.0"

    def test_cancelled_before_start(self, library, fake_web):
        cancel = threading.Event()
        cancel.set()

        report = library.sync(_inventory(fake_web.publish(make_entry("1.0"))), cancel)

        assert report.cancelled
        assert report.versions_checked == 0
        assert fake_web.requests == []

    def test_cancelled_download_is_not_persisted(self, tmp_path):
        stop = threading.Event()

        class CancellingWeb(FakeWeb):
            def fetch_artifact(self, url, expected_size=None, expected_sha1=None, cancel=None):
                cancel.set()
                return super().fetch_artifact(url, expected_size, expected_sha1, cancel)

        web = CancellingWeb()
        lib = Library(tmp_path / "lib", web)
        inventory = _inventory(web.publish(make_entry("1.0")))

        report = lib.sync(inventory, stop)

        folder = lib.version_dir(inventory.version("1.0"))
        assert report.cancelled
        assert sorted(p.name for p in folder.iterdir()) == [METADATA_FILE]
        assert not lib.is_present(inventory.version("1.0"))

    def test_malformed_stored_metadata_does_not_stop_the_pass(self, library, fake_web):
        broken = fake_web.publish(make_entry("a", time="2020-01-01T00:00:00+00:00"))
        fine = fake_web.publish(make_entry("b", time="2020-02-01T00:00:00+00:00"))
        inventory = _inventory(broken, fine)
        version_a = inventory.version("a")

        metadata = json.loads(fake_web.documents[broken["url"]])
        metadata["downloads"]["client"]["size"] = "12 MB"
        metadata["downloads"]["server"]["sha1"] = 5
        library.version_dir(version_a).mkdir(parents=True)
        library.metadata_path(version_a).write_text(json.dumps(metadata))

        report = library.sync(inventory)

        assert report.failures == 0
        assert library.is_present(inventory.version("b"))
        assert (library.version_dir(version_a) / "client.jar").read_bytes() == b"client of a"

    def test_artifacts_drop_invalid_size_and_hash(self, library):
        metadata = {
            "downloads": {
                "client": {"url": "https://x/client.jar", "size": "12 MB", "sha1": "ABC"},
                "server": {"url": "https://x/server.jar", "size": 10, "sha1": ["x"]},
            }
        }
        client, server = library.artifacts(metadata)

        assert (client.size, client.sha1) == (None, "abc")
        assert (server.size, server.sha1) == (10, None)


class TestVerification:
    def test_regular_pass_does_not_hash_stored_files(self, library, fake_web):
        inventory = _inventory(fake_web.publish(make_entry("1.0")), fake_web.publish(make_entry("1.1")))
        library.sync(inventory)

        with patch("librarian.library._sha1") as sha1:
            report = library.sync(inventory)

        assert report.downloads == 0
        sha1.assert_not_called()

    def test_deep_pass_replaces_same_size_corruption(self, library, fake_web):
        inventory = _inventory(fake_web.publish(make_entry("1.0")))
        version = inventory.version("1.0")
        library.sync(inventory)
        target = library.version_dir(version) / "client.jar"
        target.write_bytes(b"X" * len(b"client of 1.0"))

        assert library.is_present(version)
        assert not library.is_present(version, deep=True)

        report = library.sync(inventory, deep=True)

        assert report.downloads == 1
        assert target.read_bytes() == b"client of 1.0"
        assert library.is_present(version, deep=True)

    def test_without_verification_existence_is_enough(self, tmp_path, fake_web):
        lib = Library(tmp_path / "lib", fake_web, verify=False)
        inventory = _inventory(fake_web.publish(make_entry("1.0")))
        lib.sync(inventory)
        (lib.version_dir(inventory.version("1.0")) / "client.jar").write_bytes(b"short")

        assert lib.is_present(inventory.version("1.0"), deep=True)
