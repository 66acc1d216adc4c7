"""Shared fixtures: manifest builders and an in-memory stand-in for WebAccess."""

import json

import pytest
import requests

from librarian.web import DownloadResult, IntegrityError, sha1_hex

BASE_URL = "https://launcher.example.test"


def make_entry(version_id, build_type="release", time="2020-01-01T10:00:00+00:00",
               release_time=None, url=None):
    """Return one object of a manifest's ``versions`` array."""
    return {
        "id": version_id,
        "type": build_type,
        "url": url or f"{BASE_URL}/v1/packages/{version_id}.json",
        "time": time,
        "releaseTime": release_time or time,
    }


def make_manifest(entries, release=None, snapshot=None):
    """Return manifest JSON text for *entries* and the given latest pointers."""
    latest = {}
    if release is not None:
        latest["release"] = release
    if snapshot is not None:
        latest["snapshot"] = snapshot
    return json.dumps({"latest": latest, "versions": list(entries)})


class FakeWeb:
    """Serves manifests, metadata documents and artifacts from dictionaries."""

    def __init__(self):
        self.manifest_url = f"{BASE_URL}/version_manifest.json"
        self.manifest = make_manifest([])
        self.documents = {}
        self.files = {}
        self.fail = set()
        self.requests = []

    def publish(self, entry, artifacts=None, corrupt=()):
        """Register metadata and artifact files for a manifest *entry*.

        Names listed in *corrupt* are announced with a hash that does not
        match their content.
        """
        if artifacts is None:
            artifacts = {
                "client": f"client of {entry['id']}".encode(),
                "server": f"server of {entry['id']}".encode(),
            }
        downloads = {}
        for name, data in artifacts.items():
            url = f"{BASE_URL}/objects/{entry['id']}/{name}.jar"
            self.files[url] = data
            downloads[name] = {
                "url": url,
                "size": len(data),
                "sha1": "0" * 40 if name in corrupt else sha1_hex(data),
            }
        self.documents[entry["url"]] = json.dumps(
            {"id": entry["id"], "type": entry["type"], "downloads": downloads}
        )
        return entry

    def fetch_manifest(self):
        if isinstance(self.manifest, Exception):
            raise self.manifest
        return self.manifest.encode("utf-8")

    def fetch_text(self, url):
        self.requests.append(url)
        if url in self.fail:
            raise requests.ConnectionError(f"cannot reach {url}")
        return self.documents[url]

    def fetch_artifact(self, url, expected_size=None, expected_sha1=None, cancel=None):
        self.requests.append(url)
        if url in self.fail:
            raise requests.ConnectionError(f"cannot reach {url}")
        data = self.files[url]
        if cancel is not None and cancel.is_set():
            return DownloadResult(
                url=url, data=bytearray(expected_size or len(data)), bytes_read=0, completed=False
            )
        if expected_size and len(data) != expected_size:
            raise IntegrityError(f"size mismatch for {url}")
        if expected_sha1 and sha1_hex(data) != expected_sha1:
            raise IntegrityError(f"SHA-1 mismatch for {url}")
        return DownloadResult(url=url, data=bytearray(data), bytes_read=len(data))


class CommandRecorder:
    """Stands in for run_shell_command; returns scripted exit codes."""

    def __init__(self, exit_codes=None):
        self.commands = []
        self._exit_codes = exit_codes or {}

    def __call__(self, command):
        self.commands.append(command)
        for marker, code in self._exit_codes.items():
            if marker in command:
                return code
        return 0


@pytest.fixture
def fake_web():
    return FakeWeb()


@pytest.fixture
def commands():
    return CommandRecorder()
