from __future__ import annotations

import threading
from typing import Any, Dict, List, Optional

import pytest
from botocore.exceptions import ClientError

from common.sekai import SekaiMaintenanceError, SekaiTransportError, VersionRouting
from state.s3_store import S3ObjectMirror, dump_key_value_json, sha256_hex
from updater.pipeline import UpdatePipeline


ROUTING = VersionRouting(domain="api.example.test", profile="production", assetbundle_host_hash="hh")


class _FakeS3:
    def __init__(self) -> None:
        self._store: Dict[tuple, Dict[str, Any]] = {}
        self.puts: List[str] = []

    def upload_fileobj(self, Fileobj, Bucket: str, Key: str, ExtraArgs=None, Config=None):  # noqa: ARG002
        self._store[(Bucket, Key)] = {"Body": Fileobj.read(), "Metadata": dict(ExtraArgs["Metadata"])}
        self.puts.append(Key)

    def head_object(self, *, Bucket: str, Key: str):
        item = self._store.get((Bucket, Key))
        if not item:
            raise ClientError({"Error": {"Code": "404"}}, "HeadObject")
        return {"Metadata": item["Metadata"]}

    def get_waiter(self, name: str):  # noqa: ARG002
        class _W:
            def wait(self, **_kw):
                return None

        return _W()

    def seed(self, key: str, content_hash: str) -> None:
        self._store[("b", key)] = {"Body": b"", "Metadata": {"hash": content_hash}}


class _FakeNotifier:
    def __init__(self) -> None:
        self.events: List[tuple[str, str]] = []

    def publish(self, bucket: str, key: str) -> None:
        self.events.append((bucket, key))


class _FakeClient:
    def __init__(self) -> None:
        self.calls: List[tuple] = []
        self.batches: Dict[str, Dict[str, Any]] = {}
        self.split_paths: List[Any] = []
        self.manifest: Dict[str, Any] = {"bundles": {}}
        self.bundles: Dict[str, bytes] = {}
        self.fail_on: Optional[str] = None
        self.block: Optional[threading.Event] = None
        self.entered = threading.Event()

    def refresh_app_version(self):
        self.calls.append(("refresh_app_version",))
        self.entered.set()
        if self.block is not None:
            self.block.wait(timeout=5)

    def resolve_version_routing(self):
        self.calls.append(("resolve_version_routing",))
        return ROUTING

    def authenticate(self, domain: str):
        self.calls.append(("authenticate", domain))
        if self.fail_on == "authenticate":
            raise SekaiMaintenanceError(503, "maintenance")
        return {"sessionToken": "tok", "suiteMasterSplitPath": self.split_paths}

    def request(self, method: str, url: str, body=None):  # noqa: ARG002
        self.calls.append(("request", method, url))
        if url == "manifest-url":
            return self.manifest
        path = url.split("/api/", 1)[1]
        return self.batches[path]

    def request_raw(self, method: str, url: str) -> bytes:
        self.calls.append(("request_raw", method, url))
        if self.fail_on == "request_raw":
            raise SekaiTransportError("GET bundle failed")
        return self.bundles[url]

    def assetbundle_info_url(self, routing: VersionRouting) -> str:
        assert routing == ROUTING
        return "manifest-url"

    def assetbundle_url(self, routing: VersionRouting, bundle_name: str) -> str:  # noqa: ARG002
        return f"bundle:{bundle_name}"


def _pipeline(client: _FakeClient):
    s3 = _FakeS3()
    mirror = S3ObjectMirror(s3=s3, bucket="b", prefix="sekai")
    notifier = _FakeNotifier()
    return UpdatePipeline(client, mirror, notifier), s3, notifier


def test_first_cycle_uploads_everything_and_notifies():
    client = _FakeClient()
    client.split_paths = ["suitemasterfile/a", "suitemasterfile/b", 42]
    client.batches = {
        "suitemasterfile/a": {"musics": [{"id": 1}], "cards": [{"id": 2}]},
        "suitemasterfile/b": {"events": []},
    }
    client.manifest = {
        "version": "4.1.0.30",
        "bundles": {
            "music/jacket": {"bundleName": "music/jacket", "hash": "h-jacket"},
            "live/2dmode": {"bundleName": "live/2dmode", "hash": "h-live"},
        },
    }
    client.bundles = {"bundle:music/jacket": b"jacket", "bundle:live/2dmode": b"live"}
    pipeline, s3, notifier = _pipeline(client)

    out = pipeline.run_cycle()

    assert out == {"ok": True, "resources": 3, "uploaded": 6, "bundles": 2, "updated": True}
    assert client.calls[:3] == [
        ("refresh_app_version",),
        ("resolve_version_routing",),
        ("authenticate", "api.example.test"),
    ]
    assert ("request", "GET", "https://api.example.test/api/suitemasterfile/a") in client.calls
    assert sorted(s3.puts) == sorted(
        [
            "sekai/musics.json",
            "sekai/cards.json",
            "sekai/events.json",
            "sekai/assetbundleInfo.json",
            "sekai/assetbundle/music/jacket.unity3d",
            "sekai/assetbundle/live/2dmode.unity3d",
        ]
    )
    assert sorted(k for _, k in notifier.events) == sorted(s3.puts)
    assert all(b == "b" for b, _ in notifier.events)
    # Bundles are stored under their declared hash
    assert s3._store[("b", "sekai/assetbundle/live/2dmode.unity3d")]["Metadata"] == {"hash": "h-live"}


def test_second_identical_cycle_uploads_nothing():
    client = _FakeClient()
    client.split_paths = ["suitemasterfile/a"]
    client.batches = {"suitemasterfile/a": {"musics": [{"id": 1}]}}
    client.manifest = {"bundles": {"a": {"bundleName": "a", "hash": "ha"}}}
    client.bundles = {"bundle:a": b"aaa"}
    pipeline, s3, notifier = _pipeline(client)

    pipeline.run_cycle()
    puts_after_first = list(s3.puts)
    events_after_first = list(notifier.events)
    out = pipeline.run_cycle()

    assert out["uploaded"] == 0
    assert out["updated"] is False
    assert s3.puts == puts_after_first
    assert notifier.events == events_after_first


def test_unchanged_manifest_skips_bundle_diffing():
    client = _FakeClient()
    client.manifest = {"bundles": {"a": {"bundleName": "a", "hash": "new"}}}
    pipeline, s3, _ = _pipeline(client)
    s3.seed("sekai/assetbundleInfo.json", sha256_hex(dump_key_value_json(client.manifest)))

    out = pipeline.run_cycle()

    assert out["bundles"] == 0
    assert not any(c[0] == "request_raw" for c in client.calls)


def test_changed_manifest_only_downloads_bundles_with_new_hash():
    client = _FakeClient()
    client.manifest = {
        "bundles": {
            "same": {"bundleName": "same", "hash": "h1"},
            "changed": {"bundleName": "changed_file", "hash": "h2-new"},
            "nohash": {"bundleName": "nohash"},
        }
    }
    client.bundles = {"bundle:changed_file": b"changed", "bundle:nohash": b"plain"}
    pipeline, s3, notifier = _pipeline(client)
    s3.seed("sekai/assetbundle/same.unity3d", "h1")
    s3.seed("sekai/assetbundle/changed.unity3d", "h2-old")

    out = pipeline.run_cycle()

    downloaded = [c[2] for c in client.calls if c[0] == "request_raw"]
    assert downloaded == ["bundle:changed_file", "bundle:nohash"]
    assert out["bundles"] == 2
    assert s3._store[("b", "sekai/assetbundle/changed.unity3d")]["Body"] == b"changed"
    assert s3._store[("b", "sekai/assetbundle/nohash.unity3d")]["Metadata"] == {"hash": sha256_hex(b"plain")}
    assert ("b", "sekai/assetbundle/same.unity3d") not in notifier.events


def test_overlapping_trigger_is_dropped_without_network_calls():
    client = _FakeClient()
    client.block = threading.Event()
    pipeline, _, _ = _pipeline(client)

    worker = threading.Thread(target=pipeline.run_cycle)
    worker.start()
    assert client.entered.wait(timeout=5)
    calls_before = list(client.calls)

    out = pipeline.run_cycle()

    assert out["skipped"] is True
    assert client.calls == calls_before
    client.block.set()
    worker.join(timeout=5)
    assert pipeline.running is False


def test_error_aborts_cycle_and_releases_guard():
    client = _FakeClient()
    client.fail_on = "authenticate"
    pipeline, s3, notifier = _pipeline(client)

    with pytest.raises(SekaiMaintenanceError):
        pipeline.run_cycle()

    assert pipeline.running is False
    assert s3.puts == []
    assert notifier.events == []

    client.fail_on = None
    out = pipeline.run_cycle()
    assert out["ok"] is True


def test_failed_bundle_download_is_retried_next_cycle():
    client = _FakeClient()
    client.manifest = {"bundles": {"a": {"bundleName": "a", "hash": "ha"}}}
    client.bundles = {"bundle:a": b"aaa"}
    client.fail_on = "request_raw"
    pipeline, s3, notifier = _pipeline(client)

    with pytest.raises(SekaiTransportError):
        pipeline.run_cycle()

    # Manifest is only stored once every changed bundle made it
    assert s3.puts == []
    assert notifier.events == []

    client.fail_on = None
    out = pipeline.run_cycle()

    assert out["bundles"] == 1
    assert ("b", "sekai/assetbundle/a.unity3d") in s3._store
    assert s3.puts == ["sekai/assetbundle/a.unity3d", "sekai/assetbundleInfo.json"]

    # Now everything matches: nothing is downloaded again
    client.calls.clear()
    out = pipeline.run_cycle()
    assert out["uploaded"] == 0
    assert not any(c[0] == "request_raw" for c in client.calls)
