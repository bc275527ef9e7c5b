from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional

from common.notifier import ChangeNotifier
from common.sekai import SekaiClient, VersionRouting
from state.s3_store import (
    BINARY_CONTENT_TYPE,
    JSON_CONTENT_TYPE,
    S3ObjectMirror,
    dump_key_value_json,
    sha256_hex,
)


logger = logging.getLogger(__name__)

ASSETBUNDLE_INFO_KEY = "assetbundleInfo"


@dataclass
class RemoteResource:
    key: str
    value: Any
    content_hash: str
    body: bytes

    @classmethod
    def from_value(cls, key: str, value: Any) -> "RemoteResource":
        body = dump_key_value_json(value)
        return cls(key=key, value=value, content_hash=sha256_hex(body), body=body)


@dataclass
class AssetBundle:
    name: str
    bundle_name: str
    data: bytes
    content_hash: str


class UpdatePipeline:
    """
    One sync cycle: re-auth, mirror key/value data, then changed asset bundles.

    `run_cycle` is guarded by a non-blocking lock. A trigger that arrives
    while a cycle is still running is dropped, not queued. The client's
    session is only consistent under that guarantee.
    """

    def __init__(
        self,
        client: SekaiClient,
        mirror: S3ObjectMirror,
        notifier: Optional[ChangeNotifier] = None,
    ) -> None:
        self._client = client
        self._mirror = mirror
        self._notifier = notifier or ChangeNotifier()
        self._guard = threading.Lock()

    @property
    def running(self) -> bool:
        return self._guard.locked()

    def run_cycle(self) -> Dict[str, Any]:
        if not self._guard.acquire(blocking=False):
            logger.info("Update cycle already running; trigger dropped")
            return {"ok": True, "skipped": True, "note": "update cycle already running"}
        try:
            return self._run()
        finally:
            self._guard.release()

    # --------------- Internal ---------------
    def _run(self) -> Dict[str, Any]:
        logger.info("Querying updates")
        client = self._client
        client.refresh_app_version()
        routing = client.resolve_version_routing()
        auth = client.authenticate(routing.domain)

        resources = 0
        uploaded = 0
        for path in auth.get("suiteMasterSplitPath") or []:
            if not isinstance(path, str):
                continue
            batch = client.request("GET", f"https://{routing.domain}/api/{path}")
            for key, value in batch.items():
                resources += 1
                if self._upload_resource(RemoteResource.from_value(key, value)):
                    uploaded += 1

        manifest = client.request("GET", client.assetbundle_info_url(routing))
        bundles = 0
        manifest_resource = RemoteResource.from_value(ASSETBUNDLE_INFO_KEY, manifest)
        manifest_key = self._mirror.key_value_key(ASSETBUNDLE_INFO_KEY)
        if self._mirror.head_hash(manifest_key) != manifest_resource.content_hash:
            # Manifest is stored last so a failed bundle keeps it marked as changed
            bundles = self._sync_bundles(routing, manifest)
            uploaded += bundles
            if self._upload_resource(manifest_resource):
                uploaded += 1

        updated = uploaded > 0
        if updated:
            logger.info("Found updates")
        return {
            "ok": True,
            "resources": resources,
            "uploaded": uploaded,
            "bundles": bundles,
            "updated": updated,
        }

    def _sync_bundles(self, routing: VersionRouting, manifest: Dict[str, Any]) -> int:
        entries = manifest.get("bundles")
        if not isinstance(entries, dict):
            return 0

        count = 0
        for name, meta in entries.items():
            if not isinstance(meta, dict):
                continue
            declared = meta.get("hash")
            object_key = self._mirror.assetbundle_key(name)
            if declared and self._mirror.head_hash(object_key) == declared:
                continue

            bundle_name = str(meta.get("bundleName") or name)
            data = self._client.request_raw("GET", self._client.assetbundle_url(routing, bundle_name))
            bundle = AssetBundle(
                name=name,
                bundle_name=bundle_name,
                data=data,
                content_hash=str(declared) if declared else sha256_hex(data),
            )
            if self._upload_bundle(bundle):
                count += 1
        return count

    def _upload_resource(self, resource: RemoteResource) -> bool:
        object_key = self._mirror.key_value_key(resource.key)
        changed = self._mirror.upload_if_changed(
            object_key,
            resource.body,
            content_type=JSON_CONTENT_TYPE,
            content_hash=resource.content_hash,
        )
        if changed:
            self._notifier.publish(self._mirror.bucket, object_key)
        return changed

    def _upload_bundle(self, bundle: AssetBundle) -> bool:
        object_key = self._mirror.assetbundle_key(bundle.name)
        changed = self._mirror.upload_if_changed(
            object_key,
            bundle.data,
            content_type=BINARY_CONTENT_TYPE,
            content_hash=bundle.content_hash,
        )
        if changed:
            self._notifier.publish(self._mirror.bucket, object_key)
        return changed
