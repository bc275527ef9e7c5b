from __future__ import annotations

from typing import Any, Dict, Mapping, Optional
from uuid import uuid4

from pydantic import BaseModel, Field


# Wire (camelCase) name -> model field
_VERSION_FIELDS = {
    "appVersion": "app_version",
    "appHash": "app_hash",
    "assetVersion": "asset_version",
    "dataVersion": "data_version",
    "assetHash": "asset_hash",
    "appVersionStatus": "app_version_status",
}


class AppVersionInfo(BaseModel):
    """
    Client version fields sent with every API request.

    Fields mirror the server's camelCase names (see `merge`). Values arrive
    from three places: the public version index, the `/api/system` listing
    of available app versions and the auth response. Each source is merged
    on top of the previous state, so the latest writer wins per field.

    Keys the model does not name are kept in `extra` so that a later source
    can still read them back (e.g. `multiPlayVersion`).
    """

    app_version: str = ""
    app_hash: str = ""
    asset_version: str = ""
    data_version: str = ""
    asset_hash: str = ""
    app_version_status: str = ""
    extra: Dict[str, str] = Field(default_factory=dict)

    def merge(self, values: Mapping[str, Any]) -> None:
        """Overwrite fields from a wire mapping; non-string values are ignored."""
        for k, v in values.items():
            if not isinstance(v, str):
                continue
            attr = _VERSION_FIELDS.get(k)
            if attr is None:
                self.extra[k] = v
            else:
                setattr(self, attr, v)

    def is_available(self) -> bool:
        return self.app_version_status == "available"


class ClientSession(BaseModel):
    """
    Mutable per-process session for the game API.

    Only `SekaiClient` writes to it. `session_token` and `cookie` are replaced
    whenever a response carries new values; `resources` accumulates the
    `updatedResources` maps returned by the server.
    """

    user_id: Optional[int] = None
    credential: str = ""
    session_token: str = ""
    cookie: str = ""
    install_id: str = Field(default_factory=lambda: str(uuid4()))
    kc: str = Field(default_factory=lambda: str(uuid4()))
    versions: AppVersionInfo = Field(default_factory=AppVersionInfo)
    resources: Dict[str, Any] = Field(default_factory=dict)

    def is_registered(self) -> bool:
        return self.user_id is not None and bool(self.credential)
