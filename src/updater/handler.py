from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional

import boto3
from botocore.exceptions import ClientError

from common.crypt import SekaiCipher
from common.notifier import ChangeNotifier
from common.sekai import SekaiClient
from state.s3_store import S3ObjectMirror
from updater.pipeline import UpdatePipeline


logger = logging.getLogger(__name__)

# Environment variable names expected
ENV_BUCKET = "MIRROR_BUCKET"
ENV_PREFIX = "MIRROR_PREFIX"  # optional; defaults to "sekai"
ENV_PARAM_PREFIX = "PARAM_PREFIX"
ENV_S3_ENDPOINT = "S3_ENDPOINT"
ENV_REGION = "AWS_REGION"
ENV_TOPIC_ARN = "NOTIFY_TOPIC_ARN"
ENV_LOG_LEVEL = "LOG_LEVEL"

# SSM parameter names under PARAM_PREFIX
PARAM_AES_KEY = "aes_key"
PARAM_AES_IV = "aes_iv"


@dataclass
class UpdaterConfig:
    bucket: str
    prefix: str
    aes_key: str
    aes_iv: str
    s3_endpoint: Optional[str] = None
    region_name: Optional[str] = None
    topic_arn: Optional[str] = None


def _getenv(name: str, default: Optional[str] = None) -> Optional[str]:
    val = os.environ.get(name)
    return val if val not in (None, "") else default


def _require(v: Optional[str], what: str) -> str:
    if not v:
        raise RuntimeError(f"Missing required configuration: {what}")
    return v


def _load_ssm_params(prefix: str, names: Iterable[str]) -> Dict[str, Optional[str]]:
    ssm = boto3.client("ssm")
    out: Dict[str, Optional[str]] = {k: None for k in names}
    for name in names:
        full = f"{prefix}{name}"
        try:
            resp = ssm.get_parameter(Name=full, WithDecryption=True)
        except ClientError as e:
            # Leave as None if parameter missing or access denied
            code = e.response.get("Error", {}).get("Code")
            if code in ("ParameterNotFound", "AccessDeniedException"):
                out[name] = None
                continue
            raise
        val = resp.get("Parameter", {}).get("Value")
        out[name] = val if isinstance(val, str) and val != "" else None
    return out


def load_config() -> UpdaterConfig:
    bucket = _require(_getenv(ENV_BUCKET), ENV_BUCKET)
    prefix = _require(_getenv(ENV_PARAM_PREFIX), ENV_PARAM_PREFIX)

    params = _load_ssm_params(prefix, [PARAM_AES_KEY, PARAM_AES_IV])
    return UpdaterConfig(
        bucket=bucket,
        prefix=_getenv(ENV_PREFIX, "sekai") or "sekai",
        aes_key=_require(params.get(PARAM_AES_KEY), f"{prefix}{PARAM_AES_KEY}"),
        aes_iv=_require(params.get(PARAM_AES_IV), f"{prefix}{PARAM_AES_IV}"),
        s3_endpoint=_getenv(ENV_S3_ENDPOINT),
        region_name=_getenv(ENV_REGION),
        topic_arn=_getenv(ENV_TOPIC_ARN),
    )


def bootstrap(config: UpdaterConfig) -> UpdatePipeline:
    """Register a fresh game account and wire up the update pipeline."""
    client = SekaiClient(SekaiCipher(config.aes_key, config.aes_iv))
    mirror = S3ObjectMirror(
        bucket=config.bucket,
        prefix=config.prefix,
        endpoint_url=config.s3_endpoint,
        region_name=config.region_name,
    )
    notifier = ChangeNotifier(config.topic_arn, region_name=config.region_name)

    client.refresh_signature()
    client.refresh_app_version()
    client.register_user()
    client.agree_rules()
    return UpdatePipeline(client, mirror, notifier)


# Session lives for the lifetime of the process (warm Lambda container)
_pipeline: Optional[UpdatePipeline] = None
_bootstrap_lock = threading.Lock()


def _get_pipeline() -> UpdatePipeline:
    global _pipeline
    with _bootstrap_lock:
        if _pipeline is None:
            _pipeline = bootstrap(load_config())
        return _pipeline


def run_once() -> Dict[str, Any]:
    # No-op under Lambda, which installs its own root handler
    logging.basicConfig(format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logging.getLogger().setLevel(_getenv(ENV_LOG_LEVEL, "INFO") or "INFO")
    pipeline = _get_pipeline()
    try:
        return pipeline.run_cycle()
    except Exception:
        logger.exception("Update cycle failed")
        raise


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    return run_once()
