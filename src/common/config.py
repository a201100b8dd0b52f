from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional


# Environment configuration
ENV_STATE_BUCKET = "STATE_BUCKET"
ENV_STATE_PREFIX = "STATE_PREFIX"  # optional key prefix inside the bucket
ENV_AUTH_PLUGIN = "AUTH_PLUGIN"  # fail | noop | basic
ENV_AUTH_BASIC_USERNAME = "AUTH_BASIC_USERNAME"
ENV_AUTH_BASIC_PASSWORD = "AUTH_BASIC_PASSWORD"
ENV_PARAM_PREFIX = "PARAM_PREFIX"  # optional SSM prefix for secrets
ENV_FERNET_KEY = "STATE_FERNET_KEY"
ENV_REGION = "AWS_REGION"
ENV_LOG_LEVEL = "LOG_LEVEL"

# SSM parameter names looked up under PARAM_PREFIX
SSM_PARAM_NAMES = ["auth_basic_username", "auth_basic_password", "fernet_key"]


def _env(name: str) -> Optional[str]:
    """Env var value, or None when unset or whitespace only."""
    val = os.environ.get(name)
    return val if val and val.strip() else None


def _require(value: Optional[str], env_name: str) -> str:
    if value is None or value == "":
        raise RuntimeError(f"{env_name} must be set")
    return value


def _load_ssm_params(
    prefix: str, names: Iterable[str], *, ssm: Optional[Any] = None
) -> Dict[str, Optional[str]]:
    """Fetch `prefix + name` for each name in one GetParameters call.

    Parameters listed under InvalidParameters (missing) come back as None;
    other SSM errors propagate so a misconfigured deploy fails at cold start.
    """
    names = list(names)
    if ssm is None:
        import boto3

        ssm = boto3.client("ssm")
    by_path = {f"{prefix}{n}": n for n in names}
    resp = ssm.get_parameters(Names=list(by_path), WithDecryption=True)
    found: Dict[str, Optional[str]] = dict.fromkeys(names)
    for param in resp.get("Parameters") or []:
        name = by_path.get(param.get("Name", ""))
        if name is not None:
            found[name] = param.get("Value") or None
    return found


@dataclass(frozen=True)
class Settings:
    """
    Process-wide configuration, resolved once per Lambda cold start.

    Secrets (basic auth credentials, Fernet key) can come from plain env vars
    or, when PARAM_PREFIX is set, from SSM Parameter Store; SSM values win.
    """

    bucket: str
    prefix: str = ""
    region: Optional[str] = None
    auth_plugin: str = "fail"
    basic_username: Optional[str] = None
    basic_password: Optional[str] = None
    fernet_key: Optional[str] = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        bucket = _require(_env(ENV_STATE_BUCKET), ENV_STATE_BUCKET)
        auth_plugin = (_env(ENV_AUTH_PLUGIN) or "fail").strip().lower()
        username = _env(ENV_AUTH_BASIC_USERNAME)
        password = _env(ENV_AUTH_BASIC_PASSWORD)
        fernet_key = _env(ENV_FERNET_KEY)

        param_prefix = _env(ENV_PARAM_PREFIX)
        if param_prefix:
            params = _load_ssm_params(param_prefix, SSM_PARAM_NAMES)
            username = params.get("auth_basic_username") or username
            password = params.get("auth_basic_password") or password
            fernet_key = params.get("fernet_key") or fernet_key

        if auth_plugin == "basic":
            username = _require(username, ENV_AUTH_BASIC_USERNAME)
            password = _require(password, ENV_AUTH_BASIC_PASSWORD)

        return cls(
            bucket=bucket,
            prefix=_env(ENV_STATE_PREFIX) or "",
            region=_env(ENV_REGION),
            auth_plugin=auth_plugin,
            basic_username=username,
            basic_password=password,
            fernet_key=fernet_key,
            log_level=(_env(ENV_LOG_LEVEL) or "INFO").upper(),
        )


__all__ = ["Settings", "SSM_PARAM_NAMES"]
