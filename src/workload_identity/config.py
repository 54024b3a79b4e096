"""Config file loading and auto-discovery for the operator.

Searches for ``workload-identity.yaml`` in the current directory, its
parents and ``/etc/workload-identity``, parses it, and resolves the relative ``kubeconfig``
and ``cert_dir`` paths against the config file's location.  Every field
can then be overridden with a ``WORKLOAD_IDENTITY_<FIELD>`` environment
variable (e.g. ``WORKLOAD_IDENTITY_WORKERS=4``).
"""

from __future__ import annotations

import dataclasses
import os
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from workload_identity.constants import DEFAULT_MEMBERSHIP_SECRET_NAMESPACE
from workload_identity.errors import ConfigurationError

CONFIG_FILENAME = "workload-identity.yaml"
CONFIG_MOUNT_DIR = Path("/etc/workload-identity")
ENV_PREFIX = "WORKLOAD_IDENTITY_"

_PATH_FIELDS = ("kubeconfig", "cert_dir")


@dataclass(frozen=True)
class OperatorConfig:
    """Parsed operator configuration."""

    config_path: Path | None = None
    kubeconfig: str | None = None
    context: str | None = None
    in_cluster: bool = False
    membership_secret_namespace: str = DEFAULT_MEMBERSHIP_SECRET_NAMESPACE
    workers: int = 1
    resync_period: float = 600.0
    control_plane_recheck: float = 15.0
    webhook_host: str = "0.0.0.0"
    webhook_port: int = 9443
    cert_dir: str = "/etc/webhook/certs"
    probe_port: int = 8081
    require_identity: bool = True
    federation_timeout: float = 300.0
    gkehub_transport: str = "rest"
    log_level: str = "INFO"

    def with_env(self, environ: Mapping[str, str] | None = None) -> OperatorConfig:
        """Return a copy with ``WORKLOAD_IDENTITY_*`` overrides applied."""
        env = os.environ if environ is None else environ
        overrides: dict[str, Any] = {}
        for fld in dataclasses.fields(self):
            if fld.name == "config_path":
                continue
            val = env.get(f"{ENV_PREFIX}{fld.name.upper()}")
            if val is None:
                continue
            overrides[fld.name] = _coerce(fld.name, fld.type, val)
        return dataclasses.replace(self, **overrides)


def _coerce(name: str, fld_type: Any, val: Any) -> Any:
    type_name = str(fld_type)
    try:
        if type_name == "bool":
            if isinstance(val, bool):
                return val
            return str(val).lower() in ("1", "true", "yes")
        if type_name == "int":
            return int(val)
        if type_name == "float":
            return float(val)
        if type_name == "float | None":
            return None if val in (None, "") else float(val)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"invalid value for {name}: {val!r}") from exc
    if val is None:
        return None
    return str(val)


def find_config(
    start: Path | None = None, mount_dirs: Iterable[Path] = (CONFIG_MOUNT_DIR,),
) -> Path | None:
    """First ``workload-identity.yaml`` in *start* (default ``cwd()``), its
    parents, or one of the *mount_dirs* a Deployment mounts the file into.
    """
    here = (start or Path.cwd()).resolve()
    for directory in (here, *here.parents, *mount_dirs):
        candidate = directory / CONFIG_FILENAME
        if candidate.is_file():
            return candidate
    return None


def load_config(
    path: str | Path | None = None,
    *,
    auto_discover: bool = True,
    environ: Mapping[str, str] | None = None,
) -> OperatorConfig:
    """Load the operator config.

    Resolution order:

    1. Explicit *path* (error if it doesn't exist).
    2. Auto-discover in parent directories, then the mounted config dir.
    3. An ``OperatorConfig`` with all defaults.

    Environment overrides are applied on top in every case.
    """
    config_path: Path | None = None

    if path is not None:
        config_path = Path(path).resolve()
        if not config_path.is_file():
            msg = f"Config file not found: {config_path}"
            raise FileNotFoundError(msg)
    elif auto_discover:
        config_path = find_config()

    config = OperatorConfig() if config_path is None else _parse_config(config_path)
    return config.with_env(environ)


def _parse_config(config_path: Path) -> OperatorConfig:
    """Read and parse a YAML config file, resolving relative paths."""
    text = config_path.read_text(encoding="utf-8")
    data = yaml.safe_load(text) or {}

    if not isinstance(data, dict):
        msg = f"Expected a YAML mapping in {config_path}, got {type(data).__name__}"
        raise ConfigurationError(msg)

    known = {fld.name: fld for fld in dataclasses.fields(OperatorConfig)}
    unknown = sorted(set(data) - set(known) - {"config_path"})
    if unknown:
        raise ConfigurationError(f"Unknown keys in {config_path}: {', '.join(unknown)}")

    base = config_path.parent
    kwargs: dict[str, Any] = {"config_path": config_path}
    for key, val in data.items():
        if key == "config_path":
            continue
        if key in _PATH_FIELDS and val is not None:
            kwargs[key] = str((base / str(val)).resolve())
        else:
            kwargs[key] = _coerce(key, known[key].type, val)
    return OperatorConfig(**kwargs)
