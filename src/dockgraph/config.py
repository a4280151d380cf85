# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Loading of the run configuration from the properties file, CLI overrides and
the environment.
"""
import logging
import os
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from dotenv import dotenv_values
from pydantic import ValidationError

from .exceptions import ConfigurationError
from .MODELS.orchestration_config import OrchestrationConfig
from .UTILS.tags import split_tags

logger = logging.getLogger(__name__)

PROPERTIES_FILE = "dockgraph.properties"

TRUE_VALUES = ("true", "yes", "1", "on")
FALSE_VALUES = ("false", "no", "0", "off")


def _bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in TRUE_VALUES:
        return True
    if lowered in FALSE_VALUES:
        return False
    raise ValueError(f"expected a boolean, got '{value}'")


def _int(value: str) -> int:
    return int(value.strip())


def _float(value: str) -> float:
    return float(value.strip())


def _str(value: str) -> str:
    return value.strip()


def _list(value: str):
    return [v.strip() for v in value.split(",") if v.strip()]


def _mode(value: str) -> str:
    value = value.strip().lower()
    if value not in ("min", "max"):
        raise ValueError(f"expected 'min' or 'max', got '{value}'")
    return value


# Property key -> (location in the configuration, converter).
KEYS: Dict[str, Tuple[Tuple[str, ...], Callable[[str], Any]]] = {
    "repository": (("repository",), _str),
    "tags": (("tags",), split_tags),
    "platforms": (("platforms",), _list),
    "driver": (("driver",), _str),
    "push": (("push",), _bool),
    "load": (("load",), _bool),
    "no-cache": (("no_cache",), _bool),
    "pull": (("pull",), _bool),
    "primary-branch": (("primary_branch",), _str),
    "build.timeout": (("build_timeout",), _float),
    "test.timeout": (("test_timeout",), _float),
    "jobs": (("jobs",), _int),
    "builder.name": (("builder", "name"), _str),
    "builder.image": (("builder", "image"), _str),
    "builder.qemu-image": (("builder", "qemu_image"), _str),
    "cache.to-mode": (("cache_to_mode",), _str),
    "cache.registry.repository": (("cache", "registry", "repository"), _str),
    "cache.registry.tag-prefix": (("cache", "registry", "tag_prefix"), _str),
    "cache.registry.user": (("cache", "registry", "user"), _str),
    "cache.registry.password": (("cache", "registry", "password"), _str),
    "cache.registry.compression": (("cache", "registry", "compression"), _str),
    "cache.registry.compression-level": (("cache", "registry", "compression_level"), _int),
    "cache.local.directory": (("cache", "local", "directory"), _str),
    "cache.local.compression": (("cache", "local", "compression"), _str),
    "cache.local.compression-level": (("cache", "local", "compression_level"), _int),
    "cache.s3.region": (("cache", "s3", "region"), _str),
    "cache.s3.bucket": (("cache", "s3", "bucket"), _str),
    "cache.s3.endpoint-url": (("cache", "s3", "endpoint_url"), _str),
    "cache.s3.access-key-id": (("cache", "s3", "access_key_id"), _str),
    "cache.s3.secret-access-key": (("cache", "s3", "secret_access_key"), _str),
    "registry.domain": (("registry", "domain"), _str),
    "registry.port": (("registry", "port"), _int),
    "registry.bind-port": (("registry", "bind_port"), _bool),
    "registry.container": (("registry", "container"), _str),
    "registry.network": (("registry", "network"), _str),
    "registry.volume": (("registry", "volume"), _str),
    "registry.image": (("registry", "image"), _str),
    "registry.cert": (("registry", "cert"), _str),
    "registry.key": (("registry", "key"), _str),
    "registry.ca": (("registry", "ca"), _str),
    "registry.user": (("registry", "user"), _str),
    "registry.password": (("registry", "password"), _str),
    "scan.syft-image": (("scan", "syft_image"), _str),
    "scan.grype-image": (("scan", "grype_image"), _str),
    "scan.db-volume": (("scan", "db_volume"), _str),
    "scan.config": (("scan", "config"), _str),
    "scan.fail-on-severity": (("scan", "fail_on_severity"), _str),
    "scan.format": (("scan", "format"), _str),
    "scan.only-fixed": (("scan", "only_fixed"), _bool),
}

CACHE_BACKENDS = ("inline", "registry", "local", "gha", "s3")
for _backend in CACHE_BACKENDS:
    KEYS[f"cache.{_backend}.enable.import"] = (("cache", _backend, "enable_import"), _bool)
    KEYS[f"cache.{_backend}.enable.export"] = (("cache", _backend, "enable_export"), _bool)
    KEYS[f"cache.{_backend}.mode"] = (("cache", _backend, "mode"), _mode)

# Paths given relative to the project root.
RELATIVE_PATHS = (
    ("registry", "cert"),
    ("registry", "key"),
    ("registry", "ca"),
    ("scan", "config"),
    ("cache", "local", "directory"),
)


def parse_override(option: str) -> Tuple[str, str]:
    """
    Splits a `key=value` command line override.

    :raises ConfigurationError: No "=" in the option.
    """
    key, sep, value = option.partition("=")
    if not sep or not key.strip():
        raise ConfigurationError(f"Expected key=value, got '{option}'")
    return key.strip(), value


def read_properties(path: Path) -> Dict[str, str]:
    """Reads a properties file, an absent file has no properties."""
    if not path.exists():
        return {}
    return {k: v for k, v in dotenv_values(path).items() if v is not None}


def _set(data: Dict[str, Any], location: Tuple[str, ...], value: Any) -> None:
    for part in location[:-1]:
        data = data.setdefault(part, {})
    data[location[-1]] = value


def _get(data: Dict[str, Any], location: Tuple[str, ...]) -> Any:
    for part in location:
        if not isinstance(data, dict) or part not in data:
            return None
        data = data[part]
    return data


def _environment_defaults(env: Mapping[str, str]) -> Dict[str, Any]:
    data: Dict[str, Any] = {"is_ci": env.get("GITHUB_ACTIONS", "").lower() == "true"}
    if env.get("ACTIONS_CACHE_URL") or env.get("ACTIONS_RUNTIME_TOKEN"):
        _set(data, ("cache", "gha", "url"), env.get("ACTIONS_CACHE_URL", ""))
        _set(data, ("cache", "gha", "token"), env.get("ACTIONS_RUNTIME_TOKEN", ""))
    if env.get("DOCKGRAPH_REGISTRY_USER"):
        _set(data, ("registry", "user"), env["DOCKGRAPH_REGISTRY_USER"])
        _set(data, ("registry", "password"), env.get("DOCKGRAPH_REGISTRY_PASSWORD", ""))
    if env.get("AWS_ACCESS_KEY_ID"):
        _set(data, ("cache", "s3", "access_key_id"), env["AWS_ACCESS_KEY_ID"])
        _set(data, ("cache", "s3", "secret_access_key"), env.get("AWS_SECRET_ACCESS_KEY", ""))
    return data


def load_config(root: Path,
                overrides: Optional[Mapping[str, str]] = None,
                env: Optional[Mapping[str, str]] = None) -> OrchestrationConfig:
    """
    Builds the configuration for one run.

    Precedence, highest first: `overrides`, the properties file in `root`,
    the environment, built-in defaults.

    :param root: Project root directory.
    :param overrides: Values from `-P key=value` options.
    :param env: Environment to consult, os.environ when None.
    :return: Validated configuration.
    :raises ConfigurationError: A value is malformed or a combination is invalid.
    """
    root = Path(root).resolve()
    env = os.environ if env is None else env

    properties = read_properties(root / PROPERTIES_FILE)
    properties.update(overrides or {})

    data = _environment_defaults(env)
    data["root"] = root
    data["build_dir"] = root / "build"
    for key, value in properties.items():
        if key not in KEYS:
            logger.warning("Ignoring unknown property '%s'", key)
            continue
        location, convert = KEYS[key]
        try:
            _set(data, location, convert(value))
        except ValueError as e:
            raise ConfigurationError(f"Invalid value for '{key}': {e}") from e

    for location in RELATIVE_PATHS:
        value = _get(data, location)
        if value:
            _set(data, location, root / value)

    try:
        config = OrchestrationConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e

    registry_cache = config.cache.registry
    if not registry_cache.repository:
        registry_cache.repository = config.image_repository
    registry_cache.local = registry_cache.repository == config.registry.address
    if not config.cache.local.directory.is_absolute():
        config.cache.local.directory = root / config.cache.local.directory
    return config
