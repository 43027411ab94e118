"""
Configuration loading for sdcadm.

Configuration lives in a YAML file. Service URLs may be given explicitly or
derived from the datacenter name and DNS domain, the same way the headnode
names its core services (``http://cnapi.<datacenter>.<domain>``).
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("/var/sdcadm/sdcadm.yaml")
CONFIG_ENV_VAR = "SDCADM_CONFIG"
SERVICE_NAMES = ("cnapi", "vmapi", "imgapi")


class ConfigError(Exception):
    """Raised when configuration cannot be found or is invalid."""
    pass


class ServiceEndpoint(BaseModel):
    """Location of one SDC API."""
    url: Optional[str] = None


class SdcAdmConfig(BaseModel):
    """sdcadm configuration model with validation."""
    model_config = ConfigDict(validate_assignment=True, extra="ignore")

    datacenter_name: Optional[str] = None
    dns_domain: Optional[str] = None
    cnapi: ServiceEndpoint = Field(default_factory=ServiceEndpoint)
    vmapi: ServiceEndpoint = Field(default_factory=ServiceEndpoint)
    imgapi: ServiceEndpoint = Field(default_factory=ServiceEndpoint)
    wrk_dir: Path = Path("/var/sdcadm/updates")
    request_timeout: float = Field(default=30, gt=0)

    @model_validator(mode="after")
    def _check_service_urls(self) -> "SdcAdmConfig":
        can_derive = bool(self.datacenter_name and self.dns_domain)
        missing = [
            name for name in SERVICE_NAMES if not getattr(self, name).url and not can_derive
        ]
        if missing:
            raise ValueError(
                f"no url configured for {', '.join(missing)} and no "
                "datacenter_name/dns_domain to derive one from"
            )
        return self

    def service_url(self, name: str) -> str:
        """Return the configured URL of a service, deriving it when not set."""
        endpoint: ServiceEndpoint = getattr(self, name)
        if endpoint.url:
            return endpoint.url
        return f"http://{name}.{self.datacenter_name}.{self.dns_domain}"


def _resolve_config_path(config_file: Optional[Union[str, Path]]) -> Optional[Path]:
    if config_file:
        return Path(config_file).expanduser()
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        return Path(env_path).expanduser()
    if DEFAULT_CONFIG_PATH.exists():
        return DEFAULT_CONFIG_PATH
    return None


def load_config(
    config_file: Optional[Union[str, Path]] = None, overrides: Optional[Dict[str, Any]] = None
) -> SdcAdmConfig:
    """
    Load the sdcadm configuration.

    Args:
        config_file: Explicit path to the YAML file. Falls back to
            ``$SDCADM_CONFIG`` and then ``/var/sdcadm/sdcadm.yaml``.
        overrides: Values applied on top of the file contents.

    Returns:
        SdcAdmConfig: the validated configuration

    Raises:
        ConfigError: if an explicitly named file is missing, the YAML is
            malformed, or the resulting configuration does not validate
    """
    data: Dict[str, Any] = {}
    path = _resolve_config_path(config_file)

    if path is not None:
        try:
            with path.open("r", encoding="utf-8") as handle:
                loaded = yaml.safe_load(handle) or {}
        except FileNotFoundError:
            raise ConfigError(f"Configuration file not found: {path}")
        except yaml.YAMLError as exc:
            raise ConfigError(f"Error parsing configuration file {path}: {exc}")
        if not isinstance(loaded, dict):
            raise ConfigError(f"Configuration file {path} must contain a mapping")
        data.update(loaded)
        logger.debug("Loaded configuration from %s", path)

    if overrides:
        data.update(overrides)

    try:
        return SdcAdmConfig(**data)
    except ValidationError as exc:
        source = path or "defaults"
        raise ConfigError(f"Invalid configuration ({source}): {exc}")
