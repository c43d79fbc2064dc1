import configparser
import logging
import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

from check_errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_CLOUD_CONFIG_NAMESPACE = "openshift-config"
TRUE_VALUES = ("1", "true", "yes", "on")


class VSphereConfig(BaseModel):
    """The parts of the vSphere cloud-provider config the checks need."""

    model_config = ConfigDict(frozen=True)

    server: str
    port: int = 443
    datacenter: str = ""
    default_datastore: str = ""
    folder: Optional[str] = None
    secret_name: Optional[str] = None
    secret_namespace: Optional[str] = None
    user: Optional[str] = None
    password: Optional[str] = Field(default=None, repr=False)
    insecure: bool = False


class Settings(BaseModel):
    vmware_config_path: Optional[str] = None
    vmware_timeout: float = DEFAULT_TIMEOUT_SECONDS
    kubernetes_timeout: float = DEFAULT_TIMEOUT_SECONDS
    kubeconfig: Optional[str] = None
    vcenter_user: Optional[str] = None
    vcenter_password: Optional[str] = Field(default=None, repr=False)
    cloud_config_namespace: str = DEFAULT_CLOUD_CONFIG_NAMESPACE


def _float_env(name, default):
    value = os.getenv(name)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        raise ConfigError(f"{name} must be a number of seconds, got {value!r}") from None


def load_settings(env_file=None) -> Settings:
    load_dotenv(env_file)
    return Settings(
        vmware_config_path=os.getenv("VMWARE_CONFIG") or None,
        vmware_timeout=_float_env("VMWARE_TIMEOUT", DEFAULT_TIMEOUT_SECONDS),
        kubernetes_timeout=_float_env("KUBERNETES_TIMEOUT", DEFAULT_TIMEOUT_SECONDS),
        kubeconfig=os.getenv("KUBECONFIG") or None,
        vcenter_user=os.getenv("VCENTER_USER") or None,
        vcenter_password=os.getenv("VCENTER_PASSWORD") or None,
        cloud_config_namespace=os.getenv("CLOUD_CONFIG_NAMESPACE") or DEFAULT_CLOUD_CONFIG_NAMESPACE,
    )


def _unquote(value):
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] == '"':
        return value[1:-1]
    return value


def _section(parser, name):
    for section in parser.sections():
        if section.lower() == name.lower():
            return {key: _unquote(value) for key, value in parser.items(section)}
    return {}


def _virtual_centers(parser):
    centers = {}
    for section in parser.sections():
        kind, _, subsection = section.partition(" ")
        if kind.lower() == "virtualcenter" and subsection:
            centers[_unquote(subsection)] = {key: _unquote(value) for key, value in parser.items(section)}
    return centers


def parse_cloud_config(data) -> VSphereConfig:
    """Parse the INI style config of the in-tree vSphere cloud provider."""
    parser = configparser.ConfigParser(interpolation=None, strict=False)
    try:
        parser.read_string(data)
    except configparser.Error as e:
        raise ConfigError(f"failed to parse config: {e}") from e

    global_cfg = _section(parser, "Global")
    workspace = _section(parser, "Workspace")
    server = workspace.get("server")
    if not server:
        raise ConfigError("failed to parse config: [Workspace] server is not set")

    vcenter = _virtual_centers(parser).get(server, {})
    datacenter = workspace.get("datacenter") or vcenter.get("datacenters", "").split(",")[0].strip()
    port = vcenter.get("port") or global_cfg.get("port") or "443"
    try:
        port = int(port)
    except ValueError:
        raise ConfigError(f"failed to parse config: invalid port {port!r}") from None

    return VSphereConfig(
        server=server,
        port=port,
        datacenter=datacenter,
        default_datastore=workspace.get("default-datastore", ""),
        folder=workspace.get("folder"),
        secret_name=global_cfg.get("secret-name"),
        secret_namespace=global_cfg.get("secret-namespace"),
        user=vcenter.get("user") or global_cfg.get("user"),
        password=vcenter.get("password") or global_cfg.get("password"),
        insecure=global_cfg.get("insecure-flag", "").lower() in TRUE_VALUES,
    )


def read_cloud_config_file(path) -> VSphereConfig:
    logger.debug(f"Loading VMware config from {path}")
    try:
        with open(path, encoding="utf-8") as f:
            data = f.read()
    except OSError as e:
        raise ConfigError(f"failed to read VMware config {path}: {e}") from e
    return parse_cloud_config(data)
