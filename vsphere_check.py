import argparse
import json
import logging
import sys
from datetime import datetime, timezone
from typing import List

from pydantic import BaseModel

from check_errors import CheckError, ConfigError
from cloud_config import load_settings, parse_cloud_config, read_cloud_config_file
from cluster_client import VSPHERE_PLATFORM_TYPE, KubeClusterClient, load_kube_config
from path_escape import InProcessEscaper, SystemdEscaper
from volume_checks import ValidatedDatastoreSet
from vsphere_checks import CheckResult, run_all_checks
from vsphere_session import connect_vsphere

logger = logging.getLogger(__name__)

DEFAULT_SECRET_NAMESPACE = "kube-system"


class CheckReport(BaseModel):
    started_at: datetime
    duration_seconds: float
    passed: bool
    results: List[CheckResult]


def load_vsphere_config(cluster, settings):
    """Read the cloud-provider config from a file, or from the cluster when no file is set."""
    if settings.vmware_config_path:
        return read_cloud_config_file(settings.vmware_config_path)

    logger.debug("Trying to get VMware config from the cluster")
    infra = cluster.get_infrastructure()
    if infra.platform_type != VSPHERE_PLATFORM_TYPE:
        raise ConfigError(f"unsupported platform: {infra.platform_type}")
    if not infra.cloud_config_name or not infra.cloud_config_key:
        raise ConfigError("Infrastructure cluster does not reference a cloud-provider config")
    namespace = settings.cloud_config_namespace
    data = cluster.get_config_map(namespace, infra.cloud_config_name)
    if infra.cloud_config_key not in data:
        raise ConfigError(
            f"cluster config {namespace}/{infra.cloud_config_name} does not contain key {infra.cloud_config_key}"
        )
    logger.debug(f"Got ConfigMap {namespace}/{infra.cloud_config_name} with config:\n{data[infra.cloud_config_key]}")
    return parse_cloud_config(data[infra.cloud_config_key])


def get_credentials(cluster, config, settings):
    if config.secret_name:
        namespace = config.secret_namespace or DEFAULT_SECRET_NAMESPACE
        data = cluster.get_secret(namespace, config.secret_name)
        username = data.get(f"{config.server}.username")
        password = data.get(f"{config.server}.password")
        if not username or not password:
            raise ConfigError(f"Secret {namespace}/{config.secret_name} has no credentials for {config.server}")
        return username, password

    username = settings.vcenter_user or config.user
    password = settings.vcenter_password or config.password
    if not username or not password:
        raise ConfigError("no vCenter credentials: set VCENTER_USER and VCENTER_PASSWORD or a secret in the config")
    return username, password


def run_once(settings=None, cluster=None, connect=connect_vsphere, escaper=None) -> CheckReport:
    """Connect to the cluster and vCenter, then run every check once.

    Setup failures (config, credentials, connection) raise CheckError; check
    failures are reported in the returned CheckReport.
    """
    settings = settings or load_settings()
    if cluster is None:
        load_kube_config(settings.kubeconfig)
        cluster = KubeClusterClient(timeout=settings.kubernetes_timeout)

    config = load_vsphere_config(cluster, settings)
    username, password = get_credentials(cluster, config, settings)

    started_at = datetime.now(timezone.utc)
    with connect(config, username, password, timeout=settings.vmware_timeout) as session:
        results = run_all_checks(cluster, session, config, escaper=escaper, cache=ValidatedDatastoreSet())
    duration = (datetime.now(timezone.utc) - started_at).total_seconds()
    return CheckReport(
        started_at=started_at,
        duration_seconds=duration,
        passed=all(r.passed for r in results),
        results=results,
    )


def print_report(report, output="text", stream=None):
    stream = stream or sys.stdout
    if output == "json":
        stream.write(json.dumps(report.model_dump(mode="json"), indent=2) + "\n")
        return
    for result in report.results:
        if result.passed:
            stream.write(f"PASS  {result.name}\n")
        else:
            stream.write(f"FAIL  {result.name}: {result.message}\n")
    failed = sum(1 for r in report.results if not r.passed)
    stream.write(f"\n{len(report.results) - failed} passed, {failed} failed in {report.duration_seconds:.2f}s\n")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="Check that a cluster's vSphere cloud-provider configuration avoids known failures."
    )
    parser.add_argument(
        "--vmware-config",
        help="Path to the vSphere cloud-provider config. Downloaded from the cluster if omitted.",
    )
    parser.add_argument("--vmware-timeout", type=float, help="Timeout of each vSphere call, in seconds.")
    parser.add_argument("--kubernetes-timeout", type=float, help="Timeout of each Kubernetes call, in seconds.")
    parser.add_argument(
        "--systemd-escape", action="store_true", help="Escape paths with the systemd-escape binary."
    )
    parser.add_argument("--output", choices=["text", "json"], default="text")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log every checked item.")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        settings = load_settings()
        overrides = {
            "vmware_config_path": args.vmware_config,
            "vmware_timeout": args.vmware_timeout,
            "kubernetes_timeout": args.kubernetes_timeout,
        }
        settings = settings.model_copy(update={k: v for k, v in overrides.items() if v is not None})
        escaper = SystemdEscaper() if args.systemd_escape else InProcessEscaper()
        report = run_once(settings, escaper=escaper)
    except CheckError as e:
        logger.error(f"Setup failed: {e}")
        return 2

    for result in report.results:
        if not result.passed:
            logger.error(f"Check {result.name} failed: {result.message}")
    print_report(report, args.output)
    return 0 if report.passed else 1


if __name__ == "__main__":
    sys.exit(main())
