"""
PersistentVolumeClaims for PostgreSQL data and WAL
"""

import io
import json
import logging
from typing import Optional

from kubernetes.client.rest import ApiException

import naming
from cluster_models import InstanceSetSpec, PostgresCluster
from errors import ReconcileContext
from executor import PodExecutor
from logs import YELLOW, RESET
from observed import Instance
from postgres import wal_directory
from stats import ReconciliationStats

logger = logging.getLogger("postgres-operator.volumes")

RESIZE_FORBIDDEN_MESSAGES = (
    "only dynamically provisioned pvc can be resized",
    "storageclass that provisions the pvc must support resize",
)


def handle_volume_claim_error(cluster: PostgresCluster, recorder, error: ApiException):
    """
    Turn storage changes the API refuses into a warning event

    Claims cannot shrink, and only some storage classes can grow. Those
    refusals need a human; retrying will not help. Other errors are raised.
    """
    try:
        status = json.loads(error.body or "{}")
    except ValueError:
        status = {}
    message = status.get("message", "") or str(error.reason or "")

    if error.status == 403 and any(m in message for m in RESIZE_FORBIDDEN_MESSAGES):
        recorder.warn(cluster, "PersistentVolumeError", message)
        return

    if error.status == 422:
        for cause in (status.get("details") or {}).get("causes") or []:
            if (cause.get("field") == "spec.resources.requests.storage"
                    and "less than previous value" in cause.get("message", "")):
                recorder.warn(cluster, "PersistentVolumeError", message)
                return

    raise error


def _volume_claim(cluster: PostgresCluster, instance_set: InstanceSetSpec, instance_name: str,
                  name: str, role: str, spec: dict) -> dict:
    return {
        "apiVersion": "v1",
        "kind": "PersistentVolumeClaim",
        "metadata": {
            "name": name,
            "namespace": cluster.namespace,
            "annotations": naming.merge(cluster.spec.metadata.annotations,
                                        instance_set.metadata.annotations),
            "labels": naming.merge(
                cluster.spec.metadata.labels,
                instance_set.metadata.labels,
                {
                    naming.LABEL_CLUSTER: cluster.name,
                    naming.LABEL_INSTANCE_SET: instance_set.name,
                    naming.LABEL_INSTANCE: instance_name,
                    naming.LABEL_ROLE: role,
                }),
            "ownerReferences": [naming.owner_reference(cluster)],
        },
        "spec": dict(spec),
    }


def _apply_claim(ctx, cluster, kube, recorder, pvc, stats, dry_run):
    if dry_run:
        logger.info(f"[DRY-RUN] Would apply PersistentVolumeClaim {pvc['metadata']['name']}")
        return
    try:
        kube.apply(ctx, pvc)
        stats.volumes_written += 1
    except ApiException as e:
        handle_volume_claim_error(cluster, recorder, e)


def reconcile_data_volume(ctx: ReconcileContext, cluster: PostgresCluster,
                          instance_set: InstanceSetSpec, instance_name: str, kube, recorder,
                          stats: Optional[ReconciliationStats] = None,
                          dry_run: bool = False) -> dict:
    """Write the claim for the PostgreSQL data volume of an instance"""
    stats = stats or ReconciliationStats()
    pvc = _volume_claim(cluster, instance_set, instance_name,
                        naming.instance_postgres_data_volume(instance_name),
                        naming.ROLE_POSTGRES_DATA, instance_set.data_volume_claim_spec)
    _apply_claim(ctx, cluster, kube, recorder, pvc, stats, dry_run)
    return pvc


def live_wal_directory(ctx: ReconcileContext, kube, observed: Optional[Instance]) -> Optional[str]:
    """
    Resolve the real WAL directory of a running instance through its
    filesystem, following symlinks

    None when the instance does not have exactly one running pod.
    """
    if observed is None or len(observed.pods) != 1:
        return None
    if not observed.is_running(naming.CONTAINER_DATABASE).is_true():
        return None

    pod = observed.pods[0]["metadata"]
    executor = PodExecutor(kube, pod.get("namespace", ""), pod["name"], naming.CONTAINER_DATABASE)
    stdout = io.StringIO()
    # $PGDATA is expected to match the configured "data_directory".
    executor.run(ctx, ["bash", "-ceu", "--", 'exec realpath "${PGDATA}/pg_wal"'], stdout=stdout)
    return stdout.getvalue().rstrip("\n")


def reconcile_wal_volume(ctx: ReconcileContext, cluster: PostgresCluster,
                         instance_set: InstanceSetSpec, instance_name: str,
                         observed: Optional[Instance], kube, recorder,
                         stats: Optional[ReconciliationStats] = None,
                         dry_run: bool = False) -> Optional[dict]:
    """
    Write or safely remove the claim for the WAL volume of an instance

    Without a WAL volume on the instance set, an existing claim is deleted only after
    the instance is seen writing WAL to its data volume. Until then the claim
    is returned untouched since it may still hold WAL.
    """
    stats = stats or ReconciliationStats()
    name = naming.instance_postgres_wal_volume(instance_name)

    if instance_set.wal_volume_claim_spec is not None:
        pvc = _volume_claim(cluster, instance_set, instance_name, name,
                            naming.ROLE_POSTGRES_WAL, instance_set.wal_volume_claim_spec)
        _apply_claim(ctx, cluster, kube, recorder, pvc, stats, dry_run)
        return pvc

    pvc = kube.get_persistent_volume_claim(ctx, cluster.namespace, name)
    if pvc is None:
        return None

    # Claims are protected by a finalizer until no pod uses them; one that is
    # already being deleted needs nothing more.
    if pvc.get("metadata", {}).get("deletionTimestamp") is not None:
        return None

    actual = live_wal_directory(ctx, kube, observed)
    expected = wal_directory(cluster, instance_set)
    if actual is None:
        logger.info(f"No running pod for instance {instance_name}; keeping WAL claim {name}")
        stats.deferred += 1
        return pvc
    if actual != expected:
        logger.info(f"{YELLOW}WAL of {instance_name} is at {actual}, not {expected}; "
                    f"keeping WAL claim {name}{RESET}")
        stats.wal_volumes_retained += 1
        return pvc

    if not naming.is_controlled_by(pvc, cluster):
        logger.warning(f"WAL claim {name} is not controlled by {cluster.name}; leaving it")
        return pvc
    if dry_run:
        logger.info(f"[DRY-RUN] Would delete WAL claim {name}")
        return pvc

    pvc.setdefault("kind", "PersistentVolumeClaim")
    kube.delete(ctx, pvc)
    stats.wal_volumes_deleted += 1
    logger.info(f"{YELLOW}Deleted WAL claim {name}; WAL is at {actual}{RESET}")
    return None


def reconcile_instance_volumes(ctx: ReconcileContext, cluster: PostgresCluster,
                               instance_set: InstanceSetSpec, instance_name: str,
                               observed: Optional[Instance], kube, recorder,
                               stats: Optional[ReconciliationStats] = None,
                               dry_run: bool = False):
    """Data volume first, then WAL"""
    reconcile_data_volume(ctx, cluster, instance_set, instance_name, kube, recorder,
                          stats=stats, dry_run=dry_run)
    reconcile_wal_volume(ctx, cluster, instance_set, instance_name, observed, kube, recorder,
                         stats=stats, dry_run=dry_run)
