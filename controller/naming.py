"""
Names and labels of the objects generated for a PostgresCluster
"""

from typing import Dict, Optional

from settings import Config

LABEL_PREFIX = "postgres-operator.pgreconciler.dev"

LABEL_CLUSTER = LABEL_PREFIX + "/cluster"
LABEL_INSTANCE_SET = LABEL_PREFIX + "/instance-set"
LABEL_INSTANCE = LABEL_PREFIX + "/instance"
LABEL_ROLE = LABEL_PREFIX + "/role"
LABEL_POSTGRES_USER = LABEL_PREFIX + "/pguser"

ROLE_POSTGRES_USER = "pguser"
ROLE_POSTGRES_DATA = "pgdata"
ROLE_POSTGRES_WAL = "pgwal"

# Container running PostgreSQL and Patroni
CONTAINER_DATABASE = "database"


def merge(*maps: Optional[Dict[str, str]]) -> Dict[str, str]:
    """Merge label or annotation maps; later maps win"""
    merged = {}
    for m in maps:
        if m:
            merged.update(m)
    return merged


def as_selector(labels: Dict[str, str]) -> str:
    return ",".join(f"{k}={v}" for k, v in sorted(labels.items()))


def cluster_postgres_users(cluster_name: str) -> Dict[str, str]:
    """Labels matching every user Secret of a cluster"""
    return {LABEL_CLUSTER: cluster_name, LABEL_ROLE: ROLE_POSTGRES_USER}


def cluster_instances(cluster_name: str) -> Dict[str, str]:
    return {LABEL_CLUSTER: cluster_name}


def cluster_primary_service(cluster) -> str:
    return f"{cluster.name}-primary.{cluster.namespace}.svc"


def cluster_pgbouncer_service(cluster) -> str:
    return f"{cluster.name}-pgbouncer.{cluster.namespace}.svc"


def postgres_user_secret(cluster, username: str) -> str:
    return f"{cluster.name}-pguser-{username}"


def deprecated_postgres_user_secret(cluster) -> str:
    """Secret name used for the default user before per-user Secrets existed"""
    return f"{cluster.name}-pguser"


def instance_postgres_data_volume(instance_name: str) -> str:
    return f"{instance_name}-pgdata"


def instance_postgres_wal_volume(instance_name: str) -> str:
    return f"{instance_name}-pgwal"


def owner_reference(cluster) -> Dict:
    """Controller reference to cluster so that garbage collection removes its objects"""
    return {
        "apiVersion": f"{Config.GROUP}/{Config.VERSION}",
        "kind": Config.KIND,
        "name": cluster.name,
        "uid": cluster.uid,
        "controller": True,
        "blockOwnerDeletion": True,
    }


def is_controlled_by(obj: Dict, cluster) -> bool:
    for ref in (obj.get("metadata") or {}).get("ownerReferences") or []:
        if ref.get("controller") and ref.get("uid") == cluster.uid:
            return True
    return False
