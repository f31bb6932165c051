"""
Data models for the PostgresCluster custom resource
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

import yaml

from settings import Config


@dataclass
class Metadata:
    """Labels and annotations copied onto generated objects"""
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "Metadata":
        data = data or {}
        return cls(labels=dict(data.get("labels") or {}),
                   annotations=dict(data.get("annotations") or {}))


@dataclass
class UserSpec:
    """A PostgreSQL user and the databases it can access"""
    name: str
    databases: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "UserSpec":
        return cls(name=data["name"], databases=list(data.get("databases") or []))


@dataclass
class InstanceSetSpec:
    name: str
    data_volume_claim_spec: dict
    wal_volume_claim_spec: Optional[dict] = None
    metadata: Metadata = field(default_factory=Metadata)

    @classmethod
    def from_dict(cls, data: dict) -> "InstanceSetSpec":
        return cls(
            name=data.get("name", "00"),
            data_volume_claim_spec=dict(data.get("dataVolumeClaimSpec") or {}),
            wal_volume_claim_spec=data.get("walVolumeClaimSpec"),
            metadata=Metadata.from_dict(data.get("metadata")),
        )


@dataclass
class PGBouncerSpec:
    port: int = 5432


@dataclass
class ClusterSpec:
    port: int = Config.DEFAULT_PORT
    postgres_version: int = Config.DEFAULT_POSTGRES_VERSION
    # None means unspecified: a default user is derived from the cluster name
    users: Optional[List[UserSpec]] = None
    instances: List[InstanceSetSpec] = field(default_factory=list)
    pgbouncer: Optional[PGBouncerSpec] = None
    metadata: Metadata = field(default_factory=Metadata)

    @classmethod
    def from_dict(cls, data: dict) -> "ClusterSpec":
        users = data.get("users")
        pgbouncer = ((data.get("proxy") or {}).get("pgBouncer"))
        return cls(
            port=int(data.get("port", Config.DEFAULT_PORT)),
            postgres_version=int(data.get("postgresVersion", Config.DEFAULT_POSTGRES_VERSION)),
            users=None if users is None else [UserSpec.from_dict(u) for u in users],
            instances=[InstanceSetSpec.from_dict(i) for i in data.get("instances") or []],
            pgbouncer=None if pgbouncer is None else PGBouncerSpec(port=int(pgbouncer.get("port", 5432))),
            metadata=Metadata.from_dict(data.get("metadata")),
        )


@dataclass
class ClusterStatus:
    """Persisted revisions of the SQL most recently applied"""
    database_revision: str = ""
    users_revision: str = ""

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "ClusterStatus":
        data = data or {}
        return cls(database_revision=data.get("databaseRevision", ""),
                   users_revision=data.get("usersRevision", ""))

    def to_dict(self) -> dict:
        return {"databaseRevision": self.database_revision,
                "usersRevision": self.users_revision}


@dataclass
class PostgresCluster:
    name: str
    namespace: str
    uid: str = ""
    spec: ClusterSpec = field(default_factory=ClusterSpec)
    status: ClusterStatus = field(default_factory=ClusterStatus)

    @classmethod
    def from_dict(cls, obj: dict) -> "PostgresCluster":
        metadata = obj.get("metadata") or {}
        return cls(
            name=metadata["name"],
            namespace=metadata.get("namespace", Config.NAMESPACE),
            uid=metadata.get("uid", ""),
            spec=ClusterSpec.from_dict(obj.get("spec") or {}),
            status=ClusterStatus.from_dict(obj.get("status")),
        )

    def object_reference(self) -> dict:
        return {
            "apiVersion": f"{Config.GROUP}/{Config.VERSION}",
            "kind": Config.KIND,
            "name": self.name,
            "namespace": self.namespace,
            "uid": self.uid,
        }


@dataclass
class ReconcileResult:
    """Revisions to record on the cluster status once a pass finishes"""
    database_revision: Optional[str] = None
    users_revision: Optional[str] = None

    def apply_to(self, status: ClusterStatus) -> bool:
        """Copy set revisions onto status; return whether anything changed"""
        changed = False
        if self.database_revision is not None and self.database_revision != status.database_revision:
            status.database_revision = self.database_revision
            changed = True
        if self.users_revision is not None and self.users_revision != status.users_revision:
            status.users_revision = self.users_revision
            changed = True
        return changed


def cluster_documents(yaml_content: str) -> List[dict]:
    """
    PostgresCluster documents of a YAML manifest, unparsed

    Documents of any other kind are ignored.
    """
    return [doc for doc in yaml.safe_load_all(yaml_content or "")
            if isinstance(doc, dict) and doc.get("kind") == Config.KIND]


def load_clusters(yaml_content: str) -> List[PostgresCluster]:
    """Parse PostgresCluster documents from a YAML manifest"""
    return [PostgresCluster.from_dict(doc) for doc in cluster_documents(yaml_content)]
