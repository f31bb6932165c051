"""
In-memory stand-ins for the Kubernetes API used by the tests
"""

import copy
import json
from typing import Callable, Dict, List, Optional, Tuple

import naming
from cluster_models import PostgresCluster, ClusterSpec, InstanceSetSpec, UserSpec
from errors import PodExecError


def _matches(obj: dict, selector: str) -> bool:
    labels = obj.get("metadata", {}).get("labels") or {}
    for term in filter(None, selector.split(",")):
        key, value = term.split("=", 1)
        if labels.get(key) != value:
            return False
    return True


class FakeKube:
    """Records every call in ``calls`` so tests can check ordering"""

    def __init__(self):
        self.objects: Dict[Tuple[str, str, str], dict] = {}
        self.pods: List[dict] = []
        self.statefulsets: List[dict] = []
        self.calls: List[tuple] = []
        self.status_patches: List[dict] = []
        # (pod, command, stdin) -> stdout; raise to simulate failure
        self.exec_handler: Callable = lambda pod, command, stdin: ""
        self.apply_error: Optional[Exception] = None
        self._uid = 0

    def add(self, obj: dict) -> dict:
        obj = copy.deepcopy(obj)
        metadata = obj["metadata"]
        if "uid" not in metadata:
            self._uid += 1
            metadata["uid"] = f"uid-{self._uid}"
        self.objects[(obj["kind"], metadata["namespace"], metadata["name"])] = obj
        return obj

    def get(self, kind: str, namespace: str, name: str) -> Optional[dict]:
        return self.objects.get((kind, namespace, name))

    def list_secrets(self, ctx, namespace, selector):
        self.calls.append(("list", "Secret"))
        found = [o for (k, ns, _), o in self.objects.items()
                 if k == "Secret" and ns == namespace and _matches(o, selector)]
        # The API omits "kind" on list items
        result = []
        for o in found:
            o = copy.deepcopy(o)
            o.pop("kind", None)
            result.append(o)
        return result

    def list_pods(self, ctx, namespace, selector):
        return [copy.deepcopy(p) for p in self.pods if _matches(p, selector)]

    def list_statefulsets(self, ctx, namespace, selector):
        return [copy.deepcopy(s) for s in self.statefulsets if _matches(s, selector)]

    def get_persistent_volume_claim(self, ctx, namespace, name):
        obj = self.get("PersistentVolumeClaim", namespace, name)
        return copy.deepcopy(obj) if obj else None

    def apply(self, ctx, manifest):
        ctx.check()
        if self.apply_error is not None:
            raise self.apply_error
        metadata = manifest["metadata"]
        self.calls.append(("apply", manifest["kind"], metadata["name"]))
        key = (manifest["kind"], metadata["namespace"], metadata["name"])
        existing = self.objects.get(key)
        obj = copy.deepcopy(manifest)
        obj["metadata"]["uid"] = existing["metadata"]["uid"] if existing else f"uid-{len(self.objects) + 100}"
        self.objects[key] = obj
        return obj

    def delete(self, ctx, obj):
        ctx.check()
        metadata = obj["metadata"]
        self.calls.append(("delete", obj["kind"], metadata["name"]))
        self.objects.pop((obj["kind"], metadata["namespace"], metadata["name"]), None)

    def pod_exec(self, ctx, namespace, pod, container, command, stdin=None):
        ctx.check()
        self.calls.append(("exec", pod, tuple(command)))
        out = self.exec_handler(pod, command, stdin)
        return out or "", ""

    def patch_cluster_status(self, ctx, cluster, status):
        ctx.check()
        self.status_patches.append(dict(status))

    def exec_calls(self) -> List[tuple]:
        return [c for c in self.calls if c[0] == "exec"]


class FakeRecorder:
    def __init__(self):
        self.events: List[Tuple[str, str, str]] = []

    def warn(self, cluster, reason, message):
        self.events.append((cluster.name, reason, message))


def failing_exec(pod, command, stdin):
    raise PodExecError(pod, command, 3, "ERROR: permission denied")


def make_cluster(name: str = "hippo", users=None, instances=None, **spec) -> PostgresCluster:
    return PostgresCluster(
        name=name,
        namespace="postgres",
        uid="cluster-uid",
        spec=ClusterSpec(users=users, instances=instances or [], **spec),
    )


def make_user(name: str, *databases: str) -> UserSpec:
    return UserSpec(name=name, databases=list(databases))


def make_instance_set(name: str = "00", wal: Optional[dict] = None) -> InstanceSetSpec:
    return InstanceSetSpec(
        name=name,
        data_volume_claim_spec={"accessModes": ["ReadWriteOnce"],
                                "resources": {"requests": {"storage": "1Gi"}}},
        wal_volume_claim_spec=wal,
    )


def make_pod(cluster: str, instance: str, instance_set: str = "00", role: Optional[str] = "master",
             running: bool = True, terminating: bool = False, container: str = naming.CONTAINER_DATABASE,
             name: Optional[str] = None) -> dict:
    annotations = {}
    if role is not None:
        annotations["status"] = json.dumps({"role": role, "state": "running"})
    metadata = {
        "name": name or f"{instance}-0",
        "namespace": "postgres",
        "labels": {naming.LABEL_CLUSTER: cluster,
                   naming.LABEL_INSTANCE: instance,
                   naming.LABEL_INSTANCE_SET: instance_set},
        "annotations": annotations,
    }
    if terminating:
        metadata["deletionTimestamp"] = "2024-01-01T00:00:00Z"
    state = {"running": {"startedAt": "2024-01-01T00:00:00Z"}} if running else {"waiting": {"reason": "CrashLoopBackOff"}}
    return {
        "metadata": metadata,
        "status": {"containerStatuses": [{"name": container, "state": state}]},
    }


def make_runner(cluster: str, instance: str, instance_set: str = "00") -> dict:
    """StatefulSet of one instance"""
    return {
        "metadata": {
            "name": instance,
            "namespace": "postgres",
            "labels": {naming.LABEL_CLUSTER: cluster,
                       naming.LABEL_INSTANCE: instance,
                       naming.LABEL_INSTANCE_SET: instance_set},
        },
    }
