"""
Read-only snapshot of the live members of a PostgresCluster

Each fact about an instance is a Tristate. UNKNOWN is never the same as
FALSE: an instance only qualifies for work when every fact it needs is known.
"""

import enum
import json
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

import naming


class Tristate(enum.Enum):
    UNKNOWN = "unknown"
    TRUE = "true"
    FALSE = "false"

    @classmethod
    def of(cls, value: bool) -> "Tristate":
        return cls.TRUE if value else cls.FALSE

    def is_true(self) -> bool:
        return self is Tristate.TRUE

    def is_false(self) -> bool:
        return self is Tristate.FALSE


# Patroni role values that accept writes
WRITABLE_ROLES = {"master", "primary"}


@dataclass
class Instance:
    """One member of the cluster: its StatefulSet and Pods"""
    name: str
    instance_set: str = ""
    runner: Optional[dict] = None
    pods: List[dict] = field(default_factory=list)

    def _single_pod(self) -> Optional[dict]:
        return self.pods[0] if len(self.pods) == 1 else None

    def is_terminating(self) -> Tristate:
        pod = self._single_pod()
        if pod is None:
            return Tristate.UNKNOWN
        return Tristate.of(pod.get("metadata", {}).get("deletionTimestamp") is not None)

    def is_writable(self) -> Tristate:
        """Read the role Patroni publishes in the "status" annotation"""
        pod = self._single_pod()
        if pod is None:
            return Tristate.UNKNOWN
        raw = (pod.get("metadata", {}).get("annotations") or {}).get("status")
        if not raw:
            return Tristate.UNKNOWN
        try:
            member = json.loads(raw)
        except ValueError:
            return Tristate.UNKNOWN
        if not isinstance(member, dict) or "role" not in member:
            return Tristate.UNKNOWN
        return Tristate.of(member["role"] in WRITABLE_ROLES)

    def is_running(self, container: str) -> Tristate:
        pod = self._single_pod()
        if pod is None:
            return Tristate.UNKNOWN
        status = pod.get("status") or {}
        for statuses in (status.get("containerStatuses"), status.get("initContainerStatuses")):
            for cs in statuses or []:
                if cs.get("name") == container:
                    return Tristate.of((cs.get("state") or {}).get("running") is not None)
        return Tristate.UNKNOWN

    def qualifies_as_target(self, container: str = naming.CONTAINER_DATABASE) -> bool:
        """Non-terminating, writable and running with a pod to exec into"""
        return (self.is_terminating().is_false()
                and self.is_writable().is_true()
                and self.is_running(container).is_true()
                and len(self.pods) > 0)


@dataclass
class ObservedInstances:
    by_name: Dict[str, Instance] = field(default_factory=dict)

    @property
    def for_cluster(self) -> List[Instance]:
        return list(self.by_name.values())

    def get(self, name: str) -> Optional[Instance]:
        return self.by_name.get(name)

    def in_set(self, set_name: str) -> List[Instance]:
        return sorted((i for i in self.by_name.values() if i.instance_set == set_name),
                      key=lambda i: i.name)


def _name(obj: dict) -> str:
    return obj.get("metadata", {}).get("name", "")


def _labels(obj: dict) -> Dict[str, str]:
    return obj.get("metadata", {}).get("labels") or {}


def observe_instances(runners: Iterable[dict], pods: Iterable[dict]) -> ObservedInstances:
    """
    Group StatefulSets and Pods by the instance label

    An instance may have a runner and no pods (scaled down, or being
    recreated) or pods whose runner is already gone.
    """
    observed = ObservedInstances()

    def instance_for(labels: Dict[str, str], fallback: str) -> Instance:
        name = labels.get(naming.LABEL_INSTANCE, fallback)
        if name not in observed.by_name:
            observed.by_name[name] = Instance(name=name,
                                              instance_set=labels.get(naming.LABEL_INSTANCE_SET, ""))
        return observed.by_name[name]

    for runner in runners:
        instance_for(_labels(runner), _name(runner)).runner = runner

    for pod in sorted(pods, key=_name):
        labels = _labels(pod)
        if naming.LABEL_INSTANCE not in labels:
            continue
        instance_for(labels, "").pods.append(pod)

    return observed


def find_execution_target(instances: ObservedInstances,
                          container: str = naming.CONTAINER_DATABASE) -> Optional[Instance]:
    """
    Return the instance that can execute SQL writing system catalogs

    Candidates are considered in name order so that the choice does not
    depend on listing order. The consensus layer is trusted to allow at most
    one writable member; when two report writable, the first by name wins.
    """
    for instance in sorted(instances.for_cluster, key=lambda i: i.name):
        if instance.qualifies_as_target(container):
            return instance
    return None
