"""
Kubernetes API access: object reads and writes, pod exec, and events
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.stream import stream
from urllib3.exceptions import HTTPError

from errors import PodExecError, ReconcileCancelled, ReconcileContext
from settings import Config

logger = logging.getLogger("postgres-operator.kube")

APPLY_PATCH = "application/apply-patch+yaml"
MERGE_PATCH = "application/merge-patch+json"


def is_not_found(e: ApiException) -> bool:
    return e.status == 404


def is_retryable(e: ApiException) -> bool:
    return e.status == 429 or (e.status or 0) >= 500


class KubernetesClient:
    """Handles all Kubernetes API interactions"""

    def __init__(self):
        try:
            config.load_incluster_config()
        except config.ConfigException:
            logger.warning("Failed to load in-cluster config, trying local kubeconfig")
            config.load_kube_config()

        self.api_client = client.ApiClient()
        self.v1 = client.CoreV1Api(self.api_client)
        self.apps = client.AppsV1Api(self.api_client)
        self.custom = client.CustomObjectsApi(self.api_client)

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _to_dict(self, obj) -> dict:
        if isinstance(obj, dict):
            return obj
        return self.api_client.sanitize_for_serialization(obj)

    def _read(self, ctx: ReconcileContext, description: str, fn, *args, **kwargs):
        """
        Call a read API with exponential backoff on throttling and server errors

        Not-found and other client errors are raised immediately. Nothing is
        retried once ctx is done.
        """
        attempt = 0
        while True:
            ctx.check()
            try:
                return fn(*args, _request_timeout=ctx.remaining(), **kwargs)
            except ApiException as e:
                if not is_retryable(e) or attempt + 1 >= Config.MAX_RETRIES:
                    raise
                sleep_time = Config.RETRY_BACKOFF_BASE ** attempt
                logger.warning(f"Error reading {description} (attempt {attempt + 1}/{Config.MAX_RETRIES}), "
                               f"retrying in {sleep_time}s: {e.status} {e.reason}")
                ctx.sleep(sleep_time)
                attempt += 1

    # ------------------------------------------------------------------
    # PostgresCluster
    # ------------------------------------------------------------------

    def list_clusters(self, ctx: ReconcileContext, namespace: str) -> List[dict]:
        result = self._read(ctx, "postgresclusters", self.custom.list_namespaced_custom_object,
                            Config.GROUP, Config.VERSION, namespace, Config.PLURAL)
        return result.get("items", [])

    def patch_cluster_status(self, ctx: ReconcileContext, cluster, status: dict):
        ctx.check()
        self.custom.patch_namespaced_custom_object_status(
            Config.GROUP, Config.VERSION, cluster.namespace, Config.PLURAL, cluster.name,
            {"status": status},
            _content_type=MERGE_PATCH,
            _request_timeout=ctx.remaining(),
        )

    # ------------------------------------------------------------------
    # Objects
    # ------------------------------------------------------------------

    def list_secrets(self, ctx: ReconcileContext, namespace: str, selector: str) -> List[dict]:
        result = self._read(ctx, "secrets", self.v1.list_namespaced_secret,
                            namespace, label_selector=selector)
        return [self._to_dict(s) for s in result.items]

    def list_pods(self, ctx: ReconcileContext, namespace: str, selector: str) -> List[dict]:
        result = self._read(ctx, "pods", self.v1.list_namespaced_pod,
                            namespace, label_selector=selector)
        return [self._to_dict(p) for p in result.items]

    def list_statefulsets(self, ctx: ReconcileContext, namespace: str, selector: str) -> List[dict]:
        result = self._read(ctx, "statefulsets", self.apps.list_namespaced_stateful_set,
                            namespace, label_selector=selector)
        return [self._to_dict(s) for s in result.items]

    def get_persistent_volume_claim(self, ctx: ReconcileContext, namespace: str,
                                    name: str) -> Optional[dict]:
        """Return the claim, or None when it does not exist"""
        try:
            pvc = self._read(ctx, f"pvc {name}", self.v1.read_namespaced_persistent_volume_claim,
                             name, namespace)
        except ApiException as e:
            if is_not_found(e):
                return None
            raise
        return self._to_dict(pvc)

    def apply(self, ctx: ReconcileContext, manifest: dict) -> dict:
        """Create or update manifest with server-side apply"""
        ctx.check()
        kind = manifest["kind"]
        name = manifest["metadata"]["name"]
        namespace = manifest["metadata"]["namespace"]
        patch = {
            "Secret": self.v1.patch_namespaced_secret,
            "PersistentVolumeClaim": self.v1.patch_namespaced_persistent_volume_claim,
        }[kind]
        result = patch(name, namespace, manifest,
                       field_manager=Config.FIELD_MANAGER, force=True,
                       _content_type=APPLY_PATCH,
                       _request_timeout=ctx.remaining())
        logger.debug(f"Applied {kind} {namespace}/{name}")
        return self._to_dict(result)

    def delete(self, ctx: ReconcileContext, obj: dict):
        """
        Delete obj if it still has the same UID. Already-deleted objects are
        not an error.
        """
        ctx.check()
        kind = obj["kind"]
        metadata = obj["metadata"]
        delete = {
            "Secret": self.v1.delete_namespaced_secret,
            "PersistentVolumeClaim": self.v1.delete_namespaced_persistent_volume_claim,
        }[kind]
        body = {"preconditions": {"uid": metadata["uid"]}} if metadata.get("uid") else None
        try:
            delete(metadata["name"], metadata["namespace"], body=body,
                   _request_timeout=ctx.remaining())
        except ApiException as e:
            if not is_not_found(e):
                raise
        logger.debug(f"Deleted {kind} {metadata['namespace']}/{metadata['name']}")

    # ------------------------------------------------------------------
    # Exec
    # ------------------------------------------------------------------

    def pod_exec(self, ctx: ReconcileContext, namespace: str, pod: str, container: str,
                 command: List[str], stdin: Optional[str] = None) -> Tuple[str, str]:
        """
        Run command in container and return its stdout and stderr

        The exec websocket cannot signal end of input, so the command reads
        exactly the number of bytes written to stdin and no more.
        """
        ctx.check()
        data = None
        if stdin is not None:
            data = stdin.encode("utf-8")
            command = ["bash", "-ceu", "--", 'head -c "$1" | "${@:2}"', "-", str(len(data))] + list(command)

        resp = stream(
            self.v1.connect_get_namespaced_pod_exec,
            pod,
            namespace,
            container=container,
            command=command,
            stdin=data is not None,
            stdout=True,
            stderr=True,
            tty=False,
            _preload_content=False,
        )
        try:
            if data is not None:
                resp.write_stdin(stdin)
            resp.run_forever(timeout=ctx.remaining())
            if resp.is_open():
                raise ReconcileCancelled(f"exec in pod {pod} did not finish before the deadline")
            stdout = resp.read_stdout() or ""
            stderr = resp.read_stderr() or ""
            code = resp.returncode
        finally:
            resp.close()

        if code:
            raise PodExecError(pod, command, code, stderr)
        return stdout, stderr


class EventRecorder:
    """Best-effort warning events attached to a PostgresCluster"""

    def __init__(self, kube: KubernetesClient):
        self.kube = kube

    def warn(self, cluster, reason: str, message: str):
        now = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        body = {
            "metadata": {"generateName": f"{cluster.name}.", "namespace": cluster.namespace},
            "involvedObject": cluster.object_reference(),
            "reason": reason,
            "message": message,
            "type": "Warning",
            "source": {"component": Config.EVENT_SOURCE},
            "firstTimestamp": now,
            "lastTimestamp": now,
            "count": 1,
        }
        logger.warning(f"{cluster.namespace}/{cluster.name}: {reason}: {message}")
        try:
            self.kube.v1.create_namespaced_event(cluster.namespace, body)
        except (ApiException, HTTPError) as e:
            logger.error(f"Failed to record event {reason} for {cluster.name}: {e}")
