"""
PostgresCluster Reconciliation Controller for Kubernetes

This controller drives running PostgreSQL clusters toward the state declared
in PostgresCluster custom resources.

Features:
- Observation of live instances and their Patroni role
- User Secrets with generated passwords and SCRAM verifiers
- Databases and users applied once per distinct desired state
- Data and WAL volume claims, with a live check before a WAL claim is removed
- Exponential backoff retry logic on API reads
- Structured logging with severity levels
- Dry-run mode support
- Prometheus metrics exposure

A single reconcile of a cluster must never run concurrently with another
reconcile of the same cluster; the loop below reconciles clusters one at a
time.
"""

import sys
import time
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import yaml
from kubernetes.client.rest import ApiException

import naming
from cluster_models import PostgresCluster, ReconcileResult, cluster_documents
from errors import ReconcileContext, ReconcileError
from kube import EventRecorder, KubernetesClient
from logs import BLUE, GREEN, RED, WHITE, RESET, logger, setup_logging, with_values
from observed import ObservedInstances, observe_instances
from settings import Config
from sql_reconciler import reconcile_postgres
from stats import Metrics, ReconciliationStats
from volumes import reconcile_instance_volumes


class PostgresClusterController:
    """
    Main controller for reconciling PostgresClusters
    """

    def __init__(self, kube=None, recorder=None, dry_run: bool = Config.DRY_RUN):
        self.kube = kube or KubernetesClient()
        self.recorder = recorder or EventRecorder(self.kube)
        self.dry_run = dry_run
        self.metrics = Metrics()
        # Status of clusters read from MANIFEST_FILE, which has no API object to patch
        self.manifest_status = {}
        logger.info("PostgresCluster Controller initialized")

    def observe(self, ctx: ReconcileContext, cluster: PostgresCluster) -> ObservedInstances:
        """Snapshot the StatefulSets and Pods of cluster"""
        selector = naming.as_selector(naming.cluster_instances(cluster.name))
        runners = self.kube.list_statefulsets(ctx, cluster.namespace, selector)
        pods = self.kube.list_pods(ctx, cluster.namespace, selector)
        return observe_instances(runners, pods)

    def reconcile_volumes(self, ctx: ReconcileContext, cluster: PostgresCluster,
                          instances: ObservedInstances, stats: ReconciliationStats):
        for instance_set in cluster.spec.instances:
            for instance in instances.in_set(instance_set.name):
                if instance.runner is None:
                    # Pods left behind by a removed StatefulSet get no claims
                    logger.debug(f"Instance {instance.name} has no StatefulSet; skipping volumes")
                    continue
                reconcile_instance_volumes(ctx, cluster, instance_set, instance.name, instance,
                                           self.kube, self.recorder,
                                           stats=stats, dry_run=self.dry_run)

    def persist_status(self, ctx: ReconcileContext, cluster: PostgresCluster,
                       result: ReconcileResult, from_manifest: bool = False):
        """Record revisions that were applied on the cluster status"""
        if not result.apply_to(cluster.status):
            return
        if from_manifest:
            self.manifest_status[(cluster.namespace, cluster.name)] = cluster.status
            return
        self.kube.patch_cluster_status(ctx, cluster, cluster.status.to_dict())
        logger.info(f"Recorded status of {cluster.name}: {cluster.status.to_dict()}")

    def reconcile(self, ctx: ReconcileContext, cluster: PostgresCluster,
                  stats: ReconciliationStats, from_manifest: bool = False) -> ReconcileResult:
        """
        One reconcile pass of cluster

        Observe instances, converge databases and users, then volumes.
        Revisions are recorded even when a later step fails or ctx expires.
        """
        log = with_values(logger, cluster=cluster.name)
        log.info("Reconciling PostgresCluster")

        instances = self.observe(ctx, cluster)
        result = ReconcileResult()
        try:
            reconcile_postgres(ctx, cluster, self.kube, self.recorder, instances, result,
                               stats=stats, dry_run=self.dry_run)
        finally:
            if not self.dry_run:
                self.persist_status(ReconcileContext(timeout=Config.STATUS_TIMEOUT), cluster,
                                    result, from_manifest=from_manifest)

        self.reconcile_volumes(ctx, cluster, instances, stats)
        stats.clusters_reconciled += 1
        return result

    def load_cluster_objects(self, ctx: ReconcileContext) -> List[dict]:
        """Unparsed PostgresCluster objects, from MANIFEST_FILE or the API"""
        if Config.MANIFEST_FILE:
            return cluster_documents(Path(Config.MANIFEST_FILE).read_text())
        return self.kube.list_clusters(ctx, Config.NAMESPACE)

    def parse_cluster(self, obj: dict) -> PostgresCluster:
        cluster = PostgresCluster.from_dict(obj)
        if Config.MANIFEST_FILE:
            saved = self.manifest_status.get((cluster.namespace, cluster.name))
            if saved is not None:
                cluster.status = saved
        return cluster

    def reconcile_all(self, stats: ReconciliationStats):
        """Reconcile every cluster once; a failing cluster does not stop the others"""
        ctx = ReconcileContext(timeout=Config.RECONCILE_TIMEOUT)
        try:
            objects = self.load_cluster_objects(ctx)
        except (ApiException, OSError, yaml.YAMLError, ReconcileError) as e:
            logger.error(f"Failed to load PostgresClusters, skipping reconciliation: {e}")
            stats.errors += 1
            return

        for obj in objects:
            metadata = obj.get("metadata") or {}
            key = f"{metadata.get('namespace', '')}/{metadata.get('name', '')}"
            cluster_ctx = ReconcileContext(timeout=Config.RECONCILE_TIMEOUT,
                                           cancelled=ctx.cancelled)
            try:
                cluster = self.parse_cluster(obj)
                self.reconcile(cluster_ctx, cluster, stats,
                               from_manifest=bool(Config.MANIFEST_FILE))
            except (ApiException, ReconcileError) as e:
                logger.error(f"{RED}Failed to reconcile {key}: {e}{RESET}")
                stats.errors += 1
            except Exception as e:
                logger.error(f"{RED}Unexpected error reconciling {key}: {e}{RESET}", exc_info=True)
                stats.errors += 1

    def run_reconciliation_loop(self):
        """
        Main control loop that runs continuously
        """
        logger.info(f"{GREEN}Controller started (DRY_RUN={self.dry_run}){RESET}")
        logger.info(f"Sync interval: {Config.SYNC_INTERVAL}s")

        while True:
            stats = ReconciliationStats(start_time=datetime.now())

            try:
                logger.info("=" * 60)
                logger.info("Starting reconciliation cycle")

                self.reconcile_all(stats)

                stats.end_time = datetime.now()
                self.metrics.record_reconciliation(stats)

                # Print summary
                logger.info("=" * 60)
                logger.info(f"{WHITE}Reconciliation Summary:{RESET}")
                logger.info(f"  • Clusters reconciled: {stats.clusters_reconciled}")
                logger.info(f"  • Secrets written: {stats.secrets_written}")
                logger.info(f"  • Secrets deleted: {stats.secrets_deleted}")
                logger.info(f"  • SQL applied: {stats.sql_applied}")
                logger.info(f"  • SQL skipped: {stats.sql_skipped}")
                logger.info(f"  • Deferred: {stats.deferred}")
                logger.info(f"  • WAL claims deleted: {stats.wal_volumes_deleted}")
                logger.info(f"  • WAL claims retained: {stats.wal_volumes_retained}")
                logger.info(f"  • Errors: {stats.errors}")
                logger.info(f"  • Duration: {stats.duration_seconds():.2f}s")
                logger.info("=" * 60)

            except Exception as e:
                logger.error(f"Unexpected error in reconciliation loop: {e}", exc_info=True)
                stats.errors += 1
                stats.end_time = datetime.now()
                self.metrics.record_reconciliation(stats)

            # Sleep until next cycle
            logger.info(f"{BLUE}Sleeping for {Config.SYNC_INTERVAL}s...{RESET}")
            time.sleep(Config.SYNC_INTERVAL)

    def cleanup(self):
        """Cleanup resources"""
        logger.info("Shutting down controller...")
        api_client = getattr(self.kube, "api_client", None)
        if api_client is not None:
            api_client.close()


# ============================================================================
# MAIN ENTRY POINT
# ============================================================================

def main():
    """Main entry point"""
    setup_logging(Config.LOG_LEVEL)
    controller: Optional[PostgresClusterController] = None
    try:
        controller = PostgresClusterController()
        controller.run_reconciliation_loop()
    except KeyboardInterrupt:
        logger.info("Received interrupt signal, shutting down gracefully...")
    except Exception as e:
        logger.critical(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)
    finally:
        if controller:
            controller.cleanup()


if __name__ == "__main__":
    main()
