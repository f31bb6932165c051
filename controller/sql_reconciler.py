"""
Databases and users inside PostgreSQL

Each concern is applied at most once per distinct desired state: the SQL it
would execute is hashed and compared with the revision recorded on the
cluster status before anything runs.
"""

import logging
from typing import Dict, List, Optional

import naming
from cluster_models import PostgresCluster, ReconcileResult, UserSpec
from credentials import MAX_IDENTIFIER_LENGTH, decode, reconcile_user_secrets
from errors import ReconcileContext
from executor import Executor, PodExecutor, apply_once
from logs import with_values
from observed import ObservedInstances, find_execution_target
from postgres import create_databases_in_postgresql, write_users_in_postgresql
from stats import ReconciliationStats

logger = logging.getLogger("postgres-operator.sql")


def primary_executor(kube, instances: ObservedInstances, log):
    """
    Return an executor for the instance that can write system catalogs, and
    a logger naming its pod; (None, log) when there is none
    """
    instance = find_execution_target(instances)
    if instance is None:
        return None, log
    pod = instance.pods[0]["metadata"]
    executor = PodExecutor(kube, pod.get("namespace", ""), pod["name"], naming.CONTAINER_DATABASE)
    return executor, with_values(log, pod=pod["name"])


def desired_databases(cluster: PostgresCluster, recorder) -> List[str]:
    """
    Sorted names of the databases that should exist

    When users are unspecified, one database matching the cluster name,
    provided the name is short enough.
    """
    databases = set()
    if cluster.spec.users is None:
        if len(cluster.name) > MAX_IDENTIFIER_LENGTH:
            recorder.warn(cluster, "InvalidDatabase",
                          f"spec.users[0].databases[0]: Invalid value: {cluster.name!r}: "
                          f"should be at most {MAX_IDENTIFIER_LENGTH} chars long")
        else:
            databases.add(cluster.name)
    else:
        for user in cluster.spec.users:
            databases.update(user.databases)
    return sorted(databases)


def reconcile_postgres_databases(ctx: ReconcileContext, cluster: PostgresCluster, kube, recorder,
                                 instances: ObservedInstances,
                                 stats: Optional[ReconciliationStats] = None,
                                 dry_run: bool = False,
                                 executor: Optional[Executor] = None) -> Optional[str]:
    """
    Create databases inside PostgreSQL

    Returns the database revision to record, or None when there is no
    instance to execute on.
    """
    stats = stats or ReconciliationStats()
    log = with_values(logger, cluster=cluster.name)
    if executor is None:
        executor, log = primary_executor(kube, instances, log)
    if executor is None:
        log.info("No writable instance is running; deferring databases")
        stats.deferred += 1
        return None

    databases = desired_databases(cluster, recorder)

    def create(ctx, exec_, log):
        create_databases_in_postgresql(ctx, exec_, databases, log)

    revision, applied = apply_once(ctx, create, executor, cluster.status.database_revision,
                                   log, dry_run=dry_run)
    if applied:
        stats.sql_applied += 1
    else:
        stats.sql_skipped += 1
    return revision


def reconcile_postgres_users_in_postgresql(ctx: ReconcileContext, cluster: PostgresCluster, kube,
                                           instances: ObservedInstances, users: List[UserSpec],
                                           secrets: Dict[str, dict],
                                           stats: Optional[ReconciliationStats] = None,
                                           dry_run: bool = False,
                                           executor: Optional[Executor] = None) -> Optional[str]:
    """
    Create users inside PostgreSQL and set their verifiers and database access

    The verifiers come from secrets as written, so the revision reflects what
    is actually stored.
    """
    stats = stats or ReconciliationStats()
    log = with_values(logger, cluster=cluster.name)
    if executor is None:
        executor, log = primary_executor(kube, instances, log)
    if executor is None:
        log.info("No writable instance is running; deferring users")
        stats.deferred += 1
        return None

    verifiers = {name: decode(secret, "verifier") for name, secret in secrets.items()}

    def write(ctx, exec_, log):
        write_users_in_postgresql(ctx, exec_, users, verifiers, log)

    revision, applied = apply_once(ctx, write, executor, cluster.status.users_revision,
                                   log, dry_run=dry_run)
    if applied:
        stats.sql_applied += 1
    else:
        stats.sql_skipped += 1
    return revision


def reconcile_postgres_users(ctx: ReconcileContext, cluster: PostgresCluster, kube, recorder,
                             instances: ObservedInstances,
                             stats: Optional[ReconciliationStats] = None,
                             dry_run: bool = False) -> Optional[str]:
    """Write user Secrets, then the users they describe"""
    users, secrets = reconcile_user_secrets(ctx, cluster, kube, recorder,
                                            stats=stats, dry_run=dry_run)
    return reconcile_postgres_users_in_postgresql(ctx, cluster, kube, instances, users, secrets,
                                                  stats=stats, dry_run=dry_run)


def reconcile_postgres(ctx: ReconcileContext, cluster: PostgresCluster, kube, recorder,
                       instances: ObservedInstances, result: ReconcileResult,
                       stats: Optional[ReconciliationStats] = None,
                       dry_run: bool = False) -> ReconcileResult:
    """
    Converge databases then users, filling result as each concern succeeds

    The caller records result on the cluster status even when a later
    concern raises, so revisions that were applied are never lost.
    """
    result.database_revision = reconcile_postgres_databases(
        ctx, cluster, kube, recorder, instances, stats=stats, dry_run=dry_run)
    result.users_revision = reconcile_postgres_users(
        ctx, cluster, kube, recorder, instances, stats=stats, dry_run=dry_run)
    return result
