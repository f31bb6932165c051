#!/usr/bin/env python3
"""
Test script for the PostgresCluster Controller

This script verifies the controller without deploying to Kubernetes. The
Kubernetes API is replaced by an in-memory fake.
"""

import base64
import copy
import os
import sys
import tempfile
import time
from datetime import datetime
from unittest.mock import patch

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

MANIFEST = """
apiVersion: postgres-operator.pgreconciler.dev/v1beta1
kind: PostgresCluster
metadata:
  name: hippo
  namespace: postgres
  uid: cluster-uid
spec:
  postgresVersion: 16
  port: 5432
  users:
    - name: alice
      databases: [app]
  instances:
    - name: "00"
      dataVolumeClaimSpec:
        accessModes: [ReadWriteOnce]
        resources:
          requests:
            storage: 1Gi
---
apiVersion: v1
kind: ConfigMap
metadata:
  name: unrelated
"""


def make_controller(kube=None, dry_run=False):
    from controller import PostgresClusterController
    from fakes import FakeKube, FakeRecorder

    return PostgresClusterController(kube=kube or FakeKube(), recorder=FakeRecorder(),
                                     dry_run=dry_run)


def test_config():
    """Test configuration loading"""
    print("🧪 Testing Config...")

    from settings import Config

    assert Config.NAMESPACE == "postgres", "Default namespace should be 'postgres'"
    assert Config.SYNC_INTERVAL == 30, "Default sync interval should be 30"
    assert Config.MAX_RETRIES == 5, "Default max retries should be 5"
    assert Config.PLURAL == "postgresclusters"

    print("✅ Config tests passed!")


def test_load_clusters():
    print("\n🧪 Testing manifest parsing...")

    from cluster_models import load_clusters

    clusters = load_clusters(MANIFEST)
    assert len(clusters) == 1, "Only PostgresCluster documents are loaded"
    cluster = clusters[0]
    assert cluster.name == "hippo" and cluster.uid == "cluster-uid"
    assert cluster.spec.postgres_version == 16
    assert [(u.name, u.databases) for u in cluster.spec.users] == [("alice", ["app"])]
    assert cluster.spec.instances[0].name == "00"
    assert cluster.spec.instances[0].wal_volume_claim_spec is None
    assert cluster.spec.pgbouncer is None
    assert cluster.status.users_revision == ""

    unspecified = load_clusters(MANIFEST.replace("  users:\n    - name: alice\n      databases: [app]\n", ""))
    assert unspecified[0].spec.users is None, "Missing users means unspecified"

    print("✅ Manifest parsing tests passed!")


def test_reconciliation_stats():
    """Test statistics tracking"""
    print("\n🧪 Testing ReconciliationStats...")

    from stats import ReconciliationStats

    stats = ReconciliationStats(start_time=datetime.now())
    stats.sql_applied = 2
    stats.deferred = 1

    time.sleep(0.1)
    stats.end_time = datetime.now()

    duration = stats.duration_seconds()
    assert duration > 0, "Duration should be positive"
    assert duration < 1, "Duration should be less than 1 second"

    stats_dict = stats.to_dict()
    assert stats_dict['sql_applied'] == 2, "Should serialize correctly"

    print("✅ ReconciliationStats tests passed!")


def test_metrics():
    """Test metrics collection"""
    print("\n🧪 Testing Metrics...")

    from stats import Metrics, ReconciliationStats

    metrics = Metrics()
    stats = ReconciliationStats(
        start_time=datetime.now(),
        end_time=datetime.now(),
        clusters_reconciled=2,
        sql_applied=3,
        errors=1
    )

    initial_count = metrics.reconciliation_count
    metrics.record_reconciliation(stats)

    assert metrics.reconciliation_count == initial_count + 1, "Count should increment"
    assert metrics.sql_applied_count == 3, "Applies should be recorded"
    assert metrics.clusters_managed == 2
    assert metrics.error_count == 1, "Error count should be recorded"

    prom_output = metrics.export_prometheus()
    assert "postgrescluster_reconciliations_total 1" in prom_output
    assert "postgrescluster_sql_applied_total 3" in prom_output

    print("✅ Metrics tests passed!")


def test_reconcile_end_to_end():
    print("\n🧪 Testing a full reconcile pass...")

    from cluster_models import load_clusters
    from errors import ReconcileContext
    from fakes import FakeKube, make_pod, make_runner
    from stats import ReconciliationStats

    kube = FakeKube()
    kube.statefulsets.append(make_runner("hippo", "hippo-00-abcd"))
    kube.pods.append(make_pod("hippo", "hippo-00-abcd"))
    controller = make_controller(kube)
    cluster = load_clusters(MANIFEST)[0]
    stats = ReconciliationStats()

    result = controller.reconcile(ReconcileContext(), cluster, stats)

    assert result.database_revision and result.users_revision
    assert kube.status_patches == [cluster.status.to_dict()], "Status patched once"
    assert kube.get("Secret", "postgres", "hippo-pguser-alice") is not None
    assert kube.get("PersistentVolumeClaim", "postgres", "hippo-00-abcd-pgdata") is not None
    assert stats.sql_applied == 2 and stats.clusters_reconciled == 1

    # The next pass changes nothing
    kube.calls.clear()
    controller.reconcile(ReconcileContext(), cluster, stats)
    assert kube.exec_calls() == []
    assert len(kube.status_patches) == 1, "Unchanged status is not patched again"

    print("✅ Full reconcile tests passed!")


def test_applied_revision_survives_later_failure():
    from cluster_models import load_clusters
    from errors import PodExecError, ReconcileContext
    from fakes import FakeKube, make_pod
    from stats import ReconciliationStats

    kube = FakeKube()
    kube.pods.append(make_pod("hippo", "hippo-00-abcd"))

    def fail_users(pod, command, stdin):
        if "CREATE USER" in (stdin or ""):
            raise PodExecError(pod, command, 1, "boom")
        return ""

    kube.exec_handler = fail_users
    cluster = load_clusters(MANIFEST)[0]
    try:
        make_controller(kube).reconcile(ReconcileContext(), cluster, ReconciliationStats())
    except PodExecError:
        pass
    else:
        raise AssertionError("Users failure should propagate")

    assert cluster.status.database_revision, "Database revision recorded"
    assert cluster.status.users_revision == "", "Users revision not recorded"
    assert kube.status_patches == [cluster.status.to_dict()]


def test_applied_revision_survives_expired_deadline():
    """The pass deadline running out mid-SQL neither hides the error nor drops the status"""
    from cluster_models import load_clusters
    from errors import PodExecError, ReconcileContext
    from fakes import FakeKube, make_pod
    from stats import ReconciliationStats

    kube = FakeKube()
    kube.pods.append(make_pod("hippo", "hippo-00-abcd"))
    ctx = ReconcileContext()

    def expire_during_users(pod, command, stdin):
        if "CREATE USER" in (stdin or ""):
            ctx.cancel()
            raise PodExecError(pod, command, 2, "canceling statement due to user request")
        return ""

    kube.exec_handler = expire_during_users
    cluster = load_clusters(MANIFEST)[0]
    try:
        make_controller(kube).reconcile(ctx, cluster, ReconciliationStats())
    except PodExecError:
        pass
    else:
        raise AssertionError("The users failure should be the error raised")

    assert cluster.status.database_revision
    assert kube.status_patches == [cluster.status.to_dict()], "Status written after the deadline"


def test_volumes_need_a_statefulset():
    print("\n🧪 Testing volumes of instances without a StatefulSet...")

    from cluster_models import load_clusters
    from errors import ReconcileContext
    from fakes import FakeKube, make_pod, make_runner
    from stats import ReconciliationStats

    kube = FakeKube()
    kube.statefulsets.append(make_runner("hippo", "hippo-00-keep"))
    kube.pods.append(make_pod("hippo", "hippo-00-keep"))
    kube.pods.append(make_pod("hippo", "hippo-00-gone", role="replica", terminating=True))

    stats = ReconciliationStats()
    make_controller(kube).reconcile(ReconcileContext(), load_clusters(MANIFEST)[0], stats)

    assert kube.get("PersistentVolumeClaim", "postgres", "hippo-00-keep-pgdata") is not None
    assert kube.get("PersistentVolumeClaim", "postgres", "hippo-00-gone-pgdata") is None, \
        "No claim for an instance being removed"
    assert stats.volumes_written == 1

    print("✅ StatefulSet volume tests passed!")


def test_dry_run_mode():
    """Dry run computes revisions but changes nothing"""
    print("\n🧪 Testing dry-run mode...")

    from cluster_models import load_clusters
    from errors import ReconcileContext
    from fakes import FakeKube, make_pod
    from stats import ReconciliationStats

    kube = FakeKube()
    kube.pods.append(make_pod("hippo", "hippo-00-abcd"))
    cluster = load_clusters(MANIFEST)[0]
    make_controller(kube, dry_run=True).reconcile(ReconcileContext(), cluster, ReconciliationStats())

    assert [c for c in kube.calls if c[0] in ("apply", "delete", "exec")] == []
    assert kube.status_patches == []
    assert cluster.status.database_revision == ""

    print("✅ Dry-run mode tests passed!")


def test_reconcile_all_from_manifest():
    print("\n🧪 Testing reconcile_all from a manifest file...")

    from fakes import FakeKube, make_pod
    from settings import Config
    from stats import ReconciliationStats

    kube = FakeKube()
    kube.pods.append(make_pod("hippo", "hippo-00-abcd"))
    controller = make_controller(kube)

    with tempfile.NamedTemporaryFile(mode='w', delete=False, suffix='.yaml') as f:
        f.write(MANIFEST)
        manifest_file = f.name

    try:
        with patch.object(Config, "MANIFEST_FILE", manifest_file):
            stats = ReconciliationStats()
            controller.reconcile_all(stats)
            assert stats.clusters_reconciled == 1 and stats.errors == 0
            assert kube.status_patches == [], "Manifest clusters have no API status"

            kube.calls.clear()
            controller.reconcile_all(stats)
            assert kube.exec_calls() == [], "Revisions are remembered between cycles"
    finally:
        os.unlink(manifest_file)

    print("✅ reconcile_all tests passed!")


def test_reconcile_all_counts_failures():
    from cluster_models import cluster_documents
    from errors import ReconcileError
    from stats import ReconciliationStats

    controller = make_controller()
    objects = cluster_documents(MANIFEST) * 2
    with patch.object(controller, "load_cluster_objects", return_value=objects), \
         patch.object(controller, "reconcile", side_effect=[ReconcileError("boom"), None]) as reconcile:
        stats = ReconciliationStats()
        controller.reconcile_all(stats)

    assert reconcile.call_count == 2, "A failing cluster does not stop the others"
    assert stats.errors == 1


def test_malformed_clusters_do_not_stop_others():
    print("\n🧪 Testing malformed clusters...")

    import naming
    from cluster_models import cluster_documents
    from credentials import encode
    from fakes import FakeKube, make_pod
    from stats import ReconciliationStats

    good = cluster_documents(MANIFEST)[0]

    bad_port = copy.deepcopy(good)
    bad_port["metadata"]["name"] = "badport"
    bad_port["spec"]["port"] = "abc"

    bad_secret = copy.deepcopy(good)
    bad_secret["metadata"]["name"] = "badsecret"

    kube = FakeKube()
    kube.pods.append(make_pod("hippo", "hippo-00-abcd"))
    kube.add({
        "kind": "Secret",
        "metadata": {
            "name": "badsecret-pguser-alice",
            "namespace": "postgres",
            "labels": {naming.LABEL_CLUSTER: "badsecret",
                       naming.LABEL_ROLE: naming.ROLE_POSTGRES_USER,
                       naming.LABEL_POSTGRES_USER: "alice"},
        },
        "data": {"password": base64.b64encode(b"\xff\xfe").decode(), "verifier": encode("x")},
    })

    controller = make_controller(kube)
    stats = ReconciliationStats()
    with patch.object(controller, "load_cluster_objects", return_value=[bad_port, bad_secret, good]):
        controller.reconcile_all(stats)

    assert stats.errors == 2, "Both broken clusters are counted"
    assert stats.clusters_reconciled == 1, "The good cluster is still reconciled"
    assert kube.get("Secret", "postgres", "hippo-pguser-alice") is not None

    print("✅ Malformed cluster tests passed!")


def main():
    """Run all tests"""
    print("=" * 60)
    print("PostgresCluster Controller - Test Suite")
    print("=" * 60)

    try:
        test_config()
        test_load_clusters()
        test_reconciliation_stats()
        test_metrics()
        test_reconcile_end_to_end()
        test_applied_revision_survives_later_failure()
        test_applied_revision_survives_expired_deadline()
        test_volumes_need_a_statefulset()
        test_dry_run_mode()
        test_reconcile_all_from_manifest()
        test_reconcile_all_counts_failures()
        test_malformed_clusters_do_not_stop_others()

        print("\n" + "=" * 60)
        print("✅ All tests passed!")
        print("=" * 60)

        return 0

    except AssertionError as e:
        print(f"\n❌ Test failed: {e}")
        return 1
    except Exception as e:
        print(f"\n❌ Unexpected error: {e}")
        import traceback
        traceback.print_exc()
        return 1


if __name__ == "__main__":
    sys.exit(main())
