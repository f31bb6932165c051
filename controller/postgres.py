"""
SQL executed inside PostgreSQL, passwords and verifiers, and paths on the
database container
"""

import base64
import hashlib
import hmac
import io
import json
import os
import secrets
import string
from typing import Dict, List, Optional

from cluster_models import PostgresCluster, InstanceSetSpec, UserSpec
from errors import ReconcileContext
from executor import Executor
from settings import Config

PASSWORD_ALPHABET = string.ascii_letters + string.digits

# Each statement SELECTed here is executed by psql through \gexec. Identifiers
# and literals are quoted by format() on the server.
SQL_CREATE_DATABASES = r"""
SELECT pg_catalog.format('CREATE DATABASE %I',
       pg_catalog.json_extract_path_text(input.data, VARIADIC ARRAY[]::text[]))
  FROM input
 WHERE NOT EXISTS (
       SELECT 1 FROM pg_catalog.pg_database
        WHERE datname = pg_catalog.json_extract_path_text(input.data, VARIADIC ARRAY[]::text[]))
 ORDER BY input.id
\gexec
"""

SQL_WRITE_USERS = r"""
BEGIN;
SELECT pg_catalog.format('CREATE USER %I',
       pg_catalog.json_extract_path_text(input.data, 'name'))
  FROM input
 WHERE NOT EXISTS (
       SELECT 1 FROM pg_catalog.pg_roles
        WHERE rolname = pg_catalog.json_extract_path_text(input.data, 'name'))
 ORDER BY input.id
\gexec

SELECT pg_catalog.format('ALTER ROLE %I WITH LOGIN PASSWORD %L',
       pg_catalog.json_extract_path_text(input.data, 'name'),
       pg_catalog.json_extract_path_text(input.data, 'verifier'))
  FROM input ORDER BY input.id
\gexec

SELECT pg_catalog.format('GRANT ALL PRIVILEGES ON DATABASE %I TO %I',
       pg_catalog.json_array_elements_text(
       pg_catalog.json_extract_path(input.data, 'databases')),
       pg_catalog.json_extract_path_text(input.data, 'name'))
  FROM input ORDER BY input.id
\gexec
COMMIT;
"""


def exec_sql(ctx: ReconcileContext, executor: Executor, sql: str,
             variables: Optional[Dict[str, str]] = None, stdout=None, stderr=None):
    """Run sql through psql in the database container, stopping on the first error"""
    variables = dict(variables or {})
    variables.setdefault("ON_ERROR_STOP", "on")
    variables.setdefault("QUIET", "on")

    command = ["psql", "-Xw", "--file=-"]
    for name in sorted(variables):
        command += ["--set", f"{name}={variables[name]}"]

    executor.run(ctx, command, stdin=sql, stdout=stdout, stderr=stderr)


def _copy_input(values) -> str:
    """
    Script that loads values into a temporary "input" table, one JSON
    document per row

    COPY text format treats backslash as an escape, so JSON escapes are doubled.
    """
    script = io.StringIO()
    # Only pg_catalog and temporary objects are visible with an empty search_path.
    script.write("SET search_path TO '';\n")
    script.write("CREATE TEMPORARY TABLE input (id serial, data json);\n")
    script.write("\\copy input (data) from stdin with (format text)\n")
    for value in values:
        script.write(json.dumps(value, sort_keys=True).replace("\\", "\\\\"))
        script.write("\n")
    script.write("\\.\n")
    return script.getvalue()


def create_databases_in_postgresql(ctx: ReconcileContext, executor: Executor,
                                   databases: List[str], log):
    """Create databases that do not already exist"""
    stdout, stderr = io.StringIO(), io.StringIO()
    exec_sql(ctx, executor, _copy_input(databases) + SQL_CREATE_DATABASES,
             stdout=stdout, stderr=stderr)
    log.info(f"Created PostgreSQL databases: {', '.join(databases) or '(none)'}")
    log.debug(f"psql stdout={stdout.getvalue()!r} stderr={stderr.getvalue()!r}")


def write_users_in_postgresql(ctx: ReconcileContext, executor: Executor,
                              users: List[UserSpec], verifiers: Dict[str, str], log):
    """
    Create users, set their password verifiers, and grant them their databases

    Everything runs in one transaction so that no session sees a user without
    its permissions.
    """
    rows = []
    for user in users:
        rows.append({
            "name": user.name,
            "databases": list(user.databases),
            "verifier": verifiers.get(user.name, ""),
        })

    stdout, stderr = io.StringIO(), io.StringIO()
    exec_sql(ctx, executor, _copy_input(rows) + SQL_WRITE_USERS,
             stdout=stdout, stderr=stderr)
    log.info(f"Wrote PostgreSQL users: {', '.join(u.name for u in users) or '(none)'}")
    log.debug(f"psql stdout={stdout.getvalue()!r} stderr={stderr.getvalue()!r}")


def generate_password(length: int = Config.GENERATED_PASSWORD_LENGTH) -> str:
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))


def new_scram_verifier(password: str, salt: Optional[bytes] = None,
                       iterations: int = Config.SCRAM_ITERATIONS) -> str:
    """
    Build a SCRAM-SHA-256 verifier in the format PostgreSQL stores in
    pg_authid.rolpassword
    """
    if salt is None:
        salt = os.urandom(Config.SCRAM_SALT_LENGTH)

    salted = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iterations)
    client_key = hmac.new(salted, b"Client Key", hashlib.sha256).digest()
    stored_key = hashlib.sha256(client_key).digest()
    server_key = hmac.new(salted, b"Server Key", hashlib.sha256).digest()

    def b64(data: bytes) -> str:
        return base64.b64encode(data).decode()

    return f"SCRAM-SHA-256${iterations}:{b64(salt)}${b64(stored_key)}:{b64(server_key)}"


def wal_storage(dedicated: bool) -> str:
    """Mount path of the volume holding WAL"""
    return "/pgwal" if dedicated else "/pgdata"


def wal_directory(cluster: PostgresCluster, instance_set: InstanceSetSpec) -> str:
    """Directory that should hold WAL for instances of instance_set"""
    dedicated = instance_set.wal_volume_claim_spec is not None
    return f"{wal_storage(dedicated)}/pg{cluster.spec.postgres_version}_wal"
