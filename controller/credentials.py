"""
PostgreSQL user Secrets: desired users, passwords, verifiers and connection
details
"""

import base64
import logging
import re
from typing import Callable, Dict, List, Optional, Tuple
from urllib.parse import quote

import naming
from cluster_models import PostgresCluster, UserSpec
from errors import ReconcileContext
from logs import WHITE, YELLOW, RESET
from postgres import generate_password, new_scram_verifier
from stats import ReconciliationStats

logger = logging.getLogger("postgres-operator.credentials")

MAX_IDENTIFIER_LENGTH = 63
USER_NAME_PATTERN = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")


def encode(value: str) -> str:
    return base64.b64encode(value.encode()).decode()


def decode(secret: Optional[dict], key: str) -> str:
    """Return the decoded value of key in secret, or "" when absent"""
    if not secret:
        return ""
    value = (secret.get("data") or {}).get(key)
    if not value:
        return ""
    return base64.b64decode(value).decode()


def desired_users(cluster: PostgresCluster, recorder) -> List[UserSpec]:
    """
    Users that should exist in PostgreSQL

    When users are unspecified, one user matching the cluster name owns a
    database of the same name, provided the name is a valid user name.
    Otherwise a warning event is recorded and no default user exists.
    """
    if cluster.spec.users is not None:
        return list(cluster.spec.users)

    name = cluster.name
    problems = []
    if len(name) > MAX_IDENTIFIER_LENGTH:
        problems.append(f"spec.users[0].name: Invalid value: {name!r}: "
                        f"should be at most {MAX_IDENTIFIER_LENGTH} chars long")
    if not USER_NAME_PATTERN.match(name):
        problems.append(f"spec.users[0].name: Invalid value: {name!r}: "
                        f"should match '{USER_NAME_PATTERN.pattern}'")

    if problems:
        recorder.warn(cluster, "InvalidUser", "; ".join(problems))
        return []

    return [UserSpec(name=name, databases=[name])]


def _uri(username: str, password: str, host: str, port: str, database: str) -> str:
    return (f"postgresql://{quote(username, safe='')}:{quote(password, safe='')}"
            f"@{host}:{port}/{quote(database, safe='')}")


def generate_user_secret(cluster: PostgresCluster, user: UserSpec, existing: Optional[dict],
                         password_generator: Callable[[], str] = generate_password) -> dict:
    """
    Return the Secret manifest for user

    The password and verifier of existing are kept when both are present;
    otherwise both are generated. Connection details are always derived
    from the current cluster.
    """
    username = user.name
    host = naming.cluster_primary_service(cluster)
    port = str(cluster.spec.port)

    data = {"host": host, "port": port, "user": username}

    password = decode(existing, "password")
    verifier = decode(existing, "verifier")
    if not password or not verifier:
        # The verifier is stored next to the password because a plaintext
        # password cannot be compared to a SCRAM verifier later.
        password = password_generator()
        verifier = new_scram_verifier(password)

    data["password"] = password
    data["verifier"] = verifier

    if user.databases:
        database = user.databases[0]
        data["dbname"] = database
        data["uri"] = _uri(username, password, host, port, database)

    if cluster.spec.pgbouncer is not None:
        bouncer_host = naming.cluster_pgbouncer_service(cluster)
        bouncer_port = str(cluster.spec.pgbouncer.port)
        data["pgbouncer-host"] = bouncer_host
        data["pgbouncer-port"] = bouncer_port
        if user.databases:
            data["pgbouncer-uri"] = _uri(username, password, bouncer_host, bouncer_port,
                                         user.databases[0])

    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": {
            "name": naming.postgres_user_secret(cluster, username),
            "namespace": cluster.namespace,
            "annotations": dict(cluster.spec.metadata.annotations),
            "labels": naming.merge(
                cluster.spec.metadata.labels,
                {
                    naming.LABEL_CLUSTER: cluster.name,
                    naming.LABEL_ROLE: naming.ROLE_POSTGRES_USER,
                    naming.LABEL_POSTGRES_USER: username,
                }),
            "ownerReferences": [naming.owner_reference(cluster)],
        },
        "type": "Opaque",
        "data": {k: encode(v) for k, v in data.items()},
    }


def reconcile_user_secrets(ctx: ReconcileContext, cluster: PostgresCluster, kube, recorder,
                           stats: Optional[ReconciliationStats] = None, dry_run: bool = False,
                           password_generator: Callable[[], str] = generate_password,
                           ) -> Tuple[List[UserSpec], Dict[str, dict]]:
    """
    Write a Secret for every desired user and delete the Secrets of users
    that are no longer desired

    Returns the users acted on, defaults included, and their Secrets.
    """
    stats = stats or ReconciliationStats()
    users = desired_users(cluster, recorder)
    specs = {u.name: u for u in users}

    secrets = kube.list_secrets(ctx, cluster.namespace,
                                naming.as_selector(naming.cluster_postgres_users(cluster.name)))

    # Secrets under the deprecated name migrate their password when the
    # current Secret does not exist yet.
    deprecated_name = naming.deprecated_postgres_user_secret(cluster)
    deprecated_secret = None
    deprecated_user = None
    user_secrets: Dict[str, dict] = {}

    for secret in sorted(secrets, key=lambda s: s["metadata"]["name"]):
        metadata = secret["metadata"]
        secret_user = (metadata.get("labels") or {}).get(naming.LABEL_POSTGRES_USER, "")
        if secret_user in specs:
            if metadata["name"] == deprecated_name:
                deprecated_secret = secret
                deprecated_user = secret_user
            else:
                user_secrets[secret_user] = secret
        elif naming.is_controlled_by(secret, cluster):
            if dry_run:
                logger.info(f"[DRY-RUN] Would delete Secret {metadata['name']}")
                continue
            secret.setdefault("kind", "Secret")
            kube.delete(ctx, secret)
            stats.secrets_deleted += 1
            logger.info(f"{YELLOW}Deleted Secret {metadata['name']} of removed user {secret_user}{RESET}")

    written: Dict[str, dict] = {}
    for username, user in specs.items():
        existing = user_secrets.get(username)
        if existing is None and username == deprecated_user:
            existing = deprecated_secret
            logger.info(f"Migrating credentials of {username} from Secret {deprecated_name}")

        intent = generate_user_secret(cluster, user, existing, password_generator)
        if dry_run:
            logger.info(f"[DRY-RUN] Would apply Secret {intent['metadata']['name']}")
        else:
            kube.apply(ctx, intent)
            stats.secrets_written += 1
            logger.debug(f"{WHITE}Applied Secret {intent['metadata']['name']}{RESET}")
        written[username] = intent

    return users, written
