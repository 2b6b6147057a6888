"""Workflow store for tenant, template, instance and activity log persistence."""

import json
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, Optional

import psycopg
from psycopg.rows import dict_row

INSTANCE_COLUMNS = """
    id, tenant_id, n8n_workflow_id, name, n8n_data, active, is_template,
    parent_workflow_id, folder_name, encrypted_credentials, webhook_secret,
    created_by, cloned_at, last_executed, execution_count, created_at, updated_at
"""

DEFAULT_LOCK_TIMEOUT = 30.0


class DuplicateInstanceError(Exception):
    """The tenant already owns a non-template workflow with this name."""


class TenantBusyError(Exception):
    """Another process held the tenant's activation lock past the timeout."""


def as_uuid(value) -> Optional[str]:
    """Canonical UUID string, or None when the value cannot be a row id."""
    try:
        return str(uuid.UUID(str(value)))
    except (TypeError, ValueError, AttributeError):
        return None


def _normalize(row: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not row:
        return None
    result = dict(row)
    # Convert UUID objects to strings for JSON serialization
    for key, value in result.items():
        if isinstance(value, uuid.UUID):
            result[key] = str(value)
    for key in ("n8n_data", "encrypted_credentials"):
        if isinstance(result.get(key), str):
            result[key] = json.loads(result[key])
    return result


class WorkflowStore:
    """Postgres access for the provisioning service.

    Every write commits on its own; callers order writes so that the instance
    row is the recovery anchor between remote calls.
    """

    def __init__(self, database_url: str, lock_timeout: float = DEFAULT_LOCK_TIMEOUT):
        self.database_url = database_url
        self.lock_timeout = lock_timeout

    def get_tenant(self, tenant_id: str) -> Optional[dict]:
        """Get a tenant by ID."""
        tenant_id = as_uuid(tenant_id)
        if not tenant_id:
            return None
        with psycopg.connect(self.database_url, row_factory=dict_row) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT id, name, company_name, parent_tenant_id, status
                    FROM tenants
                    WHERE id = %s
                    """,
                    (tenant_id,)
                )
                return _normalize(cur.fetchone())

    def get_template(self, template_id: str) -> Optional[dict]:
        """Get a template workflow; non-template rows are not returned."""
        template_id = as_uuid(template_id)
        if not template_id:
            return None
        with psycopg.connect(self.database_url, row_factory=dict_row) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"SELECT {INSTANCE_COLUMNS} FROM workflows WHERE id = %s AND is_template = true",
                    (template_id,)
                )
                return _normalize(cur.fetchone())

    def get_instance(self, instance_id: str) -> Optional[dict]:
        """Get any workflow row by ID, templates included."""
        instance_id = as_uuid(instance_id)
        if not instance_id:
            return None
        with psycopg.connect(self.database_url, row_factory=dict_row) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"SELECT {INSTANCE_COLUMNS} FROM workflows WHERE id = %s",
                    (instance_id,)
                )
                return _normalize(cur.fetchone())

    def find_instance_by_name(self, tenant_id: str, name: str) -> Optional[dict]:
        """Find the tenant's non-template workflow with this exact name."""
        tenant_id = as_uuid(tenant_id)
        if not tenant_id:
            return None
        with psycopg.connect(self.database_url, row_factory=dict_row) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    SELECT {INSTANCE_COLUMNS} FROM workflows
                    WHERE tenant_id = %s AND name = %s AND is_template = false
                    """,
                    (tenant_id, name)
                )
                return _normalize(cur.fetchone())

    def insert_instance(
        self,
        tenant_id: str,
        n8n_workflow_id: str,
        name: str,
        n8n_data: Dict[str, Any],
        parent_workflow_id: str,
        folder_name: str,
        created_by: Optional[str] = None,
        encrypted_credentials: Optional[Dict[str, str]] = None,
        webhook_secret: Optional[str] = None,
    ) -> dict:
        """
        Insert an inactive workflow instance.

        Raises:
            DuplicateInstanceError: If the (tenant, name) unique index rejects the row
        """
        instance_id = str(uuid.uuid4())
        now = datetime.utcnow()

        try:
            with psycopg.connect(self.database_url, row_factory=dict_row) as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        f"""
                        INSERT INTO workflows (
                            id, tenant_id, n8n_workflow_id, name, n8n_data, active, is_template,
                            parent_workflow_id, folder_name, encrypted_credentials, webhook_secret,
                            created_by, cloned_at, created_at, updated_at
                        )
                        VALUES (%s, %s, %s, %s, %s, false, false, %s, %s, %s, %s, %s, %s, %s, %s)
                        RETURNING {INSTANCE_COLUMNS}
                        """,
                        (
                            instance_id, tenant_id, n8n_workflow_id, name, json.dumps(n8n_data),
                            parent_workflow_id, folder_name, json.dumps(encrypted_credentials or {}),
                            webhook_secret, created_by, now, now, now
                        )
                    )
                    result = cur.fetchone()
                    conn.commit()
                    return _normalize(result)
        except psycopg.errors.UniqueViolation as e:
            raise DuplicateInstanceError(str(e)) from e

    def set_instance_active(self, instance_id: str, active: bool) -> None:
        """Flip the local active flag."""
        with psycopg.connect(self.database_url, row_factory=dict_row) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "UPDATE workflows SET active = %s, updated_at = %s WHERE id = %s",
                    (active, datetime.utcnow(), instance_id)
                )
                conn.commit()

    def delete_instance(self, instance_id: str) -> None:
        """Delete a non-template workflow row."""
        with psycopg.connect(self.database_url, row_factory=dict_row) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "DELETE FROM workflows WHERE id = %s AND is_template = false",
                    (instance_id,)
                )
                conn.commit()

    def insert_activity(
        self,
        workflow_id: str,
        user_id: Optional[str],
        action: str,
        details: Dict[str, Any],
    ) -> dict:
        """Append an activity log entry."""
        with psycopg.connect(self.database_url, row_factory=dict_row) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO workflow_activity_log (id, workflow_id, user_id, action, details, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING id, workflow_id, user_id, action, details, created_at
                    """,
                    (str(uuid.uuid4()), workflow_id, user_id, action, json.dumps(details), datetime.utcnow())
                )
                result = cur.fetchone()
                conn.commit()
                return _normalize(result)

    def update_instance_settings(
        self,
        instance_id: str,
        n8n_data: Dict[str, Any],
        encrypted_credentials: Dict[str, str],
    ) -> None:
        """Store the workflow graph pushed to n8n and the merged credentials."""
        with psycopg.connect(self.database_url, row_factory=dict_row) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE workflows
                    SET n8n_data = %s, encrypted_credentials = %s, updated_at = %s
                    WHERE id = %s
                    """,
                    (json.dumps(n8n_data), json.dumps(encrypted_credentials), datetime.utcnow(), instance_id)
                )
                conn.commit()

    def record_webhook(self, workflow_id: str, input_data: Any) -> dict:
        """
        Record an accepted webhook call.

        Inserts a ``received`` execution row and bumps the workflow's
        ``last_executed``/``execution_count`` in one transaction.
        """
        now = datetime.utcnow()
        with psycopg.connect(self.database_url, row_factory=dict_row) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO workflow_executions (id, workflow_id, status, input_data, started_at)
                    VALUES (%s, %s, 'received', %s, %s)
                    RETURNING id, workflow_id, status, input_data, started_at
                    """,
                    (str(uuid.uuid4()), workflow_id, json.dumps(input_data), now)
                )
                execution = cur.fetchone()
                cur.execute(
                    """
                    UPDATE workflows
                    SET last_executed = %s, execution_count = execution_count + 1
                    WHERE id = %s
                    """,
                    (now, workflow_id)
                )
                conn.commit()
                return _normalize(execution)

    @contextmanager
    def tenant_lock(self, tenant_id: str) -> Iterator[None]:
        """
        Hold a Postgres advisory lock for the tenant.

        Serializes activations for one tenant across processes. The lock lives
        on its own autocommit connection and is released when the block exits.

        Raises:
            TenantBusyError: If the lock is not acquired within ``lock_timeout`` seconds
        """
        key = f"workflow-activation:{tenant_id}"
        with psycopg.connect(self.database_url, autocommit=True) as conn:
            conn.execute("SELECT set_config('lock_timeout', %s, false)", (f"{int(self.lock_timeout * 1000)}ms",))
            try:
                conn.execute("SELECT pg_advisory_lock(hashtextextended(%s, 0))", (key,))
            except psycopg.errors.LockNotAvailable as e:
                raise TenantBusyError(f"Activation lock for tenant {tenant_id} is busy") from e
            try:
                yield
            finally:
                conn.execute("SELECT pg_advisory_unlock(hashtextextended(%s, 0))", (key,))
