#!/usr/bin/env python3
"""
Register an n8n workflow as a provisioning template.

Templates are the source of every tenant instance. This script fetches the
workflow graph from n8n and stores it as a template row so activation can
clone it without a remote round trip.

Usage:
    python scripts/seed_template.py --n8n-id 12 --name "Lead Intake"
    python scripts/seed_template.py --n8n-id 12 --name "Lead Intake" --no-snapshot
"""

import argparse
import json
import os
import sys
import uuid
from datetime import datetime
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

import psycopg
from psycopg.rows import dict_row

from api.dependencies import get_database_url
from services.n8n_client import N8nClient
from core.errors import AutomaraError


def create_template(name: str, n8n_workflow_id: str, n8n_data, database_url: str) -> str:
    """
    Insert a template row unless one already points at the same n8n workflow.

    Returns:
        Template ID
    """
    template_id = str(uuid.uuid4())
    now = datetime.utcnow()

    with psycopg.connect(database_url, row_factory=dict_row) as conn:
        with conn.cursor() as cur:
            cur.execute(
                "SELECT id FROM workflows WHERE is_template = true AND n8n_workflow_id = %s",
                (n8n_workflow_id,)
            )
            existing = cur.fetchone()
            if existing:
                print(f"Template for n8n workflow {n8n_workflow_id} already exists")
                return str(existing["id"])

            cur.execute(
                """
                INSERT INTO workflows (id, tenant_id, n8n_workflow_id, name, n8n_data,
                                       active, is_template, created_at, updated_at)
                VALUES (%s, NULL, %s, %s, %s, false, true, %s, %s)
                RETURNING id
                """,
                (template_id, n8n_workflow_id, name,
                 json.dumps(n8n_data) if n8n_data is not None else None, now, now)
            )
            result = cur.fetchone()
            conn.commit()

            print(f"Created template: {name} (n8n {n8n_workflow_id}) with ID: {result['id']}")
            return str(result["id"])


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Register an n8n workflow as a template")
    parser.add_argument("--n8n-id", required=True, help="Workflow id in n8n")
    parser.add_argument("--name", required=True, help="Template display name")
    parser.add_argument("--no-snapshot", action="store_true",
                        help="Store no graph snapshot; activation will fetch it from n8n")
    args = parser.parse_args()

    n8n_data = None
    if not args.no_snapshot:
        client = N8nClient(
            base_url=os.getenv("N8N_API_URL", "http://n8n:5678/api/v1"),
            api_key=os.getenv("N8N_API_KEY", ""),
        )
        try:
            workflow = client.get_workflow(args.n8n_id)
        except AutomaraError as e:
            print(f"Error fetching workflow {args.n8n_id} from n8n: {e.message}")
            sys.exit(1)
        n8n_data = {
            "nodes": workflow.get("nodes", []),
            "connections": workflow.get("connections", {}),
            "settings": workflow.get("settings", {}),
        }

    try:
        create_template(args.name, args.n8n_id, n8n_data, get_database_url())
    except psycopg.Error as e:
        print(f"Error creating template: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
