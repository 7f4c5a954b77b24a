# Supabase table: deployments
# This file documents the expected database schema and the status state machine.
# Actual operations are handled via the stores in store.py / service.py

"""
Expected Supabase table structure:
- id: uuid (primary key, default: gen_random_uuid())
- user_id: uuid (not null) - owning user
- project_name: text (not null)
- repo_url: text (not null)
- branch: text (not null)
- build_command: text (not null)
- install_command: text (not null)
- output_dir: text (not null)
- node_version: text (not null)
- namespace: text (not null, unique) - routing key / subdomain, never reused
- status: text (not null, default: 'pending') - values: pending, building, deployed, failed
- public_url: text (nullable)
- build_logs: text (not null, default: '')
- executor_handle: text (nullable)
- created_at: timestamptz (default: now())
- updated_at: timestamptz (default: now())
"""
from enum import Enum


class DeploymentStatus(str, Enum):
    PENDING = "pending"
    BUILDING = "building"
    DEPLOYED = "deployed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({DeploymentStatus.DEPLOYED, DeploymentStatus.FAILED})

ALLOWED_TRANSITIONS = {
    DeploymentStatus.PENDING: frozenset({DeploymentStatus.BUILDING, DeploymentStatus.FAILED}),
    DeploymentStatus.BUILDING: frozenset({DeploymentStatus.DEPLOYED, DeploymentStatus.FAILED}),
    DeploymentStatus.DEPLOYED: frozenset(),
    DeploymentStatus.FAILED: frozenset(),
}


def is_allowed_transition(current: DeploymentStatus, requested: DeploymentStatus) -> bool:
    return requested in ALLOWED_TRANSITIONS[current]
