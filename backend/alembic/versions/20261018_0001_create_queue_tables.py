from __future__ import annotations

from alembic import op
import sqlalchemy as sa

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None

NOW = sa.text("(strftime('%Y-%m-%dT%H:%M:%fZ','now'))")


def upgrade() -> None:
    op.create_table(
        "queue_jobs",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("created_at", sa.Text(), nullable=False, server_default=NOW),
        sa.Column("updated_at", sa.Text(), nullable=False, server_default=NOW),
        sa.Column("type", sa.Text(), nullable=False),
        sa.Column("state", sa.Text(), nullable=False, server_default=sa.text("'queued'")),
        sa.Column("project_id", sa.Text(), nullable=True),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default=sa.text("3")),
        sa.Column("available_at", sa.Text(), nullable=False, server_default=NOW),
        sa.Column("lease_owner", sa.Text(), nullable=True),
        sa.Column("leased_at", sa.Text(), nullable=True),
        sa.Column("lease_expires_at", sa.Text(), nullable=True),
        sa.Column("cancel_requested_at", sa.Text(), nullable=True),
        sa.Column("cancelled_at", sa.Text(), nullable=True),
        sa.Column("finished_at", sa.Text(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("dedupe_key", sa.Text(), nullable=True),
        sa.Column("dedupe_active", sa.Text(), nullable=True),
        sa.CheckConstraint(
            "state IN ('queued','running','succeeded','failed','cancelled')",
            name="ck_queue_jobs_state",
        ),
        sa.CheckConstraint("attempts >= 0 AND attempts <= max_attempts", name="ck_queue_jobs_attempts"),
    )
    op.create_index("idx_queue_jobs_claim", "queue_jobs", ["state", "available_at", "created_at"], unique=False)
    op.create_index("idx_queue_jobs_lease", "queue_jobs", ["state", "lease_expires_at"], unique=False)
    op.create_index("idx_queue_jobs_project", "queue_jobs", ["project_id", "state"], unique=False)
    op.create_index("idx_queue_jobs_type", "queue_jobs", ["type"], unique=False)
    op.create_index("uq_queue_jobs_dedupe_active", "queue_jobs", ["dedupe_key", "dedupe_active"], unique=True)

    op.create_table(
        "runtime_settings",
        sa.Column("key", sa.Text(), primary_key=True),
        sa.Column("value_json", sa.Text(), nullable=False),
        sa.Column("updated_at", sa.Text(), nullable=False, server_default=NOW),
        sa.Column("updated_by", sa.Text(), nullable=True),
    )

    op.create_table(
        "projects",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("owner_user_id", sa.Text(), nullable=False),
        sa.Column("created_at", sa.Text(), nullable=False, server_default=NOW),
        sa.Column("updated_at", sa.Text(), nullable=False, server_default=NOW),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("slug", sa.Text(), nullable=False),
        sa.Column("prompt", sa.Text(), nullable=False),
        sa.Column("model", sa.Text(), nullable=True),
        sa.Column("dev_port", sa.Integer(), nullable=False),
        sa.Column("opencode_port", sa.Integer(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False, server_default=sa.text("'created'")),
        sa.Column("setup_phase", sa.Text(), nullable=False, server_default=sa.text("'not_started'")),
        sa.Column("setup_error", sa.Text(), nullable=True),
        sa.Column("path_on_disk", sa.Text(), nullable=False),
        sa.Column("bootstrap_session_id", sa.Text(), nullable=True),
        sa.Column("initial_prompt_sent", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("user_prompt_message_id", sa.Text(), nullable=True),
        sa.Column("user_prompt_sent", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("user_prompt_completed", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("production_port", sa.Integer(), nullable=True),
        sa.Column("production_url", sa.Text(), nullable=True),
        sa.Column("production_status", sa.Text(), nullable=True),
        sa.Column("production_started_at", sa.Text(), nullable=True),
        sa.Column("production_error", sa.Text(), nullable=True),
        sa.Column("production_hash", sa.Text(), nullable=True),
        sa.CheckConstraint(
            "status IN ('created','starting','running','stopping','stopped','error','deleting')",
            name="ck_projects_status",
        ),
        sa.CheckConstraint(
            "setup_phase IN ('not_started','creating_files','starting_docker','initializing_agent',"
            "'sending_prompts','waiting_completion','completed','failed')",
            name="ck_projects_setup_phase",
        ),
        sa.CheckConstraint(
            "production_status IS NULL OR production_status IN ('queued','building','running','failed','stopped')",
            name="ck_projects_production_status",
        ),
    )
    op.create_index("idx_projects_owner", "projects", ["owner_user_id"], unique=False)
    op.create_index("uq_projects_slug", "projects", ["slug"], unique=True)

    op.create_table(
        "user_settings",
        sa.Column("user_id", sa.Text(), primary_key=True),
        sa.Column("provider_api_key_enc", sa.Text(), nullable=True),
        sa.Column("default_model", sa.Text(), nullable=True),
        sa.Column("updated_at", sa.Text(), nullable=False, server_default=NOW),
    )


def downgrade() -> None:
    op.drop_table("user_settings")
    op.drop_index("uq_projects_slug", table_name="projects")
    op.drop_index("idx_projects_owner", table_name="projects")
    op.drop_table("projects")
    op.drop_table("runtime_settings")
    op.drop_index("uq_queue_jobs_dedupe_active", table_name="queue_jobs")
    op.drop_index("idx_queue_jobs_type", table_name="queue_jobs")
    op.drop_index("idx_queue_jobs_project", table_name="queue_jobs")
    op.drop_index("idx_queue_jobs_lease", table_name="queue_jobs")
    op.drop_index("idx_queue_jobs_claim", table_name="queue_jobs")
    op.drop_table("queue_jobs")
