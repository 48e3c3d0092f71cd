"""create execution_jobs and execution_job_logs tables

Revision ID: 0001
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

def upgrade():
    op.create_table(
        "execution_jobs",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("connection_id", sa.String(length=36), nullable=False),
        sa.Column("database_name", sa.String(length=100), nullable=False),
        sa.Column("table_name", sa.String(length=200), nullable=False),
        sa.Column("ddl_type", sa.String(length=20), nullable=False),
        sa.Column("original_ddl", sa.Text(), nullable=True),
        sa.Column("generated_command", sa.Text(), nullable=False),
        sa.Column("execution_params", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("processed_rows", sa.Integer(), nullable=False),
        sa.Column("total_rows", sa.Integer(), nullable=False),
        sa.Column("row_count_known", sa.Boolean(), nullable=False),
        sa.Column("current_speed", sa.Float(), nullable=False),
        sa.Column("avg_speed", sa.Float(), nullable=True),
        sa.Column("current_stage", sa.String(length=100), nullable=True),
        sa.Column("start_time", sa.DateTime(), nullable=True),
        sa.Column("end_time", sa.DateTime(), nullable=True),
        sa.Column("duration_seconds", sa.Integer(), nullable=True),
        sa.Column("created_by", sa.String(length=100), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("exit_code", sa.Integer(), nullable=True),
        sa.Column("retry_of", sa.String(length=36), nullable=True),
        sa.Column("process_handle", sa.String(length=255), nullable=True),
    )
    op.create_index("ix_execution_jobs_target", "execution_jobs", ["connection_id", "database_name", "table_name"])
    op.create_index("ix_execution_jobs_status", "execution_jobs", ["status"])
    op.create_index("ix_execution_jobs_created_at", "execution_jobs", ["created_at"])

    op.create_table(
        "execution_job_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("job_id", sa.String(length=36), sa.ForeignKey("execution_jobs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("seq", sa.Integer(), nullable=False),
        sa.Column("line", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_execution_job_logs_job_seq", "execution_job_logs", ["job_id", "seq"])

def downgrade():
    op.drop_index("ix_execution_job_logs_job_seq", table_name="execution_job_logs")
    op.drop_table("execution_job_logs")
    op.drop_index("ix_execution_jobs_created_at", table_name="execution_jobs")
    op.drop_index("ix_execution_jobs_status", table_name="execution_jobs")
    op.drop_index("ix_execution_jobs_target", table_name="execution_jobs")
    op.drop_table("execution_jobs")
