"""create folders, chat history, preferences and saved prompts tables

Revision ID: 9a41c7e05b3f
Revises: 3d8f0b6c2a91
Create Date: 2026-10-17

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "9a41c7e05b3f"
down_revision: str | Sequence[str] | None = "3d8f0b6c2a91"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    ]


def _encrypted(name: str, nullable: bool = True) -> list[sa.Column]:
    """Ciphertext, IV and auth tag columns for one encrypted field."""
    return [
        sa.Column(f"{name}_encrypted", sa.Text(), nullable=nullable),
        sa.Column(f"{name}_iv", sa.String(32), nullable=nullable),
        sa.Column(f"{name}_tag", sa.String(32), nullable=nullable),
    ]


def upgrade() -> None:
    """Create folders, chat_sessions, chat_messages, user_preferences, saved_prompts."""
    op.create_table(
        "folders",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        *_encrypted("name"),
        sa.Column("position", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_folders_user_id"), "folders", ["user_id"], unique=False)
    op.create_index(
        "ix_folders_user_id_position", "folders", ["user_id", "position"], unique=False
    )

    op.create_table(
        "chat_sessions",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("folder_id", sa.String(64), nullable=True),
        sa.Column("model_id", sa.String(100), nullable=False),
        sa.Column("model_name", sa.String(255), nullable=True),
        sa.Column("parent_chat_id", sa.String(64), nullable=True),
        sa.Column("branched_at_index", sa.Integer(), nullable=True),
        *_encrypted("name"),
        *_encrypted("system_prompt"),
        *_timestamps(),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["folder_id"], ["folders.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_chat_sessions_user_id"), "chat_sessions", ["user_id"], unique=False
    )
    op.create_index(
        op.f("ix_chat_sessions_folder_id"), "chat_sessions", ["folder_id"], unique=False
    )
    op.create_index(
        "ix_chat_sessions_user_id_updated_at",
        "chat_sessions",
        ["user_id", "updated_at"],
        unique=False,
    )

    op.create_table(
        "chat_messages",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("chat_session_id", sa.String(64), nullable=False),
        sa.Column("role", sa.String(20), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        *_encrypted("content", nullable=False),
        sa.Column("token_count", sa.Integer(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.ForeignKeyConstraint(
            ["chat_session_id"], ["chat_sessions.id"], ondelete="CASCADE"
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "chat_session_id", "position", name="uq_chat_messages_position"
        ),
        sa.CheckConstraint(
            "role IN ('user', 'assistant', 'system')", name="ck_chat_messages_role"
        ),
    )
    op.create_index(
        op.f("ix_chat_messages_chat_session_id"),
        "chat_messages",
        ["chat_session_id"],
        unique=False,
    )

    op.create_table(
        "user_preferences",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("selected_model", sa.String(100), nullable=True),
        sa.Column("temperature", sa.Float(), nullable=True),
        sa.Column("top_p", sa.Float(), nullable=True),
        sa.Column("last_selected_chat_id", sa.String(64), nullable=True),
        *_encrypted("system_prompt"),
        *_timestamps(),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id"),
    )

    op.create_table(
        "saved_prompts",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        *_encrypted("name", nullable=False),
        *_encrypted("content", nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_saved_prompts_user_id"), "saved_prompts", ["user_id"], unique=False
    )


def downgrade() -> None:
    """Drop chat history and settings tables."""
    op.drop_index(op.f("ix_saved_prompts_user_id"), table_name="saved_prompts")
    op.drop_table("saved_prompts")
    op.drop_table("user_preferences")
    op.drop_index(op.f("ix_chat_messages_chat_session_id"), table_name="chat_messages")
    op.drop_table("chat_messages")
    op.drop_index("ix_chat_sessions_user_id_updated_at", table_name="chat_sessions")
    op.drop_index(op.f("ix_chat_sessions_folder_id"), table_name="chat_sessions")
    op.drop_index(op.f("ix_chat_sessions_user_id"), table_name="chat_sessions")
    op.drop_table("chat_sessions")
    op.drop_index("ix_folders_user_id_position", table_name="folders")
    op.drop_index(op.f("ix_folders_user_id"), table_name="folders")
    op.drop_table("folders")
