"""Create laudos schema

Revision ID: create_laudos_schema
Revises:
Create Date: 2025-12-01 10:00:00.000000

"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = 'create_laudos_schema'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('crm', sa.String(30), nullable=True),
        sa.Column('role', sa.String(20), nullable=False),
        sa.Column('specialty_id', sa.Integer(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_users_id', 'users', ['id'])
    op.create_index('ix_users_tenant_id', 'users', ['tenant_id'])
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'patients',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('cpf', sa.Text(), nullable=True),
        sa.Column('email', sa.Text(), nullable=True),
        sa.Column('birth_date', sa.Date(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_patients_id', 'patients', ['id'])
    op.create_index('ix_patients_tenant_id', 'patients', ['tenant_id'])

    op.create_table(
        'exam_types',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(120), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('name'),
    )
    op.create_index('ix_exam_types_id', 'exam_types', ['id'])

    op.create_table(
        'exams',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('patient_id', sa.Integer(), nullable=False),
        sa.Column('exam_type_id', sa.Integer(), nullable=True),
        sa.Column('technician_id', sa.Integer(), nullable=True),
        sa.Column('exam_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('height', sa.String(20), nullable=True),
        sa.Column('weight', sa.String(20), nullable=True),
        sa.Column('heart_rate', sa.String(20), nullable=True),
        sa.Column('pr_interval', sa.String(20), nullable=True),
        sa.Column('qrs_duration', sa.String(20), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='Pendente'),
        sa.Column('active_report_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['patient_id'], ['patients.id']),
        sa.ForeignKeyConstraint(['exam_type_id'], ['exam_types.id']),
        sa.ForeignKeyConstraint(['technician_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_exams_id', 'exams', ['id'])
    op.create_index('ix_exams_tenant_id', 'exams', ['tenant_id'])
    op.create_index('ix_exams_patient_id', 'exams', ['patient_id'])
    op.create_index('ix_exams_status', 'exams', ['status'])

    op.create_table(
        'certificados_digitais',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('physician_id', sa.Integer(), nullable=False),
        sa.Column('file_path', sa.Text(), nullable=False),
        sa.Column('original_filename', sa.String(255), nullable=True),
        sa.Column('password_encrypted', sa.Text(), nullable=False),
        sa.Column('password_hash', sa.String(255), nullable=False),
        sa.Column('subject_name', sa.String(500), nullable=False),
        sa.Column('serial_number', sa.String(100), nullable=False),
        sa.Column('issuer', sa.String(500), nullable=False),
        sa.Column('issued_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('fingerprint', sa.String(64), nullable=False),
        sa.Column('signature_algorithm', sa.String(100), nullable=True),
        sa.Column('key_size', sa.Integer(), nullable=True),
        sa.Column('active', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('total_uses', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_used_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_failure_reason', sa.Text(), nullable=True),
        sa.Column('usage_attempts', sa.JSON(), nullable=False),
        sa.Column('deactivated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_ip', sa.String(45), nullable=True),
        sa.Column('created_user_agent', sa.String(500), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['physician_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_certificados_digitais_id', 'certificados_digitais', ['id'])
    op.create_index('ix_certificados_digitais_physician_id', 'certificados_digitais', ['physician_id'])
    op.create_index('ix_certificados_digitais_expires_at', 'certificados_digitais', ['expires_at'])
    op.create_index('ix_certificados_digitais_active', 'certificados_digitais', ['active'])
    op.create_index('ix_certificados_digitais_fingerprint', 'certificados_digitais', ['fingerprint'], unique=True)

    op.create_table(
        'laudos',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('exam_id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('conclusion', sa.Text(), nullable=False),
        sa.Column('physician_id', sa.Integer(), nullable=False),
        sa.Column('physician_name', sa.Text(), nullable=True),
        sa.Column('created_by_id', sa.Integer(), nullable=True),
        sa.Column('created_by_name', sa.Text(), nullable=True),
        sa.Column('status', sa.String(40), nullable=False),
        sa.Column('valid', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('history', sa.JSON(), nullable=False),
        sa.Column('previous_report_id', sa.Integer(), nullable=True),
        sa.Column('invalidated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('original_key', sa.String(512), nullable=True),
        sa.Column('signed_key', sa.String(512), nullable=True),
        sa.Column('legacy_url', sa.String(1024), nullable=True),
        sa.Column('original_legacy_url', sa.String(1024), nullable=True),
        sa.Column('digitally_signed', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('signing_method', sa.String(30), nullable=False, server_default='sem_assinatura'),
        sa.Column('certificate_id', sa.Integer(), nullable=True),
        sa.Column('signed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('access_code', sa.String(8), nullable=True),
        sa.Column('exam_type_id', sa.Integer(), nullable=True),
        sa.Column('specialty_id', sa.Integer(), nullable=True),
        sa.Column('payment_value', sa.Numeric(10, 2), nullable=True),
        sa.Column('payment_registered', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['exam_id'], ['exams.id']),
        sa.ForeignKeyConstraint(['physician_id'], ['users.id']),
        sa.ForeignKeyConstraint(['created_by_id'], ['users.id']),
        sa.ForeignKeyConstraint(['previous_report_id'], ['laudos.id']),
        sa.ForeignKeyConstraint(['certificate_id'], ['certificados_digitais.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_laudos_id', 'laudos', ['id'])
    op.create_index('ix_laudos_exam_id', 'laudos', ['exam_id'])
    op.create_index('ix_laudos_tenant_id', 'laudos', ['tenant_id'])
    op.create_index('ix_laudos_physician_id', 'laudos', ['physician_id'])
    op.create_index('ix_laudos_status', 'laudos', ['status'])
    op.create_index('ix_laudos_exam_valid', 'laudos', ['exam_id', 'valid'])

    op.create_table(
        'report_prices',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('exam_type_id', sa.Integer(), nullable=False),
        sa.Column('specialty_id', sa.Integer(), nullable=False),
        sa.Column('value', sa.Numeric(10, 2), nullable=False),
        sa.ForeignKeyConstraint(['exam_type_id'], ['exam_types.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_report_prices_id', 'report_prices', ['id'])
    op.create_index('ix_report_prices_tenant_id', 'report_prices', ['tenant_id'])
    op.create_index('ix_report_prices_lookup', 'report_prices', ['tenant_id', 'exam_type_id', 'specialty_id'], unique=True)

    op.create_table(
        'audit_logs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=True),
        sa.Column('user_id', sa.Integer(), nullable=True),
        sa.Column('action', sa.String(50), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('collection_name', sa.String(50), nullable=False),
        sa.Column('document_id', sa.String(64), nullable=True),
        sa.Column('before', sa.JSON(), nullable=True),
        sa.Column('after', sa.JSON(), nullable=True),
        sa.Column('ip_address', sa.String(45), nullable=True),
        sa.Column('user_agent', sa.String(500), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_audit_logs_id', 'audit_logs', ['id'])
    op.create_index('ix_audit_logs_tenant_id', 'audit_logs', ['tenant_id'])
    op.create_index('ix_audit_logs_user_id', 'audit_logs', ['user_id'])
    op.create_index('ix_audit_logs_created_at', 'audit_logs', ['created_at'])
    op.create_index('ix_audit_logs_document', 'audit_logs', ['collection_name', 'document_id'])


def downgrade() -> None:
    op.drop_table('audit_logs')
    op.drop_table('report_prices')
    op.drop_table('laudos')
    op.drop_table('certificados_digitais')
    op.drop_table('exams')
    op.drop_table('exam_types')
    op.drop_table('patients')
    op.drop_table('users')
