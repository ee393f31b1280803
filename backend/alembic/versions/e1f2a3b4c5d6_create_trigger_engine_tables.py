"""Create trigger engine tables

Revision ID: e1f2a3b4c5d6
Revises:
Create Date: 2026-10-16 12:00:00.000000

Pharmacies, patients and prescriptions (written by ingestion), trigger
configuration with per-(BIN, Group) coverage, opportunities with the dedup
constraint, scan runs and the audit log.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = 'e1f2a3b4c5d6'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        'pharmacies',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('npi', sa.String(10), nullable=True),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('state', sa.String(2), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index('ix_pharmacies_npi', 'pharmacies', ['npi'])

    op.create_table(
        'patients',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('pharmacy_id', sa.Integer(), sa.ForeignKey('pharmacies.id'), nullable=False),
        sa.Column('first_name', sa.String(100), nullable=True),
        sa.Column('last_name', sa.String(100), nullable=True),
        sa.Column('date_of_birth', sa.Date(), nullable=True),
        sa.Column('chronic_conditions', postgresql.JSONB(), nullable=False, server_default='[]'),
        *_timestamps(),
    )
    op.create_index('ix_patients_pharmacy_id', 'patients', ['pharmacy_id'])

    op.create_table(
        'prescriptions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('pharmacy_id', sa.Integer(), sa.ForeignKey('pharmacies.id'), nullable=False),
        sa.Column('patient_id', sa.Integer(), sa.ForeignKey('patients.id'), nullable=False),
        sa.Column('drug_name', sa.String(255), nullable=False),
        sa.Column('ndc', sa.String(20), nullable=True),
        sa.Column('insurance_bin', sa.String(20), nullable=True),
        sa.Column('insurance_group', sa.String(50), nullable=True),
        sa.Column('contract_id', sa.String(20), nullable=True),
        sa.Column('plan_name', sa.String(200), nullable=True),
        sa.Column('quantity_dispensed', sa.Numeric(10, 2), nullable=True),
        sa.Column('days_supply', sa.Integer(), nullable=True),
        sa.Column('dispensed_date', sa.Date(), nullable=True),
        sa.Column('prescriber_name', sa.String(200), nullable=True),
        sa.Column('raw_data', postgresql.JSONB(), nullable=False, server_default='{}'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_prescriptions_pharmacy_id', 'prescriptions', ['pharmacy_id'])
    op.create_index('ix_prescriptions_patient_id', 'prescriptions', ['patient_id'])
    op.create_index('ix_prescriptions_ndc', 'prescriptions', ['ndc'])
    op.create_index('ix_prescriptions_insurance_bin', 'prescriptions', ['insurance_bin'])
    op.create_index('ix_prescriptions_dispensed_date', 'prescriptions', ['dispensed_date'])

    op.create_table(
        'triggers',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('trigger_code', sa.String(100), nullable=False),
        sa.Column('display_name', sa.String(255), nullable=False),
        sa.Column('trigger_group', sa.String(100), nullable=True),
        sa.Column('trigger_type', sa.String(50), nullable=False),
        sa.Column('category', sa.String(100), nullable=True),
        sa.Column('detection_keywords', postgresql.JSONB(), nullable=False, server_default='[]'),
        sa.Column('exclude_keywords', postgresql.JSONB(), nullable=False, server_default='[]'),
        sa.Column('if_has_keywords', postgresql.JSONB(), nullable=False, server_default='[]'),
        sa.Column('if_not_has_keywords', postgresql.JSONB(), nullable=False, server_default='[]'),
        sa.Column('keyword_match_mode', sa.String(10), nullable=False, server_default='any'),
        sa.Column('recommended_drug', sa.String(255), nullable=True),
        sa.Column('recommended_ndc', sa.String(20), nullable=True),
        sa.Column('clinical_rationale', sa.Text(), nullable=True),
        sa.Column('priority', sa.String(20), nullable=False, server_default='medium'),
        sa.Column('bin_inclusions', postgresql.JSONB(), nullable=False, server_default='[]'),
        sa.Column('bin_exclusions', postgresql.JSONB(), nullable=False, server_default='[]'),
        sa.Column('group_inclusions', postgresql.JSONB(), nullable=False, server_default='[]'),
        sa.Column('group_exclusions', postgresql.JSONB(), nullable=False, server_default='[]'),
        sa.Column('contract_prefix_exclusions', postgresql.JSONB(), nullable=False, server_default='[]'),
        sa.Column('pharmacy_inclusions', postgresql.JSONB(), nullable=False, server_default='[]'),
        sa.Column('annual_fills', sa.Integer(), nullable=False, server_default='12'),
        sa.Column('default_gp_value', sa.Numeric(10, 2), nullable=True),
        sa.Column('expected_qty', sa.Numeric(10, 2), nullable=True),
        sa.Column('expected_days_supply', sa.Integer(), nullable=True),
        sa.Column('is_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('last_modified_by', sa.String(100), nullable=True),
        sa.Column('synced_at', sa.DateTime(), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_triggers_trigger_code', 'triggers', ['trigger_code'], unique=True)
    op.create_index('ix_triggers_trigger_type', 'triggers', ['trigger_type'])
    op.create_index('ix_triggers_is_enabled', 'triggers', ['is_enabled'])

    op.create_table(
        'trigger_coverage',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('trigger_id', sa.Integer(), sa.ForeignKey('triggers.id', ondelete='CASCADE'), nullable=False),
        sa.Column('insurance_bin', sa.String(20), nullable=False),
        sa.Column('insurance_group', sa.String(50), nullable=True),
        sa.Column('group_key', sa.String(50), nullable=False, server_default=''),
        sa.Column('coverage_status', sa.String(20), nullable=False, server_default='unknown'),
        sa.Column('gp_value', sa.Numeric(10, 2), nullable=True),
        sa.Column('avg_qty', sa.Numeric(10, 2), nullable=True),
        sa.Column('verified_claim_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('best_drug_name', sa.String(255), nullable=True),
        sa.Column('best_ndc', sa.String(20), nullable=True),
        sa.Column('verified_at', sa.DateTime(), nullable=True),
        sa.Column('is_manual_override', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('manual_gp_value', sa.Numeric(10, 2), nullable=True),
        sa.Column('manual_ndc', sa.String(20), nullable=True),
        sa.Column('manual_drug_name', sa.String(255), nullable=True),
        sa.Column('manual_note', sa.String(500), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('trigger_id', 'insurance_bin', 'group_key', name='uq_trigger_coverage_segment'),
    )
    op.create_index('ix_trigger_coverage_trigger_id', 'trigger_coverage', ['trigger_id'])
    op.create_index('ix_trigger_coverage_insurance_bin', 'trigger_coverage', ['insurance_bin'])

    op.create_table(
        'opportunities',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('pharmacy_id', sa.Integer(), sa.ForeignKey('pharmacies.id'), nullable=False),
        sa.Column('patient_id', sa.Integer(), sa.ForeignKey('patients.id'), nullable=False),
        sa.Column('prescription_id', sa.Integer(), sa.ForeignKey('prescriptions.id'), nullable=True),
        sa.Column('trigger_id', sa.Integer(), sa.ForeignKey('triggers.id', ondelete='SET NULL'), nullable=True),
        sa.Column('trigger_class', sa.String(100), nullable=False),
        sa.Column('opportunity_type', sa.String(50), nullable=False),
        sa.Column('current_drug_name', sa.String(255), nullable=False),
        sa.Column('current_drug_key', sa.String(255), nullable=False),
        sa.Column('current_ndc', sa.String(20), nullable=True),
        sa.Column('recommended_drug_name', sa.String(255), nullable=True),
        sa.Column('recommended_ndc', sa.String(20), nullable=True),
        sa.Column('potential_margin_gain', sa.Numeric(10, 2), nullable=False),
        sa.Column('annual_margin_gain', sa.Numeric(12, 2), nullable=False),
        sa.Column('avg_dispensed_qty', sa.Numeric(10, 2), nullable=True),
        sa.Column('insurance_bin', sa.String(20), nullable=True),
        sa.Column('insurance_group', sa.String(50), nullable=True),
        sa.Column('price_source', sa.String(20), nullable=False),
        sa.Column('clinical_rationale', sa.Text(), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='Not Submitted'),
        sa.Column('staff_notes', sa.Text(), nullable=True),
        sa.Column('scan_batch_id', sa.String(64), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            'pharmacy_id', 'patient_id', 'trigger_class', 'current_drug_key',
            name='uq_opportunities_dedup',
        ),
    )
    op.create_index('ix_opportunities_pharmacy_id', 'opportunities', ['pharmacy_id'])
    op.create_index('ix_opportunities_patient_id', 'opportunities', ['patient_id'])
    op.create_index('ix_opportunities_trigger_id', 'opportunities', ['trigger_id'])
    op.create_index('ix_opportunities_status', 'opportunities', ['status'])
    op.create_index('ix_opportunities_scan_batch_id', 'opportunities', ['scan_batch_id'])

    op.create_table(
        'scan_runs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('batch_id', sa.String(64), nullable=False),
        sa.Column('scan_type', sa.String(30), nullable=False),
        sa.Column('scope', postgresql.JSONB(), nullable=True),
        sa.Column('started_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='running'),
        sa.Column('duration_seconds', sa.Float(), nullable=True),
        sa.Column('stats', postgresql.JSONB(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
    )
    op.create_index('ix_scan_runs_batch_id', 'scan_runs', ['batch_id'], unique=True)
    op.create_index('ix_scan_runs_scan_type', 'scan_runs', ['scan_type'])

    op.create_table(
        'audit_log',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('event_id', sa.String(36), nullable=False),
        sa.Column('event_type', sa.String(40), nullable=False),
        sa.Column('actor', sa.String(100), nullable=False),
        sa.Column('action', sa.String(500), nullable=False),
        sa.Column('resource_type', sa.String(30), nullable=True),
        sa.Column('resource_id', sa.String(50), nullable=True),
        sa.Column('details', postgresql.JSONB(), nullable=False, server_default='{}'),
        sa.Column('previous_hash', sa.String(64), nullable=True),
        sa.Column('current_hash', sa.String(64), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_audit_log_event_id', 'audit_log', ['event_id'], unique=True)
    op.create_index('ix_audit_log_event_type', 'audit_log', ['event_type'])
    op.create_index('ix_audit_log_created_at', 'audit_log', ['created_at'])


def downgrade() -> None:
    op.drop_table('audit_log')
    op.drop_table('scan_runs')
    op.drop_table('opportunities')
    op.drop_table('trigger_coverage')
    op.drop_table('triggers')
    op.drop_table('prescriptions')
    op.drop_table('patients')
    op.drop_table('pharmacies')
