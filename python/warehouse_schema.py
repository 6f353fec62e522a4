# TARGET SCHEMA: healthtech_olap star schema & ETL control log
from sqlalchemy import (
    MetaData, Table, Column, Integer, BigInteger, String, Text, Date, DateTime, Numeric,
    ForeignKey, PrimaryKeyConstraint
)

STAR_SCHEMA_METADATA = MetaData()
# etl_control has its own metadata so a full refresh never touches the run history
CONTROL_METADATA = MetaData()

AMOUNT = Numeric(12, 2, asdecimal=False)

dim_specialty = Table(
    'dim_specialty', STAR_SCHEMA_METADATA,
    Column('specialty_key', Integer, primary_key=True, autoincrement=False),
    Column('specialty_id', Integer, nullable=False, unique=True),
    Column('specialty_name', String(100)),
    Column('specialty_code', String(20)),
)

dim_department = Table(
    'dim_department', STAR_SCHEMA_METADATA,
    Column('department_key', Integer, primary_key=True, autoincrement=False),
    Column('department_id', Integer, nullable=False, unique=True),
    Column('department_name', String(100)),
    Column('floor', Integer),
    Column('capacity', Integer),
)

dim_provider = Table(
    'dim_provider', STAR_SCHEMA_METADATA,
    Column('provider_key', Integer, primary_key=True, autoincrement=False),
    Column('provider_id', Integer, nullable=False, unique=True),
    Column('full_name', String(201)),
    Column('credential', String(20)),
)

dim_patient = Table(
    'dim_patient', STAR_SCHEMA_METADATA,
    Column('patient_key', Integer, primary_key=True, autoincrement=False),
    Column('patient_id', Integer, nullable=False, unique=True),
    Column('first_name', String(100)),
    Column('last_name', String(100)),
    Column('gender', String(10)),
    Column('date_of_birth', Date),
    Column('mrn', String(20)),
    Column('current_age', Integer),
    Column('age_group', String(10)),
)

dim_diagnoses = Table(
    'dim_diagnoses', STAR_SCHEMA_METADATA,
    Column('diagnosis_key', Integer, primary_key=True, autoincrement=False),
    Column('diagnosis_id', Integer, nullable=False, unique=True),
    Column('icd10_code', String(10)),
    Column('icd10_description', String(200)),
)

dim_procedures = Table(
    'dim_procedures', STAR_SCHEMA_METADATA,
    Column('procedure_key', Integer, primary_key=True, autoincrement=False),
    Column('procedure_id', Integer, nullable=False, unique=True),
    Column('cpt_code', String(10)),
    Column('cpt_description', String(200)),
)

dim_encounter_type = Table(
    'dim_encounter_type', STAR_SCHEMA_METADATA,
    Column('encounter_type_key', Integer, primary_key=True, autoincrement=False),
    Column('encounter_type_name', String(50), nullable=False, unique=True),
)

dim_date = Table(
    'dim_date', STAR_SCHEMA_METADATA,
    Column('date_key', Integer, primary_key=True, autoincrement=False),
    Column('full_date', Date, nullable=False, unique=True),
    Column('year', Integer),
    Column('quarter', Integer),
    Column('month', Integer),
    Column('month_name', String(10)),
    Column('week_of_year', Integer),
    Column('day_of_month', Integer),
    Column('day_name', String(10)),
    Column('is_weekend', Integer),
)

fact_encounters = Table(
    'fact_encounters', STAR_SCHEMA_METADATA,
    Column('encounter_key', BigInteger, primary_key=True, autoincrement=False),
    Column('encounter_id', Integer, nullable=False, unique=True),
    Column('date_key', Integer, ForeignKey('dim_date.date_key'), index=True),
    Column('patient_key', Integer, ForeignKey('dim_patient.patient_key'), index=True),
    Column('provider_key', Integer, ForeignKey('dim_provider.provider_key'), index=True),
    Column('specialty_key', Integer, ForeignKey('dim_specialty.specialty_key'), index=True),
    Column('department_key', Integer, ForeignKey('dim_department.department_key'), index=True),
    Column('encounter_type_key', Integer, ForeignKey('dim_encounter_type.encounter_type_key'), index=True),
    Column('is_readmission', Integer, nullable=False, default=0),
    Column('total_claim_amount', AMOUNT),
    Column('total_allowed_amount', AMOUNT),
    Column('length_of_stay_days', Integer),
    Column('diagnosis_count', Integer),
    Column('procedure_count', Integer),
)

bridge_encounter_diagnoses = Table(
    'bridge_encounter_diagnoses', STAR_SCHEMA_METADATA,
    Column('encounter_key', BigInteger, ForeignKey('fact_encounters.encounter_key')),
    Column('diagnosis_key', Integer, ForeignKey('dim_diagnoses.diagnosis_key')),
    Column('diagnosis_sequence', Integer),
    PrimaryKeyConstraint('encounter_key', 'diagnosis_key'),
)

bridge_encounter_procedures = Table(
    'bridge_encounter_procedures', STAR_SCHEMA_METADATA,
    Column('encounter_key', BigInteger, ForeignKey('fact_encounters.encounter_key')),
    Column('procedure_key', Integer, ForeignKey('dim_procedures.procedure_key')),
    Column('procedure_date', Date),
    PrimaryKeyConstraint('encounter_key', 'procedure_key'),
)

etl_control = Table(
    'etl_control', CONTROL_METADATA,
    Column('etl_run_id', Integer, primary_key=True, autoincrement=True),
    Column('run_start_datetime', DateTime),
    Column('run_end_datetime', DateTime),
    Column('status', String(20)),
    Column('records_processed', Integer),
    Column('error_message', Text),
    Column('etl_phase', String(50)),
)

# Load order (dimensions before the fact, the fact before its bridges)
STAR_SCHEMA_TABLES = [table.name for table in STAR_SCHEMA_METADATA.sorted_tables]
