from datetime import date

import pandas as pd
import pytest
from sqlalchemy import create_engine

from transform import DataTransformer
from dimensional_modeling import DimensionalModeler

AS_OF = date(2025, 1, 1)


def _encounter(encounter_id, patient_id, provider_id, department_id, encounter_type, encounter_date, discharge_date=None):
    return {
        'encounter_id': encounter_id, 'patient_id': patient_id, 'provider_id': provider_id,
        'department_id': department_id, 'encounter_type': encounter_type,
        'encounter_date': encounter_date, 'discharge_date': discharge_date,
    }


def make_raw_source() -> dict:
    """A small OLTP snapshot shaped like what run_extraction returns from SQLite."""
    encounters = pd.DataFrame([
        _encounter(1001, 1, 100, 10, 'Inpatient', '2024-01-01 08:00:00', '2024-01-03 10:00:00'),
        _encounter(1002, 1, 100, 10, ' inpatient ', '2024-01-20 09:00:00'),
        _encounter(1003, 1, 101, 20, 'Outpatient', '2024-02-19 09:00:00', '2024-02-19 11:00:00'),
        _encounter(1004, 2, 101, 20, 'Outpatient', '2024-03-01 09:00:00'),
        _encounter(1005, 2, 101, 20, 'Emergency', '2024-03-05 22:00:00', '2024-03-06 02:00:00'),
        _encounter(1006, 3, 100, 10, 'Inpatient', '2024-04-01 00:00:00', '2024-04-05 00:00:00'),
        _encounter(1007, 3, 100, 10, 'Outpatient', '2024-05-02 00:00:00'),
        # patient without a date of birth
        _encounter(1008, 4, 100, 10, 'Inpatient', '2024-04-10 00:00:00', '2024-04-12 00:00:00'),
        # provider whose specialty does not exist
        _encounter(1009, 3, 102, 10, 'Outpatient', '2024-04-15 00:00:00'),
        # no encounter date
        _encounter(1010, 2, 101, 20, 'Inpatient', None),
        # unknown department
        _encounter(1011, 1, 100, 99, 'Inpatient', '2024-02-01 00:00:00', '2024-02-02 00:00:00'),
    ])
    patients = pd.DataFrame([
        {'patient_id': 1, 'first_name': 'Ana', 'last_name': 'Lopez', 'gender': 'f', 'date_of_birth': '1980-06-15', 'mrn': 'MRN001'},
        {'patient_id': 2, 'first_name': 'Ben', 'last_name': 'Ng', 'gender': 'M', 'date_of_birth': '2010-01-01', 'mrn': 'MRN002'},
        {'patient_id': 3, 'first_name': 'Cora', 'last_name': 'Hill', 'gender': 'F', 'date_of_birth': '1950-01-02', 'mrn': 'MRN003'},
        {'patient_id': 4, 'first_name': 'Dan', 'last_name': 'Roe', 'gender': 'm', 'date_of_birth': None, 'mrn': 'MRN004'},
    ])
    providers = pd.DataFrame([
        {'provider_id': 100, 'first_name': ' John ', 'last_name': 'Smith', 'credential': 'md', 'specialty_id': 1},
        {'provider_id': 101, 'first_name': 'Jane', 'last_name': 'Doe', 'credential': None, 'specialty_id': 2},
        {'provider_id': 102, 'first_name': 'Gus', 'last_name': 'Grey', 'credential': 'DO', 'specialty_id': 99},
    ])
    specialties = pd.DataFrame([
        {'specialty_id': 1, 'specialty_name': 'Cardiology', 'specialty_code': 'CARD'},
        {'specialty_id': 2, 'specialty_name': 'Orthopedics', 'specialty_code': 'ORTH'},
    ])
    departments = pd.DataFrame([
        {'department_id': 10, 'department_name': 'Cardiac ICU', 'floor': 3, 'capacity': 20},
        {'department_id': 20, 'department_name': 'Ortho Clinic', 'floor': 1, 'capacity': 40},
    ])
    diagnoses = pd.DataFrame([
        {'diagnosis_id': 1, 'icd10_code': 'I10', 'icd10_description': 'Essential hypertension'},
        {'diagnosis_id': 2, 'icd10_code': 'E11.9', 'icd10_description': 'Type 2 diabetes'},
        {'diagnosis_id': 3, 'icd10_code': 'J18.9', 'icd10_description': 'Pneumonia'},
    ])
    procedures = pd.DataFrame([
        {'procedure_id': 1, 'cpt_code': '99223', 'cpt_description': 'Initial hospital care'},
        {'procedure_id': 2, 'cpt_code': '71046', 'cpt_description': 'Chest X-ray'},
        {'procedure_id': 3, 'cpt_code': '93000', 'cpt_description': 'Electrocardiogram'},
    ])
    encounter_diagnoses = pd.DataFrame([
        {'encounter_id': 1001, 'diagnosis_id': 1, 'diagnosis_sequence': 1},
        {'encounter_id': 1001, 'diagnosis_id': 2, 'diagnosis_sequence': 2},
        {'encounter_id': 1002, 'diagnosis_id': 3, 'diagnosis_sequence': 1},
        {'encounter_id': 1004, 'diagnosis_id': 2, 'diagnosis_sequence': 1},
        {'encounter_id': 1008, 'diagnosis_id': 1, 'diagnosis_sequence': 1},
    ])
    encounter_procedures = pd.DataFrame([
        {'encounter_id': 1001, 'procedure_id': 1, 'procedure_date': '2024-01-01'},
        {'encounter_id': 1001, 'procedure_id': 2, 'procedure_date': '2024-01-02'},
        {'encounter_id': 1001, 'procedure_id': 3, 'procedure_date': '2024-01-02'},
        {'encounter_id': 1002, 'procedure_id': 1, 'procedure_date': '2024-01-20'},
        {'encounter_id': 1009, 'procedure_id': 2, 'procedure_date': '2024-04-15'},
    ])
    billing = pd.DataFrame([
        {'billing_id': 1, 'encounter_id': 1001, 'claim_amount': 500.0, 'allowed_amount': 400.0, 'claim_date': '2024-01-05'},
        {'billing_id': 2, 'encounter_id': 1001, 'claim_amount': 250.5, 'allowed_amount': 200.0, 'claim_date': '2024-01-06'},
        {'billing_id': 3, 'encounter_id': 1002, 'claim_amount': 1000.0, 'allowed_amount': None, 'claim_date': '2024-01-25'},
        {'billing_id': 4, 'encounter_id': 1008, 'claim_amount': 300.0, 'allowed_amount': 200.0, 'claim_date': '2024-04-15'},
    ])
    return {
        'encounters': encounters, 'patients': patients, 'providers': providers,
        'specialties': specialties, 'departments': departments, 'diagnoses': diagnoses,
        'procedures': procedures, 'encounter_diagnoses': encounter_diagnoses,
        'encounter_procedures': encounter_procedures, 'billing': billing,
    }


@pytest.fixture
def raw_source():
    return make_raw_source()


@pytest.fixture
def source_data(raw_source):
    return DataTransformer().standardize_source(raw_source)


@pytest.fixture
def modeler():
    return DimensionalModeler()


@pytest.fixture
def dimensions(modeler, source_data):
    return modeler.create_dimension_tables(source_data, as_of=AS_OF)


@pytest.fixture
def source_engine(tmp_path, raw_source):
    engine = create_engine(f"sqlite:///{tmp_path / 'healthtech_oltp.db'}")
    for name, df in raw_source.items():
        df.to_sql(name, engine, index=False)
    yield engine
    engine.dispose()


@pytest.fixture
def target_engine(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'healthtech_olap.db'}")
    yield engine
    engine.dispose()


@pytest.fixture
def staging_dir(tmp_path):
    return str(tmp_path / 'staging')


@pytest.fixture
def as_of():
    return AS_OF
