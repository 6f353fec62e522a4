# PHASE 2: SOURCE STANDARDIZATION & DIMENSION TRANSFORMS
import pandas as pd
import numpy as np
import logging
from datetime import date

from config import UNKNOWN_CREDENTIAL, LOG_FORMAT

logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)

# Date/time columns parsed on every run, keyed by source table
SOURCE_DATE_COLUMNS = {
    'encounters': ['encounter_date', 'discharge_date'],
    'patients': ['date_of_birth'],
    'encounter_procedures': ['procedure_date'],
    'billing': ['claim_date'],
}
# DECIMAL columns arrive as Decimal objects from MySQL
SOURCE_NUMERIC_COLUMNS = {
    'billing': ['claim_amount', 'allowed_amount'],
}

AGE_GROUP_MINOR, AGE_GROUP_ADULT, AGE_GROUP_SENIOR = '<18', '18-65', '>65'


def normalize_text(series: pd.Series) -> pd.Series:
    """Trims and upper-cases a text column, leaving nulls untouched."""
    return series.where(series.isna(), series.astype(str).str.strip().str.upper())


def convert_column(series: pd.Series, table_name: str, converter) -> pd.Series:
    """Applies a coercing converter and raises if any non-null source value came out null."""
    converted = converter(series)
    bad = series.notna() & converted.isna()
    if bad.any():
        examples = ', '.join(repr(v) for v in series[bad].unique()[:3])
        message = f"Could not convert {int(bad.sum())} value(s) in '{table_name}.{series.name}': {examples}"
        logging.error(f"  > {message}")
        raise ValueError(message)
    return converted


def encode_date_key(dates: pd.Series) -> pd.Series:
    return (dates.dt.year * 10000 + dates.dt.month * 100 + dates.dt.day).astype('int64')


def assign_surrogate_keys(df: pd.DataFrame, natural_key, key_column: str) -> pd.DataFrame:
    """
    Keeps one row per natural key and numbers the rows 1..n in natural-key order.
    Sorting first makes the assignment repeatable for an unchanged source.
    """
    keys = [natural_key] if isinstance(natural_key, str) else list(natural_key)
    members = (df.dropna(subset=keys)
                 .drop_duplicates(subset=keys)
                 .sort_values(keys, kind='mergesort')
                 .reset_index(drop=True))
    members.insert(0, key_column, members.index + 1)
    return members


def resolve_surrogate_keys(df: pd.DataFrame, dimension: pd.DataFrame, natural_key: str, key_column: str) -> pd.DataFrame:
    """Looks up a dimension key by exact natural-key match. Rows that do not resolve are dropped."""
    return pd.merge(df, dimension[[natural_key, key_column]], on=natural_key, how='inner')


class DataTransformer:
    """Cleans the extracted OLTP tables and shapes each one into its dimension."""

    def standardize_source(self, source_data: dict) -> dict:
        logging.info("Standardizing extracted source tables...")
        standardized = {name: df.copy() for name, df in source_data.items()}
        for table_name, columns in SOURCE_DATE_COLUMNS.items():
            df = standardized.get(table_name)
            if df is None: continue
            for col in columns:
                if col in df.columns:
                    df[col] = convert_column(df[col], table_name, lambda s: pd.to_datetime(s, format='ISO8601', errors='coerce'))
        for table_name, columns in SOURCE_NUMERIC_COLUMNS.items():
            df = standardized.get(table_name)
            if df is None: continue
            for col in columns:
                if col in df.columns:
                    df[col] = convert_column(df[col], table_name, lambda s: pd.to_numeric(s, errors='coerce'))
        if 'encounters' in standardized:
            encounters = standardized['encounters']
            encounters['encounter_type_name'] = normalize_text(encounters['encounter_type'])
        return standardized

    def build_dim_specialty(self, source_data: dict, as_of=None) -> pd.DataFrame:
        specialties = source_data['specialties'].reindex(columns=['specialty_id', 'specialty_name', 'specialty_code'])
        return assign_surrogate_keys(specialties, 'specialty_id', 'specialty_key')

    def build_dim_department(self, source_data: dict, as_of=None) -> pd.DataFrame:
        departments = source_data['departments'].reindex(columns=['department_id', 'department_name', 'floor', 'capacity'])
        return assign_surrogate_keys(departments, 'department_id', 'department_key')

    def build_dim_provider(self, source_data: dict, as_of=None) -> pd.DataFrame:
        providers = source_data['providers'].reindex(columns=['provider_id', 'first_name', 'last_name', 'credential'])
        first = providers['first_name'].fillna('').astype(str).str.strip()
        last = providers['last_name'].fillna('').astype(str).str.strip()
        providers['full_name'] = (first + ' ' + last).str.strip()
        providers['credential'] = providers['credential'].fillna(UNKNOWN_CREDENTIAL).astype(str).str.strip().str.upper()
        return assign_surrogate_keys(providers[['provider_id', 'full_name', 'credential']], 'provider_id', 'provider_key')

    def build_dim_patient(self, source_data: dict, as_of=None) -> pd.DataFrame:
        """Enriches patients with age and age band. Patients without a date of birth are left out."""
        cols = ['patient_id', 'first_name', 'last_name', 'gender', 'date_of_birth', 'mrn']
        patients = source_data['patients'].reindex(columns=cols)
        patients = patients[patients['date_of_birth'].notna()].copy()
        skipped = len(source_data['patients']) - len(patients)
        if skipped:
            logging.info(f"  > Excluded {skipped} patients with no date of birth.")

        as_of = pd.Timestamp(as_of or date.today())
        dob = patients['date_of_birth']
        had_birthday = (dob.dt.month < as_of.month) | ((dob.dt.month == as_of.month) & (dob.dt.day <= as_of.day))
        age = as_of.year - dob.dt.year - (~had_birthday).astype(int)

        patients['gender'] = normalize_text(patients['gender'])
        patients['current_age'] = age.astype('int64')
        patients['age_group'] = np.select([age < 18, age <= 65], [AGE_GROUP_MINOR, AGE_GROUP_ADULT], default=AGE_GROUP_SENIOR)
        return assign_surrogate_keys(patients, 'patient_id', 'patient_key')

    def build_dim_diagnoses(self, source_data: dict, as_of=None) -> pd.DataFrame:
        diagnoses = source_data['diagnoses'].reindex(columns=['diagnosis_id', 'icd10_code', 'icd10_description'])
        return assign_surrogate_keys(diagnoses, 'diagnosis_id', 'diagnosis_key')

    def build_dim_procedures(self, source_data: dict, as_of=None) -> pd.DataFrame:
        procedures = source_data['procedures'].reindex(columns=['procedure_id', 'cpt_code', 'cpt_description'])
        return assign_surrogate_keys(procedures, 'procedure_id', 'procedure_key')

    def build_dim_encounter_type(self, source_data: dict, as_of=None) -> pd.DataFrame:
        # Lookup derived from the values observed on encounters
        observed = source_data['encounters']['encounter_type_name'].dropna().drop_duplicates()
        return assign_surrogate_keys(pd.DataFrame({'encounter_type_name': observed}), 'encounter_type_name', 'encounter_type_key')

    def build_dim_date(self, source_data: dict, as_of=None) -> pd.DataFrame:
        all_dates = source_data['encounters']['encounter_date'].dropna().dt.normalize().drop_duplicates()
        dim_date = pd.DataFrame({'full_date': all_dates}).sort_values('full_date').reset_index(drop=True)
        full_date = dim_date['full_date']
        dim_date['date_key'] = encode_date_key(full_date)
        dim_date['year'] = full_date.dt.year
        dim_date['quarter'] = full_date.dt.quarter
        dim_date['month'] = full_date.dt.month
        dim_date['month_name'] = full_date.dt.month_name()
        dim_date['week_of_year'] = full_date.dt.isocalendar().week.astype('int64')
        dim_date['day_of_month'] = full_date.dt.day
        dim_date['day_name'] = full_date.dt.day_name()
        dim_date['is_weekend'] = (full_date.dt.dayofweek >= 5).astype(int)
        dim_cols = ['date_key', 'full_date', 'year', 'quarter', 'month', 'month_name', 'week_of_year', 'day_of_month', 'day_name', 'is_weekend']
        return dim_date[dim_cols]
