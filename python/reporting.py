# ANALYTICS QUERIES against the published healthtech_olap star schema
import pandas as pd
import logging
from sqlalchemy import text

from config import INPATIENT_ENCOUNTER_TYPE, LOG_FORMAT

logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)

MONTHLY_ENCOUNTERS_BY_SPECIALTY = """
SELECT
    d.year AS encounter_year,
    d.month AS encounter_month,
    d.month_name,
    s.specialty_name,
    et.encounter_type_name,
    COUNT(*) AS total_encounters,
    COUNT(DISTINCT f.patient_key) AS unique_patients
FROM fact_encounters f
INNER JOIN dim_date d ON f.date_key = d.date_key
INNER JOIN dim_specialty s ON f.specialty_key = s.specialty_key
INNER JOIN dim_encounter_type et ON f.encounter_type_key = et.encounter_type_key
GROUP BY d.year, d.month, d.month_name, s.specialty_name, et.encounter_type_name
ORDER BY d.year DESC, d.month DESC, s.specialty_name, et.encounter_type_name
"""

TOP_DIAGNOSIS_PROCEDURE_PAIRS = """
SELECT
    dx.icd10_code,
    dx.icd10_description,
    pr.cpt_code,
    pr.cpt_description,
    COUNT(DISTINCT bed.encounter_key) AS encounter_count
FROM bridge_encounter_diagnoses bed
INNER JOIN bridge_encounter_procedures bep ON bed.encounter_key = bep.encounter_key
INNER JOIN dim_diagnoses dx ON bed.diagnosis_key = dx.diagnosis_key
INNER JOIN dim_procedures pr ON bep.procedure_key = pr.procedure_key
GROUP BY dx.icd10_code, dx.icd10_description, pr.cpt_code, pr.cpt_description
HAVING COUNT(DISTINCT bed.encounter_key) >= :min_encounters
ORDER BY encounter_count DESC, dx.icd10_code, pr.cpt_code
LIMIT :limit
"""

# Rate reporting counts INPATIENT index encounters only; the is_readmission flag itself is not type-restricted
READMISSION_RATE_BY_SPECIALTY = """
SELECT
    s.specialty_name,
    COUNT(*) AS total_inpatient_encounters,
    SUM(f.is_readmission) AS readmissions,
    ROUND(100.0 * SUM(f.is_readmission) / COUNT(*), 2) AS readmission_rate_pct
FROM fact_encounters f
INNER JOIN dim_specialty s ON f.specialty_key = s.specialty_key
INNER JOIN dim_encounter_type et ON f.encounter_type_key = et.encounter_type_key
WHERE et.encounter_type_name = :encounter_type
GROUP BY s.specialty_name
HAVING COUNT(*) >= :min_volume
ORDER BY readmission_rate_pct DESC, s.specialty_name
"""

REVENUE_BY_SPECIALTY_AND_MONTH = """
SELECT
    d.year,
    d.month,
    d.month_name,
    s.specialty_name,
    COUNT(*) AS total_encounters,
    SUM(CASE WHEN f.total_claim_amount > 0 THEN 1 ELSE 0 END) AS encounters_with_billing,
    SUM(f.total_claim_amount) AS total_claimed,
    SUM(f.total_allowed_amount) AS total_allowed,
    ROUND(100.0 * SUM(CASE WHEN f.total_claim_amount > 0 THEN 1 ELSE 0 END) / COUNT(*), 2) AS billing_rate_pct
FROM fact_encounters f
INNER JOIN dim_date d ON f.date_key = d.date_key
INNER JOIN dim_specialty s ON f.specialty_key = s.specialty_key
WHERE d.year = :year
GROUP BY d.year, d.month, d.month_name, s.specialty_name
ORDER BY d.month, total_allowed DESC, s.specialty_name
"""


def _run_query(engine, query: str, **params) -> pd.DataFrame:
    with engine.connect() as connection:
        df = pd.read_sql(text(query), connection, params=params)
    logging.info(f"  > Report returned {len(df)} rows.")
    return df


def monthly_encounters_by_specialty(engine) -> pd.DataFrame:
    return _run_query(engine, MONTHLY_ENCOUNTERS_BY_SPECIALTY)


def top_diagnosis_procedure_pairs(engine, min_encounters: int = 2, limit: int = 20) -> pd.DataFrame:
    return _run_query(engine, TOP_DIAGNOSIS_PROCEDURE_PAIRS, min_encounters=min_encounters, limit=limit)


def readmission_rate_by_specialty(engine, min_volume: int = 10) -> pd.DataFrame:
    """30-day readmission rate per specialty over inpatient encounters, for specialties with enough volume."""
    return _run_query(engine, READMISSION_RATE_BY_SPECIALTY,
                      encounter_type=INPATIENT_ENCOUNTER_TYPE, min_volume=min_volume)


def revenue_by_specialty_and_month(engine, year: int) -> pd.DataFrame:
    return _run_query(engine, REVENUE_BY_SPECIALTY_AND_MONTH, year=year)
