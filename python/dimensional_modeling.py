# PHASE 3: DIMENSIONAL MODELING (dimensions, encounter fact, readmissions, bridges)
import pandas as pd
import logging

from config import READMISSION_WINDOW_DAYS, INPATIENT_ENCOUNTER_TYPE, LOG_FORMAT
from transform import DataTransformer, encode_date_key, resolve_surrogate_keys

logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)

# dimension table -> (natural key, surrogate key)
DIMENSION_KEYS = {
    'dim_specialty': ('specialty_id', 'specialty_key'),
    'dim_department': ('department_id', 'department_key'),
    'dim_provider': ('provider_id', 'provider_key'),
    'dim_patient': ('patient_id', 'patient_key'),
    'dim_diagnoses': ('diagnosis_id', 'diagnosis_key'),
    'dim_procedures': ('procedure_id', 'procedure_key'),
    'dim_encounter_type': ('encounter_type_name', 'encounter_type_key'),
    'dim_date': ('full_date', 'date_key'),
}

# Every one of these must resolve for an encounter to become a fact row
FACT_DIMENSIONS = ['dim_patient', 'dim_provider', 'dim_specialty', 'dim_department', 'dim_encounter_type']

FACT_COLUMNS = [
    'encounter_key', 'encounter_id', 'date_key', 'patient_key', 'provider_key', 'specialty_key',
    'department_key', 'encounter_type_key', 'is_readmission', 'total_claim_amount',
    'total_allowed_amount', 'length_of_stay_days', 'diagnosis_count', 'procedure_count'
]

BRIDGE_LINKS = {
    'bridge_encounter_diagnoses': ('encounter_diagnoses', 'dim_diagnoses', 'diagnosis_sequence'),
    'bridge_encounter_procedures': ('encounter_procedures', 'dim_procedures', 'procedure_date'),
}


class DimensionLoadError(RuntimeError):
    """Raised after every dimension was attempted and at least one of them failed."""
    def __init__(self, failures: dict):
        self.failures = failures
        details = '; '.join(f"{name}: {err}" for name, err in failures.items())
        super().__init__(f"Failed to load {len(failures)} dimension(s): {details}")


class DimensionalModeler:
    """Builds the healthtech_olap star schema from the standardized OLTP tables."""

    def __init__(self, transformer: DataTransformer = None):
        self.transformer = transformer or DataTransformer()

    def create_dimension_tables(self, source_data: dict, as_of=None, on_loaded=None) -> dict:
        """
        Builds all eight dimensions. They do not depend on each other, so a failing
        one does not stop the rest; the failures are raised together at the end.
        `on_loaded(name, rows)` is called after each successful dimension.
        """
        logging.info("Assembling all dimension tables...")
        dimensions, failures = {}, {}
        for name in DIMENSION_KEYS:
            builder = getattr(self.transformer, f"build_{name}")
            try:
                dimensions[name] = builder(source_data, as_of=as_of)
            except Exception as e:
                logging.error(f"  > FAILED to build '{name}'. Error: {e}", exc_info=True)
                failures[name] = e
                continue
            logging.info(f"  > Built '{name}' with {len(dimensions[name])} rows.")
            if on_loaded is not None:
                on_loaded(name, len(dimensions[name]))

        if failures:
            raise DimensionLoadError(failures)
        logging.info("  > All dimension tables created successfully.")
        return dimensions

    def build_encounter_metrics(self, source_data: dict) -> pd.DataFrame:
        """
        One row per dated encounter with its specialty, distinct diagnosis/procedure
        counts and billing sums. Each detail table is aggregated on its own before
        the join, so multiple diagnoses, procedures and billing lines never multiply
        each other. Billing sums stay null when an encounter has no billing.
        """
        logging.info("Aggregating per-encounter metrics...")
        encounters = source_data['encounters']
        encounters = encounters[encounters['encounter_date'].notna()]
        cols = ['encounter_id', 'patient_id', 'provider_id', 'department_id', 'encounter_type',
                'encounter_type_name', 'encounter_date', 'discharge_date']
        providers = source_data['providers'][['provider_id', 'specialty_id']].drop_duplicates(subset='provider_id')
        metrics = pd.merge(encounters[cols], providers, on='provider_id', how='inner')

        diagnosis_counts = (source_data['encounter_diagnoses'].groupby('encounter_id')['diagnosis_id']
                            .nunique().rename('diagnosis_count').reset_index())
        procedure_counts = (source_data['encounter_procedures'].groupby('encounter_id')['procedure_id']
                            .nunique().rename('procedure_count').reset_index())
        billing_sums = (source_data['billing'].groupby('encounter_id')[['claim_amount', 'allowed_amount']]
                        .sum(min_count=1)
                        .rename(columns={'claim_amount': 'total_claim_amount', 'allowed_amount': 'total_allowed_amount'})
                        .reset_index())

        for detail in (diagnosis_counts, procedure_counts, billing_sums):
            metrics = pd.merge(metrics, detail, on='encounter_id', how='left')

        logging.info(f"  > Aggregated metrics for {len(metrics)} encounters.")
        return metrics

    def create_fact_table(self, metrics: pd.DataFrame, dimensions: dict) -> pd.DataFrame:
        """Resolves the dimension keys of every aggregated encounter and projects fact_encounters."""
        logging.info("Assembling fact_encounters...")
        fact = metrics.copy()
        for dim_name in FACT_DIMENSIONS:
            natural_key, key_column = DIMENSION_KEYS[dim_name]
            fact = resolve_surrogate_keys(fact, dimensions[dim_name], natural_key, key_column)

        excluded = len(metrics) - len(fact)
        if excluded:
            logging.info(f"  > Excluded {excluded} encounters with unresolved dimension keys.")

        fact['date_key'] = encode_date_key(fact['encounter_date'])
        discharge = fact['discharge_date'].fillna(fact['encounter_date'])
        fact['length_of_stay_days'] = (discharge.dt.normalize() - fact['encounter_date'].dt.normalize()).dt.days.astype('int64')
        for col in ['total_claim_amount', 'total_allowed_amount']:
            fact[col] = fact[col].fillna(0.0).astype(float)
        for col in ['diagnosis_count', 'procedure_count']:
            fact[col] = fact[col].fillna(0).astype('int64')
        fact['is_readmission'] = 0

        fact = fact.sort_values('encounter_id', kind='mergesort').reset_index(drop=True)
        fact['encounter_key'] = fact.index + 1
        logging.info(f"  > fact_encounters created with {len(fact)} rows.")
        return fact[FACT_COLUMNS]

    def flag_readmissions(self, fact: pd.DataFrame, encounters: pd.DataFrame,
                          window_days: int = READMISSION_WINDOW_DAYS) -> pd.DataFrame:
        """
        Marks a fact row as a readmission when the same patient had an INPATIENT
        encounter in [encounter_date - window_days, encounter_date). The current
        encounter may be of any type. Each patient's history is scanned once in
        date order (merge_asof picks the latest earlier inpatient stay).
        """
        logging.info(f"Flagging {window_days}-day readmissions...")
        fact = fact.copy()
        history = encounters.loc[encounters['encounter_date'].notna() & encounters['patient_id'].notna(),
                                 ['encounter_id', 'patient_id', 'encounter_type_name', 'encounter_date']]
        current = pd.merge(fact[['encounter_id']], history[['encounter_id', 'patient_id', 'encounter_date']],
                           on='encounter_id', how='inner')
        prior = (history.loc[history['encounter_type_name'] == INPATIENT_ENCOUNTER_TYPE, ['patient_id', 'encounter_date']]
                 .rename(columns={'encounter_date': 'prior_inpatient_date'}))

        if current.empty or prior.empty:
            fact['is_readmission'] = 0
            logging.info("  > No inpatient history to compare against; 0 readmissions.")
            return fact

        matched = pd.merge_asof(
            current.sort_values('encounter_date', kind='mergesort'),
            prior.sort_values('prior_inpatient_date', kind='mergesort'),
            left_on='encounter_date', right_on='prior_inpatient_date', by='patient_id',
            direction='backward', allow_exact_matches=False, tolerance=pd.Timedelta(days=window_days),
        )
        readmitted = set(matched.loc[matched['prior_inpatient_date'].notna(), 'encounter_id'])
        fact['is_readmission'] = fact['encounter_id'].isin(readmitted).astype(int)
        logging.info(f"  > Flagged {int(fact['is_readmission'].sum())} readmissions out of {len(fact)} encounters.")
        return fact

    def create_bridge_tables(self, source_data: dict, fact: pd.DataFrame, dimensions: dict) -> dict:
        """Links fact rows to their diagnoses and procedures. Links of encounters without a fact row are skipped."""
        logging.info("Assembling bridge tables...")
        encounter_keys = fact[['encounter_id', 'encounter_key']]
        bridges = {}
        for bridge_name, (link_table, dim_name, attribute) in BRIDGE_LINKS.items():
            natural_key, key_column = DIMENSION_KEYS[dim_name]
            links = resolve_surrogate_keys(source_data[link_table], encounter_keys, 'encounter_id', 'encounter_key')
            links = resolve_surrogate_keys(links, dimensions[dim_name], natural_key, key_column)
            bridges[bridge_name] = (links[['encounter_key', key_column, attribute]]
                                    .sort_values(['encounter_key', key_column], kind='mergesort')
                                    .reset_index(drop=True))
            logging.info(f"  > '{bridge_name}' created with {len(bridges[bridge_name])} rows.")
        return bridges

    def validate_schema(self, facts: dict, dimensions: dict, bridges: dict) -> list:
        """Checks surrogate key uniqueness and referential integrity. Returns the failed checks."""
        logging.info("Performing data validation on the new star schema...")
        failures = []

        for name, (natural_key, key_column) in DIMENSION_KEYS.items():
            dim = dimensions.get(name, pd.DataFrame(columns=[natural_key, key_column]))
            duplicates = int(dim[key_column].duplicated().sum() + dim[natural_key].duplicated().sum())
            if duplicates:
                failures.append(f"{name}: {duplicates} duplicated keys")

        fact = facts.get('fact_encounters', pd.DataFrame(columns=FACT_COLUMNS))
        for dim_name in FACT_DIMENSIONS + ['dim_date']:
            key_column = DIMENSION_KEYS[dim_name][1]
            valid_keys = dimensions.get(dim_name, pd.DataFrame(columns=[key_column]))[key_column]
            orphaned = int((~fact[key_column].isin(valid_keys)).sum())
            if orphaned:
                failures.append(f"fact_encounters.{key_column}: {orphaned} orphaned rows")

        for bridge_name, (_, dim_name, _) in BRIDGE_LINKS.items():
            bridge = bridges.get(bridge_name)
            if bridge is None: continue
            key_column = DIMENSION_KEYS[dim_name][1]
            orphaned = int((~bridge['encounter_key'].isin(fact['encounter_key'])).sum()
                           + (~bridge[key_column].isin(dimensions[dim_name][key_column])).sum())
            if orphaned:
                failures.append(f"{bridge_name}: {orphaned} orphaned rows")

        if failures:
            for failure in failures:
                logging.error(f"  > VALIDATION FAILED: {failure}")
        else:
            logging.info("  >  Referential Integrity Check PASSED: No orphaned or duplicated keys found.")
        return failures


def run_modeling(source_data: dict, as_of=None, on_phase=None):
    """
    Main orchestrator for the modeling phase.
    `on_phase(phase, rows)` is called at every phase boundary.
    Returns (dimensions, facts, bridges).
    """
    notify = on_phase or (lambda phase, rows=None: None)
    modeler = DimensionalModeler()
    dimensions = modeler.create_dimension_tables(
        source_data, as_of=as_of,
        on_loaded=lambda name, rows: notify(f"{name.upper()}_LOADED", rows))
    notify('ALL_DIMENSIONS_LOADED', sum(len(df) for df in dimensions.values()))

    metrics = modeler.build_encounter_metrics(source_data)
    notify('STAGING_TABLE_CREATED', len(metrics))

    fact = modeler.create_fact_table(metrics, dimensions)
    notify('FACT_TABLE_LOADED', len(fact))

    fact = modeler.flag_readmissions(fact, source_data['encounters'])
    notify('READMISSIONS_FLAGGED', int(fact['is_readmission'].sum()))

    bridges = modeler.create_bridge_tables(source_data, fact, dimensions)
    notify('BRIDGES_LOADED', sum(len(df) for df in bridges.values()))

    facts = {'fact_encounters': fact}
    failures = modeler.validate_schema(facts, dimensions, bridges)
    if failures:
        raise ValueError(f"Star schema validation failed: {'; '.join(failures)}")
    notify('SCHEMA_VALIDATED', len(fact))
    return dimensions, facts, bridges
