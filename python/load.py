# PHASE 4: STAGING & PUBLISHING (Parquet staging -> healthtech_olap, optional BigQuery mirror)
import pandas as pd
import logging
import os
import glob
from google.cloud import bigquery
from google.cloud.exceptions import NotFound
from sqlalchemy import BigInteger, Date, DateTime, Integer, Numeric, String

from config import BIGQUERY_PROJECT_ID, BIGQUERY_DATASET_ID, BIGQUERY_KEY_FILE_PATH, LOG_FORMAT
from warehouse_schema import STAR_SCHEMA_METADATA, STAR_SCHEMA_TABLES

logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)

BATCH_SIZE = 10000

# Checked in order, so subclasses (BigInteger, Text) resolve through their base
SQL_TO_BIGQUERY_TYPES = [
    (BigInteger, 'INTEGER'),
    (Integer, 'INTEGER'),
    (Numeric, 'FLOAT'),
    (DateTime, 'DATETIME'),
    (Date, 'DATE'),
    (String, 'STRING'),
]


def clear_staging(staging_dir: str) -> int:
    """Full-refresh cleanup: removes every Parquet file left by the previous run."""
    os.makedirs(staging_dir, exist_ok=True)
    stale_files = glob.glob(os.path.join(staging_dir, '*.parquet'))
    for path in stale_files:
        os.remove(path)
    logging.info(f"Cleared {len(stale_files)} staged files from {staging_dir}.")
    return len(stale_files)


def stage_tables(tables: dict, staging_dir: str) -> dict:
    logging.info(f"--- Saving all final data models to: {staging_dir} ---")
    os.makedirs(staging_dir, exist_ok=True)
    row_counts = {}
    for name, df in tables.items():
        path = os.path.join(staging_dir, f"{name}.parquet")
        df.to_parquet(path, index=False)
        row_counts[name] = len(df)
        logging.info(f"  > Saved {name} with {len(df)} rows.")
    return row_counts


def read_staged_tables(staging_dir: str) -> dict:
    files_to_load = {os.path.basename(f).replace('.parquet', ''): f
                     for f in glob.glob(os.path.join(staging_dir, '*.parquet'))}
    logging.info(f"Found {len(files_to_load)} Parquet files to load: {sorted(files_to_load)}")
    unknown = set(files_to_load) - set(STAR_SCHEMA_TABLES)
    for name in sorted(unknown):
        logging.warning(f"  > SKIPPING: No schema defined for table '{name}'.")
    return {name: pd.read_parquet(files_to_load[name]) for name in STAR_SCHEMA_TABLES if name in files_to_load}


def coerce_date_columns(df: pd.DataFrame, table_name: str) -> pd.DataFrame:
    """Turns timestamps into plain dates for the columns declared as DATE."""
    df = df.copy()
    for column in STAR_SCHEMA_METADATA.tables[table_name].columns:
        if isinstance(column.type, Date) and column.name in df.columns:
            df[column.name] = pd.to_datetime(df[column.name], errors='coerce').dt.date
    return df


def publish_to_warehouse(engine, tables: dict) -> dict:
    """
    Replaces the whole star schema inside one transaction: every table is emptied
    (bridges first) and reloaded (dimensions first), so readers see either the
    previous load or the new one.
    """
    missing = [name for name in STAR_SCHEMA_TABLES if name not in tables]
    if missing:
        raise ValueError(f"Cannot publish an incomplete star schema; missing: {', '.join(missing)}")

    STAR_SCHEMA_METADATA.create_all(engine)
    row_counts = {}
    with engine.begin() as conn:
        for name in reversed(STAR_SCHEMA_TABLES):
            conn.execute(STAR_SCHEMA_METADATA.tables[name].delete())
        for name in STAR_SCHEMA_TABLES:
            df = coerce_date_columns(tables[name], name)
            logging.info(f"  > Loading {len(df)} rows into '{name}'...")
            df.to_sql(name, conn, if_exists='append', index=False, chunksize=BATCH_SIZE)
            row_counts[name] = len(df)
    logging.info("<< STAR SCHEMA PUBLISHED >>")
    return row_counts


def bigquery_schema(table_name: str) -> list:
    fields = []
    for column in STAR_SCHEMA_METADATA.tables[table_name].columns:
        field_type = next(bq for sa_type, bq in SQL_TO_BIGQUERY_TYPES if isinstance(column.type, sa_type))
        fields.append(bigquery.SchemaField(column.name, field_type))
    return fields


class BigQueryPublisher:
    """Mirrors the staged star schema into a BigQuery dataset, truncating each table on load."""

    def __init__(self, client, project_id=BIGQUERY_PROJECT_ID, dataset_id=BIGQUERY_DATASET_ID):
        self.client = client
        self.project_id = project_id
        self.dataset_id = dataset_id

    @classmethod
    def from_service_account(cls, key_file_path=BIGQUERY_KEY_FILE_PATH, project_id=BIGQUERY_PROJECT_ID,
                             dataset_id=BIGQUERY_DATASET_ID):
        logging.info("Authenticating with Google Cloud...")
        client = bigquery.Client.from_service_account_json(key_file_path, project=project_id)
        return cls(client, project_id, dataset_id)

    def ensure_dataset(self):
        dataset_ref = f"{self.project_id}.{self.dataset_id}"
        try:
            self.client.get_dataset(dataset_ref)
        except NotFound:
            self.client.create_dataset(dataset_ref)
        logging.info(f"Successfully connected and ensured dataset '{self.dataset_id}' exists.")

    def publish(self, tables: dict) -> dict:
        self.ensure_dataset()
        row_counts, mismatches = {}, []
        for table_name in STAR_SCHEMA_TABLES:
            if table_name not in tables:
                logging.warning(f"  > SKIPPING: '{table_name}' was not staged.")
                continue
            schema = bigquery_schema(table_name)
            df = coerce_date_columns(tables[table_name], table_name)

            full_table_id = f"{self.project_id}.{self.dataset_id}.{table_name}"
            job_config = bigquery.LoadJobConfig(schema=schema, write_disposition="WRITE_TRUNCATE")
            if table_name == 'fact_encounters':
                job_config.clustering_fields = ["patient_key"]

            logging.info(f"  > Loading {len(df)} rows into BigQuery table '{full_table_id}'...")
            job = self.client.load_table_from_dataframe(df, full_table_id, job_config=job_config)
            job.result()

            table_info = self.client.get_table(full_table_id)
            row_counts[table_name] = table_info.num_rows
            if len(df) == table_info.num_rows:
                logging.info(f"  >  SUCCESS: Validated {table_info.num_rows} rows in {table_name}.")
            else:
                logging.error(f"  > FAILED ROW COUNT VALIDATION for {table_name}: Expected {len(df)}, Found {table_info.num_rows}")
                mismatches.append(table_name)

        if mismatches:
            raise ValueError(f"BigQuery row count validation failed for: {', '.join(mismatches)}")
        logging.info("<< LOAD TO BIGQUERY COMPLETE >>")
        return row_counts
