# PHASE 1: SOURCE EXTRACTION (healthtech_oltp)
import pandas as pd
from sqlalchemy import create_engine, text
import logging

from config import SOURCE_DB_CONFIG, LOG_FORMAT, build_connection_url

logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)

SOURCE_TABLES = [
    'encounters', 'patients', 'providers', 'specialties', 'departments',
    'diagnoses', 'procedures', 'encounter_diagnoses', 'encounter_procedures', 'billing'
]


class DataExtractor:
    """Reads the normalized OLTP tables through a single SQLAlchemy engine."""
    def __init__(self, engine=None, db_config=None):
        if engine is not None:
            self.engine = engine
            return
        try:
            self.engine = create_engine(build_connection_url(db_config or SOURCE_DB_CONFIG))
            logging.info("Source database engine created successfully.")
        except Exception as e:
            logging.error(f"Failed to create source database engine. Error: {e}", exc_info=True)
            self.engine = None

    def extract_table(self, table_name):
        if self.engine is None: return None
        query = f"SELECT * FROM {table_name}"
        logging.info(f"Extracting data from '{table_name}'...")
        try:
            with self.engine.connect() as connection:
                df = pd.read_sql(text(query), connection)
                logging.info(f"  > Success: Retrieved {len(df)} rows from '{table_name}'.")
                return df
        except Exception as e:
            logging.error(f"  > FAILED to extract data from '{table_name}'. Error: {e}")
            return None


def run_extraction(engine=None, tables=None) -> dict:
    """
    Pulls every source table into a DataFrame.
    Raises ValueError when any table could not be read, so the run halts before
    anything downstream is built from a partial snapshot.
    """
    logging.info("========================================")
    logging.info("  RUNNING SOURCE EXTRACTION")
    logging.info("========================================")

    extractor = DataExtractor(engine)
    tables = tables or SOURCE_TABLES
    source_data = {tbl: extractor.extract_table(tbl) for tbl in tables}

    missing = [tbl for tbl, df in source_data.items() if df is None]
    if missing:
        raise ValueError(f"Data extraction failed for tables: {', '.join(missing)}. Halting pipeline.")
    return source_data


if __name__ == "__main__":
    data = run_extraction()
    print("\n\n--- EXTRACTION SCRIPT TEST RUN COMPLETE ---")
    for name, df in data.items():
        print(f"\n--- Source '{name}' Table (Shape: {df.shape}) ---")
        print(df.head())
