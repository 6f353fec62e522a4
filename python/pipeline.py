# MASTER ORCHESTRATOR: OLTP -> OLAP full refresh
import logging
from sqlalchemy import create_engine

from config import (
    SOURCE_DB_CONFIG, TARGET_DB_CONFIG, STAGING_DIR, PUBLISH_TO_BIGQUERY, ENFORCE_SINGLE_RUN,
    LOG_FORMAT, build_connection_url
)
from etl_control import EtlRunTracker, RunStatus
from extraction import run_extraction
from transform import DataTransformer
from dimensional_modeling import run_modeling
from load import clear_staging, stage_tables, read_staged_tables, publish_to_warehouse, BigQueryPublisher

logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)


def run_pipeline(source_engine, target_engine, staging_dir=STAGING_DIR, as_of=None,
                 bigquery_publisher=None, enforce_single_run=ENFORCE_SINGLE_RUN) -> int:
    """
    Runs one full refresh and returns its etl_run_id.
    Any phase error marks the run FAILED (keeping the last completed phase) and is re-raised;
    recovery is simply another full run.
    """
    tracker = EtlRunTracker(target_engine, enforce_single_run=enforce_single_run)
    run_id = tracker.start()

    def advance(phase, rows=None):
        tracker.advance(run_id, phase, rows)

    try:
        clear_staging(staging_dir)
        advance('CLEANUP_COMPLETE')

        logging.info("--- [STEP 1] Executing Source Extraction ---")
        source_data = run_extraction(source_engine)
        advance('SOURCE_EXTRACTED', sum(len(df) for df in source_data.values()))

        logging.info("--- [STEP 2] Executing Dimensional Modeling ---")
        source_data = DataTransformer().standardize_source(source_data)
        dimensions, facts, bridges = run_modeling(source_data, as_of=as_of, on_phase=advance)

        logging.info("--- [STEP 3] Staging & Publishing ---")
        staged = stage_tables({**dimensions, **facts, **bridges}, staging_dir)
        advance('TABLES_STAGED', sum(staged.values()))

        tables = read_staged_tables(staging_dir)
        published = publish_to_warehouse(target_engine, tables)
        advance('WAREHOUSE_PUBLISHED', published['fact_encounters'])

        if bigquery_publisher is not None:
            bigquery_publisher.publish(tables)
            advance('BIGQUERY_PUBLISHED', published['fact_encounters'])

        tracker.complete(run_id, RunStatus.SUCCESS)
    except Exception as e:
        logging.error("<<<<<<<<<< PIPELINE FAILED >>>>>>>>>>", exc_info=True)
        tracker.complete(run_id, RunStatus.FAILED, error=f"{type(e).__name__}: {e}")
        raise
    return run_id


def main():
    logging.info("  STARTING FULL REFRESH OF healthtech_olap")
    source_engine = create_engine(build_connection_url(SOURCE_DB_CONFIG))
    target_engine = create_engine(build_connection_url(TARGET_DB_CONFIG))
    publisher = BigQueryPublisher.from_service_account() if PUBLISH_TO_BIGQUERY else None
    run_id = run_pipeline(source_engine, target_engine, bigquery_publisher=publisher)

    run = EtlRunTracker(target_engine).get_run(run_id)
    duration = (run['run_end_datetime'] - run['run_start_datetime']).total_seconds()
    print("\n\n" + "="*80)
    print(f"SUCCESS: ETL run {run_id} completed in {duration:.1f}s, {run['records_processed']} fact rows published.")
    print("="*80)


if __name__ == "__main__":
    main()
