from unittest.mock import MagicMock

import pandas as pd
import pytest
from sqlalchemy import create_engine

from etl_control import EtlRunTracker
from pipeline import run_pipeline
from warehouse_schema import STAR_SCHEMA_TABLES


def _snapshot(engine):
    snapshot = {}
    for name in STAR_SCHEMA_TABLES:
        df = pd.read_sql_table(name, engine)
        snapshot[name] = df.sort_values(list(df.columns[:2])).reset_index(drop=True)
    return snapshot


def test_full_refresh_publishes_star_schema(source_engine, target_engine, staging_dir, as_of):
    run_id = run_pipeline(source_engine, target_engine, staging_dir=staging_dir, as_of=as_of)

    run = EtlRunTracker(target_engine).get_run(run_id)
    assert run['status'] == 'SUCCESS'
    assert run['etl_phase'] == 'COMPLETED'
    assert run['records_processed'] == 7
    assert run['error_message'] is None

    fact = pd.read_sql_table('fact_encounters', target_engine).set_index('encounter_id')
    assert sorted(fact.index) == [1001, 1002, 1003, 1004, 1005, 1006, 1007]
    assert fact.loc[1002, 'is_readmission'] == 1
    assert fact.loc[1001, 'length_of_stay_days'] == 2
    assert fact.loc[1001, 'total_claim_amount'] == pytest.approx(750.5)

    patients = pd.read_sql_table('dim_patient', target_engine)
    assert fact['patient_key'].isin(patients['patient_key']).all()


def test_rerun_is_idempotent(source_engine, target_engine, staging_dir, as_of):
    first_run = run_pipeline(source_engine, target_engine, staging_dir=staging_dir, as_of=as_of)
    first = _snapshot(target_engine)
    second_run = run_pipeline(source_engine, target_engine, staging_dir=staging_dir, as_of=as_of)
    second = _snapshot(target_engine)

    assert second_run == first_run + 1
    for name in STAR_SCHEMA_TABLES:
        pd.testing.assert_frame_equal(first[name], second[name], obj=name)


def test_failed_run_is_recorded(tmp_path, raw_source, target_engine, staging_dir, as_of):
    incomplete_source = create_engine(f"sqlite:///{tmp_path / 'partial_oltp.db'}")
    for name, df in raw_source.items():
        if name != 'billing':
            df.to_sql(name, incomplete_source, index=False)

    with pytest.raises(ValueError, match='billing'):
        run_pipeline(incomplete_source, target_engine, staging_dir=staging_dir, as_of=as_of)

    run = EtlRunTracker(target_engine).get_run(1)
    assert run['status'] == 'FAILED'
    assert run['etl_phase'] == 'CLEANUP_COMPLETE'
    assert 'billing' in run['error_message']
    assert run['run_end_datetime'] is not None
    incomplete_source.dispose()


def test_pipeline_mirrors_to_bigquery(source_engine, target_engine, staging_dir, as_of):
    publisher = MagicMock()
    run_id = run_pipeline(source_engine, target_engine, staging_dir=staging_dir, as_of=as_of,
                          bigquery_publisher=publisher)

    publisher.publish.assert_called_once()
    published = publisher.publish.call_args.args[0]
    assert list(published) == STAR_SCHEMA_TABLES
    assert EtlRunTracker(target_engine).get_run(run_id)['status'] == 'SUCCESS'


def test_single_run_guard_blocks_overlapping_run(source_engine, target_engine, staging_dir, as_of):
    EtlRunTracker(target_engine).start()
    with pytest.raises(RuntimeError):
        run_pipeline(source_engine, target_engine, staging_dir=staging_dir, as_of=as_of, enforce_single_run=True)


def _source_engine(tmp_path, source):
    engine = create_engine(f"sqlite:///{tmp_path / 'edited_oltp.db'}")
    for name, df in source.items():
        df.to_sql(name, engine, index=False)
    return engine


def test_unparseable_encounter_date_fails_the_run(tmp_path, raw_source, target_engine, staging_dir, as_of):
    encounters = raw_source['encounters']
    encounters.loc[encounters['encounter_id'] == 1004, 'encounter_date'] = 'bad-date'
    source = _source_engine(tmp_path, raw_source)

    with pytest.raises(ValueError, match='encounters.encounter_date'):
        run_pipeline(source, target_engine, staging_dir=staging_dir, as_of=as_of)

    run = EtlRunTracker(target_engine).get_run(1)
    assert run['status'] == 'FAILED'
    assert run['etl_phase'] == 'SOURCE_EXTRACTED'
    assert "'bad-date'" in run['error_message']
    source.dispose()


def test_unparseable_claim_amount_fails_the_run(tmp_path, raw_source, target_engine, staging_dir, as_of):
    billing = raw_source['billing'].astype({'claim_amount': object})
    billing.loc[billing['billing_id'] == 1, 'claim_amount'] = 'N/A'
    raw_source['billing'] = billing
    source = _source_engine(tmp_path, raw_source)

    with pytest.raises(ValueError, match='billing.claim_amount'):
        run_pipeline(source, target_engine, staging_dir=staging_dir, as_of=as_of)

    run = EtlRunTracker(target_engine).get_run(1)
    assert run['status'] == 'FAILED'
    assert run['etl_phase'] == 'SOURCE_EXTRACTED'
    assert 'billing.claim_amount' in run['error_message']
    source.dispose()


def test_date_only_encounter_is_kept(tmp_path, raw_source, target_engine, staging_dir, as_of):
    encounters = raw_source['encounters']
    encounters.loc[encounters['encounter_id'] == 1004, 'encounter_date'] = '2024-03-01'
    source = _source_engine(tmp_path, raw_source)

    run_id = run_pipeline(source, target_engine, staging_dir=staging_dir, as_of=as_of)

    assert EtlRunTracker(target_engine).get_run(run_id)['records_processed'] == 7
    fact = pd.read_sql_table('fact_encounters', target_engine).set_index('encounter_id')
    assert sorted(fact.index) == [1001, 1002, 1003, 1004, 1005, 1006, 1007]
    assert fact.loc[1004, 'date_key'] == 20240301
    source.dispose()
