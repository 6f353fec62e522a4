# ETL RUN TRACKING (healthtech_olap.etl_control)
import logging
from datetime import datetime
from enum import Enum

from sqlalchemy import select, insert, update

from config import LOG_FORMAT
from warehouse_schema import CONTROL_METADATA, etl_control

logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)


class RunStatus(str, Enum):
    RUNNING = 'RUNNING'
    SUCCESS = 'SUCCESS'
    FAILED = 'FAILED'


TERMINAL_STATUSES = (RunStatus.SUCCESS, RunStatus.FAILED)


class EtlRunTracker:
    """
    Append-only record of pipeline executions, one row per run.
    The run id returned by start() is passed explicitly to every later call.
    """

    def __init__(self, engine, enforce_single_run: bool = False):
        self.engine = engine
        self.enforce_single_run = enforce_single_run
        CONTROL_METADATA.create_all(engine)

    def start(self) -> int:
        if self.enforce_single_run:
            active = self.active_runs()
            if active:
                raise RuntimeError(f"ETL run(s) {active} still RUNNING; refusing to start a second full refresh.")
        with self.engine.begin() as conn:
            result = conn.execute(insert(etl_control).values(
                run_start_datetime=datetime.now(),
                status=RunStatus.RUNNING.value,
                etl_phase='INITIALIZATION',
            ))
            run_id = result.inserted_primary_key[0]
        logging.info(f"Started ETL run {run_id}.")
        return run_id

    def advance(self, run_id: int, phase: str, rows_processed: int = None):
        values = {'etl_phase': phase}
        if rows_processed is not None:
            values['records_processed'] = int(rows_processed)
        with self.engine.begin() as conn:
            conn.execute(update(etl_control).where(etl_control.c.etl_run_id == run_id).values(**values))
        logging.info(f"  > Run {run_id}: {phase}" + (f" ({rows_processed} rows)" if rows_processed is not None else ""))

    def complete(self, run_id: int, status, error: str = None):
        status = RunStatus(status)
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"Run can only complete as SUCCESS or FAILED, not {status.value}")
        values = {'run_end_datetime': datetime.now(), 'status': status.value}
        if status is RunStatus.SUCCESS:
            values['etl_phase'] = 'COMPLETED'
        if error is not None:
            values['error_message'] = error
        with self.engine.begin() as conn:
            conn.execute(update(etl_control).where(etl_control.c.etl_run_id == run_id).values(**values))
        log = logging.info if status is RunStatus.SUCCESS else logging.error
        log(f"ETL run {run_id} finished with status {status.value}.")

    def get_run(self, run_id: int) -> dict:
        with self.engine.connect() as conn:
            row = conn.execute(select(etl_control).where(etl_control.c.etl_run_id == run_id)).mappings().first()
        return dict(row) if row is not None else None

    def active_runs(self) -> list:
        with self.engine.connect() as conn:
            rows = conn.execute(select(etl_control.c.etl_run_id)
                                .where(etl_control.c.status == RunStatus.RUNNING.value)).scalars().all()
        return list(rows)
