from __future__ import annotations

import os
from datetime import datetime

from airflow import DAG
from airflow.operators.python import PythonOperator

WORKBOOK_PATH = os.getenv("WORKBOOK_PATH", "/opt/registry/data/raw/Tablas Sistema Registro.xlsx")


def _sync(mode: str, **context) -> dict:
    from registry_sync.core.logging import configure_logging
    from registry_sync.db.session import SessionLocal, engine, wait_for_store
    from registry_sync.etl.pipeline import run_sync

    configure_logging(json_output=True)
    wait_for_store(engine)
    with SessionLocal() as db:
        result = run_sync(db, WORKBOOK_PATH, mode=mode)
    return result.to_dict()


def sync_incremental_task(**context):
    return _sync("incremental", **context)


def sync_full_task(**context):
    return _sync("full", **context)


with DAG(
    dag_id="registry_sync",
    start_date=datetime(2024, 1, 1),
    schedule="@hourly",
    catchup=False,
    default_args={"retries": 2},
    tags=["registry", "sync"],
) as dag:
    PythonOperator(
        task_id="sync_incremental",
        python_callable=sync_incremental_task,
    )


with DAG(
    dag_id="registry_sync_full",
    start_date=datetime(2024, 1, 1),
    schedule="@weekly",
    catchup=False,
    default_args={"retries": 1},
    tags=["registry", "sync"],
) as full_dag:
    PythonOperator(
        task_id="sync_full",
        python_callable=sync_full_task,
    )
