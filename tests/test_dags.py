from pathlib import Path

import pytest

pytest.importorskip("airflow")

from airflow.models import DagBag  # noqa: E402

DAG_FOLDER = Path(__file__).resolve().parent.parent / "dags"


def test_scrape_dag_syncs_sources_before_scraping() -> None:
    bag = DagBag(dag_folder=str(DAG_FOLDER), include_examples=False)
    assert not bag.import_errors

    dag = bag.get_dag("scrape_news_sources")
    assert dag is not None
    scrape = dag.get_task("scrape_due_sources")
    assert scrape.upstream_task_ids == {"sync_sources"}
    assert dag.get_task("sync_sources").downstream_task_ids == {"scrape_due_sources"}
