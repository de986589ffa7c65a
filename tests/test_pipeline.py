import asyncio
import threading
import time

import httpx
import pytest

from cima_nomenclator.parser import (
    CATALOGS,
    PRESCRIPTION_TABLES,
    PRESCRIPTIONS_CSV,
    catalog_by_name,
    parse_catalog_xml_to_csv,
)
from cima_nomenclator.pipeline import (
    JobStatus,
    resolve_concurrency,
    run_catalog_jobs,
    run_pipeline,
)
from helpers import (
    make_zip,
    prescription_document,
    prescription_xml,
    read_csv,
    write_catalogs,
)


@pytest.fixture
def dirs(tmp_path):
    work, out = tmp_path / "xml", tmp_path / "csv"
    work.mkdir()
    out.mkdir()
    return work, out


def test_missing_catalog_is_skipped_and_others_run(dirs):
    work, out = dirs
    dcp = catalog_by_name("dcp")
    write_catalogs(work, [c for c in CATALOGS if c is not dcp])

    results = asyncio.run(run_catalog_jobs(work, out, 4))

    assert [r.name for r in results] == [c.name for c in CATALOGS]
    by_name = {r.name: r for r in results}
    assert by_name["dcp"].status is JobStatus.SKIPPED
    assert by_name["dcp"].ok
    assert not (out / "dcp.csv").exists()
    succeeded = [r for r in results if r.status is JobStatus.SUCCEEDED]
    assert len(succeeded) == 12
    for result in succeeded:
        assert result.rows == {result.output.name: 2}
        assert len(read_csv(result.output)) == 3


def test_failing_catalog_does_not_stop_the_rest(dirs):
    work, out = dirs
    write_catalogs(work, CATALOGS)
    (work / catalog_by_name("envases").xml_file).write_text("<aemps_prescripcion_envases>")

    results = asyncio.run(run_catalog_jobs(work, out, 3))

    failed = [r for r in results if r.status is JobStatus.FAILED]
    assert [r.name for r in failed] == ["envases"]
    assert "Envases" in failed[0].error
    assert not failed[0].ok
    assert sum(r.status is JobStatus.SUCCEEDED for r in results) == 12


def test_in_flight_jobs_never_exceed_the_bound(dirs):
    work, out = dirs
    write_catalogs(work, CATALOGS, count=1)
    lock = threading.Lock()
    state = {"running": 0, "peak": 0}

    def instrumented(catalog, xml_path, csv_path):
        with lock:
            state["running"] += 1
            state["peak"] = max(state["peak"], state["running"])
        try:
            time.sleep(0.02)
            return parse_catalog_xml_to_csv(catalog, xml_path, csv_path)
        finally:
            with lock:
                state["running"] -= 1

    results = asyncio.run(run_catalog_jobs(work, out, 2, parser=instrumented))

    assert all(r.status is JobStatus.SUCCEEDED for r in results)
    assert 1 <= state["peak"] <= 2


def test_output_does_not_depend_on_concurrency(tmp_path):
    work = tmp_path / "xml"
    write_catalogs(work, CATALOGS, count=5)
    outputs = {}
    for limit in (1, 8):
        out = tmp_path / f"csv-{limit}"
        out.mkdir()
        asyncio.run(run_catalog_jobs(work, out, limit))
        outputs[limit] = {c.csv_file: (out / c.csv_file).read_bytes() for c in CATALOGS}

    assert outputs[1] == outputs[8]


def test_resolve_concurrency():
    assert resolve_concurrency(3) == 3
    assert resolve_concurrency(None) >= 1
    with pytest.raises(ValueError):
        resolve_concurrency(0)
    with pytest.raises(ValueError):
        resolve_concurrency(-1)


def test_pipeline_without_download(dirs):
    work, out = dirs
    write_catalogs(work, CATALOGS)
    (work / "Prescripcion.xml").write_text(
        prescription_document(prescription_xml("1"), prescription_xml("2")), encoding="utf-8"
    )

    report = asyncio.run(run_pipeline(work, out, 2, download=False))

    assert report.ok
    assert (report.succeeded, report.failed, report.skipped) == (13, 0, 0)
    assert report.prescription.status is JobStatus.SUCCEEDED
    assert report.prescription.rows[PRESCRIPTIONS_CSV] == 2
    for name in PRESCRIPTION_TABLES:
        assert (out / name).exists()


def test_missing_prescription_is_skipped_not_failed(dirs):
    work, out = dirs
    write_catalogs(work, CATALOGS[:3])

    report = asyncio.run(run_pipeline(work, out, 2, download=False))

    assert report.ok
    assert report.prescription.status is JobStatus.SKIPPED
    assert report.skipped == 10
    assert not (out / PRESCRIPTIONS_CSV).exists()


def test_invalid_prescription_fails_the_report(dirs):
    work, out = dirs
    write_catalogs(work, CATALOGS)
    (work / "Prescripcion.xml").write_text(
        prescription_document(prescription_xml(flags={"radiofarmaco": "S"})), encoding="utf-8"
    )

    report = asyncio.run(run_pipeline(work, out, 2, download=False))

    assert report.failed == 0
    assert report.prescription.status is JobStatus.FAILED
    assert "Prescription" in report.prescription.error
    assert not report.ok


def test_pipeline_downloads_then_converts(tmp_path):
    payload = make_zip({
        "DICCIONARIO_DCSA.xml": b"<aemps_prescripcion_dcsa><dcsa>"
                                b"<codigodcsa>1</codigodcsa><nombredcsa>X</nombredcsa>"
                                b"</dcsa></aemps_prescripcion_dcsa>",
        "Prescripcion.xml": prescription_document(prescription_xml()).encode("utf-8"),
    })

    async def _main():
        transport = httpx.MockTransport(lambda r: httpx.Response(200, content=payload))
        async with httpx.AsyncClient(transport=transport) as client:
            return await run_pipeline(tmp_path / "xml", tmp_path / "csv", 2, client=client)

    report = asyncio.run(_main())

    assert report.ok
    assert report.succeeded == 1
    assert report.skipped == 12
    assert read_csv(tmp_path / "csv" / "dcsa.csv") == [["code", "name"], ["1", "X"]]
    assert report.prescription.rows[PRESCRIPTIONS_CSV] == 1


def test_zero_concurrency_is_rejected_by_the_orchestrator(dirs):
    work, out = dirs
    write_catalogs(work, CATALOGS[:1])

    with pytest.raises(ValueError):
        asyncio.run(run_catalog_jobs(work, out, 0))
    with pytest.raises(ValueError):
        asyncio.run(run_pipeline(work, out, 0, download=False))
