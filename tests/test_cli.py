import pytest
from typer.testing import CliRunner

import cima_nomenclator.cima_client as cima
from cima_nomenclator.cli import cli
from cima_nomenclator.parser import CATALOGS, PRESCRIPTIONS_CSV
from helpers import prescription_document, prescription_xml, write_catalogs

runner = CliRunner()


@pytest.fixture
def work_dir(tmp_path):
    work = tmp_path / "xml"
    write_catalogs(work, CATALOGS)
    (work / "Prescripcion.xml").write_text(
        prescription_document(prescription_xml()), encoding="utf-8"
    )
    return work


def _csv_args(work_dir, out_dir):
    return ["csv", "--no-download", "-w", str(work_dir), "-o", str(out_dir), "-c", "2"]


def test_csv_converts_everything(work_dir, tmp_path):
    out = tmp_path / "csv"

    result = runner.invoke(cli, _csv_args(work_dir, out))

    assert result.exit_code == 0, result.output
    assert "Diccionarios correctos: 13" in result.output
    assert (out / PRESCRIPTIONS_CSV).exists()
    assert all((out / c.csv_file).exists() for c in CATALOGS)


def test_csv_exits_non_zero_when_a_catalog_fails(work_dir, tmp_path):
    (work_dir / CATALOGS[0].xml_file).write_text("<roto>")

    result = runner.invoke(cli, _csv_args(work_dir, tmp_path / "csv"))

    assert result.exit_code == 1
    assert "Diccionarios fallidos: 1" in result.output


def test_csv_rejects_zero_concurrency(work_dir, tmp_path):
    result = runner.invoke(
        cli, ["csv", "--no-download", "-w", str(work_dir), "-o", str(tmp_path), "-c", "0"]
    )
    assert result.exit_code != 0


def test_maestra_rejects_unknown_type():
    result = runner.invoke(cli, ["api", "maestra", "--tipo", "xx", "--nombre", "a"])
    assert result.exit_code == 1
    assert "desconocido" in result.output


def test_maestra_requires_a_name():
    result = runner.invoke(cli, ["api", "maestra", "--tipo", "pa"])
    assert result.exit_code == 1
    assert "--nombre" in result.output


def test_maestra_maps_type_to_identifier(monkeypatch):
    calls = []

    async def fake_maestras(**kwargs):
        calls.append(kwargs)
        return {"totalFilas": 1, "pagina": 1, "resultados": [{"id": 1, "nombre": "PARACETAMOL"}]}

    monkeypatch.setattr(cima, "maestras", fake_maestras)

    result = runner.invoke(cli, ["api", "maestra", "--tipo", "lab", "--nombre", "cinfa"])

    assert result.exit_code == 0, result.output
    assert calls == [{"maestra": 6, "nombre": "cinfa"}]
    assert "PARACETAMOL" in result.output


def test_api_value_errors_exit_with_message():
    result = runner.invoke(cli, ["api", "medicamento"])
    assert result.exit_code == 1
    assert "cn" in result.output


def test_csv_reports_unwritable_output_dir(work_dir, tmp_path):
    blocker = tmp_path / "fichero"
    blocker.write_text("x")

    result = runner.invoke(
        cli, ["csv", "--no-download", "-w", str(work_dir), "-o", str(blocker / "csv")]
    )

    assert result.exit_code == 1
    assert "Error de E/S" in result.output
