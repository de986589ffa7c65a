"""Constructores de ficheros XML, CSV y ZIP para los tests."""
import csv
import io
import zipfile
from pathlib import Path
from typing import Dict, List, Optional

FLAG_FIELDS = [
    "sw_psicotropo",
    "sw_estupefaciente",
    "sw_afecta_conduccion",
    "sw_triangulo_negro",
    "sw_receta",
    "sw_generico",
    "sw_sustituible",
    "sw_envase_clinico",
    "sw_uso_hospitalario",
    "sw_diagnostico_hospitalario",
    "sw_tld",
    "sw_especial_control_medico",
    "sw_huerfano",
    "sw_base_a_plantas",
    "sw_comercializado",
    "sw_tiene_excipientes_decl_obligatoria",
    "biosimilar",
    "importacion_paralela",
    "radiofarmaco",
    "serializacion",
]


def prescription_xml(
    cod_nacion: str = "600000",
    nested: str = "",
    flags: Optional[Dict[str, str]] = None,
) -> str:
    """Un elemento <prescription> mínimo válido, con los hijos anidados de `nested`."""
    values = {name: "0" for name in FLAG_FIELDS}
    values.update({"sw_receta": "1", "serializacion": "1"})
    values.update(flags or {})
    flag_xml = "".join(f"<{k}>{v}</{k}>" for k, v in values.items())
    return (
        "<prescription>"
        f"<cod_nacion>{cod_nacion}</cod_nacion>"
        "<nro_definitivo>66337</nro_definitivo>"
        "<des_nomco>TEST</des_nomco>"
        "<des_prese>TEST 10 comprimidos</des_prese>"
        f"{flag_xml}{nested}"
        "</prescription>"
    )


def prescription_document(*items: str) -> str:
    return (
        '<?xml version="1.0" encoding="utf-8"?>\n'
        "<aemps_prescripcion>"
        "<header><listprescriptiondate>01/10/2026</listprescriptiondate></header>"
        f"{''.join(items)}"
        "</aemps_prescripcion>"
    )


def catalog_xml(catalog, count: int) -> str:
    """XML con `count` registros; cada campo vale '<columna>-<i>'."""
    fields = catalog.model.model_fields
    records = []
    for i in range(count):
        body = "".join(
            f"<{info.alias}>{name}-{i}</{info.alias}>" for name, info in fields.items()
        )
        records.append(f"<{catalog.record_tag}>{body}</{catalog.record_tag}>")
    return f"<{catalog.root_tag}>{''.join(records)}</{catalog.root_tag}>"


def write_catalogs(work_dir: Path, catalogs, count: int = 2) -> None:
    work_dir.mkdir(parents=True, exist_ok=True)
    for catalog in catalogs:
        (work_dir / catalog.xml_file).write_text(catalog_xml(catalog, count), encoding="utf-8")


def read_csv(path: Path) -> List[List[str]]:
    with open(path, newline="", encoding="utf-8") as fh:
        return list(csv.reader(fh))


def read_csv_dicts(path: Path) -> List[Dict[str, str]]:
    with open(path, newline="", encoding="utf-8") as fh:
        return list(csv.DictReader(fh))


def make_zip(entries: Dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for name, data in entries.items():
            archive.writestr(name, data)
    return buffer.getvalue()
