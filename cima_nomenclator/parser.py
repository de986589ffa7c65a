# cima_nomenclator/parser.py
"""
Conversión de los XML del nomenclátor de prescripción a CSV.

• Diccionarios: un único parser genérico (`parse_catalog_xml_to_csv`)
  parametrizado por un `Catalog` con el modelo de registro y una
  transformación opcional (sólo la usa el catálogo ATC).
• Prescripcion.xml: se descompone en 7 CSV relacionados por `cod_nacion`
  (`parse_prescription_xml_to_csvs`).
"""
from __future__ import annotations

import csv
import logging
import xml.etree.ElementTree as ET
from contextlib import ExitStack
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, ValidationError

from cima_nomenclator.errors import SchemaError
from cima_nomenclator.models import (
    ActiveIngredientComposition,
    ActiveIngredientRecord,
    AdministrationRouteRecord,
    AdministrationRouteRef,
    AtcAssignment,
    AtcDuplicate,
    AtcRecord,
    ContainerRecord,
    ContainerUnitRecord,
    DcpfRecord,
    DcpRecord,
    DcsaRecord,
    ExcipientRecord,
    LaboratoryRecord,
    PharmaceuticalFormRecord,
    PrescriptionForm,
    PrescriptionList,
    PrescriptionRecord,
    RegistrationStatusRecord,
    SimplifiedPharmaceuticalFormRecord,
    SupplyProblemRecord,
    XmlModel,
    csv_columns,
)

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

# Forma de los elementos anidados: etiqueta -> (se repite, forma de sus hijos)
Shape = Mapping[str, Tuple[bool, "Shape"]]


# ---------------------------------------------------------------------------
# Helpers XML / CSV
# ---------------------------------------------------------------------------

def _local_name(tag: str) -> str:
    """Quita el espacio de nombres ('{uri}tag' -> 'tag')."""
    return tag.rsplit("}", 1)[-1]


def _element_to_dict(elem: ET.Element, shape: Shape) -> Dict[str, Any]:
    """
    Convierte un elemento en dict siguiendo `shape`:
      - las etiquetas de `shape` se convierten recursivamente (en lista si se repiten);
      - el resto de hojas se toma como texto sin espacios alrededor;
      - los elementos complejos desconocidos se ignoran.
    Una etiqueta simple repetida es un error.
    """
    data: Dict[str, Any] = {}
    for child in elem:
        tag = _local_name(child.tag)
        if tag in shape:
            many, child_shape = shape[tag]
            value: Any = _element_to_dict(child, child_shape)
            if many:
                data.setdefault(tag, []).append(value)
                continue
        elif len(child):
            continue
        else:
            value = (child.text or "").strip()

        if tag in data:
            raise ValueError(f"elemento <{tag}> duplicado en <{_local_name(elem.tag)}>")
        data[tag] = value
    return data


def _load_root(xml_path: PathLike, label: str, root_tag: str) -> ET.Element:
    # FileNotFoundError y demás OSError se propagan tal cual
    try:
        root = ET.parse(xml_path).getroot()
    except ET.ParseError as exc:
        raise SchemaError(label, f"Failed to deserialize {label} XML: {exc}") from exc

    found = _local_name(root.tag)
    if found != root_tag:
        raise SchemaError(
            label,
            f"Failed to deserialize {label} XML: se esperaba <{root_tag}> y se encontró <{found}>",
        )
    return root


def _csv_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _csv_row(record: BaseModel, **keys: str) -> Dict[str, str]:
    """Fila CSV de un registro; `keys` antepone las columnas de clave foránea."""
    row = dict(keys)
    row.update({k: _csv_value(v) for k, v in record.model_dump().items()})
    return row


class CsvSink:
    """Fichero CSV abierto durante una pasada; cuenta las filas escritas."""

    def __init__(self, path: PathLike, columns: Iterable[str]):
        self.path = Path(path)
        self.columns = list(columns)
        self.rows = 0
        self._fh = None
        self._writer: Optional[csv.DictWriter] = None

    def __enter__(self) -> "CsvSink":
        self._fh = open(self.path, "w", newline="", encoding="utf-8")
        self._writer = csv.DictWriter(self._fh, fieldnames=self.columns, lineterminator="\n")
        self._writer.writeheader()
        return self

    def write(self, row: Mapping[str, str]) -> None:
        self._writer.writerow(row)
        self.rows += 1

    def flush(self) -> None:
        self._fh.flush()

    def __exit__(self, exc_type, exc, tb) -> None:
        self._fh.close()


# ---------------------------------------------------------------------------
# Diccionarios
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Catalog:
    """Descripción de un diccionario plano del nomenclátor."""
    name: str
    label: str
    xml_file: str
    csv_file: str
    root_tag: str
    record_tag: str
    model: type[XmlModel]
    transform: Optional[Callable[[Any], Any]] = None

    @property
    def columns(self) -> List[str]:
        return csv_columns(self.model)


def strip_atc_code_prefix(record: AtcRecord) -> AtcRecord:
    """'A01 - DIGESTIVE' -> 'DIGESTIVE' cuando la descripción repite el código."""
    prefix = f"{record.code} - "
    if record.description.startswith(prefix):
        return record.model_copy(update={"description": record.description[len(prefix):]})
    return record


CATALOGS: Tuple[Catalog, ...] = (
    Catalog("atc", "ATC", "DICCIONARIO_ATC.xml", "atc.csv",
            "aemps_prescripcion_atc", "atc", AtcRecord, strip_atc_code_prefix),
    Catalog("dcp", "DCP", "DICCIONARIO_DCP.xml", "dcp.csv",
            "aemps_prescripcion_dcp", "dcp", DcpRecord),
    Catalog("dcpf", "DCPF", "DICCIONARIO_DCPF.xml", "dcpf.csv",
            "aemps_prescripcion_dcpf", "dcpf", DcpfRecord),
    Catalog("dcsa", "DCSA", "DICCIONARIO_DCSA.xml", "dcsa.csv",
            "aemps_prescripcion_dcsa", "dcsa", DcsaRecord),
    Catalog("envases", "Envases", "DICCIONARIO_ENVASES.xml", "envases.csv",
            "aemps_prescripcion_envases", "envases", ContainerRecord),
    Catalog("excipientes", "Excipientes", "DICCIONARIO_EXCIPIENTES_DECL_OBLIGATORIA.xml",
            "excipientes.csv", "aemps_prescripcion_excipientes", "excipientes", ExcipientRecord),
    Catalog("forma_farmaceutica", "Forma Farmaceutica", "DICCIONARIO_FORMA_FARMACEUTICA.xml",
            "forma_farmaceutica.csv", "aemps_prescripcion_formas_farmaceuticas",
            "formasfarmaceuticas", PharmaceuticalFormRecord),
    Catalog("forma_farmaceutica_simplificada", "Forma Farmaceutica Simplificada",
            "DICCIONARIO_FORMA_FARMACEUTICA_SIMPLIFICADAS.xml",
            "forma_farmaceutica_simplificada.csv",
            "aemps_prescripcion_formas_farmaceuticas_simplificadas",
            "formasfarmaceuticassimplificadas", SimplifiedPharmaceuticalFormRecord),
    Catalog("laboratorios", "Laboratorio", "DICCIONARIO_LABORATORIOS.xml", "laboratorios.csv",
            "aemps_prescripcion_laboratorios", "laboratorios", LaboratoryRecord),
    Catalog("principios_activos", "Principio Activo", "DICCIONARIO_PRINCIPIOS_ACTIVOS.xml",
            "principios_activos.csv", "aemps_prescripcion_principios_activos",
            "principiosactivos", ActiveIngredientRecord),
    Catalog("situacion_registro", "Situacion Registro", "DICCIONARIO_SITUACION_REGISTRO.xml",
            "situacion_registro.csv", "aemps_prescripcion_situacion_registro",
            "situacionesregistro", RegistrationStatusRecord),
    Catalog("unidad_contenido", "Unidad Contenido", "DICCIONARIO_UNIDAD_CONTENIDO.xml",
            "unidad_contenido.csv", "aemps_prescripcion_unidad_contenido",
            "unidadescontenido", ContainerUnitRecord),
    Catalog("vias_administracion", "Via Administracion", "DICCIONARIO_VIAS_ADMINISTRACION.xml",
            "vias_administracion.csv", "aemps_prescripcion_vias_administracion",
            "viasadministracion", AdministrationRouteRecord),
)


def catalog_by_name(name: str) -> Catalog:
    for catalog in CATALOGS:
        if catalog.name == name:
            return catalog
    raise KeyError(f"Catálogo desconocido: {name}")


def read_catalog(catalog: Catalog, xml_path: PathLike) -> List[XmlModel]:
    """Deserializa un diccionario completo y aplica su transformación."""
    root = _load_root(xml_path, catalog.label, catalog.root_tag)
    shape: Shape = {catalog.record_tag: (True, {})}
    try:
        items = _element_to_dict(root, shape).get(catalog.record_tag, [])
        records = [catalog.model.model_validate(item) for item in items]
    except (ValidationError, ValueError) as exc:
        raise SchemaError(catalog.label, f"Failed to deserialize {catalog.label} XML: {exc}") from exc

    if catalog.transform is not None:
        records = [catalog.transform(r) for r in records]
    return records


def parse_catalog_xml_to_csv(catalog: Catalog, xml_path: PathLike, csv_path: PathLike) -> int:
    """
    Parsea el XML de un diccionario y lo vuelca a CSV (una fila por registro,
    columnas en el orden de declaración del modelo). Devuelve las filas escritas.
    """
    records = read_catalog(catalog, xml_path)
    with CsvSink(csv_path, catalog.columns) as sink:
        for record in records:
            sink.write(_csv_row(record))
        sink.flush()
    logger.debug(f"{catalog.label}: {sink.rows} filas -> {csv_path}")
    return sink.rows


# ---------------------------------------------------------------------------
# Prescripción
# ---------------------------------------------------------------------------

PRESCRIPTION_LABEL = "Prescription"
PRESCRIPTION_XML = "Prescripcion.xml"

# Filas escritas por fichero CSV
PrescriptionCounts = Dict[str, int]

_PRESCRIPTION_SHAPE: Shape = {
    "formasfarmaceuticas": (False, {
        "composicion_pa": (True, {}),
        "viasadministracion": (True, {}),
    }),
    "atc": (True, {"duplicidades": (True, {})}),
    "problemassuministro": (True, {}),
}
_PRESCRIPTION_LIST_SHAPE: Shape = {
    "header": (False, {}),
    "prescription": (True, _PRESCRIPTION_SHAPE),
}

PRESCRIPTIONS_CSV = "prescriptions.csv"
FORMS_CSV = "prescription_forms.csv"
ACTIVE_INGREDIENTS_CSV = "prescription_active_ingredients.csv"
ADMIN_ROUTES_CSV = "prescription_admin_routes.csv"
ATC_CSV = "prescription_atc.csv"
ATC_DUPLICATES_CSV = "prescription_atc_duplicates.csv"
SUPPLY_PROBLEMS_CSV = "prescription_supply_problems.csv"

# Fichero -> columnas. Las tablas hijas llevan cod_nacion como clave foránea.
PRESCRIPTION_TABLES: Dict[str, List[str]] = {
    PRESCRIPTIONS_CSV: csv_columns(PrescriptionRecord),
    FORMS_CSV: ["cod_nacion", *csv_columns(PrescriptionForm)],
    ACTIVE_INGREDIENTS_CSV: ["cod_nacion", *csv_columns(ActiveIngredientComposition)],
    ADMIN_ROUTES_CSV: ["cod_nacion", *csv_columns(AdministrationRouteRef)],
    ATC_CSV: ["cod_nacion", *csv_columns(AtcAssignment)],
    ATC_DUPLICATES_CSV: ["cod_nacion", "atc_code", *csv_columns(AtcDuplicate)],
    SUPPLY_PROBLEMS_CSV: ["cod_nacion", *csv_columns(SupplyProblemRecord)],
}


def parse_prescription_xml(xml_path: PathLike) -> PrescriptionList:
    """Deserializa Prescripcion.xml completo; cualquier error aborta todo el documento."""
    root = _load_root(xml_path, PRESCRIPTION_LABEL, "aemps_prescripcion")
    try:
        return PrescriptionList.model_validate(_element_to_dict(root, _PRESCRIPTION_LIST_SHAPE))
    except (ValidationError, ValueError) as exc:
        raise SchemaError(
            PRESCRIPTION_LABEL, f"Failed to deserialize {PRESCRIPTION_LABEL} XML: {exc}"
        ) from exc


def parse_prescription_xml_to_csvs(xml_path: PathLike, output_dir: PathLike) -> PrescriptionCounts:
    """
    Descompone Prescripcion.xml en 7 CSV normalizados:

    - prescriptions.csv                     registros principales (sin colecciones)
    - prescription_forms.csv                forma farmacéutica (1:1 opcional)
    - prescription_active_ingredients.csv   principios activos de la forma (1:N)
    - prescription_admin_routes.csv         vías de administración de la forma (1:N)
    - prescription_atc.csv                  códigos ATC (1:N)
    - prescription_atc_duplicates.csv       duplicidades de cada ATC (1:N anidado)
    - prescription_supply_problems.csv      problemas de suministro (1:N)

    Las filas salen en orden de documento, sin ordenar ni deduplicar. Si falla
    una escritura a mitad de pasada quedan ficheros parciales (no hay rollback).
    Devuelve el número de filas escritas por fichero.
    """
    prescriptions = parse_prescription_xml(xml_path)
    output_dir = Path(output_dir)

    with ExitStack() as stack:
        sinks = {
            name: stack.enter_context(CsvSink(output_dir / name, columns))
            for name, columns in PRESCRIPTION_TABLES.items()
        }

        for record in prescriptions.records:
            cn = record.cod_nacion
            sinks[PRESCRIPTIONS_CSV].write(_csv_row(record))

            form = record.form
            if form is not None:
                sinks[FORMS_CSV].write(_csv_row(form, cod_nacion=cn))
                for ingredient in form.active_ingredients:
                    sinks[ACTIVE_INGREDIENTS_CSV].write(_csv_row(ingredient, cod_nacion=cn))
                for route in form.admin_routes:
                    sinks[ADMIN_ROUTES_CSV].write(_csv_row(route, cod_nacion=cn))

            for atc in record.atc_codes:
                sinks[ATC_CSV].write(_csv_row(atc, cod_nacion=cn))
                for duplicate in atc.duplicates:
                    sinks[ATC_DUPLICATES_CSV].write(
                        _csv_row(duplicate, cod_nacion=cn, atc_code=atc.atc_code)
                    )

            for problem in record.supply_problems:
                sinks[SUPPLY_PROBLEMS_CSV].write(_csv_row(problem, cod_nacion=cn))

        for sink in sinks.values():
            sink.flush()

    counts = {name: sink.rows for name, sink in sinks.items()}
    logger.debug(f"Prescripciones: {counts}")
    return counts
