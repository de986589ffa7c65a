# cima_nomenclator/models.py
"""
Modelos de los ficheros XML del nomenclátor de prescripción (AEMPS).

Cada campo se declara con su nombre semántico (cabecera del CSV) y el nombre
de la etiqueta XML como alias. El orden de declaración es el orden de las
columnas en el CSV.
"""
from __future__ import annotations

from typing import Annotated, Any, List, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field


def _flag_from_string(value: Any) -> bool:
    """Convierte los indicadores '0'/'1' del XML en bool; cualquier otro valor es un error."""
    if isinstance(value, bool):
        return value
    if value == "1":
        return True
    if value == "0":
        return False
    raise ValueError(f"expected '0' or '1', got '{value}'")


Flag = Annotated[bool, BeforeValidator(_flag_from_string)]


class XmlModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# ---------------------------------------------------------------------------
# Diccionarios (catálogos planos)
# ---------------------------------------------------------------------------

class AtcRecord(XmlModel):
    number: str = Field(alias="nroatc")
    code: str = Field(alias="codigoatc")
    description: str = Field(alias="descatc")


class DcpRecord(XmlModel):
    code: str = Field(alias="codigodcp")
    name: str = Field(alias="nombredcp")
    dcsa_code: str = Field(alias="codigodcsa")


class DcpfRecord(XmlModel):
    code: str = Field(alias="codigodcpf")
    name: str = Field(alias="nombredcpf")
    dcp_code: str = Field(alias="codigodcp")


class DcsaRecord(XmlModel):
    code: str = Field(alias="codigodcsa")
    name: str = Field(alias="nombredcsa")


class ContainerRecord(XmlModel):
    code: str = Field(alias="codigoenvase")
    name: str = Field(alias="envase")


class ExcipientRecord(XmlModel):
    code: str = Field(alias="codigoedo")
    name: str = Field(alias="edo")


class PharmaceuticalFormRecord(XmlModel):
    code: str = Field(alias="codigoformafarmaceutica")
    name: str = Field(alias="formafarmaceutica")
    simplified_code: str = Field(alias="codigoformafarmaceuticasimplificada")


class SimplifiedPharmaceuticalFormRecord(XmlModel):
    code: str = Field(alias="codigoformafarmaceuticasimplificada")
    name: str = Field(alias="formafarmaceuticasimplificada")


class LaboratoryRecord(XmlModel):
    code: str = Field(alias="codigolaboratorio")
    name: str = Field(alias="laboratorio")
    address: Optional[str] = Field(None, alias="direccion")
    zip: Optional[str] = Field(None, alias="codigopostal")
    city: Optional[str] = Field(None, alias="localidad")
    vat: Optional[str] = Field(None, alias="cif")


class ActiveIngredientRecord(XmlModel):
    number: str = Field(alias="nroprincipioactivo")
    code: str = Field(alias="codigoprincipioactivo")
    name: str = Field(alias="principioactivo")


class RegistrationStatusRecord(XmlModel):
    code: str = Field(alias="codigosituacionregistro")
    name: str = Field(alias="situacionregistro")


class ContainerUnitRecord(XmlModel):
    code: str = Field(alias="codigounidadcontenido")
    name: str = Field(alias="unidadcontenido")


class AdministrationRouteRecord(XmlModel):
    code: str = Field(alias="codigoviaadministracion")
    name: str = Field(alias="viaadministracion")


# ---------------------------------------------------------------------------
# Prescripción (entidad compuesta)
# ---------------------------------------------------------------------------

class ActiveIngredientComposition(XmlModel):
    """Principio activo dentro de la forma farmacéutica, con dosis en cuatro contextos."""
    active_ingredient_code: Optional[str] = Field(None, alias="cod_principio_activo")
    order: Optional[str] = Field(None, alias="orden_colacion")
    dose: Optional[str] = Field(None, alias="dosis_pa")
    dose_unit: Optional[str] = Field(None, alias="unidad_dosis_pa")
    composition_dose: Optional[str] = Field(None, alias="dosis_composicion")
    composition_unit: Optional[str] = Field(None, alias="unidad_composicion")
    administration_dose: Optional[str] = Field(None, alias="dosis_administracion")
    administration_unit: Optional[str] = Field(None, alias="unidad_administracion")
    prescription_dose: Optional[str] = Field(None, alias="dosis_prescripcion")
    prescription_unit: Optional[str] = Field(None, alias="unidad_prescripcion")


class AdministrationRouteRef(XmlModel):
    route_code: str = Field(alias="cod_via_admin")


class PrescriptionForm(XmlModel):
    form_code: str = Field(alias="cod_forfar")
    simplified_form_code: str = Field(alias="cod_forfar_simplificada")
    num_active_ingredients: Optional[str] = Field(None, alias="nro_pactiv")
    active_ingredients: List[ActiveIngredientComposition] = Field(
        default_factory=list, alias="composicion_pa", exclude=True
    )
    admin_routes: List[AdministrationRouteRef] = Field(
        default_factory=list, alias="viasadministracion", exclude=True
    )


class AtcDuplicate(XmlModel):
    """Duplicidad terapéutica entre códigos ATC, con su advertencia clínica."""
    duplicate_atc: str = Field(alias="atc_duplicidad")
    description: Optional[str] = Field(None, alias="descripcion_atc_duplicidad")
    effect: Optional[str] = Field(None, alias="efecto_duplicidad")
    recommendation: Optional[str] = Field(None, alias="recomendacion_duplicidad")


class AtcAssignment(XmlModel):
    atc_code: str = Field(alias="cod_atc")
    duplicates: List[AtcDuplicate] = Field(
        default_factory=list, alias="duplicidades", exclude=True
    )


class SupplyProblemRecord(XmlModel):
    start_date: Optional[str] = Field(None, alias="fecha_inicio")
    observations: Optional[str] = Field(None, alias="observaciones")


class PrescriptionRecord(XmlModel):
    cod_nacion: str
    nro_definitivo: str
    des_nomco: str
    des_prese: str
    cod_dcsa: Optional[str] = None
    cod_dcp: Optional[str] = None
    cod_dcpf: Optional[str] = None
    des_dosific: Optional[str] = None
    cod_envase: Optional[str] = None
    contenido: Optional[str] = None
    unid_contenido: Optional[str] = None
    nro_conte: Optional[str] = None
    sw_psicotropo: Flag
    sw_estupefaciente: Flag
    sw_afecta_conduccion: Flag
    sw_triangulo_negro: Flag
    url_fictec: Optional[str] = None
    url_prosp: Optional[str] = None
    sw_receta: Flag
    sw_generico: Flag
    sw_sustituible: Flag
    sw_envase_clinico: Flag
    sw_uso_hospitalario: Flag
    sw_diagnostico_hospitalario: Flag
    sw_tld: Flag
    sw_especial_control_medico: Flag
    sw_huerfano: Flag
    sw_base_a_plantas: Flag
    laboratorio_titular: Optional[str] = None
    laboratorio_comercializador: Optional[str] = None
    fecha_autorizacion: Optional[str] = None
    sw_comercializado: Flag
    fec_comer: Optional[str] = None
    cod_sitreg: Optional[str] = None
    cod_sitreg_presen: Optional[str] = None
    fecha_situacion_registro: Optional[str] = None
    fec_sitreg_presen: Optional[str] = None
    sw_tiene_excipientes_decl_obligatoria: Flag
    biosimilar: Flag
    importacion_paralela: Flag
    radiofarmaco: Flag
    serializacion: Flag

    # Colecciones anidadas: se excluyen de la tabla principal
    form: Optional[PrescriptionForm] = Field(None, alias="formasfarmaceuticas", exclude=True)
    atc_codes: List[AtcAssignment] = Field(default_factory=list, alias="atc", exclude=True)
    supply_problems: List[SupplyProblemRecord] = Field(
        default_factory=list, alias="problemassuministro", exclude=True
    )


class PrescriptionHeader(XmlModel):
    list_date: str = Field(alias="listprescriptiondate")


class PrescriptionList(XmlModel):
    header: Optional[PrescriptionHeader] = None
    records: List[PrescriptionRecord] = Field(default_factory=list, alias="prescription")


def csv_columns(model: type[BaseModel]) -> List[str]:
    """Columnas CSV de un modelo: campos en orden de declaración, sin los excluidos."""
    return [name for name, info in model.model_fields.items() if not info.exclude]
