"""cima_client.py
====================
Cliente asíncrono para la API REST de CIMA (AEMPS). Cada endpoint es una
función independiente que devuelve la respuesta *raw* (dict, list, str o None).

Los parámetros se pasan tal cual como querystring (se descartan los `None`).
No hay reintentos ni caché. Todas las funciones aceptan un `client` opcional
para reutilizar conexiones (o inyectar un transporte en tests).

Ejemplo rápido:
    python -c "import asyncio, cima_nomenclator.cima_client as c; print(asyncio.run(c.medicamento(cn='608679')))"
"""
from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Union

import httpx
from dateutil import parser as date_parser

from cima_nomenclator.config import settings

logger = logging.getLogger(__name__)

TIPOS_PROBLEMA = {
    1: "Consultar Nota Informativa",
    2: "Suministro solo a hospitales",
    3: "El médico prescriptor deberá determinar la posibilidad de utilizar otros tratamientos comercializados",
    4: "Desabastecimiento temporal",
    5: "Existe/n otro/s medicamento/s con el mismo principio activo y para la misma vía de administración",
    6: "Existe/n otro/s medicamento/s con los mismos principios activos y para la misma vía de administración",
    7: "Se puede solicitar como medicamento extranjero",
    8: "Se recomienda restringir su prescripción reservándolo para casos en que no exista una alternativa apropiada",
    9: "El titular de autorización de comercialización está realizando una distribución controlada al existir unidades limitadas",
}

# Identificadores de maestra aceptados por /maestras
MAESTRAS = {
    "pa": 1,    # Principios activos
    "ff": 3,    # Formas farmacéuticas
    "va": 4,    # Vías de administración
    "lab": 6,   # Laboratorios
    "atc": 7,   # Códigos ATC
}

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _clean(params: Dict[str, Any] | None) -> Dict[str, Any] | None:
    """Elimina claves con valor `None` (y el propio `client`) del querystring."""
    if not params:
        return None
    cleaned = {k: v for k, v in params.items() if v is not None and k != "client"}
    return cleaned or None


def _parse_fecha(valor):
    """
    Normaliza fechas de CIMA a ISO8601 UTC:
      - int/float o str de dígitos: milisegundos UNIX
      - cualquier otra str: se intenta con dateutil
    Si no se puede, devuelve el valor original.
    """
    if isinstance(valor, bool):
        return valor
    if isinstance(valor, (int, float)) or (isinstance(valor, str) and valor.isdigit()):
        epoch = datetime(1970, 1, 1, tzinfo=timezone.utc)
        try:
            return (epoch + timedelta(milliseconds=int(valor))).isoformat()
        except OverflowError:
            return valor

    if isinstance(valor, str):
        try:
            dt = date_parser.parse(valor, dayfirst=True)
        except (ValueError, OverflowError):
            return valor
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.isoformat()

    return valor


def _new_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=httpx.Timeout(settings.api_timeout),
        headers={"User-Agent": settings.user_agent, "Accept": "application/json"},
    )


async def _request(
    method: str,
    path: str,
    *,
    params: Dict[str, Any] | None = None,
    json_body: Any | None = None,
    client: httpx.AsyncClient | None = None,
) -> Any | None:
    """Lanza la petición y devuelve JSON parseado, texto si no es JSON o None si no hay cuerpo."""
    owns_client = client is None
    if owns_client:
        client = _new_client()

    url = f"{settings.cima_base_url}/{path}"
    try:
        logger.debug(f"{method} {url} params={_clean(params)}")
        resp = await client.request(method, url, params=_clean(params), json=json_body)
        resp.raise_for_status()

        # Cuerpo vacío (p.ej. 204 en /maestras sin filtros)
        if not resp.content:
            return None

        try:
            return resp.json()
        except (json.JSONDecodeError, ValueError):
            return resp.text
    finally:
        if owns_client:
            await client.aclose()


# ---------------------------------------------------------------------------
# 1. Medicamentos
# ---------------------------------------------------------------------------
async def medicamentos(
    *,
    nombre: str | None = None,
    laboratorio: str | None = None,
    practiv1: str | None = None,
    practiv2: str | None = None,
    idpractiv1: str | None = None,
    idpractiv2: str | None = None,
    cn: str | None = None,
    atc: str | None = None,
    nregistro: str | None = None,
    npactiv: int | None = None,
    triangulo: int | None = None,
    huerfano: int | None = None,
    biosimilar: int | None = None,
    sust: int | None = None,
    vmp: str | None = None,
    comerc: int | None = None,
    autorizados: int | None = None,
    receta: int | None = None,
    estupefaciente: int | None = None,
    psicotropo: int | None = None,
    estuopsico: int | None = None,
    pagina: int | None = None,
    client: httpx.AsyncClient | None = None,
) -> Any | None:
    """GET /medicamentos – Lista paginada con múltiples filtros."""
    return await _request("GET", "medicamentos", params=locals(), client=client)


async def medicamento(
    *,
    cn: str | None = None,
    nregistro: str | None = None,
    client: httpx.AsyncClient | None = None,
) -> Any | None:
    """GET /medicamento – Ficha completa del medicamento (cn o nregistro)."""
    if not (cn or nregistro):
        raise ValueError("Se requiere 'cn' o 'nregistro'.")
    return await _request("GET", "medicamento", params=locals(), client=client)


# ---------------------------------------------------------------------------
# 2. Búsqueda en ficha técnica
# ---------------------------------------------------------------------------
async def buscar_en_ficha_tecnica(
    reglas: list[dict[str, Any]],
    *,
    client: httpx.AsyncClient | None = None,
) -> Any | None:
    """POST /buscarEnFichaTecnica – Array de reglas: seccion, texto, contiene(0|1)."""
    if not reglas:
        raise ValueError("Debe proporcionar al menos una regla de búsqueda.")
    return await _request("POST", "buscarEnFichaTecnica", json_body=reglas, client=client)


# ---------------------------------------------------------------------------
# 3. Presentaciones
# ---------------------------------------------------------------------------
async def presentaciones(
    *,
    cn: str | None = None,
    nregistro: str | None = None,
    vmp: str | None = None,
    vmpp: str | None = None,
    idpractiv1: str | None = None,
    comerc: int | None = None,
    estupefaciente: int | None = None,
    psicotropo: int | None = None,
    estuopsico: int | None = None,
    pagina: int | None = None,
    client: httpx.AsyncClient | None = None,
) -> Any | None:
    """GET /presentaciones – Listado de presentaciones."""
    return await _request("GET", "presentaciones", params=locals(), client=client)


async def presentacion(cn: str, *, client: httpx.AsyncClient | None = None) -> Any | None:
    """GET /presentacion/{cn} – Detalle de una presentación concreta."""
    return await _request("GET", f"presentacion/{cn}", client=client)


# ---------------------------------------------------------------------------
# 4. Descripción clínica (VMP/VMPP)
# ---------------------------------------------------------------------------
async def vmpp(
    *,
    practiv1: str | None = None,
    idpractiv1: str | None = None,
    dosis: str | None = None,
    forma: str | None = None,
    atc: str | None = None,
    nombre: str | None = None,
    modoArbol: int | None = None,
    pagina: int | None = None,
    client: httpx.AsyncClient | None = None,
) -> Any | None:
    """GET /vmpp – Devuelve VMP/VMPP filtrados."""
    return await _request("GET", "vmpp", params=locals(), client=client)


# ---------------------------------------------------------------------------
# 5. Maestras
# ---------------------------------------------------------------------------
async def maestras(
    *,
    maestra: int | None = None,
    nombre: str | None = None,
    id: str | None = None,
    codigo: str | None = None,
    estupefaciente: int | None = None,
    psicotropo: int | None = None,
    estuopsico: int | None = None,
    enuso: int | None = None,
    pagina: int | None = None,
    client: httpx.AsyncClient | None = None,
) -> Any | None:
    """GET /maestras – Catálogos de laboratorios, ATC, formas, etc. (ver `MAESTRAS`)."""
    return await _request("GET", "maestras", params=locals(), client=client)


# ---------------------------------------------------------------------------
# 6. Registro de cambios
# ---------------------------------------------------------------------------
async def registro_cambios(
    *,
    fecha: str | None = None,
    nregistro: list[str] | None = None,
    metodo: str = "GET",
    client: httpx.AsyncClient | None = None,
) -> Any:
    """GET/POST /registroCambios – Altas, bajas y modificaciones desde `fecha` (dd/mm/aaaa)."""
    payload = {"fecha": fecha, "nregistro": nregistro or None}
    if metodo.upper() == "POST":
        return await _request(
            "POST", "registroCambios", json_body=_clean(payload) or {}, client=client
        )
    return await _request("GET", "registroCambios", params=payload, client=client)


# ---------------------------------------------------------------------------
# 7. Problemas de suministro
# ---------------------------------------------------------------------------
def _enrich_problema(item: dict) -> dict:
    """Añade la descripción del tipo de problema y normaliza fechas (fini/ffin)."""
    observ = (item.get("observ") or "").lower()
    tipo_code = item.get("tipoProblemaSuministro")
    if "sin problemas" in observ or tipo_code is None:
        item["tipoProblemaSuministro_descripcion"] = "No existen problemas detectados"
        item["fecha_inicio"] = None
        item["fecha_fin"] = None
        return item

    item["tipoProblemaSuministro_descripcion"] = TIPOS_PROBLEMA.get(tipo_code, "Desconocido")
    if "fini" in item:
        item["fecha_inicio"] = _parse_fecha(item.pop("fini"))
    if "ffin" in item:
        item["fecha_fin"] = _parse_fecha(item.pop("ffin"))
    return item


async def psuministro(
    cn: str | None = None,
    pagina: int = 1,
    tamanioPagina: int = 10,
    *,
    client: httpx.AsyncClient | None = None,
) -> dict | list:
    """
    Problemas de suministro:
      - GET /psuministro              → listado global paginado
      - GET /psuministro/v2/cn/{cn}   → detalle por Código Nacional ([] si no existe)
    """
    if cn:
        try:
            raw = await _request("GET", f"psuministro/v2/cn/{cn}", client=client)
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code == 404:
                return []
            raise
        if isinstance(raw, dict):
            return _enrich_problema(raw)
        return raw or []

    raw = await _request(
        "GET",
        "psuministro",
        params={"pagina": pagina, "tamanioPagina": tamanioPagina},
        client=client,
    )
    if isinstance(raw, dict):
        raw["resultados"] = [_enrich_problema(e) for e in raw.get("resultados", [])]
    return raw


# ---------------------------------------------------------------------------
# 8. Documentos segmentados
# ---------------------------------------------------------------------------
async def doc_secciones(
    tipo_doc: int,
    *,
    nregistro: str | None = None,
    cn: str | None = None,
    client: httpx.AsyncClient | None = None,
) -> Any | None:
    """
    GET /docSegmentado/secciones/{tipo_doc}

    tipo_doc: 1=Ficha Técnica, 2=Prospecto (3–4 otros). Hace falta `nregistro` o `cn`.
    """
    if not (nregistro or cn):
        raise ValueError("Se requiere 'nregistro' o 'cn'.")
    return await _request(
        "GET",
        f"docSegmentado/secciones/{tipo_doc}",
        params={"nregistro": nregistro, "cn": cn},
        client=client,
    )


async def doc_contenido(
    tipo_doc: int,
    *,
    nregistro: str | None = None,
    cn: str | None = None,
    seccion: str | None = None,
    client: httpx.AsyncClient | None = None,
) -> Any | None:
    """GET /docSegmentado/contenido/{tipo_doc} – Contenido (JSON) de una o todas las secciones."""
    if not (nregistro or cn):
        raise ValueError("Se requiere 'nregistro' o 'cn'.")
    if tipo_doc not in (1, 2):
        raise ValueError(f"tipo_doc debe ser 1 o 2, recibido: {tipo_doc}")
    return await _request(
        "GET",
        f"docSegmentado/contenido/{tipo_doc}",
        params={"nregistro": nregistro, "cn": cn, "seccion": seccion},
        client=client,
    )


# ---------------------------------------------------------------------------
# 9. Notas de seguridad
# ---------------------------------------------------------------------------
async def notas(nregistro: str, *, client: httpx.AsyncClient | None = None) -> Any | None:
    """
    GET /notas?nregistro={nregistro}; si no devuelve nada, GET /notas/{nregistro}.
    """
    data = await _request("GET", "notas", params={"nregistro": nregistro}, client=client)
    if not data:
        return await _request("GET", f"notas/{nregistro}", client=client)
    return data


# ---------------------------------------------------------------------------
# 10. Materiales informativos
# ---------------------------------------------------------------------------
async def materiales(
    nregistro: Union[str, List[str]],
    *,
    client: httpx.AsyncClient | None = None,
) -> Any | None:
    """
    - str: {'nregistro': ..., 'materiales': [...]} o None.
    - lista: [{'nregistro', 'materiales'}, ...] o None; los nregistro que fallan se omiten.
    """
    async def _fetch_one(nr: str) -> list | None:
        try:
            data = await _request("GET", "materiales", params={"nregistro": nr}, client=client)
            if not data:
                data = await _request("GET", f"materiales/{nr}", client=client)
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code == 404:
                return None
            raise
        if isinstance(data, dict):
            if isinstance(data.get("materiales"), list):
                return data["materiales"]
            return [data]
        return data or None

    if isinstance(nregistro, list):
        respuestas = await asyncio.gather(
            *(_fetch_one(nr) for nr in nregistro), return_exceptions=True
        )
        resultados = []
        for nr, res in zip(nregistro, respuestas):
            if isinstance(res, Exception):
                logger.warning(f"Materiales de {nr} no disponibles: {res}")
                continue
            if res:
                resultados.append({"nregistro": nr, "materiales": res})
        return resultados or None

    mat = await _fetch_one(nregistro)
    return {"nregistro": nregistro, "materiales": mat} if mat else None
