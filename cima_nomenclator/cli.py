# cima_nomenclator/cli.py – CLI del nomenclátor de la AEMPS
"""💊 CLI para el nomenclátor de prescripción y la API CIMA de la AEMPS.

Comandos principales
--------------------
• **csv**  → descarga el nomenclátor, extrae los XML y genera los CSV
            (diccionarios en paralelo + 7 CSV de prescripción).
• **api**  → consultas puntuales a la API REST de CIMA:
            medicamento, buscar-medicamentos, presentacion,
            buscar-presentaciones, psuministro, notas, cambios, maestra.

La configuración por defecto (directorios, concurrencia, timeouts) se lee de
variables de entorno o del `.env` (ver `cima_nomenclator.config`).
"""
import asyncio
import logging
from pathlib import Path
from typing import Any, List, Optional

import httpx
import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

import cima_nomenclator.cima_client as cima
from cima_nomenclator.config import settings
from cima_nomenclator.errors import FetchError
from cima_nomenclator.parser import PRESCRIPTION_XML
from cima_nomenclator.pipeline import JobStatus, PipelineReport, resolve_concurrency, run_pipeline

console = Console()

cli = typer.Typer(add_completion=False, help="Nomenclátor de prescripción y API CIMA (AEMPS)")
api = typer.Typer(add_completion=False, help="Consultas a la API REST de CIMA")
cli.add_typer(api, name="api")

_STATUS_STYLE = {
    JobStatus.SUCCEEDED: ("✓", "green"),
    JobStatus.FAILED: ("✗", "red"),
    JobStatus.SKIPPED: ("⚠", "yellow"),
    JobStatus.PENDING: ("·", "white"),
    JobStatus.RUNNING: ("…", "white"),
}


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else settings.log_level,
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
    )


@cli.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log en nivel DEBUG"),
):
    _setup_logging(verbose)
    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit()


# ---------------------------------------------------------------------------
# csv
# ---------------------------------------------------------------------------

def _print_report(report: PipelineReport) -> None:
    table = Table(title="Resumen", show_lines=False)
    table.add_column("", justify="center")
    table.add_column("Fichero")
    table.add_column("Salida")
    table.add_column("Filas", justify="right")
    table.add_column("Detalle")

    for result in [*report.catalogs, report.prescription]:
        icon, style = _STATUS_STYLE[result.status]
        rows = sum(result.rows.values()) if result.rows else ""
        output = ", ".join(result.rows) if result.rows else result.output.name
        table.add_row(
            f"[{style}]{icon}[/]",
            result.xml_path.name,
            output,
            str(rows),
            result.error or result.status.value,
        )
    console.print(table)

    lines = [f"[green]✓ Diccionarios correctos: {report.succeeded}[/]"]
    if report.failed:
        lines.append(f"[red]✗ Diccionarios fallidos: {report.failed}[/]")
    if report.skipped:
        lines.append(f"[yellow]⚠ Diccionarios omitidos: {report.skipped}[/]")

    status = report.prescription.status
    if status is JobStatus.SUCCEEDED:
        lines.append(f"[green]✓ {PRESCRIPTION_XML}: {len(report.prescription.rows)} CSV[/]")
    elif status is JobStatus.SKIPPED:
        lines.append(f"[yellow]⚠ {PRESCRIPTION_XML}: no encontrado[/]")
    else:
        lines.append(f"[red]✗ {PRESCRIPTION_XML}: fallido[/]")
    lines.append(f"📁 Directorio de salida: {report.output_dir}")

    console.print(Panel("\n".join(lines), border_style="bright_black"))


@cli.command("csv")
def csv_command(
    output_dir: Path = typer.Option(
        settings.output_dir, "--output-dir", "-o", help="Directorio de salida de los CSV"
    ),
    work_dir: Path = typer.Option(
        settings.work_dir, "--work-dir", "-w", help="Directorio de trabajo para los XML"
    ),
    concurrency: Optional[int] = typer.Option(
        None, "--concurrency", "-c", min=1, help="Tareas de parseo simultáneas (por defecto, nº de CPUs)"
    ),
    download: bool = typer.Option(
        True, "--download/--no-download", help="Descargar el volcado si el directorio está vacío"
    ),
):
    """Descarga el nomenclátor y convierte todos los XML a CSV."""
    limit = resolve_concurrency(concurrency)
    console.print(f"📂  Directorio de trabajo: [bold]{work_dir}[/]")
    console.print(f"📁  Directorio de salida: [bold]{output_dir}[/]")
    console.print(f"⚙️   Concurrencia: [bold]{limit}[/]")

    try:
        report = asyncio.run(run_pipeline(work_dir, output_dir, limit, download=download))
    except FetchError as exc:
        console.print(f"❌  Error obteniendo el nomenclátor: {exc}", style="red")
        raise typer.Exit(code=1)
    except OSError as exc:
        console.print(f"❌  Error de E/S preparando los directorios: {exc}", style="red")
        raise typer.Exit(code=1)

    _print_report(report)
    if not report.ok:
        console.print("❌  Algunos ficheros no se pudieron convertir.", style="bold red")
        raise typer.Exit(code=1)


# ---------------------------------------------------------------------------
# api
# ---------------------------------------------------------------------------

def _call(coro) -> Any:
    """Ejecuta una llamada al cliente y traduce los errores HTTP a salida de CLI."""
    try:
        return asyncio.run(coro)
    except httpx.HTTPStatusError as exc:
        console.print(
            f"❌  Error en API externa ({exc.response.status_code}): {exc.response.text}",
            style="red",
        )
    except httpx.RequestError as exc:
        console.print(f"❌  No se pudo conectar con la API externa: {exc}", style="red")
    except ValueError as exc:
        console.print(f"❌  {exc}", style="red")
    raise typer.Exit(code=1)


def _print_results(data: Any, limit: Optional[int] = None) -> None:
    """Imprime una respuesta paginada ({'resultados': [...]}) o un objeto suelto."""
    if data is None:
        console.print("Sin resultados.", style="yellow")
        return
    if isinstance(data, dict) and "resultados" in data:
        resultados = data.get("resultados") or []
        console.print(
            f"Total: {data.get('totalFilas', len(resultados))} "
            f"(página {data.get('pagina', 1)}, mostrando {min(len(resultados), limit or len(resultados))})"
        )
        data = resultados[:limit] if limit else resultados
    console.print_json(data=data)


@api.command("medicamento")
def api_medicamento(
    cn: Optional[str] = typer.Option(None, help="Código nacional"),
    nregistro: Optional[str] = typer.Option(None, help="Número de registro"),
):
    """Ficha completa de un medicamento."""
    _print_results(_call(cima.medicamento(cn=cn, nregistro=nregistro)))


@api.command("buscar-medicamentos")
def api_buscar_medicamentos(
    nombre: Optional[str] = typer.Option(None, help="Nombre del medicamento"),
    laboratorio: Optional[str] = typer.Option(None, help="Laboratorio"),
    principio_activo: Optional[str] = typer.Option(None, help="Principio activo"),
    atc: Optional[str] = typer.Option(None, help="Código o descripción ATC"),
    comercializados: bool = typer.Option(False, help="Sólo comercializados"),
    huerfanos: bool = typer.Option(False, help="Sólo huérfanos"),
    triangulo: bool = typer.Option(False, help="Sólo con triángulo negro"),
    limit: int = typer.Option(10, "--limit", "-l", help="Resultados a mostrar"),
):
    """Busca medicamentos con filtros."""
    data = _call(cima.medicamentos(
        nombre=nombre,
        laboratorio=laboratorio,
        practiv1=principio_activo,
        atc=atc,
        comerc=1 if comercializados else None,
        huerfano=1 if huerfanos else None,
        triangulo=1 if triangulo else None,
    ))
    _print_results(data, limit)


@api.command("presentacion")
def api_presentacion(cn: str = typer.Argument(..., help="Código nacional")):
    """Detalle de una presentación."""
    _print_results(_call(cima.presentacion(cn)))


@api.command("buscar-presentaciones")
def api_buscar_presentaciones(
    nregistro: Optional[str] = typer.Option(None, help="Número de registro"),
    vmp: Optional[str] = typer.Option(None, help="Código VMP"),
    comercializados: bool = typer.Option(False, help="Sólo comercializadas"),
    limit: int = typer.Option(10, "--limit", "-l", help="Resultados a mostrar"),
):
    """Busca presentaciones."""
    data = _call(cima.presentaciones(
        nregistro=nregistro, vmp=vmp, comerc=1 if comercializados else None
    ))
    _print_results(data, limit)


@api.command("psuministro")
def api_psuministro(
    cn: Optional[str] = typer.Option(None, help="Código nacional (si no, listado global)"),
    pagina: int = typer.Option(1, min=1, help="Página"),
):
    """Problemas de suministro."""
    _print_results(_call(cima.psuministro(cn=cn, pagina=pagina)))


@api.command("notas")
def api_notas(nregistro: str = typer.Argument(..., help="Número de registro")):
    """Notas de seguridad de un medicamento."""
    _print_results(_call(cima.notas(nregistro)))


@api.command("cambios")
def api_cambios(
    desde: str = typer.Option(..., help="Fecha desde la que listar cambios (dd/mm/aaaa)"),
    nregistro: List[str] = typer.Option([], help="Limitar a estos números de registro"),
):
    """Registro de altas, bajas y modificaciones."""
    _print_results(_call(cima.registro_cambios(fecha=desde, nregistro=nregistro or None)))


@api.command("maestra")
def api_maestra(
    tipo: str = typer.Option(..., help="pa, ff, va, lab o atc"),
    nombre: Optional[str] = typer.Option(None, help="Filtro por nombre (obligatorio)"),
    limit: int = typer.Option(20, "--limit", "-l", help="Resultados a mostrar"),
):
    """Consulta una maestra (catálogo de referencia)."""
    maestra = cima.MAESTRAS.get(tipo)
    if maestra is None:
        console.print(
            f"❌  Tipo de maestra desconocido: {tipo}. Use: {', '.join(cima.MAESTRAS)}",
            style="red",
        )
        raise typer.Exit(code=1)
    if nombre is None:
        # La API devuelve 204 si no se indica ningún filtro
        console.print("❌  El parámetro --nombre es obligatorio.", style="red")
        console.print("Ejemplo: cima-nomenclator api maestra --tipo pa --nombre paracetamol")
        raise typer.Exit(code=1)
    _print_results(_call(cima.maestras(maestra=maestra, nombre=nombre)), limit)


if __name__ == "__main__":
    cli()
