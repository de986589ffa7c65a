# cima_nomenclator/pipeline.py
"""
Orquestación del pipeline XML -> CSV.

1) Descarga/extracción del volcado (único punto de espera antes del parseo).
2) Los 13 diccionarios se parsean en un pool de hilos acotado; cada tarea
   termina como `skipped`, `succeeded` o `failed` sin afectar al resto.
3) Prescripcion.xml se procesa después, fuera del pool.
"""
from __future__ import annotations

import asyncio
import logging
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Union

import httpx

from cima_nomenclator.config import settings
from cima_nomenclator.downloader import download_and_extract_nomenclator
from cima_nomenclator.parser import (
    CATALOGS,
    PRESCRIPTION_XML,
    Catalog,
    parse_catalog_xml_to_csv,
    parse_prescription_xml_to_csvs,
)

logger = logging.getLogger(__name__)

CatalogParser = Callable[[Catalog, Path, Path], int]


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SKIPPED = "skipped"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class JobResult:
    name: str
    xml_path: Path
    output: Path
    status: JobStatus = JobStatus.PENDING
    rows: Dict[str, int] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is not JobStatus.FAILED


@dataclass
class PipelineReport:
    output_dir: Path
    catalogs: List[JobResult]
    prescription: JobResult

    def _count(self, status: JobStatus) -> int:
        return sum(1 for r in self.catalogs if r.status is status)

    @property
    def succeeded(self) -> int:
        return self._count(JobStatus.SUCCEEDED)

    @property
    def failed(self) -> int:
        return self._count(JobStatus.FAILED)

    @property
    def skipped(self) -> int:
        return self._count(JobStatus.SKIPPED)

    @property
    def ok(self) -> bool:
        return self.failed == 0 and self.prescription.ok


def resolve_concurrency(value: Optional[int] = None) -> int:
    """Concurrencia indicada, la de la configuración o el número de CPUs."""
    concurrency = value if value is not None else (settings.concurrency or os.cpu_count() or 1)
    if concurrency < 1:
        raise ValueError("La concurrencia debe ser al menos 1")
    return concurrency


async def run_catalog_jobs(
    work_dir: Union[str, Path],
    output_dir: Union[str, Path],
    concurrency: Optional[int] = None,
    *,
    catalogs: Sequence[Catalog] = CATALOGS,
    parser: CatalogParser = parse_catalog_xml_to_csv,
) -> List[JobResult]:
    """
    Ejecuta un trabajo por diccionario con como mucho `concurrency` en curso.
    Los errores se recogen en cada `JobResult`; nunca abortan a los demás.
    Devuelve los resultados en el orden de `catalogs`.
    """
    work_dir, output_dir = Path(work_dir), Path(output_dir)
    limit = resolve_concurrency(concurrency)
    semaphore = asyncio.Semaphore(limit)
    loop = asyncio.get_running_loop()

    results = [
        JobResult(c.name, work_dir / c.xml_file, output_dir / c.csv_file) for c in catalogs
    ]

    with ThreadPoolExecutor(max_workers=limit, thread_name_prefix="nomenclator") as pool:

        async def _run(catalog: Catalog, result: JobResult) -> None:
            if not result.xml_path.exists():
                logger.warning(f"Fichero no encontrado, se omite: {catalog.xml_file}")
                result.status = JobStatus.SKIPPED
                return

            async with semaphore:
                result.status = JobStatus.RUNNING
                try:
                    rows = await loop.run_in_executor(
                        pool, parser, catalog, result.xml_path, result.output
                    )
                except Exception as exc:
                    logger.error(f"Fallo en {catalog.xml_file}: {exc}", exc_info=True)
                    result.status = JobStatus.FAILED
                    result.error = str(exc)
                    return

            result.status = JobStatus.SUCCEEDED
            result.rows = {catalog.csv_file: rows}
            logger.info(f"Completado: {catalog.xml_file} -> {catalog.csv_file} ({rows} filas)")

        await asyncio.gather(*(_run(c, r) for c, r in zip(catalogs, results)))

    return results


async def run_prescription_job(
    work_dir: Union[str, Path],
    output_dir: Union[str, Path],
) -> JobResult:
    """Descompone Prescripcion.xml en sus 7 CSV, en un hilo aparte y fuera del pool."""
    work_dir, output_dir = Path(work_dir), Path(output_dir)
    result = JobResult("prescripcion", work_dir / PRESCRIPTION_XML, output_dir)

    if not result.xml_path.exists():
        logger.warning(f"{PRESCRIPTION_XML} no encontrado, se omite")
        result.status = JobStatus.SKIPPED
        return result

    result.status = JobStatus.RUNNING
    try:
        result.rows = await asyncio.to_thread(
            parse_prescription_xml_to_csvs, result.xml_path, output_dir
        )
    except Exception as exc:
        logger.error(f"Fallo en {PRESCRIPTION_XML}: {exc}", exc_info=True)
        result.status = JobStatus.FAILED
        result.error = str(exc)
        return result

    result.status = JobStatus.SUCCEEDED
    logger.info(f"Completado: {PRESCRIPTION_XML} -> {len(result.rows)} CSV")
    return result


async def run_pipeline(
    work_dir: Union[str, Path, None] = None,
    output_dir: Union[str, Path, None] = None,
    concurrency: Optional[int] = None,
    *,
    download: bool = True,
    client: Optional[httpx.AsyncClient] = None,
) -> PipelineReport:
    """
    Pipeline completo: descarga (errores fatales), diccionarios en paralelo y
    después la prescripción. El informe indica el éxito global.
    """
    work_dir = Path(work_dir or settings.work_dir)
    output_dir = Path(output_dir or settings.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    if download:
        await download_and_extract_nomenclator(work_dir, client=client)
    else:
        work_dir.mkdir(parents=True, exist_ok=True)

    limit = resolve_concurrency(concurrency)
    logger.info(f"Parseando {len(CATALOGS)} diccionarios con concurrencia {limit}")
    catalogs = await run_catalog_jobs(work_dir, output_dir, limit)
    prescription = await run_prescription_job(work_dir, output_dir)

    report = PipelineReport(output_dir=output_dir, catalogs=catalogs, prescription=prescription)
    logger.info(
        f"Resumen: {report.succeeded} correctos, {report.failed} fallidos, "
        f"{report.skipped} omitidos; prescripción {prescription.status.value}"
    )
    return report
