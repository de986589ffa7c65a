# cima_nomenclator/downloader.py
"""
Descarga y extracción del volcado ZIP del nomenclátor de prescripción (AEMPS).
"""
import asyncio
import logging
import shutil
import zipfile
from io import BytesIO
from pathlib import Path, PurePosixPath
from typing import Optional, Union

import httpx

from cima_nomenclator.config import settings
from cima_nomenclator.errors import ArchiveError, FetchError, TransportError

logger = logging.getLogger(__name__)


def get_nomenclator_url() -> str:
    """
    URL del ZIP con los XML del nomenclátor de prescripción.
    """
    return str(settings.nomenclator_url)


def _is_populated(path: Path) -> bool:
    return path.is_dir() and any(path.iterdir())


def safe_member_path(name: str) -> Optional[PurePosixPath]:
    """
    Ruta relativa segura para una entrada del ZIP: sin raíz, unidad, '.' ni '..'.
    Devuelve None si no queda nada.
    """
    parts = []
    for part in PurePosixPath(name.replace("\\", "/")).parts:
        if part in ("", ".", "..", "/") or part.endswith(":"):
            continue
        parts.append(part)
    return PurePosixPath(*parts) if parts else None


def extract_archive(content: bytes, target_dir: Path) -> int:
    """Extrae todas las entradas de `content` en `target_dir`. Devuelve los ficheros escritos."""
    try:
        archive = zipfile.ZipFile(BytesIO(content))
    except zipfile.BadZipFile as exc:
        raise ArchiveError("archive", f"El contenido descargado no es un ZIP válido: {exc}") from exc

    written = 0
    with archive:
        for info in archive.infolist():
            relative = safe_member_path(info.filename)
            if relative is None:
                logger.debug(f"Entrada ignorada: {info.filename!r}")
                continue
            outpath = target_dir.joinpath(*relative.parts)
            try:
                if info.is_dir():
                    outpath.mkdir(parents=True, exist_ok=True)
                    continue
                outpath.parent.mkdir(parents=True, exist_ok=True)
                with archive.open(info) as src, open(outpath, "wb") as dst:
                    shutil.copyfileobj(src, dst)
                written += 1
            # RuntimeError: entrada cifrada; NotImplementedError: compresión no soportada
            except (OSError, zipfile.BadZipFile, RuntimeError, NotImplementedError) as exc:
                raise ArchiveError("extract", f"No se pudo extraer '{info.filename}': {exc}") from exc
    return written


async def download_and_extract_nomenclator(
    target_dir: Union[str, Path],
    *,
    url: Optional[str] = None,
    timeout: Optional[float] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> Path:
    """
    Garantiza que `target_dir` contiene el volcado extraído y devuelve su ruta.

    - Si el directorio ya existe y no está vacío, no descarga nada.
    - Si no, lo crea, descarga el ZIP completo en memoria y extrae cada entrada.
    Cualquier fallo aborta con un `FetchError` que indica la fase.
    """
    target_dir = Path(target_dir)
    if _is_populated(target_dir):
        logger.info(f"Directorio {target_dir} ya poblado; se omite la descarga")
        return target_dir

    try:
        target_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise FetchError("directory", f"No se pudo crear '{target_dir}': {exc}") from exc

    url = url or get_nomenclator_url()
    owns_client = client is None
    if owns_client:
        client = httpx.AsyncClient(
            timeout=timeout or settings.download_timeout,
            headers={"User-Agent": settings.user_agent},
        )

    try:
        logger.info(f"Descargando nomenclátor desde {url}")
        resp = await client.get(url, follow_redirects=True)
        resp.raise_for_status()
        content = resp.content
    except httpx.HTTPError as exc:
        raise TransportError("download", f"Fallo al descargar el nomenclátor: {exc}") from exc
    finally:
        if owns_client:
            await client.aclose()

    logger.info(f"Descargados {len(content)} bytes; extrayendo en {target_dir}")
    # La extracción es bloqueante: fuera del event loop
    written = await asyncio.to_thread(extract_archive, content, target_dir)
    logger.info(f"Extraídos {written} ficheros en {target_dir}")
    return target_dir
